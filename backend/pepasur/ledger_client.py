"""
=============================================================================
PEPASUR - Cliente del Ledger On-Chain
=============================================================================
Adaptador delgado entre el orquestador y el contrato de staking.
El contrato se trata como un ledger opaco, latente y eventualmente
consistente.

Garantías:
- Toda llamada de red tiene deadline (asyncio.wait_for -> LedgerTimeout)
- Los errores se clasifican aquí: LedgerUnavailable, InsufficientFunds,
  TransactionReverted, InvalidStakeTransaction
- Idempotencia: los envíos se indexan por (tipo, game_id, jugador, nonce).
  La transacción se firma antes de difundirse, así su hash se conoce antes
  de tocar la red. Un envío sin respuesta queda "sin resolver": el
  reintento consulta primero el ledger y, si hace falta, reenvía la MISMA
  transacción firmada (mismo hash), nunca una nueva
- Un lock por clave de envío: un RPC lento no frena a las demás partidas

Implementaciones:
- InMemoryLedger: modo sin contrato (simulado), con fallos programables
- Web3LedgerClient: contrato PepAsur vía web3.py. El jugador firma su
  joinGame; el servidor solo verifica el hash y firma las liquidaciones
=============================================================================
"""

import asyncio
import hashlib
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Tuple

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from eth_account import Account
from eth_account.messages import encode_defunct

from .errors import (
    DuplicateStake,
    InsufficientFunds,
    InvalidStakeTransaction,
    LedgerTimeout,
    LedgerUnavailable,
    TransactionReverted,
    ValidationError,
)

logger = logging.getLogger(__name__)

SubmissionKey = Tuple[str, str, str, str]

# Rechazos definitivos: la transacción nunca llegó a la red
REJECTIONS = (InsufficientFunds, TransactionReverted, ValidationError)


# =============================================================================
# ESTRUCTURAS DE DATOS
# =============================================================================

class TxKind(str, Enum):
    """Tipo de transacción enviada al ledger."""
    STAKE = "STAKE"
    PAYOUT = "PAYOUT"


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    TIMED_OUT = "TIMED_OUT"
    REVERTED = "REVERTED"


class TxStatus(str, Enum):
    """Estado de una transacción al re-consultar el ledger."""
    CONFIRMED = "CONFIRMED"
    PENDING = "PENDING"
    REVERTED = "REVERTED"
    UNKNOWN = "UNKNOWN"      # Nunca vista o descartada del mempool


@dataclass(frozen=True)
class TxHandle:
    """Referencia a una transacción enviada."""
    tx_hash: str
    kind: TxKind
    game_id: str
    player: str
    amount: int
    nonce: str
    submitted_at: float = field(default_factory=time.time)
    reused: bool = False


@dataclass(frozen=True)
class PreparedTx:
    """Transacción ya firmada: su hash es definitivo aunque no se haya difundido."""
    handle: TxHandle
    payload: Any = None


@dataclass(frozen=True)
class ConfirmationResult:
    """Resultado de esperar la confirmación de una transacción."""
    outcome: ConfirmationOutcome
    block_ref: Optional[str] = None
    reason: str = ""

    @classmethod
    def confirmed(cls, block_ref: str) -> "ConfirmationResult":
        return cls(ConfirmationOutcome.CONFIRMED, block_ref=block_ref)

    @classmethod
    def timed_out(cls) -> "ConfirmationResult":
        return cls(ConfirmationOutcome.TIMED_OUT)

    @classmethod
    def reverted(cls, reason: str) -> "ConfirmationResult":
        return cls(ConfirmationOutcome.REVERTED, reason=reason)

    @property
    def is_confirmed(self) -> bool:
        return self.outcome == ConfirmationOutcome.CONFIRMED


# =============================================================================
# INTERFAZ BASE
# =============================================================================

class LedgerClient(ABC):
    """
    Interfaz asíncrona del ledger.

    Las subclases implementan los pasos "crudos" (_prepare, _broadcast,
    _verify_stake); la deduplicación, los envíos sin resolver y los
    deadlines viven aquí.
    """

    def __init__(self, call_timeout: float = 15.0):
        self.call_timeout = call_timeout
        self._submissions: Dict[SubmissionKey, TxHandle] = {}
        self._unresolved: Dict[SubmissionKey, PreparedTx] = {}
        self._claimed: Dict[str, SubmissionKey] = {}    # tx_hash -> clave que respalda
        self._locks: Dict[SubmissionKey, asyncio.Lock] = {}

    def _lock_for(self, key: SubmissionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _with_deadline(self, awaitable: Awaitable, operation: str, timeout: Optional[float] = None):
        """Ejecuta una llamada de red con deadline obligatorio."""
        deadline = self.call_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=deadline)
        except asyncio.TimeoutError as exc:
            logger.warning("[LEDGER] %s excedió el deadline de %.1fs", operation, deadline)
            raise LedgerTimeout(f"{operation} excedió el deadline de {deadline}s") from exc

    def _resolve(self, key: SubmissionKey, prepared: PreparedTx, reused: bool = False) -> TxHandle:
        self._unresolved.pop(key, None)
        self._submissions[key] = prepared.handle
        self._claimed[prepared.handle.tx_hash] = key
        return replace(prepared.handle, reused=reused)

    async def _seen_by_ledger(self, prepared: PreparedTx) -> bool:
        status = await self.get_transaction_status(prepared.handle.tx_hash)
        if status == TxStatus.UNKNOWN:
            return False
        logger.info("[LEDGER] Envío sin resolver %s encontrado en el ledger (%s); no se reenvía",
                    prepared.handle.tx_hash, status.value)
        return True

    async def _submit(self, kind: TxKind, game_id: str, player: str, amount: int, nonce: str) -> TxHandle:
        player = player.lower()
        key = (kind.value, game_id, player, nonce)
        operation = f"submit_{kind.value.lower()}"
        async with self._lock_for(key):
            existing = self._submissions.get(key)
            if existing is not None:
                logger.info("[LEDGER] Envío repetido %s para %s/%s, reutilizando %s",
                            kind.value, game_id, player, existing.tx_hash)
                return replace(existing, reused=True)

            prepared = self._unresolved.get(key)
            retrying = prepared is not None
            if prepared is None:
                prepared = await self._with_deadline(
                    self._prepare(kind, game_id, player, amount, nonce), f"prepare_{kind.value.lower()}"
                )
                self._unresolved[key] = prepared

            try:
                if retrying and await self._seen_by_ledger(prepared):
                    return self._resolve(key, prepared, reused=True)
                await self._with_deadline(self._broadcast(prepared), operation)
            except LedgerTimeout as exc:
                logger.warning("[LEDGER] %s %s sin respuesta; queda sin resolver",
                               kind.value, prepared.handle.tx_hash)
                exc.handle = prepared.handle
                raise
            except REJECTIONS:
                self._unresolved.pop(key, None)
                raise

            logger.info("[LEDGER] %s enviado: %s -> %s (%s wei)", kind.value, player,
                        prepared.handle.tx_hash, amount)
            return self._resolve(key, prepared)

    async def submit_stake(self, game_id: str, player: str, amount: int, nonce: str) -> TxHandle:
        """Envía el stake de un jugador (solo donde el servidor custodia la wallet)."""
        return await self._submit(TxKind.STAKE, game_id, player, amount, nonce)

    async def submit_payout(self, game_id: str, player: str, amount: int, nonce: str) -> TxHandle:
        """Envía un pago (premio, comisión o reembolso) desde la custodia del contrato."""
        return await self._submit(TxKind.PAYOUT, game_id, player, amount, nonce)

    async def record_stake(self, game_id: str, player: str, amount: int, nonce: str, tx_hash: str) -> TxHandle:
        """
        Registra un stake firmado por el propio jugador.

        Verifica que tx_hash sea un joinGame del jugador al contrato, por el
        monto y la partida correctos. Un mismo hash respalda un solo stake.
        """
        player = player.lower()
        tx_hash = tx_hash.lower()
        key = (TxKind.STAKE.value, game_id, player, nonce)
        async with self._lock_for(key):
            existing = self._submissions.get(key)
            if existing is not None:
                if existing.tx_hash != tx_hash:
                    raise DuplicateStake(f"El stake {nonce} ya está respaldado por {existing.tx_hash}")
                return replace(existing, reused=True)
            if tx_hash in self._claimed:
                raise InvalidStakeTransaction(f"La transacción {tx_hash} ya respalda otro stake")

            self._claimed[tx_hash] = key
            verified = False
            try:
                await self._with_deadline(self._verify_stake(game_id, player, amount, tx_hash), "verify_stake")
                verified = True
            except LedgerTimeout as exc:
                raise LedgerUnavailable("La verificación del stake no respondió; reintente con el mismo hash") from exc
            finally:
                if not verified:
                    self._claimed.pop(tx_hash, None)

            handle = TxHandle(tx_hash=tx_hash, kind=TxKind.STAKE, game_id=game_id,
                              player=player, amount=amount, nonce=nonce)
            self._submissions[key] = handle
            logger.info("[LEDGER] Stake de %s verificado: %s (%s wei)", player, tx_hash, amount)
            return handle

    def lookup_submission(self, kind: TxKind, game_id: str, player: str, nonce: str) -> Optional[TxHandle]:
        """Transacción conocida para una clave de envío, resuelta o no."""
        key = (kind.value, game_id, player.lower(), nonce)
        found = self._submissions.get(key)
        if found is not None:
            return found
        prepared = self._unresolved.get(key)
        return prepared.handle if prepared is not None else None

    async def query_balance(self, address: str) -> int:
        return await self._with_deadline(self._balance_of(address), "query_balance")

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        return await self._with_deadline(self._tx_status(tx_hash), "get_transaction_status")

    async def get_contract_info(self) -> Dict[str, Any]:
        return await self._with_deadline(self._contract_info(), "get_contract_info")

    @abstractmethod
    async def await_confirmation(self, handle: TxHandle, timeout: float) -> ConfirmationResult:
        """Confirmed(block_ref) | TimedOut | Reverted(reason). Nunca bloquea más de timeout."""

    @abstractmethod
    async def _prepare(self, kind: TxKind, game_id: str, player: str, amount: int, nonce: str) -> PreparedTx:
        """Construye y firma la transacción sin difundirla."""

    @abstractmethod
    async def _broadcast(self, prepared: PreparedTx) -> None:
        """Difunde una transacción firmada. Reenviar la misma es inocuo."""

    @abstractmethod
    async def _verify_stake(self, game_id: str, player: str, amount: int, tx_hash: str) -> None:
        ...

    @abstractmethod
    async def _balance_of(self, address: str) -> int:
        ...

    @abstractmethod
    async def _tx_status(self, tx_hash: str) -> TxStatus:
        ...

    @abstractmethod
    async def _contract_info(self) -> Dict[str, Any]:
        ...


# =============================================================================
# MODO SIN CONTRATO (SIMULADO)
# =============================================================================

class ScriptedOutcome(str, Enum):
    """Resultados programables para reproducir fallos parciales."""
    CONFIRM = "CONFIRM"   # Se confirma tras la latencia
    REVERT = "REVERT"     # Se rechaza on-chain
    DROP = "DROP"         # El nodo la pierde: nunca aparece
    HOLD = "HOLD"         # Queda pendiente hasta settle() manual


@dataclass
class _MemoryTx:
    handle_kind: TxKind
    game_id: str
    sender: str
    recipient: str
    amount: int
    outcome: ScriptedOutcome
    status: TxStatus = TxStatus.PENDING
    block_ref: Optional[str] = None
    reason: str = ""
    settled: asyncio.Event = field(default_factory=asyncio.Event)


class InMemoryLedger(LedgerClient):
    """
    Ledger en memoria. Reproduce la latencia y los fallos de un RPC real:
    - latency: segundos hasta que una transacción CONFIRM se mina
    - available=False: toda llamada falla con LedgerUnavailable
    - hang=True: las llamadas no responden (prueba de deadlines)
    - script(player, outcome): resultado del próximo envío de ese jugador
    - wallet_join(): un jugador firma joinGame desde su propia wallet
    """

    CONTRACT_ADDRESS = "0x000000000000000000000000000000000000a5a5"

    def __init__(
        self,
        call_timeout: float = 15.0,
        latency: float = 0.0,
        owner: str = "0x0000000000000000000000000000000000000001",
        fee_recipient: str = "0x0000000000000000000000000000000000000fee",
        house_cut_bps: int = 500,
    ):
        super().__init__(call_timeout=call_timeout)
        self.latency = latency
        self.available = True
        self.hang = False
        self.balances: Dict[str, int] = {}
        self.custody: int = 0
        self.block_number = 0
        self.transactions: Dict[str, _MemoryTx] = {}
        self._scripts: Dict[str, list] = {}
        self._info = {
            "owner": owner,
            "serverSigner": owner,
            "feeRecipient": fee_recipient,
            "houseCutBps": house_cut_bps,
            "contract": self.CONTRACT_ADDRESS,
        }

    # -- Control de pruebas / desarrollo --------------------------------------

    def fund(self, address: str, amount: int) -> None:
        self.balances[address.lower()] = self.balances.get(address.lower(), 0) + amount

    def script(self, player: str, *outcomes: ScriptedOutcome) -> None:
        """Programa los resultados de los próximos envíos de un jugador."""
        self._scripts.setdefault(player.lower(), []).extend(outcomes)

    def settle(self, tx_hash: str, outcome: ScriptedOutcome = ScriptedOutcome.CONFIRM) -> None:
        """Resuelve manualmente una transacción HOLD (o DROP que reaparece)."""
        tx = self.transactions[tx_hash]
        if outcome == ScriptedOutcome.CONFIRM:
            self._mine(tx)
        else:
            self._revert(tx, "revertida manualmente")

    def wallet_join(self, player: str, game_id: str, amount: int) -> str:
        """El jugador envía joinGame por su cuenta; retorna el hash."""
        player = player.lower()
        if self.balances.get(player, 0) < amount:
            raise InsufficientFunds(f"Saldo insuficiente para el stake de {amount} wei")
        tx_hash = "0x" + secrets.token_hex(32)
        self._register(tx_hash, TxKind.STAKE, game_id, player, self.CONTRACT_ADDRESS, amount)
        return tx_hash

    def paid_to(self, recipient: str) -> int:
        """Total de pagos confirmados hacia una dirección."""
        recipient = recipient.lower()
        return sum(
            tx.amount for tx in self.transactions.values()
            if tx.handle_kind == TxKind.PAYOUT and tx.recipient == recipient and tx.status == TxStatus.CONFIRMED
        )

    # -- Internos -------------------------------------------------------------

    async def _network(self) -> None:
        if self.hang:
            await asyncio.sleep(3600)
        if not self.available:
            raise LedgerUnavailable("RPC no disponible")

    def _next_outcome(self, player: str) -> ScriptedOutcome:
        queue = self._scripts.get(player.lower())
        if queue:
            return queue.pop(0)
        return ScriptedOutcome.CONFIRM

    def _mine(self, tx: _MemoryTx) -> None:
        if tx.status != TxStatus.PENDING:
            return
        if tx.handle_kind == TxKind.STAKE:
            balance = self.balances.get(tx.sender, 0)
            if balance < tx.amount:
                self._revert(tx, "saldo insuficiente al minar")
                return
            self.balances[tx.sender] = balance - tx.amount
            self.custody += tx.amount
        else:
            if self.custody < tx.amount:
                self._revert(tx, "custodia insuficiente")
                return
            self.custody -= tx.amount
            self.balances[tx.recipient] = self.balances.get(tx.recipient, 0) + tx.amount
        self.block_number += 1
        tx.status = TxStatus.CONFIRMED
        tx.block_ref = f"block-{self.block_number}"
        tx.settled.set()

    def _revert(self, tx: _MemoryTx, reason: str) -> None:
        tx.status = TxStatus.REVERTED
        tx.reason = reason
        tx.settled.set()

    def _register(self, tx_hash: str, kind: TxKind, game_id: str, sender: str, recipient: str, amount: int) -> None:
        outcome = self._next_outcome(recipient if kind == TxKind.PAYOUT else sender)
        tx = _MemoryTx(handle_kind=kind, game_id=game_id, sender=sender, recipient=recipient,
                       amount=amount, outcome=outcome)
        self.transactions[tx_hash] = tx

        if outcome == ScriptedOutcome.REVERT:
            self._revert(tx, "rechazada por el contrato")
        elif outcome == ScriptedOutcome.CONFIRM:
            if self.latency <= 0:
                self._mine(tx)
            else:
                asyncio.get_running_loop().call_later(self.latency, self._mine, tx)

    async def _prepare(self, kind: TxKind, game_id: str, player: str, amount: int, nonce: str) -> PreparedTx:
        handle = TxHandle(tx_hash="0x" + secrets.token_hex(32), kind=kind, game_id=game_id,
                          player=player, amount=amount, nonce=nonce)
        return PreparedTx(handle)

    async def _broadcast(self, prepared: PreparedTx) -> None:
        await self._network()
        handle = prepared.handle
        if handle.tx_hash in self.transactions:
            # El nodo ya la conoce: reenviarla no crea otra
            return
        if handle.kind == TxKind.STAKE:
            if self.balances.get(handle.player, 0) < handle.amount:
                raise InsufficientFunds(f"Saldo insuficiente para el stake de {handle.amount} wei")
            self._register(handle.tx_hash, TxKind.STAKE, handle.game_id, handle.player,
                           self.CONTRACT_ADDRESS, handle.amount)
        else:
            self._register(handle.tx_hash, TxKind.PAYOUT, handle.game_id, self.CONTRACT_ADDRESS,
                           handle.player, handle.amount)

    async def _verify_stake(self, game_id: str, player: str, amount: int, tx_hash: str) -> None:
        await self._network()
        tx = self.transactions.get(tx_hash)
        if tx is None:
            raise InvalidStakeTransaction(f"Transacción {tx_hash} desconocida")
        if tx.handle_kind != TxKind.STAKE or tx.recipient != self.CONTRACT_ADDRESS:
            raise InvalidStakeTransaction("La transacción no es un joinGame al contrato")
        if tx.sender != player:
            raise InvalidStakeTransaction("La transacción la firmó otra dirección")
        if tx.game_id != game_id:
            raise InvalidStakeTransaction("La transacción corresponde a otra partida")
        if tx.amount != amount:
            raise InvalidStakeTransaction(f"Monto {tx.amount} distinto del stake {amount}")

    async def await_confirmation(self, handle: TxHandle, timeout: float) -> ConfirmationResult:
        tx = self.transactions.get(handle.tx_hash)
        if tx is None or tx.outcome == ScriptedOutcome.DROP:
            # Una transacción perdida nunca se asienta
            await asyncio.sleep(timeout)
            return ConfirmationResult.timed_out()
        try:
            await asyncio.wait_for(tx.settled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return ConfirmationResult.timed_out()
        if tx.status == TxStatus.CONFIRMED:
            return ConfirmationResult.confirmed(tx.block_ref or "")
        return ConfirmationResult.reverted(tx.reason)

    async def _balance_of(self, address: str) -> int:
        await self._network()
        return self.balances.get(address.lower(), 0)

    async def _tx_status(self, tx_hash: str) -> TxStatus:
        await self._network()
        tx = self.transactions.get(tx_hash)
        if tx is None or (tx.outcome == ScriptedOutcome.DROP and tx.status == TxStatus.PENDING):
            return TxStatus.UNKNOWN
        return tx.status

    async def _contract_info(self) -> Dict[str, Any]:
        await self._network()
        return dict(self._info)


# =============================================================================
# CONTRATO PEPASUR VÍA WEB3
# =============================================================================

PEPASUR_ABI = [
    {
        "inputs": [{"name": "gameId", "type": "uint64"}],
        "name": "joinGame",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "gameId", "type": "uint64"},
            {"name": "settlementHash", "type": "bytes32"},
            {"name": "winners", "type": "address[]"},
            {"name": "payoutAmounts", "type": "uint256[]"},
            {"name": "signature", "type": "bytes"},
        ],
        "name": "submitSettlement",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "serverSigner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "feeRecipient",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "houseCutBps",
        "outputs": [{"name": "", "type": "uint16"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def contract_game_id(game_id: str) -> int:
    """Deriva el uint64 del contrato a partir del game_id del servidor."""
    return int(hashlib.sha256(game_id.encode()).hexdigest()[:16], 16)


class Web3LedgerClient(LedgerClient):
    """
    Cliente del contrato PepAsur.

    - Stakes: el jugador firma y envía joinGame desde su wallet; el servidor
      solo verifica el hash (record_stake). submit_stake se rechaza.
    - Pagos: cada intent es una liquidación de una entrada (submitSettlement)
      firmada con SERVER_PRIVATE_KEY; los fondos salen de la custodia del
      contrato, nunca de la cuenta del servidor.

    Las llamadas de web3.py son bloqueantes: se ejecutan en un hilo
    (asyncio.to_thread) y siempre bajo el deadline de _with_deadline.
    """

    GAS_LIMIT = 300000

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        chain_id: int,
        call_timeout: float = 15.0,
    ):
        super().__init__(call_timeout=call_timeout)
        if not rpc_url:
            raise ValueError("Se requiere PEPASUR_RPC_URL para el modo web3")
        if not contract_address:
            raise ValueError("Se requiere PEPASUR_CONTRACT_ADDRESS para el modo web3")
        if not private_key:
            raise ValueError("Se requiere SERVER_PRIVATE_KEY para el modo web3")

        self.chain_id = chain_id
        self._web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": call_timeout}))
        self._account = Account.from_key(private_key)
        self._contract = self._web3.eth.contract(
            address=self._web3.to_checksum_address(contract_address),
            abi=PEPASUR_ABI,
        )
        self._account_nonce: Optional[int] = None
        self._nonce_lock = asyncio.Lock()
        logger.info("[LEDGER] Cliente web3 listo: firmante %s, cadena %s", self._account.address, chain_id)

    async def _call(self, fn, *args):
        """Ejecuta una llamada web3 bloqueante y clasifica sus errores."""
        try:
            return await asyncio.to_thread(fn, *args)
        except ContractLogicError as exc:
            raise TransactionReverted(str(exc)) from exc
        except (OSError, Web3Exception) as exc:
            raise LedgerUnavailable(f"Error de RPC: {exc}") from exc

    async def _next_account_nonce(self) -> int:
        """Nonce de la cuenta firmante; solo esta asignación se serializa."""
        async with self._nonce_lock:
            if self._account_nonce is None:
                self._account_nonce = await self._call(
                    self._web3.eth.get_transaction_count, self._account.address, "pending"
                )
            nonce = self._account_nonce
            self._account_nonce += 1
            return nonce

    # -- Liquidaciones firmadas por el servidor --------------------------------

    def _sign_settlement(self, game_id: str, recipient: str, amount: int, nonce: str, account_nonce: int):
        game = contract_game_id(game_id)
        recipient = self._web3.to_checksum_address(recipient)
        settlement_hash = Web3.solidity_keccak(
            ["uint64", "address", "uint256", "string"], [game, recipient, amount, nonce]
        )
        signature = self._account.sign_message(encode_defunct(primitive=settlement_hash)).signature
        tx = self._contract.functions.submitSettlement(
            game, settlement_hash, [recipient], [amount], signature
        ).build_transaction({
            "from": self._account.address,
            "nonce": account_nonce,
            "gas": self.GAS_LIMIT,
            "gasPrice": self._web3.eth.gas_price,
            "chainId": self.chain_id,
        })
        return self._account.sign_transaction(tx)

    async def _prepare(self, kind: TxKind, game_id: str, player: str, amount: int, nonce: str) -> PreparedTx:
        if kind == TxKind.STAKE:
            raise ValidationError(
                "En modo web3 el jugador firma joinGame desde su wallet; registre el hash con /stake/record"
            )
        account_nonce = await self._next_account_nonce()
        signed = await self._call(self._sign_settlement, game_id, player, amount, nonce, account_nonce)
        handle = TxHandle(tx_hash=self._web3.to_hex(signed.hash), kind=kind, game_id=game_id,
                          player=player, amount=amount, nonce=nonce)
        return PreparedTx(handle, payload=signed.raw_transaction)

    def _send_raw(self, raw: bytes) -> None:
        try:
            self._web3.eth.send_raw_transaction(raw)
        except (ValueError, Web3Exception) as exc:
            if "already known" in str(exc).lower():
                return
            raise LedgerUnavailable(f"Error de RPC: {exc}") from exc

    async def _broadcast(self, prepared: PreparedTx) -> None:
        await self._call(self._send_raw, prepared.payload)

    # -- Stakes firmados por el jugador ----------------------------------------

    def _check_stake_tx(self, game_id: str, player: str, amount: int, tx_hash: str) -> None:
        try:
            tx = self._web3.eth.get_transaction(tx_hash)
        except TransactionNotFound as exc:
            raise LedgerUnavailable(f"La transacción {tx_hash} aún no es visible en el nodo") from exc

        if (tx.get("from") or "").lower() != player:
            raise InvalidStakeTransaction("La transacción la firmó otra dirección")
        if (tx.get("to") or "").lower() != self._contract.address.lower():
            raise InvalidStakeTransaction("La transacción no va dirigida al contrato")
        if int(tx.get("value", 0)) != amount:
            raise InvalidStakeTransaction(f"Monto {tx.get('value')} distinto del stake {amount}")
        try:
            function, args = self._contract.decode_function_input(tx["input"])
        except ValueError as exc:
            raise InvalidStakeTransaction("La transacción no llama a joinGame") from exc
        if function.fn_name != "joinGame" or args.get("gameId") != contract_game_id(game_id):
            raise InvalidStakeTransaction("La transacción corresponde a otra partida")

    async def _verify_stake(self, game_id: str, player: str, amount: int, tx_hash: str) -> None:
        await self._call(self._check_stake_tx, game_id, player, amount, tx_hash)

    # -- Consultas ---------------------------------------------------------------

    async def await_confirmation(self, handle: TxHandle, timeout: float) -> ConfirmationResult:
        try:
            receipt = await asyncio.wait_for(
                asyncio.to_thread(self._web3.eth.wait_for_transaction_receipt, handle.tx_hash, timeout),
                timeout=timeout + self.call_timeout,
            )
        except (TimeExhausted, asyncio.TimeoutError):
            return ConfirmationResult.timed_out()
        except (OSError, Web3Exception) as exc:
            logger.warning("[LEDGER] Error esperando %s: %s", handle.tx_hash, exc)
            return ConfirmationResult.timed_out()
        if receipt["status"] != 1:
            return ConfirmationResult.reverted("status=0")
        return ConfirmationResult.confirmed(str(receipt["blockNumber"]))

    async def _balance_of(self, address: str) -> int:
        return await self._call(self._web3.eth.get_balance, self._web3.to_checksum_address(address))

    def _status_of(self, tx_hash: str) -> TxStatus:
        eth = self._web3.eth
        try:
            receipt = eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            try:
                eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return TxStatus.UNKNOWN
            return TxStatus.PENDING
        return TxStatus.CONFIRMED if receipt["status"] == 1 else TxStatus.REVERTED

    async def _tx_status(self, tx_hash: str) -> TxStatus:
        return await self._call(self._status_of, tx_hash)

    def _read_contract_info(self) -> Dict[str, Any]:
        fns = self._contract.functions
        return {
            "owner": fns.owner().call(),
            "serverSigner": fns.serverSigner().call(),
            "feeRecipient": fns.feeRecipient().call(),
            "houseCutBps": int(fns.houseCutBps().call()),
            "contract": self._contract.address,
        }

    async def _contract_info(self) -> Dict[str, Any]:
        return await self._call(self._read_contract_info)
