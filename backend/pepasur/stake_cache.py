"""
=============================================================================
PEPASUR - Caché del Ledger de Stakes
=============================================================================
Mapa en memoria (partida, jugador) -> StakeRecord, mantenido consistente con
la verdad on-chain mediante eventos de confirmación.

Principios:
- Compare-and-set: toda mutación valida el estado actual bajo lock por clave
- Monotonía: PENDING -> CONFIRMED | FAILED, CONFIRMED -> REFUNDED | WITHDRAWN,
  FAILED -> PENDING solo como reintento explícito (registro nuevo)
- Nunca se borra: los registros reemplazados quedan en el historial
- Una confirmación tardía sobre un registro FAILED NO lo resucita: se
  registra como conflicto para reconciliación manual
- Una confirmación de otra transacción (p. ej. de un intento anterior)
  tampoco se aplica: es un conflicto
=============================================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

from .errors import DuplicateStake

logger = logging.getLogger(__name__)


# =============================================================================
# ESTADOS Y REGISTROS
# =============================================================================

class StakeStatus(str, Enum):
    NOT_STAKED = "NOT_STAKED"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    WITHDRAWN = "WITHDRAWN"


# Estados que ocupan asiento en el lobby
SEATED_STATUSES = (StakeStatus.PENDING, StakeStatus.CONFIRMED)


@dataclass
class StakeRecord:
    """Registro de stake de un jugador en una partida."""
    game_id: str
    player: str
    amount: int
    status: StakeStatus = StakeStatus.PENDING
    tx_hash: Optional[str] = None
    nonce: Optional[str] = None
    submitted_at: float = field(default_factory=time.time)
    confirmed_at: Optional[float] = None
    block_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    attempt: int = 1
    settled_tx_hash: Optional[str] = None   # Tx de reembolso o retiro

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gameId": self.game_id,
            "playerAddress": self.player,
            "amount": str(self.amount),
            "status": self.status.value,
            "txHash": self.tx_hash,
            "nonce": self.nonce,
            "submittedAt": self.submitted_at,
            "confirmedAt": self.confirmed_at,
            "blockRef": self.block_ref,
            "failureReason": self.failure_reason,
            "attempt": self.attempt,
            "settledTxHash": self.settled_tx_hash,
        }


class LedgerEventKind(str, Enum):
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    WITHDRAWN = "WITHDRAWN"


@dataclass(frozen=True)
class LedgerEvent:
    """Mensaje del ledger hacia la caché (confirmación, fallo o liquidación)."""
    kind: LedgerEventKind
    game_id: str
    player: str
    tx_hash: Optional[str] = None
    block_ref: Optional[str] = None
    detail: str = ""


EventListener = Callable[[LedgerEvent, bool], Awaitable[None]]


# =============================================================================
# CACHÉ
# =============================================================================

class StakeLedgerCache:
    """
    Tabla compartida de stakes. Construida una vez al arrancar y pasada por
    referencia al Session Manager y al worker de reconciliación.
    """

    def __init__(self, audit=None, clock: Callable[[], float] = time.time):
        self._records: Dict[Tuple[str, str], StakeRecord] = {}
        self._history: Dict[Tuple[str, str], List[StakeRecord]] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._locks_guard = asyncio.Lock()
        self._listeners: List[EventListener] = []
        self.events: asyncio.Queue = asyncio.Queue()
        self.conflicts: List[Dict[str, Any]] = []
        self.audit = audit
        self.clock = clock

    @staticmethod
    def _key(game_id: str, player: str) -> Tuple[str, str]:
        return (game_id, player.lower())

    async def _lock_for(self, key: Tuple[str, str]) -> asyncio.Lock:
        async with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    async def _audit(self, record: StakeRecord, from_status: Optional[StakeStatus]) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.record_transition(record, from_status)
        except Exception:
            logger.exception("[LEDGER] No se pudo auditar %s/%s", record.game_id, record.player)

    # -------------------------------------------------------------------------
    # ESCRITURAS (CAS)
    # -------------------------------------------------------------------------

    async def record_pending(
        self,
        game_id: str,
        player: str,
        amount: int,
        tx_hash: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> StakeRecord:
        """
        Crea un registro PENDING. Falla con DuplicateStake si ya existe uno
        no-FAILED. Si el último es FAILED, es un reintento: registro nuevo
        con attempt + 1 y el anterior queda en el historial.
        """
        key = self._key(game_id, player)
        lock = await self._lock_for(key)
        async with lock:
            current = self._records.get(key)
            if current is not None and current.status != StakeStatus.FAILED:
                raise DuplicateStake(
                    f"Ya existe un stake {current.status.value} para {key[1]} en {game_id}"
                )
            attempt = 1 if current is None else current.attempt + 1
            record = StakeRecord(
                game_id=game_id,
                player=key[1],
                amount=amount,
                tx_hash=tx_hash,
                nonce=nonce or f"{game_id}:{key[1]}:{attempt}",
                submitted_at=self.clock(),
                attempt=attempt,
            )
            self._records[key] = record
            self._history.setdefault(key, []).append(record)
            snapshot = replace(record)

        logger.info("[STAKE] PENDING %s en %s (intento %d)", key[1], game_id, attempt)
        await self._audit(snapshot, current.status if current else None)
        return snapshot

    async def attach_tx(self, game_id: str, player: str, tx_hash: str) -> bool:
        """Asocia el hash de la transacción al registro PENDING."""
        key = self._key(game_id, player)
        lock = await self._lock_for(key)
        async with lock:
            record = self._records.get(key)
            if record is None or record.status != StakeStatus.PENDING:
                return False
            record.tx_hash = tx_hash
            return True

    async def _transition(
        self,
        game_id: str,
        player: str,
        expected: StakeStatus,
        target: StakeStatus,
        mutate: Callable[[StakeRecord], None],
    ) -> Tuple[bool, Optional[StakeRecord]]:
        key = self._key(game_id, player)
        lock = await self._lock_for(key)
        async with lock:
            record = self._records.get(key)
            if record is None or record.status != expected:
                return False, (replace(record) if record else None)
            record.status = target
            mutate(record)
            snapshot = replace(record)
        await self._audit(snapshot, expected)
        return True, snapshot

    async def mark_confirmed(
        self,
        game_id: str,
        player: str,
        tx_ref: Optional[str],
        block_ref: Optional[str] = None,
    ) -> bool:
        """
        PENDING -> CONFIRMED. Si el registro ya no está PENDING, o espera
        otra transacción, la confirmación se rechaza y queda como conflicto.
        """
        key = self._key(game_id, player)
        lock = await self._lock_for(key)
        async with lock:
            record = self._records.get(key)
            matches = record is not None and (tx_ref is None or record.tx_hash in (None, tx_ref))
            applied = matches and record.status == StakeStatus.PENDING
            if applied:
                record.status = StakeStatus.CONFIRMED
                record.tx_hash = tx_ref or record.tx_hash
                record.block_ref = block_ref
                record.confirmed_at = self.clock()
            current = replace(record) if record else None

        if applied:
            await self._audit(current, StakeStatus.PENDING)
            logger.info("[STAKE] CONFIRMED %s en %s (tx %s)", player.lower(), game_id, tx_ref)
            return True

        if matches and current.status != StakeStatus.FAILED:
            # Confirmación repetida de la misma transacción
            return False

        self.record_conflict(game_id, player, tx_ref, current.status if current else None,
                             block_ref=block_ref, detail="confirmación tardía")
        return False

    def record_conflict(
        self,
        game_id: str,
        player: str,
        tx_ref: Optional[str],
        current_status: Optional[StakeStatus],
        block_ref: Optional[str] = None,
        detail: str = "",
    ) -> Dict[str, Any]:
        """Deja constancia de una divergencia con el ledger para el operador."""
        conflict = {
            "gameId": game_id,
            "playerAddress": player.lower(),
            "txHash": tx_ref,
            "blockRef": block_ref,
            "currentStatus": current_status.value if current_status else None,
            "detail": detail,
            "detectedAt": self.clock(),
        }
        self.conflicts.append(conflict)
        logger.warning(
            "[RECONCILE] Conflicto (%s): %s en %s sobre estado %s",
            detail, player.lower(), game_id, conflict["currentStatus"],
        )
        return conflict

    async def mark_failed(self, game_id: str, player: str, reason: str) -> bool:
        """PENDING -> FAILED."""
        def apply(record: StakeRecord) -> None:
            record.failure_reason = reason

        applied, _ = await self._transition(
            game_id, player, StakeStatus.PENDING, StakeStatus.FAILED, apply
        )
        if applied:
            logger.info("[STAKE] FAILED %s en %s: %s", player.lower(), game_id, reason)
        return applied

    async def mark_refunded(self, game_id: str, player: str, tx_hash: Optional[str] = None) -> bool:
        """CONFIRMED -> REFUNDED."""
        def apply(record: StakeRecord) -> None:
            record.settled_tx_hash = tx_hash

        applied, _ = await self._transition(
            game_id, player, StakeStatus.CONFIRMED, StakeStatus.REFUNDED, apply
        )
        if applied:
            logger.info("[SETTLEMENT] REFUNDED %s en %s", player.lower(), game_id)
        return applied

    async def mark_withdrawn(self, game_id: str, player: str, tx_hash: Optional[str] = None) -> bool:
        """CONFIRMED -> WITHDRAWN (premio pagado)."""
        def apply(record: StakeRecord) -> None:
            record.settled_tx_hash = tx_hash

        applied, _ = await self._transition(
            game_id, player, StakeStatus.CONFIRMED, StakeStatus.WITHDRAWN, apply
        )
        if applied:
            logger.info("[SETTLEMENT] WITHDRAWN %s en %s", player.lower(), game_id)
        return applied

    # -------------------------------------------------------------------------
    # LECTURAS
    # -------------------------------------------------------------------------

    def get(self, game_id: str, player: str) -> Optional[StakeRecord]:
        """Copia del registro vigente, o None."""
        record = self._records.get(self._key(game_id, player))
        return replace(record) if record else None

    def history(self, game_id: str, player: str) -> List[StakeRecord]:
        return [replace(r) for r in self._history.get(self._key(game_id, player), [])]

    def for_game(self, game_id: str) -> List[StakeRecord]:
        return [replace(r) for key, r in list(self._records.items()) if key[0] == game_id]

    def list_pending(self, older_than: float, now: Optional[float] = None) -> Iterator[StakeRecord]:
        """
        Registros PENDING con antigüedad >= older_than segundos.

        Generador perezoso sobre una instantánea tomada al llamar: cada
        llamada toma una instantánea nueva y las mutaciones concurrentes no
        afectan la iteración en curso.
        """
        cutoff = (self.clock() if now is None else now) - older_than
        snapshot = [
            replace(r) for r in list(self._records.values())
            if r.status == StakeStatus.PENDING and r.submitted_at <= cutoff
        ]

        def _iterate() -> Iterator[StakeRecord]:
            for record in snapshot:
                yield record

        return _iterate()

    # -------------------------------------------------------------------------
    # COLA DE EVENTOS
    # -------------------------------------------------------------------------

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def publish(self, event: LedgerEvent) -> None:
        await self.events.put(event)

    async def apply_event(self, event: LedgerEvent) -> bool:
        """Aplica la transición CAS del evento y notifica a los listeners."""
        if event.kind == LedgerEventKind.CONFIRMED:
            applied = await self.mark_confirmed(event.game_id, event.player, event.tx_hash, event.block_ref)
        elif event.kind == LedgerEventKind.FAILED:
            applied = await self.mark_failed(event.game_id, event.player, event.detail or "fallida")
        elif event.kind == LedgerEventKind.REFUNDED:
            applied = await self.mark_refunded(event.game_id, event.player, event.tx_hash)
        else:
            applied = await self.mark_withdrawn(event.game_id, event.player, event.tx_hash)

        for listener in list(self._listeners):
            try:
                await listener(event, applied)
            except Exception:
                logger.exception("[LEDGER] Listener falló procesando %s", event)
        return applied

    async def consume(self, stop_event: asyncio.Event, poll_interval: float = 0.5) -> None:
        """Consume la cola hasta que stop_event se active."""
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(self.events.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
            try:
                await self.apply_event(event)
            finally:
                self.events.task_done()

    async def drain(self) -> int:
        """Aplica todos los eventos encolados (sin esperar nuevos)."""
        count = 0
        while not self.events.empty():
            event = self.events.get_nowait()
            try:
                await self.apply_event(event)
            finally:
                self.events.task_done()
            count += 1
        return count
