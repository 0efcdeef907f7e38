"""
=============================================================================
PEPASUR - Gestor de Sesiones
=============================================================================
Registro de sesiones activas por game_id y código de sala. Enruta stakes y
acciones a la sesión correcta y traduce los eventos del ledger en
transiciones de la máquina de estados.

Concurrencia:
- Un asyncio.Lock por sesión serializa todas sus transiciones
- stake_for_game mantiene el lock de la sesión durante la escritura en la
  caché y la asignación del asiento: dos stakes por el último asiento
  nunca tienen éxito a la vez
- El envío al ledger y la espera de confirmación corren fuera del lock,
  como tareas independientes
=============================================================================
"""

import asyncio
import logging
import re
import secrets
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .config import SessionConfig, StakingConfig
from .errors import (
    AlreadyJoined,
    InvalidConfig,
    InvalidPhase,
    InvalidRoomCode,
    LedgerTimeout,
    NotFound,
    PepasurError,
    RoomFull,
    ValidationError,
)
from .game_session import GameSession, Phase
from .ledger_client import ConfirmationOutcome, LedgerClient, TxHandle
from .payouts import FeeIntent, Intent, PayoutIntent, RefundIntent
from .stake_cache import LedgerEvent, LedgerEventKind, StakeLedgerCache, StakeRecord, StakeStatus

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

ROOM_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$")
ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


def validate_address(address: str) -> str:
    if not address or not ADDRESS_PATTERN.match(address):
        raise ValidationError(f"Dirección inválida: {address!r}")
    return address.lower()


class SessionManager:
    """Tabla de sesiones del proceso. Se construye una vez y se pasa hacia abajo."""

    def __init__(
        self,
        settings: StakingConfig,
        ledger: LedgerClient,
        cache: StakeLedgerCache,
        notifier: Optional[Notifier] = None,
        audit=None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.ledger = ledger
        self.cache = cache
        self.notifier = notifier
        self.audit = audit
        self.clock = clock

        self.sessions: Dict[str, GameSession] = {}
        self.room_codes: Dict[str, str] = {}   # room_code -> game_id
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.failed_intents: List[Intent] = []
        self.completed_intents: List[Dict[str, Any]] = []

        cache.add_listener(self.on_ledger_event)

    # =========================================================================
    # REGISTRO
    # =========================================================================

    def _lock(self, game_id: str) -> asyncio.Lock:
        lock = self._locks.get(game_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[game_id] = lock
        return lock

    def _generate_room_code(self) -> str:
        while True:
            code = "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(6))
            if code not in self.room_codes:
                return code

    async def create_session(self, config: SessionConfig) -> str:
        """Crea una sesión en LOBBY. El creador no queda sentado: hace stake como todos."""
        if config.stake_amount <= 0:
            raise InvalidConfig("El monto de stake debe ser mayor a 0")
        if config.min_players < 1:
            raise InvalidConfig("min_players debe ser al menos 1")
        if config.min_players > config.max_players:
            raise InvalidConfig("min_players no puede superar a max_players")
        config.creator = validate_address(config.creator)

        game_id = str(uuid.uuid4())
        room_code = self._generate_room_code()
        session = GameSession(
            game_id=game_id,
            room_code=room_code,
            config=config,
            now=self.clock(),
            rules=self.settings.rules,
            house_cut_bps=self.settings.house_cut_bps,
            fee_recipient=self.settings.fee_recipient.lower(),
        )
        self.sessions[game_id] = session
        self.room_codes[room_code] = game_id
        logger.info("[SESSION] Partida %s (sala %s) creada por %s", game_id, room_code, config.creator)
        return game_id

    def get_session(self, game_id: Optional[str] = None, room_code: Optional[str] = None) -> Optional[GameSession]:
        if game_id is not None:
            return self.sessions.get(game_id)
        if room_code is not None:
            found = self.room_codes.get(room_code.upper())
            return self.sessions.get(found) if found else None
        return None

    def require_session(self, game_id: str) -> GameSession:
        session = self.sessions.get(game_id)
        if session is None:
            raise NotFound(f"Partida {game_id} no encontrada")
        return session

    # =========================================================================
    # STAKE + ASIENTO
    # =========================================================================

    async def stake_for_game(
        self,
        game_id: str,
        player: str,
        room_code: str,
        tx_hash: Optional[str] = None,
    ) -> StakeRecord:
        """
        Stake y asiento como operación compuesta.

        Bajo el lock de la sesión: valida asiento, registra PENDING y sienta
        al jugador. Fuera del lock: envía la transacción, o verifica la que el
        jugador ya firmó (tx_hash). Si el envío falla, el registro pasa a
        FAILED y el asiento se libera antes de propagar el error.
        """
        if not room_code or not ROOM_CODE_PATTERN.match(room_code.upper()):
            raise InvalidRoomCode(f"Código de sala inválido: {room_code!r}")
        if tx_hash is not None and not TX_HASH_PATTERN.match(tx_hash):
            raise ValidationError(f"Hash de transacción inválido: {tx_hash!r}")
        player = validate_address(player)
        session = self.require_session(game_id)
        if session.room_code != room_code.upper():
            raise InvalidRoomCode("El código de sala no corresponde a la partida")

        async with self._lock(game_id):
            if not session.accepting_stakes:
                raise InvalidPhase(f"La partida ya no acepta stakes ({session.phase.value})")
            if session.find_player(player) is not None:
                raise AlreadyJoined(f"El jugador {player} ya está en la partida")
            if len(session.players) >= session.max_players:
                raise RoomFull(f"La sala {session.room_code} está llena")
            record = await self.cache.record_pending(game_id, player, session.stake_amount)
            session.join(player, StakeStatus.PENDING, self.clock())

        try:
            if tx_hash is not None:
                handle = await self.ledger.record_stake(game_id, player, record.amount, record.nonce, tx_hash)
            else:
                handle = await self.ledger.submit_stake(game_id, player, record.amount, record.nonce)
        except LedgerTimeout as exc:
            # La transacción aún puede aterrizar: queda PENDING para reconciliación
            logger.warning("[STAKE] Envío sin respuesta para %s en %s; queda PENDING", player, game_id)
            if exc.handle is not None:
                await self.cache.attach_tx(game_id, player, exc.handle.tx_hash)
                self._spawn(self._await_stake_confirmation(exc.handle))
            await self._notify_stake(game_id, player)
            return self.cache.get(game_id, player)
        except PepasurError as exc:
            logger.info("[STAKE] Envío rechazado para %s en %s: %s", player, game_id, exc.code)
            await self._release_failed(game_id, player, exc.message)
            raise

        await self.cache.attach_tx(game_id, player, handle.tx_hash)
        self._spawn(self._await_stake_confirmation(handle))
        await self._notify_stake(game_id, player)
        return self.cache.get(game_id, player)

    async def _release_failed(self, game_id: str, player: str, reason: str) -> None:
        await self.cache.mark_failed(game_id, player, reason)
        session = self.sessions.get(game_id)
        if session is None:
            return
        async with self._lock(game_id):
            session.update_stake_status(player, StakeStatus.FAILED)
        await self._notify_stake(game_id, player)

    async def _await_stake_confirmation(self, handle: TxHandle) -> None:
        result = await self.ledger.await_confirmation(handle, self.settings.confirmation_timeout)
        if result.is_confirmed:
            await self.cache.publish(LedgerEvent(
                LedgerEventKind.CONFIRMED, handle.game_id, handle.player,
                tx_hash=handle.tx_hash, block_ref=result.block_ref,
            ))
        elif result.outcome == ConfirmationOutcome.REVERTED:
            await self.cache.publish(LedgerEvent(
                LedgerEventKind.FAILED, handle.game_id, handle.player,
                tx_hash=handle.tx_hash, detail=f"revertida: {result.reason}",
            ))
        else:
            logger.info("[STAKE] Sin confirmación aún para %s (%s); queda a reconciliación",
                        handle.player, handle.tx_hash)

    # =========================================================================
    # EVENTOS DEL LEDGER
    # =========================================================================

    async def on_ledger_event(self, event: LedgerEvent, applied: bool) -> None:
        """Listener de la caché: refleja el stake en la sesión y dispara transiciones."""
        if not applied:
            if event.kind == LedgerEventKind.CONFIRMED and self._is_orphan_deposit(event):
                self._refund_orphan(event)
            return

        session = self.sessions.get(event.game_id)
        if session is None:
            if event.kind == LedgerEventKind.CONFIRMED:
                # La sesión ya fue liberada: el depósito vuelve al jugador
                record = self.cache.get(event.game_id, event.player)
                self.cache.record_conflict(event.game_id, event.player, event.tx_hash,
                                           StakeStatus.CONFIRMED, event.block_ref, detail="sesión liberada")
                self._dispatch([RefundIntent(event.game_id, event.player.lower(), record.amount, "session_released")])
            return

        late_refund = None
        async with self._lock(event.game_id):
            before = session.phase
            seated = session.find_player(event.player) is not None

            if event.kind == LedgerEventKind.CONFIRMED:
                if session.accepting_stakes and seated:
                    session.update_stake_status(event.player, StakeStatus.CONFIRMED)
                    session.try_auto_start(self.clock())
                elif seated and not session.is_terminal:
                    session.update_stake_status(event.player, StakeStatus.CONFIRMED)
                else:
                    # Confirmación tardía para una sesión que ya no la acepta
                    late_refund = RefundIntent(
                        event.game_id, event.player.lower(), session.stake_amount, "late_confirmation"
                    )
            elif event.kind == LedgerEventKind.FAILED:
                session.update_stake_status(event.player, StakeStatus.FAILED)
            elif event.kind == LedgerEventKind.REFUNDED:
                session.update_stake_status(event.player, StakeStatus.REFUNDED)
            elif event.kind == LedgerEventKind.WITHDRAWN:
                session.update_stake_status(event.player, StakeStatus.WITHDRAWN)

        await self._notify_stake(event.game_id, event.player)
        if late_refund is not None:
            logger.info("[SETTLEMENT] Reembolso por confirmación tardía: %s en %s", event.player, event.game_id)
            self._dispatch([late_refund])
        await self._after_transition(session, before)

    def _is_orphan_deposit(self, event: LedgerEvent) -> bool:
        """Depósito confirmado que no respalda ningún registro vigente."""
        if not event.tx_hash:
            return False
        record = self.cache.get(event.game_id, event.player)
        if record is None or record.tx_hash != event.tx_hash:
            return True
        return record.status == StakeStatus.FAILED

    def _refund_orphan(self, event: LedgerEvent) -> None:
        amount = None
        for record in self.cache.history(event.game_id, event.player):
            if record.tx_hash == event.tx_hash:
                amount = record.amount
        if amount is None:
            logger.error("[SETTLEMENT] Depósito huérfano %s sin registro; requiere operador", event.tx_hash)
            return
        logger.warning("[SETTLEMENT] Depósito huérfano %s de %s en %s: se reembolsa",
                       event.tx_hash, event.player, event.game_id)
        self._dispatch([RefundIntent(
            event.game_id, event.player.lower(), amount, "orphan_deposit", source_tx=event.tx_hash,
        )])

    # =========================================================================
    # INTENTS (PAGOS, COMISIÓN, REEMBOLSOS)
    # =========================================================================

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("[SESSION] Tarea en segundo plano falló", exc_info=task.exception())

    def _dispatch(self, intents: List[Intent]) -> None:
        for intent in intents:
            self._spawn(self._execute_intent(intent))

    async def _execute_intent(self, intent: Intent) -> bool:
        try:
            handle = await self.ledger.submit_payout(intent.game_id, intent.recipient, intent.amount, intent.nonce)
            result = await self.ledger.await_confirmation(handle, self.settings.confirmation_timeout)
        except PepasurError as exc:
            logger.error("[SETTLEMENT] %s a %s falló: %s", intent.kind.value, intent.recipient, exc.message)
            self.failed_intents.append(intent)
            return False

        if not result.is_confirmed:
            logger.error("[SETTLEMENT] %s a %s sin confirmar (%s)", intent.kind.value, intent.recipient,
                         result.outcome.value)
            self.failed_intents.append(intent)
            return False

        self.completed_intents.append({**intent.to_dict(), "txHash": handle.tx_hash, "blockRef": result.block_ref})
        if isinstance(intent, RefundIntent) and not intent.source_tx:
            await self.cache.publish(LedgerEvent(
                LedgerEventKind.REFUNDED, intent.game_id, intent.recipient, tx_hash=handle.tx_hash,
            ))
        elif isinstance(intent, PayoutIntent):
            await self.cache.publish(LedgerEvent(
                LedgerEventKind.WITHDRAWN, intent.game_id, intent.recipient, tx_hash=handle.tx_hash,
            ))
        elif isinstance(intent, FeeIntent):
            logger.info("[SETTLEMENT] Comisión de %s wei enviada a %s", intent.amount, intent.recipient)
        else:
            logger.info("[SETTLEMENT] Depósito huérfano %s devuelto a %s", intent.source_tx, intent.recipient)
        return True

    async def retry_failed_intents(self) -> int:
        """Reintenta los intents fallidos. El nonce estable evita pagar dos veces."""
        pending, self.failed_intents = self.failed_intents, []
        if not pending:
            return 0
        results = await asyncio.gather(*(self._execute_intent(i) for i in pending))
        return sum(1 for ok in results if ok)

    async def wait_idle(self) -> None:
        """Espera a que terminen todas las tareas en segundo plano."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def flush(self) -> None:
        """Procesa tareas y eventos encolados hasta quedar en reposo."""
        while True:
            await self.wait_idle()
            applied = await self.cache.drain()
            if applied == 0 and not self._tasks:
                return

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # TRANSICIONES Y NOTIFICACIONES
    # =========================================================================

    async def _notify(self, game_id: str, event: str, payload: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier(game_id, event, payload)
        except Exception:
            logger.exception("[SESSION] Notificación %s falló para %s", event, game_id)

    async def _notify_stake(self, game_id: str, player: str) -> None:
        record = self.cache.get(game_id, player)
        if record is not None:
            await self._notify(game_id, "stake_update", record.to_dict())

    async def _after_transition(self, session: GameSession, before: Phase) -> None:
        self._dispatch(session.drain_intents())
        if session.phase == before:
            return

        state = session.public_state()
        if session.phase == Phase.RESOLVED:
            await self._notify(session.game_id, "game_over", state)
        elif session.phase == Phase.CANCELLED:
            await self._notify(session.game_id, "session_cancelled", state)
        else:
            await self._notify(session.game_id, "phase_changed", state)

        if session.is_terminal and self.audit is not None:
            self._spawn(self.audit.record_game_result(session))

    async def _run(self, game_id: str, action: Callable[[GameSession, float], None]) -> GameSession:
        session = self.require_session(game_id)
        async with self._lock(game_id):
            before = session.phase
            action(session, self.clock())
        await self._after_transition(session, before)
        return session

    # =========================================================================
    # ACCIONES DE JUEGO
    # =========================================================================

    async def start_game(self, game_id: str, force: bool = False) -> GameSession:
        return await self._run(game_id, lambda s, now: s.start(now, force=force))

    async def cancel_session(self, game_id: str, reason: str = "cancelled") -> GameSession:
        return await self._run(game_id, lambda s, now: s.cancel(reason, now))

    async def abort_session(self, game_id: str, reason: str = "operator_abort") -> GameSession:
        logger.warning("[SESSION] Aborto de operador en %s: %s", game_id, reason)
        return await self._run(game_id, lambda s, now: s.abort(reason, now))

    async def submit_night_action(self, game_id: str, actor: str, target: str) -> GameSession:
        return await self._run(game_id, lambda s, now: s.submit_night_action(actor, target, now))

    async def submit_vote(self, game_id: str, voter: str, target: Optional[str]) -> GameSession:
        return await self._run(game_id, lambda s, now: s.submit_vote(voter, target, now))

    async def advance_phase(self, game_id: str) -> GameSession:
        return await self._run(game_id, lambda s, now: s.advance(now))

    async def post_chat(self, game_id: str, player: str, message: str) -> Dict[str, Any]:
        """Mensaje de chat de sala; se difunde a la partida como chat_message."""
        session = self.require_session(game_id)
        async with self._lock(game_id):
            entry = session.post_chat(player, message, self.clock())
        await self._notify(game_id, "chat_message", entry)
        return entry

    async def tick(self, now: Optional[float] = None) -> int:
        """Aplica los deadlines vencidos de todas las sesiones."""
        now = self.clock() if now is None else now
        changed = 0
        for session in list(self.sessions.values()):
            if session.is_terminal:
                continue
            async with self._lock(session.game_id):
                before = session.phase
                moved = session.tick(now)
            if moved:
                changed += 1
                await self._after_transition(session, before)
        return changed

    # =========================================================================
    # CONSULTAS
    # =========================================================================

    def staking_summary(self, game_id: str) -> Dict[str, Any]:
        session = self.require_session(game_id)
        records = self.cache.for_game(game_id)
        confirmed = [r for r in records if r.status == StakeStatus.CONFIRMED]
        return {
            "gameId": game_id,
            "roomCode": session.room_code,
            "phase": session.phase.value,
            "stakeAmount": str(session.stake_amount),
            "minPlayers": session.min_players,
            "maxPlayers": session.max_players,
            "seated": len(session.players),
            "confirmedCount": len(confirmed),
            "pendingCount": sum(1 for r in records if r.status == StakeStatus.PENDING),
            "totalStaked": str(sum(r.amount for r in confirmed)),
            "readyToStart": session.ready_to_start(),
            "stakes": [r.to_dict() for r in records],
        }

    def player_stake(self, game_id: str, player: str) -> StakeRecord:
        record = self.cache.get(game_id, player)
        if record is None:
            raise NotFound(f"Sin stake de {player} en {game_id}")
        return record

    async def check_balance(self, address: str) -> Dict[str, Any]:
        address = validate_address(address)
        balance = await self.ledger.query_balance(address)
        required = self.settings.default_stake_amount
        return {
            "address": address,
            "balance": str(balance),
            "requiredStake": str(required),
            "sufficient": balance >= required,
        }

    def list_staked_games(self) -> List[Dict[str, Any]]:
        return [
            self.staking_summary(game_id)
            for game_id, session in list(self.sessions.items())
            if not session.is_terminal
        ]

    def cleanup_finished(self, max_age: Optional[float] = None, now: Optional[float] = None) -> int:
        """Quita del registro las sesiones terminadas hace más de max_age segundos."""
        max_age = self.settings.finished_retention if max_age is None else max_age
        now = self.clock() if now is None else now
        removed = 0
        for game_id, session in list(self.sessions.items()):
            if session.is_terminal and session.ended_at is not None and now - session.ended_at >= max_age:
                del self.sessions[game_id]
                self.room_codes.pop(session.room_code, None)
                self._locks.pop(game_id, None)
                removed += 1
        if removed:
            logger.info("[SESSION] %d partidas terminadas liberadas", removed)
        return removed

    def list_active_games(self) -> List[Dict[str, Any]]:
        """Partidas no terminadas, con lo necesario para listarlas."""
        return [
            {
                "gameId": session.game_id,
                "roomCode": session.room_code,
                "creator": session.creator,
                "players": len(session.players),
                "minPlayers": session.min_players,
                "maxPlayers": session.max_players,
                "stakeAmount": str(session.stake_amount),
                "phase": session.phase.value,
                "day": session.day,
                "startedAt": session.started_at,
            }
            for session in list(self.sessions.values())
            if not session.is_terminal
        ]

    def game_history(self, game_id: str) -> Dict[str, Any]:
        return self.require_session(game_id).history()

    def verify_roles(self, game_id: str) -> Dict[str, Any]:
        return self.require_session(game_id).verify_roles()
