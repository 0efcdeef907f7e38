"""
=============================================================================
PEPASUR - Worker de Reconciliación
=============================================================================
Proceso periódico que resuelve la divergencia entre los stakes esperados
por las sesiones y los confirmados por el ledger.

Por cada registro PENDING más viejo que pending_timeout:
- Sin tx_hash: se busca la transacción firmada para su clave de envío; si
  no existe y pasó failure_grace, el envío se perdió -> FAILED
- Ledger CONFIRMED: confirmación no vista -> mismo camino que una normal
- Ledger REVERTED: -> FAILED
- Ledger PENDING/UNKNOWN más allá de failure_grace: -> FAILED, y el hash
  queda vigilado; si aterriza después, el depósito huérfano se reembolsa
- Error del ledger: se registra y se reintenta en la siguiente pasada

Es el único camino que desbloquea una sesión con un stake fantasma.
=============================================================================
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .config import StakingConfig
from .errors import PepasurError
from .ledger_client import LedgerClient, TxKind, TxStatus
from .session_manager import SessionManager
from .stake_cache import LedgerEvent, LedgerEventKind, StakeLedgerCache, StakeRecord

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Conteo por resultado de una pasada."""
    scanned: int = 0
    confirmed: int = 0
    failed: int = 0
    still_pending: int = 0
    ledger_errors: int = 0
    orphans_found: int = 0
    sessions_ticked: int = 0
    intents_retried: int = 0
    sessions_cleaned: int = 0

    @property
    def changed(self) -> bool:
        return any((self.confirmed, self.failed, self.orphans_found, self.sessions_ticked,
                    self.intents_retried, self.sessions_cleaned))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconciliationWorker:

    def __init__(
        self,
        manager: SessionManager,
        cache: StakeLedgerCache,
        ledger: LedgerClient,
        pending_timeout: float = 60.0,
        failure_grace: float = 300.0,
        interval: float = 10.0,
        clock: Callable[[], float] = time.time,
        orphan_watch: Optional[float] = None,
    ):
        self.manager = manager
        self.cache = cache
        self.ledger = ledger
        self.pending_timeout = pending_timeout
        self.failure_grace = failure_grace
        self.interval = interval
        self.clock = clock
        # Ventana durante la que un hash fallado por gracia se sigue consultando
        self.orphan_watch = failure_grace * 4 if orphan_watch is None else orphan_watch
        self.watched: Dict[str, Tuple[str, str, float]] = {}
        self.last_report: Optional[ReconciliationReport] = None
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: StakingConfig,
        manager: SessionManager,
        cache: StakeLedgerCache,
        ledger: LedgerClient,
    ) -> "ReconciliationWorker":
        return cls(
            manager,
            cache,
            ledger,
            pending_timeout=settings.stake_pending_timeout,
            failure_grace=settings.stake_failure_grace,
            interval=settings.reconcile_interval,
            clock=manager.clock,
        )

    async def _fail(
        self,
        record: StakeRecord,
        reason: str,
        report: ReconciliationReport,
        tx_hash: Optional[str] = None,
    ) -> bool:
        event = LedgerEvent(LedgerEventKind.FAILED, record.game_id, record.player,
                            tx_hash=tx_hash or record.tx_hash, detail=reason)
        if await self.cache.apply_event(event):
            report.failed += 1
            logger.info("[RECONCILE] %s en %s -> FAILED (%s)", record.player, record.game_id, reason)
            return True
        return False

    async def _reconcile_record(self, record: StakeRecord, now: float, report: ReconciliationReport) -> None:
        age = now - record.submitted_at
        tx_hash = record.tx_hash
        if tx_hash is None:
            handle = self.ledger.lookup_submission(TxKind.STAKE, record.game_id, record.player, record.nonce)
            if handle is None:
                if age >= self.failure_grace:
                    await self._fail(record, "submission lost", report)
                else:
                    report.still_pending += 1
                return
            tx_hash = handle.tx_hash
            await self.cache.attach_tx(record.game_id, record.player, tx_hash)

        try:
            status = await self.ledger.get_transaction_status(tx_hash)
        except PepasurError as exc:
            report.ledger_errors += 1
            logger.warning("[RECONCILE] No se pudo consultar %s: %s", tx_hash, exc.message)
            return

        if status == TxStatus.CONFIRMED:
            event = LedgerEvent(LedgerEventKind.CONFIRMED, record.game_id, record.player,
                                tx_hash=tx_hash, detail="reconciliation")
            if await self.cache.apply_event(event):
                report.confirmed += 1
                logger.info("[RECONCILE] %s en %s -> CONFIRMED (no visto)", record.player, record.game_id)
        elif status == TxStatus.REVERTED:
            await self._fail(record, "reverted on-chain", report, tx_hash)
        elif age >= self.failure_grace:
            if await self._fail(record, f"{status.value.lower()} past grace", report, tx_hash):
                self.watched[tx_hash] = (record.game_id, record.player, now)
        else:
            report.still_pending += 1

    async def _check_watched(self, now: float, report: ReconciliationReport) -> None:
        """Hashes fallados por gracia que todavía pueden aterrizar."""
        for tx_hash, (game_id, player, failed_at) in list(self.watched.items()):
            try:
                status = await self.ledger.get_transaction_status(tx_hash)
            except PepasurError as exc:
                report.ledger_errors += 1
                logger.warning("[RECONCILE] No se pudo consultar %s: %s", tx_hash, exc.message)
                continue

            if status == TxStatus.CONFIRMED:
                del self.watched[tx_hash]
                report.orphans_found += 1
                logger.warning("[RECONCILE] %s aterrizó tras fallar %s en %s", tx_hash, player, game_id)
                # El registro está FAILED: la caché lo marca como conflicto y el
                # Session Manager reembolsa el depósito huérfano
                await self.cache.apply_event(LedgerEvent(
                    LedgerEventKind.CONFIRMED, game_id, player, tx_hash=tx_hash, detail="orphan",
                ))
            elif status == TxStatus.REVERTED:
                del self.watched[tx_hash]
            elif now - failed_at >= self.orphan_watch:
                del self.watched[tx_hash]
                logger.error("[RECONCILE] %s sigue sin resolver en %s; requiere operador", tx_hash, game_id)

    async def run_once(self, now: Optional[float] = None) -> ReconciliationReport:
        """Una pasada completa de reconciliación."""
        now = self.clock() if now is None else now
        report = ReconciliationReport()

        await self._check_watched(now, report)
        for record in self.cache.list_pending(older_than=self.pending_timeout, now=now):
            report.scanned += 1
            await self._reconcile_record(record, now, report)

        report.sessions_ticked = await self.manager.tick(now)
        report.intents_retried = await self.manager.retry_failed_intents()
        report.sessions_cleaned = self.manager.cleanup_finished(now=now)

        self.last_report = report
        if report.changed:
            logger.info("[RECONCILE] Pasada: %s", report.to_dict())
        return report

    # -------------------------------------------------------------------------
    # CICLO EN SEGUNDO PLANO
    # -------------------------------------------------------------------------

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("[RECONCILE] Pasada fallida")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info("[RECONCILE] Worker iniciado (cada %.1fs)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("[RECONCILE] Worker detenido")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
