"""
=============================================================================
PEPASUR - Rastro de Auditoría de Stakes
=============================================================================
Escribe cada transición de stake aplicada y cada resultado de partida en
la base de datos (SQLAlchemy async). Se habilita con PEPASUR_DATABASE_URL.
=============================================================================
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from .models import Base, GameResult, StakeEvent

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class StakeAuditLog:
    """Sumidero append-only de la caché de stakes y del gestor de sesiones."""

    def __init__(self, database_url: str, echo: bool = False):
        self.engine = create_async_engine(database_url, echo=echo)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        self._last_hash = GENESIS_HASH
        self._write_lock = asyncio.Lock()

    async def init_models(self) -> None:
        """Crea las tablas si no existen y recupera el último hash de la cadena."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with self.session_factory() as db:
            result = await db.execute(select(StakeEvent).order_by(StakeEvent.id.desc()).limit(1))
            last = result.scalar_one_or_none()
            if last is not None:
                self._last_hash = last.event_hash
        logger.info("[LEDGER] Auditoría lista (%s)", self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        await self.engine.dispose()

    # -------------------------------------------------------------------------
    # ESCRITURA
    # -------------------------------------------------------------------------

    async def record_transition(self, record, from_status) -> StakeEvent:
        """Una fila por transición aplicada sobre un StakeRecord."""
        async with self._write_lock:
            row = StakeEvent(
                game_id=record.game_id,
                player_address=record.player,
                attempt=record.attempt,
                from_status=from_status.value if from_status is not None else None,
                to_status=record.status.value,
                amount=str(record.amount),
                tx_hash=record.settled_tx_hash or record.tx_hash,
                block_ref=record.block_ref,
                reason=record.failure_reason,
                previous_hash=self._last_hash,
                created_at=datetime.now(timezone.utc),
            )
            row.event_hash = row.compute_event_hash()
            async with self.session_factory() as db:
                async with db.begin():
                    db.add(row)
            self._last_hash = row.event_hash
            return row

    async def record_game_result(self, session) -> GameResult:
        """Guarda el resultado de una sesión terminal."""
        plan = session.payout_plan
        row = GameResult(
            game_id=session.game_id,
            room_code=session.room_code,
            phase=session.phase.value,
            stake_amount=str(session.stake_amount),
            players=[p.to_dict(reveal_role=True) for p in session.players],
            winning_faction=session.winning_faction.value if session.winning_faction else None,
            winners=list(session.winners),
            payouts=plan.to_dict() if plan is not None else None,
            role_commit=session.role_commit,
            role_salt=session.role_salt,
            cancel_reason=session.cancel_reason,
            ended_at=datetime.now(timezone.utc),
        )
        async with self.session_factory() as db:
            async with db.begin():
                await db.merge(row)
        logger.info("[SETTLEMENT] Resultado de %s auditado (%s)", session.game_id, row.phase)
        return row

    # -------------------------------------------------------------------------
    # LECTURA Y VERIFICACIÓN
    # -------------------------------------------------------------------------

    async def stake_events(self, game_id: Optional[str] = None) -> List[StakeEvent]:
        async with self.session_factory() as db:
            query = select(StakeEvent).order_by(StakeEvent.id)
            if game_id is not None:
                query = query.where(StakeEvent.game_id == game_id)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def game_result(self, game_id: str) -> Optional[GameResult]:
        async with self.session_factory() as db:
            return await db.get(GameResult, game_id)

    async def verify_chain(self) -> Dict[str, Any]:
        """
        Recalcula la cadena de hashes completa.
        Detecta filas alteradas o eliminadas directamente en la BD.
        """
        events = await self.stake_events()
        previous = GENESIS_HASH
        for row in events:
            if row.previous_hash != previous or row.compute_event_hash() != row.event_hash:
                logger.error("[LEDGER] Cadena de auditoría rota en el evento %s", row.id)
                return {"valid": False, "events": len(events), "brokenAt": row.id}
            previous = row.event_hash
        return {"valid": True, "events": len(events), "brokenAt": None}
