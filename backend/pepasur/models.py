"""
=============================================================================
PEPASUR - Modelos de Auditoría (SQLAlchemy)
=============================================================================
Rastro de auditoría append-only de los stakes y de los resultados de cada
partida. La caché en memoria es la fuente operativa; estas tablas son el
historial inmutable para reconciliación manual.

Principios:
- Inmutabilidad: stake_events solo admite INSERT
- Cadena de integridad: cada evento lleva SHA256(hash_anterior + datos)
- Tipos genéricos: funciona sobre PostgreSQL y SQLite
=============================================================================
"""

import hashlib
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, event
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


class AppendOnlyViolation(Exception):
    """Intento de modificar o borrar una fila de auditoría."""


# =============================================================================
# TABLA: STAKE_EVENTS (Transiciones de stake)
# =============================================================================

class StakeEvent(Base):
    """
    Una fila por transición de stake aplicada.

    Los montos se guardan como texto decimal: los wei exceden BIGINT.
    """
    __tablename__ = "stake_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    game_id: Mapped[str] = mapped_column(String(36), nullable=False)
    player_address: Mapped[str] = mapped_column(String(42), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    from_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)

    amount: Mapped[str] = mapped_column(String(78), nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    block_ref: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cadena de integridad
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_stake_events_game", "game_id"),
        Index("idx_stake_events_player", "game_id", "player_address"),
        Index("idx_stake_events_created_at", "created_at"),
    )

    def compute_event_hash(self) -> str:
        """SHA256(hash_anterior:juego:jugador:intento:estado:monto:tx:fecha)."""
        hash_input = ":".join([
            self.previous_hash,
            self.game_id,
            self.player_address,
            str(self.attempt),
            self.from_status or "-",
            self.to_status,
            self.amount,
            self.tx_hash or "-",
            self.created_at.strftime("%Y-%m-%dT%H:%M:%S.%f"),
        ])
        return hashlib.sha256(hash_input.encode()).hexdigest()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "gameId": self.game_id,
            "playerAddress": self.player_address,
            "attempt": self.attempt,
            "fromStatus": self.from_status,
            "toStatus": self.to_status,
            "amount": self.amount,
            "txHash": self.tx_hash,
            "blockRef": self.block_ref,
            "reason": self.reason,
            "eventHash": self.event_hash,
            "createdAt": self.created_at.isoformat(),
        }


# =============================================================================
# TABLA: GAME_RESULTS (Resultado final de cada partida)
# =============================================================================

class GameResult(Base):
    """Una fila por sesión terminal (RESOLVED o CANCELLED)."""
    __tablename__ = "game_results"

    game_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    room_code: Mapped[str] = mapped_column(String(6), nullable=False)
    phase: Mapped[str] = mapped_column(String(16), nullable=False)
    stake_amount: Mapped[str] = mapped_column(String(78), nullable=False)
    players: Mapped[list] = mapped_column(JSON, nullable=False)
    winning_faction: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    winners: Mapped[list] = mapped_column(JSON, nullable=False)
    payouts: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    role_commit: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    role_salt: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ended_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "gameId": self.game_id,
            "roomCode": self.room_code,
            "phase": self.phase,
            "stakeAmount": self.stake_amount,
            "players": self.players,
            "winningFaction": self.winning_faction,
            "winners": self.winners,
            "payouts": self.payouts,
            "roleCommit": self.role_commit,
            "roleSalt": self.role_salt,
            "cancelReason": self.cancel_reason,
            "endedAt": self.ended_at.isoformat(),
        }


# =============================================================================
# EVENT LISTENERS PARA INMUTABILIDAD
# =============================================================================

@event.listens_for(StakeEvent, "before_insert")
def stake_event_before_insert(mapper, connection, target: StakeEvent):
    """Calcula el hash de la cadena antes de insertar."""
    target.event_hash = target.compute_event_hash()


@event.listens_for(StakeEvent, "before_update")
def stake_event_before_update(mapper, connection, target: StakeEvent):
    raise AppendOnlyViolation(f"stake_events es append-only (id={target.id})")


@event.listens_for(StakeEvent, "before_delete")
def stake_event_before_delete(mapper, connection, target: StakeEvent):
    raise AppendOnlyViolation(f"stake_events es append-only (id={target.id})")
