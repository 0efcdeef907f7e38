"""
=============================================================================
PEPASUR - Esquemas de la API (Pydantic)
=============================================================================
Cuerpos de las solicitudes HTTP. Los campos viajan en camelCase (como los
espera el frontend) y se exponen en snake_case dentro de Python.
=============================================================================
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StakeRequest(CamelModel):
    """Request para hacer stake y sentarse en una partida."""
    game_id: str = Field(..., alias="gameId", min_length=1)
    player_address: str = Field(..., alias="playerAddress", min_length=1)
    room_code: str = Field(..., alias="roomCode", min_length=1)


class RecordStakeRequest(StakeRequest):
    """Stake que el jugador ya firmó desde su wallet (joinGame)."""
    transaction_hash: str = Field(..., alias="transactionHash", min_length=1)


class CreateGameRequest(CamelModel):
    """Request para crear una partida (valores por defecto desde el entorno)."""
    creator_address: str = Field(..., alias="creatorAddress", min_length=1)
    stake_amount: Optional[int] = Field(None, alias="stakeAmount", description="Stake por jugador en wei")
    min_players: Optional[int] = Field(None, alias="minPlayers")
    max_players: Optional[int] = Field(None, alias="maxPlayers")


class NightActionRequest(CamelModel):
    player_address: str = Field(..., alias="playerAddress", min_length=1)
    target: str = Field(..., min_length=1)


class VoteRequest(CamelModel):
    """vote = None es abstención."""
    player_address: str = Field(..., alias="playerAddress", min_length=1)
    vote: Optional[str] = None


class AdminActionRequest(CamelModel):
    reason: Optional[str] = Field(None, max_length=200)
    force: bool = False
