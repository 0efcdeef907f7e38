"""
=============================================================================
PEPASUR - Endpoints de Staking y Partidas
=============================================================================
Capa de ruteo delgada sobre el Session Manager. Todas las respuestas son
{"success": true, "data": ...} o {"success": false, "error": ..., "code": ...}.
=============================================================================
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import SessionConfig
from .errors import NotFound, PepasurError, ValidationError
from .schemas import CreateGameRequest, NightActionRequest, RecordStakeRequest, StakeRequest, VoteRequest
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Pepasur"])


def get_manager(request: Request) -> SessionManager:
    return request.app.state.manager


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


# =============================================================================
# MANEJO DE ERRORES
# =============================================================================

async def pepasur_error_handler(request: Request, exc: PepasurError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.warning("[API] %s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in errors
    )
    return JSONResponse(status_code=400, content=ValidationError(detail or "Solicitud inválida").to_dict())


# =============================================================================
# ENDPOINTS - STAKING
# =============================================================================

@router.post("/stake")
async def stake(body: StakeRequest, manager: SessionManager = Depends(get_manager)):
    """
    Stake + asiento. Retorna el StakeRecord (normalmente PENDING: la
    confirmación llega después por Socket.IO o consultando /staking).
    """
    record = await manager.stake_for_game(body.game_id, body.player_address, body.room_code)
    return ok(record.to_dict())


@router.post("/stake/record")
async def record_stake(body: RecordStakeRequest, manager: SessionManager = Depends(get_manager)):
    """Registra un stake firmado por el jugador; el servidor verifica la transacción."""
    record = await manager.stake_for_game(
        body.game_id, body.player_address, body.room_code, tx_hash=body.transaction_hash,
    )
    return ok(record.to_dict())


@router.get("/staking")
async def list_staked_games(manager: SessionManager = Depends(get_manager)):
    return ok(manager.list_staked_games())


@router.get("/staking/{game_id}")
async def staking_summary(game_id: str, manager: SessionManager = Depends(get_manager)):
    return ok(manager.staking_summary(game_id))


@router.get("/staking/{game_id}/{player_address}")
async def player_stake(game_id: str, player_address: str, manager: SessionManager = Depends(get_manager)):
    return ok(manager.player_stake(game_id, player_address).to_dict())


@router.get("/balance/{player_address}")
async def balance(player_address: str, manager: SessionManager = Depends(get_manager)):
    return ok(await manager.check_balance(player_address))


# =============================================================================
# ENDPOINTS - PARTIDAS
# =============================================================================

@router.post("/game/create")
async def create_game(body: CreateGameRequest, manager: SessionManager = Depends(get_manager)):
    config = SessionConfig.with_defaults(
        manager.settings,
        creator=body.creator_address,
        stake_amount=body.stake_amount,
        min_players=body.min_players,
        max_players=body.max_players,
    )
    game_id = await manager.create_session(config)
    session = manager.get_session(game_id=game_id)
    return ok({"gameId": game_id, "roomCode": session.room_code})


@router.get("/game")
async def list_active_games(manager: SessionManager = Depends(get_manager)):
    return ok(manager.list_active_games())


@router.get("/game/room/{room_code}")
async def game_by_room(room_code: str, manager: SessionManager = Depends(get_manager)):
    session = manager.get_session(room_code=room_code)
    if session is None:
        raise NotFound(f"Sala {room_code} no encontrada")
    return ok(session.public_state())


@router.get("/game/{game_id}")
async def game_state(
    game_id: str,
    player_address: Optional[str] = Query(None, alias="playerAddress"),
    manager: SessionManager = Depends(get_manager),
):
    session = manager.require_session(game_id)
    state = session.state_for(player_address) if player_address else session.public_state()
    return ok(state)


@router.post("/game/{game_id}/start")
async def start_game(game_id: str, manager: SessionManager = Depends(get_manager)):
    session = await manager.start_game(game_id)
    return ok(session.public_state())


@router.post("/game/{game_id}/action/night")
async def night_action(game_id: str, body: NightActionRequest, manager: SessionManager = Depends(get_manager)):
    session = await manager.submit_night_action(game_id, body.player_address, body.target)
    return ok(session.state_for(body.player_address))


@router.post("/game/{game_id}/vote/submit")
async def submit_vote(game_id: str, body: VoteRequest, manager: SessionManager = Depends(get_manager)):
    session = await manager.submit_vote(game_id, body.player_address, body.vote)
    return ok(session.state_for(body.player_address))


@router.post("/game/{game_id}/advance")
async def advance(game_id: str, manager: SessionManager = Depends(get_manager)):
    session = await manager.advance_phase(game_id)
    return ok(session.public_state())


@router.get("/game/{game_id}/history")
async def game_history(game_id: str, manager: SessionManager = Depends(get_manager)):
    """Historial completo: rondas, bitácora de fases y resultado."""
    return ok(manager.game_history(game_id))


@router.get("/game/{game_id}/roles/verify")
async def verify_roles(game_id: str, manager: SessionManager = Depends(get_manager)):
    """Revela los roles y el salt para comprobar el commit publicado al iniciar."""
    return ok(manager.verify_roles(game_id))
