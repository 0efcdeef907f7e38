"""
=============================================================================
PEPASUR - Manejador de WebSockets (Socket.IO)
=============================================================================
Canal de notificaciones en tiempo real para las partidas. El núcleo no
conoce el transporte: el Session Manager llama a un notifier y este módulo
provee la implementación Socket.IO.

Eventos del cliente: join_game, leave_game, get_state, submit_action,
                      submit_vote, chat_message
Eventos del servidor: stake_update, phase_changed, game_over,
                      session_cancelled, joined_game, game_update,
                      chat_message, error
=============================================================================
"""

import logging
import time
from typing import Any, Dict, Optional, Tuple

import socketio

from .errors import InvalidPhase, PepasurError
from .game_session import Phase

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURACIÓN DEL SOCKET
# =============================================================================

class SocketConfig:
    """Configuración del servidor de WebSockets."""

    HEARTBEAT_INTERVAL = 25          # Segundos entre pings
    HEARTBEAT_TIMEOUT = 20           # Timeout para considerar desconexión
    CORS_ALLOWED_ORIGINS = "*"
    ROOM_PREFIX = "game_"


def room_name(game_id: str) -> str:
    return f"{SocketConfig.ROOM_PREFIX}{game_id}"


def create_sio() -> socketio.AsyncServer:
    return socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=SocketConfig.CORS_ALLOWED_ORIGINS,
        ping_timeout=SocketConfig.HEARTBEAT_TIMEOUT,
        ping_interval=SocketConfig.HEARTBEAT_INTERVAL,
    )


# =============================================================================
# NOTIFIER
# =============================================================================

class SocketNotifier:
    """Emite los eventos del Session Manager a la sala de la partida."""

    def __init__(self, sio):
        self.sio = sio

    async def __call__(self, game_id: str, event: str, payload: Dict[str, Any]) -> None:
        await self.sio.emit(event, payload, room=room_name(game_id))


# =============================================================================
# HANDLERS DE EVENTOS
# =============================================================================

class GameSocketServer:
    """Registra los handlers de Socket.IO sobre un Session Manager."""

    def __init__(self, manager, sio=None):
        self.manager = manager
        self.sio = sio if sio is not None else create_sio()
        self.sid_to_player: Dict[str, Dict[str, str]] = {}

        self.sio.on("connect", self.connect)
        self.sio.on("disconnect", self.disconnect)
        self.sio.on("join_game", self.join_game)
        self.sio.on("leave_game", self.leave_game)
        self.sio.on("get_state", self.get_state)
        self.sio.on("submit_action", self.submit_action)
        self.sio.on("submit_vote", self.submit_vote)
        self.sio.on("chat_message", self.chat_message)

    async def _error(self, sid: str, message: str, code: str = "SOCKET_ERROR") -> None:
        await self.sio.emit("error", {"message": message, "code": code}, room=sid)

    async def connect(self, sid: str, environ: dict, auth: Optional[dict] = None):
        logger.info("[WS] Nueva conexión: %s", sid)
        await self.sio.emit("connected", {
            "sid": sid,
            "message": "Conectado a Pepasur",
            "serverTime": time.time(),
        }, room=sid)

    async def disconnect(self, sid: str):
        logger.info("[WS] Desconexión: %s", sid)
        self.sid_to_player.pop(sid, None)

    async def join_game(self, sid: str, data: dict):
        """
        Une el socket a la sala de la partida.

        data = {'gameId': str, 'playerAddress': str (opcional)}
        """
        game_id = (data or {}).get("gameId")
        player = (data or {}).get("playerAddress") or ""
        if not game_id:
            await self._error(sid, "gameId requerido", "VALIDATION_ERROR")
            return

        session = self.manager.get_session(game_id=game_id)
        if session is None:
            await self._error(sid, f"Partida {game_id} no encontrada", "NOT_FOUND")
            return

        await self.sio.enter_room(sid, room_name(game_id))
        self.sid_to_player[sid] = {"gameId": game_id, "playerAddress": player.lower()}
        state = session.state_for(player) if player else session.public_state()
        await self.sio.emit("joined_game", state, room=sid)
        logger.info("[WS] %s se unió a %s", sid, room_name(game_id))

    async def leave_game(self, sid: str, data: dict):
        game_id = (data or {}).get("gameId")
        if not game_id:
            return
        await self.sio.leave_room(sid, room_name(game_id))
        self.sid_to_player.pop(sid, None)

    async def get_state(self, sid: str, data: dict):
        game_id = (data or {}).get("gameId")
        player = (data or {}).get("playerAddress")
        try:
            session = self.manager.require_session(game_id)
        except PepasurError as exc:
            await self._error(sid, exc.message, exc.code)
            return
        state = session.state_for(player) if player else session.public_state()
        await self.sio.emit("game_state", state, room=sid)

    # -------------------------------------------------------------------------
    # ACCIONES DE JUEGO
    # -------------------------------------------------------------------------

    def _player_for(self, sid: str, data: dict) -> Tuple[Optional[str], str]:
        """gameId y jugador del mensaje, o los del socket si no vienen."""
        joined = self.sid_to_player.get(sid, {})
        game_id = data.get("gameId") or joined.get("gameId")
        player = data.get("playerAddress") or joined.get("playerAddress") or ""
        return game_id, player

    async def submit_action(self, sid: str, data: dict):
        """
        Acción de la fase actual: acción nocturna en NIGHT, voto en VOTING.

        data = {'gameId': str, 'playerAddress': str, 'target': str | None}
        """
        data = data or {}
        game_id, player = self._player_for(sid, data)
        target = data.get("target")
        if not game_id or not player:
            await self._error(sid, "gameId y playerAddress requeridos", "VALIDATION_ERROR")
            return
        try:
            session = self.manager.require_session(game_id)
            if session.phase == Phase.NIGHT:
                await self.manager.submit_night_action(game_id, player, target or "")
            elif session.phase == Phase.VOTING:
                await self.manager.submit_vote(game_id, player, target)
            else:
                raise InvalidPhase(f"No hay acciones en la fase {session.phase.value}")
        except PepasurError as exc:
            await self._error(sid, exc.message, exc.code)
            return
        await self.sio.emit("game_update", {
            "type": "action_submitted",
            "gameId": game_id,
            "playerAddress": player.lower(),
        }, room=sid)

    async def submit_vote(self, sid: str, data: dict):
        data = data or {}
        game_id, player = self._player_for(sid, data)
        if not game_id or not player:
            await self._error(sid, "gameId y playerAddress requeridos", "VALIDATION_ERROR")
            return
        try:
            await self.manager.submit_vote(game_id, player, data.get("vote"))
        except PepasurError as exc:
            await self._error(sid, exc.message, exc.code)
            return
        await self.sio.emit("game_update", {
            "type": "vote_submitted",
            "gameId": game_id,
            "playerAddress": player.lower(),
        }, room=sid)

    async def chat_message(self, sid: str, data: dict):
        """El mensaje se difunde a la sala desde el Session Manager."""
        data = data or {}
        game_id, player = self._player_for(sid, data)
        if not game_id or not player:
            await self._error(sid, "gameId y playerAddress requeridos", "VALIDATION_ERROR")
            return
        try:
            await self.manager.post_chat(game_id, player, data.get("message") or "")
        except PepasurError as exc:
            await self._error(sid, exc.message, exc.code)


# =============================================================================
# APLICACIÓN ASGI
# =============================================================================

def create_socket_app(sio: socketio.AsyncServer, other_asgi_app=None) -> socketio.ASGIApp:
    """Crea la aplicación ASGI para Socket.IO (montando FastAPI detrás)."""
    return socketio.ASGIApp(sio, other_asgi_app=other_asgi_app)
