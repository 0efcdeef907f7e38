"""
=============================================================================
PEPASUR - Punto de Entrada Principal (FastAPI + Socket.IO)
=============================================================================
Orquestador de stakes on-chain para el juego de deducción social Pepasur.

Integra:
- FastAPI para REST API (staking, partidas, administración)
- Socket.IO para notificaciones en tiempo real
- Worker de reconciliación y consumidor de eventos del ledger
- Rastro de auditoría SQLAlchemy (opcional)

Los registros compartidos (sesiones, caché de stakes) se construyen una vez
en create_app y viajan en app.state.
=============================================================================
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .admin import router as admin_router
from .api import pepasur_error_handler, request_validation_handler, router as api_router
from .audit import StakeAuditLog
from .config import LedgerMode, StakingConfig
from .errors import PepasurError
from .ledger_client import InMemoryLedger, LedgerClient, Web3LedgerClient
from .reconciliation import ReconciliationWorker
from .session_manager import SessionManager
from .stake_cache import StakeLedgerCache
from .websocket_handler import GameSocketServer, SocketNotifier, create_sio, create_socket_app

logger = logging.getLogger("pepasur")


# =============================================================================
# CONSTRUCCIÓN DE COMPONENTES
# =============================================================================

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_ledger(settings: StakingConfig) -> LedgerClient:
    """Selecciona el cliente del ledger según PEPASUR_LEDGER_MODE."""
    if settings.ledger_mode == LedgerMode.WEB3:
        return Web3LedgerClient(
            rpc_url=settings.rpc_url,
            contract_address=settings.contract_address,
            private_key=settings.server_private_key,
            chain_id=settings.chain_id,
            call_timeout=settings.ledger_call_timeout,
        )
    logger.info("[LEDGER] Modo sin contrato (simulado)")
    return InMemoryLedger(
        call_timeout=settings.ledger_call_timeout,
        fee_recipient=settings.fee_recipient,
        house_cut_bps=settings.house_cut_bps,
    )


# =============================================================================
# LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestiona el ciclo de vida de la aplicación."""
    state = app.state
    logger.info("[PEPASUR] Iniciando servidor (ledger: %s)", state.settings.ledger_mode)
    if state.audit is not None:
        await state.audit.init_models()

    stop_event = asyncio.Event()
    consumer = asyncio.create_task(state.cache.consume(stop_event))
    if state.run_worker:
        state.worker.start()
    yield

    logger.info("[PEPASUR] Cerrando servidor...")
    await state.worker.stop()
    stop_event.set()
    await consumer
    await state.manager.shutdown()
    if state.audit is not None:
        await state.audit.close()


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

def create_app(
    settings: Optional[StakingConfig] = None,
    ledger: Optional[LedgerClient] = None,
    run_worker: bool = True,
) -> FastAPI:
    settings = settings or StakingConfig.from_env()
    ledger = ledger or build_ledger(settings)

    audit = StakeAuditLog(settings.database_url) if settings.database_url else None
    cache = StakeLedgerCache(audit=audit)
    sio = create_sio()
    manager = SessionManager(settings, ledger, cache, notifier=SocketNotifier(sio), audit=audit)
    worker = ReconciliationWorker.from_settings(settings, manager, cache, ledger)
    socket_server = GameSocketServer(manager, sio)

    app = FastAPI(
        title="Pepasur API",
        description="""
        ## Orquestador de stakes on-chain para Pepasur (ASUR / DEVA / MANAV)

        ### Estados de Partida (FSM):
        LOBBY → ROLE_ASSIGNMENT → NIGHT → DAY ⇄ VOTING → RESOLVED (o CANCELLED desde LOBBY)
        """,
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.cache = cache
    app.state.manager = manager
    app.state.worker = worker
    app.state.audit = audit
    app.state.sio = sio
    app.state.socket_server = socket_server
    app.state.run_worker = run_worker

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Agrega headers de seguridad a las respuestas."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    # =========================================================================
    # ERRORES
    # =========================================================================

    app.add_exception_handler(PepasurError, pepasur_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc.detail), "code": f"HTTP_{exc.status_code}"},
            headers=getattr(exc, "headers", None),
        )

    # =========================================================================
    # ENDPOINTS - HEALTH & STATUS
    # =========================================================================

    @app.get("/health")
    async def health_check():
        """Endpoint de health check para Docker y load balancers."""
        active = sum(1 for s in manager.sessions.values() if not s.is_terminal)
        return {
            "status": "healthy",
            "service": "pepasur-backend",
            "version": __version__,
            "ledgerMode": settings.ledger_mode,
            "activeGames": active,
            "pendingStakes": sum(1 for _ in cache.list_pending(older_than=0)),
            "reconcilerRunning": worker.running,
            "timestamp": time.time(),
        }

    app.include_router(api_router)
    app.include_router(admin_router)
    return app


# =============================================================================
# MONTAR SOCKET.IO
# =============================================================================

def create_combined_app(settings: Optional[StakingConfig] = None):
    """Socket.IO envuelve a FastAPI para que los upgrades de WebSocket funcionen."""
    settings = settings or StakingConfig.from_env()
    configure_logging(settings.log_level)
    app = create_app(settings)
    return create_socket_app(app.state.sio, app)


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_combined_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
