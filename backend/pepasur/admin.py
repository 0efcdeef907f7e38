"""
=============================================================================
PEPASUR - Endpoints de Administración
=============================================================================
Operaciones de operador protegidas con bearer token (PEPASUR_ADMIN_TOKEN):
- Cancelar / abortar / forzar inicio de partidas
- Conflictos de confirmación tardía (reconciliación manual)
- Pasada de reconciliación bajo demanda
- Intents de liquidación fallidos y su reintento
- Información del contrato y verificación del rastro de auditoría
=============================================================================
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .api import get_manager, ok
from .schemas import AdminActionRequest
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])

# =============================================================================
# SECURITY
# =============================================================================
security = HTTPBearer(auto_error=False)


async def get_current_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    """Verifica el bearer token contra PEPASUR_ADMIN_TOKEN."""
    expected = request.app.state.settings.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administración deshabilitada")
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token de administrador inválido",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {"role": "admin"}


# =============================================================================
# ENDPOINTS - PARTIDAS
# =============================================================================

@router.post("/games/{game_id}/cancel")
async def cancel_game(
    game_id: str,
    body: Optional[AdminActionRequest] = None,
    admin=Depends(get_current_admin),
    manager: SessionManager = Depends(get_manager),
):
    """Cancela una partida en LOBBY y reembolsa los stakes confirmados."""
    reason = (body.reason if body else None) or "admin_cancel"
    session = await manager.cancel_session(game_id, reason)
    return ok(session.public_state())


@router.post("/games/{game_id}/abort")
async def abort_game(
    game_id: str,
    body: Optional[AdminActionRequest] = None,
    admin=Depends(get_current_admin),
    manager: SessionManager = Depends(get_manager),
):
    """Aborto en cualquier fase: pasa a CANCELLED emitiendo reembolsos."""
    reason = (body.reason if body else None) or "operator_abort"
    session = await manager.abort_session(game_id, reason)
    return ok(session.public_state())


@router.post("/games/{game_id}/start")
async def force_start(
    game_id: str,
    body: Optional[AdminActionRequest] = None,
    admin=Depends(get_current_admin),
    manager: SessionManager = Depends(get_manager),
):
    """Inicio del operador; con force libera los asientos sin confirmar."""
    session = await manager.start_game(game_id, force=bool(body and body.force))
    return ok(session.public_state())


# =============================================================================
# ENDPOINTS - RECONCILIACIÓN
# =============================================================================

@router.get("/conflicts")
async def list_conflicts(admin=Depends(get_current_admin), manager: SessionManager = Depends(get_manager)):
    return ok(list(manager.cache.conflicts))


@router.post("/reconcile")
async def reconcile(request: Request, admin=Depends(get_current_admin)):
    report = await request.app.state.worker.run_once()
    return ok(report.to_dict())


@router.get("/intents")
async def list_intents(admin=Depends(get_current_admin), manager: SessionManager = Depends(get_manager)):
    return ok({
        "failed": [i.to_dict() for i in manager.failed_intents],
        "completed": list(manager.completed_intents),
    })


@router.post("/intents/retry")
async def retry_intents(admin=Depends(get_current_admin), manager: SessionManager = Depends(get_manager)):
    retried = await manager.retry_failed_intents()
    return ok({"retried": retried, "stillFailed": len(manager.failed_intents)})


# =============================================================================
# ENDPOINTS - LEDGER Y AUDITORÍA
# =============================================================================

@router.get("/contract")
async def contract_info(admin=Depends(get_current_admin), manager: SessionManager = Depends(get_manager)):
    return ok(await manager.ledger.get_contract_info())


@router.get("/audit/verify")
async def verify_audit(request: Request, admin=Depends(get_current_admin)):
    audit = request.app.state.audit
    if audit is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Auditoría deshabilitada")
    return ok(await audit.verify_chain())
