"""
=============================================================================
PEPASUR - Taxonomía de Errores
=============================================================================
Errores tipados del orquestador. Los errores del ledger se clasifican en la
frontera del Ledger Client y se propagan sin tragarse hasta el Session
Manager, que decide las consecuencias sobre los asientos.
=============================================================================
"""

from typing import Any, Dict


class PepasurError(Exception):
    """Error base con código estable y estado HTTP sugerido."""

    code = "PEPASUR_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }


# =============================================================================
# VALIDACIÓN (400, no se reintenta)
# =============================================================================

class ValidationError(PepasurError):
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidConfig(ValidationError):
    code = "INVALID_CONFIG"


class InvalidRoomCode(ValidationError):
    code = "INVALID_ROOM_CODE"


class NotFound(PepasurError):
    code = "NOT_FOUND"
    http_status = 404


# =============================================================================
# REGLAS DE NEGOCIO (409)
# =============================================================================

class InvalidPhase(PepasurError):
    code = "INVALID_PHASE"
    http_status = 409


class DuplicateStake(PepasurError):
    code = "DUPLICATE_STAKE"
    http_status = 409


class AlreadyJoined(PepasurError):
    code = "ALREADY_JOINED"
    http_status = 409


class RoomFull(PepasurError):
    code = "ROOM_FULL"
    http_status = 409


class InvalidStakeTransaction(ValidationError):
    """La transacción presentada no respalda el stake (emisor, monto o partida)."""
    code = "INVALID_STAKE_TX"


class InsufficientFunds(PepasurError):
    """Terminal para la solicitud; se muestra al usuario."""
    code = "INSUFFICIENT_FUNDS"
    http_status = 400


# =============================================================================
# LEDGER
# =============================================================================

class LedgerError(PepasurError):
    code = "LEDGER_ERROR"
    http_status = 502


class LedgerUnavailable(LedgerError):
    """Transitorio: el llamador reintenta con backoff, no el núcleo."""
    code = "LEDGER_UNAVAILABLE"
    http_status = 503
    retryable = True


class LedgerTimeout(LedgerUnavailable):
    """
    La llamada excedió su deadline; la operación aún puede aterrizar.

    Si la transacción ya estaba firmada, handle la identifica para seguirla.
    """
    code = "LEDGER_TIMEOUT"
    http_status = 504
    handle = None


class TransactionReverted(LedgerError):
    """Rechazo on-chain: terminal, el asiento se libera."""
    code = "TX_REVERTED"
    http_status = 400

    def __init__(self, reason: str = ""):
        super().__init__(f"Transacción revertida: {reason}" if reason else "Transacción revertida")
        self.reason = reason
