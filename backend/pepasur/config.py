"""
=============================================================================
PEPASUR - Configuración del Orquestador de Stakes
=============================================================================
Parámetros del servidor leídos del entorno (estilo .env).
La dirección del contrato y la cadena son entradas de configuración,
nunca lógica del núcleo.
=============================================================================
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).resolve().parent.parent


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_str(name: str, default: str = "") -> str:
    return os.environ.get(name, default)


# =============================================================================
# REGLAS DEL JUEGO
# =============================================================================

@dataclass(frozen=True)
class GameRules:
    """
    Reglas configurables del juego de deducción social.

    El ratio de ASUR y el umbral de victoria no son constantes fijas:
    - asur_per_players: un ASUR por cada N jugadores (mínimo 1)
    - deva_count: cantidad de DEVA (el resto son MANAV)
    - asur_parity_wins: ASUR gana cuando sus vivos >= vivos no-ASUR
    """
    asur_per_players: int = 4
    deva_count: int = 1
    asur_parity_wins: bool = True

    # Duración de fases (segundos)
    night_seconds: float = 15.0
    day_seconds: float = 30.0
    voting_seconds: float = 10.0
    lobby_timeout_seconds: float = 600.0

    def asur_count(self, num_players: int) -> int:
        """Cantidad de ASUR para una mesa de num_players."""
        if num_players <= 0:
            return 0
        ratio = max(1, self.asur_per_players)
        count = max(1, num_players // ratio)
        # Siempre debe quedar al menos un jugador no-ASUR
        return min(count, max(num_players - 1, 1))


# =============================================================================
# CONFIGURACIÓN DEL SERVIDOR
# =============================================================================

class LedgerMode:
    """Modos del cliente del ledger."""
    MEMORY = "memory"   # Modo sin contrato (simulado)
    WEB3 = "web3"       # Contrato real vía RPC


@dataclass(frozen=True)
class StakingConfig:
    """Configuración completa del orquestador."""

    # Ledger / cadena
    ledger_mode: str = LedgerMode.MEMORY
    rpc_url: str = ""
    chain_id: int = 545                      # Flow EVM testnet
    contract_address: str = ""
    server_private_key: str = ""
    fee_recipient: str = "0x0000000000000000000000000000000000000fee"
    house_cut_bps: int = 500                 # 5%

    # Mesa por defecto
    default_min_players: int = 4
    default_max_players: int = 10
    default_stake_amount: int = 10 ** 17     # 0.1 FLOW en wei

    # Timeouts de ledger y reconciliación (segundos)
    ledger_call_timeout: float = 15.0
    confirmation_timeout: float = 120.0
    stake_pending_timeout: float = 60.0
    stake_failure_grace: float = 300.0
    reconcile_interval: float = 10.0
    finished_retention: float = 24 * 60 * 60.0

    # Administración / persistencia
    admin_token: str = ""
    database_url: Optional[str] = None
    log_level: str = "INFO"

    rules: GameRules = field(default_factory=GameRules)

    @classmethod
    def from_env(cls) -> "StakingConfig":
        """Construye la configuración a partir de variables de entorno."""
        # backend/.env no pisa variables ya definidas en el proceso
        load_dotenv(BACKEND_DIR / ".env")
        rules = GameRules(
            asur_per_players=_env_int("ASUR_PER_PLAYERS", GameRules.asur_per_players),
            deva_count=_env_int("DEVA_COUNT", GameRules.deva_count),
            night_seconds=_env_float("NIGHT_PHASE_SECONDS", GameRules.night_seconds),
            day_seconds=_env_float("DAY_PHASE_SECONDS", GameRules.day_seconds),
            voting_seconds=_env_float("VOTING_PHASE_SECONDS", GameRules.voting_seconds),
            lobby_timeout_seconds=_env_float("LOBBY_TIMEOUT_SECONDS", GameRules.lobby_timeout_seconds),
        )
        return cls(
            ledger_mode=_env_str("PEPASUR_LEDGER_MODE", LedgerMode.MEMORY),
            rpc_url=_env_str("PEPASUR_RPC_URL") or _env_str("FLOW_ACCESS_NODE"),
            chain_id=_env_int("PEPASUR_CHAIN_ID", cls.chain_id),
            contract_address=_env_str("PEPASUR_CONTRACT_ADDRESS"),
            server_private_key=_env_str("SERVER_PRIVATE_KEY"),
            fee_recipient=_env_str("FEE_RECIPIENT_ADDRESS", cls.fee_recipient),
            house_cut_bps=_env_int("HOUSE_CUT_BPS", cls.house_cut_bps),
            default_min_players=_env_int("DEFAULT_MIN_PLAYERS", cls.default_min_players),
            default_max_players=_env_int("DEFAULT_MAX_PLAYERS", cls.default_max_players),
            default_stake_amount=_env_int("DEFAULT_STAKE_AMOUNT", cls.default_stake_amount),
            ledger_call_timeout=_env_float("LEDGER_CALL_TIMEOUT", cls.ledger_call_timeout),
            confirmation_timeout=_env_float("CONFIRMATION_TIMEOUT", cls.confirmation_timeout),
            stake_pending_timeout=_env_float("STAKE_PENDING_TIMEOUT", cls.stake_pending_timeout),
            stake_failure_grace=_env_float("STAKE_FAILURE_GRACE", cls.stake_failure_grace),
            reconcile_interval=_env_float("RECONCILE_INTERVAL", cls.reconcile_interval),
            admin_token=_env_str("PEPASUR_ADMIN_TOKEN"),
            database_url=os.environ.get("PEPASUR_DATABASE_URL") or None,
            log_level=_env_str("LOG_LEVEL", "INFO"),
            rules=rules,
        )

    def with_overrides(self, **changes) -> "StakingConfig":
        """Copia con valores reemplazados (útil en pruebas)."""
        return replace(self, **changes)


@dataclass
class SessionConfig:
    """Parámetros de creación de una sesión de juego."""
    creator: str
    stake_amount: int
    min_players: int
    max_players: int

    @classmethod
    def with_defaults(
        cls,
        settings: StakingConfig,
        creator: str,
        stake_amount: Optional[int] = None,
        min_players: Optional[int] = None,
        max_players: Optional[int] = None,
    ) -> "SessionConfig":
        return cls(
            creator=creator,
            stake_amount=settings.default_stake_amount if stake_amount is None else stake_amount,
            min_players=settings.default_min_players if min_players is None else min_players,
            max_players=settings.default_max_players if max_players is None else max_players,
        )
