"""
=============================================================================
PEPASUR - Liquidación de Premios
=============================================================================
Calcula la distribución del pozo al resolver una partida y define los
intents (pago, comisión, reembolso) que la máquina de estados emite.

Ecuación de balance (debe cumplirse siempre):
    pozo = suma(premios) + comisión + residuo
El residuo entero de la división va al receptor de comisiones.
=============================================================================
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Sequence


class IntentKind(str, Enum):
    PAYOUT = "PAYOUT"     # Premio a un ganador
    FEE = "FEE"           # Comisión de la casa
    REFUND = "REFUND"     # Devolución del stake


@dataclass(frozen=True)
class Intent:
    """Efecto secundario pendiente de ejecutar contra el ledger."""
    kind: ClassVar[IntentKind]
    game_id: str
    recipient: str
    amount: int
    reason: str = ""
    source_tx: str = ""    # Depósito huérfano que origina un reembolso

    @property
    def nonce(self) -> str:
        """Nonce estable: un mismo intent nunca se paga dos veces."""
        base = f"{self.kind.value.lower()}:{self.game_id}:{self.recipient}"
        return f"{base}:{self.source_tx}" if self.source_tx else base

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "gameId": self.game_id,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "reason": self.reason,
            "sourceTx": self.source_tx or None,
        }


@dataclass(frozen=True)
class PayoutIntent(Intent):
    kind: ClassVar[IntentKind] = IntentKind.PAYOUT


@dataclass(frozen=True)
class FeeIntent(Intent):
    kind: ClassVar[IntentKind] = IntentKind.FEE


@dataclass(frozen=True)
class RefundIntent(Intent):
    kind: ClassVar[IntentKind] = IntentKind.REFUND


@dataclass
class PayoutPlan:
    """Resultado del cálculo de liquidación."""
    game_id: str
    pot: int
    house_cut: int
    remainder: int
    share: int
    payouts: Dict[str, int] = field(default_factory=dict)
    fee_recipient: str = ""

    @property
    def fee_total(self) -> int:
        return self.house_cut + self.remainder

    def validate_balance_equation(self) -> bool:
        """Pozo = Premios + Comisión + Residuo."""
        return self.pot == sum(self.payouts.values()) + self.house_cut + self.remainder

    def intents(self) -> List[Intent]:
        result = [PayoutIntent(self.game_id, addr, amount) for addr, amount in self.payouts.items() if amount > 0]
        if self.fee_total > 0:
            result.append(FeeIntent(self.game_id, self.fee_recipient, self.fee_total))
        return result

    def compute_hash(self) -> str:
        data = {
            "game_id": self.game_id,
            "pot": str(self.pot),
            "house_cut": str(self.house_cut),
            "remainder": str(self.remainder),
            "payouts": {k: str(v) for k, v in self.payouts.items()},
        }
        return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pot": str(self.pot),
            "houseCut": str(self.house_cut),
            "remainder": str(self.remainder),
            "share": str(self.share),
            "payouts": {k: str(v) for k, v in self.payouts.items()},
            "feeRecipient": self.fee_recipient,
            "planHash": self.compute_hash(),
        }


def compute_payouts(
    game_id: str,
    stake_amount: int,
    num_players: int,
    winners: Sequence[str],
    house_cut_bps: int,
    fee_recipient: str,
) -> PayoutPlan:
    """
    Calcula la liquidación.

    Ejemplo (4 jugadores x 100 wei, 500 bps, 3 ganadores):
        - pozo: 400
        - comisión: 20
        - distribuible: 380 -> 126 por ganador
        - residuo: 2 -> receptor de comisiones
    """
    if not 0 <= house_cut_bps <= 10000:
        raise ValueError(f"house_cut_bps fuera de rango: {house_cut_bps}")

    pot = stake_amount * num_players
    house_cut = pot * house_cut_bps // 10000
    distributable = pot - house_cut

    if winners:
        share = distributable // len(winners)
        remainder = distributable - share * len(winners)
    else:
        share = 0
        remainder = distributable

    plan = PayoutPlan(
        game_id=game_id,
        pot=pot,
        house_cut=house_cut,
        remainder=remainder,
        share=share,
        payouts={addr: share for addr in winners},
        fee_recipient=fee_recipient,
    )

    if not plan.validate_balance_equation():
        raise ValueError(f"Ecuación de balance fallida para {game_id}")
    return plan
