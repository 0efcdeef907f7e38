"""
=============================================================================
PEPASUR - Asignación Determinística de Roles
=============================================================================
Función pura (game_id, jugadores, reglas) -> roles.

- Determinístico: mismo game_id y mismo orden de ingreso = mismos roles
- Auditable: la semilla es sha256(game_id), cada paso usa hash(seed:nonce)
- Compromiso: role_commit = sha256(roles_json + salt), publicado al asignar
=============================================================================
"""

import hashlib
import json
import secrets
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

from .config import GameRules


class Role(str, Enum):
    ASUR = "ASUR"     # Mafia
    DEVA = "DEVA"     # Doctor
    MANAV = "MANAV"   # Aldeano


class SeedStream:
    """Generador de enteros derivado de una semilla (hash encadenado)."""

    def __init__(self, seed: str):
        self.seed = seed
        self.nonce = 0

    def next_below(self, bound: int) -> int:
        """Entero en [0, bound)."""
        self.nonce += 1
        digest = hashlib.sha256(f"{self.seed}:{self.nonce}".encode()).hexdigest()
        return int(digest, 16) % bound


def role_seed(game_id: str) -> str:
    return hashlib.sha256(f"pepasur-roles:{game_id}".encode()).hexdigest()


def assign_roles(game_id: str, addresses: Sequence[str], rules: Optional[GameRules] = None) -> Dict[str, Role]:
    """
    Asigna roles a los jugadores.

    Baraja el orden de ingreso con Fisher-Yates sobre la semilla del juego;
    los primeros asur_count son ASUR, los siguientes deva_count son DEVA y el
    resto MANAV. El resultado conserva el orden de ingreso.
    """
    rules = rules or GameRules()
    players = list(addresses)
    total = len(players)
    if total == 0:
        return {}

    shuffled = list(players)
    stream = SeedStream(role_seed(game_id))
    for i in range(total - 1, 0, -1):
        j = stream.next_below(i + 1)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]

    asur_count = rules.asur_count(total)
    deva_count = max(0, min(rules.deva_count, total - asur_count))

    assigned: Dict[str, Role] = {}
    for index, address in enumerate(shuffled):
        if index < asur_count:
            assigned[address] = Role.ASUR
        elif index < asur_count + deva_count:
            assigned[address] = Role.DEVA
        else:
            assigned[address] = Role.MANAV

    return {address: assigned[address] for address in players}


def role_commit(roles: Dict[str, Role], salt: Optional[str] = None) -> Tuple[str, str]:
    """Retorna (commit, salt). El salt se revela al terminar la partida."""
    salt = salt or secrets.token_hex(32)
    data = json.dumps({addr: role.value for addr, role in roles.items()}, sort_keys=True)
    commit = hashlib.sha256((data + salt).encode()).hexdigest()
    return commit, salt


def verify_role_commit(roles: Dict[str, Role], salt: str, commit: str) -> bool:
    return role_commit(roles, salt)[0] == commit


def count_roles(roles: Dict[str, Role]) -> Dict[Role, int]:
    counts = {role: 0 for role in Role}
    for role in roles.values():
        counts[role] += 1
    return counts
