"""
=============================================================================
PEPASUR - Máquina de Estados de la Sesión de Juego
=============================================================================
Ciclo de vida de una partida:

    LOBBY -> ROLE_ASSIGNMENT -> NIGHT -> DAY -> VOTING -> DAY -> ... -> RESOLVED
      |
      +-> CANCELLED (solo desde LOBBY, o por abort del operador)

Principios:
- Pura y síncrona: el tiempo entra como parámetro (now), nunca llama al ledger
- Efectos secundarios como intents (pago, comisión, reembolso) en un outbox
- Falla cerrada: un deadline vencido sin acción aplica la resolución por
  defecto (sin eliminación) en vez de bloquear
- RESOLVED y CANCELLED son terminales e inmutables
=============================================================================
"""

import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import GameRules, SessionConfig
from .errors import AlreadyJoined, InvalidPhase, NotFound, RoomFull, ValidationError
from .payouts import Intent, PayoutPlan, RefundIntent, compute_payouts
from .roles import Role, assign_roles, count_roles, role_commit, verify_role_commit
from .stake_cache import SEATED_STATUSES, StakeStatus

logger = logging.getLogger(__name__)


# =============================================================================
# ESTADOS
# =============================================================================

class Phase(str, Enum):
    LOBBY = "LOBBY"
    ROLE_ASSIGNMENT = "ROLE_ASSIGNMENT"
    NIGHT = "NIGHT"
    DAY = "DAY"
    VOTING = "VOTING"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"


class Faction(str, Enum):
    ASUR = "ASUR"
    VILLAGE = "VILLAGE"   # DEVA + MANAV


TERMINAL_PHASES = (Phase.RESOLVED, Phase.CANCELLED)
MAX_CHAT_LENGTH = 280

# VOTING -> DAY es el único retroceso permitido (el ciclo de días)
VALID_TRANSITIONS = {
    Phase.LOBBY: [Phase.ROLE_ASSIGNMENT, Phase.CANCELLED],
    Phase.ROLE_ASSIGNMENT: [Phase.NIGHT, Phase.CANCELLED],
    Phase.NIGHT: [Phase.DAY, Phase.RESOLVED, Phase.CANCELLED],
    Phase.DAY: [Phase.VOTING, Phase.CANCELLED],
    Phase.VOTING: [Phase.DAY, Phase.RESOLVED, Phase.CANCELLED],
    Phase.RESOLVED: [],
    Phase.CANCELLED: [],
}


@dataclass
class Player:
    """Jugador sentado en la mesa."""
    address: str
    stake_status: StakeStatus
    joined_at: float
    role: Optional[Role] = None
    is_alive: bool = True

    def to_dict(self, reveal_role: bool = False) -> Dict[str, Any]:
        data = {
            "address": self.address,
            "isAlive": self.is_alive,
            "stakeStatus": self.stake_status.value,
            "joinedAt": self.joined_at,
        }
        if reveal_role:
            data["role"] = self.role.value if self.role else None
        return data


# =============================================================================
# SESIÓN
# =============================================================================

class GameSession:
    """Una partida y todas sus transiciones."""

    def __init__(
        self,
        game_id: str,
        room_code: str,
        config: SessionConfig,
        now: float,
        rules: Optional[GameRules] = None,
        house_cut_bps: int = 500,
        fee_recipient: str = "",
    ):
        self.game_id = game_id
        self.room_code = room_code
        self.creator = config.creator.lower()
        self.stake_amount = config.stake_amount
        self.min_players = config.min_players
        self.max_players = config.max_players
        self.rules = rules or GameRules()
        self.house_cut_bps = house_cut_bps
        self.fee_recipient = fee_recipient

        self.phase = Phase.LOBBY
        self.players: List[Player] = []
        self.created_at = now
        self.phase_deadline: Optional[float] = now + self.rules.lobby_timeout_seconds
        self.ended_at: Optional[float] = None
        self.day = 1

        self.night_actions: Dict[str, str] = {}
        self.votes: Dict[str, Optional[str]] = {}
        self.eliminated: List[Dict[str, Any]] = []
        self.last_night: Optional[Dict[str, Any]] = None
        self.last_vote: Optional[Dict[str, Any]] = None

        self.role_commit: Optional[str] = None
        self.role_salt: Optional[str] = None
        self.winning_faction: Optional[Faction] = None
        self.winners: List[str] = []
        self.payout_plan: Optional[PayoutPlan] = None
        self.cancel_reason: Optional[str] = None

        self.intents: List[Intent] = []
        self.phase_log: List[Dict[str, Any]] = [{"phase": Phase.LOBBY.value, "at": now}]
        self.rounds: List[Dict[str, Any]] = []
        self.chat: List[Dict[str, Any]] = []
        self.started_at: Optional[float] = None

    # -------------------------------------------------------------------------
    # AUXILIARES
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def accepting_stakes(self) -> bool:
        return self.phase == Phase.LOBBY

    def _require_phase(self, *phases: Phase) -> None:
        if self.phase not in phases:
            expected = ", ".join(p.value for p in phases)
            raise InvalidPhase(f"Fase inválida: {self.phase.value} (se esperaba {expected})")

    def _transition(self, new_phase: Phase, now: float, deadline: Optional[float] = None) -> None:
        if new_phase not in VALID_TRANSITIONS[self.phase]:
            raise InvalidPhase(f"Transición no permitida: {self.phase.value} -> {new_phase.value}")
        logger.info("[SESSION] %s: %s -> %s", self.game_id, self.phase.value, new_phase.value)
        self.phase = new_phase
        self.phase_deadline = deadline
        self.phase_log.append({"phase": new_phase.value, "at": now})
        if new_phase in TERMINAL_PHASES:
            self.ended_at = now

    def find_player(self, address: str) -> Optional[Player]:
        address = address.lower()
        for player in self.players:
            if player.address == address:
                return player
        return None

    def _require_player(self, address: str) -> Player:
        player = self.find_player(address)
        if player is None:
            raise NotFound(f"El jugador {address} no está en la partida")
        return player

    def _require_alive(self, address: str) -> Player:
        player = self._require_player(address)
        if not player.is_alive:
            raise ValidationError(f"El jugador {address} fue eliminado")
        return player

    def alive_players(self) -> List[Player]:
        return [p for p in self.players if p.is_alive]

    def confirmed_players(self) -> List[Player]:
        return [p for p in self.players if p.stake_status == StakeStatus.CONFIRMED]

    # -------------------------------------------------------------------------
    # LOBBY
    # -------------------------------------------------------------------------

    def join(self, address: str, stake_status: StakeStatus, now: float) -> Player:
        """Sienta a un jugador con stake PENDING o CONFIRMED."""
        self._require_phase(Phase.LOBBY)
        if stake_status not in SEATED_STATUSES:
            raise ValidationError(f"Stake inválido para sentarse: {stake_status.value}")
        if self.find_player(address) is not None:
            raise AlreadyJoined(f"El jugador {address} ya está en la partida")
        if len(self.players) >= self.max_players:
            raise RoomFull(f"La sala {self.room_code} está llena")

        player = Player(address=address.lower(), stake_status=stake_status, joined_at=now)
        self.players.append(player)
        return player

    def update_stake_status(self, address: str, status: StakeStatus) -> bool:
        """
        Refleja el estado del stake de la caché. En LOBBY, FAILED o REFUNDED
        liberan el asiento. Retorna True si el asiento fue liberado.
        """
        player = self.find_player(address)
        if player is None:
            return False
        player.stake_status = status
        if self.phase == Phase.LOBBY and status not in SEATED_STATUSES:
            self.players.remove(player)
            logger.info("[SESSION] %s: asiento liberado (%s, %s)", self.game_id, player.address, status.value)
            return True
        return False

    def ready_to_start(self) -> bool:
        return (
            self.phase == Phase.LOBBY
            and len(self.players) >= self.min_players
            and all(p.stake_status == StakeStatus.CONFIRMED for p in self.players)
        )

    def try_auto_start(self, now: float) -> bool:
        if not self.ready_to_start():
            return False
        self._begin(now)
        return True

    def start(self, now: float, force: bool = False) -> None:
        """
        Inicio explícito. Sin force exige todos los stakes CONFIRMED; con
        force (operador) libera los asientos no confirmados y exige igualmente
        el mínimo de jugadores confirmados.
        """
        self._require_phase(Phase.LOBBY)
        if force:
            if len(self.confirmed_players()) < self.min_players:
                raise ValidationError(
                    f"Se requieren {self.min_players} stakes confirmados para iniciar"
                )
            self.players = self.confirmed_players()
        elif not self.ready_to_start():
            raise ValidationError(
                f"Se requieren {self.min_players} jugadores con stake confirmado para iniciar"
            )
        self._begin(now)

    def _begin(self, now: float) -> None:
        self.started_at = now
        self._transition(Phase.ROLE_ASSIGNMENT, now)
        self.assign_roles(now)

    def cancel(self, reason: str, now: float) -> None:
        """LOBBY -> CANCELLED. Reembolsa todos los stakes CONFIRMED."""
        self._require_phase(Phase.LOBBY)
        self._cancel(reason, now)

    def abort(self, reason: str, now: float) -> None:
        """
        Aborto del operador en cualquier fase no terminal. No es un descarte
        silencioso: pasa a CANCELLED emitiendo reembolsos.
        """
        if self.is_terminal:
            raise InvalidPhase(f"La partida ya terminó ({self.phase.value})")
        self._cancel(reason, now)

    def _cancel(self, reason: str, now: float) -> None:
        self.cancel_reason = reason
        for player in self.confirmed_players():
            self.intents.append(RefundIntent(self.game_id, player.address, self.stake_amount, reason))
        self._transition(Phase.CANCELLED, now)

    # -------------------------------------------------------------------------
    # ROLES
    # -------------------------------------------------------------------------

    def assign_roles(self, now: float) -> None:
        self._require_phase(Phase.ROLE_ASSIGNMENT)
        addresses = [p.address for p in self.players]
        roles = assign_roles(self.game_id, addresses, self.rules)
        for player in self.players:
            player.role = roles[player.address]
        self.role_commit, self.role_salt = role_commit(roles)
        self.night_actions = {}
        self._transition(Phase.NIGHT, now, now + self.rules.night_seconds)

    def roles(self) -> Dict[str, Role]:
        return {p.address: p.role for p in self.players if p.role is not None}

    # -------------------------------------------------------------------------
    # NOCHE
    # -------------------------------------------------------------------------

    def _night_actors(self) -> List[Player]:
        return [p for p in self.alive_players() if p.role in (Role.ASUR, Role.DEVA)]

    def submit_night_action(self, actor: str, target: str, now: float) -> None:
        """ASUR elige a quién eliminar, DEVA a quién salvar."""
        self._require_phase(Phase.NIGHT)
        player = self._require_alive(actor)
        if player.role not in (Role.ASUR, Role.DEVA):
            raise ValidationError("Este rol no tiene acción nocturna")
        target_player = self._require_alive(target)

        self.night_actions[player.address] = target_player.address
        if all(p.address in self.night_actions for p in self._night_actors()):
            self._resolve_night(now)

    def _asur_target(self) -> Optional[str]:
        """Objetivo más votado entre ASUR; empate -> el del ASUR que ingresó primero."""
        asur = [p for p in self._night_actors() if p.role == Role.ASUR and p.address in self.night_actions]
        if not asur:
            return None
        picks = Counter(self.night_actions[p.address] for p in asur)
        top = max(picks.values())
        for p in asur:
            if picks[self.night_actions[p.address]] == top:
                return self.night_actions[p.address]
        return None

    def _resolve_night(self, now: float) -> None:
        target = self._asur_target()
        saved = {
            self.night_actions[p.address]
            for p in self._night_actors()
            if p.role == Role.DEVA and p.address in self.night_actions
        }
        killed = None
        if target is not None and target not in saved:
            killed = target
            self._eliminate(target, "NIGHT")

        self.last_night = {"day": self.day, "killed": killed, "saved": target is not None and target in saved}
        self.rounds.append({"phase": Phase.NIGHT.value, **self.last_night})
        self.night_actions = {}
        if self._check_win(now):
            return
        self._transition(Phase.DAY, now, now + self.rules.day_seconds)

    # -------------------------------------------------------------------------
    # DÍA Y VOTACIÓN
    # -------------------------------------------------------------------------

    def _start_voting(self, now: float) -> None:
        self.votes = {}
        self._transition(Phase.VOTING, now, now + self.rules.voting_seconds)

    def submit_vote(self, voter: str, target: Optional[str], now: float) -> None:
        """Voto de un jugador vivo; None = abstención."""
        self._require_phase(Phase.VOTING)
        player = self._require_alive(voter)
        target_address = None
        if target is not None:
            target_address = self._require_alive(target).address

        self.votes[player.address] = target_address
        if all(p.address in self.votes for p in self.alive_players()):
            self._resolve_voting(now)

    def tally_votes(self) -> Dict[str, int]:
        return dict(Counter(t for t in self.votes.values() if t is not None))

    def _resolve_voting(self, now: float) -> None:
        tally = self.tally_votes()
        eliminated = None
        tie = False
        if tally:
            top = max(tally.values())
            leaders = [addr for addr, count in tally.items() if count == top]
            if len(leaders) == 1:
                eliminated = leaders[0]
                self._eliminate(eliminated, "VOTE")
            else:
                # Empate exacto: nadie es eliminado
                tie = True

        self.last_vote = {"day": self.day, "tally": tally, "eliminated": eliminated, "tie": tie}
        self.rounds.append({"phase": Phase.VOTING.value, **self.last_vote})
        self.votes = {}
        if self._check_win(now):
            return
        self.day += 1
        self._transition(Phase.DAY, now, now + self.rules.day_seconds)

    def advance(self, now: float) -> None:
        """Resuelve la fase temporizada actual como si venciera su deadline."""
        if self.phase == Phase.NIGHT:
            self._resolve_night(now)
        elif self.phase == Phase.DAY:
            self._start_voting(now)
        elif self.phase == Phase.VOTING:
            self._resolve_voting(now)
        else:
            raise InvalidPhase(f"La fase {self.phase.value} no se puede avanzar")

    def tick(self, now: float) -> bool:
        """Aplica el deadline vencido, si lo hay. Retorna True si hubo transición."""
        if self.is_terminal or self.phase_deadline is None or now < self.phase_deadline:
            return False
        if self.phase == Phase.LOBBY:
            if not self.try_auto_start(now):
                self.cancel("lobby_timeout", now)
            return True
        self.advance(now)
        return True

    # -------------------------------------------------------------------------
    # RESOLUCIÓN
    # -------------------------------------------------------------------------

    def _eliminate(self, address: str, cause: str) -> None:
        player = self.find_player(address)
        if player is None or not player.is_alive:
            return
        player.is_alive = False
        self.eliminated.append({"address": player.address, "day": self.day, "cause": cause})
        logger.info("[SESSION] %s: %s eliminado (%s)", self.game_id, player.address, cause)

    def _check_win(self, now: float) -> bool:
        alive = self.alive_players()
        asur_alive = sum(1 for p in alive if p.role == Role.ASUR)
        others_alive = len(alive) - asur_alive

        if asur_alive == 0:
            self._resolve(Faction.VILLAGE, now)
            return True
        if self.rules.asur_parity_wins and asur_alive >= others_alive:
            self._resolve(Faction.ASUR, now)
            return True
        return False

    def _resolve(self, faction: Faction, now: float) -> None:
        self.winning_faction = faction
        # Solo cobran los sobrevivientes del bando ganador
        self.winners = [
            p.address for p in self.alive_players()
            if (p.role == Role.ASUR) == (faction == Faction.ASUR)
        ]
        self.payout_plan = compute_payouts(
            game_id=self.game_id,
            stake_amount=self.stake_amount,
            num_players=len(self.players),
            winners=self.winners,
            house_cut_bps=self.house_cut_bps,
            fee_recipient=self.fee_recipient,
        )
        self.intents.extend(self.payout_plan.intents())
        self._transition(Phase.RESOLVED, now)
        logger.info("[SETTLEMENT] %s: gana %s (%d ganadores)", self.game_id, faction.value, len(self.winners))

    def drain_intents(self) -> List[Intent]:
        intents, self.intents = self.intents, []
        return intents

    # -------------------------------------------------------------------------
    # CHAT
    # -------------------------------------------------------------------------

    def post_chat(self, address: str, message: str, now: float) -> Dict[str, Any]:
        """Mensaje de sala de un jugador sentado. No cambia la fase."""
        player = self._require_player(address)
        text = (message or "").strip()
        if not text:
            raise ValidationError("Mensaje vacío")
        if len(text) > MAX_CHAT_LENGTH:
            raise ValidationError(f"El mensaje supera {MAX_CHAT_LENGTH} caracteres")
        entry = {
            "gameId": self.game_id,
            "playerAddress": player.address,
            "message": text,
            "phase": self.phase.value,
            "timestamp": now,
        }
        self.chat.append(entry)
        return entry

    # -------------------------------------------------------------------------
    # VISTAS
    # -------------------------------------------------------------------------

    def public_state(self) -> Dict[str, Any]:
        """Vista pública: sin roles hasta que la partida termina."""
        reveal = self.is_terminal
        state = {
            "gameId": self.game_id,
            "roomCode": self.room_code,
            "creator": self.creator,
            "phase": self.phase.value,
            "day": self.day,
            "players": [p.to_dict(reveal_role=reveal) for p in self.players],
            "minPlayers": self.min_players,
            "maxPlayers": self.max_players,
            "stakeAmount": str(self.stake_amount),
            "createdAt": self.created_at,
            "phaseDeadline": self.phase_deadline,
            "eliminated": list(self.eliminated),
            "lastNight": self.last_night,
            "lastVote": self.last_vote,
            "votesCast": len(self.votes),
            "roleCommit": self.role_commit,
            "roleCounts": self.role_counts(),
            "winningFaction": self.winning_faction.value if self.winning_faction else None,
            "winners": list(self.winners),
            "cancelReason": self.cancel_reason,
        }
        if self.payout_plan is not None:
            state["payouts"] = self.payout_plan.to_dict()
        if reveal and self.role_salt is not None:
            state["roleSalt"] = self.role_salt
        return state

    def state_for(self, address: str) -> Dict[str, Any]:
        """Vista pública más el rol propio del jugador que consulta."""
        state = self.public_state()
        player = self.find_player(address)
        if player is not None:
            state["you"] = player.to_dict(reveal_role=True)
            if self.phase == Phase.NIGHT:
                state["you"]["nightActionSubmitted"] = player.address in self.night_actions
            if self.phase == Phase.VOTING:
                state["you"]["voteSubmitted"] = player.address in self.votes
        return state

    def role_counts(self) -> Optional[Dict[str, int]]:
        """Cuántos jugadores hay de cada rol (público una vez asignados)."""
        roles = self.roles()
        if not roles:
            return None
        return {role.value: count for role, count in count_roles(roles).items()}

    def verify_roles(self) -> Dict[str, Any]:
        """
        Verificación del compromiso de roles. Solo con la partida terminada,
        cuando el salt ya es público.
        """
        if not self.is_terminal:
            raise InvalidPhase("Los roles se verifican cuando la partida termina")
        if self.role_commit is None or self.role_salt is None:
            raise ValidationError("La partida terminó sin asignar roles")
        roles = self.roles()
        return {
            "gameId": self.game_id,
            "roleCommit": self.role_commit,
            "roleSalt": self.role_salt,
            "roles": {address: role.value for address, role in roles.items()},
            "valid": verify_role_commit(roles, self.role_salt, self.role_commit),
        }

    def history(self) -> Dict[str, Any]:
        """Historial de la partida: fases, rondas, eliminados y ganadores."""
        return {
            "gameId": self.game_id,
            "roomCode": self.room_code,
            "creator": self.creator,
            "phase": self.phase.value,
            "day": self.day,
            "players": [p.address for p in self.players],
            "eliminated": list(self.eliminated),
            "winners": list(self.winners),
            "winningFaction": self.winning_faction.value if self.winning_faction else None,
            "rounds": list(self.rounds),
            "phaseLog": list(self.phase_log),
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "cancelReason": self.cancel_reason,
        }
