import asyncio

import pytest

from pepasur.config import GameRules, SessionConfig, StakingConfig
from pepasur.ledger_client import InMemoryLedger
from pepasur.session_manager import SessionManager
from pepasur.stake_cache import StakeLedgerCache

FUNDED = 10 ** 18


def addr(n: int) -> str:
    return "0x" + format(n, "040x")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StallingLedger(InMemoryLedger):
    """La difusión llega al nodo pero la respuesta no vuelve (stall_broadcasts veces)."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.stall_broadcasts = 0
        self.broadcasts = 0

    async def _broadcast(self, prepared):
        self.broadcasts += 1
        await super()._broadcast(prepared)
        if self.stall_broadcasts:
            self.stall_broadcasts -= 1
            await asyncio.sleep(3600)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return StakingConfig(
        house_cut_bps=500,
        fee_recipient=addr(0xFEE),
        default_stake_amount=100,
        default_min_players=4,
        default_max_players=10,
        ledger_call_timeout=0.5,
        confirmation_timeout=0.3,
        stake_pending_timeout=60,
        stake_failure_grace=300,
        reconcile_interval=0.01,
        admin_token="secret-token",
        rules=GameRules(),
    )


@pytest.fixture
def ledger():
    client = InMemoryLedger(call_timeout=0.5, fee_recipient=addr(0xFEE))
    for n in range(1, 13):
        client.fund(addr(n), FUNDED)
    return client


@pytest.fixture
def cache(clock):
    return StakeLedgerCache(clock=clock)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def manager(settings, ledger, cache, clock, notifications):
    async def notifier(game_id, event, payload):
        notifications.append((game_id, event, payload))

    return SessionManager(settings, ledger, cache, notifier=notifier, clock=clock)


@pytest.fixture
def make_game(manager):
    async def _make(creator: int = 1, stake_amount: int = 100, min_players: int = 4, max_players: int = 10):
        config = SessionConfig(
            creator=addr(creator),
            stake_amount=stake_amount,
            min_players=min_players,
            max_players=max_players,
        )
        game_id = await manager.create_session(config)
        return manager.get_session(game_id=game_id)

    return _make
