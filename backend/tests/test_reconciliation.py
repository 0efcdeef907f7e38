import asyncio

import pytest

from pepasur.config import SessionConfig
from pepasur.game_session import Phase
from pepasur.ledger_client import InMemoryLedger, ScriptedOutcome
from pepasur.reconciliation import ReconciliationWorker
from pepasur.session_manager import SessionManager
from pepasur.stake_cache import StakeStatus

from conftest import FUNDED, StallingLedger, addr


@pytest.fixture
def worker(manager, cache, ledger, clock):
    return ReconciliationWorker(manager, cache, ledger, pending_timeout=60, failure_grace=300,
                                interval=0.01, clock=clock)


async def stake(manager, session, n):
    return await manager.stake_for_game(session.game_id, addr(n), session.room_code)


async def test_held_stakes_fail_after_grace_and_release_seats(manager, make_game, ledger, cache, clock, worker):
    session = await make_game()
    ledger.script(addr(1), ScriptedOutcome.HOLD)
    ledger.script(addr(2), ScriptedOutcome.HOLD)
    for n in range(1, 5):
        await stake(manager, session, n)
    await manager.flush()

    assert session.phase == Phase.LOBBY
    assert [cache.get(session.game_id, addr(n)).status for n in range(1, 5)] == [
        StakeStatus.PENDING, StakeStatus.PENDING, StakeStatus.CONFIRMED, StakeStatus.CONFIRMED,
    ]

    clock.advance(61)
    report = await worker.run_once()
    assert report.scanned == 2
    assert report.still_pending == 2
    assert report.failed == 0

    clock.advance(300)
    report = await worker.run_once()
    assert report.failed == 2
    assert session.phase == Phase.LOBBY
    assert len(session.players) == 2
    assert session.find_player(addr(1)) is None
    assert cache.get(session.game_id, addr(1)).failure_reason == "pending past grace"


async def test_dropped_transaction_is_unknown_then_failed(manager, make_game, ledger, cache, clock, worker):
    session = await make_game()
    ledger.script(addr(1), ScriptedOutcome.DROP)
    await stake(manager, session, 1)
    await manager.flush()

    clock.advance(61)
    report = await worker.run_once()
    assert report.still_pending == 1

    clock.advance(300)
    await worker.run_once()
    record = cache.get(session.game_id, addr(1))
    assert record.status == StakeStatus.FAILED
    assert record.failure_reason == "unknown past grace"


async def test_unseen_confirmation_is_applied_and_starts_game(manager, make_game, ledger, cache, clock, worker):
    session = await make_game()
    ledger.script(addr(4), ScriptedOutcome.HOLD)
    for n in range(1, 5):
        await stake(manager, session, n)
    await manager.flush()
    assert session.phase == Phase.LOBBY

    ledger.settle(cache.get(session.game_id, addr(4)).tx_hash)
    clock.advance(61)
    report = await worker.run_once()

    assert report.confirmed == 1
    assert cache.get(session.game_id, addr(4)).status == StakeStatus.CONFIRMED
    assert session.phase == Phase.NIGHT


async def test_reverted_transaction_is_failed_immediately(manager, make_game, ledger, cache, clock, worker):
    session = await make_game()
    ledger.script(addr(1), ScriptedOutcome.HOLD)
    await stake(manager, session, 1)
    await manager.flush()

    ledger.settle(cache.get(session.game_id, addr(1)).tx_hash, ScriptedOutcome.REVERT)
    clock.advance(61)
    report = await worker.run_once()

    assert report.failed == 1
    assert cache.get(session.game_id, addr(1)).failure_reason == "reverted on-chain"
    assert session.players == []


async def test_ledger_errors_leave_record_pending(manager, make_game, ledger, cache, clock, worker):
    session = await make_game()
    ledger.script(addr(1), ScriptedOutcome.HOLD)
    await stake(manager, session, 1)
    await manager.flush()

    ledger.available = False
    clock.advance(100)
    report = await worker.run_once()

    assert report.ledger_errors == 1
    assert cache.get(session.game_id, addr(1)).status == StakeStatus.PENDING


async def test_unbroadcast_stake_fails_only_after_grace(manager, make_game, ledger, cache, clock, worker):
    session = await make_game()
    ledger.hang = True
    record = await stake(manager, session, 1)
    ledger.hang = False
    await manager.flush()
    assert record.tx_hash is not None

    clock.advance(61)
    report = await worker.run_once()
    assert report.still_pending == 1
    assert session.find_player(addr(1)) is not None

    clock.advance(300)
    await worker.run_once()
    assert cache.get(session.game_id, addr(1)).failure_reason == "unknown past grace"
    assert session.find_player(addr(1)) is None


async def test_stake_that_landed_after_submit_timeout_is_confirmed(settings, cache, clock):
    ledger = StallingLedger(call_timeout=0.05)
    ledger.fund(addr(1), FUNDED)
    manager = SessionManager(settings, ledger, cache, clock=clock)
    worker = ReconciliationWorker(manager, cache, ledger, clock=clock)
    session = manager.get_session(game_id=await manager.create_session(SessionConfig(addr(1), 100, 4, 10)))
    ledger.script(addr(1), ScriptedOutcome.HOLD)
    ledger.stall_broadcasts = 1

    record = await manager.stake_for_game(session.game_id, addr(1), session.room_code)
    await manager.flush()
    assert record.status == StakeStatus.PENDING
    assert record.tx_hash in ledger.transactions

    ledger.settle(record.tx_hash)
    clock.advance(61)
    report = await worker.run_once()

    assert report.confirmed == 1
    assert cache.get(session.game_id, addr(1)).status == StakeStatus.CONFIRMED
    assert session.find_player(addr(1)).stake_status == StakeStatus.CONFIRMED


async def test_submission_is_found_by_its_key(manager, make_game, ledger, cache, clock, worker):
    session = await make_game()
    record = await cache.record_pending(session.game_id, addr(1), 100)
    session.join(addr(1), StakeStatus.PENDING, clock())
    handle = await ledger.submit_stake(session.game_id, addr(1), 100, record.nonce)

    clock.advance(61)
    report = await worker.run_once()

    assert report.confirmed == 1
    stored = cache.get(session.game_id, addr(1))
    assert stored.status == StakeStatus.CONFIRMED
    assert stored.tx_hash == handle.tx_hash
    assert session.find_player(addr(1)).stake_status == StakeStatus.CONFIRMED


class UnsignedLedger(InMemoryLedger):
    """Nunca llega a firmar: no hay hash que seguir."""

    async def _prepare(self, kind, game_id, player, amount, nonce):
        await asyncio.sleep(3600)


async def test_lost_submission_is_failed_after_grace(settings, cache, clock):
    ledger = UnsignedLedger(call_timeout=0.05)
    manager = SessionManager(settings, ledger, cache, clock=clock)
    worker = ReconciliationWorker(manager, cache, ledger, clock=clock)
    session = manager.get_session(game_id=await manager.create_session(SessionConfig(addr(1), 100, 4, 10)))

    record = await manager.stake_for_game(session.game_id, addr(1), session.room_code)
    assert record.tx_hash is None

    clock.advance(61)
    report = await worker.run_once()
    assert report.failed == 0
    assert report.still_pending == 1

    clock.advance(300)
    report = await worker.run_once()
    assert report.failed == 1
    assert cache.get(session.game_id, addr(1)).failure_reason == "submission lost"
    assert session.find_player(addr(1)) is None


async def test_young_pending_records_are_not_scanned(manager, make_game, ledger, worker):
    session = await make_game()
    ledger.script(addr(1), ScriptedOutcome.HOLD)
    await stake(manager, session, 1)
    await manager.flush()

    report = await worker.run_once()
    assert report.scanned == 0


async def test_stake_landing_after_reconcile_failure_is_returned(manager, make_game, ledger, cache, clock, worker):
    session = await make_game()
    ledger.script(addr(1), ScriptedOutcome.HOLD)
    record = await stake(manager, session, 1)
    await manager.flush()

    clock.advance(361)
    await worker.run_once()
    assert cache.get(session.game_id, addr(1)).status == StakeStatus.FAILED
    assert record.tx_hash in worker.watched

    ledger.settle(record.tx_hash)
    assert ledger.balances[addr(1)] == FUNDED - 100
    report = await worker.run_once()
    await manager.flush()

    assert report.orphans_found == 1
    assert record.tx_hash not in worker.watched
    assert cache.get(session.game_id, addr(1)).status == StakeStatus.FAILED
    assert session.find_player(addr(1)) is None
    assert cache.conflicts[-1]["txHash"] == record.tx_hash
    assert manager.completed_intents[-1]["reason"] == "orphan_deposit"
    assert ledger.balances[addr(1)] == FUNDED
    assert ledger.custody == 0


async def test_watched_hash_is_dropped_after_the_window(manager, make_game, ledger, cache, clock, worker):
    session = await make_game()
    ledger.script(addr(1), ScriptedOutcome.DROP)
    record = await stake(manager, session, 1)
    await manager.flush()

    clock.advance(361)
    await worker.run_once()
    assert record.tx_hash in worker.watched

    clock.advance(worker.orphan_watch)
    await worker.run_once()
    assert worker.watched == {}


async def test_pass_ticks_expired_sessions(manager, make_game, clock, worker):
    session = await make_game()
    clock.advance(session.rules.lobby_timeout_seconds)

    report = await worker.run_once()

    assert report.sessions_ticked == 1
    assert session.phase == Phase.CANCELLED
    assert report.changed


async def test_background_loop_starts_and_stops(worker):
    worker.start()
    assert worker.running
    await asyncio.sleep(0.05)
    await worker.stop()

    assert not worker.running
    assert worker.last_report is not None
