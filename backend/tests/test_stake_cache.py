import asyncio

import pytest

from pepasur.errors import DuplicateStake
from pepasur.stake_cache import LedgerEvent, LedgerEventKind, StakeLedgerCache, StakeStatus

from conftest import addr

GAME = "game-1"


async def test_record_pending_then_duplicate_is_rejected(cache):
    record = await cache.record_pending(GAME, addr(1), 100)
    assert record.status == StakeStatus.PENDING
    assert record.attempt == 1
    assert record.player == addr(1)

    with pytest.raises(DuplicateStake):
        await cache.record_pending(GAME, addr(1), 100)


async def test_confirm_round_trip_keeps_tx_ref(cache):
    await cache.record_pending(GAME, addr(1), 100)
    assert await cache.mark_confirmed(GAME, addr(1), "0xabc", block_ref="block-7")

    record = cache.get(GAME, addr(1))
    assert record.status == StakeStatus.CONFIRMED
    assert record.tx_hash == "0xabc"
    assert record.block_ref == "block-7"
    assert record.confirmed_at is not None


async def test_late_confirmation_does_not_resurrect_failed_record(cache):
    await cache.record_pending(GAME, addr(1), 100, tx_hash="0xabc")
    assert await cache.mark_failed(GAME, addr(1), "timeout")

    assert not await cache.mark_confirmed(GAME, addr(1), "0xabc")

    assert cache.get(GAME, addr(1)).status == StakeStatus.FAILED
    assert len(cache.conflicts) == 1
    assert cache.conflicts[0]["currentStatus"] == "FAILED"


async def test_retry_after_failure_creates_new_record(cache):
    await cache.record_pending(GAME, addr(1), 100)
    await cache.mark_failed(GAME, addr(1), "rpc down")

    retry = await cache.record_pending(GAME, addr(1), 100)

    assert retry.attempt == 2
    assert retry.status == StakeStatus.PENDING
    history = cache.history(GAME, addr(1))
    assert [r.status for r in history] == [StakeStatus.FAILED, StakeStatus.PENDING]


async def test_transitions_never_skip_pending(cache):
    await cache.record_pending(GAME, addr(1), 100)

    assert not await cache.mark_refunded(GAME, addr(1))
    assert not await cache.mark_withdrawn(GAME, addr(1))
    assert cache.get(GAME, addr(1)).status == StakeStatus.PENDING

    await cache.mark_confirmed(GAME, addr(1), "0x1")
    assert not await cache.mark_failed(GAME, addr(1), "late timeout")
    assert await cache.mark_refunded(GAME, addr(1), "0xrefund")
    assert not await cache.mark_withdrawn(GAME, addr(1))

    record = cache.get(GAME, addr(1))
    assert record.status == StakeStatus.REFUNDED
    assert record.settled_tx_hash == "0xrefund"


async def test_repeated_confirmation_of_same_tx_is_not_a_conflict(cache):
    await cache.record_pending(GAME, addr(1), 100)
    assert await cache.mark_confirmed(GAME, addr(1), "0x1")
    assert not await cache.mark_confirmed(GAME, addr(1), "0x1")
    assert cache.conflicts == []


async def test_confirmation_of_another_transaction_is_a_conflict(cache):
    await cache.record_pending(GAME, addr(1), 100, tx_hash="0xaaa")

    assert not await cache.mark_confirmed(GAME, addr(1), "0xbbb")

    assert cache.get(GAME, addr(1)).status == StakeStatus.PENDING
    assert cache.conflicts[0]["txHash"] == "0xbbb"
    assert cache.conflicts[0]["currentStatus"] == "PENDING"
    assert await cache.mark_confirmed(GAME, addr(1), "0xaaa")


async def test_get_returns_a_copy(cache):
    await cache.record_pending(GAME, addr(1), 100)
    copy = cache.get(GAME, addr(1))
    copy.status = StakeStatus.CONFIRMED
    assert cache.get(GAME, addr(1)).status == StakeStatus.PENDING


async def test_list_pending_filters_by_age(cache, clock):
    await cache.record_pending(GAME, addr(1), 100)
    clock.advance(30)
    await cache.record_pending(GAME, addr(2), 100)
    clock.advance(40)

    old = list(cache.list_pending(older_than=60))
    assert [r.player for r in old] == [addr(1)]
    assert len(list(cache.list_pending(older_than=0))) == 2


async def test_list_pending_is_a_snapshot(cache):
    for n in range(1, 4):
        await cache.record_pending(GAME, addr(n), 100)

    seen = []
    for record in cache.list_pending(older_than=0):
        seen.append(record.player)
        # Mutating while iterating must not disturb the snapshot
        await cache.mark_failed(GAME, record.player, "scan")
        await cache.record_pending("game-2", record.player, 100)

    assert seen == [addr(1), addr(2), addr(3)]
    # A fresh call takes a fresh snapshot
    assert {r.game_id for r in cache.list_pending(older_than=0)} == {"game-2"}


async def test_apply_event_notifies_listeners_with_applied_flag(cache):
    calls = []

    async def listener(event, applied):
        calls.append((event.kind, applied))

    cache.add_listener(listener)
    await cache.record_pending(GAME, addr(1), 100)
    event = LedgerEvent(LedgerEventKind.CONFIRMED, GAME, addr(1), tx_hash="0x1")

    assert await cache.apply_event(event)
    assert not await cache.apply_event(LedgerEvent(LedgerEventKind.FAILED, GAME, addr(1)))
    assert calls == [(LedgerEventKind.CONFIRMED, True), (LedgerEventKind.FAILED, False)]


async def test_consume_drains_queue_until_stopped(cache):
    await cache.record_pending(GAME, addr(1), 100)
    stop = asyncio.Event()
    consumer = asyncio.create_task(cache.consume(stop, poll_interval=0.01))

    await cache.publish(LedgerEvent(LedgerEventKind.CONFIRMED, GAME, addr(1), tx_hash="0x1"))
    await cache.events.join()
    stop.set()
    await consumer

    assert cache.get(GAME, addr(1)).status == StakeStatus.CONFIRMED


async def test_concurrent_confirm_and_fail_apply_exactly_one():
    cache = StakeLedgerCache()
    await cache.record_pending(GAME, addr(1), 100)

    results = await asyncio.gather(
        cache.mark_confirmed(GAME, addr(1), "0x1"),
        cache.mark_failed(GAME, addr(1), "timeout"),
    )

    assert results.count(True) == 1
    assert cache.get(GAME, addr(1)).status in (StakeStatus.CONFIRMED, StakeStatus.FAILED)
