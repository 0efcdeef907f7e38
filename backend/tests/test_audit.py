import pytest
from sqlalchemy import text

from pepasur.audit import GENESIS_HASH, StakeAuditLog
from pepasur.config import SessionConfig
from pepasur.game_session import GameSession
from pepasur.models import AppendOnlyViolation, StakeEvent
from pepasur.stake_cache import StakeLedgerCache, StakeStatus

from conftest import addr


@pytest.fixture
async def audit(tmp_path):
    log = StakeAuditLog(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
    await log.init_models()
    yield log
    await log.close()


async def test_cache_transitions_are_chained(audit):
    cache = StakeLedgerCache(audit=audit)
    await cache.record_pending("g", addr(1), 100, tx_hash="0xaa")
    await cache.mark_confirmed("g", addr(1), "0xaa", block_ref="block-1")
    await cache.mark_refunded("g", addr(1), "0xbb")

    rows = await audit.stake_events("g")

    assert [(r.from_status, r.to_status) for r in rows] == [
        (None, "PENDING"), ("PENDING", "CONFIRMED"), ("CONFIRMED", "REFUNDED"),
    ]
    assert rows[0].previous_hash == GENESIS_HASH
    assert rows[1].previous_hash == rows[0].event_hash
    assert rows[2].tx_hash == "0xbb"
    assert rows[0].amount == "100"
    assert await audit.verify_chain() == {"valid": True, "events": 3, "brokenAt": None}


async def test_rejected_transitions_are_not_recorded(audit):
    cache = StakeLedgerCache(audit=audit)
    await cache.record_pending("g", addr(1), 100)
    await cache.mark_refunded("g", addr(1))

    assert len(await audit.stake_events()) == 1


async def test_tampering_breaks_the_chain(audit):
    cache = StakeLedgerCache(audit=audit)
    await cache.record_pending("g", addr(1), 100)
    await cache.mark_confirmed("g", addr(1), "0xaa")

    async with audit.engine.begin() as conn:
        await conn.execute(text("UPDATE stake_events SET amount = '999' WHERE id = 1"))

    result = await audit.verify_chain()
    assert result["valid"] is False
    assert result["brokenAt"] == 1


async def test_orm_updates_are_refused(audit):
    cache = StakeLedgerCache(audit=audit)
    await cache.record_pending("g", addr(1), 100)

    async with audit.session_factory() as db:
        row = await db.get(StakeEvent, 1)
        row.to_status = StakeStatus.CONFIRMED.value
        with pytest.raises(AppendOnlyViolation):
            await db.commit()


async def test_chain_resumes_after_restart(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}"
    first = StakeAuditLog(url)
    await first.init_models()
    await StakeLedgerCache(audit=first).record_pending("g", addr(1), 100)
    await first.close()

    second = StakeAuditLog(url)
    await second.init_models()
    await StakeLedgerCache(audit=second).record_pending("g", addr(2), 100)

    assert (await second.verify_chain())["valid"]
    await second.close()


async def test_game_result_is_stored(audit):
    config = SessionConfig(creator=addr(1), stake_amount=100, min_players=4, max_players=6)
    session = GameSession("game-r", "ROOM01", config, now=0.0)
    session.join(addr(2), StakeStatus.CONFIRMED, 0.0)
    session.cancel("creator", 1.0)

    await audit.record_game_result(session)
    stored = await audit.game_result("game-r")

    assert stored.phase == "CANCELLED"
    assert stored.cancel_reason == "creator"
    assert stored.players[0]["address"] == addr(2)
    assert stored.to_dict()["winners"] == []
