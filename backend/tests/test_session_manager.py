import asyncio

import pytest

from pepasur.config import SessionConfig
from pepasur.errors import (
    AlreadyJoined,
    InsufficientFunds,
    InvalidConfig,
    InvalidPhase,
    InvalidRoomCode,
    InvalidStakeTransaction,
    LedgerUnavailable,
    NotFound,
    RoomFull,
    ValidationError,
)
from pepasur.game_session import Phase
from pepasur.ledger_client import ScriptedOutcome, TxKind
from pepasur.roles import Role
from pepasur.session_manager import SessionManager
from pepasur.stake_cache import StakeLedgerCache, StakeStatus

from conftest import FUNDED, StallingLedger, addr


async def seat_all(manager, session, players):
    for n in players:
        await manager.stake_for_game(session.game_id, addr(n), session.room_code)


def events_named(notifications, name):
    return [payload for _, event, payload in notifications if event == name]


# =============================================================================
# CREACIÓN Y REGISTRO
# =============================================================================

async def test_create_session_registers_room_code(manager, make_game):
    session = await make_game()
    assert manager.get_session(room_code=session.room_code.lower()) is session
    assert session.phase == Phase.LOBBY
    assert session.players == []


@pytest.mark.parametrize(
    "stake,min_players,max_players",
    [(0, 4, 10), (100, 0, 10), (100, 6, 4)],
)
async def test_invalid_config_is_rejected(manager, stake, min_players, max_players):
    config = SessionConfig(creator=addr(1), stake_amount=stake, min_players=min_players, max_players=max_players)
    with pytest.raises(InvalidConfig):
        await manager.create_session(config)


async def test_bad_creator_address_is_rejected(manager):
    with pytest.raises(ValidationError):
        await manager.create_session(SessionConfig("not-an-address", 100, 4, 10))


# =============================================================================
# STAKE + ASIENTO
# =============================================================================

async def test_room_code_checks(manager, make_game):
    session = await make_game()
    other = await make_game(creator=2)

    with pytest.raises(InvalidRoomCode):
        await manager.stake_for_game(session.game_id, addr(1), "abc")
    with pytest.raises(InvalidRoomCode):
        await manager.stake_for_game(session.game_id, addr(1), other.room_code)
    with pytest.raises(NotFound):
        await manager.stake_for_game("missing", addr(1), session.room_code)

    record = await manager.stake_for_game(session.game_id, addr(1), session.room_code.lower())
    assert record.status in (StakeStatus.PENDING, StakeStatus.CONFIRMED)


async def test_stake_is_pending_until_event_is_applied(manager, make_game, cache):
    session = await make_game()
    record = await manager.stake_for_game(session.game_id, addr(1), session.room_code)

    assert record.status == StakeStatus.PENDING
    assert record.tx_hash is not None
    assert session.find_player(addr(1)).stake_status == StakeStatus.PENDING

    await manager.flush()
    assert cache.get(session.game_id, addr(1)).status == StakeStatus.CONFIRMED
    assert session.find_player(addr(1)).stake_status == StakeStatus.CONFIRMED


async def test_second_stake_from_same_player_is_rejected(manager, make_game):
    session = await make_game()
    await manager.stake_for_game(session.game_id, addr(1), session.room_code)
    with pytest.raises(AlreadyJoined):
        await manager.stake_for_game(session.game_id, addr(1), session.room_code)


async def test_concurrent_stakes_for_last_seat(manager, make_game, cache):
    session = await make_game(max_players=4)
    await seat_all(manager, session, [1, 2, 3])

    results = await asyncio.gather(
        *(manager.stake_for_game(session.game_id, addr(n), session.room_code) for n in range(4, 9)),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, RoomFull) for r in results if isinstance(r, Exception))
    assert len(session.players) == 4
    # Ningún perdedor dejó un registro en la caché
    losers = [addr(n) for n in range(4, 9) if addr(n) != winners[0].player]
    assert all(cache.get(session.game_id, p) is None for p in losers)


async def test_four_confirmations_auto_start_the_game(manager, make_game, notifications):
    session = await make_game()
    await seat_all(manager, session, [1, 2, 3, 4])
    await manager.flush()

    assert session.phase == Phase.NIGHT
    assert sum(1 for p in session.players if p.role == Role.ASUR) == 1
    phases = [payload["phase"] for payload in events_named(notifications, "phase_changed")]
    assert phases == ["NIGHT"]
    assert events_named(notifications, "stake_update")


async def test_ledger_unavailable_releases_seat_and_allows_retry(manager, make_game, ledger, cache):
    session = await make_game()
    ledger.available = False

    with pytest.raises(LedgerUnavailable):
        await manager.stake_for_game(session.game_id, addr(1), session.room_code)

    assert cache.get(session.game_id, addr(1)).status == StakeStatus.FAILED
    assert session.find_player(addr(1)) is None

    ledger.available = True
    retry = await manager.stake_for_game(session.game_id, addr(1), session.room_code)
    assert retry.attempt == 2
    assert len(cache.history(session.game_id, addr(1))) == 2


async def test_insufficient_funds_fails_the_stake(manager, make_game, cache):
    session = await make_game()
    with pytest.raises(InsufficientFunds):
        await manager.stake_for_game(session.game_id, addr(77), session.room_code)
    assert cache.get(session.game_id, addr(77)).status == StakeStatus.FAILED
    assert session.players == []


async def test_reverted_stake_releases_seat(manager, make_game, ledger, cache):
    session = await make_game()
    ledger.script(addr(2), ScriptedOutcome.REVERT)

    await manager.stake_for_game(session.game_id, addr(2), session.room_code)
    await manager.flush()

    record = cache.get(session.game_id, addr(2))
    assert record.status == StakeStatus.FAILED
    assert record.failure_reason.startswith("revertida")
    assert session.find_player(addr(2)) is None


async def test_submission_timeout_keeps_seat_pending(manager, make_game, ledger, cache):
    session = await make_game()
    ledger.hang = True

    record = await manager.stake_for_game(session.game_id, addr(1), session.room_code)

    assert record.status == StakeStatus.PENDING
    # El hash ya firmado queda asociado aunque nunca se haya difundido
    handle = ledger.lookup_submission(TxKind.STAKE, session.game_id, addr(1), record.nonce)
    assert record.tx_hash == handle.tx_hash
    assert record.tx_hash not in ledger.transactions
    assert session.find_player(addr(1)) is not None

    await manager.flush()
    assert cache.get(session.game_id, addr(1)).status == StakeStatus.PENDING


async def test_stake_rejected_once_game_started(manager, make_game):
    session = await make_game()
    await seat_all(manager, session, [1, 2, 3, 4])
    await manager.flush()

    with pytest.raises(InvalidPhase):
        await manager.stake_for_game(session.game_id, addr(5), session.room_code)



async def test_player_signed_stake_is_confirmed(manager, make_game, ledger, cache):
    session = await make_game()
    tx_hash = ledger.wallet_join(addr(1), session.game_id, 100)

    record = await manager.stake_for_game(session.game_id, addr(1), session.room_code, tx_hash=tx_hash)
    assert record.tx_hash == tx_hash

    await manager.flush()
    assert cache.get(session.game_id, addr(1)).status == StakeStatus.CONFIRMED
    assert session.find_player(addr(1)).stake_status == StakeStatus.CONFIRMED
    assert ledger.custody == 100


async def test_foreign_stake_transaction_releases_the_seat(manager, make_game, ledger, cache):
    session = await make_game()
    someone_else = ledger.wallet_join(addr(2), session.game_id, 100)

    with pytest.raises(InvalidStakeTransaction):
        await manager.stake_for_game(session.game_id, addr(1), session.room_code, tx_hash=someone_else)

    assert cache.get(session.game_id, addr(1)).status == StakeStatus.FAILED
    assert session.find_player(addr(1)) is None


async def test_malformed_stake_hash_is_rejected_before_seating(manager, make_game, cache):
    session = await make_game()
    with pytest.raises(ValidationError):
        await manager.stake_for_game(session.game_id, addr(1), session.room_code, tx_hash="0x123")
    assert cache.get(session.game_id, addr(1)) is None
    assert session.players == []


# =============================================================================
# LIQUIDACIÓN
# =============================================================================

async def test_cancel_refunds_confirmed_stakes(manager, make_game, ledger, cache, notifications):
    session = await make_game()
    await seat_all(manager, session, [1, 2])
    await manager.flush()

    await manager.cancel_session(session.game_id, "creator_cancelled")
    await manager.flush()

    assert session.phase == Phase.CANCELLED
    for n in (1, 2):
        record = cache.get(session.game_id, addr(n))
        assert record.status == StakeStatus.REFUNDED
        assert record.settled_tx_hash is not None
        assert ledger.balances[addr(n)] == FUNDED
    assert ledger.custody == 0
    assert events_named(notifications, "session_cancelled")


async def test_late_confirmation_after_cancel_is_refunded(manager, make_game, ledger, cache):
    session = await make_game()
    ledger.script(addr(3), ScriptedOutcome.HOLD)
    record = await manager.stake_for_game(session.game_id, addr(3), session.room_code)

    await manager.cancel_session(session.game_id)
    ledger.settle(record.tx_hash)
    await manager.flush()

    assert cache.get(session.game_id, addr(3)).status == StakeStatus.REFUNDED
    assert ledger.balances[addr(3)] == FUNDED
    assert any(i["reason"] == "late_confirmation" for i in manager.completed_intents)


async def test_full_game_pays_winners_and_fee(manager, make_game, ledger, cache, notifications, settings):
    session = await make_game()
    await seat_all(manager, session, [1, 2, 3, 4])
    await manager.flush()

    asur = next(p.address for p in session.players if p.role == Role.ASUR)
    await manager.advance_phase(session.game_id)
    await manager.advance_phase(session.game_id)
    for player in list(session.alive_players()):
        await manager.submit_vote(session.game_id, player.address, asur if player.address != asur else None)
    await manager.flush()

    assert session.phase == Phase.RESOLVED
    for player in session.players:
        expected = StakeStatus.CONFIRMED if player.address == asur else StakeStatus.WITHDRAWN
        assert cache.get(session.game_id, player.address).status == expected
    assert ledger.custody == 0
    assert ledger.balances[settings.fee_recipient.lower()] == 22
    assert ledger.balances[asur] == FUNDED - 100
    assert events_named(notifications, "game_over")[0]["winningFaction"] == "VILLAGE"


async def test_failed_intents_can_be_retried(manager, make_game, ledger, cache):
    session = await make_game()
    await seat_all(manager, session, [1, 2, 3, 4])
    await manager.flush()

    ledger.available = False
    await manager.abort_session(session.game_id, "maintenance")
    await manager.flush()
    assert len(manager.failed_intents) == 4

    ledger.available = True
    assert await manager.retry_failed_intents() == 4
    await manager.flush()

    assert manager.failed_intents == []
    assert all(
        cache.get(session.game_id, addr(n)).status == StakeStatus.REFUNDED for n in range(1, 5)
    )


async def test_timed_out_refunds_are_paid_once(settings, cache, clock):
    ledger = StallingLedger(call_timeout=0.05, fee_recipient=addr(0xFEE))
    for n in (1, 2):
        ledger.fund(addr(n), FUNDED)
    manager = SessionManager(settings, ledger, cache, clock=clock)
    session = manager.get_session(game_id=await manager.create_session(SessionConfig(addr(1), 100, 4, 10)))
    await seat_all(manager, session, [1, 2])
    await manager.flush()

    ledger.stall_broadcasts = 2
    await manager.cancel_session(session.game_id)
    await manager.flush()
    assert len(manager.failed_intents) == 2

    assert await manager.retry_failed_intents() == 2
    await manager.flush()

    for n in (1, 2):
        assert ledger.paid_to(addr(n)) == 100
        assert ledger.balances[addr(n)] == FUNDED
        assert cache.get(session.game_id, addr(n)).status == StakeStatus.REFUNDED
    assert ledger.custody == 0


async def test_confirmation_after_cleanup_is_a_conflict_and_refunded(manager, make_game, ledger, cache, clock):
    session = await make_game()
    ledger.script(addr(3), ScriptedOutcome.HOLD)
    record = await manager.stake_for_game(session.game_id, addr(3), session.room_code)
    await manager.cancel_session(session.game_id)
    clock.advance(61)
    assert manager.cleanup_finished(max_age=60) == 1

    ledger.settle(record.tx_hash)
    await manager.flush()

    assert [c["detail"] for c in cache.conflicts] == ["sesión liberada"]
    assert cache.get(session.game_id, addr(3)).status == StakeStatus.REFUNDED
    assert ledger.balances[addr(3)] == FUNDED
    assert [i["reason"] for i in manager.completed_intents] == ["session_released"]


async def test_deposit_confirmed_for_a_failed_stake_is_returned(manager, make_game, ledger, cache):
    session = await make_game()
    ledger.script(addr(3), ScriptedOutcome.HOLD)
    record = await manager.stake_for_game(session.game_id, addr(3), session.room_code)
    await cache.mark_failed(session.game_id, addr(3), "operador")

    ledger.settle(record.tx_hash)
    await manager.flush()

    assert cache.get(session.game_id, addr(3)).status == StakeStatus.FAILED
    assert cache.conflicts[0]["txHash"] == record.tx_hash
    refund = manager.completed_intents[0]
    assert refund["reason"] == "orphan_deposit"
    assert refund["sourceTx"] == record.tx_hash
    assert ledger.balances[addr(3)] == FUNDED
    assert ledger.custody == 0


# =============================================================================
# DEADLINES Y CONSULTAS
# =============================================================================

async def test_tick_cancels_expired_lobby(manager, make_game, clock, notifications):
    session = await make_game()
    clock.advance(session.rules.lobby_timeout_seconds)

    assert await manager.tick() == 1
    assert session.phase == Phase.CANCELLED
    assert session.cancel_reason == "lobby_timeout"
    assert await manager.tick() == 0


async def test_tick_advances_night_after_deadline(manager, make_game, clock):
    session = await make_game()
    await seat_all(manager, session, [1, 2, 3, 4])
    await manager.flush()

    assert await manager.tick() == 0
    clock.advance(session.rules.night_seconds)
    assert await manager.tick() == 1
    assert session.phase == Phase.DAY


async def test_cleanup_finished_drops_old_terminal_sessions(manager, make_game, clock):
    session = await make_game()
    active = await make_game(creator=2)
    await manager.cancel_session(session.game_id)

    assert manager.cleanup_finished(max_age=60) == 0
    clock.advance(61)
    assert manager.cleanup_finished(max_age=60) == 1

    assert manager.get_session(game_id=session.game_id) is None
    assert manager.get_session(room_code=session.room_code) is None
    assert manager.get_session(game_id=active.game_id) is active


async def test_summaries_and_listing(manager, make_game):
    session = await make_game()
    cancelled = await make_game(creator=2)
    await seat_all(manager, session, [1, 2])
    await manager.flush()
    await manager.cancel_session(cancelled.game_id)

    summary = manager.staking_summary(session.game_id)
    assert summary["confirmedCount"] == 2
    assert summary["totalStaked"] == "200"
    assert summary["readyToStart"] is False

    listed = manager.list_staked_games()
    assert [s["gameId"] for s in listed] == [session.game_id]

    assert manager.player_stake(session.game_id, addr(1)).status == StakeStatus.CONFIRMED
    with pytest.raises(NotFound):
        manager.player_stake(session.game_id, addr(9))


async def test_check_balance(manager):
    funded = await manager.check_balance(addr(1))
    assert funded["sufficient"] is True
    assert funded["balance"] == str(FUNDED)

    empty = await manager.check_balance(addr(77))
    assert empty["sufficient"] is False

    with pytest.raises(ValidationError):
        await manager.check_balance("0x123")


async def test_active_games_history_and_role_proof(manager, make_game):
    session = await make_game()
    cancelled = await make_game(creator=2)
    await manager.cancel_session(cancelled.game_id)
    await seat_all(manager, session, [1, 2, 3, 4])
    await manager.flush()

    active = manager.list_active_games()
    assert [g["gameId"] for g in active] == [session.game_id]
    assert active[0]["players"] == 4
    assert active[0]["phase"] == "NIGHT"
    assert active[0]["startedAt"] is not None

    with pytest.raises(InvalidPhase):
        manager.verify_roles(session.game_id)
    await manager.abort_session(session.game_id, "maintenance")

    assert manager.verify_roles(session.game_id)["valid"] is True
    history = manager.game_history(session.game_id)
    assert history["cancelReason"] == "maintenance"
    assert [entry["phase"] for entry in history["phaseLog"]][-1] == "CANCELLED"
    with pytest.raises(NotFound):
        manager.game_history("missing")


async def test_chat_is_broadcast_to_the_room(manager, make_game, notifications):
    session = await make_game()
    await seat_all(manager, session, [1])

    entry = await manager.post_chat(session.game_id, addr(1), "¿quién es el asur?")

    assert events_named(notifications, "chat_message") == [entry]
    assert entry["playerAddress"] == addr(1)
    with pytest.raises(NotFound):
        await manager.post_chat(session.game_id, addr(9), "hola")
    with pytest.raises(ValidationError):
        await manager.post_chat(session.game_id, addr(1), "")
