"""Tests for match content mutations, vote locking, and concurrency."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import threading

import pytest

from engine.clock import ManualClock
from engine.errors import AuthorizationError, AuthRejection, NotFoundError, StateError, ValidationError
from engine.ledger import VoteLedger
from engine.match_store import MAX_MESSAGE_CHARS, MatchStateStore
from engine.models import (
    BotOpponent,
    Conversation,
    HumanOpponent,
    Match,
    OpponentKind,
    Participant,
    Persona,
    UserProfile,
    Vote,
)
from engine.personas import DEFAULT_PERSONAS

CYCLE = "cycle-1"


def _profile(identity: int) -> UserProfile:
    return UserProfile(identity=identity, username=f"user{identity}", display_name=f"User {identity}")


def _setup(unvoted_default: Vote | None = Vote.REAL) -> tuple[ManualClock, MatchStateStore, dict[int, Participant]]:
    clock = ManualClock()
    ledger = VoteLedger()
    participants = {
        identity: Participant(identity=identity, profile=_profile(identity), registered_at_ms=0)
        for identity in (1, 2)
    }
    ledger.track(CYCLE, participants)
    return clock, MatchStateStore(clock, ledger, unvoted_default=unvoted_default), participants


def _bot_match(clock: ManualClock, match_id: str = "m-bot", owner: int = 1, slot: int = 1) -> Match:
    now = clock.now_ms()
    return Match(
        match_id=match_id,
        cycle_id=CYCLE,
        round_number=1,
        slot=slot,
        owner=owner,
        owner_profile=_profile(owner),
        opponent=BotOpponent(persona=DEFAULT_PERSONAS[0]),
        conversation=Conversation(),
        started_at_ms=now,
        deadline_ms=now + 60_000,
    )


def _human_pair(clock: ManualClock) -> tuple[Match, Match]:
    now = clock.now_ms()
    conversation = Conversation()
    first = Match(
        match_id="m-a",
        cycle_id=CYCLE,
        round_number=1,
        slot=2,
        owner=1,
        owner_profile=_profile(1),
        opponent=HumanOpponent(identity=2, profile=_profile(2)),
        conversation=conversation,
        started_at_ms=now,
        deadline_ms=now + 60_000,
        mirror_id="m-b",
    )
    second = Match(
        match_id="m-b",
        cycle_id=CYCLE,
        round_number=1,
        slot=2,
        owner=2,
        owner_profile=_profile(2),
        opponent=HumanOpponent(identity=1, profile=_profile(1)),
        conversation=conversation,
        started_at_ms=now,
        deadline_ms=now + 60_000,
        mirror_id="m-a",
    )
    return first, second


def test_insert_round_is_all_or_nothing() -> None:
    clock, store, _ = _setup()
    store.insert_round([_bot_match(clock)])

    with pytest.raises(StateError):
        store.insert_round([_bot_match(clock, match_id="m-new", slot=2), _bot_match(clock, match_id="m-dup", slot=1)])

    with pytest.raises(NotFoundError):
        store.get("m-new")


def test_messages_get_strictly_increasing_timestamps() -> None:
    clock, store, _ = _setup()
    first, second = _human_pair(clock)
    store.insert_round([first, second])

    one = store.append_message("m-a", 1, "hello")
    two = store.append_message("m-b", 2, "hey there")
    three = store.append_message("m-a", 1, "how are you")

    assert one.timestamp_ms < two.timestamp_ms < three.timestamp_ms
    assert [message.text for message in store.get("m-b").conversation.messages] == ["hello", "hey there", "how are you"]
    assert two.sender_username == "user2"


def test_message_validation_and_membership() -> None:
    clock, store, _ = _setup()
    store.insert_round([_bot_match(clock)])

    with pytest.raises(ValidationError):
        store.append_message("m-bot", 1, "   ")
    with pytest.raises(ValidationError):
        store.append_message("m-bot", 1, "x" * (MAX_MESSAGE_CHARS + 1))
    with pytest.raises(AuthorizationError) as exc_info:
        store.append_message("m-bot", 99, "intruder")
    assert exc_info.value.reason is AuthRejection.FORBIDDEN
    with pytest.raises(AuthorizationError):
        store.append_message("m-bot", 12345, "not the bot", from_bot=True)


def test_bot_cannot_speak_twice_in_a_row_when_turns_are_enforced() -> None:
    clock, store, _ = _setup()
    store.insert_round([_bot_match(clock)])
    bot_identity = DEFAULT_PERSONAS[0].identity

    store.append_message("m-bot", bot_identity, "gm", from_bot=True, enforce_turn=True)
    with pytest.raises(AuthorizationError) as exc_info:
        store.append_message("m-bot", bot_identity, "gm again", from_bot=True, enforce_turn=True)
    assert exc_info.value.reason is AuthRejection.WRONG_TURN

    store.append_message("m-bot", 1, "hi")
    store.append_message("m-bot", bot_identity, "whats up", from_bot=True, enforce_turn=True)


def test_messages_and_votes_rejected_after_deadline() -> None:
    clock, store, _ = _setup()
    store.insert_round([_bot_match(clock)])
    clock.advance(60_000)

    with pytest.raises(StateError, match="match locked"):
        store.append_message("m-bot", 1, "too late")
    with pytest.raises(StateError, match="vote locked"):
        store.set_vote("m-bot", 1, Vote.BOT)


def test_vote_history_counts_only_changes() -> None:
    clock, store, _ = _setup()
    store.insert_round([_bot_match(clock)])

    clock.advance(1000)
    store.set_vote("m-bot", 1, Vote.REAL)
    store.set_vote("m-bot", 1, Vote.REAL)
    clock.advance(2000)
    match = store.set_vote("m-bot", 1, Vote.BOT)

    assert match.vote is Vote.BOT
    assert [change.vote for change in match.vote_history] == [Vote.REAL, Vote.BOT]
    with pytest.raises(AuthorizationError):
        store.set_vote("m-bot", 2, Vote.BOT)


def test_toggled_vote_is_scored_as_the_last_choice() -> None:
    clock, store, participants = _setup()
    a, b = _human_pair(clock)
    store.insert_round([_bot_match(clock), a, b])

    for delay, vote in ((1000, Vote.REAL), (1000, Vote.BOT), (1500, Vote.REAL)):
        clock.advance(delay)
        store.set_vote("m-bot", 1, vote)
        store.set_vote("m-a", 1, vote)
    bot_result = store.lock_for_participant("m-bot", 1)
    human_result = store.lock_for_participant("m-a", 1)

    assert bot_result is not None and human_result is not None
    assert bot_result.vote is Vote.REAL and not bot_result.correct
    assert human_result.vote is Vote.REAL and human_result.correct
    assert bot_result.vote_changes == human_result.vote_changes == 3
    assert bot_result.decision_ms == 3500
    assert participants[1].score == 1
    with pytest.raises(StateError, match="vote locked"):
        store.set_vote("m-bot", 1, Vote.BOT)


def test_busy_match_defers_a_bounded_deadline_lock() -> None:
    clock, store, participants = _setup()
    match = store.insert_round([_bot_match(clock)])[0]

    with match.conversation.lock:
        assert store.lock_at_deadline("m-bot", wait_sec=0.01) is None
    assert not match.locked
    assert participants[1].history == []

    result = store.lock_at_deadline("m-bot", wait_sec=0.01)
    assert result is not None and result.vote is Vote.REAL


def test_opening_line_needs_an_empty_conversation() -> None:
    clock, store, _ = _setup()
    store.insert_round([_bot_match(clock)])
    bot = DEFAULT_PERSONAS[0].identity

    store.append_message("m-bot", 1, "gm")
    with pytest.raises(StateError, match="already started"):
        store.append_message("m-bot", bot, "hey", from_bot=True, opening=True)


def test_lock_scores_once_and_updates_the_owner() -> None:
    clock, store, participants = _setup()
    store.insert_round([_bot_match(clock)])
    clock.advance(4000)
    store.set_vote("m-bot", 1, Vote.BOT)

    result = store.lock_for_participant("m-bot", 1)
    again = store.lock_for_participant("m-bot", 1)

    assert result is not None
    assert again == result
    assert result.correct
    assert result.opponent_type is OpponentKind.BOT
    assert result.decision_ms == 4000
    assert store.lock_at_deadline("m-bot") is None
    assert participants[1].score == 1
    assert participants[1].history == [result]
    assert store.list_active_for_participant(1) == []


def test_unvoted_match_uses_default_unless_forced() -> None:
    clock, store, participants = _setup()
    store.insert_round([_bot_match(clock), _bot_match(clock, match_id="m-bot-2", slot=2)])

    defaulted = store.lock_at_deadline("m-bot")
    forfeited = store.lock_at_deadline("m-bot-2", forfeit=True)

    assert defaulted is not None and defaulted.vote is Vote.REAL and not defaulted.forfeit
    assert not defaulted.correct
    assert forfeited is not None and forfeited.vote is None and forfeited.forfeit
    assert not forfeited.correct
    assert len(participants[1].history) == 2


def test_concurrent_locks_score_exactly_once() -> None:
    clock, store, participants = _setup()
    store.insert_round([_bot_match(clock)])
    store.set_vote("m-bot", 1, Vote.BOT)
    barrier = threading.Barrier(8)

    def _lock() -> object:
        barrier.wait()
        return store.lock_at_deadline("m-bot")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: _lock(), range(8)))

    assert sum(1 for result in results if result is not None) == 1
    assert len(participants[1].history) == 1
    assert participants[1].score == 1


def test_vote_racing_a_lock_is_either_scored_or_rejected() -> None:
    clock, store, participants = _setup()
    store.insert_round([_bot_match(clock)])
    barrier = threading.Barrier(2)
    outcome: dict[str, object] = {}

    def _vote() -> None:
        barrier.wait()
        try:
            store.set_vote("m-bot", 1, Vote.BOT)
            outcome["vote"] = "accepted"
        except StateError:
            outcome["vote"] = "rejected"

    def _lock() -> None:
        barrier.wait()
        outcome["result"] = store.lock_at_deadline("m-bot")

    threads = [threading.Thread(target=_vote), threading.Thread(target=_lock)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    result = outcome["result"]
    assert result is not None
    assert (outcome["vote"] == "accepted") == (result.vote is Vote.BOT)
    assert result.correct == (result.vote is Vote.BOT)
    assert len(participants[1].history) == 1


def test_concurrent_senders_keep_a_total_order() -> None:
    clock, store, _ = _setup()
    first, second = _human_pair(clock)
    store.insert_round([first, second])
    barrier = threading.Barrier(2)

    def _send(match_id: str, identity: int) -> None:
        barrier.wait()
        for index in range(25):
            store.append_message(match_id, identity, f"{identity}-{index}")

    threads = [threading.Thread(target=_send, args=("m-a", 1)), threading.Thread(target=_send, args=("m-b", 2))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stamps = [message.timestamp_ms for message in first.conversation.messages]
    assert len(stamps) == 50
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == 50


def test_awaiting_bot_reply_only_lists_external_bots_for_their_controller() -> None:
    clock, store, _ = _setup()
    external = Persona.from_dict(
        {"persona_id": "ext", "identity": 777, "username": "ext", "is_external": True, "controller": "Alice"}
    )
    match = _bot_match(clock, match_id="m-ext")
    match.opponent = BotOpponent(persona=external)
    store.insert_round([match, _bot_match(clock, match_id="m-int", slot=2)])

    assert [m.match_id for m in store.awaiting_bot_reply(controller="alice")] == ["m-ext"]
    assert store.awaiting_bot_reply(controller=None) == []
    store.append_message("m-ext", 777, "gm", from_bot=True, enforce_turn=True)
    assert store.awaiting_bot_reply(controller="alice") == []


def test_purge_cycle_drops_matches() -> None:
    clock, store, _ = _setup()
    store.insert_round([_bot_match(clock)])

    assert store.purge_cycle(CYCLE) == 1
    assert store.matches_for_round(CYCLE, 1) == []
    assert store.round_fully_locked(CYCLE, 1)
    with pytest.raises(NotFoundError):
        store.get("m-bot")
