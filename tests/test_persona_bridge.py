"""Tests for bounded-time persona replies and delivery into matches."""

from __future__ import annotations

import random
import threading

import pytest

from engine.clock import ManualClock
from engine.events import EventLog, EventType
from engine.ledger import VoteLedger
from engine.match_store import MatchStateStore
from engine.models import BotOpponent, Conversation, Match, Message, Persona, UserProfile, Vote
from engine.persona_bridge import (
    MAX_TYPING_DELAY_SEC,
    PersonaBridge,
    calculate_typing_delay,
    filler_reply,
    opener_rate,
)
from engine.personas import DEFAULT_PERSONAS

BRIEF, _, DETAILED = DEFAULT_PERSONAS


class _FixedGenerator:
    def __init__(self, reply: str):
        self.reply = reply
        self.transcripts: list[list[Message]] = []

    def generate(self, persona: Persona, transcript) -> str:  # noqa: ANN001
        self.transcripts.append(list(transcript))
        return self.reply


class _BlockingGenerator:
    """Generator that hangs until released, like a stalled upstream model."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def generate(self, persona: Persona, transcript) -> str:  # noqa: ANN001
        self.started.set()
        self.release.wait(timeout=5)
        return "finally"


class _FailingGenerator:
    def generate(self, persona: Persona, transcript) -> str:  # noqa: ANN001
        raise RuntimeError("HTTP 500 from upstream")


def _store_with_match(persona: Persona = BRIEF) -> tuple[ManualClock, MatchStateStore, Match]:
    clock = ManualClock()
    store = MatchStateStore(clock, VoteLedger())
    match = Match(
        match_id="m1",
        cycle_id="c1",
        round_number=1,
        slot=1,
        owner=1,
        owner_profile=UserProfile(identity=1, username="alice", display_name="Alice"),
        opponent=BotOpponent(persona=persona),
        conversation=Conversation(),
        started_at_ms=clock.now_ms(),
        deadline_ms=clock.now_ms() + 60_000,
    )
    store.insert_round([match])
    return clock, store, match


def _message(text: str) -> Message:
    return Message(message_id="x", sender_identity=1, sender_username="alice", text=text, timestamp_ms=1)


def test_filler_reply_follows_the_last_message_and_tone() -> None:
    assert filler_reply(BRIEF, [_message("are you real?")]) == "not sure tbh"
    assert filler_reply(BRIEF, [_message("gm fren")]) == "gm"
    assert filler_reply(BRIEF, [_message("ok")]) == "hm"
    assert filler_reply(DETAILED, [_message("ok")]) == "interesting point"
    assert filler_reply(DEFAULT_PERSONAS[1]) == "..."


def test_typing_delay_is_short_for_quick_replies_and_capped() -> None:
    quick = calculate_typing_delay("ok", "brief and concise", "cool", rng=random.Random(1))
    slow = calculate_typing_delay("honestly 🎉 " * 100, "detailed and thoughtful", "why?", rng=random.Random(1))

    assert 0.2 < quick < 0.7
    assert slow == MAX_TYPING_DELAY_SEC


def test_generation_timeout_returns_filler_and_records_fallback() -> None:
    clock, store, match = _store_with_match()
    events = EventLog()
    generator = _BlockingGenerator()
    bridge = PersonaBridge(store, generator, clock, timeout_sec=0.05, events=events)
    try:
        reply = bridge.generate(BRIEF, [_message("you there?")], match=match)
    finally:
        generator.release.set()
        bridge.shutdown()

    assert reply == "not sure tbh"
    fallback = events.for_cycle("c1")
    assert [event.event_type for event in fallback] == [EventType.PERSONA_FALLBACK]
    assert fallback[0].payload["error"]["type"] == "UpstreamTimeoutError"


def test_generation_failure_returns_filler() -> None:
    clock, store, match = _store_with_match()
    bridge = PersonaBridge(store, _FailingGenerator(), clock, timeout_sec=1.0)
    try:
        assert bridge.generate(BRIEF, [], match=match) == "hm"
    finally:
        bridge.shutdown()


def test_human_message_schedules_a_bot_reply() -> None:
    clock, store, match = _store_with_match()
    generator = _FixedGenerator("haha true")
    bridge = PersonaBridge(store, generator, clock, timeout_sec=1.0)
    store.append_message("m1", 1, "gm")
    try:
        future = bridge.on_human_message(match)
        assert future is not None
        delivered = future.result(timeout=5)
    finally:
        bridge.shutdown()

    assert delivered is not None
    assert delivered.sender_identity == BRIEF.identity
    assert delivered.sender_username == BRIEF.profile.username
    assert [message.text for message in match.conversation.messages] == ["gm", "haha true"]
    assert [message.text for message in generator.transcripts[0]] == ["gm"]


def test_reply_landing_after_lock_is_dropped() -> None:
    clock, store, match = _store_with_match()
    generator = _BlockingGenerator()
    bridge = PersonaBridge(store, generator, clock, timeout_sec=5.0)
    store.append_message("m1", 1, "hello")
    try:
        future = bridge.on_human_message(match)
        assert future is not None
        assert generator.started.wait(timeout=5)
        store.lock_at_deadline("m1")
        generator.release.set()
        assert future.result(timeout=5) is None
    finally:
        bridge.shutdown()

    assert [message.text for message in match.conversation.messages] == ["hello"]


def test_simulated_typing_waits_before_delivery() -> None:
    clock, store, match = _store_with_match()
    delays: list[float] = []
    bridge = PersonaBridge(
        store, _FixedGenerator("sure"), clock, timeout_sec=1.0, simulate_typing=True, sleep=delays.append
    )
    store.append_message("m1", 1, "hey")
    try:
        future = bridge.on_human_message(match)
        assert future is not None
        assert future.result(timeout=5) is not None
    finally:
        bridge.shutdown()

    assert len(delays) == 1
    assert 0.0 < delays[0] <= MAX_TYPING_DELAY_SEC


def test_external_personas_are_not_voiced_internally() -> None:
    external = Persona.from_dict({"persona_id": "ext", "identity": 555, "username": "ext", "is_external": True})
    clock, store, match = _store_with_match(external)
    bridge = PersonaBridge(store, _FixedGenerator("nope"), clock)
    try:
        assert bridge.on_human_message(match) is None
    finally:
        bridge.shutdown()


class _FixedRandom:
    def __init__(self, value: float):
        self.value = value

    def random(self) -> float:
        return self.value


def test_silent_persona_still_answers_with_filler_before_the_lock() -> None:
    clock, store, match = _store_with_match()
    events = EventLog()
    generator = _BlockingGenerator()
    bridge = PersonaBridge(store, generator, clock, timeout_sec=0.05, events=events)
    store.append_message("m1", 1, "are you a bot?")
    try:
        future = bridge.on_human_message(match)
        assert future is not None
        delivered = future.result(timeout=5)
    finally:
        generator.release.set()
        bridge.shutdown()

    assert delivered is not None and delivered.text == "not sure tbh"
    clock.advance(60_000)
    result = store.lock_at_deadline("m1")

    assert match.locked
    assert result is not None and result.vote is Vote.REAL
    assert [message.text for message in match.conversation.messages] == ["are you a bot?", "not sure tbh"]
    assert [event.event_type for event in events.for_cycle("c1")] == [EventType.PERSONA_FALLBACK]


def test_opener_rate_follows_the_inferred_style() -> None:
    assert opener_rate("brief and concise") == 0.1
    assert opener_rate("conversational | initiator") == 0.4
    assert opener_rate("conversational | initiator | curious") == pytest.approx(0.5)
    assert opener_rate("brief and concise | curious") == pytest.approx(0.2)


def test_initiator_persona_opens_the_conversation() -> None:
    initiator = DEFAULT_PERSONAS[1]
    clock, store, match = _store_with_match(initiator)
    generator = _FixedGenerator("gm")
    bridge = PersonaBridge(store, generator, clock, timeout_sec=1.0, rng=_FixedRandom(0.3))
    try:
        future = bridge.open_conversation(match)
        assert future is not None
        opened = future.result(timeout=5)
    finally:
        bridge.shutdown()

    assert opened is not None and opened.from_bot
    assert [message.text for message in match.conversation.messages] == ["gm"]
    assert generator.transcripts == [[]]


def test_quiet_persona_waits_for_the_human() -> None:
    clock, store, match = _store_with_match(BRIEF)
    bridge = PersonaBridge(store, _FixedGenerator("gm"), clock, rng=_FixedRandom(0.3))
    try:
        assert bridge.open_conversation(match) is None
    finally:
        bridge.shutdown()

    assert match.conversation.messages == []


def test_opener_is_dropped_once_the_human_spoke_first() -> None:
    clock, store, match = _store_with_match(DEFAULT_PERSONAS[1])
    generator = _BlockingGenerator()
    bridge = PersonaBridge(store, generator, clock, timeout_sec=5.0, rng=_FixedRandom(0.0))
    try:
        future = bridge.open_conversation(match)
        assert future is not None
        assert generator.started.wait(timeout=5)
        store.append_message("m1", 1, "hello?")
        generator.release.set()
        assert future.result(timeout=5) is None
    finally:
        bridge.shutdown()

    assert [message.text for message in match.conversation.messages] == ["hello?"]
