"""Bounded-time persona replies with filler fallback and delayed delivery."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
import logging
import random
import re
import time
from collections.abc import Sequence
from typing import Callable, Protocol

from .agents.persona_agent import parse_style
from .clock import Clock
from .errors import AuthorizationError, StateError, UpstreamTimeoutError
from .events import EventLog, EventType
from .match_store import MatchStateStore
from .models import BotOpponent, Match, Message, Persona

logger = logging.getLogger(__name__)

FILLER_REPLIES = ("hm", "interesting point", "...")

_OPINION_MARKERS = re.compile(r"\b(think|believe|imo|tbh|honestly|actually|disagree|agree)\b", re.IGNORECASE)
_EMOJI_PATTERN = re.compile("[\U0001F300-\U0001FAFF☀-➿]")
MAX_TYPING_DELAY_SEC = 7.0
MAX_OPENER_RATE = 0.6


class ReplyGenerator(Protocol):
    """External text-generation capability."""

    def generate(self, persona: Persona, transcript: Sequence[Message]) -> str:
        """Return the persona's next line given the transcript so far."""


def filler_reply(persona: Persona, transcript: Sequence[Message] = ()) -> str:
    """Neutral line used whenever generation fails or runs out of time."""
    tone, _ = parse_style(persona.style)
    last_text = transcript[-1].text.strip().lower() if transcript else ""
    if last_text.endswith("?"):
        return "not sure tbh"
    if last_text.startswith(("gm", "hi", "hey", "hello")):
        return "gm"
    if tone.startswith("brief"):
        return FILLER_REPLIES[0]
    if tone.startswith("detailed"):
        return FILLER_REPLIES[1]
    return FILLER_REPLIES[2]


def opener_rate(style: str) -> float:
    """Chance that a persona opens a conversation instead of waiting for the human."""
    _, metadata = parse_style(style)
    rate = 0.4 if "initiator" in metadata else 0.1
    if "curious" in metadata:
        rate += 0.1
    return min(rate, MAX_OPENER_RATE)


def calculate_typing_delay(
    reply: str,
    style: str = "conversational",
    prompt_text: str | None = None,
    rng: random.Random | None = None,
) -> float:
    """Return seconds of simulated thinking plus typing before a reply lands."""
    rng = rng or random.Random()
    tone, _ = parse_style(style)
    thoughtful = bool(prompt_text and "?" in prompt_text) or bool(_OPINION_MARKERS.search(reply)) or len(reply) > 100
    if not thoughtful:
        thinking_ms = 200 + rng.random() * 400
    elif tone.startswith("brief"):
        thinking_ms = 1500 + rng.random() * 1000
    elif tone.startswith("detailed"):
        thinking_ms = 2500 + rng.random() * 1500
    else:
        thinking_ms = 2000 + rng.random() * 1500
    typing_ms = 50 + (len(reply) / 50) * 30 + len(_EMOJI_PATTERN.findall(reply)) * 200
    return min((thinking_ms + typing_ms) / 1000, MAX_TYPING_DELAY_SEC)


class PersonaBridge:
    """Runs reply generation off the request path and appends results through the store."""

    def __init__(
        self,
        store: MatchStateStore,
        generator: ReplyGenerator,
        clock: Clock,
        *,
        timeout_sec: float = 8.0,
        max_workers: int = 8,
        simulate_typing: bool = False,
        events: EventLog | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ):
        self._store = store
        self._generator = generator
        self._clock = clock
        self._timeout_sec = timeout_sec
        self._simulate_typing = simulate_typing
        self._events = events
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._generation_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="persona-gen")
        self._delivery_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="persona-send")

    def generate(self, persona: Persona, transcript: Sequence[Message], *, match: Match | None = None) -> str:
        """Return a reply within the timeout, substituting filler on timeout or failure."""
        snapshot = list(transcript)
        future = self._generation_pool.submit(self._generator.generate, persona, snapshot)
        try:
            reply = future.result(timeout=self._timeout_sec)
        except FutureTimeoutError:
            future.cancel()
            error = UpstreamTimeoutError(persona.persona_id, self._timeout_sec)
            logger.warning("%s; sending filler", error)
            self._record_fallback(persona, match, error.to_dict())
            return filler_reply(persona, snapshot)
        except Exception as exc:
            logger.warning("Persona %s generation failed: %s", persona.persona_id, exc)
            self._record_fallback(persona, match, {"type": exc.__class__.__name__, "message": str(exc)})
            return filler_reply(persona, snapshot)
        reply = (reply or "").strip()
        return reply or filler_reply(persona, snapshot)

    def _record_fallback(self, persona: Persona, match: Match | None, error: dict) -> None:
        if self._events is None or match is None:
            return
        self._events.emit(
            EventType.PERSONA_FALLBACK,
            cycle_id=match.cycle_id,
            round_number=match.round_number,
            timestamp_ms=self._clock.now_ms(),
            match_id=match.match_id,
            persona_id=persona.persona_id,
            error=error,
        )

    def on_human_message(self, match: Match) -> Future | None:
        """Schedule an internal persona's reply; external personas answer through the agent API."""
        opponent = match.opponent
        if not isinstance(opponent, BotOpponent) or opponent.accepts_external_replies:
            return None
        return self._delivery_pool.submit(self._deliver, match.match_id)

    def open_conversation(self, match: Match) -> Future | None:
        """Maybe let an internal persona speak first, at a rate set by its style."""
        opponent = match.opponent
        if not isinstance(opponent, BotOpponent) or opponent.accepts_external_replies:
            return None
        if match.conversation.messages or self._rng.random() >= opener_rate(opponent.persona.style):
            return None
        return self._delivery_pool.submit(self._deliver, match.match_id, opening=True)

    def _deliver(self, match_id: str, *, opening: bool = False) -> Message | None:
        match = self._store.get(match_id)
        if match.locked or not isinstance(match.opponent, BotOpponent):
            return None
        if opening and match.conversation.messages:
            return None
        persona = match.opponent.persona
        transcript = list(match.conversation.messages)
        reply = self.generate(persona, transcript, match=match)
        if self._simulate_typing:
            prompt_text = transcript[-1].text if transcript else None
            delay = calculate_typing_delay(reply, persona.style, prompt_text)
            remaining = (match.deadline_ms - self._clock.now_ms()) / 1000
            self._sleep(max(0.0, min(delay, remaining - 0.5)))
        try:
            return self._store.append_message(
                match_id, persona.identity, reply, from_bot=True, enforce_turn=True, opening=opening
            )
        except (StateError, AuthorizationError) as exc:
            logger.info("Dropped reply from %s in match %s: %s", persona.persona_id, match_id, exc)
            return None

    def shutdown(self, wait: bool = False) -> None:
        self._delivery_pool.shutdown(wait=wait, cancel_futures=True)
        self._generation_pool.shutdown(wait=wait, cancel_futures=True)
