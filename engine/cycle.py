"""Game-cycle state machine: admission, quorum countdown, round barrier, and finalize."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable
from uuid import uuid4

from .careers import CareerStore
from .clock import Clock
from .config import EngineConfig
from .errors import NotFoundError, StateError
from .events import EventLog, EventType, write_jsonl
from .ledger import ScoreAggregator, VoteLedger
from .match_store import MatchStateStore
from .models import CycleState, GameCycle, LeaderboardEntry, Match, Participant, RoundResult, UserProfile
from .personas import PersonaPool
from .scheduler import MatchScheduler

logger = logging.getLogger(__name__)

FINISHED_CACHE_SIZE = 20
DEADLINE_LOCK_WAIT_SEC = 0.25


class CycleManager:
    """Owns the current GameCycle; every transition happens under one re-entrant lock."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        clock: Clock,
        store: MatchStateStore,
        scheduler: MatchScheduler,
        ledger: VoteLedger,
        aggregator: ScoreAggregator,
        personas: PersonaPool,
        events: EventLog,
        careers: CareerStore | None = None,
        id_factory: Callable[[], str] | None = None,
        on_round_started: Callable[[list[Match]], None] | None = None,
    ):
        self.config = config
        self._clock = clock
        self._store = store
        self._scheduler = scheduler
        self._ledger = ledger
        self._aggregator = aggregator
        self._personas = personas
        self._events = events
        self._careers = careers
        self._new_id = id_factory or (lambda: uuid4().hex)
        self._on_round_started = on_round_started
        self._finished: dict[str, list[LeaderboardEntry]] = {}
        self._deferred: set[str] = set()
        self.lock = threading.RLock()
        self._cycle = self.open_cycle()

    @property
    def cycle(self) -> GameCycle:
        return self._cycle

    def open_cycle(self) -> GameCycle:
        """Start a fresh REGISTRATION cycle."""
        with self.lock:
            now_ms = self._clock.now_ms()
            cycle = GameCycle(cycle_id=self._new_id(), created_at_ms=now_ms, total_rounds=self.config.total_rounds)
            self._ledger.track(cycle.cycle_id, cycle.participants)
            self._cycle = cycle
            self._emit(EventType.CYCLE_OPENED, now_ms)
            logger.info("Opened cycle %s", cycle.cycle_id)
            return cycle

    def admit(self, profile: UserProfile) -> Participant:
        """Register a participant; re-registering returns the existing record."""
        with self.lock:
            cycle = self._cycle
            if cycle.state is not CycleState.REGISTRATION:
                raise StateError("registration closed")
            existing = cycle.participants.get(profile.identity)
            if existing is not None:
                return existing
            if len(cycle.participants) >= self.config.max_players:
                raise StateError(f"cycle is full ({self.config.max_players} players)")
            now_ms = self._clock.now_ms()
            participant = Participant(identity=profile.identity, profile=profile, registered_at_ms=now_ms)
            cycle.participants[profile.identity] = participant
            self._emit(EventType.PLAYER_JOINED, now_ms, identity=profile.identity)
            self._update_countdown(now_ms)
            return participant

    def withdraw(self, identity: int) -> None:
        with self.lock:
            cycle = self._cycle
            if cycle.state is not CycleState.REGISTRATION:
                raise StateError("cannot leave after the cycle has started")
            if cycle.participants.pop(identity, None) is None:
                raise NotFoundError(f"Participant {identity} is not registered")
            now_ms = self._clock.now_ms()
            self._emit(EventType.PLAYER_LEFT, now_ms, identity=identity)
            self._update_countdown(now_ms)

    def mark_ready(self, identity: int) -> GameCycle:
        """Flag a participant ready; quorum with everyone ready starts the cycle at once."""
        with self.lock:
            participant = self.participant(identity)
            if self._cycle.state is not CycleState.REGISTRATION:
                return self._cycle
            participant.ready = True
            participants = self._cycle.participants.values()
            if len(self._cycle.participants) >= self.config.min_players and all(p.ready for p in participants):
                self._go_live(self._clock.now_ms())
            return self._cycle

    def participant(self, identity: int) -> Participant:
        with self.lock:
            participant = self._cycle.participants.get(identity)
        if participant is None:
            raise NotFoundError(f"Participant {identity} is not registered in the current cycle")
        return participant

    def tick(self) -> list[RoundResult]:
        """Advance deadlines; returns results of matches locked by this call."""
        with self.lock:
            now_ms = self._clock.now_ms()
            cycle = self._cycle
            if cycle.state is CycleState.REGISTRATION:
                self._update_countdown(now_ms)
                closes_at = cycle.registration_closes_at_ms
                if closes_at is not None and now_ms >= closes_at:
                    self._go_live(now_ms)
                return []
            if cycle.state is CycleState.LIVE:
                return self._tick_live(now_ms)
            if cycle.finished_at_ms is not None and now_ms >= cycle.finished_at_ms + self.config.finished_grace_ms:
                self._archive_and_reopen(now_ms)
            return []

    def _update_countdown(self, now_ms: int) -> None:
        cycle = self._cycle
        quorum = len(cycle.participants) >= self.config.min_players
        if quorum and cycle.registration_closes_at_ms is None:
            cycle.registration_closes_at_ms = now_ms + self.config.registration_countdown_ms
            self._emit(EventType.COUNTDOWN_ARMED, now_ms, closes_at_ms=cycle.registration_closes_at_ms)
        elif not quorum and cycle.registration_closes_at_ms is not None:
            cycle.registration_closes_at_ms = None
            self._emit(EventType.COUNTDOWN_CLEARED, now_ms, players=len(cycle.participants))
            logger.info("Cycle %s dropped below quorum; countdown cleared", cycle.cycle_id)

    def _go_live(self, now_ms: int) -> None:
        cycle = self._cycle
        cycle.state = CycleState.LIVE
        if self.config.clone_personas:
            self._personas.install_clones(cycle.cycle_id, [p.profile for p in cycle.participants.values()])
        self._emit(EventType.CYCLE_LIVE, now_ms, players=len(cycle.participants))
        logger.info("Cycle %s is live with %s players", cycle.cycle_id, len(cycle.participants))
        self._start_round(now_ms, 1)

    def _start_round(self, now_ms: int, round_number: int) -> None:
        cycle = self._cycle
        self._deferred.clear()
        participants = sorted(cycle.participants.values(), key=lambda p: p.identity)
        plan = self._scheduler.plan_round(round_number, participants, self._personas.for_cycle(cycle.cycle_id))
        matches = self._scheduler.build_matches(
            plan,
            cycle_id=cycle.cycle_id,
            participants=cycle.participants,
            now_ms=now_ms,
            duration_ms=self.config.round_duration_ms,
            id_factory=self._new_id,
        )
        self._store.insert_round(matches)
        for match in matches:
            cycle.participants[match.owner].faced.add(match.opponent.key)
        # Deadline is armed only after the whole round is in the store.
        cycle.current_round = round_number
        cycle.round_started_at_ms = now_ms
        cycle.round_deadline_ms = now_ms + self.config.round_duration_ms
        self._emit(
            EventType.ROUND_STARTED,
            now_ms,
            matches=len(matches),
            human_pairs=len(plan.pairs),
            persona_matches=len(plan.bots),
            unavailable=len(plan.unavailable),
        )
        if self._on_round_started is not None:
            self._on_round_started(matches)

    def _tick_live(self, now_ms: int) -> list[RoundResult]:
        cycle = self._cycle
        deadline = cycle.round_deadline_ms
        if deadline is None:
            return []
        locked: list[RoundResult] = []
        if now_ms >= deadline:
            past_ceiling = now_ms >= deadline + self.config.force_lock_after_ms
            for match in self._store.matches_for_round(cycle.cycle_id, cycle.current_round):
                if match.locked:
                    continue
                # Only a match whose deadline lock already failed is forced.
                forced = past_ceiling and match.match_id in self._deferred
                result = self._store.lock_at_deadline(
                    match.match_id,
                    forfeit=forced,
                    wait_sec=None if forced else DEADLINE_LOCK_WAIT_SEC,
                )
                if result is None:
                    if not match.locked:
                        self._deferred.add(match.match_id)
                    continue
                self._deferred.discard(match.match_id)
                locked.append(result)
                self._emit(EventType.MATCH_LOCKED, now_ms, match_id=match.match_id, forfeit=result.forfeit)
                if forced:
                    logger.warning("Force-locked match %s in cycle %s round %s", match.match_id, cycle.cycle_id, cycle.current_round)

        matches = self._store.matches_for_round(cycle.cycle_id, cycle.current_round)
        if self._store.round_fully_locked(cycle.cycle_id, cycle.current_round) and (matches or now_ms >= deadline):
            self._advance(now_ms)
        return locked

    def _advance(self, now_ms: int) -> None:
        cycle = self._cycle
        self._emit(EventType.ROUND_ADVANCED, now_ms)
        if cycle.current_round >= cycle.total_rounds:
            self._finish(now_ms)
        else:
            self._start_round(now_ms, cycle.current_round + 1)

    def _finish(self, now_ms: int) -> None:
        cycle = self._cycle
        cycle.state = CycleState.FINISHED
        cycle.finished_at_ms = now_ms
        cycle.round_deadline_ms = None
        self._deferred.clear()
        cycle.leaderboard = self._aggregator.leaderboard(cycle.participants.values())
        self._finished[cycle.cycle_id] = cycle.leaderboard
        for stale in list(self._finished)[:-FINISHED_CACHE_SIZE]:
            del self._finished[stale]
        if self._careers is not None:
            self._careers.record_cycle(cycle_id=cycle.cycle_id, entries=cycle.leaderboard, finished_at_ms=now_ms)
        self._emit(EventType.CYCLE_FINISHED, now_ms, players=len(cycle.participants))
        logger.info("Cycle %s finished", cycle.cycle_id)

    def _archive_and_reopen(self, now_ms: int) -> None:
        cycle = self._cycle
        if self.config.event_log_dir is not None:
            write_jsonl(self.config.event_log_dir / f"{cycle.cycle_id}.jsonl", self._events.for_cycle(cycle.cycle_id))
        self._events.discard_cycle(cycle.cycle_id)
        self._store.purge_cycle(cycle.cycle_id)
        self._personas.discard_cycle(cycle.cycle_id)
        self._ledger.untrack(cycle.cycle_id)
        logger.info("Archived cycle %s", cycle.cycle_id)
        self.open_cycle()

    def leaderboard(self, cycle_id: str | None = None) -> list[LeaderboardEntry]:
        """Return a published leaderboard; the live cycle gets a provisional ranking."""
        with self.lock:
            if cycle_id is None or cycle_id == self._cycle.cycle_id:
                cycle = self._cycle
                if cycle.state is CycleState.FINISHED:
                    return list(cycle.leaderboard)
                return self._aggregator.leaderboard(cycle.participants.values())
            if cycle_id in self._finished:
                return list(self._finished[cycle_id])
        if self._careers is None:
            raise NotFoundError(f"Unknown cycle_id: {cycle_id}")
        return self._careers.cycle_leaderboard(cycle_id)

    def status(self) -> dict[str, Any]:
        with self.lock:
            payload = self._cycle.summary()
            payload["min_players"] = self.config.min_players
            payload["max_players"] = self.config.max_players
            payload["server_time_ms"] = self._clock.now_ms()
            return payload

    def _emit(self, event_type: EventType, now_ms: int, **payload: Any) -> None:
        self._events.emit(
            event_type,
            cycle_id=self._cycle.cycle_id,
            round_number=self._cycle.current_round,
            timestamp_ms=now_ms,
            **payload,
        )
