"""GameService: composes the engine components behind one explicit object."""

from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Any, Mapping

from .agents.env_utils import getenv_any
from .agents.persona_agent import ScriptedPersonaAgent
from .auth import AgentAuthGuard, AgentCredentials, InMemoryRateLimiter
from .careers import CareerStore
from .clock import Clock, SystemClock
from .config import EngineConfig
from .cycle import CycleManager
from .errors import NotFoundError, StateError, ValidationError
from .events import EventLog
from .identity import IdentityGateway, StaticIdentityGateway
from .ledger import ScoreAggregator, VoteLedger
from .match_store import MatchStateStore
from .models import CycleState, Match, Persona, Vote
from .persona_bridge import PersonaBridge, ReplyGenerator
from .personas import PersonaPool
from .scheduler import MatchScheduler

logger = logging.getLogger(__name__)

RECENT_RESULTS_LIMIT = 2


class GameService:
    """Every request handler and timer goes through one instance of this class."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        clock: Clock | None = None,
        identity: IdentityGateway | None = None,
        generator: ReplyGenerator | None = None,
        personas: PersonaPool | None = None,
        careers: CareerStore | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.identity = identity or StaticIdentityGateway()
        self.personas = personas or PersonaPool()
        self.careers = careers
        self.events = EventLog()
        self.ledger = VoteLedger()
        self.store = MatchStateStore(self.clock, self.ledger, unvoted_default=self.config.unvoted_default)
        self.scheduler = MatchScheduler(slots_per_round=self.config.slots_per_round, rng=rng)
        self.bridge = PersonaBridge(
            self.store,
            generator or ScriptedPersonaAgent(),
            self.clock,
            timeout_sec=self.config.persona_timeout_sec,
            max_workers=self.config.persona_workers,
            simulate_typing=self.config.simulate_typing,
            events=self.events,
        )
        self.guard = AgentAuthGuard(
            self.store,
            self.clock,
            InMemoryRateLimiter(
                self.clock,
                max_requests=self.config.agent_rate_limit,
                window_seconds=self.config.agent_rate_window_sec,
            ),
            controller_keys=self.config.controller_keys,
            shared_secret=self.config.agent_shared_secret,
            signature_window_ms=self.config.agent_signature_window_ms,
            events=self.events,
        )
        self.cycles = CycleManager(
            self.config,
            clock=self.clock,
            store=self.store,
            scheduler=self.scheduler,
            ledger=self.ledger,
            aggregator=ScoreAggregator(),
            personas=self.personas,
            events=self.events,
            careers=self.careers,
            on_round_started=self._open_conversations if self.config.persona_openers else None,
        )

    def _open_conversations(self, matches: list[Match]) -> None:
        for match in matches:
            self.bridge.open_conversation(match)

    @classmethod
    def from_env(cls, *, identity: IdentityGateway | None = None, generator: ReplyGenerator | None = None) -> "GameService":
        """Wire a service from environment configuration."""
        config = EngineConfig.from_env()
        persona_file = getenv_any("PERSONA_FILE")
        personas = PersonaPool.from_file(persona_file) if persona_file else PersonaPool()
        return cls(
            config,
            identity=identity,
            generator=generator,
            personas=personas,
            careers=CareerStore(path=Path(config.career_db_path)),
        )

    def register(self, handle: str) -> dict[str, Any]:
        profile = self.identity.resolve(handle)
        participant = self.cycles.admit(profile)
        return {"participant": participant.to_dict(), "cycle": self.cycles.status()}

    def leave(self, identity: int) -> dict[str, Any]:
        self.cycles.withdraw(identity)
        return self.cycles.status()

    def ready(self, identity: int) -> dict[str, Any]:
        self.cycles.mark_ready(identity)
        return self.cycles.status()

    def status(self) -> dict[str, Any]:
        return self.cycles.status()

    def tick(self) -> dict[str, Any]:
        locked = self.cycles.tick()
        status = self.cycles.status()
        status["locked_this_tick"] = len(locked)
        return status

    def poll(self, identity: int) -> dict[str, Any]:
        """Polling view for one participant, read under the cycle lock so round swaps never show a gap."""
        with self.cycles.lock:
            status = self.cycles.status()
            cycle = self.cycles.cycle
            participant = cycle.participants.get(identity)
            now_ms = status["server_time_ms"]
            active: list[Match] = []
            recent: list[dict[str, Any]] = []
            if participant is not None:
                active = [
                    match
                    for match in self.store.list_active_for_participant(identity)
                    if match.cycle_id == cycle.cycle_id
                ]
                recent = [result.to_dict() for result in participant.history[-RECENT_RESULTS_LIMIT:]]
            if cycle.state is CycleState.REGISTRATION:
                round_status = "registration"
            elif cycle.state is CycleState.FINISHED:
                round_status = "finished"
            else:
                round_status = "active" if active else "between_rounds"
            return {
                "cycle": status,
                "registered": participant is not None,
                "round_status": round_status,
                "matches": [match.view(now_ms) for match in active],
                "recent_results": recent,
                "score": participant.score if participant is not None else 0,
                "server_time_ms": now_ms,
            }

    def _current_match(self, match_id: str) -> Match:
        match = self.store.get(match_id)
        if match.cycle_id != self.cycles.cycle.cycle_id:
            raise StateError("match belongs to a finished cycle")
        return match

    def vote(self, match_id: str, identity: int, vote: Vote | str) -> dict[str, Any]:
        self._current_match(match_id)
        try:
            parsed = Vote(str(getattr(vote, "value", vote)).upper())
        except ValueError as exc:
            raise ValidationError(f"vote must be REAL or BOT; received {vote!r}") from exc
        match = self.store.set_vote(match_id, identity, parsed)
        return match.view(self.clock.now_ms())

    def lock_vote(self, match_id: str, identity: int) -> dict[str, Any]:
        result = self.store.lock_for_participant(match_id, identity)
        if result is None:
            raise StateError("match has no result yet")
        return result.to_dict()

    def send_message(self, match_id: str, identity: int, text: str) -> dict[str, Any]:
        match = self._current_match(match_id)
        message = self.store.append_message(match_id, identity, text)
        self.bridge.on_human_message(match)
        return message.to_dict()

    def agent_pending(self, credentials: AgentCredentials, bot_identity: int | None = None) -> list[dict[str, Any]]:
        now_ms = self.clock.now_ms()
        return [
            {
                "match_id": match.match_id,
                "bot_identity": match.opponent.sender_identity,
                "owner": match.owner_profile.public(),
                "messages": [message.to_dict() for message in match.conversation.messages],
                "deadline_ms": match.deadline_ms,
                "time_remaining_ms": max(0, match.deadline_ms - now_ms),
            }
            for match in self.guard.pending(credentials, bot_identity)
        ]

    def agent_reply(
        self,
        credentials: AgentCredentials,
        *,
        match_id: str,
        bot_identity: int,
        text: str,
        body: Mapping[str, Any],
    ) -> dict[str, Any]:
        message = self.guard.submit_reply(
            credentials, match_id=match_id, bot_identity=bot_identity, text=text, body=body
        )
        return message.to_dict()

    def leaderboard(self, cycle_id: str | None = None) -> dict[str, Any]:
        entries = self.cycles.leaderboard(cycle_id)
        cycle = self.cycles.cycle
        return {
            "cycle_id": cycle_id or cycle.cycle_id,
            "final": cycle_id not in (None, cycle.cycle_id) or cycle.state is CycleState.FINISHED,
            "entries": [entry.to_dict() for entry in entries],
        }

    def career(self, identity: int) -> dict[str, Any]:
        if self.careers is None:
            raise NotFoundError("Career statistics are not enabled")
        return self.careers.career(identity)

    def add_persona(self, data: Mapping[str, Any]) -> dict[str, Any]:
        persona = self.personas.add(Persona.from_dict(data))
        logger.info("Registered persona %s (external=%s)", persona.persona_id, persona.is_external)
        return persona.to_dict()

    def list_personas(self) -> list[dict[str, Any]]:
        return [persona.to_dict() for persona in self.personas.all()]

    def shutdown(self) -> None:
        self.bridge.shutdown()
