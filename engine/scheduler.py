"""Per-round pairing of participants into human and persona matches."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
import logging
import random
from typing import Callable, Sequence
from uuid import uuid4

from .models import BotOpponent, Conversation, HumanOpponent, Match, Participant, Persona

logger = logging.getLogger(__name__)


def human_key(identity: int) -> str:
    return f"human:{identity}"


def persona_key(persona: Persona) -> str:
    """Novelty key of a persona; clones share the key of the human they copy."""
    return BotOpponent(persona=persona).key


@dataclass(frozen=True)
class HumanPairing:
    slot: int
    first: int
    second: int


@dataclass(frozen=True)
class PersonaAssignment:
    slot: int
    owner: int
    persona: Persona


@dataclass
class RoundPlan:
    """Every pairing decided for one round, before any match exists."""

    round_number: int
    pairs: list[HumanPairing] = field(default_factory=list)
    bots: list[PersonaAssignment] = field(default_factory=list)
    unavailable: list[tuple[int, int]] = field(default_factory=list)

    def slot_count(self, identity: int) -> int:
        paired = sum(1 for pair in self.pairs if identity in (pair.first, pair.second))
        return paired + sum(1 for bot in self.bots if bot.owner == identity)


class MatchScheduler:
    """Decides who faces whom; never shows the same opponent identity twice within a cycle."""

    def __init__(self, *, slots_per_round: int = 2, rng: random.Random | None = None):
        self.slots_per_round = slots_per_round
        self._rng = rng or random.Random()

    def plan_round(
        self,
        round_number: int,
        participants: Sequence[Participant],
        personas: Sequence[Persona],
    ) -> RoundPlan:
        """Pair each participant once per slot: novel human first, then a novel persona."""
        plan = RoundPlan(round_number=round_number)
        faced = {participant.identity: set(participant.faced) for participant in participants}
        persona_usage: Counter[str] = Counter()

        for slot in range(1, self.slots_per_round + 1):
            order = sorted(faced)
            self._rng.shuffle(order)
            waiting = set(order)
            for identity in order:
                if identity not in waiting:
                    continue
                waiting.discard(identity)
                candidates = [
                    other
                    for other in order
                    if other in waiting
                    and human_key(other) not in faced[identity]
                    and human_key(identity) not in faced[other]
                ]
                if candidates:
                    partner = self._rng.choice(candidates)
                    waiting.discard(partner)
                    faced[identity].add(human_key(partner))
                    faced[partner].add(human_key(identity))
                    plan.pairs.append(HumanPairing(slot=slot, first=identity, second=partner))
                    continue

                persona = self._pick_persona(identity, personas, faced[identity], persona_usage)
                if persona is None:
                    plan.unavailable.append((identity, slot))
                    logger.info("No novel opponent for %s in round %s slot %s", identity, round_number, slot)
                    continue
                persona_usage[persona.persona_id] += 1
                faced[identity].add(persona_key(persona))
                plan.bots.append(PersonaAssignment(slot=slot, owner=identity, persona=persona))
        return plan

    def _pick_persona(
        self,
        identity: int,
        personas: Sequence[Persona],
        faced: set[str],
        usage: Counter[str],
    ) -> Persona | None:
        eligible = [
            persona
            for persona in personas
            if persona_key(persona) not in faced and persona.impersonates != identity
        ]
        if not eligible:
            return None
        least = min(usage[persona.persona_id] for persona in eligible)
        tied = sorted(
            (persona for persona in eligible if usage[persona.persona_id] == least),
            key=lambda persona: persona.persona_id,
        )
        return self._rng.choice(tied)

    def build_matches(
        self,
        plan: RoundPlan,
        *,
        cycle_id: str,
        participants: dict[int, Participant],
        now_ms: int,
        duration_ms: int,
        id_factory: Callable[[], str] | None = None,
    ) -> list[Match]:
        """Materialize a plan; human pairs become two mirrored matches sharing one transcript."""
        new_id = id_factory or (lambda: uuid4().hex)
        deadline_ms = now_ms + duration_ms
        matches: list[Match] = []
        for pair in plan.pairs:
            first = participants[pair.first]
            second = participants[pair.second]
            conversation = Conversation()
            first_match = Match(
                match_id=new_id(),
                cycle_id=cycle_id,
                round_number=plan.round_number,
                slot=pair.slot,
                owner=first.identity,
                owner_profile=first.profile,
                opponent=HumanOpponent(identity=second.identity, profile=second.profile),
                conversation=conversation,
                started_at_ms=now_ms,
                deadline_ms=deadline_ms,
            )
            second_match = Match(
                match_id=new_id(),
                cycle_id=cycle_id,
                round_number=plan.round_number,
                slot=pair.slot,
                owner=second.identity,
                owner_profile=second.profile,
                opponent=HumanOpponent(identity=first.identity, profile=first.profile),
                conversation=conversation,
                started_at_ms=now_ms,
                deadline_ms=deadline_ms,
                mirror_id=first_match.match_id,
            )
            first_match.mirror_id = second_match.match_id
            matches.extend([first_match, second_match])
        for assignment in plan.bots:
            owner = participants[assignment.owner]
            matches.append(
                Match(
                    match_id=new_id(),
                    cycle_id=cycle_id,
                    round_number=plan.round_number,
                    slot=assignment.slot,
                    owner=owner.identity,
                    owner_profile=owner.profile,
                    opponent=BotOpponent(persona=assignment.persona),
                    conversation=Conversation(),
                    started_at_ms=now_ms,
                    deadline_ms=deadline_ms,
                )
            )
        return sorted(matches, key=lambda match: (match.slot, match.owner))
