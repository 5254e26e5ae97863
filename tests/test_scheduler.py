"""Tests for per-round pairing of participants and personas."""

from __future__ import annotations

import random

import pytest

from engine.models import BotOpponent, HumanOpponent, Participant, UserProfile
from engine.personas import DEFAULT_PERSONAS, clone_persona
from engine.scheduler import MatchScheduler, human_key, persona_key


def _participant(identity: int) -> Participant:
    profile = UserProfile(identity=identity, username=f"user{identity}", display_name=f"User {identity}")
    return Participant(identity=identity, profile=profile, registered_at_ms=identity)


def _scheduler(seed: int = 7, slots: int = 2) -> MatchScheduler:
    return MatchScheduler(slots_per_round=slots, rng=random.Random(seed))


def test_every_participant_gets_one_match_per_slot() -> None:
    participants = [_participant(identity) for identity in (1, 2, 3, 4, 5)]
    plan = _scheduler().plan_round(1, participants, list(DEFAULT_PERSONAS))

    assert plan.unavailable == []
    for participant in participants:
        assert plan.slot_count(participant.identity) == 2


def test_human_pairs_are_prioritized_over_personas() -> None:
    participants = [_participant(identity) for identity in (1, 2, 3, 4)]
    plan = _scheduler(slots=1).plan_round(1, participants, list(DEFAULT_PERSONAS))

    assert len(plan.pairs) == 2
    assert plan.bots == []


def test_odd_participant_falls_back_to_a_persona() -> None:
    participants = [_participant(identity) for identity in (1, 2, 3)]
    plan = _scheduler(slots=1).plan_round(1, participants, list(DEFAULT_PERSONAS))

    assert len(plan.pairs) == 1
    assert len(plan.bots) == 1


def test_no_opponent_repeats_across_rounds() -> None:
    scheduler = _scheduler(seed=3)
    participants = {identity: _participant(identity) for identity in (1, 2, 3, 4)}
    personas = list(DEFAULT_PERSONAS)

    for round_number in range(1, 4):
        plan = scheduler.plan_round(round_number, list(participants.values()), personas)
        matches = scheduler.build_matches(
            plan, cycle_id="c1", participants=participants, now_ms=0, duration_ms=1000
        )
        for match in matches:
            owner = participants[match.owner]
            assert match.opponent.key not in owner.faced
            owner.faced.add(match.opponent.key)


@pytest.mark.parametrize("clones", [False, True])
@pytest.mark.parametrize("player_count", [2, 3, 4, 7])
@pytest.mark.parametrize("seed", range(25))
def test_displayed_opponents_never_repeat_within_a_cycle(seed: int, player_count: int, clones: bool) -> None:
    scheduler = _scheduler(seed=seed, slots=2)
    participants = {identity: _participant(identity) for identity in range(1, player_count + 1)}
    personas = list(DEFAULT_PERSONAS)
    if clones:
        personas += [clone_persona(participant.profile) for participant in participants.values()]
    seen: dict[int, list[int]] = {identity: [] for identity in participants}

    for round_number in range(1, 5):
        plan = scheduler.plan_round(round_number, list(participants.values()), personas)
        matches = scheduler.build_matches(
            plan, cycle_id="c1", participants=participants, now_ms=0, duration_ms=1000
        )
        for match in matches:
            participants[match.owner].faced.add(match.opponent.key)
            seen[match.owner].append(match.opponent.profile.identity)
        for identity in participants:
            assert plan.slot_count(identity) + sum(1 for owner, _ in plan.unavailable if owner == identity) == 2

    for identity, shown in seen.items():
        assert identity not in shown
        assert len(shown) == len(set(shown)), f"participant {identity} saw a repeated opponent: {shown}"


def test_clone_never_faces_the_participant_it_impersonates() -> None:
    participant = _participant(1)
    clones = [clone_persona(participant.profile), clone_persona(_participant(2).profile)]

    plan = _scheduler(slots=2).plan_round(1, [participant], clones)

    assert [assignment.persona.impersonates for assignment in plan.bots] == [2]
    assert plan.unavailable == [(1, 2)]


def test_clone_counts_as_facing_the_human_it_copies() -> None:
    participants = [_participant(identity) for identity in (1, 2)]
    participants[0].faced.add(human_key(2))
    clones = [clone_persona(participant.profile) for participant in participants]

    plan = _scheduler(slots=1).plan_round(1, participants[:1], clones)

    assert plan.bots == []
    assert persona_key(clones[1]) == human_key(2)


def test_exhausted_opponents_are_reported_unavailable() -> None:
    participant = _participant(1)
    persona = DEFAULT_PERSONAS[0]
    participant.faced.add(persona_key(persona))

    plan = _scheduler(slots=1).plan_round(1, [participant], [persona])

    assert plan.pairs == []
    assert plan.bots == []
    assert plan.unavailable == [(1, 1)]


def test_personas_are_spread_before_reuse() -> None:
    participants = [_participant(identity) for identity in (1, 2, 3)]
    for participant in participants:
        participant.faced.update(human_key(other) for other in (1, 2, 3) if other != participant.identity)

    plan = _scheduler(slots=1).plan_round(1, participants, list(DEFAULT_PERSONAS))

    used = sorted(assignment.persona.persona_id for assignment in plan.bots)
    assert used == sorted(persona.persona_id for persona in DEFAULT_PERSONAS)


def test_human_pairs_share_one_mirrored_conversation() -> None:
    participants = {identity: _participant(identity) for identity in (1, 2)}
    scheduler = _scheduler(slots=1)
    plan = scheduler.plan_round(1, list(participants.values()), [])
    matches = scheduler.build_matches(plan, cycle_id="c1", participants=participants, now_ms=100, duration_ms=500)

    assert len(matches) == 2
    first, second = matches
    assert isinstance(first.opponent, HumanOpponent)
    assert first.conversation is second.conversation
    assert first.mirror_id == second.match_id
    assert second.mirror_id == first.match_id
    assert first.deadline_ms == second.deadline_ms == 600


def test_persona_matches_get_a_private_conversation() -> None:
    participants = {1: _participant(1)}
    scheduler = _scheduler(slots=2)
    plan = scheduler.plan_round(1, list(participants.values()), list(DEFAULT_PERSONAS))
    matches = scheduler.build_matches(plan, cycle_id="c1", participants=participants, now_ms=0, duration_ms=500)

    assert [match.slot for match in matches] == [1, 2]
    assert all(isinstance(match.opponent, BotOpponent) for match in matches)
    assert matches[0].conversation is not matches[1].conversation
    assert matches[0].opponent.key != matches[1].opponent.key
