"""Vote scoring at lock time and leaderboard ranking."""

from __future__ import annotations

from dataclasses import replace
import logging
import threading
from typing import Iterable, Mapping

from .models import LeaderboardEntry, Match, Participant, RoundResult, Vote

logger = logging.getLogger(__name__)


class VoteLedger:
    """Scores locked matches and appends results to participant histories."""

    def __init__(self) -> None:
        self._participants: dict[str, Mapping[int, Participant]] = {}
        self._lock = threading.Lock()

    def track(self, cycle_id: str, participants: Mapping[int, Participant]) -> None:
        with self._lock:
            self._participants[cycle_id] = participants

    def untrack(self, cycle_id: str) -> None:
        with self._lock:
            self._participants.pop(cycle_id, None)

    def score(self, match: Match, vote: Vote | None, *, forfeit: bool = False) -> RoundResult:
        """Compute correctness for one locked match and record it on its owner."""
        correct = vote is not None and vote == match.opponent.actual_vote
        decision_ms = None
        if match.vote_history:
            decision_ms = max(0, match.vote_history[-1].timestamp_ms - match.started_at_ms)
        result = RoundResult(
            match_id=match.match_id,
            cycle_id=match.cycle_id,
            round_number=match.round_number,
            slot=match.slot,
            vote=vote,
            correct=correct,
            opponent=match.opponent.profile.public(),
            opponent_type=match.opponent.kind,
            decision_ms=decision_ms,
            vote_changes=len(match.vote_history),
            forfeit=forfeit,
        )
        with self._lock:
            participant = self._participants.get(match.cycle_id, {}).get(match.owner)
            if participant is not None:
                participant.history.append(result)
                if correct:
                    participant.score += 1
        if participant is None:
            logger.warning("Scored match %s for untracked participant %s", match.match_id, match.owner)
        return result


def _sort_key(entry: LeaderboardEntry) -> tuple[float, int, int, int]:
    return (-entry.accuracy, entry.vote_changes, entry.registered_at_ms, entry.identity)


class ScoreAggregator:
    """Turns participant histories into a ranked leaderboard snapshot."""

    def leaderboard(self, participants: Iterable[Participant]) -> list[LeaderboardEntry]:
        unranked = []
        for participant in participants:
            history = list(participant.history)
            total = len(history)
            correct = sum(1 for result in history if result.correct)
            decisions = [result.decision_ms for result in history if result.decision_ms is not None]
            unranked.append(
                LeaderboardEntry(
                    rank=0,
                    identity=participant.identity,
                    username=participant.profile.username,
                    display_name=participant.profile.display_name,
                    avatar_url=participant.profile.avatar_url,
                    accuracy=correct / total if total else 0.0,
                    correct=correct,
                    total=total,
                    avg_decision_ms=sum(decisions) // len(decisions) if decisions else None,
                    vote_changes=sum(result.vote_changes for result in history),
                    registered_at_ms=participant.registered_at_ms,
                )
            )
        ranked = sorted(unranked, key=_sort_key)
        return [
            replace(entry, rank=index)
            for index, entry in enumerate(ranked, start=1)
        ]
