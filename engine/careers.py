"""Persistent JSON store for cycle leaderboards and career statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
import threading
from typing import Any, Sequence

from .errors import NotFoundError
from .models import LeaderboardEntry

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _default_payload() -> dict[str, Any]:
    return {
        "version": 1,
        "updated_at": _utc_now_iso(),
        "cycles": {},
        "players": {},
    }


def _empty_career(entry: LeaderboardEntry) -> dict[str, Any]:
    return {
        "identity": entry.identity,
        "username": entry.username,
        "total_games": 0,
        "total_votes": 0,
        "total_correct": 0,
        "best_accuracy": None,
        "worst_accuracy": None,
        "decision_ms_total": 0,
        "decision_samples": 0,
        "last_played": None,
        "leaderboard_history": [],
    }


@dataclass
class CareerStore:
    """Simple JSON file-backed career database."""

    path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._write(_default_payload())

    def _read(self) -> dict[str, Any]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Career database %s is corrupt; starting fresh", self.path)
            raw = _default_payload()
        for key in ("cycles", "players"):
            if not isinstance(raw.get(key), dict):
                raw[key] = {}
        return raw

    def _write(self, payload: dict[str, Any]) -> None:
        payload["updated_at"] = _utc_now_iso()
        temp = self.path.with_suffix(self.path.suffix + ".tmp")
        temp.write_text(json.dumps(payload, sort_keys=True, indent=2), encoding="utf-8")
        temp.replace(self.path)

    def record_cycle(self, *, cycle_id: str, entries: Sequence[LeaderboardEntry], finished_at_ms: int) -> None:
        """Persist one finished cycle's leaderboard and fold it into careers."""
        with self._lock:
            payload = self._read()
            if cycle_id in payload["cycles"]:
                logger.info("Cycle %s already recorded; skipping", cycle_id)
                return
            payload["cycles"][cycle_id] = {
                "finished_at_ms": finished_at_ms,
                "leaderboard": [entry.to_dict() for entry in entries],
            }
            players = payload["players"]
            for entry in entries:
                if entry.total == 0:
                    continue
                career = players.setdefault(str(entry.identity), _empty_career(entry))
                career["username"] = entry.username
                career["total_games"] += 1
                career["total_votes"] += entry.total
                career["total_correct"] += entry.correct
                best = career["best_accuracy"]
                worst = career["worst_accuracy"]
                career["best_accuracy"] = entry.accuracy if best is None else max(best, entry.accuracy)
                career["worst_accuracy"] = entry.accuracy if worst is None else min(worst, entry.accuracy)
                if entry.avg_decision_ms is not None:
                    career["decision_ms_total"] += entry.avg_decision_ms
                    career["decision_samples"] += 1
                career["last_played"] = _utc_now_iso()
                history = career.setdefault("leaderboard_history", [])
                history.insert(
                    0,
                    {
                        "cycle_id": cycle_id,
                        "rank": entry.rank,
                        "players": len(entries),
                        "accuracy": entry.accuracy,
                        "correct": entry.correct,
                        "total": entry.total,
                        "finished_at_ms": finished_at_ms,
                    },
                )
                del history[HISTORY_LIMIT:]
            self._write(payload)

    def cycle_leaderboard(self, cycle_id: str) -> list[LeaderboardEntry]:
        with self._lock:
            cycle = self._read()["cycles"].get(cycle_id)
        if cycle is None:
            raise NotFoundError(f"Unknown cycle_id: {cycle_id}")
        return [LeaderboardEntry.from_dict(item) for item in cycle.get("leaderboard", [])]

    def career(self, identity: int) -> dict[str, Any]:
        """Return one player's career enriched with derived averages."""
        with self._lock:
            stats = self._read()["players"].get(str(identity))
        if stats is None:
            raise NotFoundError(f"No career statistics for identity {identity}")
        enriched = dict(stats)
        votes = int(stats.get("total_votes", 0))
        samples = int(stats.get("decision_samples", 0))
        enriched["overall_accuracy"] = int(stats.get("total_correct", 0)) / votes if votes else 0.0
        enriched["avg_decision_ms"] = int(stats.get("decision_ms_total", 0)) // samples if samples else None
        return enriched
