"""Structured cycle event log with JSONL export."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
import threading
from typing import Any, Iterable, Mapping

from .serialize import json_dumps, to_serializable


class EventType(str, Enum):
    """Lifecycle events recorded while a cycle runs."""

    CYCLE_OPENED = "cycle_opened"
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    COUNTDOWN_ARMED = "countdown_armed"
    COUNTDOWN_CLEARED = "countdown_cleared"
    CYCLE_LIVE = "cycle_live"
    ROUND_STARTED = "round_started"
    MATCH_LOCKED = "match_locked"
    ROUND_ADVANCED = "round_advanced"
    CYCLE_FINISHED = "cycle_finished"
    PERSONA_FALLBACK = "persona_fallback"
    AGENT_REJECTED = "agent_rejected"


@dataclass(frozen=True)
class CycleEvent:
    """Single audit record emitted by the engine."""

    event_type: EventType
    cycle_id: str
    round_number: int
    timestamp_ms: int
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "cycle_id": self.cycle_id,
            "round_number": self.round_number,
            "timestamp_ms": self.timestamp_ms,
            "payload": to_serializable(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CycleEvent":
        return cls(
            event_type=EventType(str(data["event_type"])),
            cycle_id=str(data["cycle_id"]),
            round_number=int(data.get("round_number", 0)),
            timestamp_ms=int(data["timestamp_ms"]),
            payload=dict(data.get("payload", {})),
        )


class EventLog:
    """Thread-safe in-memory event buffer, keyed by cycle."""

    def __init__(self) -> None:
        self._events: list[CycleEvent] = []
        self._lock = threading.Lock()

    def emit(
        self,
        event_type: EventType,
        *,
        cycle_id: str,
        timestamp_ms: int,
        round_number: int = 0,
        **payload: Any,
    ) -> CycleEvent:
        event = CycleEvent(
            event_type=event_type,
            cycle_id=cycle_id,
            round_number=round_number,
            timestamp_ms=timestamp_ms,
            payload=payload,
        )
        with self._lock:
            self._events.append(event)
        return event

    def for_cycle(self, cycle_id: str) -> list[CycleEvent]:
        with self._lock:
            return [event for event in self._events if event.cycle_id == cycle_id]

    def discard_cycle(self, cycle_id: str) -> None:
        with self._lock:
            self._events = [event for event in self._events if event.cycle_id != cycle_id]


def write_jsonl(path: str | Path, events: Iterable[CycleEvent]) -> None:
    """Persist events as JSONL to disk."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as handle:
        for event in events:
            handle.write(json_dumps(event.to_dict()))
            handle.write("\n")
