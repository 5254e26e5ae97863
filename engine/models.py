"""Records for cycles, participants, opponents, matches, and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import threading
from typing import Any, ClassVar, Mapping, Self, Union


class CycleState(str, Enum):
    """Lifecycle phases of a game cycle."""

    REGISTRATION = "REGISTRATION"
    LIVE = "LIVE"
    FINISHED = "FINISHED"


class Vote(str, Enum):
    """A participant's guess about who is on the other side of a match."""

    REAL = "REAL"
    BOT = "BOT"


class OpponentKind(str, Enum):
    HUMAN = "human"
    BOT = "bot"


@dataclass(frozen=True)
class UserProfile:
    """Display profile resolved from the identity directory."""

    identity: int
    username: str
    display_name: str
    avatar_url: str | None = None
    address: str | None = None
    recent_posts: tuple[str, ...] = ()

    def public(self) -> dict[str, Any]:
        """Return the fields shown to other participants."""
        return {
            "identity": self.identity,
            "username": self.username,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.public()
        payload["address"] = self.address
        payload["recent_posts"] = list(self.recent_posts)
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        username = str(data["username"]).lstrip("@")
        return cls(
            identity=int(data["identity"]),
            username=username,
            display_name=str(data.get("display_name") or username),
            avatar_url=data.get("avatar_url"),
            address=data.get("address"),
            recent_posts=tuple(str(post) for post in data.get("recent_posts", ())),
        )


@dataclass(frozen=True)
class Persona:
    """Descriptor of an AI-driven opponent."""

    persona_id: str
    identity: int
    profile: UserProfile
    style: str = "conversational"
    system_prompt: str | None = None
    impersonates: int | None = None
    is_external: bool = False
    controller: str | None = None
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "persona_id": self.persona_id,
            "identity": self.identity,
            "profile": self.profile.to_dict(),
            "style": self.style,
            "system_prompt": self.system_prompt,
            "impersonates": self.impersonates,
            "is_external": self.is_external,
            "controller": self.controller,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        profile_data = dict(
            data.get("profile")
            or {key: data[key] for key in ("display_name", "avatar_url", "recent_posts") if data.get(key)}
        )
        profile_data.setdefault("identity", data["identity"])
        profile_data.setdefault("username", data.get("username") or data["persona_id"])
        controller = data.get("controller")
        impersonates = data.get("impersonates")
        return cls(
            persona_id=str(data["persona_id"]),
            identity=int(data["identity"]),
            profile=UserProfile.from_dict(profile_data),
            style=str(data.get("style") or "conversational"),
            system_prompt=data.get("system_prompt"),
            impersonates=int(impersonates) if impersonates is not None else None,
            is_external=bool(data.get("is_external", False)),
            controller=str(controller).lower() if controller else None,
            model=data.get("model"),
        )


@dataclass(frozen=True)
class HumanOpponent:
    """Another registered participant on the far side of a match."""

    kind: ClassVar[OpponentKind] = OpponentKind.HUMAN

    identity: int
    profile: UserProfile

    @property
    def key(self) -> str:
        return f"human:{self.identity}"

    @property
    def sender_identity(self) -> int:
        return self.identity

    @property
    def actual_vote(self) -> Vote:
        return Vote.REAL

    @property
    def accepts_external_replies(self) -> bool:
        return False


@dataclass(frozen=True)
class BotOpponent:
    """A persona standing in for a human."""

    kind: ClassVar[OpponentKind] = OpponentKind.BOT

    persona: Persona

    @property
    def key(self) -> str:
        # A clone shows its participant's identity, so it counts as facing that human.
        if self.persona.impersonates is not None:
            return f"human:{self.persona.impersonates}"
        return f"persona:{self.persona.persona_id}"

    @property
    def profile(self) -> UserProfile:
        return self.persona.profile

    @property
    def sender_identity(self) -> int:
        return self.persona.identity

    @property
    def actual_vote(self) -> Vote:
        return Vote.BOT

    @property
    def accepts_external_replies(self) -> bool:
        return self.persona.is_external


Opponent = Union[HumanOpponent, BotOpponent]


@dataclass(frozen=True)
class Message:
    """One chat line, ordered by server receipt time."""

    message_id: str
    sender_identity: int
    sender_username: str
    text: str
    timestamp_ms: int
    from_bot: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "sender_identity": self.sender_identity,
            "sender_username": self.sender_username,
            "text": self.text,
            "timestamp_ms": self.timestamp_ms,
        }


@dataclass
class Conversation:
    """Transcript shared by both sides of a mirrored pair."""

    messages: list[Message] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def last_timestamp_ms(self) -> int:
        return self.messages[-1].timestamp_ms if self.messages else 0

    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None


@dataclass(frozen=True)
class VoteChange:
    vote: Vote
    timestamp_ms: int


@dataclass(frozen=True)
class RoundResult:
    """Scored outcome of one locked match."""

    match_id: str
    cycle_id: str
    round_number: int
    slot: int
    vote: Vote | None
    correct: bool
    opponent: dict[str, Any]
    opponent_type: OpponentKind
    decision_ms: int | None = None
    vote_changes: int = 0
    forfeit: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "match_id": self.match_id,
            "cycle_id": self.cycle_id,
            "round_number": self.round_number,
            "slot": self.slot,
            "vote": self.vote.value if self.vote is not None else None,
            "correct": self.correct,
            "opponent": dict(self.opponent),
            "opponent_type": self.opponent_type.value,
            "decision_ms": self.decision_ms,
            "vote_changes": self.vote_changes,
            "forfeit": self.forfeit,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        vote = data.get("vote")
        decision_ms = data.get("decision_ms")
        return cls(
            match_id=str(data["match_id"]),
            cycle_id=str(data["cycle_id"]),
            round_number=int(data["round_number"]),
            slot=int(data["slot"]),
            vote=Vote(vote) if vote is not None else None,
            correct=bool(data["correct"]),
            opponent=dict(data.get("opponent", {})),
            opponent_type=OpponentKind(str(data["opponent_type"])),
            decision_ms=int(decision_ms) if decision_ms is not None else None,
            vote_changes=int(data.get("vote_changes", 0)),
            forfeit=bool(data.get("forfeit", False)),
        )


@dataclass
class Match:
    """One participant's view of a timed chat against one opponent."""

    match_id: str
    cycle_id: str
    round_number: int
    slot: int
    owner: int
    owner_profile: UserProfile
    opponent: Opponent
    conversation: Conversation
    started_at_ms: int
    deadline_ms: int
    vote: Vote | None = None
    vote_history: list[VoteChange] = field(default_factory=list)
    locked: bool = False
    result: RoundResult | None = None
    mirror_id: str | None = None

    def bot_spoke_last(self) -> bool:
        last = self.conversation.last_message()
        return last is not None and last.from_bot

    def view(self, now_ms: int) -> dict[str, Any]:
        """Return the owner's polling view; the opponent kind stays hidden."""
        return {
            "match_id": self.match_id,
            "round_number": self.round_number,
            "slot": self.slot,
            "opponent": self.opponent.profile.public(),
            "messages": [message.to_dict() for message in self.conversation.messages],
            "started_at_ms": self.started_at_ms,
            "deadline_ms": self.deadline_ms,
            "time_remaining_ms": max(0, self.deadline_ms - now_ms),
            "vote": self.vote.value if self.vote is not None else None,
            "vote_changes": len(self.vote_history),
            "locked": self.locked,
        }


@dataclass
class Participant:
    """A registered player and their per-cycle record."""

    identity: int
    profile: UserProfile
    registered_at_ms: int
    ready: bool = False
    score: int = 0
    history: list[RoundResult] = field(default_factory=list)
    faced: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "profile": self.profile.public(),
            "registered_at_ms": self.registered_at_ms,
            "ready": self.ready,
            "score": self.score,
            "history": [result.to_dict() for result in self.history],
        }


@dataclass(frozen=True)
class LeaderboardEntry:
    """Ranked summary of one participant's cycle."""

    rank: int
    identity: int
    username: str
    display_name: str
    avatar_url: str | None
    accuracy: float
    correct: int
    total: int
    avg_decision_ms: int | None
    vote_changes: int
    registered_at_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "identity": self.identity,
            "username": self.username,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "accuracy": self.accuracy,
            "correct": self.correct,
            "total": self.total,
            "avg_decision_ms": self.avg_decision_ms,
            "vote_changes": self.vote_changes,
            "registered_at_ms": self.registered_at_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        avg = data.get("avg_decision_ms")
        return cls(
            rank=int(data["rank"]),
            identity=int(data["identity"]),
            username=str(data["username"]),
            display_name=str(data.get("display_name") or data["username"]),
            avatar_url=data.get("avatar_url"),
            accuracy=float(data.get("accuracy", 0.0)),
            correct=int(data.get("correct", 0)),
            total=int(data.get("total", 0)),
            avg_decision_ms=int(avg) if avg is not None else None,
            vote_changes=int(data.get("vote_changes", 0)),
            registered_at_ms=int(data.get("registered_at_ms", 0)),
        )


@dataclass
class GameCycle:
    """One run of the game from registration through final scoring."""

    cycle_id: str
    created_at_ms: int
    total_rounds: int
    state: CycleState = CycleState.REGISTRATION
    registration_closes_at_ms: int | None = None
    current_round: int = 0
    round_started_at_ms: int | None = None
    round_deadline_ms: int | None = None
    participants: dict[int, Participant] = field(default_factory=dict)
    finished_at_ms: int | None = None
    leaderboard: list[LeaderboardEntry] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        """Return the cycle status published to polling clients."""
        ready = sum(1 for participant in self.participants.values() if participant.ready)
        return {
            "cycle_id": self.cycle_id,
            "state": self.state.value,
            "created_at_ms": self.created_at_ms,
            "registration_closes_at_ms": self.registration_closes_at_ms,
            "current_round": self.current_round,
            "total_rounds": self.total_rounds,
            "round_started_at_ms": self.round_started_at_ms,
            "round_deadline_ms": self.round_deadline_ms,
            "player_count": len(self.participants),
            "ready_count": ready,
            "finished_at_ms": self.finished_at_ms,
        }
