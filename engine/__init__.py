"""Round orchestration and matchmaking engine for the detective game."""

from .auth import AgentAuthGuard, AgentCredentials, InMemoryRateLimiter
from .clock import ManualClock, SystemClock
from .config import EngineConfig
from .cycle import CycleManager
from .errors import (
    AuthorizationError,
    AuthRejection,
    EngineError,
    NotFoundError,
    RateLimitError,
    StateError,
    UpstreamTimeoutError,
    ValidationError,
)
from .match_store import MatchStateStore
from .models import (
    BotOpponent,
    CycleState,
    GameCycle,
    HumanOpponent,
    LeaderboardEntry,
    Match,
    Message,
    Participant,
    Persona,
    RoundResult,
    UserProfile,
    Vote,
)
from .persona_bridge import PersonaBridge
from .scheduler import MatchScheduler
from .service import GameService

__all__ = [
    "AgentAuthGuard",
    "AgentCredentials",
    "AuthRejection",
    "AuthorizationError",
    "BotOpponent",
    "CycleManager",
    "CycleState",
    "EngineConfig",
    "EngineError",
    "GameCycle",
    "GameService",
    "HumanOpponent",
    "InMemoryRateLimiter",
    "LeaderboardEntry",
    "ManualClock",
    "Match",
    "MatchScheduler",
    "MatchStateStore",
    "Message",
    "NotFoundError",
    "Participant",
    "Persona",
    "PersonaBridge",
    "RateLimitError",
    "RoundResult",
    "StateError",
    "SystemClock",
    "UpstreamTimeoutError",
    "UserProfile",
    "ValidationError",
    "Vote",
]
