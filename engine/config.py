"""Engine tunables with environment overrides."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .agents.env_utils import getenv_any, getenv_bool, getenv_float, getenv_int
from .models import Vote


def parse_controller_keys(raw: str | None) -> dict[str, str]:
    """Parse ``controller:key,controller:key`` into a lowercase-keyed mapping."""
    keys: dict[str, str] = {}
    for item in (raw or "").split(","):
        controller, sep, key = item.strip().partition(":")
        if sep and controller.strip() and key.strip():
            keys[controller.strip().lower()] = key.strip()
    return keys


@dataclass(frozen=True)
class EngineConfig:
    """Timing, quorum, and policy settings for one deployment."""

    min_players: int = 3
    max_players: int = 50
    registration_countdown_ms: int = 30_000
    round_duration_ms: int = 60_000
    total_rounds: int = 5
    slots_per_round: int = 2
    force_lock_after_ms: int = 15_000
    unvoted_default: Vote = Vote.REAL
    finished_grace_ms: int = 60_000
    persona_timeout_sec: float = 8.0
    persona_workers: int = 8
    clone_personas: bool = True
    persona_openers: bool = True
    simulate_typing: bool = False
    agent_rate_limit: int = 60
    agent_rate_window_sec: int = 60
    agent_signature_window_ms: int = 300_000
    agent_shared_secret: str | None = None
    controller_keys: dict[str, str] = field(default_factory=dict)
    career_db_path: Path = Path("server/data/careers.json")
    event_log_dir: Path | None = None
    cron_secret: str | None = None
    admin_secret: str | None = None
    tick_interval_sec: float = 1.0

    def __post_init__(self) -> None:
        if self.min_players < 2:
            raise ValueError("min_players must be at least 2.")
        if self.max_players < self.min_players:
            raise ValueError("max_players must not be below min_players.")
        if self.slots_per_round < 1:
            raise ValueError("slots_per_round must be positive.")
        if self.total_rounds < 1:
            raise ValueError("total_rounds must be positive.")
        if self.round_duration_ms <= 0 or self.registration_countdown_ms < 0:
            raise ValueError("Durations must be positive.")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a configuration from environment variables (and .env)."""
        defaults = cls()
        event_log_dir = getenv_any("EVENT_LOG_DIR")
        return cls(
            min_players=getenv_int("MIN_PLAYERS", defaults.min_players),
            max_players=getenv_int("MAX_PLAYERS", defaults.max_players),
            registration_countdown_ms=getenv_int("REGISTRATION_COUNTDOWN_MS", defaults.registration_countdown_ms),
            round_duration_ms=getenv_int("ROUND_DURATION_MS", defaults.round_duration_ms),
            total_rounds=getenv_int("TOTAL_ROUNDS", defaults.total_rounds),
            slots_per_round=getenv_int("SLOTS_PER_ROUND", defaults.slots_per_round),
            force_lock_after_ms=getenv_int("FORCE_LOCK_AFTER_MS", defaults.force_lock_after_ms),
            unvoted_default=Vote(getenv_any("UNVOTED_DEFAULT", default=defaults.unvoted_default.value).upper()),
            finished_grace_ms=getenv_int("FINISHED_GRACE_MS", defaults.finished_grace_ms),
            persona_timeout_sec=getenv_float("PERSONA_TIMEOUT_SEC", defaults.persona_timeout_sec),
            persona_workers=getenv_int("PERSONA_WORKERS", defaults.persona_workers),
            clone_personas=getenv_bool("CLONE_PERSONAS", defaults.clone_personas),
            persona_openers=getenv_bool("PERSONA_OPENERS", defaults.persona_openers),
            simulate_typing=getenv_bool("SIMULATE_TYPING", defaults.simulate_typing),
            agent_rate_limit=getenv_int("AGENT_RATE_LIMIT", defaults.agent_rate_limit),
            agent_rate_window_sec=getenv_int("AGENT_RATE_WINDOW_SEC", defaults.agent_rate_window_sec),
            agent_signature_window_ms=getenv_int("AGENT_SIGNATURE_WINDOW_MS", defaults.agent_signature_window_ms),
            agent_shared_secret=getenv_any("AGENT_SHARED_SECRET"),
            controller_keys=parse_controller_keys(getenv_any("AGENT_CONTROLLER_KEYS")),
            career_db_path=Path(getenv_any("CAREER_DB_PATH", default=str(defaults.career_db_path)) or defaults.career_db_path),
            event_log_dir=Path(event_log_dir) if event_log_dir else None,
            cron_secret=getenv_any("CRON_SECRET"),
            admin_secret=getenv_any("ADMIN_SECRET"),
            tick_interval_sec=getenv_float("TICK_INTERVAL_SEC", defaults.tick_interval_sec),
        )
