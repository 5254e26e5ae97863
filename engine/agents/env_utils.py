"""Environment loading helpers shared by configuration and provider clients."""

from __future__ import annotations

import os
from pathlib import Path

_DOTENV_LOADED = False


def load_dotenv(path: str | Path = ".env") -> None:
    """Load KEY=VALUE pairs from a .env file without overriding the process environment."""
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return

    dotenv_path = Path(path)
    _DOTENV_LOADED = True
    if not dotenv_path.exists():
        return

    for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        line = line.removeprefix("export ").strip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key.strip(), value)


def getenv_any(*names: str, default: str | None = None) -> str | None:
    """Return the first non-empty variable among candidate names."""
    load_dotenv()
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


def require_env_any(*names: str) -> str:
    """Return the first defined variable or raise a readable error."""
    value = getenv_any(*names)
    if value is not None:
        return value
    raise ValueError(f"Missing required environment variable. Set one of: {', '.join(names)}")


def getenv_int(name: str, default: int) -> int:
    raw = getenv_any(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer; received {raw!r}.") from exc


def getenv_float(name: str, default: float) -> float:
    raw = getenv_any(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number; received {raw!r}.") from exc


def getenv_bool(name: str, default: bool) -> bool:
    raw = getenv_any(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}
