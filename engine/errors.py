"""Typed rejections raised by the orchestration engine."""

from __future__ import annotations

from enum import Enum
from typing import Any


class EngineError(Exception):
    """Base class for engine-level exceptions."""

    status_code = 500

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable error payload."""
        return {"type": self.__class__.__name__, "message": str(self)}


class ValidationError(EngineError):
    """Raised when a request is missing fields or carries malformed values."""

    status_code = 400


class NotFoundError(EngineError):
    """Raised when a match, cycle, participant, or persona is unknown."""

    status_code = 404


class StateError(EngineError):
    """Raised when an action does not fit the current cycle or match state."""

    status_code = 409


class RateLimitError(EngineError):
    """Raised when a caller exceeds its request budget."""

    status_code = 429

    def __init__(self, key: str, retry_after_sec: int):
        self.key = key
        self.retry_after_sec = retry_after_sec
        super().__init__(f"Rate limit exceeded; retry in {retry_after_sec}s")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retry_after_sec"] = self.retry_after_sec
        return payload


class AuthRejection(str, Enum):
    """Distinct reasons an authorization check can fail."""

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    WRONG_TURN = "wrong_turn"
    NOT_CONFIGURED = "not_configured"


_REJECTION_STATUS = {
    AuthRejection.UNAUTHORIZED: 401,
    AuthRejection.FORBIDDEN: 403,
    AuthRejection.WRONG_TURN: 403,
    AuthRejection.NOT_CONFIGURED: 400,
}


class AuthorizationError(EngineError):
    """Raised when a caller may not act on a match."""

    def __init__(self, reason: AuthRejection, message: str):
        self.reason = reason
        super().__init__(message)

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return _REJECTION_STATUS[self.reason]

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["reason"] = self.reason.value
        return payload


class UpstreamTimeoutError(EngineError):
    """Raised when persona reply generation does not finish in time."""

    status_code = 504

    def __init__(self, persona_id: str, timeout_sec: float):
        self.persona_id = persona_id
        self.timeout_sec = timeout_sec
        super().__init__(f"Persona {persona_id} did not reply within {timeout_sec:.1f}s")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"persona_id": self.persona_id, "timeout_sec": self.timeout_sec})
        return payload
