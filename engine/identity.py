"""Resolution of participant handles to stable identities and profiles."""

from __future__ import annotations

from dataclasses import dataclass
import threading
from typing import Any, Iterable, Protocol
from urllib.parse import quote

from .agents.env_utils import require_env_any
from .agents.http_utils import get_json
from .errors import NotFoundError, ValidationError
from .models import UserProfile


class IdentityGateway(Protocol):
    """Read-only directory of participant identities."""

    def resolve(self, handle: str) -> UserProfile:
        """Return the profile for a numeric identity or a username handle."""


def normalize_handle(handle: str) -> str:
    normalized = (handle or "").strip().lstrip("@").lower()
    if not normalized:
        raise ValidationError("handle is required")
    return normalized


class StaticIdentityGateway:
    """In-memory directory, seeded up front or filled as players register."""

    def __init__(self, profiles: Iterable[UserProfile] = (), *, auto_register: bool = False, first_identity: int = 1000):
        self.auto_register = auto_register
        self._next_identity = first_identity
        self._by_identity: dict[int, UserProfile] = {}
        self._by_username: dict[str, UserProfile] = {}
        self._lock = threading.Lock()
        for profile in profiles:
            self.add(profile)

    def add(self, profile: UserProfile) -> None:
        with self._lock:
            self._by_identity[profile.identity] = profile
            self._by_username[profile.username.lower()] = profile

    def resolve(self, handle: str) -> UserProfile:
        normalized = normalize_handle(handle)
        with self._lock:
            profile = (
                self._by_identity.get(int(normalized))
                if normalized.isdigit()
                else self._by_username.get(normalized)
            )
            if profile is None and self.auto_register and not normalized.isdigit():
                while self._next_identity in self._by_identity:
                    self._next_identity += 1
                profile = UserProfile(identity=self._next_identity, username=normalized, display_name=normalized)
                self._by_identity[profile.identity] = profile
                self._by_username[normalized] = profile
        if profile is None:
            raise NotFoundError(f"Unknown participant handle: {handle}")
        return profile


def _profile_from_user(user: dict[str, Any]) -> UserProfile:
    addresses = (user.get("verified_addresses") or {}).get("eth_addresses") or []
    username = str(user["username"])
    return UserProfile(
        identity=int(user["fid"]),
        username=username,
        display_name=str(user.get("display_name") or username),
        avatar_url=user.get("pfp_url"),
        address=str(addresses[0]).lower() if addresses else None,
    )


@dataclass(frozen=True)
class HttpIdentityGateway:
    """Directory lookup against a Neynar-compatible user API."""

    base_url: str = "https://api.neynar.com/v2/farcaster"
    timeout_sec: float = 5.0
    api_key_env: tuple[str, ...] = ("NEYNAR_API_KEY",)

    def resolve(self, handle: str) -> UserProfile:
        normalized = normalize_handle(handle)
        headers = {"x-api-key": require_env_any(*self.api_key_env)}
        base = self.base_url.rstrip("/")
        if normalized.isdigit():
            response = get_json(f"{base}/user/bulk?fids={normalized}", headers, self.timeout_sec)
            users = response.get("users") or []
            user = users[0] if users else None
        else:
            try:
                response = get_json(
                    f"{base}/user/by_username?username={quote(normalized)}", headers, self.timeout_sec
                )
            except RuntimeError as exc:
                if "HTTP 404" in str(exc):
                    raise NotFoundError(f"Unknown participant handle: {handle}") from exc
                raise
            user = response.get("user")
        if not isinstance(user, dict) or "fid" not in user:
            raise NotFoundError(f"Unknown participant handle: {handle}")
        return _profile_from_user(user)
