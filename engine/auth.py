"""Authentication and authorization of externally controlled persona replies."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import logging
import secrets
import threading
from typing import Any, Mapping

from .clock import Clock
from .errors import AuthorizationError, AuthRejection, NotFoundError, RateLimitError, ValidationError
from .events import EventLog, EventType
from .match_store import MatchStateStore
from .models import BotOpponent, Match, Message
from .serialize import canonical_body

logger = logging.getLogger(__name__)


def reply_signing_message(body: Mapping[str, Any], timestamp: str) -> str:
    """Bytes an agent signs for a reply: ``<timestamp>.<canonical JSON body>``."""
    return f"{timestamp}.{canonical_body(body)}"


def pending_signing_message(bot_identity: int | None, timestamp: str) -> str:
    target = "all" if bot_identity is None else str(bot_identity)
    return f"pending:{target}:{timestamp}"


def sign(key: str, message: str) -> str:
    """Return the hex HMAC-SHA256 of a message under a controller key."""
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class AgentCredentials:
    """Whatever proof of origin an agent request carried."""

    controller: str | None = None
    signature: str | None = None
    timestamp: str | None = None
    shared_secret: str | None = None
    source: str = "unknown"


@dataclass(frozen=True)
class AgentPrincipal:
    controller: str | None
    via_signature: bool
    rate_key: str


class InMemoryRateLimiter:
    """Sliding-window rate limiter keyed by caller."""

    def __init__(self, clock: Clock, *, max_requests: int, window_seconds: int):
        self._clock = clock
        self.max_requests = max(1, int(max_requests))
        self.window_ms = max(1, int(window_seconds)) * 1000
        self._buckets: dict[str, list[int]] = {}
        self._lock = threading.Lock()
        self._next_sweep_ms = 0

    def check(self, key: str) -> None:
        """Consume one request for ``key`` or raise RateLimitError."""
        now_ms = self._clock.now_ms()
        cutoff = now_ms - self.window_ms
        with self._lock:
            if now_ms >= self._next_sweep_ms:
                self._sweep(cutoff)
                self._next_sweep_ms = now_ms + self.window_ms
            bucket = [stamp for stamp in self._buckets.get(key, ()) if stamp > cutoff]
            self._buckets[key] = bucket
            if len(bucket) >= self.max_requests:
                retry_after = max(1, (bucket[0] + self.window_ms - now_ms + 999) // 1000)
                raise RateLimitError(key, int(retry_after))
            bucket.append(now_ms)

    def _sweep(self, cutoff: int) -> None:
        # Callers that went quiet for a whole window leave no bucket behind.
        for key in [key for key, bucket in self._buckets.items() if not bucket or bucket[-1] <= cutoff]:
            del self._buckets[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


class AgentAuthGuard:
    """Validates external persona replies in a fixed order, each failure with its own reason."""

    def __init__(
        self,
        store: MatchStateStore,
        clock: Clock,
        rate_limiter: InMemoryRateLimiter,
        *,
        controller_keys: Mapping[str, str] | None = None,
        shared_secret: str | None = None,
        signature_window_ms: int = 300_000,
        events: EventLog | None = None,
    ):
        self._store = store
        self._clock = clock
        self._rate_limiter = rate_limiter
        self._controller_keys = {controller.lower(): key for controller, key in (controller_keys or {}).items()}
        self._shared_secret = shared_secret
        self._signature_window_ms = signature_window_ms
        self._events = events

    def authenticate(self, credentials: AgentCredentials, message: str) -> AgentPrincipal:
        """Verify a signature over ``message``, else fall back to the shared secret."""
        if credentials.signature or credentials.controller:
            return self._verify_signature(credentials, message)
        if credentials.shared_secret:
            if self._shared_secret and secrets.compare_digest(credentials.shared_secret, self._shared_secret):
                return AgentPrincipal(controller=None, via_signature=False, rate_key=f"secret:{credentials.source}")
            raise AuthorizationError(AuthRejection.UNAUTHORIZED, "Invalid agent secret")
        raise AuthorizationError(AuthRejection.UNAUTHORIZED, "Missing agent credentials")

    def _verify_signature(self, credentials: AgentCredentials, message: str) -> AgentPrincipal:
        if not (credentials.signature and credentials.controller and credentials.timestamp):
            raise AuthorizationError(AuthRejection.UNAUTHORIZED, "Signature, controller, and timestamp are all required")
        controller = credentials.controller.lower()
        key = self._controller_keys.get(controller)
        if key is None:
            raise AuthorizationError(AuthRejection.UNAUTHORIZED, f"Unknown controller {controller}")
        try:
            signed_at = int(credentials.timestamp)
        except ValueError as exc:
            raise AuthorizationError(AuthRejection.UNAUTHORIZED, "Malformed signature timestamp") from exc
        if abs(self._clock.now_ms() - signed_at) > self._signature_window_ms:
            raise AuthorizationError(AuthRejection.UNAUTHORIZED, "Signature timestamp outside the allowed window")
        if not secrets.compare_digest(sign(key, message), credentials.signature.lower()):
            raise AuthorizationError(AuthRejection.UNAUTHORIZED, "Invalid signature")
        return AgentPrincipal(controller=controller, via_signature=True, rate_key=f"controller:{controller}")

    def authorize_reply(
        self,
        credentials: AgentCredentials,
        *,
        match_id: str,
        bot_identity: int,
        body: Mapping[str, Any],
    ) -> tuple[AgentPrincipal, Match]:
        """Run authentication, rate limit, lookup, binding, and turn checks in order."""
        try:
            principal = self.authenticate(credentials, reply_signing_message(body, credentials.timestamp or ""))
            self._rate_limiter.check(principal.rate_key)
            match = self._store.get(match_id)
            opponent = match.opponent
            if not isinstance(opponent, BotOpponent) or opponent.sender_identity != bot_identity:
                raise AuthorizationError(AuthRejection.FORBIDDEN, "Bot is not the opponent in this match")
            if not opponent.accepts_external_replies:
                raise AuthorizationError(AuthRejection.NOT_CONFIGURED, "Bot is not configured for external control")
            bound = opponent.persona.controller
            if bound is not None:
                if not principal.via_signature:
                    raise AuthorizationError(
                        AuthRejection.UNAUTHORIZED, "Bot with controller binding requires cryptographic signature"
                    )
                if principal.controller != bound:
                    raise AuthorizationError(AuthRejection.UNAUTHORIZED, "Signer is not this bot's controller")
            if match.bot_spoke_last():
                raise AuthorizationError(AuthRejection.WRONG_TURN, "not your turn")
        except AuthorizationError as exc:
            self._record_rejection(match_id, credentials, exc)
            raise
        return principal, match

    def submit_reply(
        self,
        credentials: AgentCredentials,
        *,
        match_id: str,
        bot_identity: int,
        text: str,
        body: Mapping[str, Any],
    ) -> Message:
        """Authorize and append an external reply; turn order is re-checked atomically."""
        if not (text or "").strip():
            raise ValidationError("text is required")
        _, match = self.authorize_reply(credentials, match_id=match_id, bot_identity=bot_identity, body=body)
        return self._store.append_message(match.match_id, bot_identity, text, from_bot=True, enforce_turn=True)

    def pending(self, credentials: AgentCredentials, bot_identity: int | None = None) -> list[Match]:
        """List matches awaiting a reply from bots the caller controls."""
        principal = self.authenticate(credentials, pending_signing_message(bot_identity, credentials.timestamp or ""))
        self._rate_limiter.check(principal.rate_key)
        return self._store.awaiting_bot_reply(controller=principal.controller, bot_identity=bot_identity)

    def _record_rejection(self, match_id: str, credentials: AgentCredentials, exc: AuthorizationError) -> None:
        logger.info("Rejected agent reply for %s from %s: %s", match_id, credentials.source, exc)
        if self._events is None:
            return
        try:
            match = self._store.get(match_id)
        except NotFoundError:
            return
        self._events.emit(
            EventType.AGENT_REJECTED,
            cycle_id=match.cycle_id,
            round_number=match.round_number,
            timestamp_ms=self._clock.now_ms(),
            match_id=match_id,
            reason=exc.reason.value,
        )
