"""Authoritative record of in-flight matches: transcripts, votes, and locks."""

from __future__ import annotations

import logging
import threading
from typing import Iterable
from uuid import uuid4

from .clock import Clock
from .errors import AuthorizationError, AuthRejection, NotFoundError, StateError, ValidationError
from .ledger import VoteLedger
from .models import BotOpponent, HumanOpponent, Match, Message, RoundResult, Vote, VoteChange

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 500


class MatchStateStore:
    """Owns every mutation of match content; each pair serializes on its conversation lock."""

    def __init__(self, clock: Clock, ledger: VoteLedger, *, unvoted_default: Vote | None = Vote.REAL):
        self._clock = clock
        self._ledger = ledger
        self._unvoted_default = unvoted_default
        self._matches: dict[str, Match] = {}
        self._by_round: dict[tuple[str, int], list[str]] = {}
        self._by_owner: dict[int, list[str]] = {}
        self._lock = threading.RLock()

    def insert_round(self, matches: Iterable[Match]) -> list[Match]:
        """Insert every match of a round in one step, or none of them."""
        batch = list(matches)
        with self._lock:
            seen: set[tuple[str, int, int, int]] = set()
            for match in batch:
                if match.match_id in self._matches:
                    raise StateError(f"Duplicate match_id: {match.match_id}")
                slot_key = (match.cycle_id, match.round_number, match.owner, match.slot)
                if slot_key in seen or any(
                    self._matches[existing].owner == match.owner and self._matches[existing].slot == match.slot
                    for existing in self._by_round.get((match.cycle_id, match.round_number), [])
                ):
                    raise StateError(
                        f"Participant {match.owner} already holds slot {match.slot} in round {match.round_number}"
                    )
                seen.add(slot_key)
            for match in batch:
                self._matches[match.match_id] = match
                self._by_round.setdefault((match.cycle_id, match.round_number), []).append(match.match_id)
                self._by_owner.setdefault(match.owner, []).append(match.match_id)
        return batch

    def get(self, match_id: str) -> Match:
        with self._lock:
            match = self._matches.get(match_id)
        if match is None:
            raise NotFoundError(f"Unknown match_id: {match_id}")
        return match

    def append_message(
        self,
        match_id: str,
        sender_identity: int,
        text: str,
        *,
        from_bot: bool = False,
        enforce_turn: bool = False,
        opening: bool = False,
    ) -> Message:
        """Append a chat line with a server timestamp strictly after the previous one.

        ``opening`` lines are only accepted into an empty conversation.
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("message text is required")
        if len(text) > MAX_MESSAGE_CHARS:
            raise ValidationError(f"message text exceeds {MAX_MESSAGE_CHARS} characters")

        match = self.get(match_id)
        opponent = match.opponent
        if from_bot:
            if not isinstance(opponent, BotOpponent) or opponent.sender_identity != sender_identity:
                raise AuthorizationError(AuthRejection.FORBIDDEN, "Bot identity does not match this match's opponent")
            username = opponent.persona.profile.username
        elif sender_identity == match.owner:
            username = match.owner_profile.username
        elif isinstance(opponent, HumanOpponent) and opponent.identity == sender_identity:
            username = opponent.profile.username
        else:
            raise AuthorizationError(AuthRejection.FORBIDDEN, "Sender is not part of this match")

        conversation = match.conversation
        with conversation.lock:
            now_ms = self._clock.now_ms()
            if match.locked or now_ms >= match.deadline_ms:
                raise StateError("match locked")
            if opening and conversation.messages:
                raise StateError("conversation already started")
            if enforce_turn and match.bot_spoke_last():
                raise AuthorizationError(AuthRejection.WRONG_TURN, "not your turn")
            message = Message(
                message_id=uuid4().hex,
                sender_identity=sender_identity,
                sender_username=username,
                text=text,
                timestamp_ms=max(now_ms, conversation.last_timestamp_ms + 1),
                from_bot=from_bot,
            )
            conversation.messages.append(message)
        return message

    def set_vote(self, match_id: str, identity: int, vote: Vote) -> Match:
        """Record the owner's current guess; repeated identical votes are no-ops."""
        match = self.get(match_id)
        if match.owner != identity:
            raise AuthorizationError(AuthRejection.FORBIDDEN, "Only the match owner may vote")
        with match.conversation.lock:
            now_ms = self._clock.now_ms()
            if match.locked or now_ms >= match.deadline_ms:
                raise StateError("vote locked")
            if match.vote != vote:
                match.vote = vote
                match.vote_history.append(VoteChange(vote=vote, timestamp_ms=now_ms))
        return match

    def lock_at_deadline(
        self,
        match_id: str,
        *,
        forfeit: bool = False,
        wait_sec: float | None = None,
    ) -> RoundResult | None:
        """Lock and score a match exactly once; later callers get None.

        With ``wait_sec`` the attempt gives up when the conversation stays busy
        that long; the match is then still unlocked and the caller may retry.
        ``forfeit`` scores a missing vote as "no vote" instead of the default.
        """
        match = self.get(match_id)
        conversation_lock = match.conversation.lock
        if not conversation_lock.acquire(timeout=-1 if wait_sec is None else wait_sec):
            logger.warning("Match %s busy for %.2fs; deadline lock deferred", match_id, wait_sec)
            return None
        try:
            if match.locked:
                return None
            match.locked = True
            if forfeit:
                vote = match.vote
            else:
                vote = match.vote if match.vote is not None else self._unvoted_default
            match.result = self._ledger.score(match, vote, forfeit=vote is None)
        finally:
            conversation_lock.release()
        logger.debug("Locked match %s (vote=%s, forfeit=%s)", match_id, vote, vote is None)
        return match.result

    def lock_for_participant(self, match_id: str, identity: int) -> RoundResult | None:
        """Lock on the owner's request; idempotent once locked."""
        match = self.get(match_id)
        if match.owner != identity:
            raise AuthorizationError(AuthRejection.FORBIDDEN, "Only the match owner may lock a vote")
        result = self.lock_at_deadline(match_id)
        return result if result is not None else match.result

    def list_active_for_participant(self, identity: int) -> list[Match]:
        with self._lock:
            matches = [self._matches[match_id] for match_id in self._by_owner.get(identity, [])]
        active = [match for match in matches if not match.locked]
        return sorted(active, key=lambda match: (match.round_number, match.slot))

    def matches_for_round(self, cycle_id: str, round_number: int) -> list[Match]:
        with self._lock:
            return [self._matches[match_id] for match_id in self._by_round.get((cycle_id, round_number), [])]

    def round_fully_locked(self, cycle_id: str, round_number: int) -> bool:
        with self._lock:
            return all(self._matches[match_id].locked for match_id in self._by_round.get((cycle_id, round_number), []))

    def awaiting_bot_reply(self, *, controller: str | None = None, bot_identity: int | None = None) -> list[Match]:
        """Return open matches where an externally controlled bot may speak next."""
        now_ms = self._clock.now_ms()
        with self._lock:
            candidates = list(self._matches.values())
        pending = []
        for match in candidates:
            opponent = match.opponent
            if not isinstance(opponent, BotOpponent) or not opponent.accepts_external_replies:
                continue
            if match.locked or now_ms >= match.deadline_ms or match.bot_spoke_last():
                continue
            if bot_identity is not None and opponent.sender_identity != bot_identity:
                continue
            if opponent.persona.controller != controller:
                continue
            pending.append(match)
        return sorted(pending, key=lambda match: (match.deadline_ms, match.match_id))

    def purge_cycle(self, cycle_id: str) -> int:
        """Drop every match belonging to an archived cycle."""
        with self._lock:
            doomed = [match_id for match_id, match in self._matches.items() if match.cycle_id == cycle_id]
            for match_id in doomed:
                match = self._matches.pop(match_id)
                self._by_owner[match.owner].remove(match_id)
                if not self._by_owner[match.owner]:
                    del self._by_owner[match.owner]
            for key in [key for key in self._by_round if key[0] == cycle_id]:
                del self._by_round[key]
        return len(doomed)
