"""Persona registry, writing-style inference, and participant clones."""

from __future__ import annotations

import json
import re
import threading
from collections import Counter
from pathlib import Path
from typing import Iterable, Sequence

from .errors import NotFoundError, ValidationError
from .models import Persona, UserProfile

_EMOJI_PATTERN = re.compile("[\U0001F300-\U0001FAFF☀-➿]")
_WORD_PATTERN = re.compile(r"[a-z']+")
_GREETING_PATTERN = re.compile(r"(gm|gn|hey|hi|yo|wsg|sup|good morning|good night)\b", re.IGNORECASE)


def infer_writing_style(posts: Sequence[str]) -> str:
    """Summarize how someone writes as ``tone | key:value | ...``."""
    posts = [post for post in posts if post.strip()]
    if not posts:
        return "generic conversationalist"

    avg_length = sum(len(post) for post in posts) // len(posts)
    uses_emojis = sum(1 for post in posts if _EMOJI_PATTERN.search(post)) / len(posts) > 0.2
    proper_caps = sum(1 for post in posts if post[:1].isupper()) / len(posts) > 0.7
    punctuated = sum(1 for post in posts if post.rstrip()[-1:] in {".", "!", "?"}) / len(posts) > 0.6

    if avg_length < 50:
        tone = "brief and concise"
    elif avg_length < 150:
        tone = "conversational"
    else:
        tone = "detailed and thoughtful"

    parts = [
        tone,
        f"avg_length:{avg_length}",
        f"emojis:{str(uses_emojis).lower()}",
        f"caps:{str(proper_caps).lower()}",
        f"punct:{str(punctuated).lower()}",
    ]
    words = Counter(word for post in posts for word in _WORD_PATTERN.findall(post.lower()))
    if words["gm"] or words["gn"]:
        parts.append("greeting-friendly")
    if words["ser"] or words["fren"]:
        parts.append("crypto-native")
    if words["lol"] or words["lmao"]:
        parts.append("humor")
    if sum(1 for post in posts if _GREETING_PATTERN.match(post.strip())) / len(posts) > 0.15:
        parts.append("initiator")
    if sum(1 for post in posts if "?" in post) / len(posts) > 0.25:
        parts.append("curious")
    return " | ".join(parts)


def clone_persona(profile: UserProfile) -> Persona:
    """Build the bot that impersonates a registered participant."""
    return Persona(
        persona_id=f"clone-{profile.identity}",
        identity=profile.identity,
        profile=profile,
        style=infer_writing_style(profile.recent_posts),
        impersonates=profile.identity,
    )


DEFAULT_PERSONAS: tuple[Persona, ...] = (
    Persona(
        persona_id="house-nightowl",
        identity=900_001,
        profile=UserProfile(identity=900_001, username="nightowl", display_name="night owl"),
        style="brief and concise | emojis:false | caps:false | punct:false | humor",
    ),
    Persona(
        persona_id="house-builder",
        identity=900_002,
        profile=UserProfile(identity=900_002, username="shipit", display_name="ship it"),
        style="conversational | emojis:true | caps:false | punct:false | crypto-native | greeting-friendly | initiator",
    ),
    Persona(
        persona_id="house-essayist",
        identity=900_003,
        profile=UserProfile(identity=900_003, username="longform", display_name="Long Form"),
        style="detailed and thoughtful | emojis:false | caps:true | punct:true",
    ),
)


class PersonaPool:
    """Shared persona registry plus the per-cycle clones of participants."""

    def __init__(self, personas: Iterable[Persona] = DEFAULT_PERSONAS):
        self._base: dict[str, Persona] = {}
        self._clones: dict[str, dict[str, Persona]] = {}
        self._lock = threading.Lock()
        for persona in personas:
            self.add(persona)

    @classmethod
    def from_file(cls, path: str | Path) -> "PersonaPool":
        """Load personas from a JSON list of persona objects."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise ValueError(f"Persona file {path} must contain a JSON list.")
        return cls(Persona.from_dict(item) for item in raw)

    def add(self, persona: Persona) -> Persona:
        if not persona.persona_id.strip():
            raise ValidationError("persona_id is required")
        if persona.is_external and persona.impersonates is not None:
            raise ValidationError("clone personas cannot be externally controlled")
        with self._lock:
            self._base[persona.persona_id] = persona
        return persona

    def remove(self, persona_id: str) -> None:
        with self._lock:
            if self._base.pop(persona_id, None) is None:
                raise NotFoundError(f"Unknown persona_id: {persona_id}")

    def install_clones(self, cycle_id: str, profiles: Iterable[UserProfile]) -> list[Persona]:
        clones = {persona.persona_id: persona for persona in map(clone_persona, profiles)}
        with self._lock:
            self._clones[cycle_id] = clones
        return list(clones.values())

    def discard_cycle(self, cycle_id: str) -> None:
        with self._lock:
            self._clones.pop(cycle_id, None)

    def for_cycle(self, cycle_id: str) -> list[Persona]:
        """Return the base personas and this cycle's clones, in a stable order."""
        with self._lock:
            personas = list(self._base.values()) + list(self._clones.get(cycle_id, {}).values())
        return sorted(personas, key=lambda persona: persona.persona_id)

    def get(self, persona_id: str) -> Persona:
        with self._lock:
            persona = self._base.get(persona_id)
            if persona is None:
                for clones in self._clones.values():
                    if persona_id in clones:
                        return clones[persona_id]
        if persona is None:
            raise NotFoundError(f"Unknown persona_id: {persona_id}")
        return persona

    def all(self) -> list[Persona]:
        with self._lock:
            return sorted(self._base.values(), key=lambda persona: persona.persona_id)
