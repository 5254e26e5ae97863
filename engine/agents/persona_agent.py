"""Reply generators that voice a persona given a chat transcript."""

from __future__ import annotations

import random
import re
from collections.abc import Sequence
from typing import Protocol

from ..models import Message, Persona
from ..serialize import stable_seed


class LLMClient(Protocol):
    """Minimal protocol for LLM API adapters."""

    def complete(self, prompt: str, *, system_prompt: str | None = None) -> str:
        """Return a model response for a prompt."""


def parse_style(style: str) -> tuple[str, dict[str, str]]:
    """Split an inferred style string into its tone and metadata flags."""
    parts = [part.strip() for part in (style or "").split("|")]
    tone = parts[0] if parts and parts[0] else "conversational"
    metadata: dict[str, str] = {}
    for part in parts[1:]:
        key, sep, value = part.partition(":")
        if sep:
            metadata[key.strip()] = value.strip()
        elif part:
            metadata[part] = "true"
    return tone, metadata


def reply_char_limit(style: str) -> int:
    tone, _ = parse_style(style)
    if tone.startswith("brief"):
        return 80
    if tone.startswith("detailed"):
        return 200
    return 150


def _length_guidance(style: str) -> str:
    tone, _ = parse_style(style)
    if tone.startswith("brief"):
        return "very short (under 50 chars), like they usually write"
    if tone.startswith("detailed"):
        return "longer (100-150 chars), matching their typical style"
    return "medium length (50-150 chars)"


def build_system_prompt(persona: Persona) -> str:
    """Compose the persona instructions sent with every generation request."""
    if persona.system_prompt:
        return persona.system_prompt
    tone, metadata = parse_style(persona.style)
    posts = "\n".join(f'"{post}"' for post in persona.profile.recent_posts[:8]) or "(no recent posts)"
    return (
        f"You are @{persona.profile.username}. Respond as they would in a casual one-on-one chat.\n\n"
        f"THEIR ACTUAL POSTS:\n{posts}\n\n"
        "KEY TRAITS:\n"
        f"- Tone: {tone}\n"
        f"- Emoji user: {'yes' if metadata.get('emojis') == 'true' else 'no'}\n"
        f"- Style: {'proper caps' if metadata.get('caps') == 'true' else 'casual caps'}\n"
        f"- Keep replies {_length_guidance(persona.style)}\n\n"
        "Never say you are an AI or a bot. Do not use corporate phrases.\n"
        'Good replies: "haha true", "what do you mean", "facts". '
        'Bad replies: "That\'s interesting!", "How can I help".'
    )


def build_transcript_prompt(persona: Persona, transcript: Sequence[Message]) -> str:
    if not transcript:
        return f"[conversation starting]\nOpen the chat as @{persona.profile.username} would:"
    lines = [
        f"{'you' if message.from_bot else message.sender_username}: {message.text}"
        for message in transcript[-12:]
    ]
    return "CURRENT CONVERSATION:\n" + "\n".join(lines) + f"\n\nNow respond as @{persona.profile.username}:"


def clean_reply(raw: str, persona: Persona) -> str:
    """Strip quoting, speaker prefixes, and overlong tails from a model reply."""
    text = raw.strip().splitlines()[0].strip() if raw.strip() else ""
    text = re.sub(rf"^@?{re.escape(persona.profile.username)}\s*:\s*", "", text, flags=re.IGNORECASE)
    text = re.sub(r"^(you|me)\s*:\s*", "", text, flags=re.IGNORECASE)
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        text = text[1:-1].strip()
    _, metadata = parse_style(persona.style)
    if metadata.get("caps") == "false":
        text = text.lower()
    limit = reply_char_limit(persona.style)
    if len(text) > limit:
        clipped = text[: limit - 3]
        last_space = clipped.rfind(" ")
        text = clipped[:last_space] if last_space > limit * 0.7 else clipped
    return text


class LLMPersonaAgent:
    """Generates persona replies through any LLMClient."""

    def __init__(self, llm_client: LLMClient):
        self.llm_client = llm_client

    def generate(self, persona: Persona, transcript: Sequence[Message]) -> str:
        raw = self.llm_client.complete(
            build_transcript_prompt(persona, transcript),
            system_prompt=build_system_prompt(persona),
        )
        reply = clean_reply(raw, persona)
        if not reply:
            raise ValueError(f"Model returned an empty reply for persona {persona.persona_id}.")
        return reply


_OPENERS = ("gm", "hey", "yo whats up", "hi there")
_ANSWERS = ("not sure tbh", "hmm good question", "depends honestly", "idk maybe")
_REACTIONS = ("haha true", "facts", "lol same", "wait really", "thats wild", "fair")


class ScriptedPersonaAgent:
    """Offline generator picking canned lines, seeded per persona and turn."""

    def __init__(self, lines: Sequence[str] | None = None):
        self.lines = tuple(lines) if lines else _REACTIONS

    def generate(self, persona: Persona, transcript: Sequence[Message]) -> str:
        rng = random.Random(stable_seed(persona.persona_id, len(transcript)))
        if not transcript:
            return rng.choice(_OPENERS)
        if transcript[-1].text.rstrip().endswith("?"):
            return rng.choice(_ANSWERS)
        return rng.choice(self.lines)
