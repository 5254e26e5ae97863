"""Tests for persona registry, style inference, and reply generators."""

from __future__ import annotations

import json

import pytest

from engine.agents.persona_agent import (
    LLMPersonaAgent,
    ScriptedPersonaAgent,
    build_system_prompt,
    build_transcript_prompt,
    clean_reply,
)
from engine.errors import ValidationError
from engine.models import Message, Persona, UserProfile
from engine.personas import DEFAULT_PERSONAS, PersonaPool, clone_persona, infer_writing_style


class _EchoClient:
    def __init__(self, response: str):
        self.response = response
        self.calls: list[tuple[str, str | None]] = []

    def complete(self, prompt: str, *, system_prompt: str | None = None) -> str:
        self.calls.append((prompt, system_prompt))
        return self.response


def _profile(posts: tuple[str, ...] = ()) -> UserProfile:
    return UserProfile(identity=42, username="alice", display_name="Alice", recent_posts=posts)


def test_style_inference_without_posts_is_generic() -> None:
    assert infer_writing_style([]) == "generic conversationalist"


def test_style_inference_reads_length_and_habits() -> None:
    style = infer_writing_style(["gm ser", "lol wagmi", "gm fren 🚀"])

    tone, *flags = style.split(" | ")
    assert tone == "brief and concise"
    assert "caps:false" in flags
    assert "emojis:true" in flags
    assert {"greeting-friendly", "crypto-native", "humor"} <= set(flags)


def test_style_inference_flags_openers_and_question_askers() -> None:
    flags = infer_writing_style(["gm frens", "hey what's up?", "who is building?"]).split(" | ")[1:]
    assert "initiator" in flags
    assert "curious" in flags

    quiet = infer_writing_style(["shipping today", "new release is out"]).split(" | ")[1:]
    assert "initiator" not in quiet
    assert "curious" not in quiet


def test_style_inference_detects_long_form_writers() -> None:
    post = "This is a long and carefully punctuated post about protocol design. " * 3

    assert infer_writing_style([post, post]).startswith("detailed and thoughtful")


def test_clone_impersonates_its_participant() -> None:
    clone = clone_persona(_profile(("gm",)))

    assert clone.persona_id == "clone-42"
    assert clone.identity == 42
    assert clone.impersonates == 42
    assert clone.profile.username == "alice"
    assert not clone.is_external


def test_pool_merges_clones_per_cycle_in_stable_order() -> None:
    pool = PersonaPool()
    pool.install_clones("c1", [_profile()])

    assert [persona.persona_id for persona in pool.for_cycle("c1")] == sorted(
        [persona.persona_id for persona in DEFAULT_PERSONAS] + ["clone-42"]
    )
    assert pool.get("clone-42").impersonates == 42
    assert "clone-42" not in [persona.persona_id for persona in pool.for_cycle("c2")]

    pool.discard_cycle("c1")
    assert len(pool.for_cycle("c1")) == len(DEFAULT_PERSONAS)


def test_pool_rejects_externally_controlled_clones() -> None:
    pool = PersonaPool(())
    external_clone = Persona.from_dict(
        {"persona_id": "bad", "identity": 1, "username": "bad", "is_external": True, "impersonates": 2}
    )

    with pytest.raises(ValidationError):
        pool.add(external_clone)


def test_pool_loads_personas_from_json(tmp_path) -> None:
    path = tmp_path / "personas.json"
    path.write_text(
        json.dumps(
            [
                {
                    "persona_id": "agent-1",
                    "identity": 800001,
                    "username": "agentone",
                    "is_external": True,
                    "controller": "0xABC",
                }
            ]
        ),
        encoding="utf-8",
    )

    pool = PersonaPool.from_file(path)

    persona = pool.get("agent-1")
    assert persona.is_external
    assert persona.controller == "0xabc"
    assert persona.profile.username == "agentone"


def test_system_prompt_mentions_posts_and_traits() -> None:
    persona = clone_persona(_profile(("gm ser",)))

    prompt = build_system_prompt(persona)

    assert "@alice" in prompt
    assert '"gm ser"' in prompt
    assert "Never say you are an AI" in prompt


def test_transcript_prompt_labels_the_persona_as_you() -> None:
    persona = DEFAULT_PERSONAS[0]
    transcript = [
        Message(message_id="1", sender_identity=1, sender_username="bob", text="gm", timestamp_ms=1),
        Message(
            message_id="2",
            sender_identity=persona.identity,
            sender_username=persona.profile.username,
            text="gm gm",
            timestamp_ms=2,
            from_bot=True,
        ),
    ]

    prompt = build_transcript_prompt(persona, transcript)

    assert "bob: gm\nyou: gm gm" in prompt


def test_clean_reply_strips_prefixes_quotes_and_caps() -> None:
    persona = DEFAULT_PERSONAS[0]

    assert clean_reply('nightowl: "Haha TRUE"\nsecond line', persona) == "haha true"
    assert len(clean_reply("word " * 100, persona)) <= 80


def test_llm_persona_agent_rejects_empty_replies() -> None:
    client = _EchoClient("   ")
    agent = LLMPersonaAgent(client)

    with pytest.raises(ValueError):
        agent.generate(DEFAULT_PERSONAS[0], [])
    assert client.calls[0][1] is not None


def test_scripted_agent_is_deterministic_per_turn() -> None:
    agent = ScriptedPersonaAgent()
    persona = DEFAULT_PERSONAS[1]
    question = [Message(message_id="1", sender_identity=1, sender_username="bob", text="u a bot?", timestamp_ms=1)]

    assert agent.generate(persona, []) == agent.generate(persona, [])
    assert agent.generate(persona, question) in {"not sure tbh", "hmm good question", "depends honestly", "idk maybe"}
