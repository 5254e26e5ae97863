"""Factory for building persona reply generators from provider configuration."""

from __future__ import annotations

import logging
from typing import Any

from engine.agents.env_utils import getenv_any
from engine.agents.persona_agent import LLMPersonaAgent, ScriptedPersonaAgent
from engine.agents.provider_clients import (
    DEFAULT_ANTHROPIC_MODEL,
    DEFAULT_OPENROUTER_MODEL,
    AnthropicMessagesClient,
    LocalOpenAICompatClient,
    OllamaClient,
    OpenAIChatClient,
    OpenRouterChatClient,
)
from engine.persona_bridge import ReplyGenerator

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("scripted", "openrouter", "openai", "anthropic", "ollama", "local")


def normalize_provider_config(raw: Any) -> dict[str, Any]:
    """Normalize a provider configuration into a typed dictionary."""
    if isinstance(raw, str):
        return {"type": raw.strip().lower() or "scripted"}
    if isinstance(raw, dict):
        data = dict(raw)
        data["type"] = str(data.get("type", "scripted")).strip().lower()
        return data
    return {"type": "scripted"}


def provider_label(config: dict[str, Any]) -> str:
    """Return a stable label such as ``openrouter:model`` for logs."""
    provider = str(config.get("type", "scripted")).lower()
    model = config.get("model")
    return f"{provider}:{model}" if model else provider


def _common(config: dict[str, Any]) -> dict[str, Any]:
    options: dict[str, Any] = {}
    if "temperature" in config:
        options["temperature"] = float(config["temperature"])
    if "timeout_sec" in config:
        options["timeout_sec"] = float(config["timeout_sec"])
    return options


def create_generator(config: dict[str, Any]) -> ReplyGenerator:
    """Instantiate the reply generator one provider config describes."""
    provider = str(config.get("type", "scripted")).lower()
    if provider == "scripted":
        return ScriptedPersonaAgent(lines=config.get("lines"))

    options = _common(config)
    if provider == "openrouter":
        client: Any = OpenRouterChatClient(model=str(config.get("model", DEFAULT_OPENROUTER_MODEL)), **options)
    elif provider == "openai":
        client = OpenAIChatClient(model=str(config.get("model", "gpt-4o-mini")), **options)
    elif provider == "anthropic":
        client = AnthropicMessagesClient(model=str(config.get("model", DEFAULT_ANTHROPIC_MODEL)), **options)
    elif provider == "ollama":
        base_url = config.get("base_url")
        if base_url:
            options["base_url"] = str(base_url)
        client = OllamaClient(model=str(config.get("model", "llama3.1")), **options)
    elif provider == "local":
        base_url = config.get("base_url")
        if base_url:
            options["base_url"] = str(base_url)
        client = LocalOpenAICompatClient(
            model=str(config.get("model", "llama3.1")),
            api_key=config.get("api_key"),
            **options,
        )
    else:
        raise ValueError(
            f"Unsupported persona provider '{provider}'. Supported providers: {', '.join(SUPPORTED_PROVIDERS)}."
        )
    return LLMPersonaAgent(client)


def generator_from_env() -> ReplyGenerator:
    """Build the generator selected by PERSONA_PROVIDER / PERSONA_MODEL."""
    config = normalize_provider_config(getenv_any("PERSONA_PROVIDER", default="scripted"))
    model = getenv_any("PERSONA_MODEL")
    if model:
        config["model"] = model
    base_url = getenv_any("PERSONA_BASE_URL")
    if base_url:
        config["base_url"] = base_url
    generator = create_generator(config)
    logger.info("Personas voiced by %s", provider_label(config))
    return generator
