"""Persona reply generators and the provider clients behind them."""

from .env_utils import getenv_any, load_dotenv, require_env_any
from .persona_agent import LLMClient, LLMPersonaAgent, ScriptedPersonaAgent
from .provider_clients import (
    AnthropicMessagesClient,
    LocalOpenAICompatClient,
    OllamaClient,
    OpenAIChatClient,
    OpenRouterChatClient,
)

__all__ = [
    "AnthropicMessagesClient",
    "LLMClient",
    "LLMPersonaAgent",
    "LocalOpenAICompatClient",
    "OllamaClient",
    "OpenAIChatClient",
    "OpenRouterChatClient",
    "ScriptedPersonaAgent",
    "getenv_any",
    "load_dotenv",
    "require_env_any",
]
