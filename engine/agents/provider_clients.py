"""Chat-completion clients used to voice personas."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .env_utils import getenv_any, require_env_any
from .http_utils import post_json

DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
DEFAULT_OPENROUTER_MODEL = "meta-llama/llama-3.1-70b-instruct"

_ANTHROPIC_MODEL_ALIASES = {
    "claude-3-5-sonnet-latest": DEFAULT_ANTHROPIC_MODEL,
    "claude-3-5-sonnet-20241022": DEFAULT_ANTHROPIC_MODEL,
}


def _normalize_anthropic_model(model: str) -> str:
    normalized = model.strip()
    if not normalized:
        return DEFAULT_ANTHROPIC_MODEL
    return _ANTHROPIC_MODEL_ALIASES.get(normalized.lower(), normalized)


def _anthropic_messages_url(base_url: str) -> str:
    normalized = (base_url or "https://api.anthropic.com").rstrip("/")
    if normalized.endswith("/v1/messages"):
        return normalized
    if normalized.endswith("/v1"):
        return f"{normalized}/messages"
    return f"{normalized}/v1/messages"


def _is_model_not_found_error(exc: Exception) -> bool:
    text = str(exc).lower()
    return "not_found_error" in text and "model" in text


def _chat_messages(prompt: str, system_prompt: str | None) -> list[dict[str, str]]:
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


def _extract_openai_content(response: dict[str, Any]) -> str:
    choices = response.get("choices", [])
    if not choices:
        raise ValueError("Provider response did not include choices.")
    content = choices[0].get("message", {}).get("content")
    if isinstance(content, list):
        content = "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    if not isinstance(content, str):
        raise ValueError("Provider response message content was not a string.")
    return content


@dataclass(frozen=True)
class OpenAIChatClient:
    """OpenAI Chat Completions API client."""

    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    timeout_sec: float = 10.0
    temperature: float = 0.9
    max_tokens: int | None = 120
    api_key_env: tuple[str, ...] = ("OPENAI_API_KEY",)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {require_env_any(*self.api_key_env)}"}

    def complete(self, prompt: str, *, system_prompt: str | None = None) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": _chat_messages(prompt, system_prompt),
            "temperature": self.temperature,
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        response = post_json(
            url=f"{self.base_url.rstrip('/')}/chat/completions",
            payload=payload,
            headers=self._headers(),
            timeout_sec=self.timeout_sec,
        )
        return _extract_openai_content(response)


@dataclass(frozen=True)
class OpenRouterChatClient(OpenAIChatClient):
    """OpenRouter gateway (OpenAI-compatible chat interface)."""

    model: str = DEFAULT_OPENROUTER_MODEL
    base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: tuple[str, ...] = ("OPENROUTER_API_KEY",)
    app_title: str = "Detective Arena"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["X-Title"] = self.app_title
        referer = getenv_any("OPENROUTER_REFERER")
        if referer:
            headers["HTTP-Referer"] = referer
        return headers


@dataclass(frozen=True)
class AnthropicMessagesClient:
    """Anthropic Messages API client."""

    model: str = DEFAULT_ANTHROPIC_MODEL
    base_url: str = "https://api.anthropic.com"
    timeout_sec: float = 10.0
    temperature: float = 0.9
    max_tokens: int = 120
    anthropic_version: str = "2023-06-01"
    api_key_env: tuple[str, ...] = ("ANTHROPIC_API_KEY",)

    def complete(self, prompt: str, *, system_prompt: str | None = None) -> str:
        api_key = require_env_any(*self.api_key_env)
        model = _normalize_anthropic_model(getenv_any("ANTHROPIC_MODEL", default=self.model) or self.model)
        url = _anthropic_messages_url(getenv_any("ANTHROPIC_BASE_URL", default=self.base_url) or self.base_url)
        headers = {
            "x-api-key": api_key,
            "anthropic-version": getenv_any("ANTHROPIC_VERSION", default=self.anthropic_version) or self.anthropic_version,
        }
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        try:
            response = post_json(url=url, payload=payload, headers=headers, timeout_sec=self.timeout_sec)
        except RuntimeError as exc:
            if not _is_model_not_found_error(exc) or model == DEFAULT_ANTHROPIC_MODEL:
                raise
            payload["model"] = DEFAULT_ANTHROPIC_MODEL
            response = post_json(url=url, payload=payload, headers=headers, timeout_sec=self.timeout_sec)

        text_parts = [
            block.get("text", "")
            for block in response.get("content", [])
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        joined = "".join(text_parts).strip()
        if not joined:
            raise ValueError("Anthropic response contained no text content.")
        return joined


@dataclass(frozen=True)
class OllamaClient:
    """Local Ollama chat client."""

    model: str
    base_url: str = "http://127.0.0.1:11434"
    timeout_sec: float = 10.0
    temperature: float = 0.9

    def complete(self, prompt: str, *, system_prompt: str | None = None) -> str:
        response = post_json(
            url=f"{self.base_url.rstrip('/')}/api/chat",
            payload={
                "model": self.model,
                "messages": _chat_messages(prompt, system_prompt),
                "stream": False,
                "options": {"temperature": self.temperature},
            },
            headers={},
            timeout_sec=self.timeout_sec,
        )
        content = response.get("message", {}).get("content")
        if not isinstance(content, str):
            raise ValueError("Ollama response did not include message.content.")
        return content


@dataclass(frozen=True)
class LocalOpenAICompatClient:
    """Self-hosted OpenAI-compatible endpoint such as vLLM or a NIM gateway."""

    model: str
    base_url: str = "http://127.0.0.1:8000/v1"
    timeout_sec: float = 10.0
    temperature: float = 0.9
    max_tokens: int | None = 120
    api_key: str | None = None

    def complete(self, prompt: str, *, system_prompt: str | None = None) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": _chat_messages(prompt, system_prompt),
            "temperature": self.temperature,
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        response = post_json(
            url=f"{self.base_url.rstrip('/')}/chat/completions",
            payload=payload,
            headers=headers,
            timeout_sec=self.timeout_sec,
        )
        return _extract_openai_content(response)
