"""Recommendation providers and their wire adapters.

Every provider implements the single capability ``converse(messages, model)``
returning the assistant's text. Adapters translate the canonical message list
into the provider's own HTTP request and its reply back into plain text, and
raise ProviderError for anything that is not a usable answer.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Dict, Mapping, Optional, Sequence, Type

import httpx

from . import logging_config
from .errors import ProviderError
from .schemas import ConversationMessage, RecommendationProvider, Role

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_ADVISOR)

HOSTED_TIMEOUT = 30.0
LOCAL_TIMEOUT = 60.0
MAX_TOKENS = 1000
TEMPERATURE = 0.7
ANTHROPIC_VERSION = "2023-06-01"

MOCK_PROVIDER_ID = "mock"

DEFAULT_PROVIDERS: Dict[str, RecommendationProvider] = {
    "openai": RecommendationProvider(
        id="openai",
        display_name="OpenAI",
        base_endpoint="https://api.openai.com/v1",
        supported_models=("gpt-3.5-turbo", "gpt-4"),
        credential_env_var="OPENAI_API_KEY",
        description="OpenAI GPT models (requires API key)",
        timeout=HOSTED_TIMEOUT,
    ),
    "claude": RecommendationProvider(
        id="claude",
        display_name="Anthropic Claude",
        base_endpoint="https://api.anthropic.com/v1",
        supported_models=("claude-3-haiku-20240307", "claude-3-sonnet-20240229", "claude-3-opus-20240229"),
        credential_env_var="ANTHROPIC_API_KEY",
        description="Anthropic Claude models (requires API key)",
        timeout=HOSTED_TIMEOUT,
    ),
    "ollama": RecommendationProvider(
        id="ollama",
        display_name="Ollama (Local)",
        base_endpoint="http://localhost:11434",
        supported_models=("llama2", "codellama", "mistral"),
        description="Local Ollama models (no API key needed)",
        timeout=LOCAL_TIMEOUT,
        local=True,
    ),
    "openhands": RecommendationProvider(
        id="openhands",
        display_name="OpenHands",
        base_endpoint="http://localhost:3000",
        supported_models=("openhands",),
        description="OpenHands AI assistant (local)",
        timeout=LOCAL_TIMEOUT,
        local=True,
    ),
    MOCK_PROVIDER_ID: RecommendationProvider(
        id=MOCK_PROVIDER_ID,
        display_name="Offline",
        description="Built-in offline suggestions (no backend)",
        local=True,
    ),
}

HttpClientFactory = Callable[[float], httpx.Client]


def default_http_client(timeout: float) -> httpx.Client:
    return httpx.Client(timeout=timeout)


class ProviderAdapter(ABC):
    """Capability interface shared by every provider variant."""

    # answers are rendered offline table text rather than free-form model output
    offline = False

    def __init__(self, provider: RecommendationProvider, credential: Optional[str] = None,
                 http_client_factory: Optional[HttpClientFactory] = None):
        self.provider = provider
        self.credential = credential
        self.http_client_factory = http_client_factory or default_http_client

    @abstractmethod
    def converse(self, messages: Sequence[ConversationMessage], model: Optional[str] = None) -> str:
        """Return the assistant text answering ``messages``.

        Raises ProviderError if no usable answer could be obtained.
        """

    def _model(self, model: Optional[str]) -> Optional[str]:
        return model or self.provider.default_model

    def _post_json(self, path: str, payload: dict, headers: Optional[Mapping[str, str]] = None) -> dict:
        url = self.provider.base_endpoint.rstrip("/") + path
        logger.debug("POST %s (timeout=%.0fs)", url, self.provider.timeout)
        try:
            with self.http_client_factory(self.provider.timeout) as client:
                response = client.post(url, json=payload, headers=dict(headers or {}))
        except httpx.TimeoutException as e:
            raise ProviderError(f"{self.provider.display_name} request timed out: {e}")
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.provider.display_name} unreachable: {e}")

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code // 100 != 2:
            detail = _error_message(data) or response.text[:200]
            raise ProviderError(
                f"{self.provider.display_name} returned HTTP {response.status_code}: {detail}"
            )
        if not isinstance(data, dict):
            raise ProviderError(f"{self.provider.display_name} returned a malformed payload")

        error = _error_message(data)
        if error:
            raise ProviderError(f"{self.provider.display_name} API error: {error}")
        return data


def _error_message(data) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or error)
    return str(error)


class OpenAIAdapter(ProviderAdapter):
    def converse(self, messages, model=None):
        payload = {
            "model": self._model(model),
            "messages": [{"role": m.role.value, "content": m.content} for m in messages],
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
        }
        headers = {"Authorization": f"Bearer {self.credential}"}
        data = self._post_json("/chat/completions", payload, headers)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError("OpenAI reply has no choices")
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("OpenAI reply is empty")
        return content


class AnthropicAdapter(ProviderAdapter):
    def converse(self, messages, model=None):
        system = "\n".join(m.content for m in messages if m.role == Role.SYSTEM)
        payload = {
            "model": self._model(model),
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
            "messages": [
                {"role": m.role.value, "content": m.content}
                for m in messages if m.role != Role.SYSTEM
            ],
        }
        if system:
            payload["system"] = system
        headers = {
            "x-api-key": self.credential or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        data = self._post_json("/messages", payload, headers)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderError("Claude reply has no content")
        text = "".join(
            block.get("text", "") for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        if not text.strip():
            raise ProviderError("Claude reply is empty")
        return text


def flatten_conversation(messages: Sequence[ConversationMessage]) -> str:
    """Serialize a conversation for single-prompt models, one role-prefixed line per turn."""
    lines = []
    for message in messages:
        if message.role == Role.SYSTEM:
            lines.append(message.content)
        elif message.role == Role.USER:
            lines.append(f"User: {message.content}")
        else:
            lines.append(f"Assistant: {message.content}")
    return "\n".join(lines) + "\n"


class OllamaAdapter(ProviderAdapter):
    def converse(self, messages, model=None):
        payload = {
            "model": self._model(model),
            "prompt": flatten_conversation(messages),
            "stream": False,
        }
        data = self._post_json("/api/generate", payload)
        text = data.get("response")
        if not isinstance(text, str) or not text.strip():
            raise ProviderError("Ollama reply is empty")
        return text


class OpenHandsAdapter(ProviderAdapter):
    """OpenHands is driven interactively; it offers no conversational HTTP endpoint."""

    HINT = "Use the 'openhands' command directly in a terminal for the full assistant experience"

    def converse(self, messages, model=None):
        raise ProviderError(f"OpenHands has no conversational API. {self.HINT}")


class MockAdapter(ProviderAdapter):
    """Answers from the built-in offline table. Never fails."""

    offline = True

    def converse(self, messages, model=None):
        from .recommendation import OfflineResponder

        query = messages[-1].content if messages else ""
        return OfflineResponder().match(query).render()


DEFAULT_ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "claude": AnthropicAdapter,
    "ollama": OllamaAdapter,
    "openhands": OpenHandsAdapter,
    MOCK_PROVIDER_ID: MockAdapter,
}


def with_endpoint_overrides(providers: Mapping[str, RecommendationProvider],
                            environ: Mapping[str, str]) -> Dict[str, RecommendationProvider]:
    """Apply VMPILOT_<ID>_URL overrides to the provider table."""
    resolved = {}
    for provider_id, provider in providers.items():
        override = environ.get(f"VMPILOT_{provider_id.upper()}_URL")
        if override:
            provider = provider.model_copy(update={"base_endpoint": override})
        resolved[provider_id] = provider
    return resolved