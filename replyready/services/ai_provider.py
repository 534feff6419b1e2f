"""AI Provider abstraction layer.

Supports OpenAI and Azure OpenAI with a unified interface. The classifier,
QA reviewer and draft writer all talk to the model through this layer.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from replyready.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class ChatMessage:
    """A single message in a conversation."""

    role: str  # 'system', 'user', 'assistant'
    content: str


@dataclass
class ChatResponse:
    """Response from an AI provider."""

    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    model: str


class AIProvider(ABC):
    """Abstract base class for AI providers."""

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> ChatResponse:
        """Send a chat completion request.

        Raises httpx.HTTPStatusError on non-2xx and httpx.HTTPError on
        transport problems; callers decide how to fail.
        """
        pass


def _parse_completion(data: dict, model: str) -> ChatResponse:
    usage = data.get("usage", {})
    return ChatResponse(
        content=data["choices"][0]["message"]["content"] or "",
        prompt_tokens=usage.get("prompt_tokens", 0),
        completion_tokens=usage.get("completion_tokens", 0),
        total_tokens=usage.get("total_tokens", 0),
        model=model,
    )


def _request_body(
    messages: list[ChatMessage], temperature: float, max_tokens: int, json_mode: bool
) -> dict:
    body: dict = {
        "messages": [{"role": m.role, "content": m.content} for m in messages],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        body["response_format"] = {"type": "json_object"}
    return body


class OpenAIProvider(AIProvider):
    """OpenAI API provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        *,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://api.openai.com/v1"
        self.timeout = timeout
        self._transport = transport

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> ChatResponse:
        model = model or self.default_model
        body = _request_body(messages, temperature, max_tokens, json_mode)
        body["model"] = model

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
            )
            response.raise_for_status()
            data = response.json()

        return _parse_completion(data, model)


class AzureOpenAIProvider(AIProvider):
    """Azure OpenAI deployment (EU data residency)."""

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        deployment: str,
        api_version: str,
        *,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.deployment = deployment
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> ChatResponse:
        # Azure routes by deployment; `model` is only reported back.
        body = _request_body(messages, temperature, max_tokens, json_mode)
        url = f"{self.endpoint}/openai/deployments/{self.deployment}/chat/completions"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                url,
                params={"api-version": self.api_version},
                headers={"api-key": self.api_key, "Content-Type": "application/json"},
                json=body,
            )
            response.raise_for_status()
            data = response.json()

        return _parse_completion(data, model or self.deployment)


def get_provider(settings: Settings, *, timeout: float = 60.0) -> AIProvider | None:
    """Provider for the configured backend, or None when not configured."""
    if not settings.ai_configured:
        return None
    if settings.AI_PROVIDER == "openai":
        return OpenAIProvider(settings.AI_API_KEY, default_model=settings.AI_MODEL, timeout=timeout)
    elif settings.AI_PROVIDER == "azure":
        return AzureOpenAIProvider(
            settings.AI_API_KEY,
            settings.AZURE_OPENAI_ENDPOINT,
            settings.AZURE_OPENAI_DEPLOYMENT,
            settings.AZURE_OPENAI_API_VERSION,
            timeout=timeout,
        )
    else:
        raise ValueError(f"Unknown provider: {settings.AI_PROVIDER}")
