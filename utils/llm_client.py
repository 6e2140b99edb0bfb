import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import aiohttp
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
)

from config import get_constant

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH = "authentication"
    QUOTA = "quota_exceeded"
    NETWORK = "network"
    SERVER = "server"
    PARSE = "parse"
    OTHER = "other"

    @property
    def transient(self) -> bool:
        return self in (FailureKind.TIMEOUT, FailureKind.RATE_LIMIT, FailureKind.NETWORK, FailureKind.SERVER)


class LLMClientError(Exception):
    """A backend call failed; ``kind`` tells retry logic whether to try again."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.OTHER, status: Optional[int] = None):
        self.message = message
        self.kind = kind
        self.status = status
        super().__init__(message)

    def __str__(self):
        return self.message


@dataclass(kw_only=True, frozen=True)
class ChatRequest:
    system_prompt: str
    user_prompt: str
    model: str
    temperature: float = 0.1
    max_tokens: int = 2000

    def messages(self) -> List[Dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": self.user_prompt})
        return messages


@dataclass(kw_only=True, frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(kw_only=True, frozen=True)
class ChatResponse:
    content: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: Optional[str] = None


def classify_status(status: int) -> FailureKind:
    if status in (401, 403):
        return FailureKind.AUTH
    if status == 402:
        return FailureKind.QUOTA
    if status in (408, 504):
        return FailureKind.TIMEOUT
    if status == 429:
        return FailureKind.RATE_LIMIT
    if status >= 500:
        return FailureKind.SERVER
    return FailureKind.OTHER


class LLMClient(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    async def complete(self, request: ChatRequest) -> ChatResponse:
        """Send one chat completion request."""
        pass


class OpenAICompatibleClient(LLMClient):
    """Chat completions through the ``openai`` SDK (OpenAI or OpenRouter)."""

    api_key_env = "OPENAI_API_KEY"
    base_url: Optional[str] = None

    def __init__(self, model: str, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.model = model
        self.api_key = api_key or os.environ.get(self.api_key_env)
        if not self.api_key:
            raise ValueError(f"{self.api_key_env} environment variable not set")
        self._client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=self.api_key,
            default_headers=self._default_headers(),
            timeout=timeout or get_constant("HEALING_REQUEST_TIMEOUT", 30.0),
            max_retries=0,
        )

    def _default_headers(self) -> Dict[str, str]:
        return {}

    async def complete(self, request: ChatRequest) -> ChatResponse:
        try:
            completion = await self._client.chat.completions.create(
                model=request.model or self.model,
                messages=request.messages(),
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        except APITimeoutError as exc:
            raise LLMClientError(f"Request timeout: {exc}", FailureKind.TIMEOUT) from exc
        except APIConnectionError as exc:
            raise LLMClientError(f"Network connection error: {exc}", FailureKind.NETWORK) from exc
        except RateLimitError as exc:
            raise LLMClientError(f"Rate limit exceeded: {exc}", FailureKind.RATE_LIMIT, 429) from exc
        except (AuthenticationError, PermissionDeniedError) as exc:
            raise LLMClientError(f"Authentication failed: {exc}", FailureKind.AUTH, exc.status_code) from exc
        except APIStatusError as exc:
            raise LLMClientError(
                f"API error {exc.status_code}: {exc}", classify_status(exc.status_code), exc.status_code
            ) from exc

        if not completion.choices:
            raise LLMClientError("Invalid response format: no choices", FailureKind.PARSE)
        choice = completion.choices[0]
        usage = completion.usage
        return ChatResponse(
            content=choice.message.content or "",
            model=completion.model or request.model,
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
            ),
            finish_reason=choice.finish_reason,
        )


class OpenRouterClient(OpenAICompatibleClient):
    """OpenRouter API client."""

    api_key_env = "OPENROUTER_API_KEY"

    def __init__(self, model: str, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = get_constant("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
        super().__init__(model, api_key=api_key, timeout=timeout)

    def _default_headers(self) -> Dict[str, str]:
        return {
            "HTTP-Referer": str(get_constant("SITE_URL", "")),
            "X-Title": str(get_constant("SITE_NAME", "")),
        }


class OpenAIClient(OpenAICompatibleClient):
    """OpenAI API client."""


class AnthropicClient(LLMClient):
    """Anthropic API client."""

    def __init__(self, model: str, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.model = model
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable not set")
        self.timeout = timeout or get_constant("HEALING_REQUEST_TIMEOUT", 30.0)

    async def complete(self, request: ChatRequest) -> ChatResponse:
        headers = {
            "x-api-key": self.api_key,
            "Content-Type": "application/json",
            "anthropic-version": "2023-06-01"
        }
        payload = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.user_prompt}],
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt

        url = f"{get_constant('ANTHROPIC_BASE_URL', 'https://api.anthropic.com/v1')}/messages"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    headers=headers,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise LLMClientError(
                            f"Anthropic API error: {response.status} - {error_text}",
                            classify_status(response.status),
                            response.status,
                        )
                    result = await response.json()
        except asyncio.TimeoutError as exc:
            raise LLMClientError("Request timeout", FailureKind.TIMEOUT) from exc
        except aiohttp.ClientError as exc:
            raise LLMClientError(f"Network connection error: {exc}", FailureKind.NETWORK) from exc

        if "content" not in result or not result["content"]:
            raise LLMClientError("Invalid Anthropic response format", FailureKind.PARSE)
        usage = result.get("usage") or {}
        return ChatResponse(
            content=result["content"][0].get("text", ""),
            model=result.get("model", request.model),
            usage=TokenUsage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
            ),
            finish_reason=result.get("stop_reason"),
        )


def create_llm_client(model: str, timeout: Optional[float] = None) -> LLMClient:
    """Factory function to create appropriate LLM client based on model name."""
    if model.startswith("gpt-"):
        return OpenAIClient(model, timeout=timeout)
    if model.startswith("claude-"):
        return AnthropicClient(model, timeout=timeout)
    if "/" not in model:
        logger.warning(f"Unknown model format: {model}, defaulting to OpenRouter")
    return OpenRouterClient(model, timeout=timeout)
