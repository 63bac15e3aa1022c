"""
Model client abstraction for AI providers (OpenAI, OpenRouter, Anthropic, mock).

Clients return the raw reply text. Interpreting it is the job of
ai.response_parser, so a client never decides what a reply means.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Iterable, List, Optional, Tuple, Union

log = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL_SPEC = "openrouter:qwen/qwen3-235b-a22b"


class ModelClient(ABC):
    """Abstract base class for AI model clients."""

    provider = "abstract"
    model = ""

    @abstractmethod
    def complete(self, prompt: str, system_prompt: Optional[str] = None,
                 timeout: float = 30.0) -> str:
        """
        Send a prompt and return the reply text.

        Raises:
            TimeoutError: If call exceeds timeout
            Exception: On transport or provider errors
        """


class OpenAIClient(ModelClient):
    """OpenAI chat-completions client; also serves OpenAI-compatible gateways."""

    provider = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", base_url: Optional[str] = None,
                 temperature: float = 0.3):
        """
        Initialize OpenAI client.

        Args:
            api_key: Provider API key
            model: Model name
            base_url: Optional custom base URL (OpenRouter, local gateways)
        """
        from openai import OpenAI

        self.api_key = api_key
        self.model = model
        self.base_url = base_url or "https://api.openai.com/v1"
        self.temperature = temperature
        self.client = OpenAI(api_key=api_key, base_url=self.base_url)

    def complete(self, prompt: str, system_prompt: Optional[str] = None,
                 timeout: float = 30.0) -> str:
        start = time.perf_counter()
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                timeout=timeout,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"{self.provider} call failed after {elapsed*1000:.1f}ms: {e}")
            raise

        elapsed = time.perf_counter() - start
        log.info(f"{self.provider} call completed in {elapsed*1000:.1f}ms")
        return response.choices[0].message.content or ""


class OpenRouterClient(OpenAIClient):
    provider = "openrouter"

    def __init__(self, api_key: str, model: str = "qwen/qwen3-235b-a22b", **kwargs):
        kwargs.setdefault("base_url", OPENROUTER_BASE_URL)
        super().__init__(api_key=api_key, model=model, **kwargs)


class AnthropicClient(ModelClient):
    """Anthropic Claude client implementation."""

    provider = "anthropic"

    def __init__(self, api_key: str, model: str = "claude-3-5-sonnet-20241022",
                 max_tokens: int = 1024, temperature: float = 0.3):
        from anthropic import Anthropic

        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.client = Anthropic(api_key=api_key)

    def complete(self, prompt: str, system_prompt: Optional[str] = None,
                 timeout: float = 30.0) -> str:
        start = time.perf_counter()
        kwargs = {}
        if system_prompt:
            kwargs["system"] = system_prompt
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
                **kwargs,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"Anthropic call failed after {elapsed*1000:.1f}ms: {e}")
            raise

        elapsed = time.perf_counter() - start
        log.info(f"Anthropic call completed in {elapsed*1000:.1f}ms")
        return "".join(
            getattr(block, "text", "") for block in response.content
        )


Reply = Union[str, BaseException]


class MockClient(ModelClient):
    """
    Scripted client for tests and offline runs.

    Replies are consumed in order; an exception instance in the script is
    raised instead of returned. Once the script is exhausted the default
    reply is returned. Every call is recorded in `calls`.
    """

    provider = "mock"
    model = "mock"

    def __init__(self, replies: Optional[Iterable[Reply]] = None,
                 default_reply: str = '{"action": "HOLD", "confidence": 0, '
                                      '"reasoning": "mock", "size_usd": 0}'):
        self._replies = deque(replies or [])
        self.default_reply = default_reply
        self.calls: List[Tuple[str, Optional[str]]] = []

    def queue(self, *replies: Reply) -> None:
        self._replies.extend(replies)

    def complete(self, prompt: str, system_prompt: Optional[str] = None,
                 timeout: float = 30.0) -> str:
        self.calls.append((prompt, system_prompt))
        reply = self._replies.popleft() if self._replies else self.default_reply
        if isinstance(reply, BaseException):
            raise reply
        return reply


def split_model_spec(spec: str) -> Tuple[str, str]:
    """'openrouter:qwen/qwen3-235b-a22b' -> ('openrouter', 'qwen/qwen3-235b-a22b')."""
    provider, sep, model = (spec or DEFAULT_MODEL_SPEC).partition(":")
    if not sep:
        return "openrouter", provider
    return provider.strip().lower(), model.strip()


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs
) -> ModelClient:
    """
    Factory function to create appropriate model client.

    Args:
        provider: "openai", "openrouter", "anthropic", or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)
        **kwargs: Additional provider-specific args

    Raises:
        ValueError: If provider is unknown or the key is missing
    """
    provider = provider.lower()

    if provider == "openai":
        if not api_key:
            raise ValueError("OpenAI requires api_key")
        return OpenAIClient(api_key=api_key, model=model or "gpt-4o-mini", **kwargs)

    elif provider == "openrouter":
        if not api_key:
            raise ValueError("OpenRouter requires api_key")
        return OpenRouterClient(api_key=api_key, model=model or "qwen/qwen3-235b-a22b", **kwargs)

    elif provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic requires api_key")
        return AnthropicClient(api_key=api_key, model=model or "claude-3-5-sonnet-20241022", **kwargs)

    elif provider == "mock":
        return MockClient(replies=kwargs.get("replies"))

    else:
        raise ValueError(
            f"Unknown provider: {provider}. Use 'openai', 'openrouter', 'anthropic', or 'mock'"
        )
