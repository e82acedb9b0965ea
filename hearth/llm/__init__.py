"""Backend providers - direct HTTP calls to Ollama and OpenAI-compatible APIs."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator

import httpx

from hearth.config import ModelConfig
from hearth.exceptions import LLMAPIError, LLMError, UnsupportedProviderError
from hearth.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"
OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant"
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        role = str(data.get("role", "user") or "user").strip().lower()
        if role not in {"system", "user", "assistant"}:
            role = "user"
        return cls(role=role, content=str(data.get("content", "") or ""))


@dataclass
class LLMResponse:
    """Response from the backend."""

    content: str
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ProviderConfig:
    """Which backend to talk to for one request."""

    provider: str = "ollama"
    model: str = "llama3.2"
    base_url: str = ""
    api_key: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096

    @classmethod
    def from_model_config(cls, config: ModelConfig) -> "ProviderConfig":
        return cls(
            provider=config.provider,
            model=config.model,
            base_url=config.base_url,
            api_key=config.api_key,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    def with_overrides(self, provider: str | None = None, model: str | None = None) -> "ProviderConfig":
        """Return a copy with per-request provider/model overrides applied."""
        provider = (provider or "").strip().lower()
        model = (model or "").strip()
        if not provider and not model:
            return self
        updated = replace(self, model=model or self.model)
        if provider and provider != self.provider:
            # Base URL and key belong to the default provider.
            updated = replace(updated, provider=provider, base_url="", api_key="")
        return updated


class LLMProvider(ABC):
    """Abstract base class for backend providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        config: ProviderConfig | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def complete_streaming(
        self,
        messages: list[Message],
        config: ProviderConfig | None = None,
    ) -> AsyncIterator[str]:
        pass

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate: ~1 token per 4 characters)."""
        return len(text) // 4

    async def close(self) -> None:
        """Release network resources."""
        return None


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        timeout: float = 120.0,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            timeout: HTTP timeout in seconds
        """
        self.model = model
        self.base_url = (base_url or OLLAMA_NATIVE_BASE_URL).rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _build_body(self, messages: list[Message], config: ProviderConfig | None, stream: bool) -> dict[str, Any]:
        temperature = config.temperature if config is not None else self.temperature
        max_tokens = config.max_tokens if config is not None else self.max_tokens
        options: dict[str, Any] = {
            "num_ctx": 65536,
            "temperature": temperature,
        }
        if max_tokens:
            options["num_predict"] = max_tokens
        return {
            "model": (config.model if config is not None else "") or self.model,
            "messages": [msg.to_dict() for msg in messages],
            "stream": stream,
            "options": options,
        }

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        messages: list[Message],
        config: ProviderConfig | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, config, stream=False)

        try:
            log.debug("Calling Ollama", model=body["model"], url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=self._headers())
            log.debug("Ollama response status", status=response.status_code)

            if not response.is_success:
                raise LLMAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            content = data.get("message", {}).get("content", "")
            prompt_tokens = int(data.get("prompt_eval_count", 0) or 0)
            completion_tokens = int(data.get("eval_count", 0) or 0)
            return LLMResponse(
                content=content,
                model=body["model"],
                usage={
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                },
            )
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}")
        except (json.JSONDecodeError, ValueError) as e:
            raise LLMError(f"Ollama response decode error: {e}")

    async def complete_streaming(
        self,
        messages: list[Message],
        config: ProviderConfig | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, config, stream=True)

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    content = chunk.get("message", {}).get("content")
                    if content:
                        yield content
                    if chunk.get("done"):
                        break
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class OpenAICompatibleProvider(LLMProvider):
    """Provider for `/chat/completions` style APIs (OpenAI, LM Studio, vLLM, ...)."""

    def __init__(
        self,
        model: str,
        base_url: str = OPENAI_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        timeout: float = 120.0,
    ):
        self.model = model
        self.base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _build_body(self, messages: list[Message], config: ProviderConfig | None, stream: bool) -> dict[str, Any]:
        return {
            "model": (config.model if config is not None else "") or self.model,
            "messages": [msg.to_dict() for msg in messages],
            "temperature": config.temperature if config is not None else self.temperature,
            "max_tokens": config.max_tokens if config is not None else self.max_tokens,
            "stream": stream,
        }

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        messages: list[Message],
        config: ProviderConfig | None = None,
    ) -> LLMResponse:
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, config, stream=False)
        try:
            log.debug("Calling chat completions", model=body["model"], url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                raise LLMAPIError(
                    f"Backend API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            data = response.json()
            choices = data.get("choices") or [{}]
            content = (choices[0].get("message") or {}).get("content") or ""
            usage = data.get("usage") or {}
            return LLMResponse(
                content=content,
                model=str(data.get("model") or body["model"]),
                usage={key: int(value) for key, value in usage.items() if isinstance(value, int)},
            )
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Backend HTTP error: {e}")
        except (json.JSONDecodeError, ValueError) as e:
            raise LLMError(f"Backend response decode error: {e}")

    async def complete_streaming(
        self,
        messages: list[Message],
        config: ProviderConfig | None = None,
    ) -> AsyncIterator[str]:
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, config, stream=True)
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Backend API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if payload == "[DONE]":
                        break
                    try:
                        chunk = json.loads(payload)
                    except json.JSONDecodeError:
                        continue
                    for choice in chunk.get("choices") or []:
                        delta = (choice.get("delta") or {}).get("content")
                        if delta:
                            yield delta
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Backend streaming error: {e}")

    async def close(self) -> None:
        await self.client.aclose()


def create_provider(config: ProviderConfig, timeout: float = 120.0) -> LLMProvider:
    """Create a backend provider.

    Args:
        config: Provider name, model, credentials and sampling defaults
        timeout: HTTP timeout in seconds

    Returns:
        Configured LLMProvider instance

    Raises:
        UnsupportedProviderError if no backend matches `config.provider`
    """
    provider = (config.provider or "ollama").strip().lower()
    if provider == "ollama":
        return OllamaProvider(
            model=config.model,
            base_url=config.base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            api_key=config.api_key or None,
            timeout=timeout,
        )
    if provider in {"openai", "openai_compatible", "lmstudio", "vllm"}:
        return OpenAICompatibleProvider(
            model=config.model,
            base_url=config.base_url or OPENAI_BASE_URL,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            api_key=config.api_key or None,
            timeout=timeout,
        )
    raise UnsupportedProviderError(config.provider)


class ProviderRouter(LLMProvider):
    """Routes each call to a cached provider matching its ProviderConfig.

    Lets one daemon serve requests that override provider/model per call
    while reusing HTTP clients across requests.
    """

    def __init__(self, default: ProviderConfig, timeout: float = 120.0):
        self.default = default
        self.timeout = timeout
        self._providers: dict[tuple[str, str, str], LLMProvider] = {}
        self._lock = asyncio.Lock()

    async def _resolve(self, config: ProviderConfig | None) -> tuple[LLMProvider, ProviderConfig]:
        effective = config or self.default
        key = (effective.provider, effective.base_url, effective.api_key)
        async with self._lock:
            provider = self._providers.get(key)
            if provider is None:
                provider = create_provider(effective, timeout=self.timeout)
                self._providers[key] = provider
                log.info("Created backend provider", provider=effective.provider, model=effective.model)
        return provider, effective

    async def complete(
        self,
        messages: list[Message],
        config: ProviderConfig | None = None,
    ) -> LLMResponse:
        provider, effective = await self._resolve(config)
        return await provider.complete(messages, effective)

    async def complete_streaming(
        self,
        messages: list[Message],
        config: ProviderConfig | None = None,
    ) -> AsyncIterator[str]:
        provider, effective = await self._resolve(config)
        async for chunk in provider.complete_streaming(messages, effective):
            yield chunk

    async def close(self) -> None:
        async with self._lock:
            providers = list(self._providers.values())
            self._providers.clear()
        for provider in providers:
            await provider.close()
