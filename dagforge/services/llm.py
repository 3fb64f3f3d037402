from __future__ import annotations

import asyncio
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

import httpx
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

RETRY_STATUS_CODES = {408, 409, 425, 429}
RETRY_STATUS_RANGES = ((500, 599),)


class ProviderError(RuntimeError):
    """Raised by a completion provider with a retryability classification."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass(slots=True, frozen=True)
class CompletionRequest:
    prompt: str
    model: str
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


class CompletionProvider(Protocol):
    name: str
    default_model: str

    async def complete(self, request: CompletionRequest) -> str:
        ...


def is_retryable_status(status_code: int) -> bool:
    if status_code in RETRY_STATUS_CODES:
        return True
    return any(low <= status_code <= high for low, high in RETRY_STATUS_RANGES)


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait according to a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0.0, (moment - datetime.now(timezone.utc)).total_seconds())


def _messages_from_text(prompt: str, system_prompt: str | None = None) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


def _extract_content(result: Any) -> str:
    content = getattr(result, "content", result)
    if isinstance(content, list):
        return " ".join(str(item) for item in content)
    return str(content)


class OpenRouterProvider:
    """Chat-completions client for OpenRouter and other OpenAI-compatible endpoints."""

    name = "openrouter"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        default_model: str,
        timeout_seconds: float = 60.0,
        app_name: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.default_model = default_model
        self._base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if app_name:
            headers["X-Title"] = app_name
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), headers=headers)
        self._headers = headers

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> "OpenRouterProvider":
        provider = settings.provider
        return cls(
            base_url=provider.base_url,
            api_key=provider.api_key,
            default_model=provider.default_model,
            timeout_seconds=provider.timeout_seconds,
            app_name=provider.app_name,
            client=client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def complete(self, request: CompletionRequest) -> str:
        messages = [{"role": "user", "content": request.prompt}]
        if request.system_prompt:
            messages.insert(0, {"role": "system", "content": request.system_prompt})
        body: dict[str, Any] = {"model": request.model, "messages": messages}
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens

        try:
            response = await self._client.post(
                f"{self._base_url}/chat/completions",
                json=body,
                headers=self._headers,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(f"request to {self.name} timed out", retryable=True) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"transport failure talking to {self.name}: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            retryable = is_retryable_status(response.status_code)
            logger.warning(
                "completion_provider_http_error",
                provider=self.name,
                status=response.status_code,
                retryable=retryable,
            )
            raise ProviderError(
                f"{self.name} returned HTTP {response.status_code}: {response.text[:200]}",
                retryable=retryable,
                status_code=response.status_code,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned a non-JSON body", retryable=True) from exc
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"{self.name} response carried no completion", retryable=True) from exc
        if not isinstance(content, str) or not content.strip():
            raise ProviderError(f"{self.name} returned empty content", retryable=True)
        return content


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


class OllamaProvider:
    """LangChain ChatOllama wrapper for locally served models."""

    name = "ollama"

    def __init__(self, *, default_model: str, client_factory: Any | None = None, base_url: str | None = None) -> None:
        self.default_model = default_model
        self._base_url = base_url
        self._client_factory = client_factory or self._default_client
        self._clients: dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings: Settings, *, client_factory: Any | None = None) -> "OllamaProvider":
        return cls(
            default_model=settings.ollama.model,
            client_factory=client_factory,
            base_url=_build_base_url(settings.ollama.host, settings.ollama.port),
        )

    def _default_client(self, model: str) -> Any:
        return ChatOllama(model=model, base_url=self._base_url)

    def _client_for(self, model: str) -> Any:
        client = self._clients.get(model)
        if client is None:
            client = self._client_factory(model)
            self._clients[model] = client
        return client

    async def complete(self, request: CompletionRequest) -> str:
        client = self._client_for(request.model)
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if options and hasattr(client, "bind"):
            client = client.bind(options=options)
        try:
            result = await client.ainvoke(_messages_from_text(request.prompt, request.system_prompt))
        except (asyncio.TimeoutError, ConnectionError, httpx.TransportError) as exc:
            raise ProviderError(f"ollama unreachable: {exc}", retryable=True) from exc
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            retryable = isinstance(status_code, int) and is_retryable_status(status_code)
            logger.warning("completion_provider_error", provider=self.name, error=str(exc), retryable=retryable)
            raise ProviderError(
                f"ollama call failed: {exc}",
                retryable=retryable,
                status_code=status_code if isinstance(status_code, int) else None,
            ) from exc
        return _extract_content(result)


def build_provider(settings: Settings) -> CompletionProvider:
    if settings.provider.backend == "ollama":
        return OllamaProvider.from_settings(settings)
    return OpenRouterProvider.from_settings(settings)
