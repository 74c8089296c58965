"""Model provider interface shared by every vendor client.

A provider turns a list of Messages into one assistant reply over HTTP.
Transport and HTTP failures never escape chat(); they come back as
ChatResult(success=False). OperationCancelled does escape, so the
request loop can tell a stop request apart from a failure.
"""

from __future__ import annotations

import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from siber.api.models import Message
from siber.cancellation import CancellationToken, OperationCancelled

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], "None | Awaitable[None]"]


class ProviderError(RuntimeError):
    """HTTP or protocol failure talking to a model API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ChatResult:
    success: bool
    message: str = ""
    provider: str | None = None
    model: str | None = None
    usage: dict[str, int] | None = None
    error: str | None = None
    fallback_used: bool = False
    original_provider: str | None = None
    provider_errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "provider": self.provider, "model": self.model}
        if self.success:
            data["message"] = self.message
            data["usage"] = self.usage
        else:
            data["error"] = self.error
        if self.fallback_used:
            data["fallback_used"] = True
            data["original_provider"] = self.original_provider
        if self.provider_errors:
            data["provider_errors"] = self.provider_errors
        return data


async def emit_chunk(on_chunk: ChunkCallback | None, text: str) -> None:
    """Forward a streamed chunk; the callback may be sync or async."""
    if on_chunk is None or not text:
        return
    result = on_chunk(text)
    if inspect.isawaitable(result):
        await result


class ModelProvider(ABC):
    """Base class for httpx-backed model clients."""

    #: registry key, e.g. "anthropic"
    name: str = ""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        timeout_connect: float = 10,
        timeout_read: float = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._timeout = httpx.Timeout(connect=timeout_connect, read=timeout_read, write=10.0, pool=10.0)
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth headers and timeouts."""
        if self._http is not None:
            return
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self._timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=self._transport,
        )
        logger.info("%s provider ready (model: %s)", self.name, self.model)

    async def aclose(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def provider_info(self) -> dict[str, Any]:
        return {"name": self.name, "model": self.model, "base_url": self.base_url}

    async def chat(
        self,
        messages: list[Message],
        *,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
        token: CancellationToken | None = None,
    ) -> ChatResult:
        if self._http is None:
            await self.start()
        try:
            if stream:
                text, usage = await self._stream(messages, on_chunk, token)
            else:
                text, usage = await self._complete(messages)
        except OperationCancelled:
            raise
        except ProviderError as e:
            logger.warning("%s request failed: %s", self.name, e)
            return ChatResult(success=False, provider=self.name, model=self.model, error=str(e))
        except httpx.HTTPError as e:
            logger.warning("%s transport error: %s", self.name, e)
            return ChatResult(
                success=False, provider=self.name, model=self.model,
                error=f"HTTP error: {type(e).__name__}: {e}",
            )
        return ChatResult(success=True, message=text, provider=self.name, model=self.model, usage=usage)

    @abstractmethod
    def _headers(self) -> dict[str, str]: ...

    @abstractmethod
    async def _complete(self, messages: list[Message]) -> tuple[str, dict[str, int] | None]: ...

    @abstractmethod
    async def _stream(
        self,
        messages: list[Message],
        on_chunk: ChunkCallback | None,
        token: CancellationToken | None,
    ) -> tuple[str, dict[str, int] | None]: ...

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http


def error_message(response: httpx.Response, body: bytes | None = None) -> str:
    """Best-effort error text from a JSON error body."""
    raw = body if body is not None else response.content
    try:
        data = json.loads(raw)
        error = data.get("error", data)
        if isinstance(error, dict):
            return f"{error.get('type', 'error')}: {error.get('message', '')}".strip()
        return str(error)
    except (ValueError, AttributeError):
        return raw.decode("utf-8", errors="replace")[:500]
