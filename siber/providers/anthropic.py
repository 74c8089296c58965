"""Anthropic Messages API client over httpx.

System messages are lifted into the top-level "system" field; the rest
go in "messages". Streaming reads SSE data: lines and forwards each
text_delta to the chunk callback.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from siber.api.models import SYSTEM, Message
from siber.cancellation import CancellationToken
from siber.providers.base import ChunkCallback, ModelProvider, ProviderError, emit_chunk, error_message

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_RETRY_STATUSES = (429, 500, 529)


class AnthropicProvider(ModelProvider):
    name = "anthropic"

    def __init__(self, api_key: str, model: str, *, base_url: str = "https://api.anthropic.com", **kwargs: Any) -> None:
        super().__init__(api_key, model, base_url=base_url, **kwargs)

    def _headers(self) -> dict[str, str]:
        headers = {"anthropic-version": _API_VERSION, "content-type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")
        return headers

    def _build_payload(self, messages: list[Message], stream: bool = False) -> dict[str, Any]:
        system = "\n\n".join(m.content for m in messages if m.role == SYSTEM)
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [m.to_api() for m in messages if m.role != SYSTEM],
        }
        if system:
            payload["system"] = system
        if stream:
            payload["stream"] = True
        return payload

    async def _complete(self, messages: list[Message]) -> tuple[str, dict[str, int] | None]:
        """POST /v1/messages with one retry for 429/500/529."""
        payload = self._build_payload(messages)
        last_error: ProviderError | None = None
        for attempt in range(2):
            response = await self.http.post("/v1/messages", json=payload)
            if response.status_code == 200:
                data = response.json()
                text = "".join(
                    block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
                )
                return text, _usage(data.get("usage"))

            message = error_message(response)
            last_error = ProviderError(
                f"Anthropic API error ({response.status_code}): {message}", response.status_code
            )
            if response.status_code in _RETRY_STATUSES and attempt == 0:
                retry_after = min(float(response.headers.get("retry-after", "1")), 30.0)
                logger.warning(
                    "API error %d, retrying in %.1fs: %s", response.status_code, retry_after, message
                )
                await asyncio.sleep(retry_after)
                continue
            break
        raise last_error or ProviderError("Anthropic API call failed")

    async def _stream(
        self,
        messages: list[Message],
        on_chunk: ChunkCallback | None,
        token: CancellationToken | None,
    ) -> tuple[str, dict[str, int] | None]:
        payload = self._build_payload(messages, stream=True)
        parts: list[str] = []
        usage: dict[str, int] = {}

        async with self.http.stream("POST", "/v1/messages", json=payload) as response:
            if response.status_code != 200:
                body = await response.aread()
                raise ProviderError(
                    f"Anthropic API error ({response.status_code}): {error_message(response, body)}",
                    response.status_code,
                )
            async for line in response.aiter_lines():
                if token is not None:
                    token.raise_if_cancelled()
                if not line.startswith("data: "):
                    continue
                event = json.loads(line[6:])
                event_type = event.get("type")
                if event_type == "error":
                    error = event.get("error", {})
                    raise ProviderError(f"{error.get('type', 'unknown')}: {error.get('message', '')}")
                if event_type == "content_block_delta":
                    delta = event.get("delta", {})
                    if delta.get("type") == "text_delta":
                        text = delta.get("text", "")
                        parts.append(text)
                        await emit_chunk(on_chunk, text)
                elif event_type == "message_start":
                    usage.update(_usage(event.get("message", {}).get("usage")) or {})
                elif event_type == "message_delta":
                    usage.update(_usage(event.get("usage")) or {})
                elif event_type == "message_stop":
                    break

        return "".join(parts), _with_total(usage) if usage else None


def _usage(raw: dict[str, Any] | None) -> dict[str, int] | None:
    if not raw:
        return None
    usage = {k: v for k, v in raw.items() if k in ("input_tokens", "output_tokens") and isinstance(v, int)}
    return _with_total(usage)


def _with_total(usage: dict[str, int]) -> dict[str, int]:
    usage["total_tokens"] = usage.get("input_tokens", 0) + usage.get("output_tokens", 0)
    return usage
