"""Client for OpenAI-compatible /chat/completions endpoints.

OpenAI, DeepSeek, Grok (xAI), Qwen (DashScope compatible mode) and Gemini
(OpenAI compatibility layer) all speak the same request/response shape,
so one class covers them. PRESETS holds the per-vendor base URLs.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from siber.api.models import Message
from siber.cancellation import CancellationToken
from siber.providers.base import ChunkCallback, ModelProvider, ProviderError, emit_chunk, error_message

logger = logging.getLogger(__name__)

PRESETS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "grok": "https://api.x.ai/v1",
    "qwen": "https://dashscope-intl.aliyuncs.com/compatible-mode/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
}


class OpenAICompatibleProvider(ModelProvider):
    def __init__(self, name: str, api_key: str, model: str, *, base_url: str | None = None, **kwargs: Any) -> None:
        if base_url is None:
            if name not in PRESETS:
                raise ValueError(f"No preset base URL for provider {name!r}")
            base_url = PRESETS[name]
        super().__init__(api_key, model, base_url=base_url, **kwargs)
        self.name = name

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_payload(self, messages: list[Message], stream: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_api() for m in messages],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def _complete(self, messages: list[Message]) -> tuple[str, dict[str, int] | None]:
        response = await self.http.post("/chat/completions", json=self._build_payload(messages))
        if response.status_code != 200:
            raise ProviderError(
                f"{self.name} API error ({response.status_code}): {error_message(response)}",
                response.status_code,
            )
        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(f"{self.name} returned no choices")
        return choices[0].get("message", {}).get("content") or "", _usage(data.get("usage"))

    async def _stream(
        self,
        messages: list[Message],
        on_chunk: ChunkCallback | None,
        token: CancellationToken | None,
    ) -> tuple[str, dict[str, int] | None]:
        parts: list[str] = []
        usage: dict[str, int] | None = None
        payload = self._build_payload(messages, stream=True)

        async with self.http.stream("POST", "/chat/completions", json=payload) as response:
            if response.status_code != 200:
                body = await response.aread()
                raise ProviderError(
                    f"{self.name} API error ({response.status_code}): {error_message(response, body)}",
                    response.status_code,
                )
            async for line in response.aiter_lines():
                if token is not None:
                    token.raise_if_cancelled()
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed SSE line from %s: %s", self.name, data[:200])
                    continue
                if event.get("usage"):
                    usage = _usage(event["usage"])
                for choice in event.get("choices") or []:
                    text = (choice.get("delta") or {}).get("content") or ""
                    if text:
                        parts.append(text)
                        await emit_chunk(on_chunk, text)

        return "".join(parts), usage


def _usage(raw: dict[str, Any] | None) -> dict[str, int] | None:
    if not raw:
        return None
    return {
        "input_tokens": raw.get("prompt_tokens", 0),
        "output_tokens": raw.get("completion_tokens", 0),
        "total_tokens": raw.get("total_tokens", raw.get("prompt_tokens", 0) + raw.get("completion_tokens", 0)),
    }
