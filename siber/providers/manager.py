"""ProviderManager: the model-call collaborator used by the request loop.

Providers are kept in registration order. One of them is current. With
fallback enabled, a failed call on the current provider is retried on
each other provider in registration order until one succeeds. The result
reports which provider answered and whether a fallback happened.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from siber.api.models import Message
from siber.cancellation import CancellationToken, OperationCancelled
from siber.config import Settings
from siber.providers.anthropic import AnthropicProvider
from siber.providers.base import ChatResult, ChunkCallback, ModelProvider
from siber.providers.openai_compat import OpenAICompatibleProvider

if TYPE_CHECKING:
    from siber.activity import ActivityLog

logger = logging.getLogger(__name__)

ALL_PROVIDERS_FAILED = "All AI providers failed"


class ProviderManager:
    def __init__(self, activity: ActivityLog | None = None) -> None:
        self._providers: dict[str, ModelProvider] = {}
        self._current: str | None = None
        self._activity = activity

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, provider: ModelProvider) -> None:
        self._providers[provider.name] = provider
        if self._current is None:
            self._current = provider.name

    @property
    def current(self) -> str | None:
        return self._current

    def set_current(self, name: str) -> None:
        if name not in self._providers:
            raise KeyError(f"Unknown provider: {name}")
        if name != self._current:
            logger.info("Switching provider %s -> %s", self._current, name)
        self._current = name

    def available(self) -> list[str]:
        return list(self._providers)

    def get(self, name: str) -> ModelProvider:
        return self._providers[name]

    def providers_info(self) -> list[dict[str, Any]]:
        return [
            {**p.provider_info(), "current": p.name == self._current}
            for p in self._providers.values()
        ]

    async def start(self) -> None:
        for provider in self._providers.values():
            await provider.start()

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def chat(
        self,
        messages: list[Message],
        *,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
        token: CancellationToken | None = None,
        fallback: bool = False,
        provider_preferences: list[str] | None = None,
    ) -> ChatResult:
        """Call the current provider, or walk the fallback order.

        Order: provider_preferences (known names only), then the current
        provider, then, if fallback is on, the rest in registration order.
        Without fallback and preferences only the first candidate is tried.
        """
        if not self._providers or self._current is None:
            return ChatResult(success=False, error="No AI providers configured")

        order = self._call_order(fallback, provider_preferences)
        first = order[0]
        errors: list[dict[str, str]] = []

        for name in order:
            if token is not None:
                token.raise_if_cancelled()
            result = await self._call_one(name, messages, stream, on_chunk, token)
            if result.success:
                if name != first:
                    result.fallback_used = True
                    result.original_provider = first
                    logger.info("Fallback: %s answered after %s failed", name, first)
                return result
            errors.append({"provider": name, "error": result.error or "unknown error"})
            logger.warning("Provider %s failed: %s", name, result.error)

        if len(order) == 1:
            failed = errors[0]
            return ChatResult(success=False, provider=failed["provider"], error=failed["error"], provider_errors=errors)
        return ChatResult(
            success=False,
            provider=first,
            error=ALL_PROVIDERS_FAILED,
            provider_errors=errors,
        )

    def _call_order(self, fallback: bool, provider_preferences: list[str] | None) -> list[str]:
        order: list[str] = [p for p in (provider_preferences or []) if p in self._providers]
        if not order or fallback:
            order.append(self._current)
        if fallback:
            order.extend(self._providers)
        return list(dict.fromkeys(order))

    async def _call_one(
        self,
        name: str,
        messages: list[Message],
        stream: bool,
        on_chunk: ChunkCallback | None,
        token: CancellationToken | None,
    ) -> ChatResult:
        provider = self._providers[name]
        start = time.monotonic()
        try:
            result = await provider.chat(messages, stream=stream, on_chunk=on_chunk, token=token)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.exception("Unexpected error from provider %s", name)
            result = ChatResult(success=False, provider=name, model=provider.model, error=str(e))

        if self._activity is not None:
            await self._activity.log_api_call(
                provider=name,
                model=provider.model,
                request={"messages": len(messages), "stream": stream},
                response={
                    "success": result.success,
                    "error": result.error,
                    "usage": result.usage,
                    "chars": len(result.message),
                },
                duration_ms=(time.monotonic() - start) * 1000,
            )
        return result

    async def test_providers(self) -> dict[str, dict[str, Any]]:
        """Send a tiny prompt to every provider and report which respond."""
        ping = [Message(role="user", content="Reply with the single word: ok")]
        results = {}
        for name in self._providers:
            result = await self._call_one(name, ping, False, None, None)
            results[name] = {"success": result.success, "error": result.error, "model": result.model}
        return results


def create_provider_manager(settings: Settings, activity: ActivityLog | None = None) -> ProviderManager:
    """Register every provider that has an API key, in a fixed order."""
    manager = ProviderManager(activity)
    common = {
        "max_tokens": settings.max_tokens,
        "temperature": settings.temperature,
        "timeout_connect": settings.api_timeout_connect,
        "timeout_read": settings.api_timeout_read,
    }
    if settings.anthropic_api_key:
        manager.register(AnthropicProvider(
            settings.anthropic_api_key, settings.anthropic_model,
            base_url=settings.anthropic_base_url, **common,
        ))
    for name in ("openai", "deepseek", "grok", "qwen", "gemini"):
        api_key = getattr(settings, f"{name}_api_key")
        if api_key:
            manager.register(OpenAICompatibleProvider(name, api_key, getattr(settings, f"{name}_model"), **common))

    if not manager.available():
        logger.warning("No provider API keys configured -- requests will fail")
    elif settings.default_provider:
        if settings.default_provider in manager.available():
            manager.set_current(settings.default_provider)
        else:
            logger.warning(
                "DEFAULT_AI_PROVIDER=%s is not configured; using %s",
                settings.default_provider, manager.current,
            )
    return manager
