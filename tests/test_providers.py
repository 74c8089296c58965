"""Tests for the model providers and ProviderManager.

HTTP is served by httpx.MockTransport, so request payloads and SSE
parsing are checked without network access.
"""

import json

import httpx
import pytest

from siber.activity import ActivityLog
from siber.api.models import Message
from siber.cancellation import CancellationToken, OperationCancelled
from siber.providers import AnthropicProvider, OpenAICompatibleProvider
from siber.providers.manager import ALL_PROVIDERS_FAILED, ProviderManager, create_provider_manager
from tests.conftest import ScriptedProvider, failing

MESSAGES = [
    Message("system", "Be brief."),
    Message("user", "hello"),
]


def _sse(*events) -> bytes:
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class TestAnthropic:
    @pytest.mark.asyncio
    async def test_complete_lifts_system_prompt(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "content": [{"type": "text", "text": "Hi "}, {"type": "text", "text": "there"}],
                "usage": {"input_tokens": 12, "output_tokens": 3},
            })

        provider = AnthropicProvider("sk-test", "claude-test", transport=httpx.MockTransport(handler))
        result = await provider.chat(MESSAGES)
        await provider.aclose()

        assert result.success is True
        assert result.message == "Hi there"
        assert result.usage == {"input_tokens": 12, "output_tokens": 3, "total_tokens": 15}
        assert seen["body"]["system"] == "Be brief."
        assert seen["body"]["messages"] == [{"role": "user", "content": "hello"}]
        assert seen["headers"]["x-api-key"] == "sk-test"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"

    @pytest.mark.asyncio
    async def test_retries_once_on_overload(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(529, headers={"retry-after": "0"}, json={"error": {"type": "overloaded_error", "message": "busy"}})
            return httpx.Response(200, json={"content": [{"type": "text", "text": "ok"}]})

        provider = AnthropicProvider("sk-test", "claude-test", transport=httpx.MockTransport(handler))
        result = await provider.chat(MESSAGES)

        assert result.success is True
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}})

        provider = AnthropicProvider("sk-test", "claude-test", transport=httpx.MockTransport(handler))
        result = await provider.chat(MESSAGES)

        assert result.success is False
        assert result.error == "Anthropic API error (400): invalid_request_error: bad"
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_stream_forwards_text_deltas(self):
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 9, "output_tokens": 1}}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}},
            {"type": "message_delta", "usage": {"output_tokens": 4}},
            {"type": "message_stop"},
        )

        def handler(request):
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        provider = AnthropicProvider("sk-test", "claude-test", transport=httpx.MockTransport(handler))
        chunks: list[str] = []
        result = await provider.chat(MESSAGES, stream=True, on_chunk=chunks.append)

        assert chunks == ["Hel", "lo"]
        assert result.message == "Hello"
        assert result.usage == {"input_tokens": 9, "output_tokens": 4, "total_tokens": 13}

    @pytest.mark.asyncio
    async def test_stream_error_event(self):
        body = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "try later"}})

        def handler(request):
            return httpx.Response(200, content=body)

        provider = AnthropicProvider("sk-test", "claude-test", transport=httpx.MockTransport(handler))
        result = await provider.chat(MESSAGES, stream=True)
        assert result.success is False
        assert "overloaded_error" in result.error

    @pytest.mark.asyncio
    async def test_stream_stops_when_token_fires(self):
        token = CancellationToken()
        body = _sse(
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "a"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "b"}},
        )

        def handler(request):
            return httpx.Response(200, content=body)

        def on_chunk(text):
            token.cancel("stop")

        provider = AnthropicProvider("sk-test", "claude-test", transport=httpx.MockTransport(handler))
        with pytest.raises(OperationCancelled):
            await provider.chat(MESSAGES, stream=True, on_chunk=on_chunk, token=token)


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------


class TestOpenAICompatible:
    def test_preset_base_url(self):
        assert OpenAICompatibleProvider("deepseek", "k", "deepseek-chat").base_url == "https://api.deepseek.com/v1"

    def test_unknown_name_without_base_url(self):
        with pytest.raises(ValueError):
            OpenAICompatibleProvider("mystery", "k", "m")

    @pytest.mark.asyncio
    async def test_complete(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "choices": [{"message": {"role": "assistant", "content": "Hi"}}],
                "usage": {"prompt_tokens": 7, "completion_tokens": 1, "total_tokens": 8},
            })

        provider = OpenAICompatibleProvider("openai", "sk-o", "gpt-test", transport=httpx.MockTransport(handler))
        result = await provider.chat(MESSAGES)

        assert result.message == "Hi"
        assert result.provider == "openai"
        assert result.usage == {"input_tokens": 7, "output_tokens": 1, "total_tokens": 8}
        assert seen["url"] == "https://api.openai.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-o"
        assert seen["body"]["messages"][0] == {"role": "system", "content": "Be brief."}

    @pytest.mark.asyncio
    async def test_stream(self):
        body = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}},
            "[DONE]",
        )

        def handler(request):
            assert json.loads(request.content)["stream_options"] == {"include_usage": True}
            return httpx.Response(200, content=body)

        provider = OpenAICompatibleProvider("grok", "k", "grok-test", transport=httpx.MockTransport(handler))
        chunks: list[str] = []
        result = await provider.chat(MESSAGES, stream=True, on_chunk=chunks.append)

        assert chunks == ["Hel", "lo"]
        assert result.message == "Hello"
        assert result.usage == {"input_tokens": 5, "output_tokens": 2, "total_tokens": 7}

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"type": "auth", "message": "bad key"}})

        provider = OpenAICompatibleProvider("qwen", "k", "qwen-test", transport=httpx.MockTransport(handler))
        result = await provider.chat(MESSAGES)
        assert result.success is False
        assert result.error == "qwen API error (401): auth: bad key"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        provider = OpenAICompatibleProvider("gemini", "k", "gemini-test", transport=httpx.MockTransport(handler))
        result = await provider.chat(MESSAGES)
        assert result.success is False
        assert result.error.startswith("HTTP error: ConnectError")


# ---------------------------------------------------------------------------
# ProviderManager
# ---------------------------------------------------------------------------


class TestProviderManager:
    def test_first_registered_is_current(self):
        manager = ProviderManager()
        manager.register(ScriptedProvider("a", ["x"]))
        manager.register(ScriptedProvider("b", ["x"]))
        assert manager.current == "a"
        manager.set_current("b")
        assert manager.current == "b"
        with pytest.raises(KeyError):
            manager.set_current("zzz")
        assert [p["current"] for p in manager.providers_info()] == [False, True]

    @pytest.mark.asyncio
    async def test_no_fallback_returns_provider_error(self):
        manager = ProviderManager()
        a = ScriptedProvider("a", [failing("a down")])
        b = ScriptedProvider("b", ["b answer"])
        manager.register(a)
        manager.register(b)

        result = await manager.chat(MESSAGES)

        assert result.success is False
        assert result.error == "a down"
        assert b.calls == []

    @pytest.mark.asyncio
    async def test_fallback_walks_registration_order(self):
        manager = ProviderManager()
        for provider in (
            ScriptedProvider("a", ["a answer"]),
            ScriptedProvider("b", [failing("b down")]),
            ScriptedProvider("c", ["c answer"]),
        ):
            manager.register(provider)
        manager.set_current("b")

        result = await manager.chat(MESSAGES, fallback=True)

        assert result.message == "a answer"
        assert result.provider == "a"
        assert result.fallback_used is True
        assert result.original_provider == "b"

    @pytest.mark.asyncio
    async def test_all_failed_lists_errors(self):
        manager = ProviderManager()
        manager.register(ScriptedProvider("a", [failing("a down")]))
        manager.register(ScriptedProvider("b", [failing("b down")]))

        result = await manager.chat(MESSAGES, fallback=True)

        assert result.error == ALL_PROVIDERS_FAILED
        assert result.provider_errors == [
            {"provider": "a", "error": "a down"},
            {"provider": "b", "error": "b down"},
        ]

    @pytest.mark.asyncio
    async def test_preferences_come_first(self):
        manager = ProviderManager()
        a = ScriptedProvider("a", ["from a"])
        b = ScriptedProvider("b", ["from b"])
        manager.register(a)
        manager.register(b)

        result = await manager.chat(MESSAGES, provider_preferences=["unknown", "b"])

        assert result.provider == "b"
        assert result.fallback_used is False
        assert a.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_walk(self):
        manager = ProviderManager()
        a = ScriptedProvider("a", ["x"])
        manager.register(a)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            await manager.chat(MESSAGES, token=token)
        assert a.calls == []

    @pytest.mark.asyncio
    async def test_calls_logged(self, tmp_path):
        activity = ActivityLog(str(tmp_path / "logs"))
        manager = ProviderManager(activity)
        manager.register(ScriptedProvider("a", ["x"]))
        await manager.chat(MESSAGES)
        assert list((tmp_path / "logs").glob("api_*.log"))

    @pytest.mark.asyncio
    async def test_test_providers(self):
        manager = ProviderManager()
        manager.register(ScriptedProvider("a", ["ok"]))
        manager.register(ScriptedProvider("b", [failing("nope")]))
        results = await manager.test_providers()
        assert results["a"]["success"] is True
        assert results["b"] == {"success": False, "error": "nope", "model": "b-model"}


class TestCreateProviderManager:
    def test_registers_configured_providers_in_order(self, settings):
        configured = settings.model_copy(update={
            "anthropic_api_key": "",
            "openai_api_key": "sk-o",
            "deepseek_api_key": "",
            "grok_api_key": "",
            "qwen_api_key": "",
            "gemini_api_key": "sk-g",
            "default_provider": "gemini",
        })
        manager = create_provider_manager(configured)
        assert manager.available() == ["openai", "gemini"]
        assert manager.current == "gemini"

    def test_unknown_default_keeps_first(self, settings):
        configured = settings.model_copy(update={
            "anthropic_api_key": "sk-a",
            "openai_api_key": "",
            "deepseek_api_key": "",
            "grok_api_key": "",
            "qwen_api_key": "",
            "gemini_api_key": "",
            "default_provider": "openai",
        })
        manager = create_provider_manager(configured)
        assert manager.available() == ["anthropic"]
        assert manager.current == "anthropic"
