"""Integration tests for RequestLoop.run().

A ScriptedProvider stands in for the model API and a real ToolRegistry
runs small in-process tools. These verify message accumulation, the
termination conditions, tool ordering and cancellation.
"""

import asyncio
import json
from pathlib import Path

import pytest

from siber.activity import ActivityLog
from siber.api.builtin_tools import register_builtin_tools
from siber.api.compaction import ContextOptimizer
from siber.api.conversation import ConversationManager
from siber.api.models import LoopState, split_tool_results
from siber.api.runner import MAX_ITERATIONS_ERROR, RequestLoop
from siber.api.tools import ToolRegistry
from siber.cancellation import CancellationToken
from siber.providers.manager import ALL_PROVIDERS_FAILED, ProviderManager
from tests.conftest import ScriptedProvider, failing, tool_reply

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _manager(*providers: ScriptedProvider) -> ProviderManager:
    manager = ProviderManager()
    for provider in providers:
        manager.register(provider)
    return manager


def _echo_registry(calls: list[str] | None = None) -> ToolRegistry:
    registry = ToolRegistry()

    async def echo(text: str) -> dict:
        if calls is not None:
            calls.append(text)
        return {"echo": text}

    registry.register("echo", echo, "Echo text back", {"text": "text"})
    return registry


def _conversation() -> ConversationManager:
    return ConversationManager("s1", "You are a test agent.")


def _roles(conversation: ConversationManager) -> list[str]:
    return [m.role for m in conversation.messages]


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


class TestTermination:
    @pytest.mark.asyncio
    async def test_plain_reply_finishes_in_one_iteration(self):
        provider = ScriptedProvider("primary", ["Hello there."])
        loop = RequestLoop(_manager(provider), _echo_registry())
        conversation = _conversation()

        result = await loop.run(conversation, "hi", CancellationToken())

        assert result.success is True
        assert result.state is LoopState.DONE
        assert result.response == "Hello there."
        assert result.iterations == 1
        assert result.tools_used == []
        assert result.provider == "primary"
        assert _roles(conversation) == ["system", "user", "assistant"]
        assert conversation.messages[2].usage == {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15}

    @pytest.mark.asyncio
    async def test_max_iterations_exact(self):
        provider = ScriptedProvider("primary", [tool_reply("echo", '{"text": "again"}')])
        loop = RequestLoop(_manager(provider), _echo_registry(), max_iterations=5)
        conversation = _conversation()

        result = await loop.run(conversation, "loop forever", CancellationToken())

        assert result.success is False
        assert result.state is LoopState.FAILED
        assert result.error == MAX_ITERATIONS_ERROR
        assert result.iterations == 5
        assert len(provider.calls) == 5
        assert len(result.tools_used) == 5
        # system + user + five (assistant, tool result) pairs
        assert len(conversation.messages) == 12

    def test_max_iterations_must_be_positive(self):
        with pytest.raises(ValueError):
            RequestLoop(_manager(), _echo_registry(), max_iterations=0)

    @pytest.mark.asyncio
    async def test_malformed_only_block_is_final_answer(self):
        reply = "ACTION: echo\nPARAMETERS: {text: broken"
        provider = ScriptedProvider("primary", [reply])
        calls: list[str] = []
        loop = RequestLoop(_manager(provider), _echo_registry(calls))

        result = await loop.run(_conversation(), "go", CancellationToken())

        assert result.state is LoopState.DONE
        assert result.response == reply
        assert calls == []


# ---------------------------------------------------------------------------
# Tool cycles
# ---------------------------------------------------------------------------


class TestToolCycles:
    @pytest.mark.asyncio
    async def test_list_directory_end_to_end(self, settings):
        workspace = Path(settings.working_directory)
        (workspace / "a.txt").write_text("a")
        (workspace / "b.txt").write_text("b")
        registry = ToolRegistry()
        register_builtin_tools(registry, settings)
        provider = ScriptedProvider("primary", [
            tool_reply("list_directory", '{"dir_path": "."}', thinking="I need the file list"),
            "There are two files: a.txt and b.txt.",
        ])
        loop = RequestLoop(_manager(provider), registry)
        conversation = _conversation()

        result = await loop.run(conversation, "what files are here?", CancellationToken())

        assert result.state is LoopState.DONE
        assert result.iterations == 2
        assert result.tools_used == [{"name": "list_directory", "success": True}]
        assert result.response == "There are two files: a.txt and b.txt."
        assert _roles(conversation) == ["system", "user", "assistant", "user", "assistant"]

        tool_message = conversation.messages[3]
        assert tool_message.metadata["kind"] == "tool_result"
        [(action, payload)] = split_tool_results(tool_message.content)
        assert action == "list_directory"
        assert [e["name"] for e in json.loads(payload)["entries"]] == ["a.txt", "b.txt"]

        # the second model call saw the call and its result
        assert [m.role for m in provider.calls[1]] == ["system", "user", "assistant", "user"]

    @pytest.mark.asyncio
    async def test_tools_run_in_reply_order(self):
        reply = "\n".join(
            tool_reply("echo", json.dumps({"text": t}), thinking=f"step {t}") for t in ("first", "second", "third")
        )
        provider = ScriptedProvider("primary", [reply, "done"])
        calls: list[str] = []
        loop = RequestLoop(_manager(provider), _echo_registry(calls))
        conversation = _conversation()

        result = await loop.run(conversation, "go", CancellationToken())

        assert calls == ["first", "second", "third"]
        assert result.tools_used == [{"name": "echo", "success": True}] * 3
        results = [json.loads(p)["echo"] for _, p in split_tool_results(conversation.messages[3].content)]
        assert results == ["first", "second", "third"]
        assert conversation.messages[2].content == reply

    @pytest.mark.asyncio
    async def test_unknown_tool_result_fed_back(self):
        provider = ScriptedProvider("primary", [tool_reply("teleport", "{}"), "I cannot do that."])
        loop = RequestLoop(_manager(provider), _echo_registry())
        conversation = _conversation()

        result = await loop.run(conversation, "go", CancellationToken())

        assert result.state is LoopState.DONE
        assert result.tools_used == [{"name": "teleport", "success": False}]
        assert "Unknown tool: teleport" in conversation.messages[3].content

    @pytest.mark.asyncio
    async def test_events_emitted_per_tool(self):
        provider = ScriptedProvider("primary", [tool_reply("echo", '{"text": "x"}'), "done"])
        loop = RequestLoop(_manager(provider), _echo_registry())
        events: list[tuple[str, dict]] = []

        async def on_event(event, data):
            events.append((event, data))

        await loop.run(_conversation(), "go", CancellationToken(), on_event=on_event)

        assert [e for e, _ in events] == ["tool_start", "tool_end"]
        assert events[0][1]["parameters"] == {"text": "x"}
        assert events[1][1]["success"] is True

    @pytest.mark.asyncio
    async def test_streaming_chunks_forwarded(self):
        provider = ScriptedProvider("primary", ["line one\nline two"])
        loop = RequestLoop(_manager(provider), _echo_registry())
        chunks: list[str] = []

        result = await loop.run(_conversation(), "go", CancellationToken(), stream=True, on_chunk=chunks.append)

        assert "".join(chunks) == "line one\nline two"
        assert result.response == "line one\nline two"

    @pytest.mark.asyncio
    async def test_duplicate_reads_pruned_between_cycles(self, settings):
        (Path(settings.working_directory) / "notes.txt").write_text("hi")
        registry = ToolRegistry()
        register_builtin_tools(registry, settings)
        read = tool_reply("read_file", '{"file_path": "notes.txt"}')
        provider = ScriptedProvider("primary", [read, read, read, "done"])
        loop = RequestLoop(_manager(provider), registry)
        conversation = ConversationManager("s1", "sys", ContextOptimizer(summary_enabled=False))

        result = await loop.run(conversation, "read it", CancellationToken())

        assert result.state is LoopState.DONE
        assert len(result.tools_used) == 3
        # the oldest read was pruned; a second removal would cross the floor
        last_call = provider.calls[-1]
        assert len(last_call) == 6
        assert sum(1 for m in last_call if m.role == "assistant") == 2


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_provider_error_fails_request(self):
        provider = ScriptedProvider("primary", [failing("rate limited", 429)])
        loop = RequestLoop(_manager(provider), _echo_registry())
        conversation = _conversation()

        result = await loop.run(conversation, "hi", CancellationToken())

        assert result.state is LoopState.FAILED
        assert result.error == "rate limited"
        assert _roles(conversation) == ["system", "user"]

    @pytest.mark.asyncio
    async def test_fallback_to_second_provider(self):
        primary = ScriptedProvider("primary", [failing("down")])
        backup = ScriptedProvider("backup", ["Answer from backup."])
        loop = RequestLoop(_manager(primary, backup), _echo_registry(), fallback=True)

        result = await loop.run(_conversation(), "hi", CancellationToken())

        assert result.success is True
        assert result.provider == "backup"
        assert result.fallback_used is True
        assert result.original_provider == "primary"

    @pytest.mark.asyncio
    async def test_all_providers_failed(self):
        loop = RequestLoop(
            _manager(ScriptedProvider("primary", [failing("a")]), ScriptedProvider("backup", [failing("b")])),
            _echo_registry(),
            fallback=True,
        )
        result = await loop.run(_conversation(), "hi", CancellationToken())
        assert result.state is LoopState.FAILED
        assert result.error == ALL_PROVIDERS_FAILED

    @pytest.mark.asyncio
    async def test_no_providers(self):
        loop = RequestLoop(_manager(), _echo_registry())
        result = await loop.run(_conversation(), "hi", CancellationToken())
        assert result.state is LoopState.FAILED
        assert "No AI providers" in result.error

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failed(self):
        provider = ScriptedProvider("primary", [tool_reply("echo", '{"text": "x"}')])
        loop = RequestLoop(_manager(provider), _echo_registry())

        def on_event(event, data):
            raise RuntimeError("sink broke")

        result = await loop.run(_conversation(), "go", CancellationToken(), on_event=on_event)

        assert result.state is LoopState.FAILED
        assert result.error == "Unexpected error: sink broke"

    @pytest.mark.asyncio
    async def test_outcome_written_to_activity_log(self, tmp_path):
        activity = ActivityLog(str(tmp_path / "logs"))
        provider = ScriptedProvider("primary", [failing("down")])
        loop = RequestLoop(_manager(provider), _echo_registry(), activity)

        await loop.run(_conversation(), "hi", CancellationToken())

        names = sorted(p.name.split("_")[0] for p in (tmp_path / "logs").glob("*.log"))
        assert names == ["conversation", "errors"]

    @pytest.mark.asyncio
    async def test_malformed_block_written_to_error_log(self, tmp_path):
        activity = ActivityLog(str(tmp_path / "logs"))
        reply = 'ACTION: echo\nPARAMETERS: {"text": oops}'
        provider = ScriptedProvider("primary", [reply])
        loop = RequestLoop(_manager(provider), _echo_registry(), activity)

        result = await loop.run(_conversation(), "go", CancellationToken())

        assert result.state is LoopState.DONE
        [entry] = activity.recent_logs("errors")
        assert entry["type"] == "ToolCallParseError"
        assert entry["context"]["context"] == "tool_call_parsing"
        assert entry["context"]["session_id"] == "s1"
        assert entry["context"]["raw_block"] == reply


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        provider = ScriptedProvider("primary", ["never"])
        loop = RequestLoop(_manager(provider), _echo_registry())
        token = CancellationToken()
        token.cancel()
        conversation = _conversation()

        result = await loop.run(conversation, "hi", token)

        assert result.state is LoopState.CANCELLED
        assert result.cancelled is True
        assert result.error == "Request cancelled"
        assert provider.calls == []
        assert _roles(conversation) == ["system", "user"]

    @pytest.mark.asyncio
    async def test_cancel_during_model_call(self):
        provider = ScriptedProvider("primary", ["too late"], delay=5)
        loop = RequestLoop(_manager(provider), _echo_registry())
        token = CancellationToken()
        conversation = _conversation()

        task = asyncio.create_task(loop.run(conversation, "hi", token))
        while not provider.calls:
            await asyncio.sleep(0.01)
        token.cancel("stop button")
        result = await asyncio.wait_for(task, timeout=2)

        assert result.state is LoopState.CANCELLED
        assert _roles(conversation) == ["system", "user"]

    @pytest.mark.asyncio
    async def test_result_after_cancel_is_discarded(self):
        token = CancellationToken()
        registry = ToolRegistry()

        async def stop_then_return() -> dict:
            token.cancel("stopped mid-tool")
            return {"done": True}

        registry.register("work", stop_then_return)
        provider = ScriptedProvider("primary", [tool_reply("work", "{}"), "should not be seen"])
        loop = RequestLoop(_manager(provider), registry)
        conversation = _conversation()

        result = await loop.run(conversation, "go", token)

        assert result.state is LoopState.CANCELLED
        assert len(provider.calls) == 1
        # neither the assistant reply nor the tool result was appended
        assert _roles(conversation) == ["system", "user"]
