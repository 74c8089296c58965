"""Shared test fixtures: isolated Settings and a scripted model provider."""

from __future__ import annotations

import asyncio

import pytest

from siber.api.models import Message
from siber.cancellation import CancellationToken
from siber.config import Settings
from siber.providers.base import ModelProvider, ProviderError, emit_chunk

# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


class ScriptedProvider(ModelProvider):
    """Returns canned replies in order; the last reply repeats forever.

    A reply that is an Exception instance is raised from the HTTP layer
    (ProviderError becomes a failed ChatResult). Each call records a copy
    of the message contents it was given.
    """

    def __init__(self, name: str, replies: list, delay: float = 0.0) -> None:
        super().__init__("test-key", f"{name}-model", base_url="http://provider.invalid")
        self.name = name
        self.replies = list(replies)
        self.delay = delay
        self.calls: list[list[Message]] = []

    async def start(self) -> None:
        pass

    def _headers(self) -> dict[str, str]:
        return {}

    def _next_reply(self):
        return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]

    async def _complete(self, messages):
        self.calls.append([Message(m.role, m.content, metadata=dict(m.metadata)) for m in messages])
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self._next_reply()
        if isinstance(reply, Exception):
            raise reply
        return reply, {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15}

    async def _stream(self, messages, on_chunk, token: CancellationToken | None):
        text, usage = await self._complete(messages)
        for piece in text.splitlines(keepends=True):
            if token is not None:
                token.raise_if_cancelled()
            await emit_chunk(on_chunk, piece)
        return text, usage


def failing(message: str = "boom", status: int = 500) -> ProviderError:
    return ProviderError(message, status)


def tool_reply(action: str, params: str, thinking: str = "checking") -> str:
    return f"THINKING: {thinking}\nACTION: {action}\nPARAMETERS: {params}\nMESSAGE: running {action}"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment's .env and real directories."""
    work = tmp_path / "work"
    work.mkdir()
    return Settings(
        _env_file=None,
        ANTHROPIC_API_KEY="",
        OPENAI_API_KEY="",
        working_directory=str(work),
        log_dir=str(tmp_path / "logs"),
        sessions_dir=str(tmp_path / "sessions"),
        max_iterations=5,
        summary_threshold=20,
        summary_retention=8,
    )
