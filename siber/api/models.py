"""Shared data models for the API layer.

Kept separate from runner.py so parser, compaction and conversation can
import them without circular imports.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from typing import Any

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "system", "user" or "assistant"
    content: str
    usage: dict[str, int] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.usage:
            data["usage"] = self.usage
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            usage=data.get("usage"),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_api(self) -> dict[str, str]:
        """Wire form sent to providers (no usage or metadata)."""
        return {"role": self.role, "content": self.content}


@dataclass
class Conversation:
    """Tracks a multi-turn conversation for one session."""

    session_id: str
    messages: list[Message] = field(default_factory=list)


@dataclass
class ToolCall:
    """One tool invocation extracted from a model reply.

    raw_parameters is the literal PARAMETERS text before normalization;
    it is what duplicate pruning fingerprints on.
    """

    action: str
    parameters: dict[str, Any]
    thinking: str = ""
    message: str = ""
    raw_parameters: str = ""

    @property
    def fingerprint(self) -> str:
        return f"{self.action}{self.raw_parameters}"


@dataclass
class ToolResult:
    """Normalized result of one tool execution."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, **self.data}
        if self.error is not None:
            payload["error"] = self.error
        return payload


class LoopState(str, enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    PARSING = "parsing"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RequestResult:
    """Result envelope returned by the request loop for every outcome."""

    success: bool
    state: LoopState
    response: str | None = None
    error: str | None = None
    iterations: int = 0
    tools_used: list[dict[str, Any]] = field(default_factory=list)
    processing_time: float = 0.0  # seconds
    provider: str | None = None
    fallback_used: bool = False
    original_provider: str | None = None
    job_id: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.state is LoopState.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "state": self.state.value,
            "iterations": self.iterations,
            "tools_used": self.tools_used,
            "processing_time": round(self.processing_time, 3),
            "provider": self.provider,
        }
        if self.success:
            data["response"] = self.response
            data["fallback_used"] = self.fallback_used
            if self.fallback_used:
                data["original_provider"] = self.original_provider
        else:
            data["error"] = self.error
        if self.cancelled:
            data["cancelled"] = True
        if self.job_id:
            data["job_id"] = self.job_id
        return data


@dataclass
class OptimizationResult:
    """Outcome of one optimizer call over a message list."""

    optimized: bool
    messages: list[Message]
    removed: int = 0
    summary_changed: bool = False
    processing_time_ms: float = 0.0


# ---------------------------------------------------------------------------
# Transcript conventions
# ---------------------------------------------------------------------------

TOOL_RESULT_PREFIX = "Tool result for "
SUMMARY_PREFIX = "[Conversation summary]"

_TOOL_RESULT_HEADER = re.compile(r"^Tool result for (\w+):[ \t]*\n", re.MULTILINE)


def format_tool_results(pairs: list[tuple[str, ToolResult]]) -> str:
    """Serialize (action, result) pairs into one user message, in order."""
    return "\n\n".join(
        f"{TOOL_RESULT_PREFIX}{action}:\n{json.dumps(result.to_dict(), indent=2, default=str)}"
        for action, result in pairs
    )


def split_tool_results(content: str) -> list[tuple[str, str]]:
    """Inverse of format_tool_results: [(action, payload_text), ...]."""
    headers = list(_TOOL_RESULT_HEADER.finditer(content))
    parts = []
    for i, header in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(content)
        parts.append((header.group(1), content[header.end():end].strip()))
    return parts


def is_tool_result_message(message: Message) -> bool:
    if message.role != USER:
        return False
    return message.metadata.get("kind") == "tool_result" or message.content.startswith(
        TOOL_RESULT_PREFIX
    )


def is_summary_message(message: Message) -> bool:
    if message.role == SYSTEM:
        return False
    return bool(message.metadata.get("summary")) or message.content.startswith(SUMMARY_PREFIX)
