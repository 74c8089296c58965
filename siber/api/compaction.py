"""Context optimizer: duplicate tool-call pruning plus cumulative summary.

Two passes over a conversation's message list, neither of which calls a
model:

  Pass 1 (pruning): assistant messages whose tool calls all belong to the
  optimized action set are fingerprinted by action name + literal
  PARAMETERS text. When a fingerprint occurs more than max_instances
  times, the oldest occurrences are removed together with the user turn
  (normally the tool result) that follows each of them. An occurrence
  with no user turn after it is removed alone.

  Pass 2 (summarization): once the conversation body (everything after
  the system prompt and the summary message) grows past
  summary_threshold, all but the last summary_retention messages are
  folded into one digest line each. Digest lines accumulate for the life
  of the optimizer; the single summary message always renders all of
  them, so a fact recorded once is never lost.

Both passes treat the leading system messages and the summary message
as a reserved prefix. Pruning never drops the list below min_messages.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Any

from siber.api.models import (
    ASSISTANT,
    SUMMARY_PREFIX,
    SYSTEM,
    USER,
    Message,
    OptimizationResult,
    is_summary_message,
    is_tool_result_message,
    split_tool_results,
)
from siber.api.parser import parse_tool_calls
from siber.config import Settings

logger = logging.getLogger(__name__)

TOKENS_PER_MESSAGE = 100  # rough estimate used for tokens_saved
DIGEST_MAX_CHARS = 200
_VALUE_MAX_CHARS = 40
_REPLY_MAX_CHARS = 120
_MAX_PARAMS_IN_DIGEST = 3

_SUMMARY_HEADER = "Earlier parts of this conversation, condensed:"


@dataclass
class OptimizerStats:
    messages_removed: int = 0
    total_optimizations: int = 0
    tokens_saved: int = 0
    summary_regenerations: int = 0
    last_optimization_time: float | None = None


class ContextOptimizer:
    """Keeps one conversation's transcript small. Not shared across sessions."""

    def __init__(
        self,
        enabled: bool = True,
        optimized_actions: Iterable[str] = ("read_file",),
        max_instances: int = 1,
        min_messages: int = 5,
        summary_enabled: bool = True,
        summary_threshold: int = 20,
        summary_retention: int = 8,
    ) -> None:
        if max_instances < 1:
            raise ValueError("max_instances must be >= 1")
        if summary_retention >= summary_threshold:
            raise ValueError("summary_retention must be < summary_threshold")
        self.enabled = enabled
        self._actions: set[str] = set(optimized_actions)
        self.max_instances = max_instances
        self.min_messages = min_messages
        self.summary_enabled = summary_enabled
        self.summary_threshold = summary_threshold
        self.summary_retention = summary_retention

        self._summary_lines: list[str] = []
        self._summary_fingerprints: set[tuple[str, str]] = set()
        self.stats = OptimizerStats()

    @classmethod
    def from_settings(cls, settings: Settings) -> ContextOptimizer:
        return cls(
            enabled=settings.context_optimization_enabled,
            optimized_actions=settings.optimized_actions,
            max_instances=settings.optimizer_max_instances,
            min_messages=settings.optimizer_min_messages,
            summary_enabled=settings.summary_enabled,
            summary_threshold=settings.summary_threshold,
            summary_retention=settings.summary_retention,
        )

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    @property
    def optimized_actions(self) -> list[str]:
        return sorted(self._actions)

    @property
    def summary_lines(self) -> list[str]:
        return list(self._summary_lines)

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        logger.info("Context optimization %s", "enabled" if enabled else "disabled")

    def get_stats(self) -> dict[str, Any]:
        return {
            **asdict(self.stats),
            "summary_lines": len(self._summary_lines),
            "enabled": self.enabled,
            "optimized_actions": self.optimized_actions,
            "max_instances": self.max_instances,
            "summary_enabled": self.summary_enabled,
            "summary_threshold": self.summary_threshold,
            "summary_retention": self.summary_retention,
        }

    def reset_stats(self) -> None:
        self.stats = OptimizerStats()

    def reset(self) -> None:
        """Forget accumulated summary lines and stats (new conversation)."""
        self._summary_lines.clear()
        self._summary_fingerprints.clear()
        self.reset_stats()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def optimize(
        self,
        messages: list[Message],
        *,
        prune: bool = True,
        summarize: bool = True,
    ) -> OptimizationResult:
        """Run the enabled passes over messages. The input list is not mutated."""
        start = time.perf_counter()
        current = list(messages)
        if not self.enabled:
            return OptimizationResult(optimized=False, messages=current)

        removed = 0
        pruned = False
        if prune:
            current, removed = self._prune(current)
            pruned = removed > 0

        summary_changed = False
        if summarize and self.summary_enabled:
            current, summary_changed = self._summarize(current)

        optimized = pruned or summary_changed
        if optimized:
            self.stats.total_optimizations += 1
            self.stats.last_optimization_time = time.time()

        return OptimizationResult(
            optimized=optimized,
            messages=current,
            removed=removed,
            summary_changed=summary_changed,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )

    # ------------------------------------------------------------------
    # Pass 1: duplicate pruning
    # ------------------------------------------------------------------

    def _prune(self, messages: list[Message]) -> tuple[list[Message], int]:
        if not self._actions:
            return messages, 0

        reserved = _reserved_prefix(messages)
        occurrences: dict[str, list[int]] = {}
        for idx in range(reserved, len(messages)):
            key = self._fingerprint(messages[idx])
            if key is not None:
                occurrences.setdefault(key, []).append(idx)

        groups: list[tuple[int, ...]] = []
        for indices in occurrences.values():
            if len(indices) <= self.max_instances:
                continue
            for idx in indices[:-self.max_instances]:
                nxt = idx + 1
                # The user turn answering a stale call goes with it so roles keep alternating
                if nxt < len(messages) and messages[nxt].role == USER:
                    groups.append((idx, nxt))
                else:
                    groups.append((idx,))
        groups.sort()

        remaining = len(messages)
        drop: set[int] = set()
        for group in groups:
            if remaining - len(group) < self.min_messages:
                logger.debug("Skipping duplicate at %d: would drop below %d messages", group[0], self.min_messages)
                continue
            drop.update(group)
            remaining -= len(group)

        if not drop:
            return messages, 0

        kept = [m for i, m in enumerate(messages) if i not in drop]
        self.stats.messages_removed += len(drop)
        self.stats.tokens_saved += len(drop) * TOKENS_PER_MESSAGE
        logger.info(
            "Context optimizer pruned %d duplicate message(s): %d -> %d",
            len(drop), len(messages), len(kept),
        )
        return kept, len(drop)

    def _fingerprint(self, message: Message) -> str | None:
        if message.role != ASSISTANT:
            return None
        calls = parse_tool_calls(message.content)
        if not calls or any(call.action not in self._actions for call in calls):
            return None
        return "\n".join(call.fingerprint for call in calls)

    # ------------------------------------------------------------------
    # Pass 2: cumulative summarization
    # ------------------------------------------------------------------

    def _summarize(self, messages: list[Message]) -> tuple[list[Message], bool]:
        n_system = 0
        while n_system < len(messages) and messages[n_system].role == SYSTEM:
            n_system += 1
        system = messages[:n_system]

        summaries = [m for m in messages[n_system:] if is_summary_message(m)]
        body = [m for m in messages[n_system:] if not is_summary_message(m)]
        if summaries and not self._summary_lines:
            for summary in summaries:
                self._adopt_summary(summary)

        cut = self._find_cut(body) if len(body) > self.summary_threshold else 0
        if cut <= 0:
            return self._refresh_summary(messages, system, summaries, body)

        new_lines = 0
        for message in body[:cut]:
            new_lines += self._record(message)

        folded = cut
        self.stats.summary_regenerations += 1
        self.stats.messages_removed += folded
        self.stats.tokens_saved += folded * TOKENS_PER_MESSAGE
        logger.info(
            "Context optimizer summarized %d message(s) (%d new digest line(s), %d total)",
            folded, new_lines, len(self._summary_lines),
        )
        return [*system, self._render_summary(), *body[cut:]], True

    def _find_cut(self, body: list[Message]) -> int:
        """Index splitting body into old (summarized) and recent (kept).

        The kept tail follows a user-role summary, so it must start with an
        assistant message. Step back one message, or failing that forward.
        """
        cut = len(body) - self.summary_retention
        if body[cut].role == ASSISTANT:
            return cut
        if cut - 1 > 0 and body[cut - 1].role == ASSISTANT:
            return cut - 1
        for idx in range(cut + 1, len(body)):
            if body[idx].role == ASSISTANT:
                return idx
        return 0

    def _refresh_summary(
        self,
        messages: list[Message],
        system: list[Message],
        summaries: list[Message],
        body: list[Message],
    ) -> tuple[list[Message], bool]:
        """No folding needed; keep exactly one up-to-date summary first."""
        if not summaries:
            return messages, False
        rendered = self._render_summary()
        if len(summaries) == 1 and messages[len(system)] is summaries[0]:
            if summaries[0].content == rendered.content:
                return messages, False
        return [*system, rendered, *body], True

    def _render_summary(self) -> Message:
        bullets = "\n".join(f"- {line}" for line in self._summary_lines)
        return Message(
            role=USER,
            content=f"{SUMMARY_PREFIX}\n{_SUMMARY_HEADER}\n{bullets}",
            metadata={"summary": True, "lines": len(self._summary_lines)},
        )

    def _adopt_summary(self, summary: Message) -> None:
        """Seed state from a summary message produced earlier (e.g. a loaded session)."""
        for raw in summary.content.splitlines():
            if not raw.startswith("- "):
                continue
            line = raw[2:].strip()
            role = USER if line.startswith(("User said:", "Result of ")) else ASSISTANT
            self._add_line(role, line)

    def _record(self, message: Message) -> int:
        added = 0
        for line in _digest(message):
            added += self._add_line(message.role, line)
        return added

    def _add_line(self, role: str, line: str) -> int:
        key = (role, line)
        if not line or key in self._summary_fingerprints:
            return 0
        self._summary_fingerprints.add(key)
        self._summary_lines.append(line)
        return 1


# ---------------------------------------------------------------------------
# Digest lines
# ---------------------------------------------------------------------------


def _reserved_prefix(messages: list[Message]) -> int:
    idx = 0
    while idx < len(messages) and messages[idx].role == SYSTEM:
        idx += 1
    if idx < len(messages) and is_summary_message(messages[idx]):
        idx += 1
    return idx


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def _digest(message: Message) -> list[str]:
    if message.role == ASSISTANT:
        calls = parse_tool_calls(message.content)
        if calls:
            used = "; ".join(
                f"{call.action} ({_format_params(call.parameters)})" for call in calls
            )
            return [_truncate(f"Used {used}", DIGEST_MAX_CHARS)]
        return [_truncate(f"Assistant replied: {_truncate(message.content, _REPLY_MAX_CHARS)}", DIGEST_MAX_CHARS)]

    if message.role == USER:
        if is_tool_result_message(message):
            parts = split_tool_results(message.content)
            if parts:
                return [
                    _truncate(f"Result of {action}: {_describe_result(payload)}", DIGEST_MAX_CHARS)
                    for action, payload in parts
                ]
        return [_truncate(f"User said: {_truncate(message.content, _REPLY_MAX_CHARS)}", DIGEST_MAX_CHARS)]

    return []


def _format_params(parameters: dict[str, Any]) -> str:
    pairs = []
    for key, value in list(parameters.items())[:_MAX_PARAMS_IN_DIGEST]:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        pairs.append(f"{key}={_truncate(text, _VALUE_MAX_CHARS)}")
    return ", ".join(pairs)


def _describe_result(payload_text: str) -> str:
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError:
        return _truncate(payload_text, 80)
    if not isinstance(payload, dict):
        return _truncate(payload_text, 80)

    if payload.get("success") is False:
        return f"failed: {_truncate(str(payload.get('error', 'unknown error')), 80)}"

    subject = next(
        (payload[k] for k in ("path", "file_path", "directory", "url", "command") if isinstance(payload.get(k), str)),
        None,
    )
    count = None
    if isinstance(payload.get("files"), list):
        count = f"{len(payload['files'])} files"
    elif isinstance(payload.get("entries"), list):
        count = f"{len(payload['entries'])} entries"
    elif isinstance(payload.get("count"), int):
        count = f"{payload['count']} items"

    if subject and count:
        return f"{_truncate(subject, 80)} ({count})"
    if subject:
        return _truncate(subject, 80)
    if count:
        return count
    if isinstance(payload.get("message"), str):
        return _truncate(payload["message"], 80)
    return "ok"
