"""Conversation component: owns one session's message list.

The request loop appends through this class and the context optimizer
replaces the list through optimize(); nothing else mutates it.
"""

from __future__ import annotations

import logging
from typing import Any

from siber.api.compaction import ContextOptimizer
from siber.api.models import (
    ASSISTANT,
    SYSTEM,
    USER,
    Conversation,
    Message,
    OptimizationResult,
    ToolResult,
    format_tool_results,
)

logger = logging.getLogger(__name__)


SYSTEM_PROMPT_TEMPLATE = """\
You are a helpful assistant that can work with files, directories and \
commands inside the working directory: {working_directory}

To use a tool, reply with one or more blocks in exactly this format:

THINKING: why you need the tool
ACTION: tool_name
PARAMETERS: {{"param": "value"}}
MESSAGE: a short note for the user about what you are doing

Rules:
- PARAMETERS must be a single JSON object on its own line(s).
- You may request several tools in one reply; they run in the order given.
- After the tools run you receive their results in a message that starts \
with "Tool result for".
- When the task is complete, reply normally WITHOUT any ACTION line.

Available tools:
{tools}
"""


def build_system_prompt(tools_description: str, working_directory: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(
        working_directory=working_directory,
        tools=tools_description or "- (none)",
    )


class ConversationManager:
    def __init__(
        self,
        session_id: str,
        system_prompt: str,
        optimizer: ContextOptimizer | None = None,
    ) -> None:
        self.conversation = Conversation(session_id=session_id)
        self.optimizer = optimizer
        self._system_prompt = system_prompt
        self.initialize(system_prompt)

    @property
    def session_id(self) -> str:
        return self.conversation.session_id

    @property
    def messages(self) -> list[Message]:
        """The live message list. Callers must not mutate it."""
        return self.conversation.messages

    def initialize(self, system_prompt: str | None = None) -> None:
        if system_prompt is not None:
            self._system_prompt = system_prompt
        self.conversation.messages = [Message(role=SYSTEM, content=self._system_prompt)]

    # ------------------------------------------------------------------
    # Append helpers
    # ------------------------------------------------------------------

    def add_user_message(self, content: str) -> Message:
        return self._append(Message(role=USER, content=content))

    def add_assistant_message(self, content: str, usage: dict[str, int] | None = None) -> Message:
        return self._append(Message(role=ASSISTANT, content=content, usage=usage))

    def add_tool_results(self, pairs: list[tuple[str, ToolResult]]) -> Message:
        """Append one user message holding every result of a cycle, in order."""
        return self._append(Message(
            role=USER,
            content=format_tool_results(pairs),
            metadata={"kind": "tool_result", "actions": [action for action, _ in pairs]},
        ))

    def _append(self, message: Message) -> Message:
        self.conversation.messages.append(message)
        return message

    # ------------------------------------------------------------------
    # Views and replacement
    # ------------------------------------------------------------------

    def history(self) -> list[Message]:
        return list(self.conversation.messages)

    def non_system_messages(self) -> list[Message]:
        return [m for m in self.conversation.messages if m.role != SYSTEM]

    def message_count(self) -> int:
        return len(self.conversation.messages)

    def replace(self, messages: list[Message]) -> None:
        """Swap in a whole message list (session load).

        A list without a leading system message gets the current one.
        """
        messages = list(messages)
        if not messages or messages[0].role != SYSTEM:
            messages.insert(0, Message(role=SYSTEM, content=self._system_prompt))
        self.conversation.messages = messages

    def clear_history(self) -> None:
        """Drop everything except the system prompt and forget the summary."""
        self.initialize()
        if self.optimizer is not None:
            self.optimizer.reset()
        logger.info("Cleared history for session %s", self.session_id)

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def optimize(self) -> OptimizationResult:
        if self.optimizer is None:
            return OptimizationResult(optimized=False, messages=self.history())
        result = self.optimizer.optimize(self.conversation.messages)
        if result.optimized:
            self.conversation.messages = list(result.messages)
        return result

    def optimizer_status(self) -> dict[str, Any]:
        if self.optimizer is None:
            return {"enabled": False}
        return self.optimizer.get_stats()

    def snapshot(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self.conversation.messages]
