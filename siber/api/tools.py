"""Tool registry: action name -> async handler.

Handlers are async callables that take the tool's parameters as keyword
arguments and return a dict. The dict's "success" key is optional;
anything other than an explicit False counts as success.

execute() never raises for tool problems. Unknown actions and handler
exceptions come back as failed ToolResults so the model can see the
error and correct itself.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from siber.api.models import ToolResult

if TYPE_CHECKING:
    from siber.activity import ActivityLog

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[dict[str, Any]]]


class UnknownToolError(LookupError):
    def __init__(self, action: str, available: list[str]) -> None:
        super().__init__(f"Unknown tool: {action}")
        self.action = action
        self.available = available


class ToolExecutionError(RuntimeError):
    def __init__(self, action: str, cause: BaseException) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.action = action
        self.cause = cause


@dataclass
class ToolSpec:
    name: str
    handler: ToolHandler
    description: str = ""
    parameters: dict[str, str] = field(default_factory=dict)  # name -> description


class ToolRegistry:
    """Registers tool handlers and executes parsed tool calls."""

    def __init__(self, activity: ActivityLog | None = None) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._activity = activity

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        parameters: dict[str, str] | None = None,
    ) -> None:
        if name in self._tools:
            logger.warning("Re-registering tool %s", name)
        self._tools[name] = ToolSpec(name, handler, description, dict(parameters or {}))

    def lookup(self, action: str) -> ToolSpec:
        spec = self._tools.get(action)
        if spec is None:
            raise UnknownToolError(action, self.names())
        return spec

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, action: str) -> bool:
        return action in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, action: str, parameters: dict[str, Any]) -> ToolResult:
        start = time.monotonic()
        try:
            spec = self.lookup(action)
            raw = await self._invoke(spec, parameters)
            result = _normalize(raw)
        except UnknownToolError as e:
            logger.warning("Model requested unknown tool %s", action)
            result = ToolResult(
                success=False,
                error=f"{e}. Available tools: {', '.join(e.available) or '(none)'}",
            )
        except ToolExecutionError as e:
            result = ToolResult(success=False, error=str(e))

        duration_ms = (time.monotonic() - start) * 1000
        if self._activity is not None:
            await self._activity.log_tool_execution(action, parameters, result.to_dict(), duration_ms)
        return result

    async def _invoke(self, spec: ToolSpec, parameters: dict[str, Any]) -> Any:
        try:
            return await spec.handler(**parameters)
        except Exception as e:
            logger.exception("Tool execution error for %s", spec.name)
            raise ToolExecutionError(spec.name, e) from e

    def describe(self) -> str:
        """Render the tool list for the system prompt."""
        lines = []
        for spec in self._tools.values():
            lines.append(f"- {spec.name}: {spec.description}".rstrip(": "))
            for param, desc in spec.parameters.items():
                lines.append(f"    {param}: {desc}")
        return "\n".join(lines)

    def tool_definitions(self) -> list[dict[str, Any]]:
        return [
            {"name": s.name, "description": s.description, "parameters": s.parameters}
            for s in self._tools.values()
        ]


def _normalize(raw: Any) -> ToolResult:
    if not isinstance(raw, dict):
        return ToolResult(success=True, data={"result": raw})
    data = dict(raw)
    success = data.pop("success", True) is not False
    error = data.pop("error", None)
    if error is not None:
        error = str(error)
    return ToolResult(success=success, data=data, error=error)
