"""Request loop and agent runner.

RequestLoop drives one user request through the model/tool cycle:

    AWAITING_MODEL -> PARSING -> (EXECUTING -> AWAITING_MODEL)* -> DONE | FAILED | CANCELLED

Each cycle calls the model with the whole conversation, parses the reply
for tool calls, runs them one at a time in reply order, then appends the
assistant reply followed by a single user message with all results. A
reply without tool calls is the final answer. The loop never raises;
every outcome is a RequestResult.

AgentRunner owns the per-session state (conversation, optimizer, lock)
and guarantees at most one active loop per conversation.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from siber.api.compaction import ContextOptimizer
from siber.api.conversation import ConversationManager, build_system_prompt
from siber.api.models import LoopState, OptimizationResult, RequestResult, ToolResult
from siber.api.parser import ToolCallParseError, parse_tool_calls
from siber.api.tools import ToolRegistry
from siber.cancellation import CancellationRegistry, CancellationToken, OperationCancelled
from siber.config import Settings
from siber.providers.base import ChunkCallback
from siber.providers.manager import ProviderManager

if TYPE_CHECKING:
    from siber.activity import ActivityLog
    from siber.sessions import SessionStore

logger = logging.getLogger(__name__)

MAX_ITERATIONS_ERROR = (
    "Maximum iterations reached. The task might be too complex or require manual intervention."
)

EventCallback = Callable[[str, dict[str, Any]], "None | Awaitable[None]"]


class SessionBusyError(RuntimeError):
    """A second request arrived while the session's loop is still running."""


async def _emit(on_event: EventCallback | None, event: str, data: dict[str, Any]) -> None:
    if on_event is None:
        return
    result = on_event(event, data)
    if inspect.isawaitable(result):
        await result


# ---------------------------------------------------------------------------
# RequestLoop
# ---------------------------------------------------------------------------


class RequestLoop:
    def __init__(
        self,
        providers: ProviderManager,
        tools: ToolRegistry,
        activity: ActivityLog | None = None,
        *,
        max_iterations: int = 15,
        auto_optimize: bool = True,
        stream: bool = False,
        fallback: bool = False,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self._providers = providers
        self._tools = tools
        self._activity = activity
        self.max_iterations = max_iterations
        self.auto_optimize = auto_optimize
        self.stream = stream
        self.fallback = fallback

    async def run(
        self,
        conversation: ConversationManager,
        user_message: str,
        token: CancellationToken,
        *,
        stream: bool | None = None,
        on_chunk: ChunkCallback | None = None,
        on_event: EventCallback | None = None,
        fallback: bool | None = None,
        provider_preferences: list[str] | None = None,
    ) -> RequestResult:
        stream = self.stream if stream is None else stream
        fallback = self.fallback if fallback is None else fallback
        run = _RunState(started=time.monotonic())

        conversation.add_user_message(user_message)
        try:
            while True:
                run.iterations += 1
                if run.iterations > self.max_iterations:
                    logger.warning(
                        "Session %s hit max iterations (%d)", conversation.session_id, self.max_iterations
                    )
                    run.iterations = self.max_iterations
                    return await self._finish(conversation, user_message, run, LoopState.FAILED, error=MAX_ITERATIONS_ERROR)

                # AWAITING_MODEL
                run.state = LoopState.AWAITING_MODEL
                token.raise_if_cancelled()
                if self.auto_optimize:
                    conversation.optimize()

                chat = await token.run(self._providers.chat(
                    conversation.history(),
                    stream=stream,
                    on_chunk=on_chunk,
                    token=token,
                    fallback=fallback,
                    provider_preferences=provider_preferences,
                ))
                run.provider = chat.provider
                if not chat.success:
                    return await self._finish(
                        conversation, user_message, run, LoopState.FAILED,
                        error=chat.error or "Model call failed",
                        details={"provider_errors": chat.provider_errors},
                    )
                if chat.fallback_used:
                    run.fallback_used = True
                    run.original_provider = run.original_provider or chat.original_provider

                # PARSING
                run.state = LoopState.PARSING
                parse_errors: list[ToolCallParseError] = []
                calls = parse_tool_calls(chat.message, on_error=parse_errors.append)
                await self._log_parse_errors(conversation.session_id, parse_errors)
                if not calls:
                    token.raise_if_cancelled()
                    conversation.add_assistant_message(chat.message, chat.usage)
                    return await self._finish(conversation, user_message, run, LoopState.DONE, response=chat.message)

                # EXECUTING
                run.state = LoopState.EXECUTING
                pairs: list[tuple[str, ToolResult]] = []
                cycle_tools: list[dict[str, Any]] = []
                for call in calls:
                    token.raise_if_cancelled()
                    await _emit(on_event, "tool_start", {
                        "action": call.action,
                        "parameters": call.parameters,
                        "message": call.message,
                    })
                    result = await token.run(self._tools.execute(call.action, call.parameters))
                    pairs.append((call.action, result))
                    cycle_tools.append({"name": call.action, "success": result.success})
                    await _emit(on_event, "tool_end", {
                        "action": call.action,
                        "success": result.success,
                        "error": result.error,
                    })

                token.raise_if_cancelled()
                conversation.add_assistant_message(chat.message, chat.usage)
                conversation.add_tool_results(pairs)
                run.tools_used.extend(cycle_tools)

        except OperationCancelled as e:
            logger.info("Request for session %s cancelled (%s)", conversation.session_id, e.reason)
            return await self._finish(conversation, user_message, run, LoopState.CANCELLED, error="Request cancelled")
        except Exception as e:
            logger.exception("Request loop error for session %s", conversation.session_id)
            return await self._finish(conversation, user_message, run, LoopState.FAILED, error=f"Unexpected error: {e}", exc=e)

    async def _log_parse_errors(self, session_id: str, errors: list[ToolCallParseError]) -> None:
        for error in errors:
            logger.info("Session %s: dropped malformed tool call block (%s)", session_id, error)
            if self._activity is not None:
                await self._activity.log_error(error, {
                    "context": "tool_call_parsing",
                    "session_id": session_id,
                    "raw_block": error.raw_block,
                })

    async def _finish(
        self,
        conversation: ConversationManager,
        user_message: str,
        run: _RunState,
        state: LoopState,
        *,
        response: str | None = None,
        error: str | None = None,
        details: dict[str, Any] | None = None,
        exc: BaseException | None = None,
    ) -> RequestResult:
        result = RequestResult(
            success=state is LoopState.DONE,
            state=state,
            response=response,
            error=error,
            iterations=run.iterations,
            tools_used=list(run.tools_used),
            processing_time=time.monotonic() - run.started,
            provider=run.provider,
            fallback_used=run.fallback_used,
            original_provider=run.original_provider,
        )
        if self._activity is not None:
            outcome = {**result.to_dict(), **(details or {})}
            await self._activity.log_conversation(conversation.session_id, user_message, outcome, run.provider)
            if state is LoopState.FAILED:
                await self._activity.log_error(exc or error or "request failed", {
                    "session_id": conversation.session_id,
                    "iterations": run.iterations,
                    **(details or {}),
                })
        return result


@dataclass
class _RunState:
    started: float
    state: LoopState = LoopState.AWAITING_MODEL
    iterations: int = 0
    tools_used: list[dict[str, Any]] = field(default_factory=list)
    provider: str | None = None
    fallback_used: bool = False
    original_provider: str | None = None


# ---------------------------------------------------------------------------
# AgentRunner
# ---------------------------------------------------------------------------


@dataclass
class AgentSession:
    conversation: ConversationManager
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    job_id: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def busy(self) -> bool:
        return self.lock.locked()


class AgentRunner:
    """Runs requests per session on top of a shared RequestLoop."""

    def __init__(
        self,
        settings: Settings,
        providers: ProviderManager,
        tools: ToolRegistry,
        cancellations: CancellationRegistry,
        activity: ActivityLog | None = None,
        store: SessionStore | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self._settings = settings
        self._providers = providers
        self._tools = tools
        self._cancellations = cancellations
        self._activity = activity
        self._store = store
        self._system_prompt = system_prompt or build_system_prompt(
            tools.describe(), settings.working_directory
        )
        self._sessions: OrderedDict[str, AgentSession] = OrderedDict()
        self.loop = RequestLoop(
            providers,
            tools,
            activity,
            max_iterations=settings.max_iterations,
            auto_optimize=settings.context_optimization_enabled,
            stream=settings.stream_mode,
            fallback=settings.enable_fallback,
        )

    @property
    def providers(self) -> ProviderManager:
        return self._providers

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def cancellations(self) -> CancellationRegistry:
        return self._cancellations

    @property
    def activity(self) -> ActivityLog | None:
        return self._activity

    @property
    def store(self) -> SessionStore | None:
        return self._store

    async def start(self) -> None:
        await self._providers.start()

    async def close(self) -> None:
        self._cancellations.cancel_all("shutdown")
        await self._providers.close()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _get_or_create_session(self, session_id: str) -> AgentSession:
        """Get existing or create new session with LRU eviction of idle ones."""
        if session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return self._sessions[session_id]

        while len(self._sessions) >= self._settings.max_sessions:
            idle = next((sid for sid, s in self._sessions.items() if not s.busy), None)
            if idle is None:
                break
            del self._sessions[idle]
            logger.debug("Evicted idle session %s", idle)

        session = AgentSession(conversation=ConversationManager(
            session_id,
            self._system_prompt,
            ContextOptimizer.from_settings(self._settings),
        ))
        self._sessions[session_id] = session
        return session

    def get_session(self, session_id: str) -> AgentSession | None:
        return self._sessions.get(session_id)

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def handle_request(
        self,
        session_id: str,
        message: str,
        *,
        job_id: str | None = None,
        stream: bool | None = None,
        on_chunk: ChunkCallback | None = None,
        on_event: EventCallback | None = None,
        use_fallback: bool | None = None,
        provider_preferences: list[str] | None = None,
    ) -> RequestResult:
        """Run one request. Raises SessionBusyError if one is already running."""
        session = self._get_or_create_session(session_id)
        if session.busy:
            raise SessionBusyError(f"Session {session_id} is already processing a request")

        async with session.lock:
            job_id = job_id or f"{session_id}-{uuid.uuid4().hex[:8]}"
            token = self._cancellations.create(job_id, meta={"session_id": session_id})
            session.job_id = job_id
            try:
                result = await self.loop.run(
                    session.conversation,
                    message,
                    token,
                    stream=stream,
                    on_chunk=on_chunk,
                    on_event=on_event,
                    fallback=use_fallback,
                    provider_preferences=provider_preferences,
                )
            finally:
                self._cancellations.release(job_id, token)
                session.job_id = None
        result.job_id = job_id
        return result

    def stop_job(self, job_id: str) -> bool:
        return self._cancellations.cancel(job_id, "stopped by user")

    def stop_session(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.job_id is None:
            return False
        return self.stop_job(session.job_id)

    def clear_history(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self.stop_session(session_id)
        session.conversation.clear_history()
        return True

    def end_session(self, session_id: str) -> bool:
        self.stop_session(session_id)
        return self._sessions.pop(session_id, None) is not None

    def history(self, session_id: str) -> list[dict[str, Any]]:
        session = self._sessions.get(session_id)
        return session.conversation.snapshot() if session else []

    def optimize(self, session_id: str) -> OptimizationResult:
        session = self._get_or_create_session(session_id)
        if session.busy:
            raise SessionBusyError(f"Session {session_id} is busy; optimize after the request finishes")
        return session.conversation.optimize()

    def session_info(self, session_id: str) -> dict[str, Any] | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        conversation = session.conversation
        return {
            "session_id": session_id,
            "busy": session.busy,
            "job_id": session.job_id,
            "created_at": session.created_at,
            "message_count": conversation.message_count(),
            "provider": self._providers.current,
            "optimizer": conversation.optimizer_status(),
        }

    def status(self) -> dict[str, Any]:
        return {
            "sessions": len(self._sessions),
            "active_jobs": [job.to_dict() for job in self._cancellations.active_jobs()],
            "providers": self._providers.providers_info(),
            "tools": self._tools.names(),
            "max_iterations": self.loop.max_iterations,
            "fallback": self.loop.fallback,
            "stream": self.loop.stream,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_session(self, session_id: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._store is None:
            raise RuntimeError("No session store configured")
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"No active session: {session_id}")
        return await self._store.save(
            session_id,
            session.conversation.history(),
            provider=self._providers.current,
            metadata={**(metadata or {}), "optimizer": session.conversation.optimizer_status()},
        )

    async def load_session(self, session_id: str) -> dict[str, Any]:
        """Replace the session's conversation with the stored one."""
        if self._store is None:
            raise RuntimeError("No session store configured")
        data = await self._store.load(session_id)
        session = self._get_or_create_session(session_id)
        if session.busy:
            raise SessionBusyError(f"Session {session_id} is busy; cannot load")
        session.conversation.replace(data["conversation"])
        if session.conversation.optimizer is not None:
            session.conversation.optimizer.reset()
        logger.info("Loaded session %s (%d messages)", session_id, session.conversation.message_count())
        return data
