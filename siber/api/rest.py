"""REST API for the siber agent.

Endpoints:
  POST   /chat                        - Send message, get the result envelope
  POST   /chat/stream                 - Same, streamed as SSE (chunk/tool/done events)
  POST   /chat/{session_id}/stop      - Cancel the session's running request
  DELETE /chat/{session_id}           - End a session (cancels its request)
  POST   /chat/{session_id}/clear     - Clear history, keep the session
  GET    /chat/{session_id}/history   - Current message list
  POST   /chat/{session_id}/optimize  - Run the context optimizer now
  GET    /chat/{session_id}/info      - Session + optimizer status
  POST   /chat/{session_id}/save      - Persist the session to disk
  GET    /sessions                    - Saved sessions, newest first
  POST   /sessions/{session_id}/load  - Load a saved session
  DELETE /sessions/{session_id}       - Delete a saved session
  GET    /tools                       - Registered tools
  GET    /providers                   - Providers + current
  PUT    /providers/current           - Switch the current provider
  GET    /logs                        - Activity log files
  GET    /logs/{log_type}             - Today's entries for one log type
  GET    /status                      - Runner status
  GET    /health                      - Health check
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from siber.api.runner import AgentRunner, SessionBusyError
from siber.config import Settings
from siber.sessions import SessionNotFoundError

logger = logging.getLogger(__name__)

_DONE = object()


async def _read_json(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


def create_app(
    runner: AgentRunner,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def _chat_options(body: dict[str, Any]) -> dict[str, Any]:
        preferences = body.get("provider_preferences")
        return {
            "use_fallback": body.get("fallback"),
            "provider_preferences": preferences if isinstance(preferences, list) else None,
        }

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get a response."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        message = body.get("message")
        if not message:
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        session_id = body.get("session_id") or str(uuid.uuid4())
        try:
            result = await runner.handle_request(
                session_id,
                message,
                job_id=body.get("job_id"),
                stream=False,
                **_chat_options(body),
            )
        except SessionBusyError as e:
            return JSONResponse({"error": str(e), "session_id": session_id}, status_code=409)
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({**result.to_dict(), "session_id": session_id})

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE streaming chat."""
        body = await _read_json(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        message = body.get("message")
        if not message:
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        session_id = body.get("session_id") or str(uuid.uuid4())
        session = runner.get_session(session_id)
        if session is not None and session.busy:
            return JSONResponse(
                {"error": f"Session {session_id} is already processing a request", "session_id": session_id},
                status_code=409,
            )
        job_id = body.get("job_id") or f"{session_id}-{uuid.uuid4().hex[:8]}"
        options = _chat_options(body)

        async def event_generator():
            queue: asyncio.Queue = asyncio.Queue()

            def on_chunk(text: str) -> None:
                queue.put_nowait({"type": "chunk", "text": text})

            def on_event(event: str, data: dict[str, Any]) -> None:
                queue.put_nowait({"type": event, **data})

            async def run() -> None:
                try:
                    result = await runner.handle_request(
                        session_id, message, job_id=job_id, stream=True,
                        on_chunk=on_chunk, on_event=on_event, **options,
                    )
                    queue.put_nowait({"type": "done", "session_id": session_id, **result.to_dict()})
                except SessionBusyError as e:
                    queue.put_nowait({"type": "error", "text": str(e)})
                except Exception as e:
                    logger.error("Stream error: %s", e)
                    queue.put_nowait({"type": "error", "text": str(e)})
                finally:
                    queue.put_nowait(_DONE)

            task = asyncio.create_task(run())
            try:
                yield _sse({"type": "start", "session_id": session_id, "job_id": job_id})
                while True:
                    event = await queue.get()
                    if event is _DONE:
                        break
                    yield _sse(event)
            finally:
                if not task.done():
                    # Client went away mid-request
                    runner.stop_job(job_id)
                    await asyncio.gather(task, return_exceptions=True)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def stop_chat(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/stop - Cancel the running request."""
        session_id = request.path_params["session_id"]
        body = await _read_json(request) or {}
        job_id = body.get("job_id")
        stopped = runner.stop_job(job_id) if job_id else runner.stop_session(session_id)
        return JSONResponse({"stopped": stopped, "session_id": session_id})

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - End a conversation."""
        session_id = request.path_params["session_id"]
        ended = runner.end_session(session_id)
        return JSONResponse({"status": "ended" if ended else "not_found", "session_id": session_id})

    async def clear_chat(request: Request) -> JSONResponse:
        session_id = request.path_params["session_id"]
        if not runner.clear_history(session_id):
            return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)
        return JSONResponse({"status": "cleared", "session_id": session_id})

    async def history(request: Request) -> JSONResponse:
        session_id = request.path_params["session_id"]
        if runner.get_session(session_id) is None:
            return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)
        return JSONResponse({"session_id": session_id, "messages": runner.history(session_id)})

    async def optimize(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/optimize - Run both optimizer passes now."""
        session_id = request.path_params["session_id"]
        if runner.get_session(session_id) is None:
            return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)
        try:
            result = runner.optimize(session_id)
        except SessionBusyError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return JSONResponse({
            "session_id": session_id,
            "optimized": result.optimized,
            "removed": result.removed,
            "summary_changed": result.summary_changed,
            "message_count": len(result.messages),
            "processing_time_ms": round(result.processing_time_ms, 2),
            "stats": runner.session_info(session_id)["optimizer"],
        })

    async def session_info(request: Request) -> JSONResponse:
        session_id = request.path_params["session_id"]
        info = runner.session_info(session_id)
        if info is None:
            return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)
        return JSONResponse(info)

    async def save_session(request: Request) -> JSONResponse:
        session_id = request.path_params["session_id"]
        try:
            data = await runner.save_session(session_id)
        except KeyError:
            return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)
        except Exception as e:
            logger.error("Save session error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({k: v for k, v in data.items() if k != "conversation"})

    async def list_sessions(request: Request) -> JSONResponse:
        if runner.store is None:
            return JSONResponse({"sessions": []})
        return JSONResponse({"sessions": await runner.store.list_sessions()})

    async def load_session(request: Request) -> JSONResponse:
        session_id = request.path_params["session_id"]
        try:
            data = await runner.load_session(session_id)
        except SessionNotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except SessionBusyError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse({
            "session_id": session_id,
            "title": data.get("title"),
            "message_count": len(data["conversation"]),
        })

    async def delete_session(request: Request) -> JSONResponse:
        session_id = request.path_params["session_id"]
        if runner.store is None:
            return JSONResponse({"error": "No session store configured"}, status_code=404)
        try:
            deleted = await runner.store.delete(session_id)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        if not deleted:
            return JSONResponse({"error": f"Session not found: {session_id}"}, status_code=404)
        return JSONResponse({"status": "deleted", "session_id": session_id})

    async def list_tools(request: Request) -> JSONResponse:
        return JSONResponse({"tools": runner.tools.tool_definitions()})

    async def list_providers(request: Request) -> JSONResponse:
        return JSONResponse({
            "current": runner.providers.current,
            "providers": runner.providers.providers_info(),
        })

    async def set_provider(request: Request) -> JSONResponse:
        body = await _read_json(request)
        name = (body or {}).get("provider")
        if not name:
            return JSONResponse({"error": "Missing required field: provider"}, status_code=400)
        try:
            runner.providers.set_current(name)
        except KeyError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return JSONResponse({"current": runner.providers.current})

    async def test_providers(request: Request) -> JSONResponse:
        return JSONResponse({"results": await runner.providers.test_providers()})

    async def list_logs(request: Request) -> JSONResponse:
        activity = runner.activity
        return JSONResponse({"files": activity.get_log_files() if activity else []})

    async def read_logs(request: Request) -> JSONResponse:
        activity = runner.activity
        if activity is None:
            return JSONResponse({"entries": []})
        try:
            lines = int(request.query_params.get("lines", "50"))
            entries = activity.recent_logs(request.path_params["log_type"], lines)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse({"entries": entries})

    async def status(request: Request) -> JSONResponse:
        """GET /status - Runner status overview."""
        return JSONResponse({
            **runner.status(),
            "working_directory": settings.working_directory,
            "context_optimization": settings.context_optimization_enabled,
        })

    async def health(request: Request) -> JSONResponse:
        providers = runner.providers.available()
        return JSONResponse(
            {"status": "healthy" if providers else "degraded", "providers": providers},
            status_code=200,
        )

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{session_id}/stop", stop_chat, methods=["POST"]),
        Route("/chat/{session_id}/clear", clear_chat, methods=["POST"]),
        Route("/chat/{session_id}/history", history),
        Route("/chat/{session_id}/optimize", optimize, methods=["POST"]),
        Route("/chat/{session_id}/info", session_info),
        Route("/chat/{session_id}/save", save_session, methods=["POST"]),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/sessions", list_sessions),
        Route("/sessions/{session_id}/load", load_session, methods=["POST"]),
        Route("/sessions/{session_id}", delete_session, methods=["DELETE"]),
        Route("/tools", list_tools),
        Route("/providers", list_providers),
        Route("/providers/current", set_provider, methods=["PUT"]),
        Route("/providers/test", test_providers, methods=["POST"]),
        Route("/logs", list_logs),
        Route("/logs/{log_type}", read_logs),
        Route("/status", status),
        Route("/health", health),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
