"""siber agent entry point.

Initializes all components and starts the server:
  Settings -> ActivityLog -> Providers -> Tools -> CancellationRegistry -> Runner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from siber.activity import ActivityLog
from siber.api.builtin_tools import register_builtin_tools
from siber.api.rest import create_app
from siber.api.runner import AgentRunner
from siber.api.tools import ToolRegistry
from siber.api.web_tools import register_web_tools
from siber.cancellation import CancellationRegistry
from siber.config import Settings
from siber.providers.manager import create_provider_manager
from siber.sessions import SessionStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order."""
    activity = ActivityLog(settings.log_dir, enabled=settings.logging_enabled)
    if settings.log_retention_days > 0:
        removed = activity.clear_old_logs(settings.log_retention_days)
        if removed:
            logger.info("Removed %d activity log file(s) older than %d days", removed, settings.log_retention_days)
    providers = create_provider_manager(settings, activity)

    tools = ToolRegistry(activity)
    register_builtin_tools(tools, settings)

    # Web tools httpx client (separate from providers -- no API auth headers)
    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )
    register_web_tools(tools, settings, web_http)

    runner = AgentRunner(
        settings,
        providers,
        tools,
        CancellationRegistry(),
        activity=activity,
        store=SessionStore(settings.sessions_dir),
    )
    await runner.start()

    return {
        "activity": activity,
        "providers": providers,
        "tools": tools,
        "web_http": web_http,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down siber...")

    runner = components.get("runner")
    if runner:
        await runner.close()

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    logger.info("siber shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components live for the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components

        runner = components["runner"]
        logger.info(
            "siber started: providers=%s current=%s tools=%d",
            runner.providers.available(),
            runner.providers.current,
            len(runner.tools),
        )
        logger.info(
            "Loop: max_iterations=%d, fallback=%s, stream=%s, working_directory=%s",
            settings.max_iterations,
            settings.enable_fallback,
            settings.stream_mode,
            settings.working_directory,
        )
        yield
        await shutdown_components(components)

    return create_app(
        runner=_LazyProxy(components, "runner"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive the runner before lifespan has
    initialized it.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    app = build_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
