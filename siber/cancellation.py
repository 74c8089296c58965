"""Cancellation registry: job id -> abortable token.

One registry is constructed per server (see main.create_components) and
injected into the runner and the REST layer. All registry methods are
synchronous, so each one runs atomically on the event loop; a "stop"
request racing with natural completion cannot interleave inside them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when work guarded by a fired CancellationToken is aborted."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class CancellationToken:
    """A one-shot cancellation signal backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await awaitable, aborting it as soon as the token fires.

        The in-flight task is cancelled (closing any stream it holds) and
        OperationCancelled is raised without waiting for it to finish. A
        result that lands after the token fired is discarded.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done() and not self._event.is_set():
            waiter.cancel()
            return task.result()

        waiter.cancel()
        task.cancel()
        task.add_done_callback(_consume_result)
        raise OperationCancelled(self.reason or "cancelled")


def _consume_result(task: asyncio.Future) -> None:
    # Abandoned tasks may finish with an error after cancel(); retrieve it
    # so asyncio does not report it as never retrieved.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Cancelled operation finished with: %r", task.exception())


@dataclass
class Job:
    """One in-flight request cycle."""

    job_id: str
    token: CancellationToken
    started_at: float = field(default_factory=time.time)
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "started_at": self.started_at,
            "running_for": round(time.time() - self.started_at, 3),
            "meta": self.meta,
        }


class CancellationRegistry:
    """Maps job ids to their cancellation tokens."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def create(self, job_id: str, meta: dict[str, Any] | None = None) -> CancellationToken:
        """Register a fresh token for job_id, cancelling any previous one."""
        existing = self._jobs.pop(job_id, None)
        if existing is not None:
            logger.info("Replacing active job %s; cancelling previous token", job_id)
            existing.token.cancel("superseded")

        token = CancellationToken()
        self._jobs[job_id] = Job(job_id=job_id, token=token, meta=dict(meta or {}))
        return token

    def cancel(self, job_id: str, reason: str = "cancelled") -> bool:
        """Fire and remove the token for job_id. False if there was none."""
        job = self._jobs.pop(job_id, None)
        if job is None:
            return False
        job.token.cancel(reason)
        logger.info("Cancelled job %s (%s)", job_id, reason)
        return True

    def cancel_all(self, reason: str = "shutdown") -> int:
        jobs = list(self._jobs.values())
        self._jobs.clear()
        for job in jobs:
            job.token.cancel(reason)
        if jobs:
            logger.info("Cancelled %d active job(s) (%s)", len(jobs), reason)
        return len(jobs)

    def release(self, job_id: str, token: CancellationToken) -> bool:
        """Drop the entry for a finished job without firing it.

        Only removes the entry if it still holds this token, so a newer job
        registered under the same id is left alone.
        """
        job = self._jobs.get(job_id)
        if job is None or job.token is not token:
            return False
        del self._jobs[job_id]
        return True

    def has(self, job_id: str) -> bool:
        return job_id in self._jobs

    def get_token(self, job_id: str) -> CancellationToken | None:
        job = self._jobs.get(job_id)
        return job.token if job else None

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def active_jobs(self) -> list[Job]:
        return list(self._jobs.values())
