"""Structured activity log written as JSON lines.

Entries go to <log_dir>/<type>_<YYYY-MM-DD>.log, one file per log type
per day. Types: api (model calls), tools (tool executions), conversation
(request outcomes, including cancellations) and errors.

Writing is best-effort: file I/O runs in a worker thread and any failure
is downgraded to a warning on the module logger. Callers never need to
guard log calls.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LOG_TYPES = ("api", "tools", "conversation", "errors")


class ActivityLog:
    def __init__(self, log_dir: str = "./logs", enabled: bool = True) -> None:
        self._dir = Path(log_dir)
        self._enabled = enabled
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def log_dir(self) -> Path:
        return self._dir

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    async def log_api_call(
        self,
        provider: str,
        model: str | None,
        request: dict[str, Any],
        response: dict[str, Any],
        duration_ms: float,
    ) -> None:
        await self.write("api", {
            "provider": provider,
            "model": model,
            "request": request,
            "response": response,
            "duration_ms": round(duration_ms, 1),
        })

    async def log_tool_execution(
        self,
        tool_name: str,
        parameters: dict[str, Any],
        result: dict[str, Any],
        duration_ms: float,
    ) -> None:
        await self.write("tools", {
            "tool": tool_name,
            "parameters": parameters,
            "result": result,
            "duration_ms": round(duration_ms, 1),
        })

    async def log_conversation(
        self,
        session_id: str,
        user_message: str,
        outcome: dict[str, Any],
        provider: str | None = None,
    ) -> None:
        await self.write("conversation", {
            "session_id": session_id,
            "user_message": user_message,
            "outcome": outcome,
            "provider": provider,
        })

    async def log_error(self, error: BaseException | str, context: dict[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {"error": str(error), "context": context or {}}
        if isinstance(error, BaseException):
            entry["type"] = type(error).__name__
        await self.write("errors", entry)

    async def write(self, log_type: str, data: dict[str, Any]) -> None:
        if not self._enabled:
            return
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), "type": log_type, **data}
        try:
            line = json.dumps(entry, default=str, ensure_ascii=False)
            async with self._lock:
                await asyncio.to_thread(self._append, self._file_for(log_type), line)
        except Exception as e:
            logger.warning("Activity log write failed (%s): %s", log_type, e)

    def _file_for(self, log_type: str) -> Path:
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._dir / f"{log_type}_{day}.log"

    def _append(self, path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    # ------------------------------------------------------------------
    # Readers / maintenance
    # ------------------------------------------------------------------

    def get_log_files(self) -> list[dict[str, Any]]:
        if not self._dir.is_dir():
            return []
        files = []
        for path in sorted(self._dir.glob("*.log")):
            stat = path.stat()
            files.append({
                "name": path.name,
                "size": stat.st_size,
                "modified": datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
            })
        return files

    def read_log_file(self, name: str, lines: int = 100) -> list[dict[str, Any]]:
        """Return the last `lines` entries of a log file.

        Malformed lines are returned as {"raw": line}.
        """
        path = (self._dir / name).resolve()
        if not path.is_relative_to(self._dir.resolve()) or not path.is_file():
            raise FileNotFoundError(f"Log file not found: {name}")
        raw_lines = path.read_text(encoding="utf-8").splitlines()
        entries = []
        for raw in raw_lines[-lines:] if lines > 0 else raw_lines:
            if not raw.strip():
                continue
            try:
                entries.append(json.loads(raw))
            except json.JSONDecodeError:
                entries.append({"raw": raw})
        return entries

    def recent_logs(self, log_type: str, lines: int = 50) -> list[dict[str, Any]]:
        if log_type not in LOG_TYPES:
            raise ValueError(f"Unknown log type: {log_type}")
        path = self._file_for(log_type)
        if not path.is_file():
            return []
        return self.read_log_file(path.name, lines)

    def clear_old_logs(self, days: int = 7) -> int:
        """Delete log files older than `days`. Returns the number removed."""
        if not self._dir.is_dir():
            return 0
        cutoff = time.time() - days * 86400
        removed = 0
        for path in self._dir.glob("*.log"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.warning("Could not remove old log %s: %s", path, e)
        if removed:
            logger.info("Removed %d log file(s) older than %d days", removed, days)
        return removed
