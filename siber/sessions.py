"""JSON-file session persistence.

Each session is one file, <sessions_dir>/<session_id>.json, holding the
full message list plus enough metadata to list sessions without loading
their conversations.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from siber.api.models import ASSISTANT, USER, Message, is_summary_message, is_tool_result_message

logger = logging.getLogger(__name__)

_TITLE_MAX_CHARS = 80
_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class SessionNotFoundError(LookupError):
    pass


def derive_title(messages: list[Message]) -> str:
    """First real user message, cut to 80 characters."""
    for m in messages:
        if m.role == USER and not is_tool_result_message(m) and not is_summary_message(m):
            text = " ".join(m.content.split())
            return text if len(text) <= _TITLE_MAX_CHARS else text[: _TITLE_MAX_CHARS - 3] + "..."
    return "Untitled session"


def _last(messages: list[Message], role: str) -> str | None:
    for m in reversed(messages):
        if m.role == role and not is_tool_result_message(m):
            return m.content
    return None


class SessionStore:
    def __init__(self, sessions_dir: str = "./sessions") -> None:
        self._dir = Path(sessions_dir)

    def _path(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id) or session_id.startswith("."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self._dir / f"{session_id}.json"

    async def save(
        self,
        session_id: str,
        messages: list[Message],
        provider: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        path = self._path(session_id)
        now = datetime.now(timezone.utc).isoformat()
        created_at = now
        if path.exists():
            try:
                existing = await asyncio.to_thread(self._read, path)
                created_at = existing.get("created_at", now)
            except (OSError, ValueError):
                logger.warning("Overwriting unreadable session file %s", path)

        data = {
            "session_id": session_id,
            "title": derive_title(messages),
            "created_at": created_at,
            "updated_at": now,
            "provider": provider,
            "message_count": len(messages),
            "last_user_message": _last(messages, USER),
            "last_assistant_message": _last(messages, ASSISTANT),
            "conversation": [m.to_dict() for m in messages],
            "metadata": metadata or {},
        }
        await asyncio.to_thread(self._write, path, data)
        logger.info("Saved session %s (%d messages)", session_id, len(messages))
        return data

    async def load(self, session_id: str) -> dict[str, Any]:
        """Return the stored record with "conversation" as Message objects."""
        if not self.exists(session_id):
            raise SessionNotFoundError(f"Session not found: {session_id}")
        data = await asyncio.to_thread(self._read, self._path(session_id))
        data["conversation"] = [Message.from_dict(m) for m in data.get("conversation", [])]
        return data

    async def list_sessions(self) -> list[dict[str, Any]]:
        """Session summaries, most recently updated first."""
        return await asyncio.to_thread(self._list)

    async def delete(self, session_id: str) -> bool:
        if not self.exists(session_id):
            return False
        await asyncio.to_thread(self._path(session_id).unlink)
        logger.info("Deleted session %s", session_id)
        return True

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).is_file()

    def _list(self) -> list[dict[str, Any]]:
        if not self._dir.is_dir():
            return []
        sessions = []
        for path in self._dir.glob("*.json"):
            try:
                data = self._read(path)
            except (OSError, ValueError) as e:
                sessions.append({"session_id": path.stem, "error": f"Unreadable session file: {e}", "updated_at": ""})
                continue
            sessions.append({
                "session_id": data.get("session_id", path.stem),
                "title": data.get("title"),
                "created_at": data.get("created_at"),
                "updated_at": data.get("updated_at", ""),
                "provider": data.get("provider"),
                "message_count": data.get("message_count", 0),
            })
        sessions.sort(key=lambda s: s.get("updated_at") or "", reverse=True)
        return sessions

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        return json.loads(path.read_text(encoding="utf-8"))

    @staticmethod
    def _write(path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        tmp.replace(path)
