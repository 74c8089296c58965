"""Tests for the JSON-lines activity log."""

import os
import time

import pytest

from siber.activity import ActivityLog


class TestWriters:
    @pytest.mark.asyncio
    async def test_one_file_per_type(self, tmp_path):
        log = ActivityLog(str(tmp_path))
        await log.log_api_call("anthropic", "m", {"messages": 2}, {"success": True}, 12.345)
        await log.log_tool_execution("read_file", {"file_path": "a"}, {"success": True}, 1.0)
        await log.log_conversation("s1", "hi", {"state": "done"}, "anthropic")
        await log.log_error(ValueError("bad"), {"session_id": "s1"})

        names = sorted(f["name"].split("_")[0] for f in log.get_log_files())
        assert names == ["api", "conversation", "errors", "tools"]

        [api] = log.recent_logs("api")
        assert api["type"] == "api"
        assert api["duration_ms"] == 12.3
        assert "timestamp" in api

        [error] = log.recent_logs("errors")
        assert error["error"] == "bad"
        assert error["type"] == "ValueError"

    @pytest.mark.asyncio
    async def test_disabled_writes_nothing(self, tmp_path):
        log = ActivityLog(str(tmp_path / "logs"), enabled=False)
        await log.log_conversation("s1", "hi", {})
        assert not (tmp_path / "logs").exists()

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        log = ActivityLog(str(blocker))
        await log.write("api", {"x": 1})


class TestReaders:
    @pytest.mark.asyncio
    async def test_read_tail_and_malformed_lines(self, tmp_path):
        log = ActivityLog(str(tmp_path))
        for i in range(5):
            await log.write("tools", {"i": i})
        [name] = [f["name"] for f in log.get_log_files()]
        with open(tmp_path / name, "a", encoding="utf-8") as fh:
            fh.write("not json\n")

        entries = log.read_log_file(name, lines=3)
        assert [e.get("i") for e in entries] == [3, 4, None]
        assert entries[-1] == {"raw": "not json"}

    def test_read_outside_dir_rejected(self, tmp_path):
        (tmp_path / "secret.log").write_text("{}")
        log = ActivityLog(str(tmp_path / "logs"))
        with pytest.raises(FileNotFoundError):
            log.read_log_file("../secret.log")

    def test_unknown_type(self, tmp_path):
        with pytest.raises(ValueError):
            ActivityLog(str(tmp_path)).recent_logs("everything")

    def test_recent_logs_empty(self, tmp_path):
        assert ActivityLog(str(tmp_path)).recent_logs("api") == []

    def test_clear_old_logs(self, tmp_path):
        old = tmp_path / "api_2020-01-01.log"
        new = tmp_path / "api_2099-01-01.log"
        old.write_text("{}\n")
        new.write_text("{}\n")
        stale = time.time() - 30 * 86400
        os.utime(old, (stale, stale))

        assert ActivityLog(str(tmp_path)).clear_old_logs(days=7) == 1
        assert not old.exists()
        assert new.exists()
