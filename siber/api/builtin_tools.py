"""Built-in file, directory and process tools.

Every path is resolved against the configured working directory and
rejected if it escapes it. Tools return plain dicts; expected failures
(missing file, path outside the workspace, timeout) are reported as
{"success": False, "error": ...}. Unexpected exceptions propagate to
ToolRegistry.execute, which converts them into failed results.
"""

from __future__ import annotations

import asyncio
import difflib
import fnmatch
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from siber.api.tools import ToolRegistry
from siber.config import Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_COMMAND_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_SEARCH_RESULTS = 200
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv"}


def _failure(error: str, **data: Any) -> dict[str, Any]:
    return {"success": False, "error": error, **data}


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Validate that a path is under workspace_dir.

    Raises ValueError if path escapes workspace.
    """
    workspace = Path(workspace_dir).resolve()
    path = Path(path_str)
    target = path.resolve() if path.is_absolute() else (workspace / path).resolve()

    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside the working directory '{workspace}'."
        )
    return target


def _relative(target: Path, workspace_dir: str) -> str:
    rel = target.relative_to(Path(workspace_dir).resolve())
    return str(rel) or "."


def _entry(path: Path) -> dict[str, Any]:
    try:
        stat = path.stat()
    except OSError:
        # Dangling symlink: describe the link itself
        stat = path.lstat()
    return {
        "name": path.name,
        "type": "directory" if path.is_dir() else "file",
        "size": stat.st_size if path.is_file() else None,
        "last_modified": datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Directory tools
# ---------------------------------------------------------------------------


async def list_directory_tool(dir_path: str = ".", *, _workspace_dir: str) -> dict[str, Any]:
    try:
        target = _validate_path(dir_path, _workspace_dir)
    except ValueError as e:
        return _failure(str(e))
    if not target.is_dir():
        return _failure(f"Directory not found: {dir_path}", path=dir_path)

    def _scan() -> list[dict[str, Any]]:
        children = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        return [_entry(child) for child in children]

    entries = await asyncio.to_thread(_scan)
    return {
        "success": True,
        "path": _relative(target, _workspace_dir),
        "entries": entries,
        "count": len(entries),
    }


async def create_directory_tool(dir_path: str, *, _workspace_dir: str) -> dict[str, Any]:
    try:
        target = _validate_path(dir_path, _workspace_dir)
    except ValueError as e:
        return _failure(str(e))
    existed = target.is_dir()
    await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
    return {
        "success": True,
        "path": _relative(target, _workspace_dir),
        "message": "Directory already exists" if existed else "Directory created",
    }


async def delete_directory_tool(dir_path: str, *, _workspace_dir: str) -> dict[str, Any]:
    """Remove a directory and everything under it. The workspace root is refused."""
    try:
        target = _validate_path(dir_path, _workspace_dir)
    except ValueError as e:
        return _failure(str(e))
    if target == Path(_workspace_dir).resolve():
        return _failure("Cannot delete the working directory", path=dir_path)
    if not target.is_dir():
        return _failure(f"Directory not found: {dir_path}", path=dir_path)

    await asyncio.to_thread(shutil.rmtree, target)
    logger.info("Deleted directory %s", target)
    return {
        "success": True,
        "path": _relative(target, _workspace_dir),
        "message": f"Directory deleted: {dir_path}",
    }


async def working_directory_info_tool(*, _workspace_dir: str) -> dict[str, Any]:
    workspace = Path(_workspace_dir).resolve()

    def _count() -> tuple[int, int]:
        files = dirs = 0
        for child in workspace.iterdir():
            if child.is_dir():
                dirs += 1
            else:
                files += 1
        return files, dirs

    files, dirs = await asyncio.to_thread(_count)
    return {
        "success": True,
        "path": str(workspace),
        "file_count": files,
        "directory_count": dirs,
    }


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


async def read_file_tool(file_path: str, *, _workspace_dir: str) -> dict[str, Any]:
    try:
        target = _validate_path(file_path, _workspace_dir)
    except ValueError as e:
        return _failure(str(e))

    if not target.exists():
        return _failure(f"File not found: {file_path}", path=file_path)
    if not target.is_file():
        return _failure(f"Not a file: {file_path}", path=file_path)

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        return _failure(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes)",
            path=file_path,
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    return {
        "success": True,
        "path": _relative(target, _workspace_dir),
        "content": content,
        "size": file_size,
        "extension": target.suffix,
    }


async def write_file_tool(file_path: str, content: str, *, _workspace_dir: str) -> dict[str, Any]:
    try:
        target = _validate_path(file_path, _workspace_dir)
    except ValueError as e:
        return _failure(str(e))

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    return {
        "success": True,
        "path": _relative(target, _workspace_dir),
        "size": len(content.encode("utf-8")),
        "message": "File written successfully",
    }


async def append_to_file_tool(file_path: str, content: str, *, _workspace_dir: str) -> dict[str, Any]:
    try:
        target = _validate_path(file_path, _workspace_dir)
    except ValueError as e:
        return _failure(str(e))

    def _append() -> int:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as fh:
            fh.write(content)
        return target.stat().st_size

    size = await asyncio.to_thread(_append)
    return {
        "success": True,
        "path": _relative(target, _workspace_dir),
        "size": size,
        "message": "Content appended",
    }


async def delete_file_tool(file_path: str, *, _workspace_dir: str) -> dict[str, Any]:
    try:
        target = _validate_path(file_path, _workspace_dir)
    except ValueError as e:
        return _failure(str(e))
    if not target.is_file():
        return _failure(f"File not found: {file_path}", path=file_path)

    await asyncio.to_thread(target.unlink)
    return {
        "success": True,
        "path": _relative(target, _workspace_dir),
        "message": f"File deleted: {file_path}",
    }


def _source_and_destination(
    source_path: str, destination_path: str, workspace_dir: str
) -> tuple[Path, Path] | dict[str, Any]:
    try:
        source = _validate_path(source_path, workspace_dir)
        destination = _validate_path(destination_path, workspace_dir)
    except ValueError as e:
        return _failure(str(e))
    if not source.is_file():
        return _failure(f"File not found: {source_path}", source=source_path)
    if destination.is_dir():
        destination = destination / source.name
    return source, destination


async def copy_file_tool(source_path: str, destination_path: str, *, _workspace_dir: str) -> dict[str, Any]:
    paths = _source_and_destination(source_path, destination_path, _workspace_dir)
    if isinstance(paths, dict):
        return paths
    source, destination = paths

    def _copy() -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)

    await asyncio.to_thread(_copy)
    return {
        "success": True,
        "source": _relative(source, _workspace_dir),
        "destination": _relative(destination, _workspace_dir),
        "message": f"File copied from {source_path} to {destination_path}",
    }


async def move_file_tool(source_path: str, destination_path: str, *, _workspace_dir: str) -> dict[str, Any]:
    paths = _source_and_destination(source_path, destination_path, _workspace_dir)
    if isinstance(paths, dict):
        return paths
    source, destination = paths

    def _move() -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(source, destination)

    await asyncio.to_thread(_move)
    return {
        "success": True,
        "source": _relative(source, _workspace_dir),
        "destination": _relative(destination, _workspace_dir),
        "message": f"File moved from {source_path} to {destination_path}",
    }


async def edit_file_tool(
    file_path: str, edits: list[dict[str, str]] | dict[str, str], *, _workspace_dir: str
) -> dict[str, Any]:
    """Apply text replacements to a file.

    Each edit is {"old_text": ..., "new_text": ...} and replaces every
    occurrence of old_text. Edits apply in order, each one seeing the
    result of the previous. Edits with an empty old_text are skipped.
    The file is only written when at least one replacement happened.
    """
    try:
        target = _validate_path(file_path, _workspace_dir)
    except ValueError as e:
        return _failure(str(e))
    if not target.is_file():
        return _failure(f"File not found: {file_path}", path=file_path)
    if isinstance(edits, dict):
        edits = [edits]

    original = await asyncio.to_thread(target.read_text, encoding="utf-8")
    content = original
    applied = 0
    for edit in edits:
        old_text = edit.get("old_text") or ""
        if not old_text:
            continue
        count = content.count(old_text)
        if count:
            content = content.replace(old_text, edit.get("new_text", ""))
            applied += count

    if not applied:
        return _failure("No matching text found to edit", path=file_path)

    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    rel = _relative(target, _workspace_dir)
    diff = "".join(difflib.unified_diff(
        original.splitlines(keepends=True),
        content.splitlines(keepends=True),
        fromfile=f"a/{rel}",
        tofile=f"b/{rel}",
    ))
    return {
        "success": True,
        "path": rel,
        "edits_applied": applied,
        "diff": diff,
        "message": f"File edited: {file_path} ({applied} changes)",
    }


async def search_files_tool(pattern: str, directory: str = ".", *, _workspace_dir: str) -> dict[str, Any]:
    """Find files whose name matches a glob pattern (case-insensitive)."""
    try:
        root = _validate_path(directory, _workspace_dir)
    except ValueError as e:
        return _failure(str(e))
    if not root.is_dir():
        return _failure(f"Directory not found: {directory}", directory=directory)

    needle = pattern.lower()
    if not any(c in needle for c in "*?["):
        needle = f"*{needle}*"

    def _walk() -> list[str]:
        found: list[str] = []
        for path in root.rglob("*"):
            if any(part in _SKIP_DIRS for part in path.relative_to(root).parts):
                continue
            if path.is_file() and fnmatch.fnmatch(path.name.lower(), needle):
                found.append(_relative(path, _workspace_dir))
                if len(found) >= _MAX_SEARCH_RESULTS:
                    break
        return sorted(found)

    files = await asyncio.to_thread(_walk)
    return {
        "success": True,
        "files": files,
        "count": len(files),
        "pattern": pattern,
        "directory": _relative(root, _workspace_dir),
    }


# ---------------------------------------------------------------------------
# Process tool
# ---------------------------------------------------------------------------


async def execute_command_tool(command: str, timeout: int = 30, *, _workspace_dir: str) -> dict[str, Any]:
    """Run a shell command in the working directory.

    Cancellation of the calling task kills the process.
    """
    effective_timeout = max(1, min(int(timeout), _MAX_COMMAND_TIMEOUT))
    workspace = Path(_workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workspace),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return _failure(f"Command timed out after {effective_timeout}s", command=command)
    except asyncio.CancelledError:
        proc.kill()
        raise

    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")
    if len(stdout_text) > _MAX_OUTPUT_CHARS:
        stdout_text = stdout_text[:_MAX_OUTPUT_CHARS] + "\n... [output truncated at 100KB]"
    if len(stderr_text) > _MAX_OUTPUT_CHARS:
        stderr_text = stderr_text[:_MAX_OUTPUT_CHARS] + "\n... [stderr truncated at 100KB]"

    result: dict[str, Any] = {
        "success": proc.returncode == 0,
        "command": command,
        "stdout": stdout_text,
        "stderr": stderr_text,
        "exit_code": proc.returncode,
    }
    if proc.returncode != 0:
        result["error"] = f"Exit code: {proc.returncode}"
    return result


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: ToolRegistry, settings: Settings) -> None:
    """Register the built-in tools, bound to settings.working_directory."""
    workspace = settings.working_directory
    default_timeout = settings.command_timeout

    async def _list_directory(dir_path: str = ".") -> dict[str, Any]:
        return await list_directory_tool(dir_path, _workspace_dir=workspace)

    async def _create_directory(dir_path: str) -> dict[str, Any]:
        return await create_directory_tool(dir_path, _workspace_dir=workspace)

    async def _delete_directory(dir_path: str) -> dict[str, Any]:
        return await delete_directory_tool(dir_path, _workspace_dir=workspace)

    async def _working_directory_info() -> dict[str, Any]:
        return await working_directory_info_tool(_workspace_dir=workspace)

    async def _read_file(file_path: str) -> dict[str, Any]:
        return await read_file_tool(file_path, _workspace_dir=workspace)

    async def _write_file(file_path: str, content: str) -> dict[str, Any]:
        return await write_file_tool(file_path, content, _workspace_dir=workspace)

    async def _append_to_file(file_path: str, content: str) -> dict[str, Any]:
        return await append_to_file_tool(file_path, content, _workspace_dir=workspace)

    async def _delete_file(file_path: str) -> dict[str, Any]:
        return await delete_file_tool(file_path, _workspace_dir=workspace)

    async def _copy_file(source_path: str, destination_path: str) -> dict[str, Any]:
        return await copy_file_tool(source_path, destination_path, _workspace_dir=workspace)

    async def _move_file(source_path: str, destination_path: str) -> dict[str, Any]:
        return await move_file_tool(source_path, destination_path, _workspace_dir=workspace)

    async def _edit_file(file_path: str, edits: list[dict[str, str]] | dict[str, str]) -> dict[str, Any]:
        return await edit_file_tool(file_path, edits, _workspace_dir=workspace)

    async def _search_files(pattern: str, directory: str = ".") -> dict[str, Any]:
        return await search_files_tool(pattern, directory, _workspace_dir=workspace)

    async def _execute_command(command: str, timeout: int = default_timeout) -> dict[str, Any]:
        return await execute_command_tool(command, timeout, _workspace_dir=workspace)

    registry.register(
        "list_directory", _list_directory, "List files and folders in a directory",
        {"dir_path": "directory path, relative to the working directory (default '.')"},
    )
    registry.register(
        "create_directory", _create_directory, "Create a directory (and parents)",
        {"dir_path": "directory path to create"},
    )
    registry.register(
        "delete_directory", _delete_directory, "Delete a directory and everything in it",
        {"dir_path": "directory path to delete"},
    )
    registry.register(
        "get_working_directory_info", _working_directory_info,
        "Show the working directory and how many files/folders it holds",
    )
    registry.register(
        "read_file", _read_file, "Read a text file",
        {"file_path": "file path to read"},
    )
    registry.register(
        "write_file", _write_file, "Create or overwrite a text file",
        {"file_path": "file path to write", "content": "full file content"},
    )
    registry.register(
        "append_to_file", _append_to_file, "Append text to a file",
        {"file_path": "file path", "content": "text to append"},
    )
    registry.register(
        "delete_file", _delete_file, "Delete a file",
        {"file_path": "file path to delete"},
    )
    registry.register(
        "copy_file", _copy_file, "Copy a file",
        {"source_path": "file to copy", "destination_path": "target file or directory"},
    )
    registry.register(
        "move_file", _move_file, "Move or rename a file",
        {"source_path": "file to move", "destination_path": "target file or directory"},
    )
    registry.register(
        "edit_file", _edit_file, "Replace text inside a file",
        {
            "file_path": "file path to edit",
            "edits": 'list of {"old_text": ..., "new_text": ...}; every occurrence is replaced',
        },
    )
    registry.register(
        "search_files", _search_files, "Find files by name pattern",
        {"pattern": "glob or substring, e.g. '*.py'", "directory": "where to search (default '.')"},
    )
    registry.register(
        "execute_command", _execute_command, "Run a shell command in the working directory",
        {"command": "shell command", "timeout": f"seconds (default {default_timeout}, max 300)"},
    )
