"""Local workspace tools offered to worker sessions and daemon runs.

Every path is resolved against the workspace root (MEMINI_WORKSPACE_ROOT,
default: the current directory) and may not escape it. Results are JSON
strings; bad arguments and filesystem failures raise ProtocolError, which the
tool loop turns into an {"error": ...} payload.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections import deque
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from memini.utils.error_handler import ProtocolError

LOGGER = logging.getLogger(__name__)

LIST_FILES_TOOL = "workspace_list_files"
READ_FILE_TOOL = "workspace_read_file"
WRITE_FILE_TOOL = "workspace_write_file"
RUN_COMMAND_TOOL = "workspace_run_command"
WORKSPACE_TOOL_NAMES = (LIST_FILES_TOOL, READ_FILE_TOOL, WRITE_FILE_TOOL, RUN_COMMAND_TOOL)

# Recipe `tools` entry that selects all four tools at once
WORKSPACE_SELECTOR = "workspace"

MAX_LIST_ENTRIES = 1000
MAX_READ_CHARS = 50_000
DEFAULT_COMMAND_TIMEOUT_SECS = 60
MAX_COMMAND_TIMEOUT_SECS = 300
MAX_OUTPUT_CHARS = 12_000


def _schema(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    parameters: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


WORKSPACE_SCHEMAS: Dict[str, Dict[str, Any]] = {
    LIST_FILES_TOOL: _schema(
        LIST_FILES_TOOL,
        "List files and directories under the local workspace root. Use this before reading or writing files.",
        {
            "path": {"type": "string", "description": "Relative path inside the workspace. Defaults to '.'."},
            "recursive": {"type": "boolean", "description": "When true, traverse subdirectories recursively."},
            "max_entries": {
                "type": "integer",
                "description": f"Max number of entries to return (default 200, max {MAX_LIST_ENTRIES}).",
            },
        },
        [],
    ),
    READ_FILE_TOOL: _schema(
        READ_FILE_TOOL,
        "Read a UTF-8 text file from the local workspace.",
        {
            "path": {"type": "string", "description": "Relative path to the file inside the workspace."},
            "max_chars": {
                "type": "integer",
                "description": f"Maximum characters to return (default 20000, max {MAX_READ_CHARS}).",
            },
        },
        ["path"],
    ),
    WRITE_FILE_TOOL: _schema(
        WRITE_FILE_TOOL,
        "Create or overwrite a text file in the local workspace.",
        {
            "path": {"type": "string", "description": "Relative path to write."},
            "content": {"type": "string", "description": "Complete file content to write."},
            "overwrite": {"type": "boolean", "description": "When false, fail if the file already exists."},
            "create_parents": {"type": "boolean", "description": "When true, create missing parent directories."},
        },
        ["path", "content"],
    ),
    RUN_COMMAND_TOOL: _schema(
        RUN_COMMAND_TOOL,
        "Run a shell command in the local workspace and return exit code, stdout and stderr.",
        {
            "command": {"type": "string", "description": "Shell command to run."},
            "workdir": {"type": "string", "description": "Optional relative working directory inside the workspace."},
            "timeout_seconds": {
                "type": "integer",
                "description": f"Timeout in seconds (default {DEFAULT_COMMAND_TIMEOUT_SECS}, max {MAX_COMMAND_TIMEOUT_SECS}).",
            },
        },
        ["command"],
    ),
}


def _clamp(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value) if value is not None else default
    except (TypeError, ValueError):
        number = default
    return max(low, min(high, number))


def _trim(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n...[truncated]"


def _required_str(arguments: Dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(f"{key} is required")
    return value


class WorkspaceTools:
    """The enabled subset of workspace tools, bound to one root directory."""

    def __init__(self, root: Optional[Path] = None, names: Iterable[str] = WORKSPACE_TOOL_NAMES):
        self.root = Path(os.path.abspath(Path(root) if root is not None else Path.cwd()))
        wanted = set(names)
        self.names = tuple(name for name in WORKSPACE_TOOL_NAMES if name in wanted)

    def filtered(self, selectors: Iterable[str]) -> "WorkspaceTools":
        """Keep tools named in selectors; 'workspace' or an empty list keeps all."""
        selectors = {s.strip() for s in selectors if s and s.strip()}
        if not selectors or WORKSPACE_SELECTOR in selectors:
            return self
        return WorkspaceTools(self.root, [name for name in self.names if name in selectors])

    def schemas(self) -> List[Dict[str, Any]]:
        return [WORKSPACE_SCHEMAS[name] for name in self.names]

    def has(self, name: str) -> bool:
        return name in self.names

    def __len__(self) -> int:
        return len(self.names)

    # ========== Paths ==========

    def resolve_path(self, raw: Optional[str]) -> Path:
        """Normalize raw against the root.

        Raises:
            ProtocolError: the normalized path lies outside the root
        """
        raw = (raw or "").strip()
        if not raw:
            return self.root
        candidate = Path(raw)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        target = Path(os.path.normpath(candidate))
        if not target.is_relative_to(self.root):
            raise ProtocolError(f"Path escapes workspace root: {raw}")
        return target

    def relative(self, path: Path) -> str:
        relative = path.relative_to(self.root)
        return relative.as_posix() if relative.parts else "."

    # ========== Dispatch ==========

    async def call(self, name: str, arguments: Dict[str, Any]) -> str:
        if not self.has(name):
            raise ProtocolError(f"Tool not available: {name}")
        try:
            if name == LIST_FILES_TOOL:
                payload = self.list_files(arguments)
            elif name == READ_FILE_TOOL:
                payload = self.read_file(arguments)
            elif name == WRITE_FILE_TOOL:
                payload = self.write_file(arguments)
            else:
                payload = await self.run_command(arguments)
        except OSError as e:
            raise ProtocolError(f"{name} failed: {e}") from e
        return json.dumps(payload, ensure_ascii=False)

    # ========== Tools ==========

    def list_files(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        target = self.resolve_path(arguments.get("path") or ".")
        recursive = bool(arguments.get("recursive", False))
        max_entries = _clamp(arguments.get("max_entries"), 200, 1, MAX_LIST_ENTRIES)
        if not target.exists():
            raise ProtocolError(f"Path does not exist: {self.relative(target)}")
        if not target.is_dir():
            raise ProtocolError(f"Path is not a directory: {self.relative(target)}")

        entries: List[Dict[str, Any]] = []
        truncated = False
        queue = deque([target])
        while queue and not truncated:
            current = queue.popleft()
            for child in sorted(current.iterdir()):
                if len(entries) >= max_entries:
                    truncated = True
                    break
                entries.append(self._entry(child))
                if recursive and child.is_dir() and not child.is_symlink():
                    queue.append(child)

        return {
            "workspace_root": str(self.root),
            "path": self.relative(target),
            "entries": entries,
            "truncated": truncated,
        }

    def _entry(self, path: Path) -> Dict[str, Any]:
        stat = path.lstat()
        if path.is_symlink():
            kind = "symlink"
        elif path.is_dir():
            kind = "dir"
        elif path.is_file():
            kind = "file"
        else:
            kind = "other"
        return {"path": self.relative(path), "kind": kind, "size_bytes": stat.st_size}

    def read_file(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        path = self.resolve_path(_required_str(arguments, "path"))
        max_chars = _clamp(arguments.get("max_chars"), 20_000, 100, MAX_READ_CHARS)
        if not path.exists():
            raise ProtocolError(f"File does not exist: {self.relative(path)}")
        if path.is_dir():
            raise ProtocolError(f"Path is a directory: {self.relative(path)}")

        data = path.read_bytes()
        text = data.decode("utf-8", errors="replace")
        return {
            "path": self.relative(path),
            "size_bytes": len(data),
            "truncated": len(text) > max_chars,
            "content": _trim(text, max_chars),
        }

    def write_file(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        path = self.resolve_path(_required_str(arguments, "path"))
        content = arguments.get("content")
        if not isinstance(content, str):
            raise ProtocolError("content is required")
        overwrite = bool(arguments.get("overwrite", True))
        create_parents = bool(arguments.get("create_parents", True))

        if path.is_dir():
            raise ProtocolError(f"Path is a directory: {self.relative(path)}")
        if path.exists() and not overwrite:
            raise ProtocolError(f"Refusing to overwrite existing file: {self.relative(path)}")
        if create_parents:
            path.parent.mkdir(parents=True, exist_ok=True)
        elif not path.parent.is_dir():
            raise ProtocolError(f"Parent directory does not exist: {self.relative(path.parent)}")

        path.write_text(content, encoding="utf-8")
        LOGGER.info(f"Wrote workspace file {self.relative(path)} ({len(content)} chars)")
        return {"path": self.relative(path), "bytes_written": len(content.encode("utf-8")), "status": "ok"}

    async def run_command(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Run `sh -lc <command>`; a timeout kills the process group and is reported, not raised."""
        command = _required_str(arguments, "command").strip()
        timeout_secs = _clamp(
            arguments.get("timeout_seconds"), DEFAULT_COMMAND_TIMEOUT_SECS, 1, MAX_COMMAND_TIMEOUT_SECS
        )
        workdir = self.resolve_path(arguments.get("workdir") or ".")
        if not workdir.is_dir():
            raise ProtocolError(f"Working directory does not exist: {self.relative(workdir)}")

        LOGGER.info(f"Running workspace command in {self.relative(workdir)}: {command}")
        process = await asyncio.create_subprocess_exec(
            "sh", "-lc", command,
            cwd=str(workdir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_secs)
        except asyncio.TimeoutError:
            await _kill(process)
            LOGGER.warning(f"Workspace command timed out after {timeout_secs}s: {command}")
            return {
                "command": command,
                "workdir": self.relative(workdir),
                "timed_out": True,
                "timeout_seconds": timeout_secs,
                "exit_code": None,
                "stdout": "",
                "stderr": "Command timed out.",
            }
        except asyncio.CancelledError:
            await _kill(process)
            raise

        return {
            "command": command,
            "workdir": self.relative(workdir),
            "timed_out": False,
            "exit_code": process.returncode,
            "success": process.returncode == 0,
            "stdout": _trim(stdout.decode("utf-8", errors="replace"), MAX_OUTPUT_CHARS),
            "stderr": _trim(stderr.decode("utf-8", errors="replace"), MAX_OUTPUT_CHARS),
        }


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    await process.wait()
