# tools.py
# Local tool registry: file operations, shell commands and the completion marker.
# The dispatcher resolves names here and never calls these functions directly.

import asyncio
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

import structlog
from pydantic import BaseModel

from taskpilot.errors import ToolExecutionError
from taskpilot.models import Mode, ToolResult

logger = structlog.get_logger(__name__)

COMPLETION_TOOL = "attempt_completion"
MUTATING_TOOLS = frozenset({"write_to_file", "replace_in_file", "execute_command"})

RISKY_COMMAND_PATTERNS = [
    re.compile(pattern, flags)
    for pattern, flags in [
        (r"rm\s+-rf", 0),
        (r"sudo\s+rm", 0),
        (r"del\s+/[sq]", re.IGNORECASE),
        (r"format\s+[a-z]:", re.IGNORECASE),
        (r"shutdown", re.IGNORECASE),
        (r"reboot", re.IGNORECASE),
        (r"\bhalt\b", re.IGNORECASE),
        (r"poweroff", re.IGNORECASE),
        (r"init\s+[06]\b", 0),
        (r"systemctl\s+(poweroff|reboot|halt)", 0),
        (r"dd\s+if=", 0),
        (r"mkfs", 0),
        (r"fdisk", 0),
        (r"parted", 0),
        (r"crontab\s+-r", 0),
        (r">\s*/dev/(sda|hda)", 0),
        (r"chmod\s+777\s+/", 0),
        (r"chown\s+.*\s+/", 0),
    ]
]


class ToolContext(BaseModel):
    """Per-task execution context shared by every local tool."""

    task_id: str
    working_directory: str
    mode: Mode = "act"
    command_timeout: float = 30.0


def is_risky_command(command: str) -> bool:
    return any(pattern.search(command) for pattern in RISKY_COMMAND_PATTERNS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require(args: dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolExecutionError(f"Missing required argument '{key}'.")
    return value


def _resolve(path: str, context: ToolContext) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return (Path(context.working_directory) / candidate).resolve()


# ---------------------------------------------------------------------------
# File operations
# ---------------------------------------------------------------------------


async def _tool_read_file(args: dict, context: ToolContext) -> ToolResult:
    path = _require(args, "path")
    try:
        content = _resolve(path, context).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        return ToolResult(success=False, content=f"Error reading file {path}: {exc}")
    return ToolResult(success=True, content=f"File content of {path}:\n\n{content}")


async def _tool_write_to_file(args: dict, context: ToolContext) -> ToolResult:
    path = _require(args, "path")
    content = args.get("content", "")
    target = _resolve(path, context)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    except OSError as exc:
        return ToolResult(success=False, content=f"Error writing to file {path}: {exc}")
    return ToolResult(success=True, content=f"Successfully wrote to file {path}")


async def _tool_replace_in_file(args: dict, context: ToolContext) -> ToolResult:
    path = _require(args, "path")
    old_str = _require(args, "old_str")
    new_str = args.get("new_str", "")
    target = _resolve(path, context)
    try:
        current = target.read_text(encoding="utf-8")
        if old_str not in current:
            return ToolResult(success=False, content=f"Search text not found in file {path}")
        target.write_text(current.replace(old_str, new_str, 1), encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        return ToolResult(success=False, content=f"Error replacing text in file {path}: {exc}")
    return ToolResult(success=True, content=f"Successfully replaced text in file {path}")


def _list_dir(directory: Path, root: Path, recursive: bool) -> list[str]:
    entries: list[str] = []
    for entry in directory.iterdir():
        relative = os.path.relpath(entry, root)
        if entry.is_dir():
            # Linked directories are listed but not followed.
            if recursive and not entry.is_symlink():
                entries.extend(_list_dir(entry, root, recursive))
            else:
                entries.append(f"{relative}/")
        else:
            entries.append(relative)
    return entries


async def _tool_list_files(args: dict, context: ToolContext) -> ToolResult:
    path = args.get("path") or "."
    recursive = bool(args.get("recursive", False))
    try:
        files = sorted(_list_dir(_resolve(path, context), Path(context.working_directory).resolve(), recursive))
    except OSError as exc:
        return ToolResult(success=False, content=f"Error listing files in {path}: {exc}")
    return ToolResult(success=True, content=f"Files in {path}:\n" + "\n".join(files))


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


async def _tool_execute_command(args: dict, context: ToolContext) -> ToolResult:
    command = _require(args, "command")
    # A requested timeout may shorten the configured limit, never extend it.
    timeout = min(float(args.get("timeout") or context.command_timeout), context.command_timeout)
    logger.info("command_started", command=command, cwd=context.working_directory)

    process = await asyncio.create_subprocess_shell(
        command,
        cwd=context.working_directory,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(process)
        return ToolResult(success=False, content=f"Command timed out after {timeout:g}s: {command}")
    except BaseException:
        logger.warning("command_interrupted", command=command, pid=process.pid)
        await _terminate(process)
        raise

    exit_code = process.returncode or 0
    output = stdout.decode("utf-8", errors="replace").strip()
    errors = stderr.decode("utf-8", errors="replace").strip()

    content = f"Command executed with exit code {exit_code}"
    if output:
        content += f"\n\nOutput:\n{output}"
    if errors:
        content += f"\n\nError output:\n{errors}"
    return ToolResult(success=exit_code == 0, content=content)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


async def _tool_attempt_completion(args: dict, context: ToolContext) -> ToolResult:
    result = args.get("result", "")
    content = f"Task completed: {result}"
    if args.get("command"):
        content += f"\n\nSuggested command: {args['command']}"
    return ToolResult(success=True, content=content)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ToolHandler = Callable[[dict, ToolContext], Awaitable[ToolResult]]


@dataclass(frozen=True)
class LocalTool:
    name: str
    description: str
    handler: ToolHandler


BUILTIN_TOOLS: list[LocalTool] = [
    LocalTool(
        "read_file",
        'Read the contents of a file. Input: {"path": "<string>"}',
        _tool_read_file,
    ),
    LocalTool(
        "write_to_file",
        'Write content to a file, creating it if needed. Input: {"path": "<string>", "content": "<string>"}',
        _tool_write_to_file,
    ),
    LocalTool(
        "replace_in_file",
        'Replace the first occurrence of text in a file. Input: {"path": "<string>", "old_str": "<string>", "new_str": "<string>"}',
        _tool_replace_in_file,
    ),
    LocalTool(
        "list_files",
        'List files and directories. Input: {"path": "<string>", "recursive": <bool>}',
        _tool_list_files,
    ),
    LocalTool(
        "execute_command",
        'Execute a shell command. Input: {"command": "<string>", "timeout": <seconds>}',
        _tool_execute_command,
    ),
    LocalTool(
        COMPLETION_TOOL,
        'Signal that the task is finished. Input: {"result": "<string>", "command": "<string>"}',
        _tool_attempt_completion,
    ),
]


class ToolRegistry:
    """Name → local tool mapping bound to one task's context."""

    def __init__(self, context: ToolContext, tools: list[LocalTool] | None = None) -> None:
        self.context = context
        self._tools: dict[str, LocalTool] = {}
        for tool in BUILTIN_TOOLS if tools is None else tools:
            self.register(tool)

    def register(self, tool: LocalTool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> LocalTool | None:
        return self._tools.get(name)

    def all(self) -> list[LocalTool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    async def execute(self, name: str, args: dict[str, Any]) -> ToolResult:
        """Run a local tool. Unknown names and failures come back as failed results."""
        tool = self.get(name)
        if tool is None:
            return ToolResult(success=False, content=f"Unknown tool: {name}")
        try:
            return await tool.handler(args, self.context)
        except Exception as exc:
            logger.warning("tool_failed", tool=name, error=str(exc))
            return ToolResult(success=False, content=f"Error executing tool {name}: {exc}")
