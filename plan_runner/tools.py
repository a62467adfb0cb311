"""
Tools the agent can call while executing a task.

Each tool is a claude_agent_sdk ``@tool`` (an SdkMcpTool): an async handler
taking the tool input dict and returning ``{"content": [...]}``, with
``"is_error": True`` when the call failed. The orchestrator calls the handlers
directly and feeds their text back to the model.

Capability tags:
- files: write_file, read_file, create_directory, list_directory
- shell: run_command, wait_for_port
- all:   everything
"""

import asyncio
import os
import re
from pathlib import Path

from claude_agent_sdk import ToolAnnotations, tool

# Set per run via configure_workspace(cwd)
_WORKSPACE = os.path.abspath(".")

DEFAULT_TOOL_TIMEOUT = 60.0
TOOL_TIMEOUTS = {
    "write_file": 30.0,
    "read_file": 30.0,
    "create_directory": 10.0,
    "list_directory": 10.0,
    # these carry their own timeout inputs; the outer limit only catches hangs
    "run_command": 660.0,
    "wait_for_port": 330.0,
}

MAX_READ_CHARS = 20_000
MAX_COMMAND_OUTPUT = 8_000


def configure_workspace(cwd: str) -> None:
    global _WORKSPACE
    _WORKSPACE = os.path.abspath(cwd)


def workspace_root() -> str:
    return _WORKSPACE


def _text(text: str, is_error: bool = False) -> dict:
    result = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["is_error"] = True
    return result


def _resolve(raw: str) -> Path:
    """Absolute path inside the workspace, or ValueError."""
    if not raw or not os.path.isabs(raw):
        raise ValueError(
            f"Path must be absolute (got '{raw}'). The workspace root is {_WORKSPACE}; "
            f"use e.g. {_WORKSPACE}/src/main.py"
        )
    path = Path(os.path.normpath(raw))
    root = Path(_WORKSPACE)
    if path != root and root not in path.parents:
        raise ValueError(f"Path {raw} is outside the workspace {_WORKSPACE}")
    return path


# -----------------------------------------------------------------------------
# File tools
# -----------------------------------------------------------------------------

@tool(
    name="write_file",
    description=(
        "Create or overwrite a file with the given content. "
        "file_path MUST be absolute and inside the workspace. Parent directories are created."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Absolute path of the file"},
            "content": {"type": "string", "description": "Full file content"},
        },
        "required": ["file_path", "content"],
    },
    annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True),
)
async def write_file(args: dict) -> dict:
    try:
        path = _resolve(args.get("file_path", ""))
    except ValueError as e:
        return _text(f"Error: {e}", is_error=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    content = args.get("content", "")
    path.write_text(content, encoding="utf-8")
    return _text(f"Wrote {len(content)} chars to {path}")


@tool(
    name="read_file",
    description="Read a text file. file_path MUST be absolute and inside the workspace.",
    input_schema={
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Absolute path of the file"},
        },
        "required": ["file_path"],
    },
    annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
)
async def read_file(args: dict) -> dict:
    try:
        path = _resolve(args.get("file_path", ""))
    except ValueError as e:
        return _text(f"Error: {e}", is_error=True)
    if not path.is_file():
        return _text(f"Error: no such file: {path}", is_error=True)
    content = path.read_text(encoding="utf-8", errors="replace")
    if len(content) > MAX_READ_CHARS:
        content = content[:MAX_READ_CHARS] + f"\n...[truncated, {len(content)} chars total]"
    return _text(content)


@tool(
    name="create_directory",
    description="Create a directory (and parents). dir_path MUST be absolute and inside the workspace.",
    input_schema={
        "type": "object",
        "properties": {
            "dir_path": {"type": "string", "description": "Absolute path of the directory"},
        },
        "required": ["dir_path"],
    },
    annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False),
)
async def create_directory(args: dict) -> dict:
    try:
        path = _resolve(args.get("dir_path", ""))
    except ValueError as e:
        return _text(f"Error: {e}", is_error=True)
    path.mkdir(parents=True, exist_ok=True)
    return _text(f"Directory ready: {path}")


@tool(
    name="list_directory",
    description="List entries of a directory. dir_path MUST be absolute and inside the workspace.",
    input_schema={
        "type": "object",
        "properties": {
            "dir_path": {"type": "string", "description": "Absolute path of the directory"},
        },
        "required": ["dir_path"],
    },
    annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
)
async def list_directory(args: dict) -> dict:
    try:
        path = _resolve(args.get("dir_path", ""))
    except ValueError as e:
        return _text(f"Error: {e}", is_error=True)
    if not path.is_dir():
        return _text(f"Error: no such directory: {path}", is_error=True)
    entries = sorted(p.name + ("/" if p.is_dir() else "") for p in path.iterdir())
    if not entries:
        return _text(f"{path} is empty")
    return _text("\n".join(entries))


# -----------------------------------------------------------------------------
# Shell tools
# -----------------------------------------------------------------------------

@tool(
    name="run_command",
    description=(
        "Run a shell command in the workspace and return its exit code and combined output. "
        "Do not use for servers or watchers that never exit."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to run"},
            "cwd": {"type": "string", "description": "Absolute working directory (default: workspace root)"},
            "timeout_seconds": {"type": "number", "description": "Kill the command after this many seconds (default 120, max 600)"},
        },
        "required": ["command"],
    },
    annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True),
)
async def run_command(args: dict) -> dict:
    command = args.get("command", "").strip()
    if not command:
        return _text("Error: empty command", is_error=True)
    try:
        cwd = _resolve(args["cwd"]) if args.get("cwd") else Path(_WORKSPACE)
    except ValueError as e:
        return _text(f"Error: {e}", is_error=True)
    timeout = min(float(args.get("timeout_seconds") or 120), 600.0)

    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return _text(f"Command timed out after {timeout:.0f}s: {command}", is_error=True)

    output = stdout.decode("utf-8", errors="replace")
    if len(output) > MAX_COMMAND_OUTPUT:
        output = f"...[{len(output) - MAX_COMMAND_OUTPUT} chars omitted]\n" + output[-MAX_COMMAND_OUTPUT:]
    return _text(f"Exit code: {proc.returncode}\n{output}", is_error=proc.returncode != 0)


@tool(
    name="wait_for_port",
    description="Wait until a TCP port accepts connections, e.g. after starting a dev server.",
    input_schema={
        "type": "object",
        "properties": {
            "port": {"type": "integer", "description": "Port number"},
            "host": {"type": "string", "description": "Host (default localhost)"},
            "timeout_ms": {"type": "integer", "description": "Give up after this many milliseconds (default 30000)"},
        },
        "required": ["port"],
    },
    annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False),
)
async def wait_for_port(args: dict) -> dict:
    host = args.get("host") or "localhost"
    port = int(args["port"])
    timeout = min(int(args.get("timeout_ms") or 30_000), 300_000) / 1000
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0
    while True:
        attempts += 1
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=2.0)
            writer.close()
            await writer.wait_closed()
            return _text(f"{host}:{port} is accepting connections (after {attempts} attempts)")
        except (OSError, asyncio.TimeoutError):
            if loop.time() >= deadline:
                return _text(f"Timed out waiting for {host}:{port} after {timeout:.0f}s", is_error=True)
            await asyncio.sleep(0.5)


# -----------------------------------------------------------------------------
# Capability sets
# -----------------------------------------------------------------------------

FILE_TOOLS = [write_file, read_file, create_directory, list_directory]
SHELL_TOOLS = [run_command, wait_for_port]
ALL_TOOLS = FILE_TOOLS + SHELL_TOOLS

CAPABILITIES = {
    "files": FILE_TOOLS,
    "shell": SHELL_TOOLS,
    "all": ALL_TOOLS,
}

# Tools whose successful output says whether the work succeeded
CHECKED_TOOL_NAMES = {t.name for t in SHELL_TOOLS}

# Task text that implies running something, not just editing files
_SHELL_HINT_RE = re.compile(
    r"\b(run|execute|install|npm|npx|yarn|pnpm|pip|pytest|cargo|make|build|compile|test|tests|server|serve|start|migrate|command|terminal)\b",
    re.IGNORECASE,
)


def tools_for(capability: str = "all") -> list:
    return list(CAPABILITIES.get(capability, ALL_TOOLS))


def select_capability(task) -> str:
    """'all' when the task needs to run commands, else 'files'."""
    text = f"{task.action}\n{task.verify}"
    return "all" if _SHELL_HINT_RE.search(text) else "files"


def tool_schemas(tools: list) -> list[dict]:
    """Tool definitions in the shape the chat service sends to the model."""
    return [
        {"name": t.name, "description": t.description, "input_schema": t.input_schema}
        for t in tools
    ]


def tool_timeout(name: str) -> float:
    return TOOL_TIMEOUTS.get(name, DEFAULT_TOOL_TIMEOUT)
