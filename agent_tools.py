"""
Capability Registry for the Terminal Agent
==========================================

This module is the fixed catalogue of tools the model may ask for. Each tool is
declared once in `TOOL_TABLE` (name, description, parameter schema, handler,
whether a human has to approve it) and the `CapabilityRegistry` exposes that
table as a read-only mapping.

Key Features:
- A declarative table instead of introspection: what the model sees is what is
  written in the table.
- A `Workspace` that anchors relative paths.
- A `ToolGuardian` that validates arguments before a handler runs.
- `CapabilityRegistry.execute()` never raises. Every failure comes back as a
  human-readable string so one broken tool cannot end the conversation.
"""

import asyncio
import inspect
import logging
import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup

from tool_state import record_tool_execution, log_unknown_tool_request

logger = logging.getLogger(__name__)

FAILURE_PREFIX = "execution failed:"
PAGE_TEXT_LIMIT = 8000
FETCH_TIMEOUT = 15
WRITE_MODES = ("overwrite", "append")


class ToolNotFoundError(KeyError):
    """Raised by `CapabilityRegistry.lookup` for names outside the catalogue."""


def _failed(detail: Any) -> str:
    return f"{FAILURE_PREFIX} {detail}"


# =========================================================================
# Workspace Management
# =========================================================================

class Workspace:
    """
    Anchors the agent's file operations.

    Relative paths resolve against `root`. With `confine=True` any path that
    lands outside `root` is refused.
    """
    def __init__(self, root: str = ".", confine: bool = False, command_timeout: int = 60):
        self.root = Path(root).resolve()
        self.confine = confine
        self.command_timeout = command_timeout

    def resolve_path(self, path: str) -> Path:
        if not path:
            raise ValueError("path must not be empty")
        candidate = Path(os.path.expanduser(path))
        if not candidate.is_absolute():
            candidate = self.root / candidate
        full_path = candidate.resolve()

        if self.confine and self.root not in full_path.parents and full_path != self.root:
            raise PermissionError(f"Path is outside the workspace: {full_path}")
        return full_path


# =========================================================================
# Tool Descriptors
# =========================================================================

@dataclass(frozen=True)
class ToolDescriptor:
    """One entry of the catalogue."""
    name: str
    description: str
    handler: Callable[..., Any]
    parameters: Dict[str, Dict[str, str]] = field(default_factory=dict)
    required: Tuple[str, ...] = ()
    approval_required: bool = True

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def schema(self) -> Dict[str, Any]:
        """OpenAI function-tool schema for this entry."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {name: dict(spec) for name, spec in self.parameters.items()},
                    "required": list(self.required),
                },
            },
        }

    def invoke(self, workspace: Workspace, arguments: Dict[str, Any]) -> str:
        """Call the handler, driving coroutine handlers to completion."""
        result = self.handler(workspace, **arguments)
        if inspect.isawaitable(result):
            result = asyncio.run(_await(result))
        return result if isinstance(result, str) else str(result)


async def _await(awaitable):
    return await awaitable


# =========================================================================
# Tool Guardian
# =========================================================================

class ToolGuardian:
    """Validates tool arguments against the declared schema."""

    def validate(self, descriptor: ToolDescriptor, params: Dict[str, Any]) -> Optional[str]:
        """Returns an error message if the call is invalid, otherwise None."""
        for param in descriptor.required:
            if param not in params:
                return f"missing required parameter '{param}' for tool '{descriptor.name}'"

        for param in params:
            if param not in descriptor.parameters:
                return f"unknown parameter '{param}' for tool '{descriptor.name}'"

        return None


# =========================================================================
# Tool Implementations
# =========================================================================

def run_command(workspace: Workspace, command: str) -> str:
    """Runs a script through the platform shell and returns its output."""
    try:
        completed = subprocess.run(
            command,
            shell=True,
            cwd=str(workspace.root),
            capture_output=True,
            text=True,
            timeout=workspace.command_timeout
        )
        error = (completed.stderr or "").strip()
        if error:
            return f"error: {error}"
        output = (completed.stdout or "").strip()
        return output if output else f"(no output, exit code {completed.returncode})"
    except subprocess.TimeoutExpired:
        return _failed(f"command timed out after {workspace.command_timeout}s")
    except Exception as e:
        return _failed(e)


async def fetch_web_page(workspace: Workspace, url: str) -> str:
    """Fetches a page and returns its visible text."""
    try:
        response = await asyncio.to_thread(requests.get, url, timeout=FETCH_TIMEOUT)
        response.raise_for_status()
        soup = BeautifulSoup(response.text, "html.parser")
        for tag in soup(["script", "style"]):
            tag.decompose()
        text = " ".join(soup.get_text(" ").split())
        if not text:
            return "No text content found."
        return text[:PAGE_TEXT_LIMIT]
    except Exception as e:
        return _failed(e)


def create_file(workspace: Workspace, path: str, content: str = "") -> str:
    """Creates a new file. Refuses to touch an existing one."""
    try:
        full_path = workspace.resolve_path(path)
        if full_path.exists():
            return _failed(f"file already exists: {path}")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")
        return f"Created {full_path} ({len(content)} characters)"
    except Exception as e:
        return _failed(e)


def read_file(workspace: Workspace, path: str) -> str:
    try:
        full_path = workspace.resolve_path(path)
        if not full_path.is_file():
            return _failed(f"file not found: {path}")
        return full_path.read_text(encoding="utf-8")
    except Exception as e:
        return _failed(e)


def write_to_file(workspace: Workspace, path: str, content: str, mode: str = "overwrite") -> str:
    """Writes content to a file, either replacing it or appending to it."""
    mode = (mode or "overwrite").strip().lower()
    if mode not in WRITE_MODES:
        return _failed(f"unsupported mode '{mode}', expected one of: {', '.join(WRITE_MODES)}")
    try:
        full_path = workspace.resolve_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        if mode == "append":
            with full_path.open("a", encoding="utf-8") as f:
                f.write(content)
            return f"Appended {len(content)} characters to {full_path}"
        full_path.write_text(content, encoding="utf-8")
        return f"Wrote {len(content)} characters to {full_path}"
    except Exception as e:
        return _failed(e)


def delete_file(workspace: Workspace, path: str) -> str:
    try:
        full_path = workspace.resolve_path(path)
        if not full_path.is_file():
            return _failed(f"file not found: {path}")
        full_path.unlink()
        return f"Deleted {full_path}"
    except Exception as e:
        return _failed(e)


def path_exists(workspace: Workspace, path: str) -> str:
    try:
        full_path = workspace.resolve_path(path)
        if full_path.is_dir():
            return f"directory: {full_path}"
        if full_path.exists():
            return f"file: {full_path}"
        return f"not found: {full_path}"
    except Exception as e:
        return _failed(e)


def create_directory(workspace: Workspace, path: str) -> str:
    try:
        full_path = workspace.resolve_path(path)
        full_path.mkdir(parents=True, exist_ok=True)
        return f"Directory ready: {full_path}"
    except Exception as e:
        return _failed(e)


def get_current_time(workspace: Workspace) -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


# =========================================================================
# Tool Table
# =========================================================================

_PATH = {"type": "string", "description": "File or directory path, absolute or relative to the workspace root."}

TOOL_TABLE: List[ToolDescriptor] = [
    ToolDescriptor(
        name="run_command",
        description="Run a shell script (cmd.exe /c on Windows, /bin/sh -c elsewhere) and return its output.",
        handler=run_command,
        parameters={"command": {"type": "string", "description": "The script content to run."}},
        required=("command",),
    ),
    ToolDescriptor(
        name="fetch_web_page",
        description="Download a web page and return its visible text, without scripts or styles.",
        handler=fetch_web_page,
        parameters={"url": {"type": "string", "description": "Absolute http(s) URL of the page."}},
        required=("url",),
    ),
    ToolDescriptor(
        name="create_file",
        description="Create a new file. Fails if the file already exists.",
        handler=create_file,
        parameters={
            "path": _PATH,
            "content": {"type": "string", "description": "Initial content of the file. Empty by default."},
        },
        required=("path",),
    ),
    ToolDescriptor(
        name="read_file",
        description="Read a UTF-8 text file.",
        handler=read_file,
        parameters={"path": _PATH},
        required=("path",),
    ),
    ToolDescriptor(
        name="write_to_file",
        description="Write text to a file. mode='overwrite' replaces the content, mode='append' adds to the end.",
        handler=write_to_file,
        parameters={
            "path": _PATH,
            "content": {"type": "string", "description": "Text to write."},
            "mode": {"type": "string", "description": "Either 'overwrite' or 'append'."},
        },
        required=("path", "content", "mode"),
    ),
    ToolDescriptor(
        name="delete_file",
        description="Delete a file.",
        handler=delete_file,
        parameters={"path": _PATH},
        required=("path",),
    ),
    ToolDescriptor(
        name="path_exists",
        description="Check whether a path exists and whether it is a file or a directory.",
        handler=path_exists,
        parameters={"path": _PATH},
        required=("path",),
        approval_required=False,
    ),
    ToolDescriptor(
        name="create_directory",
        description="Create a directory, including missing parents.",
        handler=create_directory,
        parameters={"path": _PATH},
        required=("path",),
    ),
    ToolDescriptor(
        name="get_current_time",
        description="Return the current local date and time.",
        handler=get_current_time,
        approval_required=False,
    ),
]


# =========================================================================
# Registry
# =========================================================================

class CapabilityRegistry(Mapping):
    """
    Read-only mapping from tool name to ToolDescriptor.

    Built once per session and never modified afterwards, so one instance can
    be shared by consecutive runs.
    """

    def __init__(self, workspace: Optional[Workspace] = None, tools: Optional[List[ToolDescriptor]] = None):
        self.workspace = workspace or Workspace()
        self.guardian = ToolGuardian()
        table = TOOL_TABLE if tools is None else tools
        self._tools: Dict[str, ToolDescriptor] = {}
        for descriptor in table:
            if descriptor.name in self._tools:
                raise ValueError(f"Duplicate tool name: {descriptor.name}")
            self._tools[descriptor.name] = descriptor

    def __getitem__(self, name: str) -> ToolDescriptor:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def lookup(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def schemas(self) -> List[Dict[str, Any]]:
        return [descriptor.schema() for descriptor in self._tools.values()]

    def requires_approval(self, name: str) -> bool:
        """Unknown tools are treated as gated."""
        descriptor = self._tools.get(name)
        return True if descriptor is None else descriptor.approval_required

    def execute(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        """
        Runs a tool and returns its result text. Never raises.

        Args:
            name: Tool name from the catalogue
            arguments: Keyword arguments for the tool

        Returns:
            The tool output, or a string starting with "execution failed:"
        """
        arguments = dict(arguments or {})
        try:
            descriptor = self.lookup(name)
        except ToolNotFoundError:
            log_unknown_tool_request(name, arguments)
            message = _failed(f"unknown tool '{name}'. Available tools: {', '.join(self._tools)}")
            record_tool_execution(name, arguments, message, success=False)
            return message

        error = self.guardian.validate(descriptor, arguments)
        if error:
            result = _failed(error)
        else:
            try:
                result = descriptor.invoke(self.workspace, arguments)
            except Exception as e:
                logger.exception(f"Tool '{name}' raised")
                result = _failed(e)

        success = not result.startswith(FAILURE_PREFIX)
        record_tool_execution(name, arguments, result, success=success)
        logger.info(f"🔧 {name} -> {'ok' if success else 'failed'}")
        return result


def default_registry(root: str = ".", command_timeout: int = 60) -> CapabilityRegistry:
    """Registry over the full catalogue, anchored at `root`."""
    return CapabilityRegistry(Workspace(root, command_timeout=command_timeout))
