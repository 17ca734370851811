#!/usr/bin/env python3
"""
agent_tools.py — Tool layer for LocalCoder.

ToolDispatcher is the single place a tool name becomes an action: built-in
handlers and external (MCP) adapters register the same ToolSpec shape, and
every call comes back as a ToolResult, whatever went wrong.

Built-in file / shell tools live here too. They are thin wrappers with
workspace path validation; tools that need the Runtime (background jobs,
sub-agents, checkpoints) are registered by agent_main.
"""

import os
import threading
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from agent_core import (
    Config, Log, ToolExecutionError, ToolResult, _IS_WINDOWS,
    preview_args, truncate_output,
)
from sandboxed_shell import TIMEOUT_EXIT_CODE, run_sandboxed

ToolHandler = Callable[[Dict[str, Any]], ToolResult]

_BINARY_EXTS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".pdf", ".zip", ".gz",
    ".tar", ".7z", ".exe", ".dll", ".so", ".dylib", ".pyc", ".woff", ".woff2",
})


# =============================================================================
# SAFETY
# =============================================================================

class Safety:
    _SENSITIVE_WINDOWS = (
        "\\Windows\\System32", "C:\\Windows", "\\Program Files",
        "id_rsa", "id_ed25519", ".pem", ".key",
    )
    _SENSITIVE_POSIX = (
        "/etc/passwd", "/etc/shadow", "/etc/sudoers", "/boot/", "/sys/",
        "id_rsa", "id_ed25519", ".pem", ".key",
    )
    _SENSITIVE = _SENSITIVE_WINDOWS if _IS_WINDOWS else _SENSITIVE_POSIX

    @staticmethod
    def validate_path(workspace: Path, path: str,
                      must_exist: bool = False) -> Tuple[bool, str, Path]:
        try:
            p        = Path(path)
            resolved = ((workspace / path) if not p.is_absolute()
                        else p.expanduser()).resolve()
            if must_exist and not resolved.exists():
                return False, f"Path does not exist: {path}", resolved
            if Config.REQUIRE_WORKSPACE:
                try:
                    resolved.relative_to(workspace.resolve())
                except ValueError:
                    return False, f"Path outside workspace: {path}", resolved
            for s in Safety._SENSITIVE:
                if s.lower() in str(resolved).lower():
                    return False, f"Access denied: {path}", resolved
            return True, "", resolved
        except (OSError, ValueError, RuntimeError) as e:
            return False, f"Invalid path: {e}", Path(path)

    @staticmethod
    def validate_command(cmd: str) -> Tuple[bool, str]:
        cmd_lower = cmd.lower()
        for blocked in Config.BLOCKED_COMMANDS:
            if blocked and blocked.strip().lower() in cmd_lower:
                return False, f"Blocked: {blocked}"
        return True, ""


# =============================================================================
# TOOL SPEC & DISPATCHER
# =============================================================================

@dataclass
class ToolSpec:
    name:        str
    description: str
    handler:     ToolHandler
    parameters:  Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}})

    def schema(self) -> Dict[str, Any]:
        return {"type": "function", "function": {
            "name":        self.name,
            "description": self.description,
            "parameters":  self.parameters,
        }}


def _summary(result: ToolResult) -> str:
    if not result.success:
        return result.error or "failed"
    first = result.output.strip().splitlines()[0] if result.output.strip() else "ok"
    return first if len(first) <= 80 else first[:77] + "..."


class ToolDispatcher:
    """Name → handler registry. execute() never raises."""

    def __init__(self, max_output: Optional[int] = None):
        self._tools: Dict[str, ToolSpec] = {}
        self._lock       = threading.Lock()
        self._max_output = max_output or Config.MAX_TOOL_OUTPUT

    def register(self, spec: ToolSpec):
        with self._lock:
            if spec.name in self._tools:
                Log.debug(f"Tool '{spec.name}' re-registered")
            self._tools[spec.name] = spec

    def register_all(self, specs: Iterable[ToolSpec]):
        for spec in specs:
            self.register(spec)

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[ToolSpec]:
        with self._lock:
            return self._tools.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._tools)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def catalog(self, exclude: Iterable[str] = ()) -> List[Dict[str, Any]]:
        skip = set(exclude)
        with self._lock:
            specs = list(self._tools.values())
        return [s.schema() for s in specs if s.name not in skip]

    def execute(self, name: str, args: Any) -> ToolResult:
        Log.tool(name, preview_args(args) if isinstance(args, dict) else repr(args)[:80])

        spec = self.get(name)
        if not isinstance(args, dict):
            result = ToolResult.fail(
                f"arguments for {name} must be an object, got {type(args).__name__}")
        elif spec is None:
            result = ToolResult.fail(f"unknown tool: {name}")
        else:
            try:
                result = spec.handler(args)
            except ToolExecutionError as e:
                result = ToolResult.fail(str(e))
            except Exception as e:
                Log.debug(traceback.format_exc())
                result = ToolResult.fail(f"{type(e).__name__}: {e}")
            if isinstance(result, str):
                result = ToolResult.ok(result)
            elif not isinstance(result, ToolResult):
                result = ToolResult.fail(
                    f"tool {name} returned {type(result).__name__}, not a ToolResult")

        if len(result.output) > self._max_output:
            result.output = truncate_output(result.output, self._max_output, name)

        if result.success:
            Log.success(f"{name}: {_summary(result)}")
        else:
            Log.error(f"{name}: {_summary(result)}")
        return result


# =============================================================================
# BUILT-IN TOOLS: FILES
# =============================================================================

def _rel(workspace: Path, fp: Path) -> str:
    try:
        return str(fp.relative_to(workspace.resolve())).replace("\\", "/")
    except ValueError:
        return str(fp).replace("\\", "/")


def tool_read_file(workspace: Path, args: Dict[str, Any]) -> ToolResult:
    path = args.get("path")
    if not isinstance(path, str) or not path:
        return ToolResult.fail("read_file requires 'path'")
    ok, err, fp = Safety.validate_path(workspace, path, must_exist=True)
    if not ok:
        return ToolResult.fail(err)
    if not fp.is_file():
        return ToolResult.fail(f"Not a file: {path}")
    if fp.suffix.lower() in _BINARY_EXTS:
        return ToolResult.fail("Cannot read binary file")
    try:
        content = fp.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ToolExecutionError(f"Cannot read {path}: {e.strerror or e}") from e
    offset  = int(args.get("offset") or 0)
    limit   = args.get("limit")
    if offset or limit:
        lines   = content.splitlines(keepends=True)
        end     = offset + int(limit) if limit else len(lines)
        content = "".join(lines[offset:end])
    return ToolResult.ok(truncate_output(content, Config.MAX_FILE_READ, path))


def tool_write_file(workspace: Path, args: Dict[str, Any]) -> ToolResult:
    path, content = args.get("path"), args.get("content")
    if not isinstance(path, str) or not path:
        return ToolResult.fail("write_file requires 'path'")
    if not isinstance(content, str):
        return ToolResult.fail("write_file requires 'content' as a string")
    ok, err, fp = Safety.validate_path(workspace, path)
    if not ok:
        return ToolResult.fail(err)
    if fp.exists() and fp.suffix.lower() in _BINARY_EXTS:
        return ToolResult.fail("Cannot overwrite binary file")
    existed = fp.exists()
    fp.parent.mkdir(parents=True, exist_ok=True)
    tmp = fp.with_suffix(fp.suffix + ".tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(str(tmp), str(fp))
    except OSError as e:
        raise ToolExecutionError(f"Cannot write {path}: {e.strerror or e}") from e
    action = "Modified" if existed else "Created"
    return ToolResult.ok(f"{action} {_rel(workspace, fp)} ({len(content)} chars)")


def tool_list_directory(workspace: Path, args: Dict[str, Any]) -> ToolResult:
    path = args.get("path") or "."
    ok, err, dp = Safety.validate_path(workspace, path)
    if not ok:
        return ToolResult.fail(err)
    if not dp.exists():
        return ToolResult.fail(f"Path does not exist: {path}")
    if not dp.is_dir():
        return ToolResult.fail(f"Not a directory: {path}")
    all_entries = sorted(dp.iterdir())
    lines = []
    for item in all_entries[:Config.MAX_LS_ENTRIES]:
        if item.name.startswith("."):
            continue
        if item.is_dir():
            lines.append(f"{item.name}/")
        else:
            lines.append(f"{item.name} ({item.stat().st_size} B)")
    if len(all_entries) > Config.MAX_LS_ENTRIES:
        lines.append(f"... {len(all_entries) - Config.MAX_LS_ENTRIES} more")
    return ToolResult.ok("\n".join(lines) if lines else "(empty)")


# =============================================================================
# BUILT-IN TOOLS: FOREGROUND SHELL
# =============================================================================

def tool_run_command(workspace: Path, args: Dict[str, Any]) -> ToolResult:
    command = args.get("command")
    if not isinstance(command, str) or not command.strip():
        return ToolResult.fail("run_command requires 'command'")
    ok, reason = Safety.validate_command(command)
    if not ok:
        return ToolResult.fail(f"Command blocked by safety check: {reason}")

    timeout = int(args.get("timeout") or Config.COMMAND_TIMEOUT)
    timeout = max(1, min(timeout, 600))
    output, exit_code = run_sandboxed(cmd=command, workspace=workspace, timeout=timeout)
    if exit_code == 0:
        return ToolResult.ok(output)
    if exit_code == TIMEOUT_EXIT_CODE:
        return ToolResult.fail(f"command timed out after {timeout}s", output)
    return ToolResult.fail(f"command exited with code {exit_code}", output)


def builtin_tools(workspace: Path) -> List[ToolSpec]:
    """File and shell tools bound to *workspace*."""
    ws = Path(workspace)
    return [
        ToolSpec(
            "read_file", "Read a text file from the workspace.",
            lambda a: tool_read_file(ws, a),
            {"type": "object",
             "properties": {"path":   {"type": "string"},
                            "offset": {"type": "integer", "description": "First line (0-based)"},
                            "limit":  {"type": "integer", "description": "Number of lines"}},
             "required": ["path"]}),
        ToolSpec(
            "write_file", "Create or overwrite a file in the workspace.",
            lambda a: tool_write_file(ws, a),
            {"type": "object",
             "properties": {"path":    {"type": "string"},
                            "content": {"type": "string"}},
             "required": ["path", "content"]}),
        ToolSpec(
            "list_directory", "List directory contents (workspace only).",
            lambda a: tool_list_directory(ws, a),
            {"type": "object",
             "properties": {"path": {"type": "string"}}}),
        ToolSpec(
            "run_command",
            "Run a shell command in the workspace and wait for it. stdout and "
            "stderr are merged. Timeout defaults to "
            f"{Config.COMMAND_TIMEOUT}s. Use run_background for servers or "
            "long builds.",
            lambda a: tool_run_command(ws, a),
            {"type": "object",
             "properties": {"command": {"type": "string"},
                            "timeout": {"type": "integer", "description": "Seconds"}},
             "required": ["command"]}),
    ]
