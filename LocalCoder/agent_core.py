#!/usr/bin/env python3
"""
agent_core.py — Foundation layer for LocalCoder.

Holds everything the other modules agree on:
  - .env loader and the Config class (every value overridable via env var)
  - coloured, per-thread-silenceable Log
  - the error taxonomy (model transport, tool, provider, permission, ...)
  - the shared data model: ToolInvocation, ToolResult, Transcript, events,
    AgentResult

Dependency graph (no cycles):
    agent_core
        ↑
    agent_parse, agent_modes, sandboxed_shell
        ↑
    agent_tools, agent_mcp, agent_jobs, agent_checkpoint
        ↑
    agent_llm
        ↑
    agent_main
"""
import json
import os
import platform
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import colorama

colorama.init()

VERSION = "1.0.0"

_IS_WINDOWS = platform.system() == "Windows"


# =============================================================================
# .ENV FILE LOADER
# Runs before Config is built. First file found wins; real env vars win over it.
# =============================================================================

def _parse_env_line(raw: str) -> Optional[Tuple[str, str]]:
    line = raw.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export "):]
    key, _, val = line.partition("=")
    val = val.strip()
    if len(val) >= 2 and val[0] == val[-1] and val[0] in "'\"":
        val = val[1:-1]
    key = key.strip()
    return (key, val) if key else None


def _load_dotenv():
    """Read KEY=value pairs from ./.env or ~/.config/localcoder/.env."""
    for env_file in (Path.cwd() / ".env",
                     Path.home() / ".config" / "localcoder" / ".env"):
        if not env_file.is_file():
            continue
        try:
            lines = env_file.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            print(f"[!] Could not read {env_file}: {e}")
            return
        loaded = 0
        for key, val in filter(None, map(_parse_env_line, lines)):
            if key not in os.environ:
                os.environ[key] = val
                loaded += 1
        if loaded:
            # Log is defined further down
            print(f"[INFO] {loaded} setting(s) read from {env_file}")
        return


_load_dotenv()


# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    """Central config — every value overridable via environment variable."""

    # LLM (any OpenAI-compatible endpoint; Ollama by default)
    LLM_URL         = os.getenv("LLM_URL",         "http://localhost:11434/v1/chat/completions")
    LLM_API_KEY     = os.getenv("LLM_API_KEY",     "ollama")
    LLM_MODEL       = os.getenv("LLM_MODEL",       "qwen3-coder:30b")
    MAX_TOKENS      = int(os.getenv("LLM_MAX_TOKENS",    "8192"))
    TEMPERATURE     = float(os.getenv("LLM_TEMPERATURE", "0.7"))

    # Retry / timeouts
    LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
    LLM_RETRY_DELAY = float(os.getenv("LLM_RETRY_DELAY", "2.0"))
    LLM_TIMEOUT     = int(os.getenv("LLM_TIMEOUT",     "300"))

    # Workspace
    WORKSPACE = os.getenv("WORKSPACE", str(Path.cwd()))

    # Execution limits
    MAX_ITERATIONS           = int(os.getenv("MAX_ITERATIONS",           "25"))
    MAX_SUB_AGENT_ITERATIONS = int(os.getenv("MAX_SUB_AGENT_ITERATIONS", "15"))

    # Tool output limits
    MAX_TOOL_OUTPUT = int(os.getenv("MAX_TOOL_OUTPUT", "50000"))
    MAX_FILE_READ   = int(os.getenv("MAX_FILE_READ",   "1000000"))
    MAX_LS_ENTRIES  = int(os.getenv("MAX_LS_ENTRIES",  "200"))
    COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "30"))

    # External tool providers (MCP)
    ENABLE_MCP            = os.getenv("ENABLE_MCP", "true").lower() == "true"
    MCP_DISCOVERY_TIMEOUT = float(os.getenv("MCP_DISCOVERY_TIMEOUT", "15"))
    MCP_REQUEST_TIMEOUT   = float(os.getenv("MCP_REQUEST_TIMEOUT",   "10"))

    # Background commands & parallel sub-agents
    BACKGROUND_MAX_OUTPUT  = int(os.getenv("BACKGROUND_MAX_OUTPUT",  "100000"))
    BACKGROUND_TIMEOUT     = float(os.getenv("BACKGROUND_TIMEOUT",   "600"))
    MAX_PARALLEL_AGENTS    = int(os.getenv("MAX_PARALLEL_AGENTS",    "4"))
    PARALLEL_AGENT_TIMEOUT = float(os.getenv("PARALLEL_AGENT_TIMEOUT", "300"))

    # Checkpoints
    ENABLE_CHECKPOINTS = os.getenv("ENABLE_CHECKPOINTS", "true").lower() == "true"
    CHECKPOINT_PREFIX  = os.getenv("CHECKPOINT_PREFIX",  "localcoder-checkpoint")

    # Safety
    REQUIRE_WORKSPACE = os.getenv("REQUIRE_WORKSPACE", "true").lower() == "true"
    BLOCKED_COMMANDS  = os.getenv(
        "BLOCKED_COMMANDS",
        r"rmdir /s /q C:\,format,del /f /s /q C:\,rm -rf /,mkfs" if _IS_WINDOWS
        else "rm -rf /,mkfs,dd if=/dev/zero of=/dev/sd"
    ).split(",")

    DEBUG = os.getenv("LOCALCODER_DEBUG", "false").lower() == "true"

    @classmethod
    def state_dir(cls, workspace: Path) -> Path:
        return workspace / ".localcoder"

    @classmethod
    def validate(cls):
        if cls.MAX_ITERATIONS < 1:
            raise ValueError("MAX_ITERATIONS must be >= 1")
        if cls.MAX_SUB_AGENT_ITERATIONS < 1:
            raise ValueError("MAX_SUB_AGENT_ITERATIONS must be >= 1")
        if cls.MAX_PARALLEL_AGENTS < 1:
            raise ValueError("MAX_PARALLEL_AGENTS must be >= 1")
        if cls.BACKGROUND_MAX_OUTPUT < 1:
            raise ValueError("BACKGROUND_MAX_OUTPUT must be >= 1")
        for name in ("MCP_DISCOVERY_TIMEOUT", "MCP_REQUEST_TIMEOUT",
                     "BACKGROUND_TIMEOUT", "PARALLEL_AGENT_TIMEOUT"):
            if getattr(cls, name) <= 0:
                raise ValueError(f"{name} must be > 0")


# =============================================================================
# COLORS & LOGGING
# =============================================================================

class Colors:
    RESET   = "\033[0m"
    BOLD    = "\033[1m"
    RED     = "\033[38;5;196m"
    GREEN   = "\033[38;5;114m"
    YELLOW  = "\033[38;5;214m"
    BLUE    = "\033[38;5;75m"
    MAGENTA = "\033[38;5;176m"
    CYAN    = "\033[38;5;80m"
    GRAY    = "\033[38;5;250m"


def colored(text: str, color: str, bold: bool = False) -> str:
    return f"{Colors.BOLD if bold else ''}{color}{text}{Colors.RESET}"


# Silence is per thread, so a muted sub-agent leaves the parent audible.
_log_local = threading.local()


class Log:
    """Coloured logger. Call Log.set_silent(True) to mute the current thread."""

    @classmethod
    def set_silent(cls, silent: bool):
        _log_local.silent = silent

    @staticmethod
    def _is_silent() -> bool:
        return getattr(_log_local, "silent", False)

    @staticmethod
    def _print(prefix: str, msg: str, color: str):
        if not Log._is_silent():
            print(colored(f"{prefix} {msg}", color))

    @staticmethod
    def info(msg: str):    Log._print("[INFO]", msg, Colors.CYAN)
    @staticmethod
    def success(msg: str): Log._print("[✓]",    msg, Colors.GREEN)
    @staticmethod
    def warning(msg: str): Log._print("[!]",    msg, Colors.YELLOW)
    @staticmethod
    def error(msg: str):   Log._print("[✗]",    msg, Colors.RED)
    @staticmethod
    def tool(name: str, args: str):
        if not Log._is_silent():
            print(colored(f"[→] {name}({args})", Colors.MAGENTA))
    @staticmethod
    def mode(msg: str): Log._print("[📋]", msg, Colors.BLUE)
    @staticmethod
    def task(msg: str): Log._print("[🎯]", msg, Colors.YELLOW)
    @staticmethod
    def debug(msg: str):
        if Config.DEBUG:
            Log._print("[DEBUG]", msg, Colors.GRAY)


# =============================================================================
# UTILITIES
# =============================================================================

def truncate_output(text: str, max_length: int, label: str = "output") -> str:
    if len(text) <= max_length:
        return text
    half        = max_length // 2
    total_lines = text.count("\n") + 1
    return (text[:half]
            + f"\n\n... [TRUNCATED {len(text) - max_length} chars of {label},"
              f" {total_lines} total lines] ...\n\n"
            + text[-max(0, max_length - half):])


def preview_args(args: Dict[str, Any], max_value: int = 80) -> str:
    """One-line `k=v, ...` preview; long string values are cut."""
    parts = []
    for key, value in args.items():
        if isinstance(value, str) and len(value) > max_value:
            value = value[:max_value] + "..."
        parts.append(f"{key}={value}")
    return ", ".join(parts)


_THINK_RE = re.compile(r'<think>(.*?)</think>', re.DOTALL | re.IGNORECASE)


def strip_thinking(content: str) -> Tuple[str, str]:
    """Remove <think>…</think> blocks. Returns (clean_content, thinking_text)."""
    if '<think>' not in content.lower():
        return content, ''
    parts = _THINK_RE.findall(content)
    return _THINK_RE.sub('', content).strip(), '\n'.join(parts)


# =============================================================================
# ERRORS
# =============================================================================

class AgentError(Exception):
    """Base class for every error LocalCoder raises on purpose."""


class ModelTransportError(AgentError):
    """The model endpoint could not be reached or returned garbage."""


class ModelUnavailableError(ModelTransportError):
    """The endpoint is up but the model is missing. Message says how to fix it."""


class ToolExecutionError(AgentError):
    """A tool handler failed in a way the model should read as plain text."""


class ExternalProviderError(AgentError):
    pass


class ProviderTimeoutError(ExternalProviderError, TimeoutError):
    pass


class PermissionDenied(AgentError):
    def __init__(self, message: str, remediation: str = ""):
        super().__init__(message)
        self.remediation = remediation

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} {self.remediation}".strip()


class InvalidModeTransition(AgentError):
    pass


class CheckpointUnavailable(AgentError):
    pass


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class ToolInvocation:
    name:      str
    arguments: Dict[str, Any]
    id:        str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}",
                           compare=False)

    def to_tool_call(self) -> Dict[str, Any]:
        """OpenAI chat-completions shape, as stored on assistant turns."""
        return {
            "id":       self.id,
            "type":     "function",
            "function": {"name": self.name,
                         "arguments": json.dumps(self.arguments, ensure_ascii=False)},
        }


@dataclass
class ToolResult:
    success: bool
    output:  str = ""
    error:   Optional[str] = None

    @classmethod
    def ok(cls, output: str) -> "ToolResult":
        return cls(True, output)

    @classmethod
    def fail(cls, error: str, output: str = "") -> "ToolResult":
        return cls(False, output, error)

    def to_content(self) -> str:
        """Transcript form: plain output, or the {error, output?} envelope."""
        if self.success:
            return self.output
        envelope: Dict[str, Any] = {"error": self.error or "tool failed"}
        if self.output:
            envelope["output"] = self.output
        return json.dumps(envelope, ensure_ascii=False)


class Transcript:
    """Ordered user/assistant/tool turns owned by exactly one AgentLoop."""

    def __init__(self, system_prompt: str = ""):
        self.messages: List[Dict[str, Any]] = []
        if system_prompt:
            self.messages.append({"role": "system", "content": system_prompt})

    def __len__(self) -> int:
        return len(self.messages)

    def add_user(self, content: str):
        self.messages.append({"role": "user", "content": content})

    def add_assistant(self, content: str,
                      invocations: Optional[List[ToolInvocation]] = None):
        msg: Dict[str, Any] = {"role": "assistant", "content": content}
        if invocations:
            msg["tool_calls"] = [inv.to_tool_call() for inv in invocations]
        self.messages.append(msg)

    def add_tool_result(self, invocation: ToolInvocation, result: ToolResult):
        self.messages.append({
            "role":         "tool",
            "tool_call_id": invocation.id,
            "name":         invocation.name,
            "content":      result.to_content(),
        })

    def last(self) -> Optional[Dict[str, Any]]:
        return self.messages[-1] if self.messages else None


# =============================================================================
# EVENTS & RESULTS
# =============================================================================

@dataclass
class AgentEvent:
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat(),
                           init=False)

    @property
    def type(self) -> str:
        return type(self).__name__


@dataclass
class IterationStarted(AgentEvent):
    n:   int = 0
    max: int = 0


@dataclass
class TokenEmitted(AgentEvent):
    text: str = ""


@dataclass
class ToolInvoked(AgentEvent):
    name:         str = ""
    args_preview: str = ""


@dataclass
class ToolCompleted(AgentEvent):
    name:    str = ""
    success: bool = False
    message: str = ""


@dataclass
class LimitReached(AgentEvent):
    iterations: int = 0


EventCallback = Callable[[AgentEvent], None]


@dataclass
class AgentResult:
    status:       str        # final | limit_reached | cancelled
    final_answer: str
    transcript:   Transcript
    iterations:   int
    events:       List[AgentEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status":       self.status,
            "final_answer": self.final_answer,
            "iterations":   self.iterations,
            "events":       [{"type": e.type, "timestamp": e.timestamp}
                             for e in self.events],
        }
