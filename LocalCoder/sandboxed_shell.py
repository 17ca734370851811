#!/usr/bin/env python3
"""
sandboxed_shell.py — Process-group subprocess execution.

Every command runs in its own process group so a timeout can take down the
whole tree (the shell plus anything it forked):

  macOS / Linux : os.setsid() + optional RLIMIT_AS / RLIMIT_CPU, killpg on timeout
  Windows       : CREATE_NEW_PROCESS_GROUP, psutil tree-kill on timeout

psutil is used on every platform to sweep children that escaped the group.
"""

import os
import platform
import signal
import subprocess
import threading
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import psutil

DEFAULT_TIMEOUT_SECS  = 30
DEFAULT_MAX_OUTPUT    = 32_768   # bytes
DEFAULT_MAX_MEMORY_MB = 512

TIMEOUT_EXIT_CODE = 124          # same sentinel as coreutils `timeout`

_IS_WINDOWS = platform.system() == "Windows"
_IS_POSIX   = not _IS_WINDOWS

if _IS_POSIX:
    import resource


# ---------------------------------------------------------------------------
# Spawning
# ---------------------------------------------------------------------------

def _posix_preexec(max_memory_mb: Optional[int], cpu_seconds: Optional[int]) -> None:
    os.setsid()
    if max_memory_mb:
        mem = max_memory_mb * 1024 * 1024
        try:
            resource.setrlimit(resource.RLIMIT_AS, (mem, mem))
        except (ValueError, OSError):
            pass
    if cpu_seconds:
        try:
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
        except (ValueError, OSError):
            pass


def spawn(
    cmd: str,
    cwd: Path,
    merge_stderr: bool = True,
    max_memory_mb: Optional[int] = None,
    cpu_seconds: Optional[int] = None,
) -> subprocess.Popen:
    """Start *cmd* through the shell in a fresh process group (binary pipes)."""
    popen_kwargs: dict = dict(
        shell=True,
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
        env=os.environ.copy(),
    )
    if _IS_POSIX:
        popen_kwargs["preexec_fn"] = lambda: _posix_preexec(max_memory_mb, cpu_seconds)
    else:
        popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    return subprocess.Popen(cmd, **popen_kwargs)


def pump(stream, sink: Callable[[bytes], None]) -> threading.Thread:
    """Drain *stream* into *sink* on a daemon thread until EOF."""
    read = getattr(stream, "read1", stream.read)

    def _reader():
        try:
            for chunk in iter(lambda: read(4096), b""):
                sink(chunk)
        except (OSError, ValueError):
            pass
        finally:
            try:
                stream.close()
            except OSError:
                pass

    t = threading.Thread(target=_reader, daemon=True)
    t.start()
    return t


# ---------------------------------------------------------------------------
# Killing
# ---------------------------------------------------------------------------

def kill_process_tree(pid: int) -> None:
    """SIGKILL the process group of *pid*, then sweep surviving children."""
    children: List[psutil.Process] = []
    try:
        children = psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        pass
    if _IS_POSIX:
        try:
            os.killpg(os.getpgid(pid), signal.SIGKILL)
        except (ProcessLookupError, PermissionError, OSError):
            pass
    else:
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            pass
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass


# ---------------------------------------------------------------------------
# Foreground execution
# ---------------------------------------------------------------------------

def run_sandboxed(
    cmd: str,
    workspace: Path,
    timeout: int          = DEFAULT_TIMEOUT_SECS,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT,
    max_memory_mb: int    = DEFAULT_MAX_MEMORY_MB,
) -> Tuple[str, int]:
    """
    Run *cmd* to completion and return (output, exit_code).

    stdout and stderr are merged and capped at max_output_bytes. On timeout the
    whole process group is killed and exit_code is TIMEOUT_EXIT_CODE.
    """
    proc = spawn(cmd, workspace, merge_stderr=True,
                 max_memory_mb=max_memory_mb, cpu_seconds=max(60, timeout))

    chunks: List[bytes] = []
    state = {"total": 0, "trunc": False}

    def _sink(chunk: bytes):
        room = max_output_bytes - state["total"]
        if room <= 0:
            state["trunc"] = True
            return
        chunks.append(chunk[:room])
        state["total"] += min(len(chunk), room)
        if len(chunk) > room:
            state["trunc"] = True

    reader = pump(proc.stdout, _sink)

    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        kill_process_tree(proc.pid)
        proc.wait()
        reader.join(timeout=2)
        out = b"".join(chunks).decode("utf-8", errors="replace")
        return f"[TIMEOUT after {timeout}s]\n{out}", TIMEOUT_EXIT_CODE

    reader.join(timeout=5)
    out = b"".join(chunks).decode("utf-8", errors="replace")
    if state["trunc"]:
        out += "\n[output truncated]"
    return out, proc.returncode


def sandbox_info() -> dict:
    return {
        "platform": platform.system(),
        "backend":  "process_group+rlimit" if _IS_POSIX else "process_group+psutil",
        "default_timeout":   DEFAULT_TIMEOUT_SECS,
        "default_memory_mb": DEFAULT_MAX_MEMORY_MB,
    }
