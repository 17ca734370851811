#!/usr/bin/env python3
"""
agent_jobs.py — Background commands and parallel sub-agent fan-out.

Background commands return a task id immediately. Two reader threads drain
stdout / stderr into bounded buffers (oldest bytes dropped first) and a
watcher thread waits on the process with a deadline; past it the whole
process group is killed and the task ends with TIMEOUT_EXIT_CODE.

Fan-out runs up to MAX_PARALLEL_AGENTS tasks on a thread pool. Extra tasks
are dropped, not queued.
"""

import itertools
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from agent_core import Config, Log
from sandboxed_shell import TIMEOUT_EXIT_CODE, kill_process_tree, pump, spawn

# runner(prompt, cancel_event) -> final answer text; raise to report failure
AgentRunner = Callable[[str, threading.Event], str]


def _default(value, fallback):
    return fallback if value is None else value


class OutputBuffer:
    """Append-only byte buffer that keeps only the newest *limit* bytes."""

    def __init__(self, limit: int):
        self.limit   = limit
        self.dropped = 0
        self._data   = bytearray()
        self._lock   = threading.Lock()

    def append(self, chunk: bytes):
        with self._lock:
            self._data += chunk
            excess = len(self._data) - self.limit
            if excess > 0:
                del self._data[:excess]
                self.dropped += excess

    def text(self) -> str:
        with self._lock:
            return bytes(self._data).decode("utf-8", errors="replace")

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


@dataclass
class BackgroundTask:
    id:        str
    command:   str
    pid:       int
    timeout:   float
    stdout:    OutputBuffer
    stderr:    OutputBuffer
    start:     float = field(default_factory=time.time)
    end:       Optional[float] = None
    done:      bool = False
    exit_code: Optional[int] = None
    timed_out: bool = False

    def snapshot(self) -> Dict[str, Any]:
        elapsed = (self.end or time.time()) - self.start
        return {
            "id":        self.id,
            "command":   self.command,
            "pid":       self.pid,
            "done":      self.done,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "elapsed":   round(elapsed, 2),
            "stdout":    self.stdout.text(),
            "stderr":    self.stderr.text(),
            "truncated": bool(self.stdout.dropped or self.stderr.dropped),
        }


class ConcurrencyManager:
    """Background-task table plus bounded parallel fan-out."""

    def __init__(self, workspace: Path,
                 max_output: Optional[int] = None,
                 default_timeout: Optional[float] = None,
                 max_parallel: Optional[int] = None,
                 parallel_timeout: Optional[float] = None):
        self.workspace        = Path(workspace)
        self.max_output       = _default(max_output, Config.BACKGROUND_MAX_OUTPUT)
        self.default_timeout  = _default(default_timeout, Config.BACKGROUND_TIMEOUT)
        self.max_parallel     = _default(max_parallel, Config.MAX_PARALLEL_AGENTS)
        self.parallel_timeout = _default(parallel_timeout, Config.PARALLEL_AGENT_TIMEOUT)
        self._tasks:    Dict[str, BackgroundTask]  = {}
        self._finished: Dict[str, threading.Event] = {}
        self._procs:    Dict[str, subprocess.Popen] = {}
        self._lock      = threading.Lock()
        self._ids       = itertools.count(1)

    # =========================================================================
    # BACKGROUND COMMANDS
    # =========================================================================

    def launch(self, command: str, timeout: Optional[float] = None,
               cwd: Optional[Path] = None) -> str:
        timeout = _default(timeout, self.default_timeout)
        proc = spawn(command, Path(cwd) if cwd else self.workspace, merge_stderr=False)
        with self._lock:
            task_id = f"bg_{next(self._ids)}"
            task = BackgroundTask(
                id=task_id, command=command, pid=proc.pid, timeout=timeout,
                stdout=OutputBuffer(self.max_output),
                stderr=OutputBuffer(self.max_output),
            )
            self._tasks[task_id]    = task
            self._finished[task_id] = threading.Event()
            self._procs[task_id]    = proc

        readers = [pump(proc.stdout, task.stdout.append),
                   pump(proc.stderr, task.stderr.append)]
        threading.Thread(target=self._watch, args=(task, proc, readers),
                         name=f"{task_id}-watcher", daemon=True).start()
        Log.info(f"Background task {task_id} started (pid {proc.pid}): {command[:60]}")
        return task_id

    def _watch(self, task: BackgroundTask, proc: subprocess.Popen,
               readers: List[threading.Thread]):
        timed_out = False
        try:
            code = proc.wait(timeout=task.timeout)
        except subprocess.TimeoutExpired:
            kill_process_tree(proc.pid)
            proc.wait()
            timed_out = True
            code = TIMEOUT_EXIT_CODE
        for reader in readers:
            reader.join(timeout=5)

        with self._lock:
            task.exit_code = code
            task.timed_out = timed_out
            task.end       = time.time()
            task.done      = True
            self._procs.pop(task.id, None)
            finished = self._finished[task.id]
        finished.set()

        if timed_out:
            Log.warning(f"Background task {task.id} timed out after {task.timeout}s")
        else:
            Log.debug(f"Background task {task.id} exited with {code}")

    def status(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            task = self._tasks.get(task_id)
        return task.snapshot() if task else None

    def list_tasks(self) -> List[Dict[str, Any]]:
        with self._lock:
            tasks = list(self._tasks.values())
        return [{k: v for k, v in t.snapshot().items() if k not in ("stdout", "stderr")}
                for t in tasks]

    def wait(self, task_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the task is done. False if it is unknown or still running."""
        with self._lock:
            finished = self._finished.get(task_id)
        return finished.wait(timeout) if finished else False

    def stop_all(self):
        """Kill every still-running background process."""
        with self._lock:
            procs = list(self._procs.values())
        for proc in procs:
            kill_process_tree(proc.pid)

    # =========================================================================
    # PARALLEL FAN-OUT
    # =========================================================================

    def run_parallel(self, tasks: List[Dict[str, Any]],
                     runner: AgentRunner) -> Dict[str, Any]:
        """
        Run up to max_parallel tasks ({title, prompt}) concurrently.

        Returns {"success", "results": [{title, success, result}], "dropped"}
        with results in input order. A task that misses its deadline has its
        cancel event set and is reported as failed.
        """
        accepted = list(tasks[:self.max_parallel])
        dropped  = len(tasks) - len(accepted)
        if dropped:
            Log.warning(f"Fan-out limited to {self.max_parallel} task(s); "
                        f"{dropped} dropped")
        if not accepted:
            return {"success": True, "results": [], "dropped": dropped}

        for task in accepted:
            Log.task(f"Sub-task: {task.get('title', '')}")

        cancels  = [threading.Event() for _ in accepted]
        pool     = ThreadPoolExecutor(max_workers=len(accepted),
                                      thread_name_prefix="sub-agent")
        deadline = time.monotonic() + self.parallel_timeout
        futures  = [pool.submit(runner, str(task.get("prompt", "")), cancel)
                    for task, cancel in zip(accepted, cancels)]

        results: List[Dict[str, Any]] = []
        try:
            for task, future, cancel in zip(accepted, futures, cancels):
                title = str(task.get("title", ""))
                try:
                    output = future.result(timeout=max(0.0, deadline - time.monotonic()))
                    results.append({"title": title, "success": True, "result": str(output)})
                except FutureTimeout:
                    cancel.set()
                    future.cancel()
                    results.append({"title": title, "success": False,
                                    "result": f"timed out after {self.parallel_timeout:g}s"})
                except Exception as e:
                    results.append({"title": title, "success": False,
                                    "result": f"{type(e).__name__}: {e}"})
        finally:
            for cancel in cancels:
                cancel.set()
            pool.shutdown(wait=False, cancel_futures=True)

        for i, r in enumerate(results, 1):
            if r["success"]:
                Log.success(f"Sub-task {i} done: {r['title']}")
            else:
                Log.error(f"Sub-task {i} failed: {r['title']}")
        return {"success": all(r["success"] for r in results),
                "results": results, "dropped": dropped}
