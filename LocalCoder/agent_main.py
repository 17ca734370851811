#!/usr/bin/env python3
"""
agent_main.py — Runtime wiring and command-line entrypoint for LocalCoder.

Usage:
  localcoder "task description"          # One-shot run
  localcoder --plan "task"               # Start in Plan mode (read-only tools)
  localcoder --list-checkpoints          # Show stashed checkpoints
  localcoder --rollback                  # Restore the newest checkpoint
  localcoder --check                     # Verify the model endpoint

Everything mutable (tool table, providers, background tasks, mode) lives on a
Runtime built by build_runtime(); nothing is kept in module globals.
"""

import argparse
import json
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from agent_core import (
    VERSION, AgentResult, Colors, Config, EventCallback, Log,
    ModelTransportError, ModelUnavailableError, TokenEmitted, ToolResult,
    Transcript, colored,
)
from agent_checkpoint import CREATED, NO_CHANGES, CheckpointManager
from agent_jobs import ConcurrencyManager
from agent_llm import (
    SUB_AGENT_SYSTEM_PROMPT, SYSTEM_PROMPT, AgentLoop, LLMClient,
)
from agent_mcp import MCPManager
from agent_modes import Mode, ModeAction, PermissionGate
from agent_tools import Safety, ToolDispatcher, ToolSpec, builtin_tools
from sandboxed_shell import sandbox_info

# Sub-agents never spawn further agents.
SUB_AGENT_EXCLUDED_TOOLS = frozenset({"sub_agent", "parallel_agents"})


# =============================================================================
# RUNTIME
# =============================================================================

@dataclass
class Runtime:
    workspace:   Path
    model:       Any
    dispatcher:  ToolDispatcher
    gate:        PermissionGate
    jobs:        ConcurrencyManager
    checkpoints: CheckpointManager
    mcp:         MCPManager

    # ── mode changes with checkpoint hooks ───────────────────────────────────

    def enter_plan(self) -> Mode:
        if self.gate.can(ModeAction.PLAN):
            self.checkpoints.create("Plan/Act start")
        return self.gate.transition(ModeAction.PLAN)

    def approve(self) -> Mode:
        if self.gate.can(ModeAction.APPROVE):
            self.checkpoints.create("Plan → Act")
        return self.gate.transition(ModeAction.APPROVE)

    def exit_mode(self) -> Mode:
        return self.gate.transition(ModeAction.EXIT)

    def rollback(self) -> bool:
        restored = self.checkpoints.rollback()
        if self.gate.can(ModeAction.ROLLBACK):
            self.gate.transition(ModeAction.ROLLBACK)
        return restored

    # ── agent runs ───────────────────────────────────────────────────────────

    def new_loop(self, on_event: Optional[EventCallback] = None,
                 max_iterations: Optional[int] = None) -> AgentLoop:
        transcript = Transcript(SYSTEM_PROMPT.format(workspace=self.workspace))
        return AgentLoop(self.model, self.dispatcher, self.gate, transcript,
                         max_iterations=max_iterations, on_event=on_event)

    def run(self, task: str, on_event: Optional[EventCallback] = None,
            max_iterations: Optional[int] = None) -> AgentResult:
        return self.new_loop(on_event, max_iterations).run(task)

    def run_sub_agent(self, prompt: str,
                      cancel: Optional[threading.Event] = None) -> str:
        """Fresh transcript, reduced catalog, own iteration cap."""
        transcript = Transcript(SUB_AGENT_SYSTEM_PROMPT.format(workspace=self.workspace))
        loop = AgentLoop(self.model, self.dispatcher, self.gate, transcript,
                         max_iterations=Config.MAX_SUB_AGENT_ITERATIONS,
                         exclude_tools=SUB_AGENT_EXCLUDED_TOOLS, cancel=cancel)
        result = loop.run(prompt)
        if result.status == "cancelled":
            raise TimeoutError("sub-agent cancelled")
        return result.final_answer

    def close(self):
        self.mcp.close_all()
        self.jobs.stop_all()


# =============================================================================
# RUNTIME TOOLS
# =============================================================================

def _tool_run_background(rt: Runtime, args: Dict[str, Any]) -> ToolResult:
    command = args.get("command")
    if not isinstance(command, str) or not command.strip():
        return ToolResult.fail("run_background requires 'command'")
    ok, reason = Safety.validate_command(command)
    if not ok:
        return ToolResult.fail(f"Command blocked by safety check: {reason}")
    timeout = args.get("timeout")
    task_id = rt.jobs.launch(command, timeout=float(timeout) if timeout else None)
    return ToolResult.ok(f"Started background task {task_id}. "
                         f"Check it with background_status(task_id=\"{task_id}\").")


def _tool_background_status(rt: Runtime, args: Dict[str, Any]) -> ToolResult:
    task_id = args.get("task_id")
    if not task_id:
        return ToolResult.ok(json.dumps(rt.jobs.list_tasks(), indent=2))
    snapshot = rt.jobs.status(str(task_id))
    if snapshot is None:
        return ToolResult.fail(f"unknown background task: {task_id}")
    return ToolResult.ok(json.dumps(snapshot, indent=2))


def _tool_sub_agent(rt: Runtime, args: Dict[str, Any]) -> ToolResult:
    prompt = args.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        return ToolResult.fail("sub_agent requires 'prompt'")
    Log.task(f"Sub-agent: {prompt[:60]}")
    return ToolResult.ok(rt.run_sub_agent(prompt))


def _tool_parallel_agents(rt: Runtime, args: Dict[str, Any]) -> ToolResult:
    tasks = args.get("tasks")
    if not isinstance(tasks, list) or not tasks:
        return ToolResult.fail("parallel_agents requires a non-empty 'tasks' list")
    if not all(isinstance(t, dict) for t in tasks):
        return ToolResult.fail("each task must be an object with title and prompt")

    def _quiet_runner(prompt: str, cancel: threading.Event) -> str:
        Log.set_silent(True)   # worker thread only
        return rt.run_sub_agent(prompt, cancel)

    outcome = rt.jobs.run_parallel(tasks, _quiet_runner)
    sections = []
    for i, r in enumerate(outcome["results"], 1):
        status = "ok" if r["success"] else "FAILED"
        sections.append(f"--- Task {i}: {r['title']} ({status}) ---\n{r['result']}")
    if outcome["dropped"]:
        sections.append(f"[{outcome['dropped']} task(s) over the limit of "
                        f"{rt.jobs.max_parallel} were not run]")
    text = "[parallel agents]\n" + "\n\n".join(sections)
    if outcome["success"]:
        return ToolResult.ok(text)
    return ToolResult.fail("one or more parallel tasks failed", text)


def _tool_checkpoint(rt: Runtime, args: Dict[str, Any]) -> ToolResult:
    action = args.get("action") or "create"
    if action == "list":
        found = [cp.to_dict() for cp in rt.checkpoints.list()]
        return ToolResult.ok(json.dumps(found, indent=2) if found else "No checkpoints")
    if action != "create":
        return ToolResult.fail(f"unknown checkpoint action: {action}")
    status = rt.checkpoints.create(args.get("label"))
    if status == CREATED:
        return ToolResult.ok("Checkpoint created")
    if status == NO_CHANGES:
        return ToolResult.ok("No changes since last commit; checkpoint not needed")
    return ToolResult.fail(f"checkpoint {status}")


def runtime_tools(rt: Runtime) -> list:
    return [
        ToolSpec(
            "run_background",
            "Start a long-running shell command (server, watcher, long build) "
            "and return a task id immediately.",
            lambda a: _tool_run_background(rt, a),
            {"type": "object",
             "properties": {"command": {"type": "string"},
                            "timeout": {"type": "number",
                                        "description": "Seconds before the task is killed"}},
             "required": ["command"]}),
        ToolSpec(
            "background_status",
            "Show output and state of a background task, or list all tasks "
            "when task_id is omitted.",
            lambda a: _tool_background_status(rt, a),
            {"type": "object",
             "properties": {"task_id": {"type": "string"}}}),
        ToolSpec(
            "sub_agent",
            "Delegate a self-contained task to a sub-agent with a fresh "
            "conversation. Returns its final answer.",
            lambda a: _tool_sub_agent(rt, a),
            {"type": "object",
             "properties": {"prompt": {"type": "string"}},
             "required": ["prompt"]}),
        ToolSpec(
            "parallel_agents",
            f"Run up to {Config.MAX_PARALLEL_AGENTS} independent tasks as "
            "parallel sub-agents.",
            lambda a: _tool_parallel_agents(rt, a),
            {"type": "object",
             "properties": {"tasks": {
                 "type": "array",
                 "items": {"type": "object",
                           "properties": {"title":  {"type": "string"},
                                          "prompt": {"type": "string"}},
                           "required": ["title", "prompt"]}}},
             "required": ["tasks"]}),
        ToolSpec(
            "checkpoint",
            "Create a git checkpoint of the working tree (action=create) or "
            "list existing ones (action=list).",
            lambda a: _tool_checkpoint(rt, a),
            {"type": "object",
             "properties": {"action": {"type": "string", "enum": ["create", "list"]},
                            "label":  {"type": "string"}}}),
    ]


def build_runtime(workspace: Path, model: Any = None,
                  load_mcp: Optional[bool] = None,
                  mode: Mode = Mode.NORMAL) -> Runtime:
    workspace  = Path(workspace).resolve()
    dispatcher = ToolDispatcher()
    rt = Runtime(
        workspace=workspace,
        model=model if model is not None else LLMClient(),
        dispatcher=dispatcher,
        gate=PermissionGate(mode),
        jobs=ConcurrencyManager(workspace),
        checkpoints=CheckpointManager(workspace),
        mcp=MCPManager(workspace, dispatcher),
    )
    dispatcher.register_all(builtin_tools(workspace))
    dispatcher.register_all(runtime_tools(rt))
    if Config.ENABLE_MCP if load_mcp is None else load_mcp:
        rt.mcp.load_servers()
    return rt


# =============================================================================
# WORKSPACE
# =============================================================================

def _lock_workspace(raw_path: str) -> Path:
    """Resolve *raw_path*, create it if needed and pin Config.WORKSPACE."""
    try:
        resolved = Path(raw_path).expanduser().resolve()
        resolved.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(colored(f"\n[!] Cannot use workspace {raw_path!r}: {e}", Colors.RED))
        sys.exit(1)
    Config.WORKSPACE = str(resolved)
    return resolved


# =============================================================================
# CLI ENTRYPOINT
# =============================================================================

_EXIT_CODES: Dict[str, int] = {
    "final":         0,
    "limit_reached": 2,
    "cancelled":     130,
}


def _print_event(event) -> None:
    if isinstance(event, TokenEmitted):
        sys.stdout.write(event.text)
        sys.stdout.flush()


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="localcoder",
        description=f"LocalCoder v{VERSION}: a local LLM coding agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "MODEL:\n"
            "  Any OpenAI-compatible endpoint. Defaults to Ollama at\n"
            "  http://localhost:11434. Set LLM_URL / LLM_MODEL or use a .env file.\n\n"
            "MCP SERVERS:\n"
            "  <workspace>/.localcoder/mcp.json or ~/.config/localcoder/mcp.json\n"
        ),
    )
    parser.add_argument("task",               nargs="?", help="Task to execute")
    parser.add_argument("--workspace",                   help="Workspace directory")
    parser.add_argument("--model",                       help="Model name")
    parser.add_argument("--url",                         help="Chat-completions URL")
    parser.add_argument("--plan",             action="store_true",
                        help="Start in Plan mode (read-only tools)")
    parser.add_argument("--max-iterations",   type=int, metavar="N",
                        help=f"Iteration cap (default {Config.MAX_ITERATIONS})")
    parser.add_argument("--no-mcp",           action="store_true",
                        help="Do not start MCP servers")
    parser.add_argument("--list-checkpoints", action="store_true",
                        help="List checkpoints and exit")
    parser.add_argument("--rollback",         action="store_true",
                        help="Restore the newest checkpoint and exit")
    parser.add_argument("--check",            action="store_true",
                        help="Check the model connection and exit")
    parser.add_argument("--debug",            action="store_true",
                        help="Verbose logging")
    parser.add_argument("--version",          action="version", version=f"v{VERSION}")
    args = parser.parse_args()

    workspace = _lock_workspace(args.workspace or Config.WORKSPACE)

    if args.model:          Config.LLM_MODEL      = args.model
    if args.url:            Config.LLM_URL        = args.url
    if args.max_iterations: Config.MAX_ITERATIONS = args.max_iterations
    if args.no_mcp:         Config.ENABLE_MCP     = False
    if args.debug:          Config.DEBUG          = True

    try:
        Config.validate()
    except ValueError as e:
        print(colored(f"Config error: {e}", Colors.RED))
        return 1

    # ── checkpoint commands ───────────────────────────────────────────────────
    if args.list_checkpoints:
        checkpoints = CheckpointManager(workspace).list()
        if not checkpoints:
            print("No checkpoints.")
            return 0
        print(colored("\nCheckpoints (newest first):", Colors.CYAN, bold=True))
        for cp in checkpoints:
            print(f"  {colored(cp.ref, Colors.CYAN)}  {cp.timestamp}  {cp.label}")
        return 0

    if args.rollback:
        return 0 if CheckpointManager(workspace).rollback() else 1

    # ── model check ───────────────────────────────────────────────────────────
    client = LLMClient()
    if args.check or args.task:
        Log.info(f"Checking {Config.LLM_MODEL} at {Config.LLM_URL}…")
        err = client.validate_connection()
        if err:
            Log.error(f"LLM unavailable: {err}")
            return 1
        Log.success("LLM connected")
        if args.check:
            sandbox = sandbox_info()
            Log.info(f"Shell sandbox: {sandbox['backend']} on {sandbox['platform']}")
            return 0

    if not args.task:
        parser.print_help()
        return 1

    Log.info(f"Workspace : {workspace}")
    runtime = build_runtime(workspace, model=client)
    try:
        if args.plan:
            runtime.enter_plan()
        result = runtime.run(args.task, on_event=_print_event)
        print()
        Log.debug(json.dumps(result.to_dict()))
        if result.status == "limit_reached":
            Log.warning(f"Stopped after {result.iterations} iterations")
        return _EXIT_CODES.get(result.status, 1)
    except ModelUnavailableError as e:
        Log.error(str(e))
        return 1
    except ModelTransportError as e:
        Log.error(f"Model request failed: {e}")
        return 1
    except KeyboardInterrupt:
        print()
        Log.warning("Interrupted")
        return 130
    finally:
        runtime.close()


if __name__ == "__main__":
    sys.exit(main())
