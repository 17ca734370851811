#!/usr/bin/env python3
"""
agent_mcp.py — External tool providers over MCP (JSON-RPC 2.0 on stdio).

Each provider is a child process speaking one JSON object per line. A reader
thread matches responses to pending requests by id, so several threads can
have requests in flight on one connection at once.

Config lives in <workspace>/.localcoder/mcp.json or
~/.config/localcoder/mcp.json:

    {"mcpServers": {"files": {"command": "npx", "args": ["..."], "env": {}}}}

Remote tool T of provider P is exposed locally as mcp_P_T.
"""

import json
import os
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent_core import (
    Config, ExternalProviderError, Log, ProviderTimeoutError, ToolResult,
    VERSION, _IS_WINDOWS,
)
from agent_tools import ToolDispatcher, ToolSpec

PROTOCOL_VERSION  = "2024-11-05"
STDERR_TAIL_CHARS = 4000


def config_paths(workspace: Path) -> List[Path]:
    return [
        Config.state_dir(workspace) / "mcp.json",
        Path.home() / ".config" / "localcoder" / "mcp.json",
    ]


def load_config(workspace: Path) -> Dict[str, Dict[str, Any]]:
    """mcpServers table from the first config file found, or {}."""
    for cfg_file in config_paths(workspace):
        if not cfg_file.exists():
            continue
        try:
            cfg = json.loads(cfg_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            Log.warning(f"Could not read {cfg_file}: {e}")
            return {}
        servers = cfg.get("mcpServers", {}) if isinstance(cfg, dict) else {}
        if not isinstance(servers, dict):
            Log.warning(f"{cfg_file}: 'mcpServers' must be an object")
            return {}
        Log.debug(f"MCP config: {cfg_file} ({len(servers)} server(s))")
        return servers
    return {}


# =============================================================================
# MCP CLIENT (one provider process)
# =============================================================================

class MCPClient:
    """JSON-RPC 2.0 connection to one provider process."""

    def __init__(self, name: str, command: str, args: Optional[List[str]] = None,
                 env: Optional[Dict[str, str]] = None, cwd: Optional[Path] = None):
        self.name    = name
        self.command = command
        self.args    = list(args or [])
        self.env     = dict(env or {})
        self.cwd     = cwd
        self.process: Optional[subprocess.Popen] = None
        self.tools:   List[Dict[str, Any]]       = []
        self.restarts = 0
        self._request_id = 0
        self._pending:   Dict[int, threading.Event] = {}
        self._responses: Dict[int, Dict[str, Any]]  = {}
        self._lock       = threading.Lock()
        self._write_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None
        self._stderr_tail = ""

    # ── lifecycle ────────────────────────────────────────────────────────────

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    @property
    def stderr_tail(self) -> str:
        return self._stderr_tail

    def start(self, timeout: Optional[float] = None):
        """Spawn, handshake and discover tools. Raises ExternalProviderError."""
        timeout = timeout or Config.MCP_DISCOVERY_TIMEOUT
        self.close()
        popen_kwargs: Dict[str, Any] = dict(
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env={**os.environ, **self.env},
            cwd=str(self.cwd) if self.cwd else None,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
        if _IS_WINDOWS:
            popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
        try:
            self.process = subprocess.Popen([self.command] + self.args, **popen_kwargs)
        except OSError as e:
            raise ExternalProviderError(f"cannot spawn '{self.command}': {e}") from e

        proc = self.process
        self._reader = threading.Thread(target=self._read_loop, args=(proc,),
                                        name=f"mcp-{self.name}-reader", daemon=True)
        self._reader.start()
        threading.Thread(target=self._read_stderr, args=(proc,),
                         name=f"mcp-{self.name}-stderr", daemon=True).start()

        deadline = time.monotonic() + timeout
        try:
            self.request("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities":    {},
                "clientInfo":      {"name": "localcoder", "version": VERSION},
            }, timeout=timeout)
            self.notify("notifications/initialized")
            result = self.request("tools/list", {},
                                  timeout=max(0.1, deadline - time.monotonic()))
        except ExternalProviderError:
            if self._stderr_tail:
                Log.debug(f"MCP '{self.name}' stderr: {self._stderr_tail[-500:]}")
            self.close()
            raise
        tools = (result or {}).get("tools", [])
        self.tools = [t for t in tools if isinstance(t, dict) and t.get("name")]

    def close(self):
        proc, self.process = self.process, None
        if proc is not None:
            try:
                proc.kill()
                proc.wait(timeout=2)
            except (OSError, subprocess.TimeoutExpired):
                pass
            for stream in (proc.stdin, proc.stdout, proc.stderr):
                try:
                    if stream:
                        stream.close()
                except OSError:
                    pass
        with self._lock:
            for ev in self._pending.values():
                ev.set()
            self._pending.clear()
            self._responses.clear()

    # ── reader threads ───────────────────────────────────────────────────────

    def _read_stderr(self, proc: subprocess.Popen):
        try:
            for line in proc.stderr:
                self._stderr_tail = (self._stderr_tail + line)[-STDERR_TAIL_CHARS:]
        except (OSError, ValueError):
            pass

    def _read_loop(self, proc: subprocess.Popen):
        try:
            for line in proc.stdout:
                line = line.strip()
                if not line:
                    continue
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    Log.debug(f"MCP '{self.name}' sent non-JSON line: {line[:80]}")
                    continue
                if not isinstance(msg, dict):
                    continue
                if "result" not in msg and "error" not in msg:
                    continue   # notification or server->client request
                rid = msg.get("id")
                # our ids are plain ints; True would otherwise match id 1
                if not isinstance(rid, int) or isinstance(rid, bool):
                    Log.debug(f"MCP '{self.name}' sent response with bad id: {rid!r}")
                    continue
                with self._lock:
                    event = self._pending.get(rid)
                    if event is None:
                        continue   # unknown, timed out or already consumed
                    self._responses[rid] = msg
                    event.set()
        except (OSError, ValueError):
            pass
        with self._lock:
            if self.process is proc:
                for ev in self._pending.values():
                    ev.set()

    # ── requests ─────────────────────────────────────────────────────────────

    def _write(self, payload: Dict[str, Any]):
        proc = self.process
        if proc is None or proc.poll() is not None:
            raise ExternalProviderError(f"MCP '{self.name}' is not running")
        try:
            with self._write_lock:
                proc.stdin.write(json.dumps(payload) + "\n")
                proc.stdin.flush()
        except (OSError, ValueError) as e:
            raise ExternalProviderError(f"MCP '{self.name}' write failed: {e}") from e

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None):
        msg: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        self._write(msg)

    def request(self, method: str, params: Dict[str, Any],
                timeout: Optional[float] = None) -> Dict[str, Any]:
        timeout = timeout or Config.MCP_REQUEST_TIMEOUT
        event   = threading.Event()
        with self._lock:
            self._request_id += 1
            rid = self._request_id
            self._pending[rid] = event
        try:
            self._write({"jsonrpc": "2.0", "id": rid, "method": method, "params": params})
            if not event.wait(timeout):
                raise ProviderTimeoutError(
                    f"MCP '{self.name}' timed out after {timeout}s (method={method})")
        finally:
            with self._lock:
                self._pending.pop(rid, None)
                resp = self._responses.pop(rid, None)

        if resp is None:
            raise ExternalProviderError(f"MCP '{self.name}' exited before answering {method}")
        if "error" in resp:
            err = resp["error"] if isinstance(resp["error"], dict) else {}
            raise ExternalProviderError(
                f"MCP '{self.name}' error: {err.get('message', 'unknown error')}")
        return resp.get("result") or {}

    def call_tool(self, tool_name: str, arguments: Dict[str, Any]) -> ToolResult:
        if not self.alive and self.restarts == 0:
            Log.warning(f"MCP '{self.name}' exited — restarting once")
            self.restarts += 1
            try:
                self.start()
            except ExternalProviderError as e:
                return ToolResult.fail(f"MCP '{self.name}' restart failed: {e}")
        try:
            result = self.request("tools/call",
                                  {"name": tool_name, "arguments": arguments})
        except ExternalProviderError as e:
            return ToolResult.fail(str(e))

        blocks = result.get("content", [])
        text = "\n".join(b.get("text", "") for b in blocks
                         if isinstance(b, dict) and b.get("type") == "text")
        if result.get("isError"):
            return ToolResult.fail(text or f"MCP tool {tool_name} reported an error")
        return ToolResult.ok(text)


# =============================================================================
# MCP MANAGER (the bridge)
# =============================================================================

class MCPManager:
    """Live registry of providers; registers their tools with a dispatcher."""

    def __init__(self, workspace: Path, dispatcher: Optional[ToolDispatcher] = None):
        self.workspace  = Path(workspace)
        self.dispatcher = dispatcher
        self.clients: Dict[str, MCPClient] = {}
        self._lock = threading.Lock()

    def load_servers(self, servers: Optional[Dict[str, Dict[str, Any]]] = None) -> int:
        """Start every configured provider. Failures skip that provider only."""
        if servers is None:
            if not Config.ENABLE_MCP:
                return 0
            servers = load_config(self.workspace)
        started = 0
        for name, settings in servers.items():
            if not isinstance(settings, dict):
                Log.warning(f"MCP '{name}': entry must be an object, skipped")
                continue
            command = settings.get("command", "")
            if not command:
                Log.warning(f"MCP '{name}': no command configured")
                continue
            args, env = settings.get("args") or [], settings.get("env") or {}
            if not isinstance(args, list) or not isinstance(env, dict):
                Log.warning(f"MCP '{name}': 'args' must be a list and 'env' an object")
                continue
            client = MCPClient(name, command, args, env, cwd=self.workspace)
            if self.add_client(client):
                started += 1
        if started:
            Log.info(f"Loaded {started} MCP server(s)")
        return started

    def add_client(self, client: MCPClient) -> bool:
        try:
            client.start()
        except ExternalProviderError as e:
            Log.warning(f"MCP '{client.name}' failed to start: {e}")
            return False
        with self._lock:
            old = self.clients.pop(client.name, None)
            self.clients[client.name] = client
        if old is not None:
            old.close()
        if self.dispatcher is not None:
            self.dispatcher.register_all(self.tool_specs(client))
        Log.success(f"MCP '{client.name}' started ({len(client.tools)} tool(s))")
        return True

    def tool_specs(self, client: MCPClient) -> List[ToolSpec]:
        specs = []
        for tool in client.tools:
            remote = tool["name"]
            specs.append(ToolSpec(
                name=f"mcp_{client.name}_{remote}",
                description=f"[MCP:{client.name}] {tool.get('description', remote)}",
                handler=lambda args, c=client, t=remote: c.call_tool(t, args),
                parameters=tool.get("inputSchema") or {"type": "object", "properties": {}},
            ))
        return specs

    def get_client(self, name: str) -> Optional[MCPClient]:
        with self._lock:
            return self.clients.get(name)

    def call_tool(self, full_name: str, arguments: Dict[str, Any]) -> ToolResult:
        if not full_name.startswith("mcp_"):
            return ToolResult.fail(f"not an MCP tool: {full_name}")
        remainder = full_name[4:]
        with self._lock:
            # longest name first so "a_b" wins over "a" for mcp_a_b_tool
            clients = sorted(self.clients.values(), key=lambda c: -len(c.name))
        for client in clients:
            if remainder.startswith(client.name + "_"):
                return client.call_tool(remainder[len(client.name) + 1:], arguments)
        return ToolResult.fail(f"unknown tool: {full_name}")

    def status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            clients = list(self.clients.values())
        return {c.name: {"alive":    c.alive,
                         "tools":    len(c.tools),
                         "restarts": c.restarts,
                         "stderr":   c.stderr_tail[-200:]}
                for c in clients}

    def close_all(self):
        with self._lock:
            clients = list(self.clients.values())
            self.clients.clear()
        for client in clients:
            if self.dispatcher is not None:
                for tool in client.tools:
                    self.dispatcher.unregister(f"mcp_{client.name}_{tool['name']}")
            client.close()
