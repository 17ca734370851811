#!/usr/bin/env python3
"""
agent_llm.py — Model client and the agent loop.

LLMClient talks to any OpenAI-compatible /v1/chat/completions endpoint
(Ollama by default) and streams the answer over SSE. AgentLoop drives one
conversation: model → tool calls → PermissionGate → ToolDispatcher → tool
turns → model, until the model answers without calls or the iteration cap is
reached.
"""

import json
import re
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from agent_core import (
    AgentEvent, AgentResult, Colors, Config, EventCallback, IterationStarted,
    LimitReached, Log, ModelTransportError, ModelUnavailableError,
    TokenEmitted, ToolCompleted, ToolInvocation, ToolInvoked, ToolResult,
    Transcript, colored, preview_args, strip_thinking,
)
from agent_modes import PermissionGate
from agent_parse import TEXT_SOURCES, extract_tool_calls
from agent_tools import ToolDispatcher

LIMIT_MESSAGE = ("[Reached the maximum number of tool iterations. "
                 "Tell me how to continue if more work is needed.]")

SYSTEM_PROMPT = """You are LocalCoder, a coding agent working inside the user's project.

Use the tools to read, change and run things; never guess file contents.
Call tools through the function-calling interface. If you cannot, write the
call as JSON: {{"name": "<tool>", "arguments": {{...}}}}.
When the task is done, answer in plain text without calling any tool.
Workspace: {workspace}
"""

SUB_AGENT_SYSTEM_PROMPT = """You are a focused sub-agent. Complete exactly the task you are given
using the tools available, then reply with a short plain-text summary of
what you did and what you found. Workspace: {workspace}
"""


# =============================================================================
# LLM CLIENT
# =============================================================================

@dataclass
class ModelResponse:
    content:       str
    tool_calls:    List[Dict[str, Any]] = field(default_factory=list)
    finish_reason: Optional[str] = None
    streamed:      bool = False


_NOT_FOUND_RE = re.compile(r"model.*not found|not found.*model|no such model",
                           re.IGNORECASE | re.DOTALL)


class LLMClient:
    _HEADERS: Dict[str, str] = {"Content-Type": "application/json"}

    def __init__(self, url: Optional[str] = None, model: Optional[str] = None,
                 api_key: Optional[str] = None, timeout: Optional[int] = None,
                 max_retries: Optional[int] = None):
        self.url         = url or Config.LLM_URL
        self.model       = model or Config.LLM_MODEL
        self.api_key     = api_key or Config.LLM_API_KEY
        self.timeout     = timeout or Config.LLM_TIMEOUT
        self.max_retries = max_retries or Config.LLM_MAX_RETRIES
        self._tool_choice_rejected = False

    def _headers(self) -> Dict[str, str]:
        return {**self._HEADERS, "Authorization": f"Bearer {self.api_key}"}

    def _unavailable(self) -> ModelUnavailableError:
        return ModelUnavailableError(
            f"Model '{self.model}' was not found at {self.url}. "
            f"Run `ollama pull {self.model}` and try again.")

    def validate_connection(self) -> Optional[str]:
        """None if the model answers, else a human-readable problem."""
        try:
            r = requests.post(
                self.url,
                json={"model": self.model, "max_tokens": 1,
                      "messages": [{"role": "user", "content": "test"}]},
                headers=self._headers(), timeout=10,
            )
        except requests.ConnectionError:
            return f"Cannot connect to {self.url}. Is Ollama running (`ollama serve`)?"
        except requests.RequestException as e:
            return f"Connection error: {e}"
        if r.status_code == 200:
            return None
        if r.status_code == 404 or _NOT_FOUND_RE.search(r.text or ""):
            return str(self._unavailable())
        if r.status_code == 401:
            return "Authentication failed"
        return f"HTTP {r.status_code}"

    def _build_payload(self, messages: List[Dict[str, Any]],
                       tools: List[Dict[str, Any]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model":       self.model,
            "messages":    messages,
            "temperature": Config.TEMPERATURE,
            "stream":      True,
        }
        if Config.MAX_TOKENS > 0:
            payload["max_tokens"] = Config.MAX_TOKENS
        if tools:
            payload["tools"] = tools
            if not self._tool_choice_rejected:
                payload["tool_choice"] = "auto"
        return payload

    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        return requests.post(self.url, json=payload, headers=self._headers(),
                             stream=True, timeout=self.timeout)

    def chat(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]],
             on_token: Optional[Callable[[str], None]] = None) -> ModelResponse:
        """One completion. Raises ModelUnavailableError / ModelTransportError."""
        payload    = self._build_payload(messages, tools)
        last_error = ""
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = self._post(payload)
                if resp.status_code == 400 and "tool_choice" in (resp.text or "").lower():
                    Log.warning("Model rejected tool_choice — disabling for this client")
                    self._tool_choice_rejected = True
                    payload.pop("tool_choice", None)
                    resp = self._post(payload)
                if resp.status_code == 404 or (
                        resp.status_code >= 400 and _NOT_FOUND_RE.search(resp.text or "")):
                    raise self._unavailable()
                if resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}"
                    Log.warning(f"LLM returned {resp.status_code} (attempt {attempt})")
                    if attempt < self.max_retries:
                        time.sleep(Config.LLM_RETRY_DELAY * attempt)
                    continue
                if resp.status_code >= 400:
                    raise ModelTransportError(
                        f"LLM request failed: HTTP {resp.status_code}: {(resp.text or '')[:200]}")
                return self._parse_stream(resp, on_token)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = str(e)
                Log.warning(f"LLM connection problem (attempt {attempt}): {e}")
                if attempt < self.max_retries:
                    time.sleep(Config.LLM_RETRY_DELAY * attempt)
            except requests.RequestException as e:
                raise ModelTransportError(f"LLM request failed: {e}") from e
        raise ModelTransportError(
            f"LLM failed after {self.max_retries} attempts: {last_error}")

    def _parse_stream(self, resp, on_token: Optional[Callable[[str], None]]) -> ModelResponse:
        content       = ""
        tool_calls: Dict[int, Dict[str, Any]] = {}
        next_idx      = 0
        finish_reason = None
        in_think      = False
        streamed      = False

        resp.encoding = "utf-8"

        for line in resp.iter_lines(decode_unicode=True):
            if not line:
                continue
            if line.startswith("data: "):
                data = line[6:].strip()
            elif line.startswith("{"):
                data = line.strip()   # non-SSE error body
            else:
                continue
            if data == "[DONE]":
                break
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                continue

            if chunk.get("error"):
                err = chunk["error"]
                msg = err.get("message", "") if isinstance(err, dict) else str(err)
                if _NOT_FOUND_RE.search(msg):
                    raise self._unavailable()
                raise ModelTransportError(f"LLM stream error: {msg}")

            choices = chunk.get("choices", [])
            if not choices:
                continue
            choice = choices[0]
            delta  = choice.get("delta") or choice.get("message") or {}

            if choice.get("finish_reason"):
                finish_reason = choice["finish_reason"]

            raw_content = delta.get("content")
            if raw_content:
                content += raw_content
                if on_token:
                    for part in re.split(r'(</?think>)', raw_content, flags=re.IGNORECASE):
                        if not part:
                            continue
                        if part.lower() == "<think>":
                            in_think = True
                        elif part.lower() == "</think>":
                            in_think = False
                        elif in_think:
                            if Config.DEBUG:
                                sys.stdout.write(colored(part, Colors.GRAY))
                                sys.stdout.flush()
                        else:
                            streamed = True
                            on_token(part)

            for tc in delta.get("tool_calls") or []:
                idx = tc.get("index", next_idx)
                if idx not in tool_calls:
                    tool_calls[idx] = {
                        "id":       tc.get("id") or f"tc_{idx}",
                        "type":     "function",
                        "function": {"name": None, "arguments": ""},
                    }
                    next_idx += 1
                fn = tc.get("function") or {}
                if fn.get("name"):
                    tool_calls[idx]["function"]["name"] = fn["name"]
                args = fn.get("arguments")
                if isinstance(args, str):
                    tool_calls[idx]["function"]["arguments"] += args
                elif isinstance(args, dict):
                    tool_calls[idx]["function"]["arguments"] = json.dumps(args)

        calls = []
        for i in sorted(tool_calls):
            tc = tool_calls[i]
            if not tc["function"]["name"]:
                Log.warning(f"Tool call {i} missing name — skipping")
                continue
            args_str = tc["function"]["arguments"].strip()
            if not args_str:
                tc["function"]["arguments"] = "{}"
            else:
                tc["function"]["arguments"] = _repair_arguments(
                    tc["function"]["name"], args_str)
            calls.append(tc)

        if finish_reason == "length":
            Log.warning("Generation stopped: output token limit hit (finish_reason=length)")

        clean_content, _ = strip_thinking(content)
        return ModelResponse(clean_content, calls, finish_reason, streamed)


def _repair_arguments(fn_name: str, args_str: str) -> str:
    """Close braces a truncated stream left open. Returns args_str if unfixable."""
    try:
        json.loads(args_str)
        return args_str
    except json.JSONDecodeError:
        pass
    opens, closes = args_str.count("{"), args_str.count("}")
    if len(args_str) < 500 and opens > closes:
        candidate = args_str + "}" * (opens - closes)
        try:
            json.loads(candidate)
        except json.JSONDecodeError:
            return args_str
        Log.debug(f"Auto-repaired arguments for '{fn_name}': added {opens - closes} brace(s)")
        return candidate
    return args_str


# =============================================================================
# AGENT LOOP
# =============================================================================

class AgentLoop:
    """
    Drive one transcript to a final answer.

    *model* is anything with chat(messages, tools, on_token) -> ModelResponse.
    Tool failures (unknown tool, denied by the gate, handler error) become
    tool turns the model can react to; only model errors propagate.
    """

    def __init__(
        self,
        model,
        dispatcher: ToolDispatcher,
        gate: PermissionGate,
        transcript: Optional[Transcript] = None,
        max_iterations: Optional[int] = None,
        exclude_tools: Iterable[str] = (),
        on_event: Optional[EventCallback] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.model          = model
        self.dispatcher     = dispatcher
        self.gate           = gate
        self.transcript     = transcript if transcript is not None else Transcript()
        self.max_iterations = (Config.MAX_ITERATIONS if max_iterations is None
                               else max_iterations)
        self.exclude_tools  = frozenset(exclude_tools)
        self.on_event       = on_event
        self.cancel         = cancel or threading.Event()
        self.events: List[AgentEvent] = []

    def _emit(self, event: AgentEvent):
        self.events.append(event)
        if self.on_event:
            try:
                self.on_event(event)
            except Exception as e:
                Log.warning(f"Event subscriber failed on {event.type}: {e}")

    def _on_token(self, text: str):
        self._emit(TokenEmitted(text=text))

    def _result(self, status: str, answer: str, iterations: int) -> AgentResult:
        return AgentResult(status=status, final_answer=answer,
                           transcript=self.transcript, iterations=iterations,
                           events=list(self.events))

    def _dispatch(self, inv: ToolInvocation) -> ToolResult:
        self._emit(ToolInvoked(name=inv.name, args_preview=preview_args(inv.arguments)))
        decision = self.gate.check(inv.name)
        if inv.name in self.exclude_tools:
            result = ToolResult.fail(f"tool not available here: {inv.name}")
        elif not decision.allowed:
            denied = decision.to_error()
            Log.warning(str(denied))
            result = ToolResult.fail(str(denied))
        else:
            result = self.dispatcher.execute(inv.name, inv.arguments)
        message = result.error if not result.success else (result.output[:200] or "ok")
        self._emit(ToolCompleted(name=inv.name, success=result.success, message=message or ""))
        return result

    def run(self, prompt: Optional[str] = None) -> AgentResult:
        if prompt is not None:
            self.transcript.add_user(prompt)
        catalog = self.dispatcher.catalog(exclude=self.exclude_tools)

        for iteration in range(1, self.max_iterations + 1):
            if self.cancel.is_set():
                Log.warning("Agent loop cancelled")
                return self._result("cancelled", "", iteration - 1)

            self._emit(IterationStarted(n=iteration, max=self.max_iterations))
            Log.debug(f"Iteration {iteration}/{self.max_iterations}")

            response = self.model.chat(self.transcript.messages, catalog,
                                       on_token=self._on_token)
            calls, source = extract_tool_calls(response.content, response.tool_calls)
            content = response.content or ""

            if not calls:
                if content and not response.streamed:
                    self._on_token(content)
                self.transcript.add_assistant(content)
                return self._result("final", content, iteration)

            if source in TEXT_SOURCES:
                content = ""
            elif content and not response.streamed:
                self._on_token(content)
            self.transcript.add_assistant(content, calls)

            for inv in calls:
                if self.cancel.is_set():
                    result = ToolResult.fail("cancelled before execution")
                else:
                    result = self._dispatch(inv)
                self.transcript.add_tool_result(inv, result)

        Log.warning(f"Iteration limit reached ({self.max_iterations})")
        self._emit(LimitReached(iterations=self.max_iterations))
        self._on_token(LIMIT_MESSAGE)
        self.transcript.add_assistant(LIMIT_MESSAGE)
        return self._result("limit_reached", LIMIT_MESSAGE, self.max_iterations)
