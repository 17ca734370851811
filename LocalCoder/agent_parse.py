#!/usr/bin/env python3
"""
agent_parse.py — Turn raw model output into ToolInvocations.

Local models announce tool calls in several ways. Stages are tried in order
and the first one that yields at least one call wins (never merged):

  1. native     structured tool_calls from the API response
  2. fenced     ```json ... ``` blocks (one object, an array, or several)
  3. json       brace-balanced objects anywhere in the text
  4. xml        <tool_call>{...}</tool_call> and <function=NAME>...</function>
"""
import html
import json
import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from agent_core import Log, ToolInvocation

SOURCE_NATIVE = "native"
SOURCE_FENCED = "fenced"
SOURCE_JSON   = "json"
SOURCE_XML    = "xml"
SOURCE_NONE   = "none"

TEXT_SOURCES = frozenset({SOURCE_FENCED, SOURCE_JSON, SOURCE_XML})

_FENCE_RE     = re.compile(r"```([A-Za-z0-9_+-]*)[ \t]*\r?\n?(.*?)```", re.DOTALL)
_TOOL_CALL_RE = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL)
_FUNCTION_RE  = re.compile(r"<function=([^>]+)>(.*?)</function>", re.DOTALL)
_PARAM_RE     = re.compile(r"<parameter=([^>]+)>(.*?)</parameter>", re.DOTALL)


# =============================================================================
# PUBLIC API
# =============================================================================

def extract_tool_calls(text: str,
                       native: Optional[List[Dict[str, Any]]] = None
                       ) -> Tuple[List[ToolInvocation], str]:
    """Return (invocations, source). source is one of the SOURCE_* names."""
    if native:
        calls = _from_native(native)
        if calls:
            return calls, SOURCE_NATIVE

    text = text or ""
    for source, stage in ((SOURCE_FENCED, _from_fenced),
                          (SOURCE_JSON,   _from_braces),
                          (SOURCE_XML,    _from_xml)):
        calls = stage(text)
        if calls:
            Log.debug(f"Recovered {len(calls)} tool call(s) from text ({source})")
            return calls, source
    return [], SOURCE_NONE


# =============================================================================
# NORMALISATION
# =============================================================================

def _decode_arguments(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def _to_invocation(obj: Any) -> Optional[ToolInvocation]:
    """Accepts {name, arguments} or {function: {name, arguments}}."""
    if not isinstance(obj, dict):
        return None
    fn = obj.get("function")
    if isinstance(fn, dict):
        obj = fn
    name = obj.get("name")
    if not isinstance(name, str) or not name.strip() or "arguments" not in obj:
        return None
    args = _decode_arguments(obj["arguments"])
    if args is None:
        return None
    return ToolInvocation(name=name.strip(), arguments=args)


def _from_native(native: List[Dict[str, Any]]) -> List[ToolInvocation]:
    calls = []
    for tc in native:
        if not isinstance(tc, dict):
            continue
        fn   = tc.get("function") if isinstance(tc.get("function"), dict) else tc
        name = fn.get("name")
        if not isinstance(name, str) or not name:
            continue
        raw  = fn.get("arguments", {})
        args = _decode_arguments(raw)
        if args is None:
            Log.warning(f"Could not decode arguments for {name}: {str(raw)[:80]!r}")
            args = {}
        if tc.get("id"):
            calls.append(ToolInvocation(name=name, arguments=args, id=tc["id"]))
        else:
            calls.append(ToolInvocation(name=name, arguments=args))
    return calls


# =============================================================================
# TEXT STAGES
# =============================================================================

def _match_brace(text: str, start: int) -> Optional[int]:
    """Index of the '}' closing the '{' at start, string- and escape-aware."""
    depth     = 0
    in_string = False
    escaped   = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def _json_objects(text: str) -> Iterator[Dict[str, Any]]:
    """Yield every top-level JSON object found by brace matching."""
    pos = 0
    while True:
        start = text.find("{", pos)
        if start < 0:
            return
        end = _match_brace(text, start)
        if end is None:
            pos = start + 1
            continue
        try:
            obj = json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            pos = start + 1
            continue
        if isinstance(obj, dict):
            yield obj
        pos = end + 1


def _from_fenced(text: str) -> List[ToolInvocation]:
    calls = []
    for m in _FENCE_RE.finditer(text):
        tag, body = m.group(1).lower(), m.group(2).strip()
        if tag not in ("", "json") or not body:
            continue
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            candidates = list(_json_objects(body))
        else:
            candidates = parsed if isinstance(parsed, list) else [parsed]
        for obj in candidates:
            inv = _to_invocation(obj)
            if inv:
                calls.append(inv)
    return calls


def _from_braces(text: str) -> List[ToolInvocation]:
    return [inv for inv in map(_to_invocation, _json_objects(text)) if inv]


def _from_xml(text: str) -> List[ToolInvocation]:
    found: List[Tuple[int, ToolInvocation]] = []

    for m in _TOOL_CALL_RE.finditer(text):
        try:
            inv = _to_invocation(json.loads(m.group(1)))
        except json.JSONDecodeError:
            continue
        if inv:
            found.append((m.start(), inv))

    for m in _FUNCTION_RE.finditer(text):
        name, body = m.group(1).strip(), m.group(2).strip()
        if not name:
            continue
        params = _PARAM_RE.findall(body)
        if params:
            args = {k.strip(): html.unescape(v.strip()) for k, v in params}
        else:
            args = _decode_arguments(body)
            if args is None:
                continue
        found.append((m.start(), ToolInvocation(name=name, arguments=args)))

    found.sort(key=lambda item: item[0])
    return [inv for _, inv in found]
