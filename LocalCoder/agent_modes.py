#!/usr/bin/env python3
"""
agent_modes.py — Normal / Plan / Act permission state machine.

Plan mode is a strict allow-list of read-only tools; the model has to get the
plan approved (switch to Act) before anything mutating runs.
"""
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from agent_core import InvalidModeTransition, Log, PermissionDenied


class Mode(Enum):
    NORMAL = "normal"
    PLAN   = "plan"
    ACT    = "act"


class ModeAction(Enum):
    PLAN     = "plan"
    APPROVE  = "approve"
    EXIT     = "exit"
    ROLLBACK = "rollback"


# also names read-only tools of the wider tool set that this build does not register
READ_ONLY_TOOLS = frozenset({
    "read_file", "search_files", "grep_search", "list_directory",
    "web_fetch", "web_search", "ask_user", "task_list", "task_get",
    "background_status",
})

_TRANSITIONS: Dict[Tuple[Mode, ModeAction], Mode] = {
    (Mode.NORMAL, ModeAction.PLAN):     Mode.PLAN,
    (Mode.ACT,    ModeAction.PLAN):     Mode.PLAN,
    (Mode.PLAN,   ModeAction.APPROVE):  Mode.ACT,
    (Mode.PLAN,   ModeAction.EXIT):     Mode.NORMAL,
    (Mode.ACT,    ModeAction.EXIT):     Mode.NORMAL,
    (Mode.PLAN,   ModeAction.ROLLBACK): Mode.NORMAL,
    (Mode.ACT,    ModeAction.ROLLBACK): Mode.NORMAL,
}

PLAN_REMEDIATION = "Approve the plan to switch to Act mode, then retry."


@dataclass(frozen=True)
class GateDecision:
    allowed:     bool
    reason:      str = ""
    remediation: str = ""

    def to_error(self) -> PermissionDenied:
        return PermissionDenied(self.reason, self.remediation)


class PermissionGate:
    """Holds the current Mode and decides whether a tool may run."""

    def __init__(self, mode: Mode = Mode.NORMAL):
        self._mode = mode
        self._lock = threading.Lock()

    @property
    def mode(self) -> Mode:
        with self._lock:
            return self._mode

    def can(self, action: ModeAction) -> bool:
        with self._lock:
            return (self._mode, action) in _TRANSITIONS

    def transition(self, action) -> Mode:
        if not isinstance(action, ModeAction):
            try:
                action = ModeAction(action)
            except ValueError:
                raise InvalidModeTransition(f"unknown mode action: {action!r}")
        with self._lock:
            target = _TRANSITIONS.get((self._mode, action))
            if target is None:
                raise InvalidModeTransition(
                    f"cannot {action.value} from {self._mode.value} mode")
            previous, self._mode = self._mode, target
        Log.mode(f"Mode: {previous.value} → {target.value} ({action.value})")
        return target

    def check(self, tool_name: str) -> GateDecision:
        mode = self.mode
        if mode is Mode.PLAN and tool_name not in READ_ONLY_TOOLS:
            return GateDecision(
                False,
                f"'{tool_name}' is not allowed in Plan mode (read-only tools only).",
                PLAN_REMEDIATION,
            )
        return GateDecision(True)

    def require(self, tool_name: str, decision: Optional[GateDecision] = None):
        """Raise PermissionDenied when the tool may not run."""
        decision = decision or self.check(tool_name)
        if not decision.allowed:
            raise decision.to_error()
