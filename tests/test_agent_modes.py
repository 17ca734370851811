import threading

import pytest

from agent_core import InvalidModeTransition, PermissionDenied
from agent_modes import READ_ONLY_TOOLS, Mode, ModeAction, PermissionGate


class TestTransitions:
    def test_starts_in_normal(self):
        assert PermissionGate().mode is Mode.NORMAL

    def test_plan_approve_exit(self):
        gate = PermissionGate()
        assert gate.transition(ModeAction.PLAN) is Mode.PLAN
        assert gate.transition(ModeAction.APPROVE) is Mode.ACT
        assert gate.transition(ModeAction.EXIT) is Mode.NORMAL

    def test_act_can_go_back_to_plan(self):
        gate = PermissionGate(Mode.ACT)
        assert gate.transition("plan") is Mode.PLAN

    @pytest.mark.parametrize("start", [Mode.PLAN, Mode.ACT])
    def test_rollback_returns_to_normal(self, start):
        gate = PermissionGate(start)
        assert gate.transition(ModeAction.ROLLBACK) is Mode.NORMAL

    @pytest.mark.parametrize("start, action", [
        (Mode.NORMAL, ModeAction.APPROVE),
        (Mode.NORMAL, ModeAction.EXIT),
        (Mode.NORMAL, ModeAction.ROLLBACK),
        (Mode.ACT,    ModeAction.APPROVE),
        (Mode.PLAN,   ModeAction.PLAN),
    ])
    def test_invalid_pairs_raise(self, start, action):
        gate = PermissionGate(start)
        with pytest.raises(InvalidModeTransition):
            gate.transition(action)
        assert gate.mode is start

    def test_unknown_action_raises(self):
        with pytest.raises(InvalidModeTransition):
            PermissionGate().transition("launch")

    def test_can_reports_without_changing(self):
        gate = PermissionGate()
        assert gate.can(ModeAction.PLAN)
        assert not gate.can(ModeAction.APPROVE)
        assert gate.mode is Mode.NORMAL


class TestCheck:
    def test_plan_denies_mutating_tool_with_remediation(self):
        gate = PermissionGate(Mode.PLAN)
        decision = gate.check("write_file")
        assert not decision.allowed
        assert "Act" in decision.remediation
        with pytest.raises(PermissionDenied) as exc:
            gate.require("write_file")
        assert "Act mode" in str(exc.value)

    @pytest.mark.parametrize("tool", sorted(READ_ONLY_TOOLS))
    def test_plan_allows_read_only_tools(self, tool):
        assert PermissionGate(Mode.PLAN).check(tool).allowed

    @pytest.mark.parametrize("mode", [Mode.NORMAL, Mode.ACT])
    def test_other_modes_allow_everything(self, mode):
        gate = PermissionGate(mode)
        assert gate.check("write_file").allowed
        assert gate.check("mcp_anything_goes").allowed


def test_concurrent_transitions_stay_consistent():
    gate   = PermissionGate()
    errors = []

    def flip():
        for _ in range(200):
            try:
                gate.transition(ModeAction.PLAN)
                gate.transition(ModeAction.EXIT)
            except InvalidModeTransition as e:
                errors.append(e)

    threads = [threading.Thread(target=flip) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert gate.mode in (Mode.NORMAL, Mode.PLAN)
