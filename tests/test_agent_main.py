import json
import sys
from unittest import mock

import pytest

from agent_core import Config
from agent_llm import SUB_AGENT_SYSTEM_PROMPT
from agent_main import build_runtime, main
from agent_modes import Mode

SUB_AGENT_MARK = SUB_AGENT_SYSTEM_PROMPT.split("\n", 1)[0]


def _is_sub_agent(messages):
    return messages and messages[0]["role"] == "system" \
        and messages[0]["content"].startswith(SUB_AGENT_MARK)


def _first_user(messages):
    return next(m["content"] for m in messages if m["role"] == "user")


@pytest.fixture
def runtime_for(workspace):
    built = []

    def _build(model, mode=Mode.NORMAL):
        rt = build_runtime(workspace, model=model, load_mcp=False, mode=mode)
        built.append(rt)
        return rt

    yield _build
    for rt in built:
        rt.close()


def test_runtime_registers_all_tools(runtime_for, scripted, reply):
    rt = runtime_for(scripted([reply("hi")]))
    assert set(rt.dispatcher.names()) == {
        "read_file", "write_file", "list_directory", "run_command",
        "run_background", "background_status", "sub_agent", "parallel_agents",
        "checkpoint",
    }
    assert rt.gate.mode is Mode.NORMAL


def test_run_writes_a_file(runtime_for, scripted, reply, call, workspace):
    model = scripted([
        reply(tool_calls=[call("write_file", {"path": "hello.py", "content": "print('hi')\n"})]),
        reply("Created hello.py"),
    ])
    result = runtime_for(model).run("make hello.py")

    assert result.status == "final"
    assert (workspace / "hello.py").read_text() == "print('hi')\n"
    assert result.transcript.messages[0]["role"] == "system"


def test_plan_mode_run_is_read_only(runtime_for, scripted, reply, call, workspace):
    model = scripted([
        reply(tool_calls=[call("write_file", {"path": "x.txt", "content": "x"})]),
        reply("Plan: write x.txt"),
    ])
    rt = runtime_for(model, mode=Mode.PLAN)
    result = rt.run("plan")
    assert not (workspace / "x.txt").exists()
    tool_turn = next(m for m in result.transcript.messages if m["role"] == "tool")
    assert "Act mode" in json.loads(tool_turn["content"])["error"]


class TestSubAgents:
    def test_sub_agent_runs_with_reduced_catalog(self, runtime_for, scripted, reply, call):
        def respond(messages, tools):
            if _is_sub_agent(messages):
                return reply(f"sub finished: {_first_user(messages)}")
            if messages[-1]["role"] == "tool":
                return reply("all done")
            return reply(tool_calls=[call("sub_agent", {"prompt": "inspect src"})])

        model  = scripted(respond)
        result = runtime_for(model).run("delegate")

        assert result.final_answer == "all done"
        tool_turn = next(m for m in result.transcript.messages if m["role"] == "tool")
        assert tool_turn["content"] == "sub finished: inspect src"

        sub_calls = [c for c in model.calls if _is_sub_agent(c["messages"])]
        assert len(sub_calls) == 1
        assert "sub_agent" not in sub_calls[0]["tools"]
        assert "parallel_agents" not in sub_calls[0]["tools"]
        assert "read_file" in sub_calls[0]["tools"]
        # the sub-agent does not see the parent's conversation
        assert [m["role"] for m in sub_calls[0]["messages"]] == ["system", "user"]

    def test_sub_agent_iteration_cap(self, runtime_for, scripted, reply, call, monkeypatch):
        monkeypatch.setattr(Config, "MAX_SUB_AGENT_ITERATIONS", 2)
        model = scripted(lambda messages, tools: reply(
            tool_calls=[call("list_directory", {})]))
        rt = runtime_for(model)
        answer = rt.run_sub_agent("never stops")
        assert "maximum number of tool iterations" in answer
        assert len(model.calls) == 2

    def test_parallel_agents_truncates_to_limit(self, runtime_for, scripted, reply, call):
        tasks = [{"title": f"task{i}", "prompt": f"job {i}"} for i in range(6)]

        def respond(messages, tools):
            if _is_sub_agent(messages):
                return reply(f"finished {_first_user(messages)}")
            if messages[-1]["role"] == "tool":
                return reply("merged")
            return reply(tool_calls=[call("parallel_agents", {"tasks": tasks})])

        model  = scripted(respond)
        result = runtime_for(model).run("fan out")

        assert result.final_answer == "merged"
        output = next(m for m in result.transcript.messages if m["role"] == "tool")["content"]
        assert output.startswith("[parallel agents]")
        for i in range(4):
            assert f"--- Task {i + 1}: task{i} (ok) ---\nfinished job {i}" in output
        assert "task4" not in output and "task5" not in output
        assert "[2 task(s) over the limit of 4 were not run]" in output

        sub_prompts = sorted(_first_user(c["messages"]) for c in model.calls
                             if _is_sub_agent(c["messages"]))
        assert sub_prompts == ["job 0", "job 1", "job 2", "job 3"]

    def test_parallel_agents_failure_is_reported(self, runtime_for, scripted, reply):
        def respond(messages, tools):
            if "bad" in _first_user(messages):
                raise RuntimeError("sub-agent exploded")
            return reply("fine")

        rt = runtime_for(scripted(respond))
        result = rt.dispatcher.execute("parallel_agents", {"tasks": [
            {"title": "good", "prompt": "good"}, {"title": "bad", "prompt": "bad"}]})

        assert not result.success
        assert "(ok)" in result.output and "(FAILED)" in result.output
        assert "exploded" in result.output

    def test_parallel_agents_rejects_bad_arguments(self, runtime_for, scripted, reply):
        rt = runtime_for(scripted([reply("x")]))
        assert not rt.dispatcher.execute("parallel_agents", {"tasks": []}).success
        assert not rt.dispatcher.execute("parallel_agents", {"tasks": ["text"]}).success


class TestModeHooks:
    def test_plan_and_approve_create_checkpoints(self, runtime_for, scripted, reply):
        rt = runtime_for(scripted([reply("x")]))
        rt.checkpoints = mock.MagicMock()

        assert rt.enter_plan() is Mode.PLAN
        rt.checkpoints.create.assert_called_once_with("Plan/Act start")
        assert rt.approve() is Mode.ACT
        rt.checkpoints.create.assert_called_with("Plan → Act")
        assert rt.exit_mode() is Mode.NORMAL

    def test_rollback_returns_to_normal(self, runtime_for, scripted, reply):
        rt = runtime_for(scripted([reply("x")]), mode=Mode.ACT)
        rt.checkpoints = mock.MagicMock()
        rt.checkpoints.rollback.return_value = True

        assert rt.rollback() is True
        assert rt.gate.mode is Mode.NORMAL

    def test_rollback_in_normal_mode(self, runtime_for, scripted, reply):
        rt = runtime_for(scripted([reply("x")]))
        rt.checkpoints = mock.MagicMock()
        rt.checkpoints.rollback.return_value = False

        assert rt.rollback() is False
        rt.checkpoints.rollback.assert_called_once_with()
        assert rt.gate.mode is Mode.NORMAL


class TestRuntimeTools:
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")
    def test_background_round_trip(self, runtime_for, scripted, reply):
        rt = runtime_for(scripted([reply("x")]))
        started = rt.dispatcher.execute("run_background", {"command": "echo hi"})
        assert started.success and "bg_1" in started.output
        assert rt.jobs.wait("bg_1", timeout=10)

        status = json.loads(rt.dispatcher.execute("background_status", {"task_id": "bg_1"}).output)
        assert status["done"] and status["exit_code"] == 0
        assert status["stdout"] == "hi\n"

        listed = json.loads(rt.dispatcher.execute("background_status", {}).output)
        assert [t["id"] for t in listed] == ["bg_1"]
        assert not rt.dispatcher.execute("background_status", {"task_id": "bg_9"}).success

    def test_background_blocked_command(self, runtime_for, scripted, reply):
        rt = runtime_for(scripted([reply("x")]))
        result = rt.dispatcher.execute("run_background", {"command": "mkfs /dev/sda"})
        assert not result.success
        assert rt.jobs.list_tasks() == []

    def test_checkpoint_tool_outside_repository(self, runtime_for, scripted, reply):
        rt = runtime_for(scripted([reply("x")]))
        assert rt.dispatcher.execute("checkpoint", {"action": "list"}).output == "No checkpoints"
        assert not rt.dispatcher.execute("checkpoint", {"action": "create"}).success
        assert not rt.dispatcher.execute("checkpoint", {"action": "explode"}).success


def test_main_lists_checkpoints_outside_repository(workspace, monkeypatch, capsys):
    monkeypatch.setattr(Config, "WORKSPACE", Config.WORKSPACE)
    monkeypatch.setattr(sys, "argv", ["localcoder", "--workspace", str(workspace),
                                      "--list-checkpoints"])
    assert main() == 0
    assert "No checkpoints" in capsys.readouterr().out


def test_main_reports_unreachable_model(workspace, monkeypatch):
    monkeypatch.setattr(Config, "WORKSPACE", Config.WORKSPACE)
    monkeypatch.setattr(sys, "argv", ["localcoder", "--workspace", str(workspace), "--check"])
    with mock.patch("agent_main.LLMClient.validate_connection", return_value="no server"):
        assert main() == 1


def test_main_check_succeeds(workspace, monkeypatch):
    monkeypatch.setattr(Config, "WORKSPACE", Config.WORKSPACE)
    monkeypatch.setattr(sys, "argv", ["localcoder", "--workspace", str(workspace), "--check"])
    with mock.patch("agent_main.LLMClient.validate_connection", return_value=None):
        assert main() == 0
