import sys
import threading
import time

import pytest

from agent_jobs import ConcurrencyManager, OutputBuffer
from sandboxed_shell import TIMEOUT_EXIT_CODE

needs_posix = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


@pytest.fixture
def jobs(workspace):
    manager = ConcurrencyManager(workspace, max_output=1000, default_timeout=30,
                                 max_parallel=4, parallel_timeout=10)
    yield manager
    manager.stop_all()


class TestOutputBuffer:
    def test_keeps_newest_bytes(self):
        buf = OutputBuffer(limit=5)
        buf.append(b"abc")
        buf.append(b"defgh")
        assert buf.text() == "defgh"
        assert buf.dropped == 3

    def test_under_limit_untouched(self):
        buf = OutputBuffer(limit=100)
        buf.append(b"hello")
        assert buf.text() == "hello"
        assert buf.dropped == 0


@needs_posix
class TestBackground:
    def test_launch_returns_immediately_and_completes(self, jobs):
        started = time.monotonic()
        task_id = jobs.launch("sleep 0.3; echo out; echo err 1>&2")
        assert time.monotonic() - started < 0.3
        assert jobs.status(task_id)["done"] is False

        assert jobs.wait(task_id, timeout=10)
        status = jobs.status(task_id)
        assert status["done"] is True
        assert status["exit_code"] == 0
        assert status["stdout"].strip() == "out"
        assert status["stderr"].strip() == "err"
        assert status["timed_out"] is False

    def test_exit_code_recorded(self, jobs):
        task_id = jobs.launch("exit 7")
        assert jobs.wait(task_id, timeout=10)
        assert jobs.status(task_id)["exit_code"] == 7

    def test_timeout_kills_and_marks_done(self, jobs):
        task_id = jobs.launch("echo started; sleep 30", timeout=0.5)
        assert jobs.wait(task_id, timeout=10)
        status = jobs.status(task_id)
        assert status["done"] is True
        assert status["timed_out"] is True
        assert status["exit_code"] == TIMEOUT_EXIT_CODE
        assert "started" in status["stdout"]

    def test_output_cap_keeps_most_recent(self, workspace):
        manager = ConcurrencyManager(workspace, max_output=100)
        task_id = manager.launch("i=0; while [ $i -lt 200 ]; do printf 'line%03d\\n' $i; "
                                 "i=$((i+1)); done; printf END")
        assert manager.wait(task_id, timeout=10)
        status = manager.status(task_id)
        assert len(status["stdout"]) == 100
        assert status["stdout"].endswith("line199\nEND")
        assert status["truncated"] is True

    def test_list_and_unknown(self, jobs):
        a = jobs.launch("true")
        b = jobs.launch("true")
        jobs.wait(a, 10)
        jobs.wait(b, 10)
        listed = {t["id"]: t for t in jobs.list_tasks()}
        assert set(listed) == {a, b}
        assert "stdout" not in listed[a]
        assert jobs.status("bg_999") is None
        assert jobs.wait("bg_999", 0.1) is False

    def test_custom_cwd(self, jobs, workspace):
        sub = workspace / "sub"
        sub.mkdir()
        task_id = jobs.launch("pwd", cwd=sub)
        jobs.wait(task_id, 10)
        assert jobs.status(task_id)["stdout"].strip() == str(sub)


class TestParallel:
    def test_truncates_to_limit_in_input_order(self, jobs):
        seen = []
        lock = threading.Lock()

        def runner(prompt, cancel):
            with lock:
                seen.append(prompt)
            time.sleep(0.05)
            return f"done {prompt}"

        tasks = [{"title": f"t{i}", "prompt": f"p{i}"} for i in range(6)]
        outcome = jobs.run_parallel(tasks, runner)

        assert [r["title"] for r in outcome["results"]] == ["t0", "t1", "t2", "t3"]
        assert [r["result"] for r in outcome["results"]] == [
            "done p0", "done p1", "done p2", "done p3"]
        assert sorted(seen) == ["p0", "p1", "p2", "p3"]
        assert outcome["dropped"] == 2
        assert outcome["success"] is True

    def test_runs_concurrently(self, jobs):
        barrier = threading.Barrier(4, timeout=5)

        def runner(prompt, cancel):
            barrier.wait()
            return prompt

        tasks = [{"title": str(i), "prompt": str(i)} for i in range(4)]
        assert jobs.run_parallel(tasks, runner)["success"]

    def test_one_failure_fails_overall(self, jobs):
        def runner(prompt, cancel):
            if prompt == "bad":
                raise ValueError("nope")
            return "ok"

        outcome = jobs.run_parallel(
            [{"title": "a", "prompt": "good"}, {"title": "b", "prompt": "bad"}], runner)
        assert outcome["success"] is False
        assert outcome["results"][0] == {"title": "a", "success": True, "result": "ok"}
        assert outcome["results"][1]["success"] is False
        assert "nope" in outcome["results"][1]["result"]

    def test_deadline_cancels_slow_task(self, workspace):
        manager = ConcurrencyManager(workspace, parallel_timeout=0.3)
        cancelled = threading.Event()

        def runner(prompt, cancel):
            if prompt == "slow":
                if cancel.wait(5):
                    cancelled.set()
                return "late"
            return "quick"

        outcome = manager.run_parallel(
            [{"title": "slow", "prompt": "slow"}, {"title": "fast", "prompt": "fast"}], runner)
        assert outcome["results"][0]["success"] is False
        assert "timed out" in outcome["results"][0]["result"]
        assert outcome["results"][1] == {"title": "fast", "success": True, "result": "quick"}
        assert cancelled.wait(2)

    def test_empty_list(self, jobs):
        assert jobs.run_parallel([], lambda p, c: p) == {
            "success": True, "results": [], "dropped": 0}


def test_explicit_zero_limits_are_kept(workspace):
    manager = ConcurrencyManager(workspace, max_output=0, max_parallel=0)
    assert manager.max_output == 0
    assert manager.max_parallel == 0
    assert manager.run_parallel([{"title": "t", "prompt": "p"}], lambda p, c: p) == {
        "success": True, "results": [], "dropped": 1}
