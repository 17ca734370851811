import shutil
import subprocess

import pytest

from agent_checkpoint import (
    CREATED, FAILED, NO_CHANGES, UNAVAILABLE, CheckpointManager, GitBackend,
)
from agent_core import CheckpointUnavailable

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=str(cwd), check=True, capture_output=True)


@pytest.fixture
def repo(workspace):
    _git(workspace, "init", "-q")
    _git(workspace, "config", "user.name", "Test")
    _git(workspace, "config", "user.email", "test@example.com")
    _git(workspace, "config", "commit.gpgsign", "false")
    (workspace / "a.txt").write_text("v1\n")
    _git(workspace, "add", "a.txt")
    _git(workspace, "commit", "-q", "-m", "initial")
    return workspace


@pytest.fixture
def checkpoints(repo):
    return CheckpointManager(repo, prefix="test-checkpoint", enabled=True)


def test_create_keeps_tree_and_rollback_restores_it(repo, checkpoints):
    (repo / "a.txt").write_text("v2\n")
    (repo / "b.txt").write_text("new\n")

    assert checkpoints.create("before edits") == CREATED
    # the tree is left as it was
    assert (repo / "a.txt").read_text() == "v2\n"
    assert (repo / "b.txt").read_text() == "new\n"

    (repo / "a.txt").write_text("v3\n")
    (repo / "b.txt").unlink()
    (repo / "c.txt").write_text("later\n")

    assert checkpoints.rollback() is True
    assert (repo / "a.txt").read_text() == "v2\n"
    assert (repo / "b.txt").read_text() == "new\n"
    assert not (repo / "c.txt").exists()


def test_rollback_consumes_the_checkpoint(repo, checkpoints):
    (repo / "a.txt").write_text("v2\n")
    checkpoints.create("one")
    assert checkpoints.rollback() is True
    assert checkpoints.list() == []
    assert checkpoints.rollback() is False


def test_clean_tree_needs_no_checkpoint(checkpoints):
    assert checkpoints.create("nothing") == NO_CHANGES
    assert checkpoints.list() == []


def test_list_newest_first_and_read_only(repo, checkpoints):
    (repo / "a.txt").write_text("v2\n")
    checkpoints.create("first")
    (repo / "a.txt").write_text("v3\n")
    checkpoints.create("second")

    listed = checkpoints.list()
    assert [c.label for c in listed] == ["second", "first"]
    assert listed[0].ref == "stash@{0}"
    assert checkpoints.list() == listed
    assert checkpoints.latest().label == "second"
    assert (repo / "a.txt").read_text() == "v3\n"


def test_foreign_stashes_are_ignored(repo, checkpoints):
    (repo / "a.txt").write_text("mine\n")
    _git(repo, "stash", "push", "-q", "-m", "unrelated work")
    assert checkpoints.list() == []
    assert checkpoints.rollback() is False


def test_not_a_repository(workspace):
    manager = CheckpointManager(workspace, enabled=True)
    (workspace / "f.txt").write_text("x")
    assert manager.create("cp") == UNAVAILABLE
    assert manager.list() == []
    assert manager.rollback() is False
    assert (workspace / "f.txt").read_text() == "x"


def test_disabled(repo):
    (repo / "a.txt").write_text("v2\n")
    assert CheckpointManager(repo, enabled=False).create("cp") == UNAVAILABLE


def test_failed_reapply_leaves_changes_recoverable(repo, checkpoints, monkeypatch):
    real_check = GitBackend._check

    def failing_apply(self, *args):
        if args == ("stash", "apply"):
            raise CheckpointUnavailable("git stash apply: conflict")
        return real_check(self, *args)

    (repo / "a.txt").write_text("v2\n")
    monkeypatch.setattr(GitBackend, "_check", failing_apply)
    with pytest.raises(CheckpointUnavailable, match=r"git stash apply stash@\{0\}"):
        checkpoints.git.snapshot_push("test-checkpoint: direct")
    _git(repo, "stash", "pop")

    assert checkpoints.create("before edits") == FAILED
    assert (repo / "a.txt").read_text() == "v1\n"

    monkeypatch.setattr(GitBackend, "_check", real_check)
    assert [c.label for c in checkpoints.list()] == ["before edits"]
    _git(repo, "stash", "apply", "stash@{0}")
    assert (repo / "a.txt").read_text() == "v2\n"
