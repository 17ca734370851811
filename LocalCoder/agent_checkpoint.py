#!/usr/bin/env python3
"""
agent_checkpoint.py — git-stash checkpoints of the working tree.

A checkpoint stages everything (untracked files included), stashes it under
"<prefix>: <label>" and immediately re-applies it, so the tree is unchanged
but a snapshot is kept in the stash list. Rollback discards the tree and pops
the newest snapshot carrying the prefix. Only that one is restorable.
"""
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from agent_core import CheckpointUnavailable, Config, Log

CREATED     = "created"
NO_CHANGES  = "no_changes"
UNAVAILABLE = "unavailable"
FAILED      = "failed"

_STASH_REF_RE = re.compile(r"^stash@\{(\d+)\}$")


@dataclass(frozen=True)
class Checkpoint:
    label:     str
    timestamp: str
    ref:       str   # stash@{N} at the time of listing

    def to_dict(self):
        return {"label": self.label, "timestamp": self.timestamp, "ref": self.ref}


# =============================================================================
# GIT BACKEND
# =============================================================================

class GitBackend:
    """Thin wrapper over the git CLI for one working tree."""

    def __init__(self, workspace: Path, timeout: int = 60):
        self.workspace = Path(workspace)
        self.timeout   = timeout

    def _git(self, *args: str) -> Tuple[str, int]:
        if shutil.which("git") is None:
            raise CheckpointUnavailable("git is not installed")
        try:
            proc = subprocess.run(
                ["git", *args], cwd=str(self.workspace),
                capture_output=True, text=True, encoding="utf-8",
                errors="replace", timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CheckpointUnavailable(f"git {args[0]} failed: {e}") from e
        return (proc.stdout + proc.stderr).strip(), proc.returncode

    def _check(self, *args: str) -> str:
        output, code = self._git(*args)
        if code != 0:
            raise CheckpointUnavailable(f"git {' '.join(args)}: {output or f'exit {code}'}")
        return output

    def is_repo(self) -> bool:
        try:
            output, code = self._git("rev-parse", "--is-inside-work-tree")
        except CheckpointUnavailable:
            return False
        return code == 0 and output.strip() == "true"

    def has_changes(self) -> bool:
        return bool(self._check("status", "--porcelain"))

    def stage_all(self):
        self._check("add", "-A")

    def snapshot_push(self, message: str):
        self._check("stash", "push", "-m", message)
        try:
            self._check("stash", "apply")
        except CheckpointUnavailable as e:
            # the tree is clean now; the changes live only in the stash
            raise CheckpointUnavailable(
                f"{e}. Your changes are kept in stash@{{0}}; restore them "
                f"with 'git stash apply stash@{{0}}'") from e

    def list_snapshots(self) -> List[Tuple[str, str, str]]:
        """(ref, iso timestamp, subject) newest first."""
        output, code = self._git("stash", "list", "--format=%gd%x09%ci%x09%gs")
        if code != 0 or not output:
            return []
        rows = []
        for line in output.splitlines():
            parts = line.split("\t", 2)
            if len(parts) == 3 and _STASH_REF_RE.match(parts[0]):
                rows.append((parts[0], parts[1], parts[2]))
        return rows

    def discard_working_tree(self):
        self._check("reset", "--hard")
        self._check("clean", "-fd")

    def apply_snapshot(self, ref: str):
        self._check("stash", "pop", ref)


# =============================================================================
# CHECKPOINT MANAGER
# =============================================================================

class CheckpointManager:
    def __init__(self, workspace: Path, prefix: Optional[str] = None,
                 enabled: Optional[bool] = None):
        self.workspace = Path(workspace)
        self.prefix    = prefix or Config.CHECKPOINT_PREFIX
        self.enabled   = Config.ENABLE_CHECKPOINTS if enabled is None else enabled
        self.git       = GitBackend(self.workspace)
        self._lock     = threading.Lock()

    def _message(self, label: str) -> str:
        return f"{self.prefix}: {label}"

    def _label_of(self, subject: str) -> Optional[str]:
        # stash subjects read "On <branch>: <message>"
        marker = f"{self.prefix}: "
        idx = subject.find(marker)
        return subject[idx + len(marker):] if idx >= 0 else None

    def create(self, label: Optional[str] = None) -> str:
        """Snapshot the tree. Returns CREATED, NO_CHANGES, UNAVAILABLE or FAILED."""
        if not self.enabled:
            return UNAVAILABLE
        label = label or datetime.now().isoformat(timespec="seconds")
        with self._lock:
            if not self.git.is_repo():
                Log.warning(f"Checkpoint skipped: {self.workspace} is not a git repository")
                return UNAVAILABLE
            try:
                self.git.stage_all()
                if not self.git.has_changes():
                    Log.info("No changes — checkpoint not needed")
                    return NO_CHANGES
                self.git.snapshot_push(self._message(label))
            except CheckpointUnavailable as e:
                Log.warning(f"Checkpoint failed: {e}")
                return FAILED
        Log.success(f"Checkpoint created: {self._message(label)}")
        return CREATED

    def list(self) -> List[Checkpoint]:
        try:
            if not self.git.is_repo():
                return []
            rows = self.git.list_snapshots()
        except CheckpointUnavailable as e:
            Log.warning(f"Cannot list checkpoints: {e}")
            return []
        checkpoints = []
        for ref, when, subject in rows:
            label = self._label_of(subject)
            if label is not None:
                checkpoints.append(Checkpoint(label=label, timestamp=when, ref=ref))
        return checkpoints

    def latest(self) -> Optional[Checkpoint]:
        found = self.list()
        return found[0] if found else None

    def rollback(self) -> bool:
        """Restore the newest checkpoint, discarding everything since."""
        with self._lock:
            target = self.latest()
            if target is None:
                Log.warning("No checkpoint to roll back to")
                return False
            try:
                self.git.discard_working_tree()
                self.git.apply_snapshot(target.ref)
            except CheckpointUnavailable as e:
                Log.error(f"Rollback failed: {e}")
                return False
        Log.success(f"Rolled back to checkpoint: {target.label}")
        return True
