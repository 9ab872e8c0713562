from __future__ import annotations

import subprocess
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shepherd.errors import StateStoreError
from shepherd.models import TaskUnit, utcnow_iso
from shepherd.state.store import StateStore


@dataclass(slots=True)
class CommitRecord:
    commit_id: str
    subject: str
    unit_ids: list[str]
    run_id: str | None = None
    files_changed: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit_id": self.commit_id,
            "subject": self.subject,
            "unit_ids": list(self.unit_ids),
            "run_id": self.run_id,
            "files_changed": list(self.files_changed),
            "created_at": self.created_at,
        }


class GitCommitter:
    """Commits the working tree for a batch of quality-checked task units.

    Outside a git repository the commit is only recorded locally with a
    ``local-`` identifier.
    """

    def __init__(self, repo_root: Path, state_store: StateStore | None = None) -> None:
        self.repo_root = repo_root.resolve()
        self.state_store = state_store
        self._git_enabled = self._is_git_repo()

    @property
    def git_enabled(self) -> bool:
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self.git_enabled:
            raise StateStoreError("No git repository found. Git commit operations are disabled.")
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise StateStoreError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def changed_files_for_commit(self, commit_hash: str) -> list[str]:
        if not self.git_enabled:
            return []
        proc = self._run_git(["show", "--pretty=format:", "--name-only", commit_hash], check=False)
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def _excluded_pathspecs(self) -> list[str]:
        # Run state is local bookkeeping and stays out of task commits.
        if self.state_store is None:
            return []
        try:
            relative = self.state_store.state_dir.relative_to(self.repo_root)
        except ValueError:
            return []
        return [f":(exclude){relative.as_posix()}"]

    @staticmethod
    def subject_for(units: Sequence[TaskUnit]) -> str:
        if len(units) == 1:
            return f"{units[0].id}: {units[0].title}"
        phases = sorted({unit.phase for unit in units})
        if len(phases) == 1:
            return f"{phases[0]}: {len(units)} task(s)"
        return f"feature: {len(units)} task(s) across {len(phases)} phase(s)"

    def commit(self, units: Sequence[TaskUnit], *, run_id: str | None = None) -> CommitRecord:
        if not units:
            raise StateStoreError("Nothing to commit: no task units given.")
        subject = self.subject_for(units)
        body = "\n".join(f"- {unit.id}: {unit.summary or unit.title}" for unit in units)
        if self.git_enabled:
            self._run_git(["add", "-A", "--", ".", *self._excluded_pathspecs()], check=True)
            self._run_git(["commit", "--allow-empty", "-m", subject, "-m", body], check=True)
            commit_id = self._run_git(["rev-parse", "HEAD"], check=True).stdout.strip()
            files = self.changed_files_for_commit(commit_id)
        else:
            commit_id = f"local-{uuid.uuid4().hex[:8]}"
            files = sorted({path for unit in units for path in unit.files})
        record = CommitRecord(
            commit_id=commit_id,
            subject=subject,
            unit_ids=[unit.id for unit in units],
            run_id=run_id,
            files_changed=files,
        )
        if self.state_store is not None:
            self.state_store.record_event("commits", record.to_dict())
        return record
