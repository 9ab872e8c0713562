import subprocess
from pathlib import Path

import pytest

from shepherd.errors import StateStoreError
from shepherd.models import TaskUnit
from shepherd.state import GitCommitter, StateStore


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _unit(unit_id: str, phase: str = "core", **kwargs) -> TaskUnit:
    return TaskUnit(id=unit_id, title=f"Task {unit_id}", phase=phase, **kwargs)


def test_commit_stages_worktree_but_not_state(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    state = StateStore(repo / ".shepherd" / "state")
    state.set_json("metrics", {"count": 1})
    (repo / "writer.py").write_text("print('csv')\n", encoding="utf-8")

    committer = GitCommitter(repo, state_store=state)
    record = committer.commit([_unit("T1", summary="Added writer")], run_id="run-1")

    assert committer.git_enabled
    assert record.commit_id == _run(["git", "rev-parse", "HEAD"], cwd=repo)
    assert record.files_changed == ["writer.py"]
    assert _run(["git", "log", "-1", "--pretty=%s"], cwd=repo) == "T1: Task T1"
    assert "- T1: Added writer" in _run(["git", "log", "-1", "--pretty=%b"], cwd=repo)
    assert state.get_metrics()["commits"][0]["unit_ids"] == ["T1"]


def test_commit_subject_names_phase_or_feature() -> None:
    assert GitCommitter.subject_for([_unit("T1"), _unit("T2")]) == "core: 2 task(s)"
    assert (
        GitCommitter.subject_for([_unit("T1"), _unit("T2", phase="ui")])
        == "feature: 2 task(s) across 2 phase(s)"
    )


def test_local_commit_outside_git(tmp_path: Path) -> None:
    committer = GitCommitter(tmp_path)
    record = committer.commit([_unit("T1", files=["b.py", "a.py"]), _unit("T2", files=["a.py"])])

    assert committer.git_enabled is False
    assert record.commit_id.startswith("local-")
    assert record.files_changed == ["a.py", "b.py"]
    assert record.unit_ids == ["T1", "T2"]


def test_empty_batch_is_refused(tmp_path: Path) -> None:
    with pytest.raises(StateStoreError, match="Nothing to commit"):
        GitCommitter(tmp_path).commit([])
