import json
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from shepherd.artifacts import ARTIFACT_CATALOG
from shepherd.backends.base import AgentBackend
from shepherd.cli import cli
from shepherd.config import load_config

ALL_SECTIONS = sorted(
    {section for entry in ARTIFACT_CATALOG.values() for section in entry.mandatory_sections}
)


class FakeBackend(AgentBackend):
    """Answers every worker step with a valid payload line."""

    def __init__(self) -> None:
        self.executions: list[dict[str, Any]] = []
        self.steps: list[str] = []

    def _payload(self, context: dict[str, Any]) -> dict[str, Any]:
        step = context["step"]
        inputs = context["inputs"]
        self.steps.append(step)
        if step in ("create_artifact", "revise_artifact"):
            payload: dict[str, Any] = {
                "status": "draft",
                "summary": step,
                "title": "CSV export",
                "name": "csv-export",
                "sections": {section: "Written." for section in ALL_SECTIONS},
            }
            if context["role"] == "work-planner":
                payload["phases"] = [
                    {
                        "name": "core",
                        "tasks": [{"title": "Writer"}, {"title": "CLI flag"}],
                    }
                ]
            return payload
        if step == "review_artifact":
            return {
                "status": "reviewed",
                "summary": "looks good",
                "scores": {
                    "consistency": 92,
                    "completeness": 90,
                    "rule_compliance": 95,
                    "feasibility": 88,
                },
                "prior_items": [
                    {"item_id": item["id"], "status": "resolved"} for item in inputs["prior_items"]
                ],
            }
        if step == "check_consistency":
            return {"status": "checked", "summary": "agree", "conflicts": []}
        if step == "execute_task":
            if self.executions:
                return self.executions.pop(0)
            return {"status": "completed", "summary": "implemented", "changed_files": []}
        if step == "quality_check":
            return {"status": "approved", "summary": "checks pass"}
        if step == "diagnose":
            return {
                "status": "diagnosed",
                "summary": "Missing default",
                "findings": ["config is None"],
                "proposed_fix": "Default the config",
            }
        raise AssertionError(f"unexpected step {step}")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        yield "Done."
        yield json.dumps(self._payload(context))


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _setup(tmp_path: Path, monkeypatch) -> tuple[Path, FakeBackend, CliRunner]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    backend = FakeBackend()
    monkeypatch.chdir(repo)
    monkeypatch.setattr("shepherd.cli._build_backend", lambda config, repo_root, state: backend)
    runner = CliRunner()
    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert "Initialized Shepherd in" in init_result.output
    return repo, backend, runner


def _commit_count(repo: Path) -> int:
    proc = subprocess.run(
        ["git", "rev-list", "--count", "HEAD"], cwd=repo, check=True, text=True, capture_output=True
    )
    return int(proc.stdout.strip())


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    repo, _, runner = _setup(tmp_path, monkeypatch)

    task_result = runner.invoke(cli, ["task", "Fix typo in help", "-f", "cli.py"])
    assert task_result.exit_code == 0, task_result.output
    assert "State: completed" in task_result.output
    assert "Tasks: 1/1 committed" in task_result.output

    run_result = runner.invoke(
        cli, ["run", "Add CSV export.", "-f", "a.py", "-f", "b.py", "-f", "c.py"]
    )
    assert run_result.exit_code == 0, run_result.output
    assert "Run ID:" in run_result.output
    assert "Stop point: classification" in run_result.output

    design_result = runner.invoke(cli, ["approve"])
    assert "Stop point: artifact:DesignDoc" in design_result.output
    design_path = repo / "docs" / "design" / "csv-export-design.md"
    assert design_path.exists()

    changes_result = runner.invoke(cli, ["request-changes", "Cover pagination"])
    assert changes_result.exit_code == 0, changes_result.output
    assert "Stop point: artifact:DesignDoc" in changes_result.output
    assert '"version": 2' in design_path.read_text(encoding="utf-8")

    plan_result = runner.invoke(cli, ["approve", "--stop", "artifact:DesignDoc"])
    assert "Stop point: work_plan" in plan_result.output
    assert "T01 [core] Writer" in plan_result.output

    done_result = runner.invoke(cli, ["approve"])
    assert done_result.exit_code == 0, done_result.output
    assert "Tasks: 2/2 committed" in done_result.output
    assert _commit_count(repo) == 4

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    assert '"state": "completed"' in status_result.output

    all_result = runner.invoke(cli, ["status", "--all", "--metrics"])
    payload = json.loads(all_result.output)
    assert len(payload["runs"]) == 2
    assert payload["metrics"]["transitions"]

    resync_result = runner.invoke(cli, ["resync"])
    assert resync_result.exit_code == 0, resync_result.output
    assert "csv-export-design: 0 conflict(s)" in resync_result.output


def test_provisional_run_needs_scope(tmp_path: Path, monkeypatch) -> None:
    _, _, runner = _setup(tmp_path, monkeypatch)

    run_result = runner.invoke(cli, ["run", "Make search faster"])
    assert "Stop point: classification" in run_result.output
    assert "Which files will this change touch?" in run_result.output

    refused = runner.invoke(cli, ["approve"])
    assert refused.exit_code != 0
    assert "provisional" in refused.output

    scope_result = runner.invoke(cli, ["scope", "src/search.py"])
    assert scope_result.exit_code == 0, scope_result.output
    assert "small feature touching 1 file(s)" in scope_result.output

    done_result = runner.invoke(cli, ["approve"])
    assert "Tasks: 1/1 committed" in done_result.output


def test_escalation_is_resolved_from_cli(tmp_path: Path, monkeypatch) -> None:
    _, backend, runner = _setup(tmp_path, monkeypatch)
    backend.executions.append(
        {
            "status": "escalation_needed",
            "summary": "needs a new dependency",
            "events": [{"kind": "new_external_dependency", "description": "Add pandas"}],
        }
    )

    task_result = runner.invoke(cli, ["task", "Export report", "-f", "report.py"])
    assert "Escalation: new_external_dependency (critical)" in task_result.output
    assert "Approve the new dependency" in task_result.output

    resolve_result = runner.invoke(cli, ["resolve", "Use the csv module instead"])
    assert resolve_result.exit_code == 0, resolve_result.output
    assert "State: completed" in resolve_result.output
    assert backend.steps.count("execute_task") == 2


def test_diagnose_and_backend_commands(tmp_path: Path, monkeypatch) -> None:
    repo, backend, runner = _setup(tmp_path, monkeypatch)

    diagnose_result = runner.invoke(cli, ["diagnose", "Crash on start", "-f", "app.py"])
    assert "Stop point: diagnosis" in diagnose_result.output
    assert "Proposed fix: Default the config" in diagnose_result.output

    fix_result = runner.invoke(cli, ["approve"])
    assert "Commit:" in fix_result.output
    assert "fix-1: Fix: Missing default" in fix_result.output
    assert backend.steps[0] == "diagnose"

    backend_result = runner.invoke(cli, ["backend", "openai"])
    assert backend_result.exit_code == 0
    assert load_config(repo / "shepherd.toml").backend.primary == "openai"


def test_approve_without_a_run_fails(tmp_path: Path, monkeypatch) -> None:
    _, _, runner = _setup(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["approve"])

    assert result.exit_code != 0
    assert "No active run" in result.output
