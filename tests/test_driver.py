import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from shepherd.artifacts import ARTIFACT_CATALOG, ArtifactDocument, MemoryArtifactStore
from shepherd.classifier import UNKNOWN_SCOPE_QUESTION
from shepherd.config import ShepherdConfig
from shepherd.dispatcher import AgentDispatcher
from shepherd.driver import PipelineDriver, summarize, units_from_phases
from shepherd.errors import PipelineStateError
from shepherd.models import (
    ArtifactState,
    ArtifactType,
    Command,
    PipelineRun,
    PipelineState,
    TaskUnit,
    TaskUnitState,
    TriggerCondition,
    WorkRequest,
)
from shepherd.state import CommitRecord, StateStore

ALL_SECTIONS = sorted(
    {section for entry in ARTIFACT_CATALOG.values() for section in entry.mandatory_sections}
)
ROLES = (
    "prd-creator",
    "technical-designer",
    "ux-designer",
    "work-planner",
    "task-decomposer",
    "document-reviewer",
    "design-sync",
    "task-executor",
    "quality-fixer",
    "investigator",
)


class Crew:
    """Scripted stand-ins for every worker role."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.review_scores: list[int] = []
        self.executions: list[Any] = []
        self.quality: list[dict[str, Any]] = []
        self.thin_drafts = False

    def workers(self) -> dict[str, "RoleFake"]:
        return {role: RoleFake(self, role) for role in ROLES}

    def steps(self, step: str) -> list[dict[str, Any]]:
        return [inputs for called, _, inputs in self.calls if called == step]

    def handle(self, role: str, context: dict[str, Any]) -> dict[str, Any]:
        step = context["step"]
        inputs = context["inputs"]
        self.calls.append((step, role, inputs))
        if step in ("create_artifact", "revise_artifact"):
            sections = (
                {"overview": "thin"}
                if self.thin_drafts
                else {section: f"{role} text" for section in ALL_SECTIONS}
            )
            payload: dict[str, Any] = {
                "status": "draft",
                "summary": f"{step} by {role}",
                "title": "CSV export",
                "name": "export",
                "sections": sections,
            }
            if role == "work-planner":
                payload["phases"] = [
                    {
                        "name": "core",
                        "tasks": [
                            {"id": "T1", "title": "Writer", "files": ["src/writer.py"]},
                            {"id": "T2", "title": "CLI flag", "files": ["src/cli.py"]},
                        ],
                    }
                ]
            return payload
        if step == "review_artifact":
            score = self.review_scores.pop(0) if self.review_scores else 90
            return {
                "status": "reviewed",
                "summary": "review",
                "scores": {
                    "consistency": score,
                    "completeness": score,
                    "rule_compliance": score,
                    "feasibility": score,
                },
                "prior_items": [
                    {"item_id": item["id"], "status": "resolved"} for item in inputs["prior_items"]
                ],
            }
        if step == "check_consistency":
            return {"status": "checked", "summary": "no conflicts", "conflicts": []}
        if step == "execute_task":
            if self.executions:
                scripted = self.executions.pop(0)
                if isinstance(scripted, Exception):
                    raise scripted
                return scripted
            return {
                "status": "completed",
                "summary": f"implemented {inputs['unit']['id']}",
                "changed_files": ["src/extra.py"],
            }
        if step == "quality_check":
            if self.quality:
                return self.quality.pop(0)
            return {"status": "approved", "summary": "checks pass"}
        if step == "diagnose":
            return {
                "status": "diagnosed",
                "summary": "Null config",
                "findings": ["config is None on first start"],
                "proposed_fix": "Default the config object",
                "files": ["src/config.py"],
            }
        raise AssertionError(f"unexpected step {step}")


class RoleFake:
    def __init__(self, crew: Crew, role: str) -> None:
        self.crew = crew
        self.role = role

    async def run(self, instruction: str, context: dict[str, Any]) -> dict[str, Any]:
        _ = instruction
        return self.crew.handle(self.role, context)


class FakeCommitter:
    def __init__(self) -> None:
        self.batches: list[list[str]] = []

    def commit(self, units: Sequence[TaskUnit], *, run_id: str | None = None) -> CommitRecord:
        self.batches.append([unit.id for unit in units])
        return CommitRecord(
            commit_id=f"c{len(self.batches)}",
            subject=", ".join(unit.id for unit in units),
            unit_ids=[unit.id for unit in units],
            run_id=run_id,
        )


def _driver(
    crew: Crew,
    *,
    store: MemoryArtifactStore | None = None,
    config: ShepherdConfig | None = None,
    state: StateStore | None = None,
) -> tuple[PipelineDriver, MemoryArtifactStore, FakeCommitter]:
    artifacts = store or MemoryArtifactStore()
    committer = FakeCommitter()
    dispatcher = AgentDispatcher(crew.workers(), artifacts)
    driver = PipelineDriver(dispatcher, artifacts, committer, config=config, state=state)
    return driver, artifacts, committer


def _medium_request() -> WorkRequest:
    return WorkRequest(
        description="Add CSV export for reports.",
        affected_files=("src/a.py", "src/b.py", "src/c.py"),
    )


def test_task_command_executes_and_commits() -> None:
    crew = Crew()
    driver, _, committer = _driver(crew)

    run = driver.start(Command.TASK, WorkRequest(description="Fix typo in help", affected_files=("cli.py",)))
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.COMPLETED
    assert committer.batches == [["T01"]]
    unit = run.units[0]
    assert unit.state is TaskUnitState.COMMITTED
    assert unit.commit_id == "c1"
    assert unit.files == ["cli.py", "src/extra.py"]
    assert [step for step, _, _ in crew.calls] == ["execute_task", "quality_check"]


def test_medium_run_walks_every_stop_point(tmp_path: Path) -> None:
    crew = Crew()
    state = StateStore(tmp_path / "state")
    driver, artifacts, committer = _driver(crew, state=state)

    run = driver.start(Command.RUN, _medium_request(), run_id="run-1")
    asyncio.run(driver.advance(run))
    assert run.pending_stop is not None and run.pending_stop.id == "classification"

    asyncio.run(driver.advance(driver.approve(run)))
    assert run.pending_stop is not None and run.pending_stop.id == "artifact:DesignDoc"
    assert run.artifacts["DesignDoc"].identifier == "export-design"
    assert run.consistency["DesignDoc"]["dispatched"] is False

    asyncio.run(driver.advance(driver.approve(run, "artifact:DesignDoc")))
    assert run.pending_stop is not None and run.pending_stop.id == "work_plan"
    assert [unit.id for unit in run.units] == ["T1", "T2"]
    assert run.artifacts["TaskFile"].state is ArtifactState.APPROVED
    planner_call = crew.steps("create_artifact")[1]
    assert planner_call["key"] == "WorkPlan"

    asyncio.run(driver.advance(driver.approve(run)))
    assert run.state is PipelineState.COMPLETED
    assert committer.batches == [["T1"], ["T2"]]
    assert [commit["commit_id"] for commit in run.commits] == ["c1", "c2"]
    stored = artifacts.read(ArtifactType.DESIGN_DOC, "export-design")
    assert stored.metadata["status"] == "approved"
    assert run.context.approved == {
        "DesignDoc": "export-design",
        "WorkPlan": "export-plan",
        "TaskFile": "export-tasks",
    }

    persisted = PipelineRun.from_dict(state.load_run("run-1"))
    assert persisted.to_dict() == run.to_dict()
    metrics = state.get_metrics()
    assert {event["to"] for event in metrics["transitions"]} >= {"document_phase", "completed"}
    assert [item["kind"] for item in state.get_decisions()] == ["approve"] * 3


def test_per_phase_strategy_commits_phase_once() -> None:
    crew = Crew()
    config = ShepherdConfig.default()
    config.workflow.commit_strategy = "per-phase"
    driver, _, committer = _driver(crew, config=config)

    run = driver.start(Command.RUN, _medium_request())
    asyncio.run(driver.advance(run))
    for _ in range(3):
        asyncio.run(driver.advance(driver.approve(run)))

    assert run.state is PipelineState.COMPLETED
    assert committer.batches == [["T1", "T2"]]


def test_request_changes_revises_artifact_with_feedback() -> None:
    crew = Crew()
    driver, artifacts, _ = _driver(crew)
    run = driver.start(Command.RUN, _medium_request())
    asyncio.run(driver.advance(run))
    asyncio.run(driver.advance(driver.approve(run)))

    asyncio.run(driver.advance(driver.request_changes(run, "Cover pagination")))

    assert run.pending_stop is not None and run.pending_stop.id == "artifact:DesignDoc"
    revision = crew.steps("revise_artifact")[0]
    assert revision["feedback"] == ["Cover pagination"]
    assert run.artifacts["DesignDoc"].version == 2
    assert artifacts.read(ArtifactType.DESIGN_DOC, "export-design").metadata["version"] == 2
    assert len(crew.steps("check_consistency")) == 0
    assert "DesignDoc" in run.consistency


def test_request_changes_on_work_plan_resets_task_file() -> None:
    crew = Crew()
    driver, _, _ = _driver(crew)
    run = driver.start(Command.RUN, _medium_request())
    asyncio.run(driver.advance(run))
    asyncio.run(driver.advance(driver.approve(run)))
    asyncio.run(driver.advance(driver.approve(run)))
    assert run.pending_stop is not None and run.pending_stop.id == "work_plan"

    asyncio.run(driver.advance(driver.request_changes(run, "Split the writer task")))

    assert run.pending_stop is not None and run.pending_stop.id == "work_plan"
    assert crew.steps("revise_artifact")[0]["feedback"] == ["Split the writer task"]
    assert len([inputs for inputs in crew.steps("create_artifact") if inputs["key"] == "TaskFile"]) == 2


def test_classification_stop_cannot_take_change_requests() -> None:
    driver, _, _ = _driver(Crew())
    run = driver.start(Command.RUN, _medium_request())
    asyncio.run(driver.advance(run))

    with pytest.raises(PipelineStateError, match="scope"):
        driver.request_changes(run, "smaller please")


def test_provisional_classification_needs_scope_before_approval() -> None:
    crew = Crew()
    driver, _, committer = _driver(crew)
    run = driver.start(Command.RUN, WorkRequest(description="Make search faster"))
    asyncio.run(driver.advance(run))

    assert run.pending_stop is not None
    assert run.pending_stop.details == (UNKNOWN_SCOPE_QUESTION,)
    with pytest.raises(PipelineStateError, match="provisional"):
        driver.approve(run)

    asyncio.run(driver.advance(driver.resolve_scope(run, ["src/search.py"])))
    assert run.classification is not None and not run.classification.provisional
    assert run.request.affected_files == ("src/search.py",)

    asyncio.run(driver.advance(driver.approve(run)))
    assert run.state is PipelineState.COMPLETED
    assert committer.batches == [["T01"]]


def test_escalation_waits_for_human_decision() -> None:
    crew = Crew()
    crew.executions.append(
        {
            "status": "escalation_needed",
            "summary": "needs an API change",
            "events": [{"kind": "interface_change", "description": "Rename export()"}],
        }
    )
    driver, _, committer = _driver(crew)
    run = driver.start(Command.TASK, WorkRequest(description="Add export", affected_files=("api.py",)))
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.ESCALATED
    assert run.escalation is not None and run.escalation.kind == "interface_change"
    assert run.units[0].state is TaskUnitState.ESCALATION_NEEDED
    assert committer.batches == []

    asyncio.run(driver.advance(driver.resolve(run, "Keep the old name")))

    unit = run.units[0]
    assert run.state is PipelineState.COMPLETED
    assert unit.decisions == ["Keep the old name"]
    assert unit.attempts == 2
    assert crew.steps("execute_task")[1]["decisions"] == ["Keep the old name"]
    assert run.escalation is None



def test_resolution_reaches_the_escalated_unit_when_ids_repeat() -> None:
    crew = Crew()
    crew.executions.extend(
        [
            {"status": "completed", "summary": "first", "changed_files": []},
            {
                "status": "escalation_needed",
                "summary": "rename",
                "events": [{"kind": "interface_change", "description": "Rename export()"}],
            },
        ]
    )
    driver, _, committer = _driver(crew)
    run = driver.start(Command.TASK, WorkRequest(description="Add export", affected_files=("a.py",)))
    run.units = [
        TaskUnit(id="T1", title="Writer", phase="core"),
        TaskUnit(id="T1", title="Flag", phase="core"),
    ]
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.ESCALATED
    assert [unit.state for unit in run.units] == [
        TaskUnitState.COMMITTED,
        TaskUnitState.ESCALATION_NEEDED,
    ]

    asyncio.run(driver.advance(driver.resolve(run, "Keep the old name")))

    assert run.state is PipelineState.COMPLETED
    assert run.units[0].decisions == []
    assert run.units[1].decisions == ["Keep the old name"]
    assert committer.batches == [["T1"], ["T1"]]


def test_units_from_phases_suffixes_repeated_ids() -> None:
    units = units_from_phases(
        [
            {"name": "core", "tasks": [{"id": "T1", "title": "a"}, {"id": "T1", "title": "b"}]},
            {"name": "cli", "tasks": [{"title": "c"}, {"id": "T1", "title": "d"}]},
        ]
    )

    assert [unit.id for unit in units] == ["T1", "T1-2", "T03", "T1-3"]
    assert [unit.phase for unit in units] == ["core", "core", "cli", "cli"]

def test_three_signal_duplication_suspends_the_phase() -> None:
    crew = Crew()
    crew.executions.append(
        {
            "status": "escalation_needed",
            "summary": "parser already exists",
            "events": [
                {
                    "kind": "duplication",
                    "description": "Same parser in io/csv.py",
                    "signals": ["domain", "processing", "io_shape"],
                }
            ],
        }
    )
    driver, _, _ = _driver(crew)
    run = driver.start(Command.TASK, WorkRequest(description="Add parser", affected_files=("p.py",)))
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.ESCALATED
    assert run.escalation is not None and run.escalation.severity == "high"
    assert run.units[0].state is TaskUnitState.ESCALATION_NEEDED


def test_below_threshold_events_continue() -> None:
    crew = Crew()
    crew.executions.append(
        {
            "status": "escalation_needed",
            "summary": "similar helper exists",
            "changed_files": ["src/util.py"],
            "events": [{"kind": "duplication", "signals": ["naming"]}],
        }
    )
    driver, _, _ = _driver(crew)
    run = driver.start(Command.TASK, WorkRequest(description="Add helper", affected_files=("u.py",)))
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.COMPLETED


def test_environment_unavailable_blocks_then_resumes() -> None:
    crew = Crew()
    crew.executions.append(
        {
            "status": "blocked",
            "summary": "no database",
            "events": [{"kind": "environment_unavailable", "description": "Postgres is down"}],
        }
    )
    driver, _, _ = _driver(crew)
    run = driver.start(Command.TASK, WorkRequest(description="Add index", affected_files=("db.py",)))
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.BLOCKED
    assert run.blocked is not None and run.blocked.reason == "Postgres is down"
    assert run.resume_state is PipelineState.IMPLEMENTATION_PHASE

    asyncio.run(driver.advance(driver.resolve(run, "Database restored")))
    assert run.state is PipelineState.COMPLETED


def test_dispatch_failures_retry_then_block() -> None:
    crew = Crew()
    crew.executions.extend([RuntimeError("backend down"), RuntimeError("backend down")])
    driver, _, _ = _driver(crew)
    run = driver.start(Command.TASK, WorkRequest(description="Add flag", affected_files=("cli.py",)))
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.BLOCKED
    assert run.blocked is not None and run.blocked.step == "execute_task"
    assert run.units[0].state is TaskUnitState.PENDING

    asyncio.run(driver.advance(driver.resolve(run, "Backend is back")))
    assert run.state is PipelineState.COMPLETED
    assert run.units[0].attempts == 3


def test_quality_block_keeps_unit_completed() -> None:
    crew = Crew()
    crew.quality.append({"status": "blocked", "summary": "tests fail", "reason": "2 tests fail"})
    driver, _, committer = _driver(crew)
    run = driver.start(Command.TASK, WorkRequest(description="Add flag", affected_files=("cli.py",)))
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.BLOCKED
    assert run.blocked is not None and run.blocked.reason == "2 tests fail"
    assert run.units[0].state is TaskUnitState.COMPLETED

    asyncio.run(driver.advance(driver.resolve(run, "Tests fixed by hand")))
    assert committer.batches == [["T01"]]


def test_rejected_mandatory_artifact_blocks_and_is_recreated() -> None:
    crew = Crew()
    crew.review_scores.append(10)
    driver, _, _ = _driver(crew)
    run = driver.start(Command.RUN, _medium_request())
    asyncio.run(driver.advance(run))
    asyncio.run(driver.advance(driver.approve(run)))

    assert run.state is PipelineState.BLOCKED
    assert run.blocked is not None and run.blocked.step == "artifact:DesignDoc"
    assert run.artifacts["DesignDoc"].state is ArtifactState.REJECTED

    asyncio.run(driver.advance(driver.resolve(run, "Only cover CSV")))

    creations = [inputs for inputs in crew.steps("create_artifact") if inputs["key"] == "DesignDoc"]
    assert len(creations) == 2
    assert creations[1]["feedback"] == ["Only cover CSV"]
    assert run.pending_stop is not None and run.pending_stop.id == "artifact:DesignDoc"


def test_revision_limit_blocks_until_guidance() -> None:
    crew = Crew()
    crew.thin_drafts = True
    driver, _, _ = _driver(crew)
    run = driver.start(Command.RUN, _medium_request())
    asyncio.run(driver.advance(run))
    asyncio.run(driver.advance(driver.approve(run)))

    assert run.state is PipelineState.BLOCKED
    assert run.blocked is not None and "did not converge" in run.blocked.question
    assert len(crew.steps("revise_artifact")) == 3

    crew.thin_drafts = False
    asyncio.run(driver.advance(driver.resolve(run, "Fill in every section")))

    assert crew.steps("revise_artifact")[-1]["feedback"] == ["Fill in every section"]
    assert run.pending_stop is not None and run.pending_stop.id == "artifact:DesignDoc"


def test_manual_strategy_never_commits() -> None:
    config = ShepherdConfig.default()
    config.workflow.commit_strategy = "manual"
    driver, _, committer = _driver(Crew(), config=config)
    run = driver.start(Command.TASK, WorkRequest(description="Add flag", affected_files=("cli.py",)))
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.COMPLETED
    assert committer.batches == []
    assert run.units[0].state is TaskUnitState.QUALITY_CHECKED


def test_diagnose_produces_fix_unit_after_approval() -> None:
    crew = Crew()
    driver, _, committer = _driver(crew)
    run = driver.start(Command.DIAGNOSE, WorkRequest(description="Crash on start", task_type="fix"))
    asyncio.run(driver.advance(run))

    assert run.pending_stop is not None and run.pending_stop.id == "diagnosis"
    assert run.units[0].id == "fix-1"

    asyncio.run(driver.advance(driver.request_changes(run, "Check the loader too")))
    assert crew.steps("diagnose")[1]["feedback"] == "Check the loader too"

    asyncio.run(driver.advance(driver.approve(run)))
    assert run.state is PipelineState.COMPLETED
    assert committer.batches == [["fix-1"]]
    assert run.units[0].files == ["src/config.py", "src/extra.py"]


def test_resync_checks_every_design_doc() -> None:
    store = MemoryArtifactStore()
    for identifier in ("a-design", "b-design"):
        store.write(
            ArtifactDocument(type=ArtifactType.DESIGN_DOC, identifier=identifier, sections={"overview": "x"})
        )
    crew = Crew()
    driver, _, _ = _driver(crew, store=store)

    run = driver.start(Command.RESYNC, WorkRequest(description="resync"))
    asyncio.run(driver.advance(run))

    assert run.state is PipelineState.COMPLETED
    assert set(run.consistency) == {"a-design", "b-design"}
    assert [inputs["source"] for inputs in crew.steps("check_consistency")] == ["a-design", "b-design"]


def test_approved_common_adr_is_reused() -> None:
    store = MemoryArtifactStore()
    store.write(
        ArtifactDocument(
            type=ArtifactType.ADR,
            identifier="ADR-COMMON-logging",
            sections={"decision": "structured logs"},
            metadata={"status": "approved", "version": 2},
        )
    )
    crew = Crew()
    driver, _, _ = _driver(crew, store=store)
    request = WorkRequest(
        description="Move to event bus",
        affected_files=("bus.py",),
        triggers=frozenset({TriggerCondition.ARCHITECTURE_CHANGE}),
        shared_decisions=("Logging",),
    )
    run = driver.start(Command.RUN, request)
    asyncio.run(driver.advance(run))
    asyncio.run(driver.advance(driver.approve(run)))

    common = run.artifacts["ADR-COMMON:logging"]
    assert common.state is ArtifactState.APPROVED
    assert common.version == 2
    assert [inputs["key"] for inputs in crew.steps("create_artifact")] == ["ADR"]
    assert run.artifacts["ADR"].identifier == "ADR-0001-export"
    assert run.pending_stop is not None and run.pending_stop.id == "artifact:ADR"


def test_approve_outside_a_stop_point_is_rejected() -> None:
    driver, _, _ = _driver(Crew())
    run = driver.start(Command.TASK, WorkRequest(description="x", affected_files=("a.py",)))

    with pytest.raises(PipelineStateError, match="not waiting"):
        driver.approve(run)
    with pytest.raises(PipelineStateError, match="nothing to resolve"):
        driver.resolve(run, "anything")


def test_summarize_reports_units_and_stop() -> None:
    driver, _, _ = _driver(Crew())
    run = driver.start(Command.RUN, _medium_request(), run_id="run-9")
    asyncio.run(driver.advance(run))

    summary = summarize(run)

    assert summary["run_id"] == "run-9"
    assert summary["state"] == "awaiting_approval"
    assert summary["pending_stop"]["id"] == "classification"
    assert summary["classification"]["scale"] == "medium"
