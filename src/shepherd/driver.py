"""Resumable pipeline state machine.

The driver composes classification, planning, the gated document phase and
the implementation cycle. ``advance`` performs one step at a time until the
run reaches a state that needs a human (a stop point, an escalation or a
blocked report) or completes. Every transition is checked against the
pipeline transition table, logged and recorded.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from shepherd.artifacts import ARTIFACT_CATALOG, ArtifactDocument, ArtifactStore, document_from_draft
from shepherd.classifier import classify, essence_of
from shepherd.commit import CommitPolicy
from shepherd.config import ShepherdConfig
from shepherd.consistency import check_consistency, design_doc_refs
from shepherd.dispatcher import AgentDispatcher, DispatchRequest, UpstreamRef
from shepherd.errors import (
    ArtifactStoreError,
    DispatchError,
    PipelineStateError,
    RevisionLimitExceeded,
    StateStoreError,
)
from shepherd.escalation import route_all
from shepherd.gate import GateController, GateOutcome, GateThresholds
from shepherd.models import (
    ArtifactInstance,
    ArtifactSpec,
    ArtifactState,
    ArtifactType,
    BlockedReport,
    Command,
    CommitStrategy,
    EscalationRequest,
    PipelineRun,
    PipelineState,
    RunContext,
    StopPoint,
    TaskUnit,
    TaskUnitState,
    WorkRequest,
    can_transition,
    utcnow_iso,
)
from shepherd.planner import plan
from shepherd.revision import RevisionController
from shepherd.schemas import (
    ArtifactDraft,
    DiagnosisPayload,
    ExecutionPayload,
    QualityPayload,
)
from shepherd.state.commits import CommitRecord
from shepherd.state.store import StateStore

logger = logging.getLogger(__name__)

ENTRY_STATES: dict[Command, PipelineState] = {
    Command.RUN: PipelineState.CLASSIFYING,
    Command.TASK: PipelineState.IMPLEMENTATION_PHASE,
    Command.DIAGNOSE: PipelineState.PLANNING,
    Command.RESYNC: PipelineState.DOCUMENT_PHASE,
}

HALT_STATES = frozenset(
    {
        PipelineState.AWAITING_APPROVAL,
        PipelineState.ESCALATED,
        PipelineState.BLOCKED,
        PipelineState.COMPLETED,
    }
)

CLASSIFICATION_STOP = "classification"
WORK_PLAN_STOP = "work_plan"
DIAGNOSIS_STOP = "diagnosis"
ARTIFACT_STOP_PREFIX = "artifact:"

_DISPATCH_OPTIONS = (
    "Retry the failed step",
    "Fix the worker or backend configuration, then resume",
)
_REVISION_OPTIONS = (
    "Give revision guidance and resume",
    "Narrow the request and start a new run",
)
_REJECTED_OPTIONS = (
    "Describe what the artifact must cover and resume to recreate it",
    "Abandon this run and resubmit a revised request",
)
_TASK_BLOCKED_OPTIONS = (
    "Clarify the task and resume",
    "Fix the reported problem manually, then resume",
)


class Committer(Protocol):
    def commit(self, units: Sequence[TaskUnit], *, run_id: str | None = None) -> CommitRecord:
        """Commit a batch of quality-checked units."""


def artifact_stop_id(key: str) -> str:
    return f"{ARTIFACT_STOP_PREFIX}{key}"


def unit_from_request(request: WorkRequest, *, unit_id: str = "T01") -> TaskUnit:
    return TaskUnit(
        id=unit_id,
        title=essence_of(request.description)[:120] or "Implement request",
        phase="phase-1",
        description=request.description,
        files=list(request.affected_files or ()),
    )


def units_from_phases(phases: Sequence[dict[str, Any]]) -> list[TaskUnit]:
    units: list[TaskUnit] = []
    taken: set[str] = set()
    for phase_index, phase in enumerate(phases, start=1):
        phase_name = str(phase.get("name") or f"phase-{phase_index}")
        for task in phase.get("tasks", []):
            unit_id = str(task.get("id") or f"T{len(units) + 1:02d}")
            # Resolutions address units by id; a repeat gets a suffix.
            base, suffix = unit_id, 2
            while unit_id in taken:
                unit_id = f"{base}-{suffix}"
                suffix += 1
            taken.add(unit_id)
            units.append(
                TaskUnit(
                    id=unit_id,
                    title=str(task.get("title", "")),
                    phase=phase_name,
                    description=str(task.get("description", "")),
                    files=[str(item) for item in task.get("files", [])],
                )
            )
    return units


class PipelineDriver:
    def __init__(
        self,
        dispatcher: AgentDispatcher,
        artifacts: ArtifactStore,
        committer: Committer,
        *,
        config: ShepherdConfig | None = None,
        state: StateStore | None = None,
    ) -> None:
        self.config = config or ShepherdConfig.default()
        self.dispatcher = dispatcher
        self.artifacts = artifacts
        self.committer = committer
        self.state = state
        self.gate = GateController(
            dispatcher,
            GateThresholds.from_config(self.config.gate),
            perspectives=self.config.workflow.review_perspectives,
        )
        self.revision = RevisionController(
            dispatcher,
            self.gate,
            artifacts,
            max_attempts=self.config.workflow.max_revision_attempts,
        )

    # Bookkeeping

    def _record(self, category: str, event: dict[str, Any]) -> None:
        if self.state is not None:
            self.state.record_event(category, event)

    def _persist(self, run: PipelineRun) -> None:
        if self.state is not None:
            self.state.save_run(run.to_dict())

    def _transition(self, run: PipelineRun, target: PipelineState) -> None:
        if not can_transition(run.state, target):
            raise PipelineStateError(f"Run {run.run_id} cannot move from {run.state} to {target}.")
        entry = {"from": str(run.state), "to": str(target), "at": utcnow_iso()}
        logger.info("Run %s: %s -> %s", run.run_id, run.state, target)
        run.state = target
        run.history.append(entry)
        self._record("transitions", {"run_id": run.run_id, **entry})

    def _stop(self, run: PipelineRun, stop: StopPoint, resume: PipelineState) -> None:
        run.pending_stop = stop
        run.resume_state = resume
        self._transition(run, PipelineState.AWAITING_APPROVAL)
        self._record("stop_points", {"run_id": run.run_id, **stop.to_dict()})

    def _block(self, run: PipelineRun, report: BlockedReport) -> None:
        run.blocked = report
        run.resume_state = run.state
        self._transition(run, PipelineState.BLOCKED)
        logger.warning("Run %s blocked: %s", run.run_id, report.reason)
        self._record("blocked", {"run_id": run.run_id, **report.to_dict()})

    # Public operations

    def start(
        self,
        command: Command,
        request: WorkRequest,
        *,
        run_id: str | None = None,
    ) -> PipelineRun:
        run_id = run_id or f"run-{uuid.uuid4().hex[:8]}"
        entry = ENTRY_STATES[command]
        run = PipelineRun(
            run_id=run_id,
            command=command,
            request=request,
            state=entry,
            commit_strategy=self.config.commit_strategy,
            context=RunContext(run_id=run_id),
        )
        if command is Command.TASK:
            run.units = [unit_from_request(request)]
        run.history.append({"from": None, "to": str(entry), "at": utcnow_iso()})
        logger.info("Started %s run %s in %s", command, run_id, entry)
        self._persist(run)
        return run

    async def advance(self, run: PipelineRun) -> PipelineRun:
        """Step the run until it halts for a human or completes."""
        failures = 0
        retries = max(0, self.config.workflow.dispatch_retries)
        while run.state not in HALT_STATES:
            try:
                await self._step(run)
                failures = 0
            except DispatchError as exc:
                failures += 1
                self._record(
                    "dispatch_failures",
                    {
                        "run_id": run.run_id,
                        "step": exc.step,
                        "attempt": failures,
                        "error": str(exc),
                    },
                )
                if failures > retries:
                    failures = 0
                    self._block(
                        run,
                        BlockedReport(
                            reason=str(exc),
                            question=(
                                f"Step '{exc.step or 'unknown'}' kept failing after "
                                f"{retries + 1} attempt(s). How should the run proceed?"
                            ),
                            suggested_options=_DISPATCH_OPTIONS,
                            step=exc.step,
                        ),
                    )
                else:
                    logger.warning("Retrying after dispatch failure: %s", exc)
            except RevisionLimitExceeded as exc:
                self._block(
                    run,
                    BlockedReport(
                        reason=str(exc),
                        question=(
                            f"Artifact {exc.artifact_key} did not converge after "
                            f"{exc.attempts} revision(s). What should change?"
                        ),
                        suggested_options=_REVISION_OPTIONS,
                        step=artifact_stop_id(exc.artifact_key),
                    ),
                )
            except (ArtifactStoreError, StateStoreError) as exc:
                self._block(
                    run,
                    BlockedReport(
                        reason=str(exc),
                        question="Storage failed. Repair it and resume?",
                        suggested_options=("Repair storage access, then resume",),
                    ),
                )
            self._persist(run)
        return run

    def approve(self, run: PipelineRun, stop_id: str | None = None) -> PipelineRun:
        stop = self._pending_stop(run, stop_id)
        if stop.id == CLASSIFICATION_STOP and run.classification and run.classification.provisional:
            raise PipelineStateError(
                "Classification is provisional; answer the scope questions before approving."
            )
        run.approvals.append(stop.id)
        self._record_decision(run, {"kind": "approve", "stop": stop.id})
        target = run.resume_state or PipelineState.CLASSIFYING
        run.pending_stop = None
        run.resume_state = None
        self._transition(run, target)
        self._persist(run)
        return run

    def request_changes(
        self, run: PipelineRun, feedback: str, stop_id: str | None = None
    ) -> PipelineRun:
        stop = self._pending_stop(run, stop_id)
        if stop.id == CLASSIFICATION_STOP:
            raise PipelineStateError("Change the classification evidence with the scope command.")
        self._record_decision(run, {"kind": "request_changes", "stop": stop.id, "feedback": feedback})
        if stop.id == DIAGNOSIS_STOP:
            run.context.note("diagnosis_feedback", feedback)
            run.diagnosis = None
            run.units = []
            target = PipelineState.PLANNING
        else:
            key = (
                str(ArtifactType.WORK_PLAN)
                if stop.id == WORK_PLAN_STOP
                else stop.id.removeprefix(ARTIFACT_STOP_PREFIX)
            )
            artifact = run.artifacts.get(key)
            if artifact is None:
                raise PipelineStateError(f"No artifact '{key}' in run {run.run_id}.")
            artifact.feedback.append(feedback)
            artifact.transition(ArtifactState.NEEDS_REVISION)
            run.consistency.pop(key, None)
            if key == str(ArtifactType.WORK_PLAN):
                task_key = str(ArtifactType.TASK_FILE)
                if task_key in run.artifacts:
                    run.artifacts[task_key] = ArtifactInstance(spec=run.artifacts[task_key].spec)
                run.units = []
            target = PipelineState.DOCUMENT_PHASE
        run.pending_stop = None
        run.resume_state = None
        self._transition(run, target)
        self._persist(run)
        return run

    def resolve(self, run: PipelineRun, decision: str) -> PipelineRun:
        """Supply the human decision for an escalation or a blocked run."""
        if run.state not in (PipelineState.ESCALATED, PipelineState.BLOCKED):
            raise PipelineStateError(f"Run {run.run_id} is {run.state}; nothing to resolve.")
        decision = decision.strip()
        if not decision:
            raise PipelineStateError("A resolution needs a decision.")

        if run.escalation is not None:
            unit = run.escalated_unit(run.escalation.unit_id)
            if unit is not None:
                unit.decisions.append(decision)
                unit.escalation = None
                unit.transition(TaskUnitState.PENDING)
        run.context.record_decision(decision)
        self._record_decision(
            run,
            {
                "kind": "resolve",
                "escalation": None if run.escalation is None else run.escalation.to_dict(),
                "blocked": None if run.blocked is None else run.blocked.to_dict(),
                "decision": decision,
            },
        )

        if run.state is PipelineState.ESCALATED:
            target = PipelineState.IMPLEMENTATION_PHASE
        else:
            target = run.resume_state or PipelineState.CLASSIFYING
            self._apply_block_resolution(run, decision)
        run.escalation = None
        run.blocked = None
        run.resume_state = None
        self._transition(run, target)
        self._persist(run)
        return run

    def resolve_scope(self, run: PipelineRun, affected_files: Sequence[str]) -> PipelineRun:
        stop = self._pending_stop(run, CLASSIFICATION_STOP)
        files = tuple(item for item in affected_files if item.strip())
        if not files:
            raise PipelineStateError("Scope answers must name at least one affected file.")
        run.request = dataclasses.replace(run.request, affected_files=files, open_questions=())
        run.context.record_decision(f"scope: {', '.join(files)}")
        self._record_decision(run, {"kind": "scope", "stop": stop.id, "files": list(files)})
        run.pending_stop = None
        run.resume_state = None
        self._transition(run, PipelineState.CLASSIFYING)
        self._persist(run)
        return run

    def _pending_stop(self, run: PipelineRun, stop_id: str | None) -> StopPoint:
        if run.state is not PipelineState.AWAITING_APPROVAL or run.pending_stop is None:
            raise PipelineStateError(f"Run {run.run_id} is not waiting at a stop point.")
        if stop_id and stop_id != run.pending_stop.id:
            raise PipelineStateError(
                f"Run {run.run_id} is waiting at '{run.pending_stop.id}', not '{stop_id}'."
            )
        return run.pending_stop

    def _record_decision(self, run: PipelineRun, decision: dict[str, Any]) -> None:
        if self.state is not None:
            self.state.add_decision({"run_id": run.run_id, **decision})

    def _apply_block_resolution(self, run: PipelineRun, decision: str) -> None:
        step = run.blocked.step if run.blocked else None
        if not step or not step.startswith(ARTIFACT_STOP_PREFIX):
            return
        key = step.removeprefix(ARTIFACT_STOP_PREFIX)
        artifact = run.artifacts.get(key)
        if artifact is None:
            return
        if artifact.state is ArtifactState.REJECTED:
            run.artifacts[key] = ArtifactInstance(spec=artifact.spec, feedback=[decision])
        else:
            artifact.feedback.append(decision)

    # Steps

    async def _step(self, run: PipelineRun) -> None:
        handlers: dict[PipelineState, Callable[[PipelineRun], Awaitable[None]]] = {
            PipelineState.CLASSIFYING: self._classify,
            PipelineState.PLANNING: self._plan,
            PipelineState.DOCUMENT_PHASE: self._document_phase,
            PipelineState.IMPLEMENTATION_PHASE: self._implementation_phase,
        }
        await handlers[run.state](run)

    async def _classify(self, run: PipelineRun) -> None:
        classification = classify(run.request)
        run.classification = classification
        run.context.note("classification", classification.to_dict())
        self._record("classifications", {"run_id": run.run_id, **classification.to_dict()})
        if classification.provisional:
            summary = (
                f"Provisional {classification.scale} {classification.task_type}; "
                "scope must be confirmed"
            )
            details = classification.scope_dependencies
        else:
            required = ", ".join(str(item) for item in classification.required_artifacts)
            summary = (
                f"{classification.scale} {classification.task_type} touching "
                f"{len(classification.affected_files)} file(s); "
                f"artifacts: {required or 'none'}"
            )
            details = tuple(classification.affected_files)
        self._stop(
            run,
            StopPoint(id=CLASSIFICATION_STOP, kind="classification", summary=summary, details=details),
            PipelineState.PLANNING,
        )

    async def _plan(self, run: PipelineRun) -> None:
        if run.command is Command.DIAGNOSE:
            await self._diagnose(run)
            return
        if run.classification is None:
            raise PipelineStateError(f"Run {run.run_id} reached planning without a classification.")

        specs = plan(run.classification, common_topics=run.request.shared_decisions)
        run.specs = specs
        run.artifacts = {}
        for spec in specs:
            run.artifacts[spec.key] = self._reuse_common(run, spec) or ArtifactInstance(spec=spec)
        if not specs:
            run.units = [unit_from_request(run.request)]
            self._transition(run, PipelineState.IMPLEMENTATION_PHASE)
            return
        self._transition(run, PipelineState.DOCUMENT_PHASE)

    def _reuse_common(self, run: PipelineRun, spec: ArtifactSpec) -> ArtifactInstance | None:
        if not spec.common:
            return None
        identifier = self.artifacts.allocate_identifier(
            ArtifactType.ADR, spec.topic or spec.key, common=True
        )
        if not self.artifacts.exists(ArtifactType.ADR, identifier):
            return None
        document = self.artifacts.read(ArtifactType.ADR, identifier)
        status = document.metadata.get("status")
        if status not in (ArtifactState.APPROVED, ArtifactState.APPROVED_WITH_CONDITIONS):
            return None
        logger.info("Reusing approved common artifact %s", identifier)
        run.approvals.append(artifact_stop_id(spec.key))
        run.context.record_artifact(spec.key, identifier)
        return ArtifactInstance(
            spec=spec,
            identifier=identifier,
            state=ArtifactState(status),
            version=int(document.metadata.get("version", 1)),
        )

    async def _diagnose(self, run: PipelineRun) -> None:
        result = await self.dispatcher.dispatch(
            DispatchRequest(
                step="diagnose",
                instruction=f"Investigate the reported problem: {run.request.description}",
                context=run.context.snapshot(),
                inputs={
                    "request": run.request.to_dict(),
                    "feedback": run.context.notes.get("diagnosis_feedback"),
                },
            )
        )
        payload = result.expect(DiagnosisPayload)
        run.diagnosis = payload.model_dump()
        run.units = [
            TaskUnit(
                id="fix-1",
                title=f"Fix: {payload.summary}"[:120],
                phase="fix",
                description=payload.proposed_fix,
                files=list(payload.files or run.request.affected_files or ()),
            )
        ]
        self._stop(
            run,
            StopPoint(
                id=DIAGNOSIS_STOP,
                kind="diagnosis",
                summary=payload.summary,
                details=(*payload.findings, f"Proposed fix: {payload.proposed_fix}"),
            ),
            PipelineState.IMPLEMENTATION_PHASE,
        )

    # Document phase

    def _upstream_refs(self, run: PipelineRun, spec: ArtifactSpec) -> list[UpstreamRef]:
        refs: list[UpstreamRef] = []
        for key in spec.depends_on:
            upstream = run.artifacts.get(key)
            if upstream is None or upstream.identifier is None:
                continue
            refs.append(
                UpstreamRef(
                    key=key,
                    type=upstream.spec.type,
                    identifier=upstream.identifier,
                    mandatory=upstream.spec.mandatory,
                )
            )
        return refs

    def _approved_refs(self, run: PipelineRun) -> list[UpstreamRef]:
        return [
            UpstreamRef(
                key=artifact.key,
                type=artifact.spec.type,
                identifier=artifact.identifier,
                mandatory=artifact.spec.mandatory,
            )
            for artifact in run.artifacts.values()
            if artifact.accepted and artifact.identifier is not None
        ]

    @staticmethod
    def _needs_stop(spec: ArtifactSpec) -> bool:
        return spec.mandatory and spec.type not in (ArtifactType.WORK_PLAN, ArtifactType.TASK_FILE)

    async def _document_phase(self, run: PipelineRun) -> None:
        if run.command is Command.RESYNC:
            await self._resync(run)
            return

        for spec in run.specs:
            artifact = run.artifacts[spec.key]
            if artifact.state is ArtifactState.REJECTED:
                if spec.mandatory:
                    self._block(
                        run,
                        BlockedReport(
                            reason=f"Mandatory artifact {spec.key} was rejected by review.",
                            question=f"How should {spec.key} be approached instead?",
                            suggested_options=_REJECTED_OPTIONS,
                            step=artifact_stop_id(spec.key),
                        ),
                    )
                    return
                continue
            if not artifact.accepted:
                await self._produce(run, artifact)
                return
            if spec.type is ArtifactType.DESIGN_DOC and spec.key not in run.consistency:
                await self._check_design(run, artifact)
                return
            stop_id = artifact_stop_id(spec.key)
            if self._needs_stop(spec) and stop_id not in run.approvals:
                self._stop(run, self._artifact_stop(run, artifact), PipelineState.DOCUMENT_PHASE)
                return

        run.units = self._build_units(run)
        work_plan = run.artifacts.get(str(ArtifactType.WORK_PLAN))
        if work_plan is not None and WORK_PLAN_STOP not in run.approvals:
            self._stop(
                run,
                StopPoint(
                    id=WORK_PLAN_STOP,
                    kind="work_plan",
                    summary=(
                        f"Work plan {work_plan.identifier} approved by review; "
                        f"{len(run.units)} task unit(s) ready"
                    ),
                    details=tuple(f"{unit.id} [{unit.phase}] {unit.title}" for unit in run.units),
                ),
                PipelineState.IMPLEMENTATION_PHASE,
            )
            return
        self._transition(run, PipelineState.IMPLEMENTATION_PHASE)

    def _artifact_stop(self, run: PipelineRun, artifact: ArtifactInstance) -> StopPoint:
        last = artifact.gate_history[-1] if artifact.gate_history else None
        details = [f"{item.severity}: {item.description}" for item in artifact.conditions]
        report = run.consistency.get(artifact.key)
        if report:
            details.extend(
                f"conflict with {item['target']}: {item['description']}"
                for item in report.get("conflicts", [])
            )
        return StopPoint(
            id=artifact_stop_id(artifact.key),
            kind="artifact",
            summary=(
                f"{artifact.spec.type} {artifact.identifier} v{artifact.version}: "
                f"{last.verdict if last else artifact.state}"
            ),
            details=tuple(details),
        )

    async def _produce(self, run: PipelineRun, artifact: ArtifactInstance) -> None:
        upstream = self._upstream_refs(run, artifact.spec)
        context = run.context.snapshot()
        if artifact.identifier is None:
            document = await self._create(run, artifact, upstream, context)
        else:
            document = self.artifacts.read(artifact.spec.type, artifact.identifier)

        document, outcome = await self.revision.run_until_terminal(
            artifact, document, context=context, upstream=upstream
        )
        self._record_gate(run, artifact, outcome)
        document.metadata.update(status=str(artifact.state), version=artifact.version)
        self.artifacts.write(document)
        if artifact.accepted and artifact.identifier is not None:
            run.context.record_artifact(artifact.key, artifact.identifier)

    async def _create(
        self,
        run: PipelineRun,
        artifact: ArtifactInstance,
        upstream: list[UpstreamRef],
        context: dict[str, Any],
    ) -> ArtifactDocument:
        spec = artifact.spec
        entry = ARTIFACT_CATALOG[spec.type]
        result = await self.dispatcher.dispatch(
            DispatchRequest(
                step="create_artifact",
                instruction=(
                    f"Write the {spec.type} for: {run.request.description}"
                    if not spec.common
                    else f"Write the common ADR for the shared decision '{spec.topic}'."
                ),
                context=context,
                role=entry.creation_role,
                inputs={
                    "key": spec.key,
                    "type": str(spec.type),
                    "topic": spec.topic,
                    "mandatory_sections": list(entry.mandatory_sections),
                    "request": run.request.to_dict(),
                    "classification": (
                        None if run.classification is None else run.classification.to_dict()
                    ),
                    "feedback": list(artifact.feedback),
                },
                upstream=upstream,
            )
        )
        draft = result.expect(ArtifactDraft)
        if spec.common:
            name = spec.topic or spec.key
        else:
            essence = run.classification.essence if run.classification else ""
            name = draft.name or essence or run.request.description
        identifier = self.artifacts.allocate_identifier(spec.type, name, common=spec.common)
        artifact.identifier = identifier
        artifact.version = 1
        artifact.feedback.clear()
        document = document_from_draft(
            spec.type,
            identifier,
            draft,
            {"run_id": run.run_id, "key": spec.key, "version": 1, "status": str(artifact.state)},
        )
        self.artifacts.write(document)
        logger.info("Created %s as %s", spec.key, identifier)
        return document

    def _record_gate(
        self, run: PipelineRun, artifact: ArtifactInstance, outcome: GateOutcome
    ) -> None:
        self._record(
            "gate_results",
            {
                "run_id": run.run_id,
                "artifact": artifact.key,
                "identifier": artifact.identifier,
                "version": artifact.version,
                "gate0": outcome.gate0,
                "gate1": outcome.gate1,
                "verdict": str(outcome.verdict),
            },
        )

    async def _check_design(self, run: PipelineRun, artifact: ArtifactInstance) -> None:
        if artifact.identifier is None:
            raise PipelineStateError(f"{artifact.key} has no document to check yet.")
        source = UpstreamRef(
            key=artifact.key, type=ArtifactType.DESIGN_DOC, identifier=artifact.identifier
        )
        targets = design_doc_refs(self.artifacts, exclude=artifact.identifier)
        report = await check_consistency(
            self.dispatcher, source, targets, context=run.context.snapshot()
        )
        run.consistency[artifact.key] = report.to_dict()

    async def _resync(self, run: PipelineRun) -> None:
        refs = design_doc_refs(self.artifacts)
        for ref in refs:
            if ref.identifier in run.consistency:
                continue
            targets = [other for other in refs if other.identifier != ref.identifier]
            report = await check_consistency(
                self.dispatcher, ref, targets, context=run.context.snapshot()
            )
            run.consistency[ref.identifier] = report.to_dict()
            return
        self._transition(run, PipelineState.COMPLETED)

    def _build_units(self, run: PipelineRun) -> list[TaskUnit]:
        for key in (str(ArtifactType.TASK_FILE), str(ArtifactType.WORK_PLAN)):
            artifact = run.artifacts.get(key)
            if artifact is None or not artifact.accepted or artifact.identifier is None:
                continue
            metadata = self.artifacts.read(artifact.spec.type, artifact.identifier).metadata
            phases = metadata.get("phases")
            if not phases and metadata.get("tasks"):
                phases = [{"name": "phase-1", "tasks": metadata["tasks"]}]
            units = units_from_phases(phases or [])
            if units:
                return units
        return [unit_from_request(run.request)]

    # Implementation phase

    async def _implementation_phase(self, run: PipelineRun) -> None:
        policy = CommitPolicy(run.commit_strategy)
        for unit in run.units:
            if unit.state is TaskUnitState.ESCALATION_NEEDED and unit.escalation is not None:
                self._escalate(run, unit, unit.escalation)
                return
            if unit.state is TaskUnitState.EXECUTING:
                unit.transition(TaskUnitState.PENDING)
            if unit.state is TaskUnitState.PENDING:
                await self._execute(run, unit)
                return
            if unit.state is TaskUnitState.COMPLETED:
                await self._quality_check(run, unit, policy)
                return

        leftover = [unit for unit in run.units if unit.state is TaskUnitState.QUALITY_CHECKED]
        if leftover and policy.strategy is not CommitStrategy.MANUAL:
            self._commit(run, leftover)
        self._transition(run, PipelineState.COMPLETED)

    async def _execute(self, run: PipelineRun, unit: TaskUnit) -> None:
        unit.transition(TaskUnitState.EXECUTING)
        unit.attempts += 1
        try:
            result = await self.dispatcher.dispatch(
                DispatchRequest(
                    step="execute_task",
                    instruction=f"Implement task {unit.id}: {unit.title}",
                    context=run.context.snapshot(),
                    inputs={"unit": unit.to_dict(), "decisions": list(unit.decisions)},
                    upstream=self._approved_refs(run),
                )
            )
        except DispatchError:
            unit.transition(TaskUnitState.PENDING)
            raise
        payload = result.expect(ExecutionPayload)

        routed = route_all(payload.events, unit_id=unit.id)
        if isinstance(routed, EscalationRequest):
            unit.transition(TaskUnitState.ESCALATION_NEEDED)
            unit.escalation = routed
            self._escalate(run, unit, routed)
            return
        if payload.status == "blocked":
            unit.transition(TaskUnitState.PENDING)
            self._block(
                run,
                BlockedReport(
                    reason=payload.summary,
                    question=f"Task {unit.id} could not be executed. How should the run proceed?",
                    suggested_options=_TASK_BLOCKED_OPTIONS,
                    step="execute_task",
                ),
            )
            return
        if payload.status == "escalation_needed":
            logger.info("Events for %s fall below escalation thresholds; continuing", unit.id)
        unit.summary = payload.summary
        unit.files = sorted({*unit.files, *payload.changed_files})
        unit.transition(TaskUnitState.COMPLETED)

    def _escalate(self, run: PipelineRun, unit: TaskUnit, request: EscalationRequest) -> None:
        run.escalation = request
        self._record("escalations", {"run_id": run.run_id, **request.to_dict()})
        if request.blocked:
            self._block(
                run,
                BlockedReport(
                    reason=request.context,
                    question=(
                        f"The environment needed by {unit.id} is unavailable. "
                        "How should the run proceed?"
                    ),
                    suggested_options=request.suggested_options,
                    step="execute_task",
                ),
            )
            return
        self._transition(run, PipelineState.ESCALATED)

    async def _quality_check(self, run: PipelineRun, unit: TaskUnit, policy: CommitPolicy) -> None:
        result = await self.dispatcher.dispatch(
            DispatchRequest(
                step="quality_check",
                instruction=f"Quality-check task {unit.id}: {unit.title}",
                context=run.context.snapshot(),
                inputs={"unit": unit.to_dict()},
            )
        )
        payload = result.expect(QualityPayload)
        if payload.status == "blocked":
            self._block(
                run,
                BlockedReport(
                    reason=payload.reason or payload.summary,
                    question=f"Task {unit.id} failed its quality check. How should it be fixed?",
                    suggested_options=tuple(payload.suggested_options) or _TASK_BLOCKED_OPTIONS,
                    step="quality_check",
                ),
            )
            return
        unit.transition(TaskUnitState.QUALITY_CHECKED)
        batch = policy.units_to_commit(run.units, unit)
        if batch:
            self._commit(run, batch)

    def _commit(self, run: PipelineRun, units: list[TaskUnit]) -> None:
        record = self.committer.commit(units, run_id=run.run_id)
        for unit in units:
            unit.commit_id = record.commit_id
            unit.transition(TaskUnitState.COMMITTED)
        run.commits.append(record.to_dict())
        logger.info("Committed %s for %s", record.commit_id, [unit.id for unit in units])


def summarize(run: PipelineRun) -> dict[str, Any]:
    """Compact, JSON-ready view of a run for status output."""
    return {
        "run_id": run.run_id,
        "command": str(run.command),
        "state": str(run.state),
        "commit_strategy": str(run.commit_strategy),
        "classification": None if run.classification is None else run.classification.to_dict(),
        "pending_stop": None if run.pending_stop is None else run.pending_stop.to_dict(),
        "artifacts": {
            key: {
                "identifier": artifact.identifier,
                "state": str(artifact.state),
                "version": artifact.version,
            }
            for key, artifact in run.artifacts.items()
        },
        "units": [
            {"id": unit.id, "phase": unit.phase, "state": str(unit.state), "commit": unit.commit_id}
            for unit in run.units
        ],
        "escalation": None if run.escalation is None else run.escalation.to_dict(),
        "blocked": None if run.blocked is None else run.blocked.to_dict(),
        "commits": [commit["commit_id"] for commit in run.commits],
    }
