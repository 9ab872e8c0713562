from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from shepherd.errors import PipelineStateError


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Scale(enum.StrEnum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class Confidence(enum.StrEnum):
    CONFIRMED = "confirmed"
    PROVISIONAL = "provisional"


class TriggerCondition(enum.StrEnum):
    DATA_FLOW_CHANGE = "data_flow_change"
    CONTRACT_CHANGE = "contract_change"
    ARCHITECTURE_CHANGE = "architecture_change"
    EXTERNAL_DEPENDENCY_CHANGE = "external_dependency_change"
    UI_CHANGE = "ui_change"


class ArtifactType(enum.StrEnum):
    PRD = "PRD"
    ADR = "ADR"
    UXRD = "UXRD"
    DESIGN_DOC = "DesignDoc"
    WORK_PLAN = "WorkPlan"
    TASK_FILE = "TaskFile"


class ArtifactState(enum.StrEnum):
    DRAFT = "draft"
    GATE_CHECKING = "gate_checking"
    APPROVED = "approved"
    APPROVED_WITH_CONDITIONS = "approved_with_conditions"
    NEEDS_REVISION = "needs_revision"
    REVISING = "revising"
    REJECTED = "rejected"


class GateStage(enum.StrEnum):
    STRUCTURAL = "structural"
    QUALITY = "quality"


class Verdict(enum.StrEnum):
    PASSED = "passed"
    APPROVED = "approved"
    APPROVED_WITH_CONDITIONS = "approved_with_conditions"
    NEEDS_REVISION = "needs_revision"
    REJECTED = "rejected"


class IssueSeverity(enum.StrEnum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class PriorItemStatus(enum.StrEnum):
    RESOLVED = "resolved"
    PARTIALLY_RESOLVED = "partially_resolved"
    UNRESOLVED = "unresolved"


class Severity(enum.StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


class CommitStrategy(enum.StrEnum):
    PER_TASK = "per-task"
    PER_PHASE = "per-phase"
    PER_FEATURE = "per-feature"
    MANUAL = "manual"


class TaskUnitState(enum.StrEnum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ESCALATION_NEEDED = "escalation_needed"
    QUALITY_CHECKED = "quality_checked"
    COMMITTED = "committed"


class PipelineState(enum.StrEnum):
    CLASSIFYING = "classifying"
    PLANNING = "planning"
    DOCUMENT_PHASE = "document_phase"
    AWAITING_APPROVAL = "awaiting_approval"
    IMPLEMENTATION_PHASE = "implementation_phase"
    COMPLETED = "completed"
    ESCALATED = "escalated"
    BLOCKED = "blocked"


class Command(enum.StrEnum):
    RUN = "run"
    TASK = "task"
    DIAGNOSE = "diagnose"
    RESYNC = "resync"


ACCEPTED_ARTIFACT_STATES = frozenset(
    {ArtifactState.APPROVED, ArtifactState.APPROVED_WITH_CONDITIONS}
)

ARTIFACT_TRANSITIONS: dict[ArtifactState, frozenset[ArtifactState]] = {
    ArtifactState.DRAFT: frozenset({ArtifactState.GATE_CHECKING}),
    ArtifactState.GATE_CHECKING: frozenset(
        {
            ArtifactState.APPROVED,
            ArtifactState.APPROVED_WITH_CONDITIONS,
            ArtifactState.NEEDS_REVISION,
            ArtifactState.REJECTED,
        }
    ),
    ArtifactState.NEEDS_REVISION: frozenset({ArtifactState.REVISING}),
    ArtifactState.REVISING: frozenset({ArtifactState.GATE_CHECKING}),
    # A human may send an accepted artifact back for changes at its stop point.
    ArtifactState.APPROVED: frozenset({ArtifactState.NEEDS_REVISION}),
    ArtifactState.APPROVED_WITH_CONDITIONS: frozenset({ArtifactState.NEEDS_REVISION}),
    ArtifactState.REJECTED: frozenset(),
}

TASK_UNIT_TRANSITIONS: dict[TaskUnitState, frozenset[TaskUnitState]] = {
    TaskUnitState.PENDING: frozenset({TaskUnitState.EXECUTING}),
    TaskUnitState.EXECUTING: frozenset(
        {TaskUnitState.COMPLETED, TaskUnitState.ESCALATION_NEEDED, TaskUnitState.PENDING}
    ),
    TaskUnitState.ESCALATION_NEEDED: frozenset({TaskUnitState.PENDING}),
    TaskUnitState.COMPLETED: frozenset({TaskUnitState.QUALITY_CHECKED}),
    TaskUnitState.QUALITY_CHECKED: frozenset({TaskUnitState.COMMITTED}),
    TaskUnitState.COMMITTED: frozenset(),
}

_INTERRUPT_STATES = frozenset({PipelineState.ESCALATED, PipelineState.BLOCKED})

PIPELINE_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.CLASSIFYING: frozenset(
        {PipelineState.PLANNING, PipelineState.AWAITING_APPROVAL}
    ),
    PipelineState.PLANNING: frozenset(
        {
            PipelineState.DOCUMENT_PHASE,
            PipelineState.AWAITING_APPROVAL,
            PipelineState.IMPLEMENTATION_PHASE,
        }
    ),
    PipelineState.DOCUMENT_PHASE: frozenset(
        {
            PipelineState.AWAITING_APPROVAL,
            PipelineState.IMPLEMENTATION_PHASE,
            PipelineState.COMPLETED,
        }
    ),
    PipelineState.AWAITING_APPROVAL: frozenset(
        {
            PipelineState.CLASSIFYING,
            PipelineState.PLANNING,
            PipelineState.DOCUMENT_PHASE,
            PipelineState.IMPLEMENTATION_PHASE,
        }
    ),
    PipelineState.IMPLEMENTATION_PHASE: frozenset(
        {PipelineState.AWAITING_APPROVAL, PipelineState.COMPLETED}
    ),
    PipelineState.ESCALATED: frozenset({PipelineState.IMPLEMENTATION_PHASE}),
    PipelineState.BLOCKED: frozenset(
        {
            PipelineState.CLASSIFYING,
            PipelineState.PLANNING,
            PipelineState.DOCUMENT_PHASE,
            PipelineState.AWAITING_APPROVAL,
            PipelineState.IMPLEMENTATION_PHASE,
        }
    ),
    PipelineState.COMPLETED: frozenset(),
}


def can_transition(current: PipelineState, target: PipelineState) -> bool:
    if target in _INTERRUPT_STATES:
        return current is not PipelineState.COMPLETED
    return target in PIPELINE_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class PriorContext:
    recent_changes: tuple[str, ...] = ()
    related_issues: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "recent_changes": list(self.recent_changes),
            "related_issues": list(self.related_issues),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PriorContext:
        return cls(
            recent_changes=tuple(str(item) for item in data.get("recent_changes", [])),
            related_issues=tuple(str(item) for item in data.get("related_issues", [])),
        )


@dataclass(frozen=True, slots=True)
class WorkRequest:
    """A unit of work as submitted. Never mutated after submission."""

    description: str
    task_type: str = "feature"
    affected_files: tuple[str, ...] | None = None
    triggers: frozenset[TriggerCondition] = frozenset()
    open_questions: tuple[str, ...] = ()
    shared_decisions: tuple[str, ...] = ()
    prior_context: PriorContext | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "task_type": self.task_type,
            "affected_files": (
                None if self.affected_files is None else list(self.affected_files)
            ),
            "triggers": sorted(str(trigger) for trigger in self.triggers),
            "open_questions": list(self.open_questions),
            "shared_decisions": list(self.shared_decisions),
            "prior_context": (
                None if self.prior_context is None else self.prior_context.to_dict()
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkRequest:
        files = data.get("affected_files")
        prior = data.get("prior_context")
        return cls(
            description=str(data["description"]),
            task_type=str(data.get("task_type", "feature")),
            affected_files=None if files is None else tuple(str(item) for item in files),
            triggers=frozenset(TriggerCondition(item) for item in data.get("triggers", [])),
            open_questions=tuple(str(item) for item in data.get("open_questions", [])),
            shared_decisions=tuple(str(item) for item in data.get("shared_decisions", [])),
            prior_context=PriorContext.from_dict(prior) if isinstance(prior, dict) else None,
        )


@dataclass(frozen=True, slots=True)
class Classification:
    task_type: str
    essence: str
    scale: Scale
    confidence: Confidence
    affected_files: tuple[str, ...]
    required_artifacts: tuple[ArtifactType, ...]
    triggers: tuple[TriggerCondition, ...] = ()
    scope_dependencies: tuple[str, ...] = ()

    @property
    def provisional(self) -> bool:
        return self.confidence is Confidence.PROVISIONAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_type": self.task_type,
            "essence": self.essence,
            "scale": str(self.scale),
            "confidence": str(self.confidence),
            "affected_files": list(self.affected_files),
            "required_artifacts": [str(item) for item in self.required_artifacts],
            "triggers": [str(item) for item in self.triggers],
            "scope_dependencies": list(self.scope_dependencies),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Classification:
        return cls(
            task_type=str(data["task_type"]),
            essence=str(data["essence"]),
            scale=Scale(data["scale"]),
            confidence=Confidence(data["confidence"]),
            affected_files=tuple(data.get("affected_files", [])),
            required_artifacts=tuple(
                ArtifactType(item) for item in data.get("required_artifacts", [])
            ),
            triggers=tuple(TriggerCondition(item) for item in data.get("triggers", [])),
            scope_dependencies=tuple(data.get("scope_dependencies", [])),
        )


@dataclass(frozen=True, slots=True)
class ArtifactSpec:
    type: ArtifactType
    key: str
    mandatory: bool = True
    depends_on: tuple[str, ...] = ()
    common: bool = False
    topic: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "key": self.key,
            "mandatory": self.mandatory,
            "depends_on": list(self.depends_on),
            "common": self.common,
            "topic": self.topic,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactSpec:
        return cls(
            type=ArtifactType(data["type"]),
            key=str(data["key"]),
            mandatory=bool(data.get("mandatory", True)),
            depends_on=tuple(data.get("depends_on", [])),
            common=bool(data.get("common", False)),
            topic=data.get("topic"),
        )


@dataclass(frozen=True, slots=True)
class ReviewIssue:
    id: str
    severity: IssueSeverity
    description: str
    section: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "severity": str(self.severity),
            "description": self.description,
            "section": self.section,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewIssue:
        return cls(
            id=str(data["id"]),
            severity=IssueSeverity(data["severity"]),
            description=str(data.get("description", "")),
            section=data.get("section"),
        )


@dataclass(frozen=True, slots=True)
class PriorItemReview:
    item_id: str
    status: PriorItemStatus

    def to_dict(self) -> dict[str, Any]:
        return {"item_id": self.item_id, "status": str(self.status)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PriorItemReview:
        return cls(item_id=str(data["item_id"]), status=PriorItemStatus(data["status"]))


@dataclass(frozen=True, slots=True)
class GateResult:
    """One immutable entry of an artifact's gate audit trail."""

    stage: GateStage
    verdict: Verdict
    missing_sections: tuple[str, ...] = ()
    issues: tuple[ReviewIssue, ...] = ()
    scores: tuple[tuple[str, int], ...] = ()
    prior_items: tuple[PriorItemReview, ...] = ()
    limitations: tuple[str, ...] = ()
    version: int = 0
    checked_at: str = field(default_factory=utcnow_iso)

    @property
    def score_map(self) -> dict[str, int]:
        return dict(self.scores)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": str(self.stage),
            "verdict": str(self.verdict),
            "missing_sections": list(self.missing_sections),
            "issues": [issue.to_dict() for issue in self.issues],
            "scores": self.score_map,
            "prior_items": [item.to_dict() for item in self.prior_items],
            "limitations": list(self.limitations),
            "version": self.version,
            "checked_at": self.checked_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateResult:
        scores = data.get("scores", {})
        return cls(
            stage=GateStage(data["stage"]),
            verdict=Verdict(data["verdict"]),
            missing_sections=tuple(data.get("missing_sections", [])),
            issues=tuple(ReviewIssue.from_dict(item) for item in data.get("issues", [])),
            scores=tuple((str(key), int(value)) for key, value in scores.items()),
            prior_items=tuple(
                PriorItemReview.from_dict(item) for item in data.get("prior_items", [])
            ),
            limitations=tuple(data.get("limitations", [])),
            version=int(data.get("version", 0)),
            checked_at=str(data.get("checked_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class ArtifactInstance:
    spec: ArtifactSpec
    identifier: str | None = None
    state: ArtifactState = ArtifactState.DRAFT
    version: int = 0
    gate_history: list[GateResult] = field(default_factory=list)
    conditions: list[ReviewIssue] = field(default_factory=list)
    feedback: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.spec.key

    @property
    def accepted(self) -> bool:
        return self.state in ACCEPTED_ARTIFACT_STATES

    def transition(self, target: ArtifactState) -> None:
        if target not in ARTIFACT_TRANSITIONS[self.state]:
            raise PipelineStateError(
                f"Artifact {self.key} cannot move from {self.state} to {target}."
            )
        self.state = target

    def to_dict(self) -> dict[str, Any]:
        return {
            "spec": self.spec.to_dict(),
            "identifier": self.identifier,
            "state": str(self.state),
            "version": self.version,
            "gate_history": [result.to_dict() for result in self.gate_history],
            "conditions": [issue.to_dict() for issue in self.conditions],
            "feedback": list(self.feedback),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactInstance:
        return cls(
            spec=ArtifactSpec.from_dict(data["spec"]),
            identifier=data.get("identifier"),
            state=ArtifactState(data.get("state", "draft")),
            version=int(data.get("version", 0)),
            gate_history=[GateResult.from_dict(item) for item in data.get("gate_history", [])],
            conditions=[ReviewIssue.from_dict(item) for item in data.get("conditions", [])],
            feedback=[str(item) for item in data.get("feedback", [])],
        )


@dataclass(frozen=True, slots=True)
class EscalationRequest:
    kind: str
    severity: Severity
    context: str
    suggested_options: tuple[str, ...]
    blocked: bool = False
    unit_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": str(self.severity),
            "context": self.context,
            "suggested_options": list(self.suggested_options),
            "blocked": self.blocked,
            "unit_id": self.unit_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationRequest:
        return cls(
            kind=str(data["kind"]),
            severity=Severity(data["severity"]),
            context=str(data.get("context", "")),
            suggested_options=tuple(data.get("suggested_options", [])),
            blocked=bool(data.get("blocked", False)),
            unit_id=data.get("unit_id"),
        )


@dataclass(slots=True)
class TaskUnit:
    id: str
    title: str
    phase: str
    description: str = ""
    files: list[str] = field(default_factory=list)
    state: TaskUnitState = TaskUnitState.PENDING
    attempts: int = 0
    decisions: list[str] = field(default_factory=list)
    escalation: EscalationRequest | None = None
    summary: str = ""
    commit_id: str | None = None

    def transition(self, target: TaskUnitState) -> None:
        if target not in TASK_UNIT_TRANSITIONS[self.state]:
            raise PipelineStateError(
                f"Task unit {self.id} cannot move from {self.state} to {target}."
            )
        self.state = target

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "phase": self.phase,
            "description": self.description,
            "files": list(self.files),
            "state": str(self.state),
            "attempts": self.attempts,
            "decisions": list(self.decisions),
            "escalation": None if self.escalation is None else self.escalation.to_dict(),
            "summary": self.summary,
            "commit_id": self.commit_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskUnit:
        escalation = data.get("escalation")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            phase=str(data.get("phase", "phase-1")),
            description=str(data.get("description", "")),
            files=[str(item) for item in data.get("files", [])],
            state=TaskUnitState(data.get("state", "pending")),
            attempts=int(data.get("attempts", 0)),
            decisions=[str(item) for item in data.get("decisions", [])],
            escalation=(
                EscalationRequest.from_dict(escalation) if isinstance(escalation, dict) else None
            ),
            summary=str(data.get("summary", "")),
            commit_id=data.get("commit_id"),
        )


@dataclass(frozen=True, slots=True)
class BlockedReport:
    reason: str
    question: str
    suggested_options: tuple[str, ...]
    step: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "question": self.question,
            "suggested_options": list(self.suggested_options),
            "step": self.step,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockedReport:
        return cls(
            reason=str(data["reason"]),
            question=str(data.get("question", "")),
            suggested_options=tuple(data.get("suggested_options", [])),
            step=data.get("step"),
        )


@dataclass(frozen=True, slots=True)
class StopPoint:
    id: str
    kind: str
    summary: str
    details: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "summary": self.summary,
            "details": list(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StopPoint:
        return cls(
            id=str(data["id"]),
            kind=str(data["kind"]),
            summary=str(data.get("summary", "")),
            details=tuple(data.get("details", [])),
        )


@dataclass(slots=True)
class RunContext:
    """Explicit, versioned memory handed to every dispatched step."""

    run_id: str
    version: int = 0
    approved: dict[str, str] = field(default_factory=dict)
    decisions: list[str] = field(default_factory=list)
    notes: dict[str, Any] = field(default_factory=dict)

    def record_artifact(self, key: str, identifier: str) -> None:
        self.approved[key] = identifier
        self.version += 1

    def record_decision(self, decision: str) -> None:
        self.decisions.append(decision)
        self.version += 1

    def note(self, key: str, value: Any) -> None:
        self.notes[key] = value
        self.version += 1

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "version": self.version,
            "approved": dict(self.approved),
            "decisions": list(self.decisions),
            "notes": dict(self.notes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunContext:
        return cls(
            run_id=str(data["run_id"]),
            version=int(data.get("version", 0)),
            approved={str(key): str(value) for key, value in data.get("approved", {}).items()},
            decisions=[str(item) for item in data.get("decisions", [])],
            notes=dict(data.get("notes", {})),
        )


@dataclass(slots=True)
class PipelineRun:
    run_id: str
    command: Command
    request: WorkRequest
    state: PipelineState
    commit_strategy: CommitStrategy
    context: RunContext
    classification: Classification | None = None
    specs: list[ArtifactSpec] = field(default_factory=list)
    artifacts: dict[str, ArtifactInstance] = field(default_factory=dict)
    approvals: list[str] = field(default_factory=list)
    pending_stop: StopPoint | None = None
    resume_state: PipelineState | None = None
    units: list[TaskUnit] = field(default_factory=list)
    escalation: EscalationRequest | None = None
    blocked: BlockedReport | None = None
    commits: list[dict[str, Any]] = field(default_factory=list)
    consistency: dict[str, dict[str, Any]] = field(default_factory=dict)
    diagnosis: dict[str, Any] | None = None
    history: list[dict[str, Any]] = field(default_factory=list)
    started_at: str = field(default_factory=utcnow_iso)

    def unit(self, unit_id: str) -> TaskUnit | None:
        for unit in self.units:
            if unit.id == unit_id:
                return unit
        return None

    def escalated_unit(self, unit_id: str | None = None) -> TaskUnit | None:
        """The unit waiting on a decision, preferring one with ``unit_id``."""
        waiting = [unit for unit in self.units if unit.state is TaskUnitState.ESCALATION_NEEDED]
        for unit in waiting:
            if unit.id == unit_id:
                return unit
        return waiting[0] if waiting else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "command": str(self.command),
            "request": self.request.to_dict(),
            "state": str(self.state),
            "commit_strategy": str(self.commit_strategy),
            "context": self.context.to_dict(),
            "classification": (
                None if self.classification is None else self.classification.to_dict()
            ),
            "specs": [spec.to_dict() for spec in self.specs],
            "artifacts": {key: item.to_dict() for key, item in self.artifacts.items()},
            "approvals": list(self.approvals),
            "pending_stop": None if self.pending_stop is None else self.pending_stop.to_dict(),
            "resume_state": None if self.resume_state is None else str(self.resume_state),
            "units": [unit.to_dict() for unit in self.units],
            "escalation": None if self.escalation is None else self.escalation.to_dict(),
            "blocked": None if self.blocked is None else self.blocked.to_dict(),
            "commits": list(self.commits),
            "consistency": dict(self.consistency),
            "diagnosis": self.diagnosis,
            "history": list(self.history),
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineRun:
        classification = data.get("classification")
        pending_stop = data.get("pending_stop")
        resume_state = data.get("resume_state")
        escalation = data.get("escalation")
        blocked = data.get("blocked")
        return cls(
            run_id=str(data["run_id"]),
            command=Command(data["command"]),
            request=WorkRequest.from_dict(data["request"]),
            state=PipelineState(data["state"]),
            commit_strategy=CommitStrategy(data["commit_strategy"]),
            context=RunContext.from_dict(data["context"]),
            classification=(
                Classification.from_dict(classification)
                if isinstance(classification, dict)
                else None
            ),
            specs=[ArtifactSpec.from_dict(item) for item in data.get("specs", [])],
            artifacts={
                str(key): ArtifactInstance.from_dict(item)
                for key, item in data.get("artifacts", {}).items()
            },
            approvals=[str(item) for item in data.get("approvals", [])],
            pending_stop=(
                StopPoint.from_dict(pending_stop) if isinstance(pending_stop, dict) else None
            ),
            resume_state=PipelineState(resume_state) if resume_state else None,
            units=[TaskUnit.from_dict(item) for item in data.get("units", [])],
            escalation=(
                EscalationRequest.from_dict(escalation) if isinstance(escalation, dict) else None
            ),
            blocked=BlockedReport.from_dict(blocked) if isinstance(blocked, dict) else None,
            commits=list(data.get("commits", [])),
            consistency=dict(data.get("consistency", {})),
            diagnosis=data.get("diagnosis"),
            history=list(data.get("history", [])),
            started_at=str(data.get("started_at") or utcnow_iso()),
        )
