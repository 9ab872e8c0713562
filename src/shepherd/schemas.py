"""Pydantic contracts for worker payloads, one per dispatched step kind."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

EventKind = Literal[
    "interface_change",
    "layer_violation",
    "dependency_reversal",
    "new_external_dependency",
    "safety_bypass",
    "duplication",
    "ambiguity",
    "environment_unavailable",
]
SimilaritySignal = Literal["domain", "io_shape", "processing", "placement", "naming"]


class AgentPayload(BaseModel):
    """Fields every worker must return."""

    model_config = ConfigDict(extra="allow")

    status: str = Field(min_length=1)
    summary: str


class PlannedTask(BaseModel):
    id: str | None = None
    title: str = Field(min_length=1)
    description: str = ""
    files: list[str] = []


class PlannedPhase(BaseModel):
    name: str = Field(min_length=1)
    tasks: list[PlannedTask] = Field(min_length=1)


class ArtifactDraft(AgentPayload):
    title: str = Field(min_length=1)
    name: str | None = None
    sections: dict[str, str]
    phases: list[PlannedPhase] = []
    tasks: list[PlannedTask] = []

    @model_validator(mode="after")
    def _task_ids_are_unique(self) -> ArtifactDraft:
        for label, tasks in (
            ("phases", [task for phase in self.phases for task in phase.tasks]),
            ("tasks", self.tasks),
        ):
            seen: set[str] = set()
            for task in tasks:
                if task.id is None:
                    continue
                if task.id in seen:
                    raise ValueError(f"duplicate task id '{task.id}' in {label}")
                seen.add(task.id)
        return self


class DimensionScores(BaseModel):
    consistency: int = Field(ge=0, le=100)
    completeness: int = Field(ge=0, le=100)
    rule_compliance: int = Field(ge=0, le=100)
    feasibility: int = Field(ge=0, le=100)


class ReviewFinding(BaseModel):
    id: str | None = None
    severity: Literal["critical", "major", "minor"]
    description: str = Field(min_length=1)
    section: str | None = None


class PriorItemVerdict(BaseModel):
    item_id: str
    status: Literal["resolved", "partially_resolved", "unresolved"]


class ReviewPayload(AgentPayload):
    scores: DimensionScores
    issues: list[ReviewFinding] = []
    prior_items: list[PriorItemVerdict] = []
    salvageable: bool = True


class Conflict(BaseModel):
    target: str
    description: str = Field(min_length=1)
    severity: Literal["high", "medium", "low"] = "medium"


class ConsistencyPayload(AgentPayload):
    conflicts: list[Conflict] = []


class ExecutionEvent(BaseModel):
    kind: EventKind
    description: str = ""
    signals: list[SimilaritySignal] = []
    interpretations: int = Field(default=0, ge=0)
    governing_artifact_silent: bool = False
    suggested_options: list[str] = []


class ExecutionPayload(AgentPayload):
    status: Literal["completed", "escalation_needed", "blocked"]
    changed_files: list[str] = []
    events: list[ExecutionEvent] = []

    @model_validator(mode="after")
    def _escalation_carries_events(self) -> ExecutionPayload:
        if self.status == "escalation_needed" and not self.events:
            raise ValueError("status 'escalation_needed' requires at least one event")
        return self


class QualityPayload(AgentPayload):
    status: Literal["approved", "blocked"]
    reason: str = ""
    suggested_options: list[str] = []


class DiagnosisPayload(AgentPayload):
    findings: list[str] = Field(min_length=1)
    proposed_fix: str = Field(min_length=1)
    files: list[str] = []
