"""Two-stage artifact gate.

Stage one checks that every mandatory section of the artifact type is
present and non-empty. Stage two only runs when stage one passes: it fans
the review out across the configured perspectives, merges the rubric scores
and derives the verdict from the published thresholds.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from shepherd.artifacts import ARTIFACT_CATALOG, ArtifactDocument
from shepherd.config import GateConfig
from shepherd.dispatcher import AgentDispatcher, DispatchRequest, UpstreamRef
from shepherd.errors import DispatchError
from shepherd.models import (
    ArtifactInstance,
    ArtifactState,
    GateResult,
    GateStage,
    IssueSeverity,
    PriorItemReview,
    PriorItemStatus,
    ReviewIssue,
    Verdict,
)
from shepherd.schemas import ReviewPayload

logger = logging.getLogger(__name__)

QUALITY_DIMENSIONS: tuple[str, ...] = (
    "consistency",
    "completeness",
    "rule_compliance",
    "feasibility",
)

_VERDICT_STATES: dict[Verdict, ArtifactState] = {
    Verdict.APPROVED: ArtifactState.APPROVED,
    Verdict.APPROVED_WITH_CONDITIONS: ArtifactState.APPROVED_WITH_CONDITIONS,
    Verdict.NEEDS_REVISION: ArtifactState.NEEDS_REVISION,
    Verdict.REJECTED: ArtifactState.REJECTED,
}

_PRIOR_RANK: dict[PriorItemStatus, int] = {
    PriorItemStatus.RESOLVED: 0,
    PriorItemStatus.PARTIALLY_RESOLVED: 1,
    PriorItemStatus.UNRESOLVED: 2,
}


@dataclass(frozen=True, slots=True)
class GateThresholds:
    high: int = 80
    medium: int = 60
    reject: int = 30

    @classmethod
    def from_config(cls, config: GateConfig) -> GateThresholds:
        return cls(
            high=config.high_threshold,
            medium=config.medium_threshold,
            reject=config.reject_threshold,
        )


@dataclass(slots=True)
class GateOutcome:
    results: list[GateResult]

    @property
    def verdict(self) -> Verdict:
        return self.results[-1].verdict

    @property
    def gate0(self) -> str:
        return "failed" if self.results[0].verdict is Verdict.NEEDS_REVISION else "passed"

    @property
    def gate1(self) -> str:
        if len(self.results) < 2:
            return "skipped"
        return str(self.results[1].verdict)

    @property
    def issues(self) -> list[ReviewIssue]:
        return [issue for result in self.results for issue in result.issues]

    @property
    def missing_sections(self) -> tuple[str, ...]:
        return self.results[0].missing_sections


def structural_check(document: ArtifactDocument, *, version: int = 0) -> GateResult:
    mandatory = ARTIFACT_CATALOG[document.type].mandatory_sections
    missing = tuple(
        section for section in mandatory if not document.sections.get(section, "").strip()
    )
    return GateResult(
        stage=GateStage.STRUCTURAL,
        verdict=Verdict.NEEDS_REVISION if missing else Verdict.PASSED,
        missing_sections=missing,
        issues=tuple(
            ReviewIssue(
                id=f"missing-{section}",
                severity=IssueSeverity.CRITICAL,
                description=f"Mandatory section '{section}' is missing or empty.",
                section=section,
            )
            for section in missing
        ),
        version=version,
    )


def compute_verdict(
    scores: dict[str, int],
    issues: Sequence[ReviewIssue],
    prior_items: Sequence[PriorItemReview],
    carried: Sequence[ReviewIssue],
    thresholds: GateThresholds,
    *,
    salvageable: bool = True,
) -> Verdict:
    values = [scores[dimension] for dimension in QUALITY_DIMENSIONS]
    if not salvageable or any(value < thresholds.reject for value in values):
        return Verdict.REJECTED

    carried_by_id = {item.id: item for item in carried}
    open_prior = [
        carried_by_id[item.item_id]
        for item in prior_items
        if item.status is not PriorItemStatus.RESOLVED and item.item_id in carried_by_id
    ]
    critical_prior_open = any(item.severity is IssueSeverity.CRITICAL for item in open_prior)
    critical_open = any(issue.severity is IssueSeverity.CRITICAL for issue in issues)

    if all(value >= thresholds.high for value in values) and not (
        critical_open or critical_prior_open
    ):
        return Verdict.APPROVED

    only_minor = all(issue.severity is IssueSeverity.MINOR for issue in issues) and all(
        item.severity is IssueSeverity.MINOR for item in open_prior
    )
    if all(value >= thresholds.medium for value in values) and only_minor:
        return Verdict.APPROVED_WITH_CONDITIONS
    return Verdict.NEEDS_REVISION


class GateController:
    def __init__(
        self,
        dispatcher: AgentDispatcher,
        thresholds: GateThresholds | None = None,
        *,
        perspectives: Sequence[str] = ("general",),
    ) -> None:
        self.dispatcher = dispatcher
        self.thresholds = thresholds or GateThresholds()
        self.perspectives = tuple(perspectives) or ("general",)

    def _review_requests(
        self,
        artifact: ArtifactInstance,
        document: ArtifactDocument,
        context: dict[str, Any],
        upstream: Sequence[UpstreamRef],
    ) -> list[DispatchRequest]:
        artifact_payload = {
            "key": artifact.key,
            "type": str(artifact.spec.type),
            "identifier": document.identifier,
            "version": artifact.version,
            "title": document.title,
            "sections": dict(document.sections),
        }
        return [
            DispatchRequest(
                step="review_artifact",
                instruction=(
                    f"Review {artifact.spec.type} '{document.identifier}' from the "
                    f"{perspective} perspective. Score consistency, completeness, "
                    "rule_compliance and feasibility from 0 to 100."
                ),
                context=context,
                inputs={
                    "perspective": perspective,
                    "artifact": artifact_payload,
                    "prior_items": [item.to_dict() for item in artifact.conditions],
                    "feedback": list(artifact.feedback),
                },
                upstream=list(upstream),
            )
            for perspective in self.perspectives
        ]

    @staticmethod
    def _merge_prior_items(
        artifact: ArtifactInstance, payloads: Sequence[tuple[str, ReviewPayload]]
    ) -> tuple[PriorItemReview, ...]:
        if not artifact.conditions:
            return ()
        statuses: dict[str, PriorItemStatus] = {}
        for _, payload in payloads:
            for item in payload.prior_items:
                status = PriorItemStatus(item.status)
                current = statuses.get(item.item_id)
                if current is None or _PRIOR_RANK[status] > _PRIOR_RANK[current]:
                    statuses[item.item_id] = status
        missing = [item.id for item in artifact.conditions if item.id not in statuses]
        if missing:
            raise DispatchError(
                "Review did not classify carried-forward item(s): " + ", ".join(missing),
                step="review_artifact",
            )
        return tuple(
            PriorItemReview(item_id=item.id, status=statuses[item.id])
            for item in artifact.conditions
        )

    async def gate(
        self,
        artifact: ArtifactInstance,
        document: ArtifactDocument,
        *,
        context: dict[str, Any],
        upstream: Sequence[UpstreamRef] = (),
    ) -> GateOutcome:
        if artifact.state is not ArtifactState.GATE_CHECKING:
            artifact.transition(ArtifactState.GATE_CHECKING)

        structural = structural_check(document, version=artifact.version)
        if structural.verdict is Verdict.NEEDS_REVISION:
            artifact.gate_history.append(structural)
            artifact.transition(ArtifactState.NEEDS_REVISION)
            logger.info(
                "Gate 0 failed for %s v%d; missing %s, quality check skipped",
                artifact.key,
                artifact.version,
                ", ".join(structural.missing_sections),
            )
            return GateOutcome(results=[structural])

        results = await self.dispatcher.dispatch_many(
            self._review_requests(artifact, document, context, upstream)
        )
        payloads: list[tuple[str, ReviewPayload]] = []
        limitations: list[str] = []
        for perspective, result in zip(self.perspectives, results, strict=True):
            payloads.append((perspective, result.expect(ReviewPayload)))
            limitations.extend(result.limitations)
        prior_items = self._merge_prior_items(artifact, payloads)

        scores = {dimension: 100 for dimension in QUALITY_DIMENSIONS}
        issues: list[ReviewIssue] = []
        salvageable = True
        for perspective, payload in payloads:
            for dimension in QUALITY_DIMENSIONS:
                scores[dimension] = min(scores[dimension], getattr(payload.scores, dimension))
            salvageable = salvageable and payload.salvageable
            for index, finding in enumerate(payload.issues, start=1):
                issues.append(
                    ReviewIssue(
                        id=finding.id or f"{artifact.key}-v{artifact.version}-{perspective}-{index}",
                        severity=IssueSeverity(finding.severity),
                        description=finding.description,
                        section=finding.section,
                    )
                )

        verdict = compute_verdict(
            scores,
            issues,
            prior_items,
            artifact.conditions,
            self.thresholds,
            salvageable=salvageable,
        )
        quality = GateResult(
            stage=GateStage.QUALITY,
            verdict=verdict,
            issues=tuple(issues),
            scores=tuple((dimension, scores[dimension]) for dimension in QUALITY_DIMENSIONS),
            prior_items=prior_items,
            limitations=tuple(limitations),
            version=artifact.version,
        )
        artifact.gate_history.extend([structural, quality])
        artifact.transition(_VERDICT_STATES[verdict])
        if artifact.accepted:
            still_open = {
                item.item_id
                for item in prior_items
                if item.status is not PriorItemStatus.RESOLVED
            }
            carried = [item for item in artifact.conditions if item.id in still_open]
            artifact.conditions = carried + [
                issue for issue in issues if issue.severity is IssueSeverity.MINOR
            ]
        logger.info(
            "Gate verdict for %s v%d: %s (scores=%s)",
            artifact.key,
            artifact.version,
            verdict,
            scores,
        )
        return GateOutcome(results=[structural, quality])
