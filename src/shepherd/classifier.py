"""Deterministic classification of work requests.

Scale is read off a fixed threshold table keyed on the affected-file count.
Trigger conditions are evaluated independently of scale and may only add
artifact requirements. No state survives between calls.
"""

from __future__ import annotations

import re

from shepherd.models import (
    ArtifactType,
    Classification,
    Confidence,
    PriorContext,
    Scale,
    TriggerCondition,
    WorkRequest,
)

# Lower bound of each band, checked top-down.
SCALE_THRESHOLDS: tuple[tuple[int, Scale], ...] = (
    (6, Scale.LARGE),
    (3, Scale.MEDIUM),
    (1, Scale.SMALL),
)

SCALE_ARTIFACTS: dict[Scale, tuple[ArtifactType, ...]] = {
    Scale.SMALL: (),
    Scale.MEDIUM: (ArtifactType.DESIGN_DOC, ArtifactType.WORK_PLAN),
    Scale.LARGE: (ArtifactType.PRD, ArtifactType.DESIGN_DOC, ArtifactType.WORK_PLAN),
}

TRIGGER_ARTIFACTS: dict[TriggerCondition, ArtifactType] = {
    TriggerCondition.DATA_FLOW_CHANGE: ArtifactType.ADR,
    TriggerCondition.CONTRACT_CHANGE: ArtifactType.ADR,
    TriggerCondition.ARCHITECTURE_CHANGE: ArtifactType.ADR,
    TriggerCondition.EXTERNAL_DEPENDENCY_CHANGE: ArtifactType.ADR,
    TriggerCondition.UI_CHANGE: ArtifactType.UXRD,
}

ARTIFACT_ORDER: tuple[ArtifactType, ...] = (
    ArtifactType.PRD,
    ArtifactType.ADR,
    ArtifactType.UXRD,
    ArtifactType.DESIGN_DOC,
    ArtifactType.WORK_PLAN,
)

UNKNOWN_SCOPE_QUESTION = (
    "Which files will this change touch? Scale cannot be confirmed without an "
    "affected-file estimate."
)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE = re.compile(r"\s+")
_ESSENCE_LIMIT = 200


def scale_for_file_count(count: int) -> Scale:
    if count < 1:
        raise ValueError(f"File count must be positive, got {count}.")
    for lower_bound, scale in SCALE_THRESHOLDS:
        if count >= lower_bound:
            return scale
    raise AssertionError("unreachable")


def required_artifacts(
    scale: Scale, triggers: frozenset[TriggerCondition] | set[TriggerCondition]
) -> tuple[ArtifactType, ...]:
    required = set(SCALE_ARTIFACTS[scale])
    required.update(TRIGGER_ARTIFACTS[trigger] for trigger in triggers)
    return tuple(item for item in ARTIFACT_ORDER if item in required)


def normalize_files(files: tuple[str, ...] | None) -> tuple[str, ...]:
    if not files:
        return ()
    cleaned = {item.strip().replace("\\", "/") for item in files if item and item.strip()}
    return tuple(sorted(cleaned))


def essence_of(description: str) -> str:
    text = _WHITESPACE.sub(" ", description).strip()
    if not text:
        return ""
    first = _SENTENCE_END.split(text, maxsplit=1)[0]
    return first[:_ESSENCE_LIMIT]


def _scope_dependencies(
    request: WorkRequest,
    files: tuple[str, ...],
    prior_context: PriorContext | None,
) -> tuple[str, ...]:
    questions: list[str] = []
    if not files:
        questions.append(UNKNOWN_SCOPE_QUESTION)
    questions.extend(item.strip() for item in request.open_questions if item.strip())
    if questions and prior_context is not None:
        for issue in prior_context.related_issues:
            questions.append(f"Does related issue '{issue}' widen the scope of this change?")
    seen: set[str] = set()
    ordered: list[str] = []
    for question in questions:
        if question not in seen:
            seen.add(question)
            ordered.append(question)
    return tuple(ordered)


def classify(request: WorkRequest, prior_context: PriorContext | None = None) -> Classification:
    """Classify a work request by scale and required artifacts.

    When the affected-file count cannot be estimated the result is
    provisional: scale reports the lower bound of the evidence and
    ``scope_dependencies`` lists the questions whose answers could change it.
    """
    context = prior_context if prior_context is not None else request.prior_context
    files = normalize_files(request.affected_files)
    scale = scale_for_file_count(len(files)) if files else Scale.SMALL
    triggers = tuple(sorted(request.triggers))
    dependencies = _scope_dependencies(request, files, context)
    return Classification(
        task_type=request.task_type.strip() or "feature",
        essence=essence_of(request.description),
        scale=scale,
        confidence=Confidence.PROVISIONAL if dependencies else Confidence.CONFIRMED,
        affected_files=files,
        required_artifacts=required_artifacts(scale, frozenset(triggers)),
        triggers=triggers,
        scope_dependencies=dependencies,
    )
