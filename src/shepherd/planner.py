from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from shepherd.errors import PlanningError
from shepherd.models import ArtifactSpec, ArtifactType, Classification

logger = logging.getLogger(__name__)

COMMON_PREFIX = "ADR-COMMON:"

_RANK: dict[ArtifactType, int] = {
    ArtifactType.PRD: 0,
    ArtifactType.ADR: 1,
    ArtifactType.UXRD: 2,
    ArtifactType.DESIGN_DOC: 3,
    ArtifactType.WORK_PLAN: 4,
    ArtifactType.TASK_FILE: 5,
}


def slugify(value: str, max_length: int = 60) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")
    return slug[:max_length].rstrip("-") or "untitled"


def common_key(topic: str) -> str:
    return f"{COMMON_PREFIX}{slugify(topic)}"


def _sort_key(spec: ArtifactSpec) -> tuple[int, int, str]:
    # Common artifacts sort ahead of feature artifacts of the same type.
    return (_RANK[spec.type], 0 if spec.common else 1, spec.key)


def order_specs(specs: Iterable[ArtifactSpec]) -> list[ArtifactSpec]:
    """Topologically order specs so every spec follows its dependencies."""
    by_key: dict[str, ArtifactSpec] = {}
    for spec in specs:
        if spec.key in by_key:
            if by_key[spec.key] != spec:
                raise PlanningError(f"Conflicting definitions for artifact '{spec.key}'.")
            continue
        by_key[spec.key] = spec

    for spec in by_key.values():
        missing = [dep for dep in spec.depends_on if dep not in by_key]
        if missing:
            raise PlanningError(
                f"Artifact '{spec.key}' depends on unplanned artifact(s): {', '.join(missing)}"
            )

    remaining = {key: set(spec.depends_on) for key, spec in by_key.items()}
    ordered: list[ArtifactSpec] = []
    while remaining:
        ready = sorted(
            (by_key[key] for key, deps in remaining.items() if not deps),
            key=_sort_key,
        )
        if not ready:
            cycle = ", ".join(sorted(remaining))
            raise PlanningError(f"Artifact dependency cycle detected among: {cycle}")
        chosen = ready[0]
        ordered.append(chosen)
        del remaining[chosen.key]
        for deps in remaining.values():
            deps.discard(chosen.key)
    return ordered


def plan(
    classification: Classification,
    *,
    common_topics: Iterable[str] = (),
) -> list[ArtifactSpec]:
    """Expand a classification into dependency-ordered artifact specs.

    Each shared decision topic becomes exactly one common ADR, however many
    downstream artifacts reference it.
    """
    required = set(classification.required_artifacts)
    commons: dict[str, ArtifactSpec] = {}
    for topic in common_topics:
        key = common_key(topic)
        if key not in commons:
            commons[key] = ArtifactSpec(
                type=ArtifactType.ADR,
                key=key,
                mandatory=True,
                common=True,
                topic=slugify(topic),
            )
    common_keys = tuple(sorted(commons))

    specs: list[ArtifactSpec] = []
    planned: list[str] = []

    def _add(artifact_type: ArtifactType, upstream: tuple[str, ...]) -> None:
        # Any planned document may cite a shared decision.
        specs.append(
            ArtifactSpec(
                type=artifact_type,
                key=str(artifact_type),
                depends_on=upstream + common_keys,
            )
        )
        planned.append(str(artifact_type))

    def _depends(*candidates: ArtifactType) -> tuple[str, ...]:
        return tuple(str(item) for item in candidates if str(item) in planned)

    if ArtifactType.PRD in required:
        _add(ArtifactType.PRD, ())
    if ArtifactType.ADR in required:
        _add(ArtifactType.ADR, _depends(ArtifactType.PRD))
    if ArtifactType.UXRD in required:
        _add(ArtifactType.UXRD, _depends(ArtifactType.PRD))
    if ArtifactType.DESIGN_DOC in required:
        _add(
            ArtifactType.DESIGN_DOC,
            _depends(ArtifactType.PRD, ArtifactType.ADR, ArtifactType.UXRD),
        )
    if ArtifactType.WORK_PLAN in required:
        _add(
            ArtifactType.WORK_PLAN,
            _depends(ArtifactType.DESIGN_DOC)
            or _depends(ArtifactType.PRD, ArtifactType.ADR, ArtifactType.UXRD),
        )
        specs.append(
            ArtifactSpec(
                type=ArtifactType.TASK_FILE,
                key=str(ArtifactType.TASK_FILE),
                mandatory=False,
                depends_on=(str(ArtifactType.WORK_PLAN),),
            )
        )
    if specs:
        specs.extend(commons.values())
    elif commons:
        logger.debug("No documents planned; skipping common ADRs %s", list(commons))

    ordered = order_specs(specs)
    logger.debug(
        "Planned %d artifact(s) for %s scale: %s",
        len(ordered),
        classification.scale,
        [spec.key for spec in ordered],
    )
    return ordered


def upstream_of(spec: ArtifactSpec, specs: Iterable[ArtifactSpec]) -> list[ArtifactSpec]:
    by_key = {item.key: item for item in specs}
    return [by_key[key] for key in spec.depends_on if key in by_key]
