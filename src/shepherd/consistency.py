from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from shepherd.artifacts import ArtifactStore
from shepherd.dispatcher import AgentDispatcher, DispatchRequest, UpstreamRef
from shepherd.models import ArtifactType
from shepherd.schemas import ConsistencyPayload

logger = logging.getLogger(__name__)

NO_TARGETS_SUMMARY = "no conflicts possible"


@dataclass(frozen=True, slots=True)
class ConsistencyReport:
    source: str
    targets: tuple[str, ...]
    summary: str
    conflicts: tuple[dict[str, Any], ...] = ()
    limitations: tuple[str, ...] = ()
    dispatched: bool = False

    @property
    def consistent(self) -> bool:
        return not self.conflicts

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "targets": list(self.targets),
            "summary": self.summary,
            "conflicts": [dict(item) for item in self.conflicts],
            "limitations": list(self.limitations),
            "dispatched": self.dispatched,
        }


def design_doc_refs(artifacts: ArtifactStore, *, exclude: str | None = None) -> list[UpstreamRef]:
    return [
        UpstreamRef(
            key=f"{ArtifactType.DESIGN_DOC}:{identifier}",
            type=ArtifactType.DESIGN_DOC,
            identifier=identifier,
        )
        for identifier in artifacts.identifiers(ArtifactType.DESIGN_DOC)
        if identifier != exclude
    ]


async def check_consistency(
    dispatcher: AgentDispatcher,
    source: UpstreamRef,
    targets: Sequence[UpstreamRef],
    *,
    context: dict[str, Any],
) -> ConsistencyReport:
    """Compare one document against its peers.

    With zero comparison targets no worker is dispatched and the trivial
    report is returned.
    """
    if not targets:
        logger.debug("No comparison targets for %s; skipping dispatch", source.identifier)
        return ConsistencyReport(source=source.identifier, targets=(), summary=NO_TARGETS_SUMMARY)

    result = await dispatcher.dispatch(
        DispatchRequest(
            step="check_consistency",
            instruction=(
                f"Compare '{source.identifier}' against the listed documents and report "
                "every conflicting statement."
            ),
            context=context,
            inputs={
                "source": source.identifier,
                "targets": [target.identifier for target in targets],
            },
            upstream=[source, *targets],
        )
    )
    payload = result.expect(ConsistencyPayload)
    conflicts = tuple(conflict.model_dump() for conflict in payload.conflicts)
    if conflicts:
        logger.warning(
            "%d conflict(s) between %s and its peers", len(conflicts), source.identifier
        )
    return ConsistencyReport(
        source=source.identifier,
        targets=tuple(target.identifier for target in targets),
        summary=result.payload.summary,
        conflicts=conflicts,
        limitations=tuple(result.limitations),
        dispatched=True,
    )
