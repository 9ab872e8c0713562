from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from shepherd.artifacts import ARTIFACT_CATALOG, ArtifactDocument, ArtifactStore, document_from_draft
from shepherd.dispatcher import AgentDispatcher, DispatchRequest, UpstreamRef
from shepherd.errors import RevisionLimitExceeded
from shepherd.gate import GateController, GateOutcome
from shepherd.models import ArtifactInstance, ArtifactState, ArtifactType, Verdict
from shepherd.schemas import ArtifactDraft

logger = logging.getLogger(__name__)

REVISION_ROLES: dict[ArtifactType, str] = {
    artifact_type: entry.revision_role for artifact_type, entry in ARTIFACT_CATALOG.items()
}

TERMINAL_VERDICTS = frozenset(
    {Verdict.APPROVED, Verdict.APPROVED_WITH_CONDITIONS, Verdict.REJECTED}
)


class RevisionController:
    """Bounded gate -> revise -> re-gate loop.

    Each artifact type has exactly one revision role. The controller only
    hands the revision role its feedback; the documents themselves are
    rewritten by the worker.
    """

    def __init__(
        self,
        dispatcher: AgentDispatcher,
        gate: GateController,
        artifacts: ArtifactStore,
        *,
        max_attempts: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self.dispatcher = dispatcher
        self.gate = gate
        self.artifacts = artifacts
        self.max_attempts = max_attempts

    @staticmethod
    def role_for(artifact_type: ArtifactType) -> str:
        return REVISION_ROLES[artifact_type]

    async def revise(
        self,
        artifact: ArtifactInstance,
        document: ArtifactDocument,
        outcome: GateOutcome | None,
        *,
        context: dict[str, Any],
        upstream: Sequence[UpstreamRef] = (),
    ) -> ArtifactDocument:
        if artifact.state is not ArtifactState.REVISING:
            artifact.transition(ArtifactState.REVISING)

        if outcome is not None:
            issues = outcome.issues
            missing = list(outcome.missing_sections)
        else:
            last = artifact.gate_history[-1] if artifact.gate_history else None
            issues = list(last.issues) if last else []
            missing = list(last.missing_sections) if last else []

        role = self.role_for(artifact.spec.type)
        result = await self.dispatcher.dispatch(
            DispatchRequest(
                step="revise_artifact",
                instruction=(
                    f"Revise {artifact.spec.type} '{document.identifier}' to address the "
                    "listed review issues, missing sections and human feedback."
                ),
                context=context,
                role=role,
                inputs={
                    "artifact": {
                        "key": artifact.key,
                        "identifier": document.identifier,
                        "version": artifact.version,
                        "title": document.title,
                        "sections": dict(document.sections),
                    },
                    "issues": [issue.to_dict() for issue in issues],
                    "missing_sections": missing,
                    "conditions": [item.to_dict() for item in artifact.conditions],
                    "feedback": list(artifact.feedback),
                },
                upstream=list(upstream),
            )
        )
        draft = result.expect(ArtifactDraft)
        artifact.version += 1
        revised = document_from_draft(
            artifact.spec.type,
            document.identifier,
            draft,
            {**document.metadata, "version": artifact.version, "status": str(artifact.state)},
        )
        self.artifacts.write(revised)
        artifact.feedback.clear()
        logger.info("Revised %s to v%d via %s", artifact.key, artifact.version, role)
        return revised

    async def run_until_terminal(
        self,
        artifact: ArtifactInstance,
        document: ArtifactDocument,
        *,
        context: dict[str, Any],
        upstream: Sequence[UpstreamRef] = (),
    ) -> tuple[ArtifactDocument, GateOutcome]:
        """Gate and revise until the verdict is terminal.

        An artifact that enters already marked for revision (a human change
        request) is revised before its first gate. Raises
        RevisionLimitExceeded once ``max_attempts`` revisions have been made
        without a terminal verdict.
        """
        revisions = 0
        outcome: GateOutcome | None = None
        if artifact.state not in (ArtifactState.NEEDS_REVISION, ArtifactState.REVISING):
            outcome = await self.gate.gate(artifact, document, context=context, upstream=upstream)
            if outcome.verdict in TERMINAL_VERDICTS:
                return document, outcome

        while True:
            if revisions >= self.max_attempts:
                raise RevisionLimitExceeded(
                    f"Artifact {artifact.key} still needs revision after "
                    f"{revisions} revision attempt(s).",
                    artifact_key=artifact.key,
                    attempts=revisions,
                )
            document = await self.revise(
                artifact, document, outcome, context=context, upstream=upstream
            )
            revisions += 1
            outcome = await self.gate.gate(artifact, document, context=context, upstream=upstream)
            if outcome.verdict in TERMINAL_VERDICTS:
                return document, outcome
