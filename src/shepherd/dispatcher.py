from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, TypeVar

from pydantic import ValidationError

from shepherd.artifacts import ArtifactStore
from shepherd.errors import ArtifactStoreError, DispatchError
from shepherd.models import ArtifactType
from shepherd.schemas import (
    AgentPayload,
    ArtifactDraft,
    ConsistencyPayload,
    DiagnosisPayload,
    ExecutionPayload,
    QualityPayload,
    ReviewPayload,
)

logger = logging.getLogger(__name__)

StepKind = Literal["creation", "detection", "execution"]
DispatchEventHook = Callable[[dict[str, Any]], None]
PayloadT = TypeVar("PayloadT", bound=AgentPayload)


@dataclass(frozen=True, slots=True)
class StepSpec:
    name: str
    kind: StepKind
    payload_model: type[AgentPayload]
    role: str | None = None


STEPS: dict[str, StepSpec] = {
    "create_artifact": StepSpec("create_artifact", "creation", ArtifactDraft),
    "revise_artifact": StepSpec("revise_artifact", "creation", ArtifactDraft),
    "review_artifact": StepSpec(
        "review_artifact", "detection", ReviewPayload, role="document-reviewer"
    ),
    "check_consistency": StepSpec(
        "check_consistency", "detection", ConsistencyPayload, role="design-sync"
    ),
    "execute_task": StepSpec("execute_task", "execution", ExecutionPayload, role="task-executor"),
    "quality_check": StepSpec("quality_check", "execution", QualityPayload, role="quality-fixer"),
    "diagnose": StepSpec("diagnose", "detection", DiagnosisPayload, role="investigator"),
}


class Worker(Protocol):
    async def run(self, instruction: str, context: dict[str, Any]) -> dict[str, Any]:
        """Perform one step and return its JSON payload."""


@dataclass(frozen=True, slots=True)
class UpstreamRef:
    key: str
    type: ArtifactType
    identifier: str
    mandatory: bool = True


@dataclass(slots=True)
class DispatchRequest:
    step: str
    instruction: str
    context: dict[str, Any]
    role: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    upstream: list[UpstreamRef] = field(default_factory=list)


@dataclass(slots=True)
class AgentResult:
    step: str
    role: str
    payload: AgentPayload
    limitations: list[str] = field(default_factory=list)
    context_version: int = 0

    def expect(self, model: type[PayloadT]) -> PayloadT:
        if not isinstance(self.payload, model):
            raise DispatchError(
                f"{self.step} returned {type(self.payload).__name__}, expected {model.__name__}.",
                step=self.step,
            )
        return self.payload


class AgentDispatcher:
    """Runs one worker step against read-only upstream artifacts.

    Payloads are validated against the step's schema before they are
    accepted. Detection steps tolerate unreadable upstream artifacts and
    record the gap; creation and execution steps abort on a missing
    mandatory upstream.
    """

    def __init__(
        self,
        workers: Mapping[str, Worker],
        artifacts: ArtifactStore,
        *,
        event_hook: DispatchEventHook | None = None,
    ) -> None:
        self.workers = dict(workers)
        self.artifacts = artifacts
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def step_spec(step: str) -> StepSpec:
        spec = STEPS.get(step)
        if spec is None:
            raise DispatchError(f"Unknown step '{step}'.", step=step)
        return spec

    def _load_upstream(
        self, spec: StepSpec, refs: Sequence[UpstreamRef]
    ) -> tuple[dict[str, Any], list[str]]:
        loaded: dict[str, Any] = {}
        limitations: list[str] = []
        for ref in refs:
            try:
                document = self.artifacts.read(ref.type, ref.identifier)
            except ArtifactStoreError as exc:
                if spec.kind == "detection" or not ref.mandatory:
                    limitations.append(
                        f"Upstream {ref.type} '{ref.identifier}' unavailable; skipped: {exc}"
                    )
                    continue
                raise DispatchError(
                    f"Mandatory upstream {ref.type} '{ref.identifier}' is unreadable; "
                    f"aborting {spec.name}.",
                    step=spec.name,
                ) from exc
            loaded[ref.key] = {
                "type": str(ref.type),
                "identifier": ref.identifier,
                "title": document.title,
                "sections": dict(document.sections),
            }
        return loaded, limitations

    async def dispatch(self, request: DispatchRequest) -> AgentResult:
        spec = self.step_spec(request.step)
        role = request.role or spec.role
        if role is None:
            raise DispatchError(f"Step '{spec.name}' needs an explicit role.", step=spec.name)
        worker = self.workers.get(role)
        if worker is None:
            raise DispatchError(f"No worker registered for role '{role}'.", step=spec.name)

        upstream, limitations = self._load_upstream(spec, request.upstream)
        worker_context = {
            "step": spec.name,
            "role": role,
            "run": request.context,
            "inputs": dict(request.inputs),
            "upstream": upstream,
            "limitations": list(limitations),
        }
        logger.debug("Dispatching %s to %s", spec.name, role)
        try:
            raw = await worker.run(request.instruction, worker_context)
        except DispatchError:
            raise
        except Exception as exc:
            self._emit({"event": "dispatch_failed", "step": spec.name, "role": role})
            raise DispatchError(
                f"Worker '{role}' failed during {spec.name}: {exc}", step=spec.name
            ) from exc

        if not isinstance(raw, dict):
            raise DispatchError(
                f"Worker '{role}' returned {type(raw).__name__}, expected a JSON object.",
                step=spec.name,
            )
        try:
            payload = spec.payload_model.model_validate(raw)
        except ValidationError as exc:
            errors = [
                f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}"
                for item in exc.errors()
            ]
            self._emit(
                {"event": "dispatch_rejected", "step": spec.name, "role": role, "errors": errors}
            )
            raise DispatchError(
                f"Malformed payload from '{role}' for {spec.name}: " + "; ".join(errors),
                step=spec.name,
                errors=errors,
            ) from exc

        self._emit(
            {
                "event": "dispatch_completed",
                "step": spec.name,
                "role": role,
                "status": payload.status,
                "limitations": len(limitations),
            }
        )
        return AgentResult(
            step=spec.name,
            role=role,
            payload=payload,
            limitations=limitations,
            context_version=int(request.context.get("version", 0)),
        )

    async def dispatch_many(self, requests: Sequence[DispatchRequest]) -> list[AgentResult]:
        """Fan out independent steps and wait for every one of them."""
        outcomes = await asyncio.gather(
            *(self.dispatch(request) for request in requests),
            return_exceptions=True,
        )
        results: list[AgentResult] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
        return results
