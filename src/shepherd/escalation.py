"""Fixed-rule routing of execution events to human escalations."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Final

from shepherd.errors import DispatchError
from shepherd.models import EscalationRequest, Severity
from shepherd.schemas import ExecutionEvent

logger = logging.getLogger(__name__)


class _Continue:
    __slots__ = ()

    def __repr__(self) -> str:
        return "CONTINUE"


CONTINUE: Final = _Continue()
RouteResult = EscalationRequest | _Continue

CRITICAL_KINDS = frozenset(
    {
        "interface_change",
        "layer_violation",
        "dependency_reversal",
        "new_external_dependency",
        "safety_bypass",
    }
)

# Two matched signals escalate only when one of these pairs is present.
DUPLICATION_PAIRS: tuple[frozenset[str], ...] = (
    frozenset({"domain", "processing"}),
    frozenset({"io_shape", "processing"}),
)

SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
}

DEFAULT_OPTIONS: dict[str, tuple[str, ...]] = {
    "interface_change": (
        "Approve the interface change and update the governing design",
        "Keep the existing interface and adapt the implementation",
    ),
    "layer_violation": (
        "Restructure the change to respect layer boundaries",
        "Record an explicit exception in an ADR",
    ),
    "dependency_reversal": (
        "Invert the dependency through an abstraction",
        "Accept the reversal and document it in an ADR",
    ),
    "new_external_dependency": (
        "Approve the new dependency",
        "Implement without the new dependency",
    ),
    "safety_bypass": (
        "Keep the safety mechanism and find another approach",
        "Approve the bypass with a documented justification",
    ),
    "duplication": (
        "Extract a shared implementation",
        "Keep the duplicate and record why",
    ),
    "ambiguity": (
        "Clarify the governing artifact and retry",
        "Choose one interpretation explicitly",
    ),
    "environment_unavailable": (
        "Restore the environment and resume",
        "Skip the affected step and resume",
    ),
}


def _escalate(
    event: ExecutionEvent,
    severity: Severity,
    *,
    unit_id: str | None,
    blocked: bool = False,
) -> EscalationRequest:
    options = tuple(option for option in event.suggested_options if option.strip())
    return EscalationRequest(
        kind=event.kind,
        severity=severity,
        context=event.description or f"Execution reported {event.kind}.",
        suggested_options=options or DEFAULT_OPTIONS[event.kind],
        blocked=blocked,
        unit_id=unit_id,
    )


def duplication_severity(signals: Iterable[str]) -> Severity | None:
    matched = frozenset(signals)
    if len(matched) >= 3:
        return Severity.HIGH
    if len(matched) == 2 and matched in DUPLICATION_PAIRS:
        return Severity.MEDIUM
    return None


def route(event: ExecutionEvent, *, unit_id: str | None = None) -> RouteResult:
    if event.kind in CRITICAL_KINDS:
        return _escalate(event, Severity.CRITICAL, unit_id=unit_id)
    if event.kind == "environment_unavailable":
        return _escalate(event, Severity.CRITICAL, unit_id=unit_id, blocked=True)
    if event.kind == "duplication":
        severity = duplication_severity(event.signals)
        if severity is None:
            return CONTINUE
        return _escalate(event, severity, unit_id=unit_id)
    if event.kind == "ambiguity":
        if event.interpretations >= 2 or event.governing_artifact_silent:
            return _escalate(event, Severity.HIGH, unit_id=unit_id)
        return CONTINUE
    raise DispatchError(f"Unknown execution event kind '{event.kind}'.", step="execute_task")


def route_all(events: Iterable[ExecutionEvent], *, unit_id: str | None = None) -> RouteResult:
    """Route every event and return the most severe escalation, if any."""
    chosen: EscalationRequest | None = None
    for event in events:
        routed = route(event, unit_id=unit_id)
        if not isinstance(routed, EscalationRequest):
            continue
        if chosen is None or SEVERITY_RANK[routed.severity] < SEVERITY_RANK[chosen.severity]:
            chosen = routed
    if chosen is None:
        return CONTINUE
    logger.info("Escalating %s (%s) for unit %s", chosen.kind, chosen.severity, unit_id)
    return chosen
