from __future__ import annotations


class ShepherdError(RuntimeError):
    """Base class for orchestration failures surfaced to callers."""


class ConfigError(ShepherdError):
    """Raised when shepherd.toml holds an unusable value."""


class PlanningError(ShepherdError):
    """Raised when the artifact dependency graph cannot be ordered."""


class DispatchError(ShepherdError):
    """Raised when a worker step fails or returns a payload that breaks its contract."""

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.step = step
        self.errors = list(errors or [])


class RevisionLimitExceeded(ShepherdError):
    """Raised when the gate/revision loop cannot converge within its cap."""

    def __init__(self, message: str, *, artifact_key: str, attempts: int) -> None:
        super().__init__(message)
        self.artifact_key = artifact_key
        self.attempts = attempts


class ArtifactStoreError(ShepherdError):
    """Raised when an artifact cannot be read or written."""


class StateStoreError(ShepherdError):
    """Raised when shared-state operations fail."""


class PipelineStateError(ShepherdError):
    """Raised on an illegal pipeline, artifact, or task-unit transition."""
