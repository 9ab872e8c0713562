from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from shepherd.models import CommitStrategy, TaskUnit, TaskUnitState


@dataclass(frozen=True, slots=True)
class CommitPolicy:
    """Commit timing for one run. Quality checks run whatever the strategy."""

    strategy: CommitStrategy = CommitStrategy.PER_TASK

    @classmethod
    def from_value(cls, value: str | CommitStrategy) -> CommitPolicy:
        return cls(strategy=CommitStrategy(value))

    @staticmethod
    def _all_checked(units: Sequence[TaskUnit]) -> bool:
        return bool(units) and all(
            unit.state is TaskUnitState.QUALITY_CHECKED for unit in units
        )

    def should_commit_unit(self, unit: TaskUnit) -> bool:
        return (
            self.strategy is CommitStrategy.PER_TASK
            and unit.state is TaskUnitState.QUALITY_CHECKED
        )

    def should_commit_phase(self, phase_units: Sequence[TaskUnit]) -> bool:
        return self.strategy is CommitStrategy.PER_PHASE and self._all_checked(phase_units)

    def should_commit_completion(self, units: Sequence[TaskUnit]) -> bool:
        return self.strategy is CommitStrategy.PER_FEATURE and self._all_checked(units)

    def units_to_commit(self, units: Sequence[TaskUnit], checked: TaskUnit) -> list[TaskUnit]:
        """Return the batch that becomes committable once ``checked`` passed quality."""
        if self.should_commit_unit(checked):
            return [checked]
        phase_units = [unit for unit in units if unit.phase == checked.phase]
        if self.should_commit_phase(phase_units):
            return phase_units
        if self.should_commit_completion(units):
            return list(units)
        return []
