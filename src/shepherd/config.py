from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from shepherd.errors import ConfigError
from shepherd.models import CommitStrategy

BackendName = Literal["claude", "codex", "openai"]
BACKEND_NAMES: tuple[str, ...] = ("claude", "codex", "openai")


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    docs_dir: str = "docs"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class AgentsConfig:
    model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class WorkflowConfig:
    commit_strategy: str = CommitStrategy.PER_TASK.value
    max_revision_attempts: int = 3
    dispatch_retries: int = 1
    review_perspectives: list[str] = field(default_factory=lambda: ["general"])


@dataclass(slots=True)
class GateConfig:
    high_threshold: int = 80
    medium_threshold: int = 60
    reject_threshold: int = 30


@dataclass(slots=True)
class StateConfig:
    state_dir: str = ".shepherd/state"


@dataclass(slots=True)
class ShepherdConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ShepherdConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ShepherdConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                backend=BackendConfig(**data.get("backend", {})),
                agents=AgentsConfig(**data.get("agents", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
                gate=GateConfig(**data.get("gate", {})),
                state=StateConfig(**data.get("state", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        try:
            CommitStrategy(self.workflow.commit_strategy)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in CommitStrategy)
            raise ConfigError(
                f"workflow.commit_strategy must be one of: {allowed}"
            ) from exc
        for slot in ("primary", "fallback"):
            if getattr(self.backend, slot) not in BACKEND_NAMES:
                raise ConfigError(f"backend.{slot} must be one of: {', '.join(BACKEND_NAMES)}")
        if self.workflow.max_revision_attempts < 1:
            raise ConfigError("workflow.max_revision_attempts must be at least 1.")
        if not self.workflow.review_perspectives:
            raise ConfigError("workflow.review_perspectives must name at least one perspective.")
        gate = self.gate
        if not 0 <= gate.reject_threshold <= gate.medium_threshold <= gate.high_threshold <= 100:
            raise ConfigError(
                "gate thresholds must satisfy 0 <= reject <= medium <= high <= 100."
            )

    @property
    def commit_strategy(self) -> CommitStrategy:
        return CommitStrategy(self.workflow.commit_strategy)

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "docs_dir": self.project.docs_dir,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "model": self.agents.model,
            },
            "workflow": {
                "commit_strategy": self.workflow.commit_strategy,
                "max_revision_attempts": self.workflow.max_revision_attempts,
                "dispatch_retries": self.workflow.dispatch_retries,
                "review_perspectives": list(self.workflow.review_perspectives),
            },
            "gate": {
                "high_threshold": self.gate.high_threshold,
                "medium_threshold": self.gate.medium_threshold,
                "reject_threshold": self.gate.reject_threshold,
            },
            "state": {
                "state_dir": self.state.state_dir,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ShepherdConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section, values in data.items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ShepherdConfig:
    if not path.exists():
        return ShepherdConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return ShepherdConfig.from_dict(data)


def save_config(path: Path, config: ShepherdConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
