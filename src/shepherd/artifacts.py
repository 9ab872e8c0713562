"""Artifact catalog and persistence.

Every artifact type has one fixed storage directory, one naming convention,
one mandatory-section list and one creation/revision role. The engine only
reads and writes documents by ``(type, identifier)``.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shepherd.errors import ArtifactStoreError
from shepherd.models import ArtifactType
from shepherd.planner import slugify
from shepherd.schemas import ArtifactDraft


@dataclass(frozen=True, slots=True)
class ArtifactTypeConfig:
    directory: str
    suffix: str
    mandatory_sections: tuple[str, ...]
    creation_role: str
    revision_role: str


ARTIFACT_CATALOG: dict[ArtifactType, ArtifactTypeConfig] = {
    ArtifactType.PRD: ArtifactTypeConfig(
        directory="prd",
        suffix="-prd",
        mandatory_sections=(
            "overview",
            "user_stories",
            "functional_requirements",
            "non_functional_requirements",
            "acceptance_criteria",
            "out_of_scope",
        ),
        creation_role="prd-creator",
        revision_role="prd-creator",
    ),
    ArtifactType.ADR: ArtifactTypeConfig(
        directory="adr",
        suffix="",
        mandatory_sections=("context", "options_considered", "decision", "consequences"),
        creation_role="technical-designer",
        revision_role="technical-designer",
    ),
    ArtifactType.UXRD: ArtifactTypeConfig(
        directory="ux",
        suffix="-uxrd",
        mandatory_sections=(
            "overview",
            "user_flows",
            "interaction_states",
            "accessibility",
            "acceptance_criteria",
        ),
        creation_role="ux-designer",
        revision_role="ux-designer",
    ),
    ArtifactType.DESIGN_DOC: ArtifactTypeConfig(
        directory="design",
        suffix="-design",
        mandatory_sections=(
            "overview",
            "existing_codebase_analysis",
            "design",
            "integration_points",
            "change_impact",
            "acceptance_criteria",
        ),
        creation_role="technical-designer",
        revision_role="technical-designer",
    ),
    ArtifactType.WORK_PLAN: ArtifactTypeConfig(
        directory="plans",
        suffix="-plan",
        mandatory_sections=("overview", "phases", "verification", "completion_criteria"),
        creation_role="work-planner",
        revision_role="work-planner",
    ),
    ArtifactType.TASK_FILE: ArtifactTypeConfig(
        directory="plans/tasks",
        suffix="-tasks",
        mandatory_sections=("overview", "tasks", "completion_criteria"),
        creation_role="task-decomposer",
        revision_role="task-decomposer",
    ),
}

_METADATA_PATTERN = re.compile(r"^<!--\s*shepherd:\s*(\{.*\})\s*-->\s*$")
_HEADING_PATTERN = re.compile(r"^##\s+(.+?)\s*$")
_TITLE_PATTERN = re.compile(r"^#\s+(.+?)\s*$")
_ADR_SEQUENCE_PATTERN = re.compile(r"^ADR-(\d{4})-")


def section_key(heading: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", heading.strip().lower()).strip("_")


def section_heading(key: str) -> str:
    return " ".join(part.capitalize() for part in key.split("_") if part)


@dataclass(slots=True)
class ArtifactDocument:
    type: ArtifactType
    identifier: str
    title: str = ""
    sections: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        lines = [f"<!-- shepherd: {json.dumps(self.metadata, sort_keys=True)} -->"]
        lines.append(f"# {self.title or self.identifier}")
        for key, body in self.sections.items():
            lines.append("")
            lines.append(f"## {section_heading(key)}")
            lines.append(body.rstrip())
        return "\n".join(lines).rstrip() + "\n"

    @classmethod
    def parse(cls, artifact_type: ArtifactType, identifier: str, text: str) -> ArtifactDocument:
        metadata: dict[str, Any] = {}
        title = ""
        sections: dict[str, list[str]] = {}
        current: str | None = None
        for raw_line in text.splitlines():
            meta_match = _METADATA_PATTERN.match(raw_line)
            if meta_match and not sections and not title:
                try:
                    parsed = json.loads(meta_match.group(1))
                except json.JSONDecodeError as exc:
                    raise ArtifactStoreError(
                        f"Corrupt metadata header in {artifact_type} '{identifier}'."
                    ) from exc
                if isinstance(parsed, dict):
                    metadata = parsed
                continue
            heading = _HEADING_PATTERN.match(raw_line)
            if heading:
                current = section_key(heading.group(1))
                sections.setdefault(current, [])
                continue
            title_match = _TITLE_PATTERN.match(raw_line)
            if title_match and current is None and not title:
                title = title_match.group(1)
                continue
            if current is not None:
                sections[current].append(raw_line)
        return cls(
            type=artifact_type,
            identifier=identifier,
            title=title,
            sections={key: "\n".join(lines).strip() for key, lines in sections.items()},
            metadata=metadata,
        )


def document_from_draft(
    artifact_type: ArtifactType,
    identifier: str,
    draft: ArtifactDraft,
    metadata: dict[str, Any] | None = None,
) -> ArtifactDocument:
    merged = dict(metadata or {})
    # Planned phases and tasks travel with the document so revisions replace them.
    if draft.phases:
        merged["phases"] = [phase.model_dump() for phase in draft.phases]
    if draft.tasks:
        merged["tasks"] = [task.model_dump() for task in draft.tasks]
    return ArtifactDocument(
        type=artifact_type,
        identifier=identifier,
        title=draft.title,
        sections={section_key(key): body for key, body in draft.sections.items()},
        metadata=merged,
    )


class ArtifactStore(ABC):
    @abstractmethod
    def read(self, artifact_type: ArtifactType, identifier: str) -> ArtifactDocument:
        """Load a document; raise ArtifactStoreError when it cannot be read."""

    @abstractmethod
    def write(self, document: ArtifactDocument) -> None:
        """Persist a document, replacing any previous version."""

    @abstractmethod
    def identifiers(self, artifact_type: ArtifactType) -> list[str]:
        """List stored identifiers of one artifact type."""

    def exists(self, artifact_type: ArtifactType, identifier: str) -> bool:
        return identifier in self.identifiers(artifact_type)

    def allocate_identifier(
        self, artifact_type: ArtifactType, name: str, *, common: bool = False
    ) -> str:
        slug = slugify(name)
        if artifact_type is ArtifactType.ADR:
            if common:
                return f"ADR-COMMON-{slug}"
            sequence = 0
            for existing in self.identifiers(artifact_type):
                match = _ADR_SEQUENCE_PATTERN.match(existing)
                if match:
                    sequence = max(sequence, int(match.group(1)))
            return f"ADR-{sequence + 1:04d}-{slug}"
        return f"{slug}{ARTIFACT_CATALOG[artifact_type].suffix}"


class FileArtifactStore(ArtifactStore):
    def __init__(self, docs_root: Path) -> None:
        self.docs_root = docs_root.resolve()

    def path_for(self, artifact_type: ArtifactType, identifier: str) -> Path:
        directory = self.docs_root / ARTIFACT_CATALOG[artifact_type].directory
        return directory / f"{identifier}.md"

    def read(self, artifact_type: ArtifactType, identifier: str) -> ArtifactDocument:
        path = self.path_for(artifact_type, identifier)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ArtifactStoreError(
                f"Cannot read {artifact_type} '{identifier}' at {path}: {exc}"
            ) from exc
        return ArtifactDocument.parse(artifact_type, identifier, text)

    def write(self, document: ArtifactDocument) -> None:
        path = self.path_for(document.type, document.identifier)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(document.render(), encoding="utf-8")
        except OSError as exc:
            raise ArtifactStoreError(
                f"Cannot write {document.type} '{document.identifier}' at {path}: {exc}"
            ) from exc

    def identifiers(self, artifact_type: ArtifactType) -> list[str]:
        directory = self.docs_root / ARTIFACT_CATALOG[artifact_type].directory
        if not directory.is_dir():
            return []
        return sorted(path.stem for path in directory.glob("*.md") if path.is_file())


class MemoryArtifactStore(ArtifactStore):
    def __init__(self) -> None:
        self._documents: dict[tuple[ArtifactType, str], str] = {}

    def read(self, artifact_type: ArtifactType, identifier: str) -> ArtifactDocument:
        text = self._documents.get((artifact_type, identifier))
        if text is None:
            raise ArtifactStoreError(f"No {artifact_type} stored as '{identifier}'.")
        return ArtifactDocument.parse(artifact_type, identifier, text)

    def write(self, document: ArtifactDocument) -> None:
        self._documents[(document.type, document.identifier)] = document.render()

    def identifiers(self, artifact_type: ArtifactType) -> list[str]:
        return sorted(ident for kind, ident in self._documents if kind is artifact_type)

    def remove(self, artifact_type: ArtifactType, identifier: str) -> None:
        self._documents.pop((artifact_type, identifier), None)
