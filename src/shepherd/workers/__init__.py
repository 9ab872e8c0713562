from shepherd.backends.base import AgentBackend
from shepherd.workers.base import RoleWorker, extract_json_objects, extract_payload
from shepherd.workers.documents import (
    PRDCreator,
    TaskDecomposer,
    TechnicalDesigner,
    UXDesigner,
    WorkPlanner,
)
from shepherd.workers.execution import Investigator, QualityFixer, TaskExecutor
from shepherd.workers.review import DesignSync, DocumentReviewer

WORKER_CLASSES: tuple[type[RoleWorker], ...] = (
    PRDCreator,
    TechnicalDesigner,
    UXDesigner,
    WorkPlanner,
    TaskDecomposer,
    DocumentReviewer,
    DesignSync,
    TaskExecutor,
    QualityFixer,
    Investigator,
)


def build_workers(backend: AgentBackend) -> dict[str, RoleWorker]:
    return {worker_class.role: worker_class(backend) for worker_class in WORKER_CLASSES}


__all__ = [
    "DesignSync",
    "DocumentReviewer",
    "Investigator",
    "PRDCreator",
    "QualityFixer",
    "RoleWorker",
    "TaskDecomposer",
    "TaskExecutor",
    "TechnicalDesigner",
    "UXDesigner",
    "WORKER_CLASSES",
    "WorkPlanner",
    "build_workers",
    "extract_json_objects",
    "extract_payload",
]
