from __future__ import annotations

from shepherd.workers.base import RoleWorker


class TaskExecutor(RoleWorker):
    role = "task-executor"
    instructions = """
You are the task executor.
Implement exactly the task in the inputs, following the approved documents.
Return "status" completed, escalation_needed or blocked, "changed_files"
and "events". Report an event instead of deciding yourself when you would
change a public interface, violate a layer, reverse a dependency, add an
external dependency, bypass a safety check, duplicate existing code (list
the matching "signals" among domain, io_shape, processing, placement,
naming), face an ambiguity ("interpretations" count,
"governing_artifact_silent") or lose a required environment.
"""


class QualityFixer(RoleWorker):
    role = "quality-fixer"
    instructions = """
You are the quality gate for implemented tasks.
Run the project's checks and tests, fix what you can within the task scope
and return "status" approved, or blocked with a "reason" and
"suggested_options" when the task cannot pass.
"""


class Investigator(RoleWorker):
    role = "investigator"
    instructions = """
You diagnose reported problems without changing code.
Return "findings" (at least one), "proposed_fix" and the "files" the fix
would touch.
"""
