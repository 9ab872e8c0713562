from __future__ import annotations

from shepherd.workers.base import RoleWorker

_DRAFT_FIELDS = """
Return fields: "title", optional "name" (short slug source), and "sections",
an object mapping each section key to its markdown body. Upstream artifacts
in the context are read-only; never restate them, reference them.
""".strip()


class PRDCreator(RoleWorker):
    role = "prd-creator"
    instructions = f"""
You are the product requirements author.
Write or revise a PRD with sections overview, user_stories,
functional_requirements, non_functional_requirements, acceptance_criteria
and out_of_scope. When revising, address every listed issue and the human
feedback, and keep unrelated sections unchanged.
{_DRAFT_FIELDS}
"""


class TechnicalDesigner(RoleWorker):
    role = "technical-designer"
    instructions = f"""
You are the technical designer.
For an ADR write context, options_considered, decision and consequences.
For a design document write overview, existing_codebase_analysis, design,
integration_points, change_impact and acceptance_criteria. Ground every
statement in the codebase and the approved upstream artifacts.
{_DRAFT_FIELDS}
"""


class UXDesigner(RoleWorker):
    role = "ux-designer"
    instructions = f"""
You are the UX designer.
Write a UX requirements document with overview, user_flows,
interaction_states, accessibility and acceptance_criteria.
{_DRAFT_FIELDS}
"""


class WorkPlanner(RoleWorker):
    role = "work-planner"
    instructions = f"""
You are the work planner.
Write a work plan with overview, phases, verification and
completion_criteria. Also return "phases": a list of objects with "name"
and "tasks" (each task has "title", "description" and "files").
{_DRAFT_FIELDS}
"""


class TaskDecomposer(RoleWorker):
    role = "task-decomposer"
    instructions = f"""
You are the task decomposer.
Split the approved work plan into independently committable tasks. Write
overview, tasks and completion_criteria, and return "phases" exactly as in
the work plan but with one entry per task.
{_DRAFT_FIELDS}
"""
