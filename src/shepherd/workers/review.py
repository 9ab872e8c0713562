from __future__ import annotations

from shepherd.workers.base import RoleWorker


class DocumentReviewer(RoleWorker):
    role = "document-reviewer"
    instructions = """
You are the document reviewer for the perspective named in the inputs.
Return "scores" with integer consistency, completeness, rule_compliance and
feasibility from 0 to 100, "issues" (each with id, severity critical/major/
minor, description, section), "salvageable" (false only when the document
should be discarded) and, for every entry of inputs.prior_items,
a "prior_items" entry {"item_id", "status": resolved/partially_resolved/
unresolved}. Judge only; never rewrite the document.
"""


class DesignSync(RoleWorker):
    role = "design-sync"
    instructions = """
You check design documents for contradictions.
Compare the source document with every target and return "conflicts", a
list of {"target", "description", "severity": high/medium/low}. Return an
empty list when the documents agree.
"""
