"""Transport contract between role workers and agent runtimes.

A backend takes a role's system prompt plus a rendered step prompt and
streams the agent's text back. Workers join the chunks and pull the JSON
payload from the last line, so backends never interpret the output.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """An agent runtime could not produce an answer for a worker step.

    ``retriable`` tells the resilient wrapper whether another attempt on the
    same backend can help.
    """

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """No complete answer arrived within ``backend.timeout_seconds``."""


class BackendProcessError(BackendExecutionError):
    """The agent CLI could not be launched or its output could not be read."""


def render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
    """Append the dispatch context (run snapshot, inputs, upstream) as JSON."""
    if not context:
        return user_prompt
    return "\n\n".join(
        [user_prompt, "Context JSON:", json.dumps(context, ensure_ascii=False, indent=2)]
    )


class AgentBackend(ABC):
    name = "agent"

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Run one worker step and stream the agent's text."""
