from __future__ import annotations

import json
import logging
import re
from typing import Any

from shepherd.backends.base import AgentBackend
from shepherd.errors import DispatchError

logger = logging.getLogger(__name__)

PAYLOAD_CONTRACT = """
Finish your answer with exactly one line holding a single JSON object.
It must contain "status" and "summary" plus the fields listed above.
Do not wrap that line in markdown.
""".strip()

_FENCE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def extract_payload(raw_text: str) -> dict[str, Any] | None:
    """Return the last JSON object in worker output, preferring single-line objects."""
    payloads = extract_json_objects(raw_text)
    if payloads:
        return payloads[-1]
    for block in reversed(_FENCE.findall(raw_text)):
        try:
            parsed = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


class RoleWorker:
    role: str = "worker"
    instructions: str = "You are a software delivery specialist."

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend

    @property
    def system_prompt(self) -> str:
        return f"{self.instructions.strip()}\n\n{PAYLOAD_CONTRACT}"

    async def run(self, instruction: str, context: dict[str, Any]) -> dict[str, Any]:
        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=context,
        ):
            chunks.append(chunk)
        content = "\n".join(chunks).strip()
        payload = extract_payload(content)
        if payload is None:
            logger.warning("%s produced no JSON payload (%d chars)", self.role, len(content))
            raise DispatchError(
                f"Worker '{self.role}' returned no JSON payload.",
                step=str(context.get("step") or "") or None,
            )
        return payload
