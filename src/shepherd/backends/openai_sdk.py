from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from openai import OpenAI, OpenAIError

from shepherd.backends.base import AgentBackend, BackendExecutionError, render_prompt


class OpenAIBackend(AgentBackend):
    """Responses API backend; the blocking client call runs in a worker thread."""

    name = "openai"

    def __init__(self, *, model: str = "gpt-5-codex", client: Any | None = None) -> None:
        self.model = model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                raise BackendExecutionError(
                    f"OpenAI client could not be created: {exc}",
                    backend=self.name,
                    retriable=False,
                ) from exc
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        client = self.client
        prompt = render_prompt(user_prompt, context)

        def _request() -> Any:
            return client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"OpenAI execution failed: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
