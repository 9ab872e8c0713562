from __future__ import annotations

import asyncio
import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from shepherd.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    render_prompt,
)

logger = logging.getLogger(__name__)


def extract_stream_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    result = event.get("result")
    if isinstance(result, str):
        return result
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_stream_text(message)
    item = event.get("item")
    if isinstance(item, dict) and isinstance(item.get("text"), str):
        return item["text"]
    return ""


def _unbalanced(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


class StreamDecoder:
    """Turns agent stdout lines into text chunks.

    JSON events yield their text content. A JSON object split over several
    lines is held back until it parses. Plain lines pass through.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, line: str) -> str:
        line = line.strip()
        if not line:
            return ""
        candidate = self._pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if _unbalanced(candidate):
                self._pending = candidate
                return ""
            self._pending = ""
            return line
        self._pending = ""
        if isinstance(event, dict):
            return extract_stream_text(event)
        return candidate

    def flush(self) -> str:
        pending, self._pending = self._pending, ""
        return pending


class CLIBackend(AgentBackend):
    """Runs an agent CLI that prints one JSON event per line on stdout."""

    name = "cli"
    default_binary = ""

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        *,
        model: str | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary or self.default_binary
        self.working_directory = working_directory
        self.model = model
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, system_prompt: str, prompt: str) -> list[str]:
        """Return the argv for one invocation."""

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, render_prompt(user_prompt, context))
        logger.debug("Starting %s backend: %s", self.name, command[:3])
        self._emit({"event": "cli_start", "backend": self.name, "command": command[:3]})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.",
                backend=self.name,
                retriable=False,
            )

        decoder = StreamDecoder()
        async for raw_line in process.stdout:
            text = decoder.feed(raw_line.decode("utf-8", errors="replace"))
            if text:
                yield text
        tail = decoder.flush()
        if tail:
            yield tail

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "cli_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )


class ClaudeBackend(CLIBackend):
    name = "claude"
    default_binary = "claude"

    def build_command(self, system_prompt: str, prompt: str) -> list[str]:
        command = [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        if self.model:
            command.extend(["--model", self.model])
        return command


class CodexBackend(CLIBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(self, system_prompt: str, prompt: str) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        if self.model:
            command.extend(["-m", self.model])
        command.append(prompt)
        return command
