from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from shepherd.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0

    def delay_before(self, attempt: int) -> float:
        """Exponential backoff; attempt 0 runs immediately."""
        if attempt <= 0:
            return 0.0
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(slots=True)
class _Route:
    name: str
    backend: AgentBackend
    failures: list[str] = field(default_factory=list)


class ResilientBackend(AgentBackend):
    """Runs a worker prompt on the primary backend, then the fallback.

    Each backend gets ``max_retries`` extra attempts for retriable failures.
    Chunks are buffered so a half-streamed failed attempt never reaches the
    worker.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.fallback_name = fallback_name
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self._routes = [(primary_name, primary_backend)]
        if fallback_name != primary_name:
            self._routes.append((fallback_name, fallback_backend))

    def _emit(self, event: str, route: _Route, attempt: int, step: str, **extra: Any) -> None:
        if self.event_hook is None:
            return
        self.event_hook(
            {"event": event, "backend": route.name, "attempt": attempt, "step": step, **extra}
        )

    async def _buffered(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _drain() -> list[str]:
            return [chunk async for chunk in backend.execute(system_prompt, user_prompt, context)]

        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(_drain(), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"No complete answer within {timeout:.1f}s", retriable=True
            ) from exc

    async def _try_route(
        self,
        route: _Route,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str] | None:
        step = str(context.get("step", ""))
        for attempt in range(self.retry_policy.max_retries + 1):
            delay = self.retry_policy.delay_before(attempt)
            if attempt:
                self._emit("backend_retry", route, attempt, step, delay_seconds=delay)
                await asyncio.sleep(delay)
            try:
                return await self._buffered(route.backend, system_prompt, user_prompt, context)
            except BackendExecutionError as exc:
                retriable = exc.retriable
                error: Exception = exc
            except Exception as exc:  # unknown failures count as retriable
                retriable = True
                error = exc
            route.failures.append(f"{route.name}[{attempt}]: {error}")
            logger.warning(
                "backend %s failed on %s (attempt %d): %s", route.name, step, attempt, error
            )
            self._emit(
                "backend_attempt_failed", route, attempt, step, error=str(error), retriable=retriable
            )
            if not retriable:
                return None
        return None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        routes = [_Route(name, backend) for name, backend in self._routes]
        chunks: list[str] | None = None
        for index, route in enumerate(routes):
            chunks = await self._try_route(route, system_prompt, user_prompt, context)
            if chunks is None:
                continue
            if index:
                self._emit(
                    "backend_fallback_success",
                    route,
                    len(route.failures),
                    str(context.get("step", "")),
                )
            break

        if chunks is None:
            failures = [failure for route in routes for failure in route.failures]
            raise BackendExecutionError(
                "All backend attempts failed. " + "; ".join(failures[-6:]), retriable=False
            )
        for chunk in chunks:
            yield chunk
