from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from shepherd.errors import StateStoreError
from shepherd.models import utcnow_iso

_CONCURRENT_UPDATE = "Concurrent state update detected"


class StateStore:
    """JSON envelope store for runs, human decisions and metrics.

    Each namespace lives in one file wrapped in an envelope carrying
    ``schema_version``, ``revision``, ``updated_at`` and ``data``. Writes
    take a lock file and ``set_json`` can reject a stale revision.
    """

    NAMESPACES = {"runs", "decisions", "metrics"}
    SCHEMA_VERSION = 1
    HISTORY_LIMIT = 200

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"State file {path} is corrupt: {exc}") from exc

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        os.replace(tmp_path, path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(f"{_CONCURRENT_UPDATE} for namespace '{namespace}'.")
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateStoreError as exc:
                last_error = exc
                if _CONCURRENT_UPDATE not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def save_run(self, run: dict[str, Any]) -> None:
        run_id = str(run["run_id"])

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            runs = result.setdefault("runs", {})
            runs[run_id] = run
            result["active"] = run_id
            return result

        self.update_json("runs", _updater, default={"runs": {}})

    def load_run(self, run_id: str | None = None) -> dict[str, Any] | None:
        payload = self.get_json("runs", default={"runs": {}})
        if not isinstance(payload, dict):
            return None
        runs = payload.get("runs", {})
        key = run_id or payload.get("active")
        if not key or not isinstance(runs, dict):
            return None
        run = runs.get(key)
        return run if isinstance(run, dict) else None

    def list_runs(self) -> list[dict[str, Any]]:
        payload = self.get_json("runs", default={"runs": {}})
        runs = payload.get("runs", {}) if isinstance(payload, dict) else {}
        if not isinstance(runs, dict):
            return []
        return sorted(
            (run for run in runs.values() if isinstance(run, dict)),
            key=lambda run: str(run.get("started_at", "")),
        )

    def get_decisions(self) -> list[dict[str, Any]]:
        payload = self.get_json("decisions", default={"decisions": []})
        if not isinstance(payload, dict):
            return []
        decisions = payload.get("decisions", [])
        return decisions if isinstance(decisions, list) else []

    def add_decision(self, decision: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"decisions": []}
            result.setdefault("decisions", [])
            result["decisions"].append({**decision, "recorded_at": utcnow_iso()})
            return result

        self.update_json("decisions", _updater, default={"decisions": []})

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_event(self, category: str, event: dict[str, Any]) -> None:
        """Append an event to a capped metrics history list."""

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            history = result.get(category)
            if not isinstance(history, list):
                history = []
            history.append({**event, "recorded_at": utcnow_iso()})
            result[category] = history[-self.HISTORY_LIMIT :]
            return result

        self.update_json("metrics", _updater, default={})
