import json
from pathlib import Path

import pytest

from shepherd.errors import StateStoreError
from shepherd.state import StateStore


def test_envelope_wraps_written_data(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state")
    store.set_json("metrics", {"count": 1})

    on_disk = json.loads((tmp_path / "state" / "metrics.json").read_text(encoding="utf-8"))

    assert on_disk["schema_version"] == StateStore.SCHEMA_VERSION
    assert on_disk["data"] == {"count": 1}
    assert store.get_json("metrics") == {"count": 1}
    assert not (tmp_path / "state" / ".lock").exists()


def test_legacy_payload_is_read_as_data(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    (tmp_path / "decisions.json").write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.get_json("decisions") == {"legacy": True}
    assert store.get_envelope("decisions")["revision"] == 1


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    first_revision = store.get_envelope("metrics")["revision"]

    store.update_json(
        "metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )

    assert store.get_json("metrics")["count"] == 2
    assert store.get_envelope("metrics")["revision"] > first_revision


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("runs", {"runs": {}})

    with pytest.raises(StateStoreError, match="Concurrent state update"):
        store.set_json("runs", {"runs": {}}, expected_revision=99)


def test_unknown_namespace_and_corrupt_file(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    with pytest.raises(StateStoreError, match="Unsupported namespace"):
        store.get_json("context")

    (tmp_path / "runs.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StateStoreError, match="corrupt"):
        store.load_run()


def test_runs_track_the_active_run(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.save_run({"run_id": "run-a", "started_at": "2026-01-01T00:00:00+00:00"})
    store.save_run({"run_id": "run-b", "started_at": "2026-01-02T00:00:00+00:00"})

    assert store.load_run()["run_id"] == "run-b"
    assert store.load_run("run-a")["run_id"] == "run-a"
    assert store.load_run("run-z") is None
    assert [run["run_id"] for run in store.list_runs()] == ["run-a", "run-b"]


def test_decisions_and_capped_event_history(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.add_decision({"kind": "approve", "stop": "classification"})
    for index in range(StateStore.HISTORY_LIMIT + 5):
        store.record_event("transitions", {"index": index})

    decisions = store.get_decisions()
    history = store.get_metrics()["transitions"]

    assert decisions[0]["kind"] == "approve"
    assert "recorded_at" in decisions[0]
    assert len(history) == StateStore.HISTORY_LIMIT
    assert history[0]["index"] == 5
