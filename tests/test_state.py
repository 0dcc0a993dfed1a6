import json
import os
import time
from pathlib import Path

import pytest

from porch.context import PorchContext
from porch.errors import PorchStateError
from porch.state import (
    FileLock,
    Gate,
    IterationRecord,
    PlanPhase,
    ProjectState,
    ReviewResult,
    StateStore,
    find_status_path,
    iter_projects,
    state_from_dict,
    state_to_dict,
)


def _state(**overrides: object) -> ProjectState:
    values: dict = {
        "id": "0099",
        "title": "demo",
        "protocol": "spir",
        "phase": "implement",
        "started_at": "2025-06-01T00:00:00+00:00",
        "updated_at": "2025-06-01T00:00:00+00:00",
    }
    values.update(overrides)
    return ProjectState(**values)


def test_state_document_round_trips_every_field() -> None:
    state = _state(
        iteration=2,
        build_complete=True,
        gates={"plan_approval": Gate(status="approved", requested_at="a", approved_at="b", summary="ok")},
        plan_phases=[PlanPhase("phase_1", "Core", "complete"), PlanPhase("phase_2", "CLI", "in_progress")],
        current_plan_phase="phase_2",
        history=[
            IterationRecord(
                iteration=1,
                build_output="out.txt",
                reviews=[ReviewResult("gemini", "approve", "r.txt")],
                plan_phase="phase_2",
            )
        ],
        awaiting_input=True,
        blocked_reason="needs creds",
        context={"pending_question": "Which DB?"},
        build_failures=1,
        log=[{"at": "t", "event": "init"}],
    )

    document = state_to_dict(state)

    assert document["schema_version"] == 1
    assert document["state"]["history"][0]["reviews"][0] == {
        "model": "gemini",
        "verdict": "approve",
        "file": "r.txt",
    }
    assert state_from_dict(json.loads(json.dumps(document))) == state


def test_state_from_dict_rejects_bad_documents() -> None:
    good = state_to_dict(_state())

    with pytest.raises(PorchStateError, match="schema version"):
        state_from_dict({**good, "schema_version": 2})
    with pytest.raises(PorchStateError, match="missing phase"):
        state_from_dict({"schema_version": 1, "state": {**good["state"], "phase": ""}})
    with pytest.raises(PorchStateError, match="iteration must be >= 1"):
        state_from_dict({"schema_version": 1, "state": {**good["state"], "iteration": 0}})
    with pytest.raises(PorchStateError, match="Invalid gate status"):
        state_from_dict(
            {"schema_version": 1, "state": {**good["state"], "gates": {"g": {"status": "maybe"}}}}
        )


def test_store_write_is_atomic_and_stamps_updated_at(context: PorchContext) -> None:
    path = context.status_path("0099", "demo")
    store = StateStore(path, context=context)
    state = _state()

    store.write(state)

    assert path.exists()
    assert not store.tmp_path.exists()
    assert not store.lock.path.exists()
    loaded = store.read()
    assert loaded.updated_at == "2026-01-01T00:00:00+00:00"
    assert loaded.updated_at == state.updated_at
    assert path.read_text(encoding="utf-8").startswith('{\n  "schema_version": 1')


def test_read_promotes_valid_interrupted_write(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "status.json")
    store.write(_state(iteration=1))
    store.tmp_path.write_text(json.dumps(state_to_dict(_state(iteration=3))), encoding="utf-8")

    recovered = store.read()

    assert recovered.iteration == 3
    assert not store.tmp_path.exists()
    assert state_from_dict(json.loads(store.path.read_text(encoding="utf-8"))).iteration == 3


def test_read_discards_corrupt_interrupted_write(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "status.json")
    store.write(_state(iteration=2))
    store.tmp_path.write_text('{"schema_version": 1, "state": {"id": "00', encoding="utf-8")

    recovered = store.read()

    assert recovered.iteration == 2
    assert not store.tmp_path.exists()


def test_read_missing_or_corrupt_state_fails_loudly(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "status.json")
    with pytest.raises(PorchStateError, match="not found"):
        store.read()

    store.path.write_text("garbage", encoding="utf-8")
    with pytest.raises(PorchStateError, match="Corrupt state file"):
        store.read()


def test_transaction_writes_only_on_clean_exit(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "status.json")
    store.write(_state())

    with store.transaction() as state:
        state.iteration = 2
    assert store.read().iteration == 2

    with pytest.raises(RuntimeError):
        with store.transaction() as state:
            state.iteration = 3
            raise RuntimeError("boom")
    assert store.read().iteration == 2
    assert not store.lock.path.exists()


def test_lock_times_out_when_held_by_live_owner(tmp_path: Path) -> None:
    path = tmp_path / "status.json.lock"
    holder = FileLock(path, name="holder")
    holder.acquire()
    contender = FileLock(path, name="contender", timeout_seconds=0.2, retry_interval_seconds=0.05)

    with pytest.raises(PorchStateError, match="Timed out"):
        contender.acquire()

    holder.release()
    with contender:
        assert contender.held
    assert not path.exists()


def test_lock_reclaims_stale_or_dead_owner(tmp_path: Path) -> None:
    path = tmp_path / "status.json.lock"
    path.write_text(
        json.dumps({"name": "old", "pid": os.getpid(), "created_at": "2020-01-01T00:00:00+00:00"}),
        encoding="utf-8",
    )
    with FileLock(path, timeout_seconds=0.2) as lock:
        assert lock.held
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["pid"] == os.getpid()

    path.write_text(
        json.dumps({"name": "dead", "pid": 2**22 + 12345, "created_at": "2099-01-01T00:00:00+00:00"}),
        encoding="utf-8",
    )
    with FileLock(path, timeout_seconds=0.2) as lock:
        assert lock.held


def test_lock_judges_unparseable_file_by_mtime(tmp_path: Path) -> None:
    path = tmp_path / "status.json.lock"
    path.write_text("", encoding="utf-8")
    old = time.time() - 120
    os.utime(path, (old, old))

    with FileLock(path, timeout_seconds=0.2) as lock:
        assert lock.held


def test_reclaimed_lock_is_not_released_by_previous_holder(tmp_path: Path) -> None:
    path = tmp_path / "status.json.lock"
    first = FileLock(path, clock=lambda: 0.0)
    first.acquire()
    second = FileLock(path, clock=lambda: 100.0, timeout_seconds=0.2)
    second.acquire()

    assert second.owns()
    assert not first.owns()

    first.release()

    assert path.exists()
    third = FileLock(path, clock=lambda: 100.0, timeout_seconds=0.2, retry_interval_seconds=0.05)
    with pytest.raises(PorchStateError, match="Timed out"):
        third.acquire()
    second.release()
    assert not path.exists()


def test_write_after_losing_lock_fails(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "0099-demo/status.json")
    store.write(_state())
    before = store.path.read_bytes()

    with pytest.raises(PorchStateError, match="Lost lock"):
        with store.transaction() as state:
            state.iteration = 5
            store.lock.path.write_text(
                json.dumps({"name": "other", "pid": os.getpid(), "token": "other", "created_at": "x"}),
                encoding="utf-8",
            )

    assert store.path.read_bytes() == before
    assert json.loads(store.lock.path.read_text(encoding="utf-8"))["token"] == "other"


def test_find_status_path_matches_id_prefix(context: PorchContext) -> None:
    for project_id, title in [("0099", "demo"), ("0100", "other")]:
        StateStore(context.status_path(project_id, title)).write(_state(id=project_id, title=title))

    assert find_status_path(context, "0100").parent.name == "0100-other"
    assert [path.parent.name for path in iter_projects(context)] == ["0099-demo", "0100-other"]
    with pytest.raises(PorchStateError, match="Project 0101 not found"):
        find_status_path(context, "0101")
