"""
phasegate — unit tests for run stores

File: tests/unit/persistence/test_run_stores.py
Last updated: 2026-10-18

Purpose
- Validate that the in-memory and SQLite run stores agree on save/get/list
  semantics, and that the SQLite store keeps an append-only report log.

What this test file should cover
- Round trip through each store and detached copies.
- Listing: newest first, status filter, paging, page validation.
- SQLite: state survives reopening; phase reports and checkpoints are
  append-only.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import pytest

from phasegate.domain import ids
from phasegate.domain.models import (
    Checkpoint,
    CheckOutcome,
    CheckResult,
    GateDecision,
    GatePolicyKind,
    PhaseReport,
    Pipeline,
    PipelineStatus,
    Verdict,
    utc_now,
)
from phasegate.persistence.repositories import InMemoryRunStore, RunStore, SqliteRunStore
from phasegate.persistence.state_db import StateDB


def _go_report(name: str, index: int, *, attempt: int = 1, checkpoint_id: str | None = None) -> PhaseReport:
    started = utc_now()
    return PhaseReport(
        phase_name=name,
        phase_index=index,
        attempt=attempt,
        results=(CheckResult(check_id="compile", outcome=CheckOutcome.PASS),),
        decision=GateDecision(verdict=Verdict.GO, policy=GatePolicyKind.STRICT_ALL),
        started_at=started,
        finished_at=started,
        checkpoint_id=checkpoint_id,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> RunStore:
    if request.param == "memory":
        return InMemoryRunStore()
    return SqliteRunStore(StateDB(tmp_path / "state" / "phasegate.sqlite3"))


def _pipelines(release_pipeline: Callable[..., Pipeline], count: int) -> list[Pipeline]:
    base = utc_now()
    statuses = [PipelineStatus.COMPLETED, PipelineStatus.HALTED]
    return [
        release_pipeline(
            name=f"release-{index}",
            created_at=base + timedelta(seconds=index),
            updated_at=base + timedelta(seconds=index),
            status=statuses[index % 2],
        )
        for index in range(count)
    ]


def test_save_and_get_round_trip(store: RunStore, release_pipeline) -> None:
    pipeline = release_pipeline()
    pipeline.history.append(_go_report("build", 0))
    pipeline.current_index = 1
    pipeline.status = PipelineStatus.RUNNING

    store.save(pipeline)
    loaded = store.get(pipeline.run_id)

    assert loaded is not None
    assert loaded.to_dict() == pipeline.to_dict()
    assert loaded is not pipeline


def test_get_returns_detached_copies(store: RunStore, release_pipeline) -> None:
    pipeline = release_pipeline()
    store.save(pipeline)

    first = store.get(pipeline.run_id)
    assert first is not None
    first.status = PipelineStatus.HALTED

    second = store.get(pipeline.run_id)
    assert second is not None
    assert second.status is PipelineStatus.PENDING


def test_get_unknown_and_malformed_ids(store: RunStore) -> None:
    assert store.get(ids.generate_run_id()) is None
    with pytest.raises(ValueError):
        store.get("not-a-run")


def test_list_is_newest_first_with_filter_and_paging(store: RunStore, release_pipeline) -> None:
    pipelines = _pipelines(release_pipeline, 5)
    for pipeline in pipelines:
        store.save(pipeline)

    everything = store.list()
    halted = store.list(status="halted")
    page = store.list(limit=2, offset=1)

    assert [item.name for item in everything] == [f"release-{index}" for index in range(4, -1, -1)]
    assert [item.name for item in halted] == ["release-3", "release-1"]
    assert all(item.status is PipelineStatus.HALTED for item in halted)
    assert [item.name for item in page] == ["release-3", "release-2"]
    assert everything[0].kind == "release"
    assert everything[0].escalated is False


def test_list_validates_paging_and_status(store: RunStore) -> None:
    with pytest.raises(ValueError, match="limit must be in"):
        store.list(limit=0)
    with pytest.raises(ValueError, match="offset must be >= 0"):
        store.list(offset=-1)
    with pytest.raises(ValueError, match="invalid pipeline status"):
        store.list(status="exploded")


def test_sqlite_state_survives_reopen(tmp_path: Path, release_pipeline) -> None:
    path = tmp_path / "phasegate.sqlite3"
    pipeline = release_pipeline()
    pipeline.status = PipelineStatus.HALTED
    pipeline.escalated = True
    SqliteRunStore(StateDB(path)).save(pipeline)

    reopened = SqliteRunStore(StateDB(path))
    loaded = reopened.get(pipeline.run_id)

    assert loaded is not None
    assert loaded.status is PipelineStatus.HALTED
    assert reopened.list()[0].escalated is True


def test_sqlite_phase_report_log_is_append_only(tmp_path: Path, release_pipeline) -> None:
    store = SqliteRunStore(StateDB(tmp_path / "phasegate.sqlite3"))
    pipeline = release_pipeline()
    checkpoint = Checkpoint(
        id=ids.generate_checkpoint_id(),
        run_id=pipeline.run_id,
        phase_name="deploy",
        phase_index=2,
        state_ref="v1",
    )
    pipeline.history.extend([_go_report("build", 0), _go_report("test", 1)])
    store.save(pipeline)
    # Saving the same history again must not duplicate rows.
    store.save(pipeline)
    pipeline.history.append(_go_report("deploy", 2, checkpoint_id=checkpoint.id))
    pipeline.checkpoints.append(checkpoint)
    store.save(pipeline)
    store.save(pipeline)

    log = store.phase_report_log(pipeline.run_id)

    assert [entry["seq"] for entry in log] == [0, 1, 2]
    assert [entry["phase_name"] for entry in log] == ["build", "test", "deploy"]
    assert {entry["verdict"] for entry in log} == {"GO"}
    checkpoints = store.db.query_all("SELECT id, state_ref FROM checkpoints")
    assert checkpoints == [{"id": checkpoint.id, "state_ref": "v1"}]

    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        store.db.execute("UPDATE phase_reports SET attempt = 2")
    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        store.db.execute("DELETE FROM checkpoints")
