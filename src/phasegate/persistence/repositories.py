"""
phasegate — run stores

File: src/phasegate/persistence/repositories.py
Last updated: 2026-10-18

Purpose
- Persist Pipeline runs so that ``status``, ``resume`` and ``rollback`` work
  across processes.

Functional requirements
- One record per run keyed by run id, carrying status, current_index and the
  full serialized Pipeline.
- PhaseReports and Checkpoints are appended, never rewritten.

Non-functional requirements
- Listing must not deserialize whole histories when only summaries are needed.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final, Protocol, cast, runtime_checkable

from phasegate.domain import ids
from phasegate.domain.models import Pipeline, PipelineStatus
from phasegate.persistence.state_db import RowValue, SQLParams, StateDB

if TYPE_CHECKING:
    import sqlite3

    from phasegate.domain.models import Checkpoint, PhaseReport

_MAX_PAGE_SIZE: Final[int] = 1_000


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Lightweight row used by ``phasegate runs``."""

    run_id: str
    name: str
    kind: str
    status: PipelineStatus
    current_index: int
    escalated: bool
    created_at: str
    updated_at: str


@runtime_checkable
class RunStore(Protocol):
    def save(self, pipeline: Pipeline) -> None: ...

    def get(self, run_id: str) -> Pipeline | None: ...

    def list(
        self,
        *,
        status: PipelineStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RunSummary]: ...


def _validate_page(limit: int, offset: int) -> None:
    if limit <= 0 or limit > _MAX_PAGE_SIZE:
        raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
    if offset < 0:
        raise ValueError("offset must be >= 0")


def _summary_of(pipeline: Pipeline) -> RunSummary:
    return RunSummary(
        run_id=pipeline.run_id,
        name=pipeline.name,
        kind=pipeline.kind,
        status=pipeline.status,
        current_index=pipeline.current_index,
        escalated=pipeline.escalated,
        created_at=_iso(pipeline.created_at),
        updated_at=_iso(pipeline.updated_at),
    )


class InMemoryRunStore:
    """Process-local store. Keeps detached JSON copies so callers cannot alias state."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, str] = {}

    def save(self, pipeline: Pipeline) -> None:
        payload = pipeline.to_json()
        with self._lock:
            self._runs[pipeline.run_id] = payload

    def get(self, run_id: str) -> Pipeline | None:
        ids.validate_run_id(run_id)
        with self._lock:
            payload = self._runs.get(run_id)
        return None if payload is None else Pipeline.from_json(payload)

    def list(
        self,
        *,
        status: PipelineStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RunSummary]:
        _validate_page(limit, offset)
        wanted = _as_status(status) if status is not None else None
        with self._lock:
            payloads = list(self._runs.values())
        summaries = [_summary_of(Pipeline.from_json(payload)) for payload in payloads]
        if wanted is not None:
            summaries = [item for item in summaries if item.status is wanted]
        summaries.sort(key=lambda item: (item.created_at, item.run_id), reverse=True)
        return summaries[offset : offset + limit]


class SqliteRunStore:
    """RunStore backed by :class:`StateDB`."""

    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @property
    def db(self) -> StateDB:
        return self._db

    def save(self, pipeline: Pipeline) -> None:
        with self._db.transaction(immediate=True) as tx:
            self._upsert_run(tx, pipeline)
            self._append_reports(tx, pipeline.run_id, pipeline.history)
            self._append_checkpoints(tx, pipeline.checkpoints)

    def get(self, run_id: str) -> Pipeline | None:
        ids.validate_run_id(run_id)
        row = self._db.query_one(
            "SELECT payload_json FROM pipeline_runs WHERE id = ?",
            (run_id,),
        )
        if row is None:
            return None
        return Pipeline.from_json(_row_text(row, "payload_json", "pipeline_runs.payload_json"))

    def list(
        self,
        *,
        status: PipelineStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RunSummary]:
        _validate_page(limit, offset)
        sql = (
            "SELECT id, name, kind, status, current_index, escalated, created_at, updated_at "
            "FROM pipeline_runs"
        )
        params: list[object] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(_as_status(status).value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [
            RunSummary(
                run_id=_row_text(row, "id", "pipeline_runs.id"),
                name=_row_text(row, "name", "pipeline_runs.name"),
                kind=_row_text(row, "kind", "pipeline_runs.kind"),
                status=_as_status(_row_text(row, "status", "pipeline_runs.status")),
                current_index=_row_int(row, "current_index", "pipeline_runs.current_index"),
                escalated=bool(_row_int(row, "escalated", "pipeline_runs.escalated")),
                created_at=_row_text(row, "created_at", "pipeline_runs.created_at"),
                updated_at=_row_text(row, "updated_at", "pipeline_runs.updated_at"),
            )
            for row in rows
        ]

    def phase_report_log(self, run_id: str) -> list[dict[str, object]]:
        """Return the append-only report log, including reports a rollback superseded."""

        ids.validate_run_id(run_id)
        rows = self._db.query_all(
            """
            SELECT seq, phase_name, phase_index, attempt, verdict, created_at
            FROM phase_reports
            WHERE run_id = ?
            ORDER BY seq ASC
            """,
            (run_id,),
        )
        return [dict(row) for row in rows]

    def _upsert_run(self, conn: sqlite3.Connection, pipeline: Pipeline) -> None:
        self._db.execute(
            """
            INSERT INTO pipeline_runs (
                id,
                name,
                kind,
                status,
                current_index,
                escalated,
                created_at,
                updated_at,
                payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status=excluded.status,
                current_index=excluded.current_index,
                escalated=excluded.escalated,
                updated_at=excluded.updated_at,
                payload_json=excluded.payload_json
            """,
            (
                pipeline.run_id,
                pipeline.name,
                pipeline.kind,
                pipeline.status.value,
                pipeline.current_index,
                1 if pipeline.escalated else 0,
                _iso(pipeline.created_at),
                _iso(pipeline.updated_at),
                pipeline.to_json(),
            ),
            conn=conn,
        )

    def _append_reports(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        history: list[PhaseReport],
    ) -> None:
        row = self._db.query_one(
            "SELECT COALESCE(MAX(seq), -1) AS last_seq FROM phase_reports WHERE run_id = ?",
            (run_id,),
            conn=conn,
        )
        last_seq = _row_int(row, "last_seq", "phase_reports.seq") if row is not None else -1
        pending = [
            (
                run_id,
                seq,
                report.phase_name,
                report.phase_index,
                report.attempt,
                report.verdict.value,
                report.to_json(),
                _iso(report.finished_at),
            )
            for seq, report in enumerate(history)
            if seq > last_seq
        ]
        if not pending:
            return
        self._db.executemany(
            """
            INSERT INTO phase_reports (
                run_id, seq, phase_name, phase_index, attempt, verdict, payload_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            pending,
            conn=conn,
        )

    def _append_checkpoints(self, conn: sqlite3.Connection, checkpoints: list[Checkpoint]) -> None:
        if not checkpoints:
            return
        self._db.executemany(
            """
            INSERT OR IGNORE INTO checkpoints (
                id, run_id, phase_name, phase_index, state_ref, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    checkpoint.id,
                    checkpoint.run_id,
                    checkpoint.phase_name,
                    checkpoint.phase_index,
                    checkpoint.state_ref,
                    _iso(checkpoint.created_at),
                )
                for checkpoint in checkpoints
            ],
            conn=conn,
        )


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text value")
    return value


def _row_int(row: Mapping[str, RowValue], key: str, path: str) -> int:
    value = row.get(key)
    if not isinstance(value, int):
        raise ValueError(f"{path}: expected integer value")
    return value


def _as_status(value: PipelineStatus | str) -> PipelineStatus:
    if isinstance(value, PipelineStatus):
        return value
    try:
        return PipelineStatus(value)
    except ValueError as exc:
        allowed = ", ".join(sorted(item.value for item in PipelineStatus))
        raise ValueError(f"status: invalid pipeline status {value!r}; allowed: {allowed}") from exc


__all__ = ["InMemoryRunStore", "RunStore", "RunSummary", "SqliteRunStore"]
