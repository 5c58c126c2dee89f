"""SQLite persistence for jobs, their item results and job logs."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from gl_bulk.errors import JobNotFoundError, JobStateError
from gl_bulk.models import (
    ErrorKind,
    ItemOutcome,
    ItemResult,
    Job,
    JobStatus,
    LogEntry,
    OperationDescriptor,
    OperationKind,
    utcnow,
)

MEMORY = ":memory:"

_SUMMARY_FIELDS = ("status", "total", "processed", "succeeded", "failed", "skipped")
_OUTCOME_COLUMNS = {
    ItemOutcome.SUCCESS: "succeeded",
    ItemOutcome.SKIPPED_EXISTING: "skipped",
    ItemOutcome.FAILED: "failed",
}


class JobStore:
    """
    Source of truth for job state across process restarts.

    Summary fields are last-writer-wins; item results and log entries are
    append-only. One lock serializes every statement, so workers of the same
    job may write concurrently.
    """

    def __init__(self, path: str = MEMORY, wal: bool = True) -> None:
        if path != MEMORY:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal and path != MEMORY:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                total INTEGER NOT NULL,
                processed INTEGER NOT NULL DEFAULT 0,
                succeeded INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                skipped INTEGER NOT NULL DEFAULT 0,
                operations TEXT NOT NULL,
                dry_run INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS job_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                natural_key TEXT NOT NULL,
                parent_ref TEXT,
                ref TEXT,
                payload TEXT NOT NULL,
                outcome TEXT NOT NULL,
                resource_id INTEGER,
                error TEXT,
                error_kind TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                dry_run INTEGER NOT NULL DEFAULT 0,
                detail TEXT,
                finished_at TEXT NOT NULL,
                FOREIGN KEY(job_id) REFERENCES jobs(id)
            );

            CREATE TABLE IF NOT EXISTS job_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                FOREIGN KEY(job_id) REFERENCES jobs(id)
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
            CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_job_items_job_id ON job_items(job_id);
            CREATE INDEX IF NOT EXISTS idx_job_logs_job_id ON job_logs(job_id);
            """
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    # -- Jobs --

    def create(self, job: Job) -> Job:
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO jobs (
                        id, type, status, total, processed, succeeded, failed, skipped,
                        operations, dry_run, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.type,
                        job.status.value,
                        job.total,
                        job.processed,
                        job.succeeded,
                        job.failed,
                        job.skipped,
                        json.dumps([op.to_dict() for op in job.operations]),
                        int(job.dry_run),
                        job.created_at.isoformat(),
                        job.updated_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise JobStateError(f"Job already exists: {job.id}") from e
            self._conn.commit()
            return self._load(job.id)

    def update(self, job_id: str, **fields) -> Job:
        """Overwrite summary fields. Status may only move forward."""
        unknown = set(fields) - set(_SUMMARY_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        with self._lock:
            row = self._row(job_id)
            merged = {name: row[name] for name in _SUMMARY_FIELDS}
            merged.update(fields)
            if isinstance(merged["status"], JobStatus):
                merged["status"] = merged["status"].value

            current, new = JobStatus(row["status"]), JobStatus(merged["status"])
            if not current.can_transition_to(new):
                raise JobStateError(f"Job {job_id} cannot move from {current.value} to {new.value}")
            _check_counters(job_id, merged)

            self._conn.execute(
                """
                UPDATE jobs
                SET status = ?, total = ?, processed = ?, succeeded = ?, failed = ?, skipped = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (*(merged[name] for name in _SUMMARY_FIELDS), utcnow().isoformat(), job_id),
            )
            self._conn.commit()
            return self._load(job_id)

    def record_item(self, job_id: str, item: ItemResult) -> Job:
        """Append an item result and bump the counters in one transaction."""
        with self._lock:
            row = self._row(job_id)
            if JobStatus(row["status"]).is_terminal:
                raise JobStateError(f"Job {job_id} is {row['status']}; no more items can be recorded")
            if row["processed"] + 1 > row["total"]:
                raise JobStateError(f"Job {job_id} already has {row['total']} results")

            op = item.operation
            column = _OUTCOME_COLUMNS[item.outcome]
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO job_items (
                        job_id, kind, natural_key, parent_ref, ref, payload, outcome,
                        resource_id, error, error_kind, attempts, dry_run, detail, finished_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        op.kind.value,
                        op.natural_key,
                        json.dumps(op.parent_ref) if op.parent_ref is not None else None,
                        op.ref,
                        json.dumps(dict(op.payload)),
                        item.outcome.value,
                        item.resource_id,
                        item.error,
                        item.error_kind.value if item.error_kind else None,
                        item.attempts,
                        int(item.dry_run),
                        item.detail,
                        item.finished_at.isoformat(),
                    ),
                )
                self._conn.execute(
                    f"UPDATE jobs SET processed = processed + 1, {column} = {column} + 1, updated_at = ? WHERE id = ?",
                    (utcnow().isoformat(), job_id),
                )
            return self._load(job_id)

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._load(job_id)

    def list(self, status: JobStatus | str | None = None, job_type: str | None = None, limit: int = 100) -> list[Job]:
        """Newest jobs first, summary only (items are not loaded)."""
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value if isinstance(status, JobStatus) else status)
        if job_type is not None:
            clauses.append("type = ?")
            params.append(job_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [_job_from_row(row) for row in rows]

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._lock:
            rows = self._conn.execute("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status").fetchall()
        for row in rows:
            if row["status"] in counts:
                counts[row["status"]] = row["count"]
        return counts

    # -- Logs --

    def append_log(self, job_id: str, entry: LogEntry) -> None:
        with self._lock:
            self._row(job_id)
            self._conn.execute(
                "INSERT INTO job_logs (job_id, level, message, timestamp) VALUES (?, ?, ?, ?)",
                (job_id, entry.level, entry.message, entry.timestamp.isoformat()),
            )
            self._conn.commit()

    def logs(self, job_id: str, limit: int = 100) -> list[LogEntry]:
        """The most recent `limit` entries, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM job_logs WHERE job_id = ? ORDER BY id DESC LIMIT ?",
                (job_id, limit),
            ).fetchall()
        return [
            LogEntry(
                job_id=row["job_id"],
                level=row["level"],
                message=row["message"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in reversed(rows)
        ]

    # -- Internals (caller holds the lock) --

    def _row(self, job_id: str) -> sqlite3.Row:
        row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _load(self, job_id: str) -> Job:
        row = self._row(job_id)
        job = _job_from_row(row)
        job.operations = [OperationDescriptor.from_dict(d) for d in json.loads(row["operations"])]
        rows = self._conn.execute("SELECT * FROM job_items WHERE job_id = ? ORDER BY id", (job_id,)).fetchall()
        job.items = [_item_from_row(item_row) for item_row in rows]
        return job


def _check_counters(job_id: str, fields: dict) -> None:
    if fields["processed"] != fields["succeeded"] + fields["failed"] + fields["skipped"]:
        raise JobStateError(f"Job {job_id}: processed must equal succeeded + failed + skipped")
    if fields["processed"] > fields["total"]:
        raise JobStateError(f"Job {job_id}: processed cannot exceed total")


def _job_from_row(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        type=row["type"],
        status=JobStatus(row["status"]),
        total=row["total"],
        processed=row["processed"],
        succeeded=row["succeeded"],
        failed=row["failed"],
        skipped=row["skipped"],
        dry_run=bool(row["dry_run"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _item_from_row(row: sqlite3.Row) -> ItemResult:
    op = OperationDescriptor(
        kind=OperationKind(row["kind"]),
        natural_key=row["natural_key"],
        payload=json.loads(row["payload"]),
        parent_ref=json.loads(row["parent_ref"]) if row["parent_ref"] is not None else None,
        ref=row["ref"],
    )
    return ItemResult(
        operation=op,
        outcome=ItemOutcome(row["outcome"]),
        resource_id=row["resource_id"],
        error=row["error"],
        error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        attempts=row["attempts"],
        dry_run=bool(row["dry_run"]),
        detail=row["detail"],
        finished_at=datetime.fromisoformat(row["finished_at"]),
    )
