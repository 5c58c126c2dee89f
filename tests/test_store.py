"""Tests for job persistence."""

import threading
from datetime import timedelta

import pytest

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
from gl_bulk.store import JobStore


def make_job(job_id="job-1", total=3, **kwargs) -> Job:
    ops = [
        OperationDescriptor(OperationKind.CREATE_GROUP, f"group-{n}", parent_ref=10) for n in range(total)
    ]
    return Job(id=job_id, type=kwargs.pop("type", "batch"), total=total, operations=ops, **kwargs)


def make_item(outcome=ItemOutcome.SUCCESS, key="group-0", **kwargs) -> ItemResult:
    op = OperationDescriptor(OperationKind.CREATE_GROUP, key, payload={"visibility": "private"}, parent_ref=10)
    return ItemResult(operation=op, outcome=outcome, **kwargs)


class TestCreateAndGet:
    def test_round_trips_job(self, store):
        created = store.create(make_job())

        job = store.get("job-1")

        assert job.status == JobStatus.PENDING
        assert job.total == 3
        assert job.processed == 0
        assert [op.natural_key for op in job.operations] == ["group-0", "group-1", "group-2"]
        assert job.operations[0].parent_ref == 10
        assert created.id == job.id

    def test_duplicate_id_rejected(self, store):
        store.create(make_job())

        with pytest.raises(JobStateError):
            store.create(make_job())

    def test_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.get("missing")

    def test_unknown_job_is_also_a_key_error(self, store):
        with pytest.raises(KeyError):
            store.get("missing")


class TestRecordItem:
    """Item results are appended and counted together."""

    def test_counters_follow_outcomes(self, store):
        store.create(make_job())

        store.record_item("job-1", make_item(ItemOutcome.SUCCESS, resource_id=100, attempts=1))
        store.record_item("job-1", make_item(ItemOutcome.SKIPPED_EXISTING, key="group-1", resource_id=101))
        job = store.record_item(
            "job-1",
            make_item(ItemOutcome.FAILED, key="group-2", error="HTTP 400: bad", error_kind=ErrorKind.CLIENT_ERROR),
        )

        assert (job.processed, job.succeeded, job.skipped, job.failed) == (3, 1, 1, 1)
        assert job.processed == job.succeeded + job.skipped + job.failed

    def test_items_are_persisted_in_order(self, store):
        store.create(make_job())
        store.record_item("job-1", make_item(resource_id=100, attempts=2))
        store.record_item(
            "job-1",
            make_item(ItemOutcome.FAILED, key="group-1", error="boom", error_kind=ErrorKind.EXHAUSTED, attempts=3),
        )

        items = store.get("job-1").items

        assert [i.operation.natural_key for i in items] == ["group-0", "group-1"]
        assert items[0].resource_id == 100
        assert items[0].operation.payload == {"visibility": "private"}
        assert items[0].operation.parent_ref == 10
        assert items[1].error_kind == ErrorKind.EXHAUSTED
        assert items[1].attempts == 3

    def test_dry_run_fields(self, store):
        store.create(make_job(dry_run=True))
        store.record_item("job-1", make_item(dry_run=True, detail="POST /groups"))
        store.record_item("job-1", make_item(key="group-1", resource_id=7))

        job = store.get("job-1")

        assert job.dry_run is True
        assert job.items[0].dry_run is True
        assert job.items[0].detail == "POST /groups"
        assert job.items[1].dry_run is False
        assert job.items[1].detail is None

    def test_cannot_exceed_total(self, store):
        store.create(make_job(total=1))
        store.record_item("job-1", make_item())

        with pytest.raises(JobStateError):
            store.record_item("job-1", make_item())

    def test_terminal_job_refuses_items(self, store):
        store.create(make_job())
        store.update("job-1", status=JobStatus.CANCELLED)

        with pytest.raises(JobStateError):
            store.record_item("job-1", make_item())

    def test_concurrent_writers(self, store):
        """Workers of one job may record items at the same time."""
        store.create(make_job(total=40))

        def worker(n):
            for i in range(10):
                store.record_item("job-1", make_item(key=f"w{n}-{i}", resource_id=i))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        job = store.get("job-1")
        assert job.processed == 40
        assert job.succeeded == 40
        assert len(job.items) == 40


class TestUpdate:
    def test_status_moves_forward(self, store):
        store.create(make_job())

        store.update("job-1", status=JobStatus.RUNNING)
        job = store.update("job-1", status=JobStatus.COMPLETED)

        assert job.status == JobStatus.COMPLETED

    def test_status_cannot_move_backwards(self, store):
        store.create(make_job())
        store.update("job-1", status=JobStatus.RUNNING)

        with pytest.raises(JobStateError):
            store.update("job-1", status=JobStatus.PENDING)

    def test_terminal_status_is_final(self, store):
        store.create(make_job())
        store.update("job-1", status=JobStatus.FAILED)

        with pytest.raises(JobStateError):
            store.update("job-1", status=JobStatus.COMPLETED)

    def test_counter_invariant_enforced(self, store):
        store.create(make_job())

        with pytest.raises(JobStateError):
            store.update("job-1", processed=2, succeeded=1)

    def test_processed_cannot_exceed_total(self, store):
        store.create(make_job(total=1))

        with pytest.raises(JobStateError):
            store.update("job-1", processed=2, succeeded=2)

    def test_only_summary_fields(self, store):
        store.create(make_job())

        with pytest.raises(ValueError):
            store.update("job-1", type="other")

    def test_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.update("missing", status=JobStatus.RUNNING)


class TestListAndStats:
    def test_newest_first_with_filters(self, store):
        now = utcnow()
        store.create(make_job("old", created_at=now - timedelta(minutes=5)))
        store.create(make_job("mid", type="import", created_at=now - timedelta(minutes=1)))
        store.create(make_job("new", created_at=now))
        store.update("mid", status=JobStatus.RUNNING)

        assert [j.id for j in store.list()] == ["new", "mid", "old"]
        assert [j.id for j in store.list(status=JobStatus.RUNNING)] == ["mid"]
        assert [j.id for j in store.list(status="pending")] == ["new", "old"]
        assert [j.id for j in store.list(job_type="import")] == ["mid"]
        assert [j.id for j in store.list(limit=1)] == ["new"]

    def test_list_does_not_load_items(self, store):
        store.create(make_job())
        store.record_item("job-1", make_item())

        (job,) = store.list()

        assert job.processed == 1
        assert job.items == []

    def test_stats_zero_filled(self, store):
        store.create(make_job("a"))
        store.create(make_job("b"))
        store.update("b", status=JobStatus.CANCELLED)

        assert store.stats() == {
            "pending": 1,
            "running": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 1,
        }


class TestLogs:
    def test_oldest_first_with_limit(self, store):
        store.create(make_job())
        for n in range(5):
            store.append_log("job-1", LogEntry(job_id="job-1", level="INFO", message=f"line {n}"))

        assert [e.message for e in store.logs("job-1")] == [f"line {n}" for n in range(5)]
        assert [e.message for e in store.logs("job-1", limit=2)] == ["line 3", "line 4"]

    def test_log_for_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.append_log("missing", LogEntry(job_id="missing", level="INFO", message="x"))


class TestPersistence:
    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "state" / "jobs.db")
        first = JobStore(path)
        first.create(make_job())
        first.record_item("job-1", make_item(resource_id=100))
        first.close()

        second = JobStore(path)
        try:
            job = second.get("job-1")
        finally:
            second.close()

        assert job.processed == 1
        assert job.items[0].resource_id == 100
        assert len(job.operations) == 3
