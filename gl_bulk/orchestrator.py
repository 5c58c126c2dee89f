"""Run batches of operations as tracked jobs under bounded concurrency."""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Iterable, Iterator

import requests

from gl_bulk.client import GitLabClient
from gl_bulk.errors import (
    ClientError,
    DependencyFailedError,
    InvalidBatchError,
    JobStateError,
    PageFetchError,
    RetriesExhaustedError,
)
from gl_bulk.idempotency import IdempotencyResolver
from gl_bulk.models import (
    BatchOptions,
    ErrorKind,
    ItemOutcome,
    ItemResult,
    Job,
    JobStatus,
    LogEntry,
    OperationDescriptor,
    OperationKind,
    ProgressEvent,
)
from gl_bulk.operations import Operation, get_operation_registry
from gl_bulk.store import JobStore

_ICONS = {
    ItemOutcome.SUCCESS: "\u2713",
    ItemOutcome.SKIPPED_EXISTING: "\u00b7",
    ItemOutcome.FAILED: "\u2717",
}


@dataclass
class _BatchPlan:
    """Dependency structure of a batch: in-batch parent index per operation, children per index."""

    parents: list[int | None]
    children: dict[int, list[int]] = field(default_factory=dict)


@dataclass
class _JobRun:
    job_id: str
    operations: list[OperationDescriptor]
    plan: _BatchPlan
    options: BatchOptions
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    listeners: list[queue.Queue] = field(default_factory=list)


class BatchJobOrchestrator:
    """
    Entry point for bulk work: submit(), get_job(), cancel(), subscribe().

    Each job runs on its own thread, which feeds a pool of `concurrency`
    workers. Operations whose parent_ref names another operation in the batch
    only start once that parent succeeded (or already existed); if it did not,
    they are recorded as failed without any request being made.
    """

    def __init__(self, client: GitLabClient, store: JobStore, resolver: IdempotencyResolver | None = None):
        self.client = client
        self.store = store
        self.resolver = resolver or IdempotencyResolver(client)
        self.handlers: dict[OperationKind, Operation] = {
            kind: cls(client) for kind, cls in get_operation_registry().items()
        }
        self.logger = logging.getLogger("gl-bulk")
        self._runs: dict[str, _JobRun] = {}
        self._lock = threading.Lock()

    # -- Inbound interface --

    def submit(self, operations: Iterable[OperationDescriptor], options: BatchOptions | None = None) -> Job:
        """Validate the batch, create its Job and start running it. Returns the new Job."""
        options = options or BatchOptions()
        operations = list(operations)
        if options.concurrency < 1:
            raise InvalidBatchError("concurrency must be at least 1")
        plan = self._plan(operations)
        if options.verify_credentials:
            self.client.check_credentials()

        job = self.store.create(
            Job(
                id=uuid.uuid4().hex,
                type=options.job_type,
                total=len(operations),
                operations=operations,
                dry_run=options.dry_run,
            )
        )
        self._log(job.id, logging.INFO, f"Job {job.id} submitted: {job.total} operations ({job.type})")
        if options.dry_run:
            self._log(job.id, logging.INFO, "DRY-RUN MODE - no changes will be made")

        run = _JobRun(job.id, operations, plan, options)
        with self._lock:
            self._runs[job.id] = run
        thread = threading.Thread(target=self._execute, args=(run,), name=f"gl-bulk-job-{job.id[:8]}", daemon=True)
        thread.start()
        return job

    def run(self, operations: Iterable[OperationDescriptor], options: BatchOptions | None = None) -> Job:
        """submit() and block until the job is finished."""
        job = self.submit(operations, options)
        return self.wait(job.id)

    def wait(self, job_id: str, timeout: float | None = None) -> Job:
        with self._lock:
            run = self._runs.get(job_id)
        if run is not None:
            run.done.wait(timeout)
        return self.store.get(job_id)

    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def active_jobs(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    def cancel(self, job_id: str) -> bool:
        """
        Stop dispatching new items for a job. In-flight items still finish.

        A job that is not terminal but not running in this process (left over
        from a crashed process) is marked cancelled in the store directly.
        Returns False if the job had already finished.
        """
        with self._lock:
            run = self._runs.get(job_id)
        if run is not None:
            if not run.cancel_event.is_set():
                run.cancel_event.set()
                self._log(job_id, logging.WARNING, f"Job {job_id} cancellation requested")
            return True

        return cancel_stored_job(self.store, job_id)

    def subscribe(self, job_id: str) -> Iterator[ProgressEvent]:
        """
        Stream of progress events for a job, ending with the terminal event.

        Starts with a snapshot of the current state. Events may repeat; apply
        them idempotently. For a job not running here, only the snapshot is sent.
        """
        listener: queue.Queue = queue.Queue()
        with self._lock:
            run = self._runs.get(job_id)
            if run is not None:
                run.listeners.append(listener)
        job = self.store.get(job_id)
        listener_events = run is not None
        return self._stream(run, listener, _snapshot_event(job), listener_events)

    # -- Validation --

    def _plan(self, operations: list[OperationDescriptor]) -> _BatchPlan:
        if not operations:
            raise InvalidBatchError("operation list is empty")

        by_label: dict[str, list[int]] = {}
        for index, op in enumerate(operations):
            if not isinstance(op, OperationDescriptor):
                raise InvalidBatchError(f"item {index} is not an OperationDescriptor")
            if not isinstance(op.natural_key, str) or not op.natural_key.strip():
                raise InvalidBatchError(f"item {index} has an empty natural key")
            parent_ref = op.parent_ref
            if parent_ref is not None and (isinstance(parent_ref, bool) or not isinstance(parent_ref, (int, str))):
                raise InvalidBatchError(f"item {index} has an invalid parent_ref: {op.parent_ref!r}")
            handler = self.handlers.get(op.kind)
            if handler is None:
                raise InvalidBatchError(f"item {index} has an unsupported kind: {op.kind}")
            if handler.requires_parent and op.parent_ref is None:
                raise InvalidBatchError(f"item {index} ({op.kind.value} '{op.natural_key}') needs a parent_ref")
            if handler.provides_namespace:
                by_label.setdefault(op.label, []).append(index)

        plan = _BatchPlan(parents=[None] * len(operations))
        for index, op in enumerate(operations):
            if not isinstance(op.parent_ref, str):
                continue
            candidates = [c for c in by_label.get(op.parent_ref, []) if c != index]
            if len(candidates) > 1:
                raise InvalidBatchError(f"parent_ref '{op.parent_ref}' of item {index} matches several operations")
            if candidates:
                plan.parents[index] = candidates[0]
                plan.children.setdefault(candidates[0], []).append(index)

        for index in range(len(operations)):
            seen = {index}
            parent = plan.parents[index]
            while parent is not None:
                if parent in seen:
                    raise InvalidBatchError(f"parent_ref cycle involving item {index}")
                seen.add(parent)
                parent = plan.parents[parent]
        return plan

    # -- Job runner --

    def _execute(self, run: _JobRun) -> None:
        status = JobStatus.FAILED
        try:
            status = self._drive(run)
        except Exception:
            # Runs on its own thread; record the failure on the job instead of losing it.
            self.logger.exception(f"Job {run.job_id} aborted")
            self._log(run.job_id, logging.ERROR, f"Job {run.job_id} aborted by an unexpected error")
        finally:
            job = self.store.get(run.job_id)
            if not job.status.is_terminal:
                try:
                    job = self.store.update(run.job_id, status=status)
                except JobStateError:
                    job = self.store.get(run.job_id)
            self._log(
                run.job_id,
                logging.INFO if job.status == JobStatus.COMPLETED else logging.WARNING,
                f"Job {run.job_id} {job.status.value}: {job.processed}/{job.total} processed, "
                f"{job.succeeded} succeeded, {job.skipped} skipped, {job.failed} failed",
            )
            final = _snapshot_event(job, last_item=None)
            with self._lock:
                self._runs.pop(run.job_id, None)
                listeners = list(run.listeners)
            self._notify(run, final, listeners)
            run.done.set()

    def _drive(self, run: _JobRun) -> JobStatus:
        options = run.options
        plan = run.plan
        ready = deque(index for index, parent in enumerate(plan.parents) if parent is None)
        parent_ids: dict[int, int] = {}
        planned: dict[int, str] = {}
        in_flight: dict[Future, int] = {}
        started = False
        stopped = False

        with ThreadPoolExecutor(max_workers=options.concurrency, thread_name_prefix="gl-bulk-worker") as pool:
            while True:
                while ready and len(in_flight) < options.concurrency and not stopped and not run.cancel_event.is_set():
                    index = ready.popleft()
                    if not started:
                        try:
                            self.store.update(run.job_id, status=JobStatus.RUNNING)
                        except JobStateError:
                            # Cancelled from another process before anything ran.
                            run.cancel_event.set()
                            break
                        started = True
                    future = pool.submit(
                        self._process_item, run, run.operations[index], parent_ids.get(index), planned.get(index)
                    )
                    in_flight[future] = index

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    index = in_flight.pop(future)
                    item = future.result()
                    if item.outcome == ItemOutcome.FAILED and options.stop_on_first_error and not stopped:
                        stopped = True
                        self._log(run.job_id, logging.WARNING, "Stopping after first error; no new items will start")
                    if stopped or run.cancel_event.is_set():
                        continue
                    self._release_children(run, index, item, ready, parent_ids, planned)

        if run.cancel_event.is_set():
            return JobStatus.CANCELLED
        if stopped:
            return JobStatus.FAILED
        return JobStatus.COMPLETED

    def _release_children(
        self,
        run: _JobRun,
        index: int,
        item: ItemResult,
        ready: deque,
        parent_ids: dict[int, int],
        planned: dict[int, str],
    ) -> None:
        children = run.plan.children.get(index, [])
        usable = item.outcome != ItemOutcome.FAILED and (item.resource_id is not None or item.dry_run)
        for child in children:
            if usable:
                if item.resource_id is not None:
                    parent_ids[child] = item.resource_id
                else:
                    planned[child] = run.operations[index].label
                ready.append(child)
            else:
                self._fail_dependents(run, child, run.operations[index].label)

    def _fail_dependents(self, run: _JobRun, index: int, parent_label: str) -> None:
        op = run.operations[index]
        self._finish_item(
            run,
            ItemResult(
                operation=op,
                outcome=ItemOutcome.FAILED,
                error=str(DependencyFailedError(parent_label)),
                error_kind=ErrorKind.DEPENDENCY_FAILED,
            ),
        )
        for child in run.plan.children.get(index, []):
            self._fail_dependents(run, child, op.label)

    # -- Per item --

    def _process_item(
        self, run: _JobRun, op: OperationDescriptor, parent_id: int | None, planned_parent: str | None = None
    ) -> ItemResult:
        """Resolve, then create/update/delete. Never raises: every failure becomes an ItemResult."""
        try:
            item = self._apply(run, op, parent_id, planned_parent)
        except RetriesExhaustedError as e:
            item = _failed(op, str(e), ErrorKind.EXHAUSTED, attempts=e.attempts)
        except (ClientError, PageFetchError) as e:
            item = _failed(op, str(e), ErrorKind.CLIENT_ERROR)
        except ValueError as e:
            item = _failed(op, f"Invalid operation: {e}", ErrorKind.CLIENT_ERROR)
        except requests.RequestException as e:
            item = _failed(op, f"Request failed: {e}", ErrorKind.TRANSIENT)
        except (KeyError, TypeError) as e:
            item = _failed(op, f"Unexpected response shape: {e!r}", ErrorKind.CLIENT_ERROR)
        return self._finish_item(run, item)

    def _apply(
        self, run: _JobRun, op: OperationDescriptor, parent_id: int | None, planned_parent: str | None
    ) -> ItemResult:
        handler: Operation = self.handlers[op.kind]

        if planned_parent is not None:
            # Dry run: the parent would only be created now, so nothing under it exists yet.
            return _would_apply(op, f"{op.kind.value} under '{planned_parent}' once it is created")

        if parent_id is None and op.parent_ref is not None:
            parent_id = self.resolver.resolve_namespace(op.parent_ref)
            if parent_id is None:
                return _failed(op, f"parent namespace '{op.parent_ref}' not found", ErrorKind.CLIENT_ERROR)

        resolution = self.resolver.resolve(op.kind, op.natural_key, parent_id, op.payload)
        if handler.skip(resolution):
            return ItemResult(operation=op, outcome=ItemOutcome.SKIPPED_EXISTING, resource_id=resolution.resource_id)

        missing = handler.missing_target(op, resolution)
        if missing:
            return _failed(op, missing, ErrorKind.CLIENT_ERROR)

        method, path, body = handler.build_request(op, parent_id, resolution)
        if run.options.dry_run:
            self.logger.debug(f"[DRY-RUN] Would {method} {path} {body or ''}")
            return _would_apply(op, f"{method} {path}", resolution.resource_id)

        resp = self.client.execute(method, path, body=body, retry_policy=run.options.retry_policy)
        attempts = getattr(resp, "attempts", 1)
        if resp.status_code >= 400:
            # The remote error body is passed through verbatim.
            return _failed(op, f"HTTP {resp.status_code}: {resp.text}", ErrorKind.CLIENT_ERROR, attempts=attempts)
        return ItemResult(
            operation=op,
            outcome=ItemOutcome.SUCCESS,
            resource_id=handler.resource_id(op, resp, resolution),
            attempts=attempts,
        )

    def _finish_item(self, run: _JobRun, item: ItemResult) -> ItemResult:
        try:
            job = self.store.record_item(run.job_id, item)
        except JobStateError:
            if not self.store.get(run.job_id).status.is_terminal:
                raise
            # Cancelled from another process (`gl-bulk cancel`): stop dispatching.
            if not run.cancel_event.is_set():
                run.cancel_event.set()
                self._log(run.job_id, logging.WARNING, f"Job {run.job_id} was cancelled externally; stopping")
            return item
        self._log_item(run.job_id, item)
        event = ProgressEvent(run.job_id, job.processed, job.total, job.status, item)
        with self._lock:
            listeners = list(run.listeners)
        self._notify(run, event, listeners)
        return item

    # -- Progress and logging --

    def _notify(self, run: _JobRun, event: ProgressEvent, listeners: list[queue.Queue]) -> None:
        for listener in listeners:
            listener.put(event)
        if run.options.on_progress is not None:
            try:
                run.options.on_progress(event)
            except Exception:
                self.logger.exception(f"Progress callback failed for job {run.job_id}")

    def _stream(
        self, run: _JobRun | None, listener: queue.Queue, snapshot: ProgressEvent, live: bool
    ) -> Iterator[ProgressEvent]:
        try:
            yield snapshot
            if not live or snapshot.status.is_terminal:
                return
            while True:
                event = listener.get()
                yield event
                if event.last_item is None and event.status.is_terminal:
                    return
        finally:
            if run is not None:
                with self._lock:
                    if listener in run.listeners:
                        run.listeners.remove(listener)

    def _log_item(self, job_id: str, item: ItemResult) -> None:
        op = item.operation
        level = logging.ERROR if item.outcome == ItemOutcome.FAILED else logging.INFO
        detail = f"id={item.resource_id}" if item.resource_id is not None else ""
        if item.error or item.detail:
            detail = item.error or item.detail
        if item.dry_run:
            icon, action = "\u25cb", "would apply"
        else:
            icon, action = _ICONS[item.outcome], item.outcome.value
        message = (
            f"{'[DRY-RUN] ' if item.dry_run else ''}{icon} [{op.kind.value}] {op.natural_key} \u2192 {action}"
            f"{' (' + detail + ')' if detail else ''}"
        )

        if self.logger.isEnabledFor(level):
            record = self.logger.makeRecord("gl-bulk", level, "", 0, message, (), None)
            record.item_result = item
            record.job_id = job_id
            self.logger.handle(record)
        self.store.append_log(job_id, LogEntry(job_id=job_id, level=logging.getLevelName(level), message=message))

    def _log(self, job_id: str, level: int, message: str) -> None:
        self.logger.log(level, message, extra={"job_id": job_id})
        self.store.append_log(job_id, LogEntry(job_id=job_id, level=logging.getLevelName(level), message=message))


def cancel_stored_job(store: JobStore, job_id: str) -> bool:
    """
    Mark a job as cancelled in the store without a running orchestrator.

    Used for jobs left behind by a crashed process, and by `gl-bulk cancel`.
    A process still running the job stops once its next item is recorded.
    Returns False if the job had already finished.
    """
    if store.get(job_id).status.is_terminal:
        return False
    try:
        store.update(job_id, status=JobStatus.CANCELLED)
    except JobStateError:
        # Finished between the read and the write.
        return False
    message = f"Job {job_id} marked cancelled"
    logging.getLogger("gl-bulk").warning(message, extra={"job_id": job_id})
    store.append_log(job_id, LogEntry(job_id=job_id, level="WARNING", message=message))
    return True


def _failed(op: OperationDescriptor, error: str, kind: ErrorKind, attempts: int = 0) -> ItemResult:
    return ItemResult(operation=op, outcome=ItemOutcome.FAILED, error=error, error_kind=kind, attempts=attempts)


def _would_apply(op: OperationDescriptor, detail: str, resource_id: int | None = None) -> ItemResult:
    return ItemResult(
        operation=op, outcome=ItemOutcome.SUCCESS, resource_id=resource_id, dry_run=True, detail=detail
    )


def _snapshot_event(job: Job, last_item: ItemResult | None = None) -> ProgressEvent:
    return ProgressEvent(job.id, job.processed, job.total, job.status, last_item)
