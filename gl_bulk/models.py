"""Data models and constants for gl-bulk."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from gl_bulk.errors import SetupError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_GITLAB_URL = "https://gitlab.com"
API_V4 = "/api/v4"
PER_PAGE = 100
MAX_PAGES = 100

# Retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 2.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY = 60.0
DEFAULT_JITTER_FRACTION = 0.1
RATE_LIMIT_FALLBACK_WAIT = 60.0  # seconds, when a 429 carries no hint

# Rate limiting
DEFAULT_MIN_INTERVAL = 0.5  # seconds between any two requests
LOW_WATER_FRACTION = 0.01
LOW_QUOTA_WARNING = 100

DEFAULT_CONCURRENCY = 5
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_DB_PATH = "gl-bulk.db"

# GitLab access level constants
ACCESS_LEVELS = {
    "no_access": 0,
    "minimal": 5,
    "guest": 10,
    "reporter": 20,
    "developer": 30,
    "maintainer": 40,
    "owner": 50,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OperationKind(Enum):
    CREATE_GROUP = "create-group"
    CREATE_PROJECT = "create-project"
    ADD_MEMBER = "add-member"
    UPDATE = "update"
    DELETE = "delete"


class ItemOutcome(Enum):
    SUCCESS = "success"
    SKIPPED_EXISTING = "skipped-existing"
    FAILED = "failed"


class ErrorKind(Enum):
    TRANSIENT = "transient"
    CLIENT_ERROR = "client-error"
    EXHAUSTED = "exhausted"
    PAGINATION_LIMIT_EXCEEDED = "pagination-limit-exceeded"
    DEPENDENCY_FAILED = "dependency-failed"


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def can_transition_to(self, other: JobStatus) -> bool:
        """Statuses only move forward: pending -> running -> terminal."""
        if self == other:
            return True
        if self.is_terminal:
            return False
        if self == JobStatus.RUNNING:
            return other.is_terminal
        return other != JobStatus.PENDING


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credentials:
    """GitLab instance URL and access token, fixed for the process lifetime."""

    base_url: str
    token: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, base_url: str | None = None) -> Credentials:
        env = os.environ if environ is None else environ
        token = env.get("GITLAB_TOKEN")
        if not token:
            raise SetupError("GITLAB_TOKEN environment variable is not set.")
        return cls(base_url=base_url or env.get("GITLAB_URL", DEFAULT_GITLAB_URL), token=token)


@dataclass
class RateState:
    """Remote quota as last reported by the API, shared by every client of one credential set."""

    remaining_quota: int | None = None
    limit: int | None = None
    reset_at: float | None = None  # epoch seconds
    last_request_at: float | None = None
    paused_until: float = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for transient failures. max_attempts counts every send."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_delay: float = DEFAULT_MAX_DELAY
    jitter_fraction: float = DEFAULT_JITTER_FRACTION
    rate_limit_fallback: float = RATE_LIMIT_FALLBACK_WAIT

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= self.jitter_fraction < 1:
            raise ValueError("jitter_fraction must be in [0, 1)")

    def delay_for(self, attempt: int) -> float:
        """Un-jittered wait after the attempt-th failed send (1-based)."""
        return min(self.max_delay, self.base_delay * self.backoff_multiplier ** (attempt - 1))


@dataclass(frozen=True)
class OperationDescriptor:
    """One unit of work in a batch.

    parent_ref is an int (existing namespace id), the ref of another operation
    in the same batch, or the full path of an existing group.
    """

    kind: OperationKind
    natural_key: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    parent_ref: int | str | None = None
    ref: str | None = None

    @property
    def label(self) -> str:
        return self.ref or self.natural_key

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "natural_key": self.natural_key,
            "payload": dict(self.payload),
        }
        if self.parent_ref is not None:
            d["parent_ref"] = self.parent_ref
        if self.ref is not None:
            d["ref"] = self.ref
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OperationDescriptor:
        return cls(
            kind=OperationKind(data["kind"]),
            natural_key=str(data["natural_key"]),
            payload=dict(data.get("payload") or {}),
            parent_ref=data.get("parent_ref"),
            ref=data.get("ref"),
        )


@dataclass(frozen=True)
class Resolution:
    """Outcome of an existence check: the remote id, or None when absent."""

    resource_id: int | None = None

    @property
    def found(self) -> bool:
        return self.resource_id is not None


Resolution.NOT_FOUND = Resolution()


@dataclass(frozen=True)
class ItemResult:
    """Terminal result of one operation. Written once, never edited."""

    operation: OperationDescriptor
    outcome: ItemOutcome
    resource_id: int | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    attempts: int = 0
    finished_at: datetime = field(default_factory=utcnow)
    # Dry-run items describe the write they would have made in `detail`.
    dry_run: bool = False
    detail: str | None = None

    def to_dict(self) -> dict:
        d = {
            "kind": self.operation.kind.value,
            "natural_key": self.operation.natural_key,
            "outcome": self.outcome.value,
            "resource_id": self.resource_id,
            "attempts": self.attempts,
            "finished_at": self.finished_at.isoformat(),
        }
        if self.error is not None:
            d["error"] = self.error
            d["error_kind"] = self.error_kind.value if self.error_kind else None
        if self.dry_run:
            d["dry_run"] = True
        if self.detail is not None:
            d["detail"] = self.detail
        return d


@dataclass
class Job:
    """A submitted batch and its live progress counters."""

    id: str
    type: str
    status: JobStatus = JobStatus.PENDING
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    items: list[ItemResult] = field(default_factory=list)
    operations: list[OperationDescriptor] = field(default_factory=list)
    dry_run: bool = False

    def snapshot(self) -> Job:
        return replace(self, items=list(self.items), operations=list(self.operations))

    def failed_operations(self) -> list[OperationDescriptor]:
        return [item.operation for item in self.items if item.outcome == ItemOutcome.FAILED]

    def remaining_operations(self) -> list[OperationDescriptor]:
        """Submitted operations that never produced an ItemResult."""
        done = [item.operation for item in self.items]
        remaining = []
        for op in self.operations:
            if op in done:
                done.remove(op)
            else:
                remaining.append(op)
        return remaining

    def resubmission(self, include_remaining: bool = False) -> list[OperationDescriptor]:
        """
        Operations for a follow-up batch: the failed ones, plus the never
        dispatched ones if asked. A parent_ref pointing at an item that
        succeeded in this job is replaced by that item's resource id.
        """
        ops = self.failed_operations()
        if include_remaining:
            ops += self.remaining_operations()
        labels = {op.label for op in ops}
        resolved = {
            item.operation.label: item.resource_id
            for item in self.items
            if item.outcome != ItemOutcome.FAILED and item.resource_id is not None
        }
        rebound = []
        for op in ops:
            if isinstance(op.parent_ref, str) and op.parent_ref not in labels and op.parent_ref in resolved:
                op = replace(op, parent_ref=resolved[op.parent_ref])
            rebound.append(op)
        return rebound

    def to_dict(self, include_items: bool = False) -> dict:
        d = {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_items:
            d["items"] = [item.to_dict() for item in self.items]
        return d


@dataclass(frozen=True)
class LogEntry:
    job_id: str
    level: str
    message: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted after each item completes, and once more when the job ends (last_item=None)."""

    job_id: str
    processed: int
    total: int
    status: JobStatus
    last_item: ItemResult | None = None


@dataclass
class BatchOptions:
    concurrency: int = DEFAULT_CONCURRENCY
    stop_on_first_error: bool = False
    retry_policy: RetryPolicy | None = None
    job_type: str = "batch"
    verify_credentials: bool = False
    dry_run: bool = False
    on_progress: Callable[[ProgressEvent], None] | None = None
