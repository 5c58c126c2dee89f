"""
gl-bulk: bulk creation and maintenance of GitLab groups, projects and memberships.

Batches of operations run as tracked jobs: requests are paced against GitLab's
rate limits and retried on transient failures, resources that already exist
are skipped, and every item's outcome is persisted so partial failures can be
inspected and re-submitted.

Environment:
    GITLAB_TOKEN - GitLab Personal Access Token (required)
    GITLAB_URL   - GitLab instance URL (default: https://gitlab.com)
    GL_BULK_DB   - Job database path (default: gl-bulk.db)
"""

from gl_bulk.client import GitLabClient
from gl_bulk.errors import (
    ClientError,
    GitLabBulkError,
    InvalidBatchError,
    JobNotFoundError,
    PageFetchError,
    PaginationLimitExceeded,
    RetriesExhaustedError,
    SetupError,
)
from gl_bulk.idempotency import IdempotencyResolver
from gl_bulk.models import (
    BatchOptions,
    Credentials,
    ItemOutcome,
    ItemResult,
    Job,
    JobStatus,
    OperationDescriptor,
    OperationKind,
    ProgressEvent,
    RetryPolicy,
)
from gl_bulk.orchestrator import BatchJobOrchestrator
from gl_bulk.pagination import PaginatedFetcher
from gl_bulk.rate_limiter import RateLimiter
from gl_bulk.store import JobStore

__version__ = "0.1.0"
__all__ = [
    "BatchJobOrchestrator",
    "BatchOptions",
    "ClientError",
    "Credentials",
    "GitLabBulkError",
    "GitLabClient",
    "IdempotencyResolver",
    "InvalidBatchError",
    "ItemOutcome",
    "ItemResult",
    "Job",
    "JobNotFoundError",
    "JobStatus",
    "JobStore",
    "OperationDescriptor",
    "OperationKind",
    "PageFetchError",
    "PaginatedFetcher",
    "PaginationLimitExceeded",
    "ProgressEvent",
    "RateLimiter",
    "RetriesExhaustedError",
    "RetryPolicy",
    "SetupError",
    "__version__",
]
