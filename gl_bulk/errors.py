"""Exception types for gl-bulk."""

from __future__ import annotations


class GitLabBulkError(Exception):
    """Base class for gl-bulk errors."""


class SetupError(GitLabBulkError):
    """Raised before a job exists: missing or rejected credentials."""


class InvalidBatchError(GitLabBulkError):
    """Raised by submit() when the operation list is malformed."""


class ClientError(GitLabBulkError):
    """A 4xx (other than 429) answer. Never retried."""

    def __init__(self, status: int, body: str, message: str | None = None):
        self.status = status
        self.body = body
        super().__init__(message or f"HTTP {status}: {body}")


class RetriesExhaustedError(GitLabBulkError):
    """Every allowed attempt hit a 429, a 5xx or a transport error."""

    def __init__(
        self,
        method: str,
        path: str,
        attempts: int,
        last_status: int | None = None,
        last_error: Exception | None = None,
    ):
        self.method = method
        self.path = path
        self.attempts = attempts
        self.last_status = last_status
        self.last_error = last_error
        cause = f"HTTP {last_status}" if last_status is not None else str(last_error)
        super().__init__(f"{method} {path} failed after {attempts} attempts ({cause})")


class PageFetchError(GitLabBulkError):
    """A page of a listing could not be fetched; the partial listing is discarded."""

    def __init__(self, path: str, page: int, status: int | None, body: str):
        self.path = path
        self.page = page
        self.status = status
        self.body = body
        super().__init__(f"Listing {path} failed on page {page} (HTTP {status}): {body[:200]}")


class DependencyFailedError(GitLabBulkError):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"parent operation '{ref}' did not succeed")


class JobNotFoundError(GitLabBulkError, KeyError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")

    def __str__(self) -> str:
        return self.args[0]


class JobStateError(GitLabBulkError):
    """An update would move a job backwards or break its counters."""


class PaginationLimitExceeded(UserWarning):
    """A listing hit the page cap; the records returned are incomplete."""
