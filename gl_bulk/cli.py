"""CLI entry point for gl-bulk."""

from __future__ import annotations

import argparse
import json
import os
import sys

from gl_bulk.client import GitLabClient
from gl_bulk.errors import GitLabBulkError, JobNotFoundError
from gl_bulk.logging_utils import setup_logging
from gl_bulk.models import (
    DEFAULT_CONCURRENCY,
    DEFAULT_DB_PATH,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MIN_INTERVAL,
    BatchOptions,
    Credentials,
    JobStatus,
    OperationDescriptor,
    RetryPolicy,
)
from gl_bulk.orchestrator import BatchJobOrchestrator, cancel_stored_job
from gl_bulk.rate_limiter import RateLimiter
from gl_bulk.store import JobStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gl-bulk",
        description="Run batches of GitLab group/project/member operations as tracked, resumable jobs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
    GITLAB_TOKEN - GitLab Personal Access Token (required for submit/retry-failed)
    GITLAB_URL   - GitLab instance URL (default: https://gitlab.com)
    GL_BULK_DB   - Job database path (default: gl-bulk.db)

Operations file (JSON list):
    [
      {"kind": "create-group", "natural_key": "platform", "parent_ref": 42},
      {"kind": "create-project", "natural_key": "api", "parent_ref": "platform"},
      {"kind": "add-member", "natural_key": "alice", "parent_ref": "platform",
       "payload": {"access_level": "maintainer"}}
    ]

Examples:
    gl-bulk submit ops.json --concurrency 3
    gl-bulk submit ops.json --dry-run
    gl-bulk list --status failed
    gl-bulk show 3f2c... --logs
    gl-bulk retry-failed 3f2c... --include-remaining
    gl-bulk cancel 3f2c...
""",
    )
    parser.add_argument("--json", action="store_true", dest="json_output", help="Log as JSON lines (to stderr)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--gitlab-url", default=None, help="GitLab instance URL (default: from GITLAB_URL env or https://gitlab.com)"
    )
    parser.add_argument("--db", default=None, help=f"Job database path (default: GL_BULK_DB or {DEFAULT_DB_PATH})")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    run_args = argparse.ArgumentParser(add_help=False)
    run_args.add_argument(
        "--concurrency",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help=f"Parallel workers (default: {DEFAULT_CONCURRENCY})",
    )
    run_args.add_argument(
        "--max-attempts",
        type=int,
        default=DEFAULT_MAX_ATTEMPTS,
        help=f"Attempts per request for transient errors (default: {DEFAULT_MAX_ATTEMPTS})",
    )
    run_args.add_argument(
        "--min-interval",
        type=float,
        default=DEFAULT_MIN_INTERVAL,
        help=f"Minimum seconds between requests (default: {DEFAULT_MIN_INTERVAL})",
    )
    run_args.add_argument("--stop-on-first-error", action="store_true", help="Stop dispatching after a failed item")
    run_args.add_argument(
        "--dry-run", action="store_true", help="Look up what exists and log the writes without making them"
    )

    submit = subparsers.add_parser("submit", parents=[run_args], help="Run a batch from a JSON operations file")
    submit.add_argument("file", help="Path to the operations file ('-' for stdin)")
    submit.add_argument("--job-type", default="batch", help="Label stored with the job (default: batch)")

    retry = subparsers.add_parser("retry-failed", parents=[run_args], help="Re-submit the failed items of a job")
    retry.add_argument("job_id")
    retry.add_argument(
        "--include-remaining", action="store_true", help="Also run items that were never dispatched (cancelled jobs)"
    )

    show = subparsers.add_parser("show", help="Show a job and its item results")
    show.add_argument("job_id")
    show.add_argument("--logs", action="store_true", help="Include the job log")

    cancel = subparsers.add_parser("cancel", help="Cancel a pending or running job")
    cancel.add_argument("job_id")

    listing = subparsers.add_parser("list", help="List recent jobs")
    listing.add_argument("--status", choices=[s.value for s in JobStatus], default=None)
    listing.add_argument("--limit", type=int, default=20)

    subparsers.add_parser("stats", help="Job counts by status")
    return parser


def load_operations(path: str) -> list[OperationDescriptor]:
    """Read a JSON list of operation records."""
    if path == "-":
        data = json.load(sys.stdin)
    else:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    if not isinstance(data, list):
        raise ValueError("operations file must contain a JSON list")
    try:
        return [OperationDescriptor.from_dict(record) for record in data]
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"invalid operation record: {e}") from e


def run_batch(args: argparse.Namespace, store: JobStore, operations: list[OperationDescriptor], job_type: str) -> int:
    credentials = Credentials.from_env(base_url=args.gitlab_url)
    client = GitLabClient.from_credentials(
        credentials,
        limiter=RateLimiter(min_interval=args.min_interval),
        retry_policy=RetryPolicy(max_attempts=args.max_attempts),
    )
    orchestrator = BatchJobOrchestrator(client, store)
    options = BatchOptions(
        concurrency=args.concurrency,
        stop_on_first_error=args.stop_on_first_error,
        dry_run=args.dry_run,
        job_type=job_type,
        verify_credentials=True,
    )

    job = orchestrator.submit(operations, options)
    print(job.id)
    try:
        job = orchestrator.wait(job.id)
    except KeyboardInterrupt:
        orchestrator.cancel(job.id)
        orchestrator.wait(job.id)
        return 130

    return 0 if job.status == JobStatus.COMPLETED and job.failed == 0 else 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logging(json_mode=args.json_output, verbose=args.verbose)

    store = JobStore(args.db or os.environ.get("GL_BULK_DB", DEFAULT_DB_PATH))
    try:
        if args.command == "submit":
            operations = load_operations(args.file)
            return run_batch(args, store, operations, args.job_type)

        if args.command == "retry-failed":
            previous = store.get(args.job_id)
            operations = previous.resubmission(include_remaining=args.include_remaining)
            if not operations:
                logger.info(f"Job {previous.id} has nothing to retry")
                return 0
            logger.info(f"Re-submitting {len(operations)} operations from job {previous.id}")
            return run_batch(args, store, operations, previous.type)

        if args.command == "show":
            job = store.get(args.job_id)
            out = job.to_dict(include_items=True)
            if args.logs:
                out["logs"] = [
                    {"level": e.level, "message": e.message, "timestamp": e.timestamp.isoformat()}
                    for e in store.logs(job.id)
                ]
            print(json.dumps(out, indent=2))
            return 0

        if args.command == "cancel":
            if cancel_stored_job(store, args.job_id):
                print(f"{args.job_id} cancelled")
                return 0
            logger.error(f"Job {args.job_id} has already finished")
            return 1

        if args.command == "list":
            for job in store.list(status=args.status, limit=args.limit):
                print(
                    f"{job.id}  {job.status.value:<9}  {job.type:<12} "
                    f"{job.processed}/{job.total}  ok={job.succeeded} skipped={job.skipped} failed={job.failed}  "
                    f"{job.created_at.isoformat()}"
                )
            return 0

        if args.command == "stats":
            print(json.dumps(store.stats(), indent=2))
            return 0
    except JobNotFoundError as e:
        logger.error(str(e))
        return 1
    except (GitLabBulkError, ValueError, OSError) as e:
        logger.error(f"ERROR: {e}")
        return 1
    finally:
        store.close()

    parser.error(f"unknown command: {args.command}")
    return 2


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
