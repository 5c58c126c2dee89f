"""Logging setup for gl-bulk: human-readable lines or JSON lines on stderr."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone


class StructuredFormatter(logging.Formatter):
    """
    Human mode prints `[LEVEL  ] message`, prefixed with a short job id when
    the record belongs to a job.

    JSON mode prints one object per record. Records carrying an `item_result`
    become the item's dict, so a run can be replayed from its log.
    """

    def __init__(self, json_mode: bool = False):
        super().__init__()
        self.json_mode = json_mode

    def format(self, record: logging.LogRecord) -> str:
        job_id = getattr(record, "job_id", None)
        if not self.json_mode:
            prefix = f"{job_id[:8]} " if job_id else ""
            return f"[{record.levelname:<7}] {prefix}{record.getMessage()}"

        out = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
        }
        if job_id:
            out["job_id"] = job_id
        item = getattr(record, "item_result", None)
        if item is not None:
            out.update(item.to_dict())
        else:
            out["message"] = record.getMessage()
        if record.exc_info:
            out["exception"] = self.formatException(record.exc_info)
        return json.dumps(out)


def setup_logging(json_mode: bool = False, verbose: bool = False) -> logging.Logger:
    """Configure the `gl-bulk` logger. Safe to call more than once."""
    logger = logging.getLogger("gl-bulk")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter(json_mode=json_mode))
    logger.addHandler(handler)
    return logger
