"""Shared request pacing for every client using one set of credentials."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Mapping

from gl_bulk.models import (
    DEFAULT_MIN_INTERVAL,
    LOW_QUOTA_WARNING,
    LOW_WATER_FRACTION,
    RateState,
)


class RateLimiter:
    """
    Serializes access to the remote quota.

    acquire() reserves the next send slot under a lock and then sleeps outside
    it, so concurrent workers queue behind each other with min_interval
    spacing. A pause set by pause_for() (after a 429) delays every caller.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        low_water_fraction: float = LOW_WATER_FRACTION,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self.low_water_fraction = low_water_fraction
        self.clock = clock
        self.sleep = sleep
        self.state = RateState()
        self._lock = threading.Lock()
        self.logger = logging.getLogger("gl-bulk")

    def acquire(self) -> float:
        """
        Block until it is safe to send. Returns the seconds waited.

        A pause or quota wait that starts while the caller sleeps is honoured:
        the caller re-checks after waking and queues again behind it.
        """
        waited = 0.0
        with self._lock:
            now = self.clock()
            ready_at = max(now, self._hold_until(now))
            if self.state.last_request_at is not None:
                ready_at = max(ready_at, self.state.last_request_at + self.min_interval)
            self.state.last_request_at = ready_at

        while True:
            wait = ready_at - now
            if wait > 0:
                self.sleep(wait)
                waited += wait
            with self._lock:
                now = self.clock()
                hold = self._hold_until(now)
                if hold <= max(now, ready_at):
                    if self.state.remaining_quota is not None:
                        self.state.remaining_quota = max(0, self.state.remaining_quota - 1)
                    return waited
                ready_at = max(hold, self.state.last_request_at + self.min_interval)
                self.state.last_request_at = ready_at

    def observe(self, headers: Mapping[str, str]) -> None:
        """Update quota from RateLimit-* response headers. Missing or bad values are ignored."""
        remaining = _int_header(headers, "RateLimit-Remaining")
        limit = _int_header(headers, "RateLimit-Limit")
        reset = _int_header(headers, "RateLimit-Reset")
        if remaining is None and limit is None and reset is None:
            return
        with self._lock:
            if remaining is not None:
                self.state.remaining_quota = remaining
            if limit is not None:
                self.state.limit = limit
            if reset is not None:
                self.state.reset_at = float(reset)
        if remaining is not None and remaining < LOW_QUOTA_WARNING:
            self.logger.warning(f"Rate limit remaining: {remaining}")

    def pause_for(self, seconds: float) -> None:
        """Hold back every caller for at least `seconds` from now."""
        with self._lock:
            until = self.clock() + max(0.0, seconds)
            if until > self.state.paused_until:
                self.state.paused_until = until

    def snapshot(self) -> RateState:
        with self._lock:
            return replace(self.state)

    def _hold_until(self, now: float) -> float:
        """Earliest send time imposed by a 429 pause or an exhausted quota (caller holds the lock)."""
        hold = self.state.paused_until
        reset_at = self.state.reset_at
        if self._quota_exhausted() and reset_at is not None and reset_at > now:
            self.logger.warning(f"Rate limit quota exhausted, waiting {reset_at - now:.1f}s for reset")
            hold = max(hold, reset_at)
            # The window resets at reset_at; the next response reports the new quota.
            self.state.remaining_quota = None
        return hold

    def _quota_exhausted(self) -> bool:
        remaining = self.state.remaining_quota
        if remaining is None:
            return False
        if remaining <= 0:
            return True
        if self.state.limit:
            return remaining <= self.state.limit * self.low_water_fraction
        return False


def _int_header(headers: Mapping[str, str], name: str) -> int | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None
