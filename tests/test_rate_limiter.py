"""Tests for the shared rate limiter."""

import threading

import pytest

from gl_bulk.rate_limiter import RateLimiter


class TestSpacing:
    """Minimum spacing between any two requests."""

    def test_first_request_is_not_delayed(self, clock):
        limiter = RateLimiter(min_interval=0.5, clock=clock, sleep=clock.sleep)

        assert limiter.acquire() == 0.0
        assert clock.sleeps == []

    def test_back_to_back_requests_are_spaced(self, clock):
        limiter = RateLimiter(min_interval=0.5, clock=clock, sleep=clock.sleep)

        limiter.acquire()
        waited = limiter.acquire()

        assert waited == pytest.approx(0.5)
        assert clock.sleeps == [pytest.approx(0.5)]

    def test_no_wait_once_interval_has_passed(self, clock):
        limiter = RateLimiter(min_interval=0.5, clock=clock, sleep=clock.sleep)

        limiter.acquire()
        clock.now += 3
        assert limiter.acquire() == 0.0

    def test_concurrent_callers_get_distinct_slots(self, frozen_clock):
        """Reservations queue concurrent callers one interval apart."""
        clock = frozen_clock
        limiter = RateLimiter(min_interval=1.0, clock=clock, sleep=clock.sleep)
        waits = []
        lock = threading.Lock()

        def worker():
            waited = limiter.acquire()
            with lock:
                waits.append(waited)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(waits) == [pytest.approx(n) for n in range(5)]


class TestQuota:
    """Blocking on the quota reported by RateLimit-* headers."""

    def test_zero_remaining_waits_for_reset(self, clock):
        limiter = RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)
        limiter.observe({"RateLimit-Remaining": "0", "RateLimit-Reset": str(int(clock.now) + 10)})

        waited = limiter.acquire()

        assert waited == pytest.approx(10)
        # After the reset the quota is unknown again, so the next call goes straight through.
        assert limiter.acquire() == 0.0

    def test_low_water_mark_waits_for_reset(self, clock):
        limiter = RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)
        limiter.observe(
            {"RateLimit-Remaining": "5", "RateLimit-Limit": "1000", "RateLimit-Reset": str(int(clock.now) + 30)}
        )

        assert limiter.acquire() == pytest.approx(30)

    def test_ample_quota_does_not_wait(self, clock):
        limiter = RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)
        limiter.observe(
            {"RateLimit-Remaining": "900", "RateLimit-Limit": "1000", "RateLimit-Reset": str(int(clock.now) + 30)}
        )

        assert limiter.acquire() == 0.0
        assert limiter.snapshot().remaining_quota == 899

    def test_reset_in_the_past_does_not_block(self, clock):
        limiter = RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)
        limiter.observe({"RateLimit-Remaining": "0", "RateLimit-Reset": str(int(clock.now) - 5)})

        assert limiter.acquire() == 0.0

    def test_missing_headers_leave_state_unchanged(self, clock):
        limiter = RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)
        limiter.observe({"RateLimit-Remaining": "42"})

        limiter.observe({"Content-Type": "application/json"})

        assert limiter.snapshot().remaining_quota == 42

    def test_malformed_headers_are_ignored(self, clock):
        limiter = RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)
        limiter.observe({"RateLimit-Remaining": "42"})

        limiter.observe({"RateLimit-Remaining": "lots"})

        assert limiter.snapshot().remaining_quota == 42

    def test_lowercase_header_names(self, clock):
        limiter = RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)

        limiter.observe({"ratelimit-remaining": "7", "ratelimit-limit": "60"})

        state = limiter.snapshot()
        assert state.remaining_quota == 7
        assert state.limit == 60


class TestPause:
    """Global pause after a 429."""

    def test_pause_delays_next_acquire(self, clock):
        limiter = RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)

        limiter.pause_for(2)

        assert limiter.acquire() == pytest.approx(2)

    def test_pause_never_moves_backwards(self, clock):
        limiter = RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)

        limiter.pause_for(10)
        limiter.pause_for(1)

        assert limiter.acquire() == pytest.approx(10)

    def test_pause_set_while_sleeping_is_honoured(self, clock):
        """A caller already sleeping on its slot re-queues behind a pause that started meanwhile."""

        def sleep_with_429(seconds):
            if not clock.sleeps:
                clock.now += 0.1
                limiter.pause_for(2.0)
                seconds -= 0.1
            clock.sleep(seconds)

        limiter = RateLimiter(min_interval=0.5, clock=clock, sleep=sleep_with_429)
        start = clock.now
        limiter.acquire()

        waited = limiter.acquire()

        assert clock.now == pytest.approx(start + 2.1)
        assert waited == pytest.approx(2.1)
