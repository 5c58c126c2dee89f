"""Shared test fixtures for gl-bulk tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from gl_bulk.client import GitLabClient
from gl_bulk.models import RetryPolicy
from gl_bulk.orchestrator import BatchJobOrchestrator
from gl_bulk.rate_limiter import RateLimiter
from gl_bulk.store import JobStore

# Constants for use in tests - pytest makes conftest.py fixtures available,
# but these constants need to be imported directly from tests
MOCK_GITLAB_URL = "https://gitlab.example.com"
MOCK_API_URL = f"{MOCK_GITLAB_URL}/api/v4"


class FakeClock:
    """Stands in for time.time/time.sleep. sleep() records the wait and, by default, advances time."""

    def __init__(self, start: float = 1_700_000_000.0, advance: bool = True):
        self.now = start
        self.advance = advance
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            if self.advance:
                self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def frozen_clock():
    """Clock whose sleep() records waits without advancing time."""
    return FakeClock(advance=False)


@pytest.fixture
def limiter(clock):
    """Limiter on the fake clock with no spacing, so tests never sleep for real."""
    return RateLimiter(min_interval=0, clock=clock, sleep=clock.sleep)


@pytest.fixture
def no_jitter_policy():
    return RetryPolicy(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0, max_delay=30.0, jitter_fraction=0)


@pytest.fixture
def mock_client(limiter, no_jitter_policy):
    """GitLabClient pointing at mock server."""
    return GitLabClient(MOCK_GITLAB_URL, "test-token", limiter=limiter, retry_policy=no_jitter_policy)


@pytest.fixture
def store():
    job_store = JobStore()
    yield job_store
    job_store.close()


@pytest.fixture
def orchestrator(mock_client, store):
    return BatchJobOrchestrator(mock_client, store)


@pytest.fixture
def sample_group():
    """Sample group API response."""
    return {
        "id": 456,
        "name": "myorg",
        "path": "myorg",
        "full_path": "myorg",
        "web_url": f"{MOCK_GITLAB_URL}/myorg",
    }
