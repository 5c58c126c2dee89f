"""GitLab API client with shared rate limiting and retry support."""

from __future__ import annotations

import logging
import random
import urllib.parse
from typing import Any

import requests

from gl_bulk.errors import ClientError, RetriesExhaustedError, SetupError
from gl_bulk.models import (
    API_V4,
    DEFAULT_REQUEST_TIMEOUT,
    Credentials,
    RetryPolicy,
)
from gl_bulk.rate_limiter import RateLimiter


class GitLabClient:
    """Thin wrapper around GitLab REST API v4 with rate limiting and retry logic.

    Clients built from the same credentials should share one RateLimiter so a
    429 seen by any of them pauses all of them.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}{API_V4}"
        self.session = requests.Session()
        self.session.headers.update(
            {
                "PRIVATE-TOKEN": token,
                "Content-Type": "application/json",
            }
        )
        self.limiter = limiter or RateLimiter()
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        self.logger = logging.getLogger("gl-bulk")

    @classmethod
    def from_credentials(cls, credentials: Credentials, **kwargs) -> GitLabClient:
        return cls(credentials.base_url, credentials.token, **kwargs)

    def execute(
        self,
        method: str,
        path: str,
        body: dict | None = None,
        params: dict | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> requests.Response:
        """
        Send one logical request, retrying 429, 5xx and transport errors.

        Any other response, 4xx included, is returned as-is with an `attempts`
        attribute. Raises RetriesExhaustedError once the attempt budget is spent.
        """
        policy = retry_policy or self.retry_policy
        url = f"{self.api_url}{path}"
        method = method.upper()
        last_status: int | None = None
        last_error: Exception | None = None

        for attempt in range(1, policy.max_attempts + 1):
            self.limiter.acquire()
            self.logger.debug(
                f"{method} {url} {params or ''} {body or ''} (attempt {attempt}/{policy.max_attempts})"
            )
            try:
                resp = self.session.request(method, url, json=body, params=params, timeout=self.request_timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                last_status, last_error = None, e
                if attempt < policy.max_attempts:
                    wait_time = self._calculate_backoff(policy, attempt)
                    self.logger.warning(f"Connection error, retrying in {wait_time:.1f}s: {e}")
                    self.limiter.sleep(wait_time)
                continue

            if resp.status_code == 429:
                self.limiter.observe(resp.headers)
                last_status, last_error = 429, None
                wait_time = self._rate_limit_wait(resp, policy)
                # Every worker sharing the limiter waits, not only this one.
                self.limiter.pause_for(wait_time)
                if attempt < policy.max_attempts:
                    self.logger.warning(f"Rate limited (429), pausing all requests for {wait_time:.1f}s")
                continue

            if resp.status_code >= 500:
                last_status, last_error = resp.status_code, None
                if attempt < policy.max_attempts:
                    wait_time = self._calculate_backoff(policy, attempt)
                    self.logger.warning(f"Retryable error {resp.status_code}, waiting {wait_time:.1f}s before retry")
                    self.limiter.sleep(wait_time)
                continue

            self.limiter.observe(resp.headers)
            if resp.status_code >= 400:
                self.logger.debug(f"API error {resp.status_code}: {resp.text[:500]}")
            resp.attempts = attempt
            return resp

        self.logger.error(f"{method} {url} gave up after {policy.max_attempts} attempts")
        raise RetriesExhaustedError(method, path, policy.max_attempts, last_status, last_error)

    @staticmethod
    def _calculate_backoff(policy: RetryPolicy, attempt: int) -> float:
        """Exponential backoff with +/- jitter_fraction applied."""
        delay = policy.delay_for(attempt)
        if policy.jitter_fraction:
            delay *= random.uniform(1 - policy.jitter_fraction, 1 + policy.jitter_fraction)
        return delay

    def _rate_limit_wait(self, resp: requests.Response, policy: RetryPolicy) -> float:
        """Seconds to hold off after a 429: Retry-After, then RateLimit-Reset, then the fallback."""
        retry_after = resp.headers.get("Retry-After")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass  # Fall through to the reset header
        reset = resp.headers.get("RateLimit-Reset")
        if reset:
            try:
                wait = float(reset) - self.limiter.clock()
            except ValueError:
                wait = 0
            if wait > 0:
                return wait
        return policy.rate_limit_fallback

    # -- Convenience helpers --

    def get_json(self, path: str, params: dict | None = None) -> Any:
        resp = self.execute("GET", path, params=params)
        if resp.status_code >= 400:
            raise ClientError(resp.status_code, resp.text)
        return resp.json()

    def check_credentials(self) -> dict:
        """Fail fast on a bad token before any job is created."""
        resp = self.execute("GET", "/user")
        if resp.status_code in (401, 403):
            raise SetupError(f"GitLab rejected the access token (HTTP {resp.status_code})")
        if resp.status_code >= 400:
            raise SetupError(f"Could not verify credentials (HTTP {resp.status_code}): {resp.text[:200]}")
        return resp.json()

    def resolve_user(self, identifier: str | int) -> int:
        """Resolve a username or user ID to a numeric user ID."""
        # If already numeric, return as-is
        try:
            return int(identifier)
        except ValueError:
            pass

        # Look up by username
        users = self.get_json("/users", params={"username": identifier})
        if not users:
            raise ClientError(404, f"User not found: {identifier}")
        return users[0]["id"]

    @staticmethod
    def extract_path(url: str) -> str:
        """Extract the namespace/project path from a GitLab URL or bare path."""
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme and parsed.netloc:
            # Full URL: https://gitlab.com/myorg/myteam/myproject
            path = parsed.path.strip("/")
            # Strip common suffixes
            for suffix in ("/-/", "/-", ".git"):
                if suffix in path:
                    path = path[: path.index(suffix)]
            return path
        else:
            # Bare path: myorg/myteam/myproject
            return url.strip("/")

    @staticmethod
    def encode_path(path: str) -> str:
        return urllib.parse.quote(path, safe="")
