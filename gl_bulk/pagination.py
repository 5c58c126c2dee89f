"""Assemble complete result sets from paginated GitLab listings."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from gl_bulk.errors import PageFetchError, PaginationLimitExceeded
from gl_bulk.models import MAX_PAGES, PER_PAGE

if TYPE_CHECKING:
    from gl_bulk.client import GitLabClient


@dataclass
class PageListing:
    """Records from a listing. limit_exceeded means the page cap cut it short."""

    records: list[dict] = field(default_factory=list)
    pages: int = 0
    limit_exceeded: bool = False


class PaginatedFetcher:
    def __init__(self, client: GitLabClient, max_pages: int = MAX_PAGES):
        self.client = client
        self.max_pages = max_pages
        self.logger = logging.getLogger("gl-bulk")

    def fetch_all(self, base_path: str, page_size: int = PER_PAGE, params: dict | None = None) -> PageListing:
        """
        Fetch every page of `base_path`.

        Stops on an empty or short page, or when X-Total-Pages says so. Hitting
        max_pages returns what was read and warns with PaginationLimitExceeded.
        A failed page raises; partial results are never returned in that case.
        """
        params = dict(params or {})
        params["per_page"] = page_size
        listing = PageListing()

        for page in range(1, self.max_pages + 1):
            params["page"] = page
            resp = self.client.execute("GET", base_path, params=params)
            if resp.status_code >= 300:
                raise PageFetchError(base_path, page, resp.status_code, resp.text)
            data = resp.json()
            if not isinstance(data, list):
                raise PageFetchError(base_path, page, resp.status_code, f"expected a JSON list, got {type(data).__name__}")

            listing.pages = page
            if not data:
                return listing
            listing.records.extend(data)
            if len(data) < page_size:
                return listing
            total_pages = resp.headers.get("X-Total-Pages")
            if total_pages and total_pages.isdigit() and page >= int(total_pages):
                return listing

        listing.limit_exceeded = True
        message = f"Pagination limit reached for {base_path} ({self.max_pages} pages, {len(listing.records)} records)"
        self.logger.warning(message)
        warnings.warn(message, PaginationLimitExceeded, stacklevel=2)
        return listing
