"""Existence checks that keep batch re-runs from creating duplicates."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping

from gl_bulk.errors import ClientError
from gl_bulk.models import OperationKind, Resolution
from gl_bulk.pagination import PaginatedFetcher

if TYPE_CHECKING:
    from gl_bulk.client import GitLabClient


class IdempotencyResolver:
    """
    Decides whether the resource an operation targets already exists.

    Groups and projects are found by listing their siblings under the parent
    and matching the natural key. Memberships and update/delete targets are
    checked with a direct lookup. Nothing here writes to GitLab.

    Any non-2xx, non-429 answer to a direct lookup counts as "not found".
    """

    def __init__(self, client: GitLabClient, fetcher: PaginatedFetcher | None = None):
        self.client = client
        self.fetcher = fetcher or PaginatedFetcher(client)
        self.logger = logging.getLogger("gl-bulk")

    def resolve(
        self,
        kind: OperationKind,
        natural_key: str,
        parent_ref: int | str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> Resolution:
        payload = payload or {}
        if kind == OperationKind.CREATE_GROUP:
            return self._find_group(natural_key, parent_ref)
        if kind == OperationKind.CREATE_PROJECT:
            return self._find_project(natural_key, parent_ref)
        if kind == OperationKind.ADD_MEMBER:
            return self._find_member(natural_key, parent_ref, payload.get("source", "groups"))
        if kind in (OperationKind.UPDATE, OperationKind.DELETE):
            return self._find_resource(natural_key, payload.get("resource", "group"))
        raise ValueError(f"Unsupported operation kind: {kind}")

    def resolve_namespace(self, parent_ref: int | str) -> int | None:
        """Turn a namespace id or full group path into a group id, None if it does not exist."""
        if isinstance(parent_ref, int):
            return parent_ref
        return self._lookup(f"/groups/{self.client.encode_path(self.client.extract_path(parent_ref))}").resource_id

    # -- Listing-based --

    def _find_group(self, path: str, parent_id: int | str | None) -> Resolution:
        if parent_id is None:
            listing = self.fetcher.fetch_all("/groups", params={"top_level_only": True, "search": path})
        else:
            listing = self.fetcher.fetch_all(f"/groups/{parent_id}/subgroups", params={"search": path})
        return self._match(listing, path, ("path",), f"group '{path}'")

    def _find_project(self, key: str, namespace_id: int | str | None) -> Resolution:
        if namespace_id is None:
            raise ValueError("create-project needs a parent namespace")
        listing = self.fetcher.fetch_all(
            f"/groups/{namespace_id}/projects", params={"include_subgroups": False, "search": key}
        )
        return self._match(listing, key, ("path", "name"), f"project '{key}'")

    def _match(self, listing, key: str, fields: tuple[str, ...], what: str) -> Resolution:
        for record in listing.records:
            if any(record.get(f) == key for f in fields):
                self.logger.debug(f"{what} already exists with ID: {record['id']}")
                return Resolution(record["id"])
        if listing.limit_exceeded:
            self.logger.warning(f"{what} not found in a truncated listing; treating as missing")
        return Resolution.NOT_FOUND

    # -- Direct lookups --

    def _find_member(self, user: str, source_id: int | str | None, source: str) -> Resolution:
        if source_id is None:
            raise ValueError("add-member needs a parent group or project")
        if source not in ("groups", "projects"):
            raise ValueError(f"Unknown member source: {source}")
        try:
            user_id = self.client.resolve_user(user)
        except ClientError:
            # An unknown user cannot already be a member; the add call reports the error.
            return Resolution.NOT_FOUND
        found = self._lookup(f"/{source}/{source_id}/members/{user_id}")
        return Resolution(user_id) if found.found else Resolution.NOT_FOUND

    def _find_resource(self, key: str, resource: str) -> Resolution:
        if resource not in ("group", "project"):
            raise ValueError(f"Unknown resource type: {resource}")
        ident = key if key.isdigit() else self.client.encode_path(self.client.extract_path(key))
        return self._lookup(f"/{resource}s/{ident}")

    def _lookup(self, path: str) -> Resolution:
        resp = self.client.execute("GET", path)
        if not 200 <= resp.status_code < 300:
            return Resolution.NOT_FOUND
        data = resp.json()
        return Resolution(data.get("id", 0) if isinstance(data, dict) else 0)
