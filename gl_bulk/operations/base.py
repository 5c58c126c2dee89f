"""Base class and registry for batch operation kinds."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import requests

from gl_bulk.models import OperationDescriptor, OperationKind, Resolution

if TYPE_CHECKING:
    from gl_bulk.client import GitLabClient

# ---------------------------------------------------------------------------
# Operation Registry
# ---------------------------------------------------------------------------

_operation_registry: dict[OperationKind, type[Operation]] = {}


def register_operation(kind: OperationKind):
    """Decorator to register an operation class for an operation kind."""

    def decorator(cls):
        _operation_registry[kind] = cls
        cls.kind = kind
        return cls

    return decorator


def get_operation_registry() -> dict[OperationKind, type[Operation]]:
    """Get the operation registry."""
    return _operation_registry


# ---------------------------------------------------------------------------
# Operation Base Class
# ---------------------------------------------------------------------------


class Operation(ABC):
    """Turns an OperationDescriptor into the single write call that carries it out."""

    kind: OperationKind
    # Batch items of these kinds may be referenced as parent_ref by later items.
    provides_namespace: bool = False
    # Whether the kind needs a parent namespace id to run.
    requires_parent: bool = False

    def __init__(self, client: GitLabClient):
        self.client = client

    def skip(self, resolution: Resolution) -> bool:
        """Return True when the remote state already satisfies the operation."""
        return resolution.found

    def missing_target(self, op: OperationDescriptor, resolution: Resolution) -> str | None:
        """Error message when the operation cannot run against the resolved state."""
        return None

    @abstractmethod
    def build_request(
        self, op: OperationDescriptor, parent_id: int | None, resolution: Resolution
    ) -> tuple[str, str, dict | None]:
        """Return (method, path, body) for the write call."""
        ...

    def resource_id(self, op: OperationDescriptor, resp: requests.Response, resolution: Resolution) -> int | None:
        try:
            data = resp.json()
        except ValueError:
            return resolution.resource_id
        if isinstance(data, dict) and "id" in data:
            return data["id"]
        return resolution.resource_id
