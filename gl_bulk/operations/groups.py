"""Group creation."""

from __future__ import annotations

from gl_bulk.models import OperationDescriptor, OperationKind, Resolution
from gl_bulk.operations.base import Operation, register_operation


@register_operation(OperationKind.CREATE_GROUP)
class CreateGroupOperation(Operation):
    """Create a group (or a subgroup when a parent is given). The natural key is the group path."""

    provides_namespace = True

    def build_request(self, op: OperationDescriptor, parent_id: int | None, resolution: Resolution):
        data = {"name": op.natural_key, "path": op.natural_key}
        data.update(op.payload)
        if parent_id is not None:
            data["parent_id"] = parent_id
        return "POST", "/groups", data
