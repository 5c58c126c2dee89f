"""Project creation."""

from __future__ import annotations

from gl_bulk.models import OperationDescriptor, OperationKind, Resolution
from gl_bulk.operations.base import Operation, register_operation


@register_operation(OperationKind.CREATE_PROJECT)
class CreateProjectOperation(Operation):
    """Create a project inside a group. The natural key is the project path or name."""

    provides_namespace = True
    requires_parent = True

    def build_request(self, op: OperationDescriptor, parent_id: int | None, resolution: Resolution):
        data = {"name": op.natural_key, "path": op.natural_key}
        data.update(op.payload)
        data["namespace_id"] = parent_id
        return "POST", "/projects", data
