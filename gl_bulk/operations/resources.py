"""Update and delete of an existing group or project."""

from __future__ import annotations

from gl_bulk.models import OperationDescriptor, OperationKind, Resolution
from gl_bulk.operations.base import Operation, register_operation


def _resource_path(op: OperationDescriptor, resource_id: int) -> str:
    resource = op.payload.get("resource", "group")
    return f"/{resource}s/{resource_id}"


def _attributes(op: OperationDescriptor) -> dict:
    return {k: v for k, v in op.payload.items() if k != "resource"}


@register_operation(OperationKind.UPDATE)
class UpdateOperation(Operation):
    """Change settings of an existing group or project, found by full path or id."""

    def skip(self, resolution: Resolution) -> bool:
        return False

    def missing_target(self, op: OperationDescriptor, resolution: Resolution) -> str | None:
        if not resolution.found:
            return f"{op.payload.get('resource', 'group')} '{op.natural_key}' not found"
        return None

    def build_request(self, op: OperationDescriptor, parent_id: int | None, resolution: Resolution):
        return "PUT", _resource_path(op, resolution.resource_id), _attributes(op)


@register_operation(OperationKind.DELETE)
class DeleteOperation(Operation):
    """Delete a group or project. Already gone counts as done."""

    def skip(self, resolution: Resolution) -> bool:
        return not resolution.found

    def build_request(self, op: OperationDescriptor, parent_id: int | None, resolution: Resolution):
        params = _attributes(op)
        return "DELETE", _resource_path(op, resolution.resource_id), params or None

    def resource_id(self, op, resp, resolution):
        return resolution.resource_id
