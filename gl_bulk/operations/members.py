"""Membership of a user in a group or project."""

from __future__ import annotations

from gl_bulk.models import ACCESS_LEVELS, OperationDescriptor, OperationKind, Resolution
from gl_bulk.operations.base import Operation, register_operation


@register_operation(OperationKind.ADD_MEMBER)
class AddMemberOperation(Operation):
    """Add a user to a group or project. The natural key is the username or user id."""

    requires_parent = True
    DEFAULT_ACCESS_LEVEL = "developer"

    def build_request(self, op: OperationDescriptor, parent_id: int | None, resolution: Resolution):
        payload = dict(op.payload)
        source = payload.pop("source", "groups")
        access_level = payload.pop("access_level", self.DEFAULT_ACCESS_LEVEL)
        if isinstance(access_level, str) and not access_level.isdigit():
            if access_level not in ACCESS_LEVELS:
                raise ValueError(f"Unknown access level: {access_level}")
            access_level = ACCESS_LEVELS[access_level]

        user_id = self.client.resolve_user(op.natural_key)
        data = {"user_id": user_id, "access_level": int(access_level)}
        data.update(payload)
        return "POST", f"/{source}/{parent_id}/members", data
