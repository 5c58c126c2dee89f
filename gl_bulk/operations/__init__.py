"""Operation kinds for gl-bulk."""

from gl_bulk.operations.base import Operation, get_operation_registry, register_operation

# Import all operations to register them
from gl_bulk.operations.groups import CreateGroupOperation
from gl_bulk.operations.members import AddMemberOperation
from gl_bulk.operations.projects import CreateProjectOperation
from gl_bulk.operations.resources import DeleteOperation, UpdateOperation

__all__ = [
    "Operation",
    "register_operation",
    "get_operation_registry",
    "CreateGroupOperation",
    "CreateProjectOperation",
    "AddMemberOperation",
    "UpdateOperation",
    "DeleteOperation",
]
