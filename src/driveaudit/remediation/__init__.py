"""
Permission remediation for scanned files.

Mutations go through the file-store adapter and are mirrored onto the
scan's stored permission entries as soft marks, so deletions can be
restored. Every request writes one action log entry.
"""

from driveaudit.remediation.audit import list_actions, record_action
from driveaudit.remediation.base import BulkResult, MutationItemResult, PermissionFilter
from driveaudit.remediation.bulk import BulkMutator

__all__ = [
    "BulkMutator",
    "BulkResult",
    "MutationItemResult",
    "PermissionFilter",
    "list_actions",
    "record_action",
]
