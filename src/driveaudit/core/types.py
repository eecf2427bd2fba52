"""
Core types for driveaudit.

Closed string enums for every status, phase, role and principal value that
is persisted or crosses a component boundary. Values match the strings the
Drive API and the document store use, so members serialize as plain strings.
"""

from enum import Enum


class ScanStatus(str, Enum):
    """Lifecycle status of a single scan run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ScanStatus.RUNNING


class ScanPhase(str, Enum):
    """Sub-state of a running scan. Phases only ever move forward."""

    COUNTING = "counting"
    SCANNING = "scanning"
    RESOLVING = "resolving"
    SAVING = "saving"
    DONE = "done"

    @property
    def order(self) -> int:
        return _PHASE_ORDER.index(self)

    def can_advance_to(self, other: "ScanPhase") -> bool:
        return other.order > self.order


_PHASE_ORDER = [
    ScanPhase.COUNTING,
    ScanPhase.SCANNING,
    ScanPhase.RESOLVING,
    ScanPhase.SAVING,
    ScanPhase.DONE,
]


class ScanType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class RiskLevel(str, Enum):
    """Risk level derived from a risk score via the threshold table."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {
            RiskLevel.LOW: 0,
            RiskLevel.MEDIUM: 1,
            RiskLevel.HIGH: 2,
            RiskLevel.CRITICAL: 3,
        }[self]


class PrincipalType(str, Enum):
    """Who a permission is granted to."""

    USER = "user"
    GROUP = "group"
    DOMAIN = "domain"
    ANYONE = "anyone"


class PermissionRole(str, Enum):
    """Drive permission roles, most to least privileged."""

    OWNER = "owner"
    ORGANIZER = "organizer"
    FILE_ORGANIZER = "fileOrganizer"
    WRITER = "writer"
    COMMENTER = "commenter"
    READER = "reader"

    @property
    def is_editor(self) -> bool:
        return self in EDITOR_ROLES


EDITOR_ROLES = frozenset({
    PermissionRole.ORGANIZER,
    PermissionRole.FILE_ORGANIZER,
    PermissionRole.WRITER,
})

# Roles a caller may assign through a role update
ASSIGNABLE_ROLES = frozenset({
    PermissionRole.READER,
    PermissionRole.COMMENTER,
    PermissionRole.WRITER,
})


class PermissionStatus(str, Enum):
    """Local state of a permission entry on a scanned file record."""

    ACTIVE = "active"
    DELETED = "deleted"


class OwnerType(str, Enum):
    """Owner filter for listings and folder summaries."""

    ALL = "all"
    INTERNAL = "internal"
    EXTERNAL = "external"


class ChangeType(str, Enum):
    MODIFIED = "modified"
    DELETED = "deleted"


class JobStatus(str, Enum):
    """Lifecycle status of an integrated (organization-wide) scan job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


class UserScanStatus(str, Enum):
    """Status of one target user within an integrated scan job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (
            UserScanStatus.COMPLETED,
            UserScanStatus.FAILED,
            UserScanStatus.SKIPPED,
        )


class MutationOperation(str, Enum):
    """Permission mutations the bulk mutator can apply."""

    DELETE_PERMISSION = "delete_permission"
    DEMOTE_TO_READER = "demote_to_reader"
    REMOVE_PUBLIC_ACCESS = "remove_public_access"
    UPDATE_ROLE = "update_role"
    RESTORE = "restore"


def empty_risky_summary() -> dict[str, int]:
    """Risk-level histogram with every level present at zero."""
    return {level.value: 0 for level in RiskLevel}
