"""
Unified exception hierarchy for driveaudit.

All exception classes live here. No per-module exception files.

Hierarchy:
    DriveAuditError (base)
    ├── AdapterError
    │   ├── DriveAPIError
    │   │   ├── RateLimitedError
    │   │   ├── CursorExpiredError
    │   │   └── PermanentFileError
    │   └── CredentialError
    ├── CircuitOpenError
    ├── StorageError
    │   └── UnsupportedQueryError
    ├── ScanError
    ├── JobError
    │   └── CheckpointError
    ├── MutationError
    ├── NotFoundError
    ├── ConflictError
    └── ValidationError

Usage:
    from driveaudit.exceptions import DriveAPIError, NotFoundError
"""

from __future__ import annotations

from typing import Any

# =============================================================================
# ROOT
# =============================================================================


class DriveAuditError(Exception):
    """
    Base exception for all driveaudit errors.

    Attributes:
        message: Human-readable error description
        context: Additional context about what was being done
        details: Technical details (file ids, endpoints, status codes, etc.)
    """

    def __init__(
        self,
        message: str,
        context: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.context = context
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message]
        if self.context:
            parts.append(f"Context: {self.context}")
        if self.details:
            detail_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            parts.append(f"Details: {detail_str}")
        return ". ".join(parts)


# =============================================================================
# ADAPTERS
# =============================================================================


class AdapterError(DriveAuditError):
    """Raised when communication with the file-store or directory API fails."""

    def __init__(
        self,
        message: str,
        adapter_type: str | None = None,
        operation: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if adapter_type:
            details["adapter"] = adapter_type
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details, **kwargs)
        self.adapter_type = adapter_type
        self.operation = operation


class DriveAPIError(AdapterError):
    """Google Drive / Directory REST API error with response details."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
        endpoint: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        if retry_after:
            details["retry_after"] = retry_after
        if endpoint:
            details["endpoint"] = endpoint
        super().__init__(message, adapter_type="google_drive", details=details, **kwargs)
        self.status_code = status_code
        self.retry_after = retry_after
        self.endpoint = endpoint


class RateLimitedError(DriveAPIError):
    """Rate limit still in effect after the retry budget was exhausted."""

    pass


class CursorExpiredError(DriveAPIError):
    """A change cursor was rejected by the API (too old or invalidated)."""

    pass


class PermanentFileError(DriveAPIError):
    """A single file cannot be read (deleted mid-scan, no access, malformed)."""

    def __init__(self, message: str, file_id: str | None = None, **kwargs: Any):
        details = kwargs.pop("details", {})
        if file_id:
            details["file_id"] = file_id
        super().__init__(message, details=details, **kwargs)
        self.file_id = file_id


class CredentialError(AdapterError):
    """Delegated credential could not be issued or refreshed."""

    def __init__(self, message: str, subject: str | None = None, **kwargs: Any):
        details = kwargs.pop("details", {})
        if subject:
            details["subject"] = subject
        super().__init__(message, adapter_type="credentials", details=details, **kwargs)
        self.subject = subject


class CircuitOpenError(DriveAuditError):
    """Raised when circuit is open and request is blocked."""

    def __init__(self, name: str, recovery_time: float):
        self.name = name
        self.recovery_time = recovery_time
        super().__init__(
            f"Circuit breaker '{name}' is open",
            details={"recovery_in_seconds": round(recovery_time, 1)},
        )


# =============================================================================
# STORAGE
# =============================================================================


class StorageError(DriveAuditError):
    """Persistence layer failure."""

    def __init__(
        self,
        message: str,
        collection: str | None = None,
        doc_id: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if collection:
            details["collection"] = collection
        if doc_id:
            details["doc_id"] = doc_id
        super().__init__(message, details=details, **kwargs)
        self.collection = collection
        self.doc_id = doc_id


class UnsupportedQueryError(StorageError):
    """The store cannot combine the requested filters with the requested order."""

    pass


# =============================================================================
# SCANS & JOBS
# =============================================================================


class ScanError(DriveAuditError):
    """Fatal error aborting a single scan run."""

    def __init__(
        self,
        message: str,
        scan_id: str | None = None,
        account_id: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if scan_id:
            details["scan_id"] = scan_id
        if account_id:
            details["account_id"] = account_id
        super().__init__(message, details=details, **kwargs)
        self.scan_id = scan_id
        self.account_id = account_id


class JobError(DriveAuditError):
    """Integrated job execution error."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        job_type: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if job_id:
            details["job_id"] = job_id
        if job_type:
            details["job_type"] = job_type
        super().__init__(message, details=details, **kwargs)
        self.job_id = job_id
        self.job_type = job_type


class CheckpointError(JobError):
    """The orchestrator could not durably record a user's result and checkpoint."""

    pass


# =============================================================================
# REMEDIATION
# =============================================================================


class MutationError(DriveAuditError):
    """A permission mutation could not be applied to one file."""

    def __init__(
        self,
        message: str,
        file_id: str | None = None,
        permission_id: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if file_id:
            details["file_id"] = file_id
        if permission_id:
            details["permission_id"] = permission_id
        super().__init__(message, details=details, **kwargs)
        self.file_id = file_id
        self.permission_id = permission_id


# =============================================================================
# CALLER ERRORS
# =============================================================================


class NotFoundError(DriveAuditError):
    """Requested resource does not exist."""

    def __init__(
        self,
        message: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(message, details=details, **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(DriveAuditError):
    """Operation conflicts with current state (e.g. a scan is already running)."""

    def __init__(
        self,
        message: str,
        resource_type: str | None = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if resource_type:
            details["resource_type"] = resource_type
        super().__init__(message, details=details, **kwargs)
        self.resource_type = resource_type


class ValidationError(DriveAuditError):
    """Caller input failed validation."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = value
        super().__init__(message, details=details, **kwargs)
        self.field = field
        self.value = value
