"""
Persisted record types.

Every record is a dataclass that round-trips through a plain ``dict`` with
camelCase keys, which is the shape written to the document store:

    scans/{scanId}                       ScanRun
    scans/{scanId}/files/{fileId}        ScannedFileRecord
    integratedScanJobs/{jobId}           IntegratedScanJob (userResults embedded)
    actionLogs/{logId}                   ActionLogEntry
    organizations/{orgId}                usage counters (see services.usage)

FolderSummary is derived at query time and never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from driveaudit.adapters.base import (
    FileEntry,
    PermissionEntry,
    format_timestamp,
    parse_timestamp,
)
from driveaudit.core.scoring import RiskAssessment
from driveaudit.core.types import (
    JobStatus,
    RiskLevel,
    ScanPhase,
    ScanStatus,
    ScanType,
    UserScanStatus,
    empty_risky_summary,
)

SCANS = "scans"
INTEGRATED_JOBS = "integratedScanJobs"
ACTION_LOGS = "actionLogs"
ORGANIZATIONS = "organizations"

ROOT_FOLDER_ID = "root"
ROOT_FOLDER_NAME = "My Drive"


def files_collection(scan_id: str) -> str:
    """Sub-collection holding one scan's file records."""
    return f"{SCANS}/{scan_id}/files"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# SCAN RUN
# =============================================================================


@dataclass
class ScanRun:
    """One enumeration pass for one account."""

    id: str
    organization_id: str
    account_id: str
    organization_domain: str
    scan_type: ScanType = ScanType.FULL
    base_scan_id: str | None = None
    change_cursor: str | None = None
    status: ScanStatus = ScanStatus.RUNNING
    phase: ScanPhase = ScanPhase.COUNTING
    total_files: int = 0
    processed_files: int = 0
    scanned_new_files: int = 0
    copied_files: int = 0
    failed_files: int = 0
    risky_summary: dict[str, int] = field(default_factory=empty_risky_summary)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    error_message: str | None = None
    truncated: bool = False
    fallback_reason: str | None = None
    started_by: str | None = None

    def is_stale(self, timeout_seconds: float, now: datetime | None = None) -> bool:
        """A running scan older than *timeout_seconds* is considered abandoned."""
        if self.status != ScanStatus.RUNNING:
            return False
        now = now or utcnow()
        return (now - self.started_at).total_seconds() > timeout_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "accountId": self.account_id,
            "organizationDomain": self.organization_domain,
            "scanType": self.scan_type.value,
            "baseScanId": self.base_scan_id,
            "changeCursor": self.change_cursor,
            "status": self.status.value,
            "phase": self.phase.value,
            "totalFiles": self.total_files,
            "processedFiles": self.processed_files,
            "scannedNewFiles": self.scanned_new_files,
            "copiedFiles": self.copied_files,
            "failedFiles": self.failed_files,
            "riskySummary": dict(self.risky_summary),
            "startedAt": format_timestamp(self.started_at),
            "completedAt": format_timestamp(self.completed_at),
            "errorMessage": self.error_message,
            "truncated": self.truncated,
            "fallbackReason": self.fallback_reason,
            "startedBy": self.started_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScanRun:
        return cls(
            id=data["id"],
            organization_id=data["organizationId"],
            account_id=data["accountId"],
            organization_domain=data.get("organizationDomain", ""),
            scan_type=ScanType(data.get("scanType", ScanType.FULL.value)),
            base_scan_id=data.get("baseScanId"),
            change_cursor=data.get("changeCursor"),
            status=ScanStatus(data["status"]),
            phase=ScanPhase(data["phase"]),
            total_files=data.get("totalFiles", 0),
            processed_files=data.get("processedFiles", 0),
            scanned_new_files=data.get("scannedNewFiles", 0),
            copied_files=data.get("copiedFiles", 0),
            failed_files=data.get("failedFiles", 0),
            risky_summary={**empty_risky_summary(), **(data.get("riskySummary") or {})},
            started_at=parse_timestamp(data.get("startedAt")) or utcnow(),
            completed_at=parse_timestamp(data.get("completedAt")),
            error_message=data.get("errorMessage"),
            truncated=data.get("truncated", False),
            fallback_reason=data.get("fallbackReason"),
            started_by=data.get("startedBy"),
        )


# =============================================================================
# SCANNED FILE
# =============================================================================


@dataclass
class ScannedFileRecord:
    """One file's risk snapshot, owned by exactly one scan."""

    id: str
    name: str
    mime_type: str
    risk_score: int
    risk_level: RiskLevel
    risk_factors: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    web_view_link: str | None = None
    icon_link: str | None = None
    created_time: datetime | None = None
    modified_time: datetime | None = None
    size: int | None = None
    owner_email: str | None = None
    owner_name: str | None = None
    is_internal_owner: bool = False
    parent_folder_id: str | None = None
    parent_folder_name: str | None = None
    shared: bool = False
    permissions: list[PermissionEntry] = field(default_factory=list)

    @classmethod
    def from_entry(
        cls,
        entry: FileEntry,
        assessment: RiskAssessment,
        organization_domain: str,
        parent_folder_name: str | None = None,
    ) -> ScannedFileRecord:
        """Build a record; the risk level always comes from the assessment."""
        return cls(
            id=entry.id,
            name=entry.name,
            mime_type=entry.mime_type,
            risk_score=assessment.score,
            risk_level=assessment.level,
            risk_factors=list(assessment.factors),
            recommendations=list(assessment.recommendations),
            web_view_link=entry.web_view_link,
            icon_link=entry.icon_link,
            created_time=entry.created_time,
            modified_time=entry.modified_time,
            size=entry.size,
            owner_email=entry.owner_email,
            owner_name=entry.owner_name,
            is_internal_owner=entry.owner_is_internal(organization_domain),
            parent_folder_id=entry.parent_folder_id,
            parent_folder_name=parent_folder_name,
            shared=entry.shared,
            permissions=list(entry.permissions),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mimeType": self.mime_type,
            "webViewLink": self.web_view_link,
            "iconLink": self.icon_link,
            "createdTime": format_timestamp(self.created_time),
            "modifiedTime": format_timestamp(self.modified_time),
            "size": self.size,
            "ownerEmail": self.owner_email,
            "ownerName": self.owner_name,
            "isInternalOwner": self.is_internal_owner,
            "parentFolderId": self.parent_folder_id,
            "parentFolderName": self.parent_folder_name,
            "shared": self.shared,
            "permissions": [p.to_dict() for p in self.permissions],
            "riskScore": self.risk_score,
            "riskLevel": self.risk_level.value,
            "riskFactors": list(self.risk_factors),
            "recommendations": list(self.recommendations),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScannedFileRecord:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            risk_score=data.get("riskScore", 0),
            risk_level=RiskLevel(data.get("riskLevel", RiskLevel.LOW.value)),
            risk_factors=list(data.get("riskFactors") or []),
            recommendations=list(data.get("recommendations") or []),
            web_view_link=data.get("webViewLink"),
            icon_link=data.get("iconLink"),
            created_time=parse_timestamp(data.get("createdTime")),
            modified_time=parse_timestamp(data.get("modifiedTime")),
            size=data.get("size"),
            owner_email=data.get("ownerEmail"),
            owner_name=data.get("ownerName"),
            is_internal_owner=data.get("isInternalOwner", False),
            parent_folder_id=data.get("parentFolderId"),
            parent_folder_name=data.get("parentFolderName"),
            shared=data.get("shared", False),
            permissions=[PermissionEntry.from_dict(p) for p in data.get("permissions") or []],
        )


# =============================================================================
# INTEGRATED SCAN
# =============================================================================


@dataclass
class TargetUser:
    email: str
    display_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"email": self.email, "displayName": self.display_name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TargetUser:
        return cls(email=data["email"], display_name=data.get("displayName") or data["email"])


@dataclass
class IntegratedScanUserResult:
    """Outcome for one target user within an integrated job."""

    user_email: str
    user_name: str = ""
    status: UserScanStatus = UserScanStatus.PENDING
    scan_id: str | None = None
    files_scanned: int = 0
    risky_summary: dict[str, int] = field(default_factory=empty_risky_summary)
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "userEmail": self.user_email,
            "userName": self.user_name,
            "status": self.status.value,
            "scanId": self.scan_id,
            "filesScanned": self.files_scanned,
            "riskySummary": dict(self.risky_summary),
            "errorMessage": self.error_message,
            "startedAt": format_timestamp(self.started_at),
            "completedAt": format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IntegratedScanUserResult:
        return cls(
            user_email=data["userEmail"],
            user_name=data.get("userName", ""),
            status=UserScanStatus(data.get("status", UserScanStatus.PENDING.value)),
            scan_id=data.get("scanId"),
            files_scanned=data.get("filesScanned", 0),
            risky_summary={**empty_risky_summary(), **(data.get("riskySummary") or {})},
            error_message=data.get("errorMessage"),
            started_at=parse_timestamp(data.get("startedAt")),
            completed_at=parse_timestamp(data.get("completedAt")),
        )


@dataclass
class IntegratedScanJob:
    """One organization-wide orchestration run."""

    id: str
    organization_id: str
    organization_domain: str
    target_users: list[TargetUser]
    user_results: list[IntegratedScanUserResult]
    status: JobStatus = JobStatus.PENDING
    last_processed_user_index: int = -1
    current_user_email: str | None = None
    processed_users: int = 0
    total_files_scanned: int = 0
    total_risky_summary: dict[str, int] = field(default_factory=empty_risky_summary)
    max_files_per_user: int | None = None
    started_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    worker_heartbeat_at: datetime | None = None

    @classmethod
    def create(
        cls,
        job_id: str,
        organization_id: str,
        organization_domain: str,
        target_users: list[TargetUser],
        max_files_per_user: int | None = None,
        started_by: str | None = None,
    ) -> IntegratedScanJob:
        return cls(
            id=job_id,
            organization_id=organization_id,
            organization_domain=organization_domain,
            target_users=list(target_users),
            user_results=[
                IntegratedScanUserResult(user_email=u.email, user_name=u.display_name)
                for u in target_users
            ],
            max_files_per_user=max_files_per_user,
            started_by=started_by,
        )

    def recompute_aggregates(self) -> None:
        """Rebuild totals from terminal user results; never accumulate."""
        summary = empty_risky_summary()
        files = 0
        processed = 0
        for result in self.user_results:
            if result.status.is_terminal:
                processed += 1
            if result.status == UserScanStatus.COMPLETED:
                files += result.files_scanned
                for level, count in result.risky_summary.items():
                    summary[level] = summary.get(level, 0) + count
        self.total_risky_summary = summary
        self.total_files_scanned = files
        self.processed_users = processed

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "organizationDomain": self.organization_domain,
            "status": self.status.value,
            "targetUsers": [u.to_dict() for u in self.target_users],
            "userResults": [r.to_dict() for r in self.user_results],
            "lastProcessedUserIndex": self.last_processed_user_index,
            "currentUserEmail": self.current_user_email,
            "processedUsers": self.processed_users,
            "totalFilesScanned": self.total_files_scanned,
            "totalRiskySummary": dict(self.total_risky_summary),
            "maxFilesPerUser": self.max_files_per_user,
            "startedBy": self.started_by,
            "createdAt": format_timestamp(self.created_at),
            "startedAt": format_timestamp(self.started_at),
            "completedAt": format_timestamp(self.completed_at),
            "errorMessage": self.error_message,
            "workerHeartbeatAt": format_timestamp(self.worker_heartbeat_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IntegratedScanJob:
        return cls(
            id=data["id"],
            organization_id=data["organizationId"],
            organization_domain=data.get("organizationDomain", ""),
            target_users=[TargetUser.from_dict(u) for u in data.get("targetUsers") or []],
            user_results=[
                IntegratedScanUserResult.from_dict(r) for r in data.get("userResults") or []
            ],
            status=JobStatus(data["status"]),
            last_processed_user_index=data.get("lastProcessedUserIndex", -1),
            current_user_email=data.get("currentUserEmail"),
            processed_users=data.get("processedUsers", 0),
            total_files_scanned=data.get("totalFilesScanned", 0),
            total_risky_summary={
                **empty_risky_summary(), **(data.get("totalRiskySummary") or {})
            },
            max_files_per_user=data.get("maxFilesPerUser"),
            started_by=data.get("startedBy"),
            created_at=parse_timestamp(data.get("createdAt")) or utcnow(),
            started_at=parse_timestamp(data.get("startedAt")),
            completed_at=parse_timestamp(data.get("completedAt")),
            error_message=data.get("errorMessage"),
            worker_heartbeat_at=parse_timestamp(data.get("workerHeartbeatAt")),
        )


# =============================================================================
# DERIVED / AUDIT
# =============================================================================


@dataclass
class FolderSummary:
    """Aggregate of one scan's file records sharing a parent folder."""

    folder_id: str
    folder_name: str
    file_count: int = 0
    risky_summary: dict[str, int] = field(default_factory=empty_risky_summary)
    highest_risk_level: RiskLevel = RiskLevel.LOW
    total_risk_score: int = 0
    internal_count: int = 0
    external_count: int = 0

    def add(self, record: ScannedFileRecord) -> None:
        self.file_count += 1
        level = record.risk_level.value
        self.risky_summary[level] = self.risky_summary.get(level, 0) + 1
        if record.risk_level.rank > self.highest_risk_level.rank:
            self.highest_risk_level = record.risk_level
        self.total_risk_score += record.risk_score
        if record.is_internal_owner:
            self.internal_count += 1
        else:
            self.external_count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "folderId": self.folder_id,
            "folderName": self.folder_name,
            "fileCount": self.file_count,
            "riskySummary": dict(self.risky_summary),
            "highestRiskLevel": self.highest_risk_level.value,
            "totalRiskScore": self.total_risk_score,
            "internalCount": self.internal_count,
            "externalCount": self.external_count,
        }


@dataclass
class ActionLogEntry:
    """Audit entry written for every permission mutation request."""

    id: str
    organization_id: str
    actor: str | None
    action_type: str
    target_type: str
    target_id: str
    details: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "actor": self.actor,
            "actionType": self.action_type,
            "targetType": self.target_type,
            "targetId": self.target_id,
            "details": self.details,
            "success": self.success,
            "errorMessage": self.error_message,
            "createdAt": format_timestamp(self.created_at),
        }
