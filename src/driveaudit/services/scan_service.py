"""
Scan, listing, remediation and integrated-scan operations for one organization.

ScanService is the surface an HTTP layer or the CLI calls. Every method is
scoped to the organization in its OrganizationContext: a scan or job that
belongs to another organization is reported as not found.

Runs are started as background tasks in a RunRegistry and report progress
through the store, so status and listing calls are safe to poll while a
run is active.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from functools import partial
from typing import Any

from pydantic import BaseModel, ConfigDict

from driveaudit.adapters.base import supports_mutation
from driveaudit.adapters.credentials import CredentialProvider, DelegationConfig
from driveaudit.adapters.directory import DomainUser, list_domain_users
from driveaudit.adapters.google_drive import GoogleDriveAdapter
from driveaudit.config import Settings, get_settings
from driveaudit.core.cancellation import CancellationToken
from driveaudit.core.types import (
    JobStatus,
    MutationOperation,
    OwnerType,
    PermissionRole,
    PrincipalType,
    RiskLevel,
    ScanStatus,
    ScanType,
    UserScanStatus,
)
from driveaudit.exceptions import (
    ConflictError,
    CredentialError,
    DriveAuditError,
    NotFoundError,
    ValidationError,
)
from driveaudit.jobs import (
    AccountGuard,
    IntegratedScanOrchestrator,
    create_integrated_job,
    open_scan_run,
    runner_class,
)
from driveaudit.jobs.integrated import job_cancel_requested
from driveaudit.jobs.scan_run import cancel_requested, terminate_scan
from driveaudit.models import (
    INTEGRATED_JOBS,
    ROOT_FOLDER_ID,
    SCANS,
    IntegratedScanJob,
    ScanRun,
    TargetUser,
    utcnow,
)
from driveaudit.remediation import BulkMutator, BulkResult, PermissionFilter, list_actions
from driveaudit.reporting import FilePage, FileQuery, list_files, summarize_folders
from driveaudit.reporting.listing import query_sorted
from driveaudit.services.tasks import RunRegistry
from driveaudit.storage.base import DocumentStore, Filter, OrderBy

# Yields an adapter acting as the given account; it must implement
# FileEnumerator, and PermissionMutator for remediation calls.
AdapterFactory = Callable[[str], AbstractAsyncContextManager[Any]]


class OrganizationContext(BaseModel):
    """
    Organization and caller for service operations.

    Attributes:
        organization_id: Organization every read and write is scoped to
        domain: Primary domain; owners and grantees outside it are external
        actor: Email of the caller, recorded on scans and action logs
    """

    model_config = ConfigDict(frozen=True)

    organization_id: str
    domain: str
    actor: str | None = None


def delegated_adapter_factory(settings: Settings) -> AdapterFactory:
    """Adapter factory impersonating each account through Domain-Wide Delegation."""
    if not settings.delegation.key_file:
        raise CredentialError("No service account key file configured (delegation.key_file)")
    config = DelegationConfig.from_file(settings.delegation.key_file, scopes=settings.delegation.scopes)

    def factory(account: str) -> GoogleDriveAdapter:
        return GoogleDriveAdapter(
            config.for_user(account),
            page_size=settings.drive.page_size,
            rate_config=settings.drive.rate_limiter_config(),
            breaker_config=settings.circuit_breaker.breaker_config(),
            timeout=settings.drive.timeout,
            connect_timeout=settings.drive.connect_timeout,
        )

    return factory


def delegated_directory_credential(settings: Settings) -> CredentialProvider | None:
    """Credential for directory listing, acting as the configured admin."""
    if not settings.delegation.key_file or not settings.delegation.admin_email:
        return None
    config = DelegationConfig.from_file(settings.delegation.key_file, scopes=settings.delegation.scopes)
    return config.for_user(settings.delegation.admin_email)


class ScanService:
    """Scan lifecycle, reporting, remediation and integrated jobs. Organization-isolated."""

    def __init__(
        self,
        store: DocumentStore,
        organization: OrganizationContext,
        adapter_factory: AdapterFactory,
        settings: Settings | None = None,
        registry: RunRegistry | None = None,
        guard: AccountGuard | None = None,
        directory_credential: CredentialProvider | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._organization = organization
        self._adapter_factory = adapter_factory
        self._settings = settings or get_settings()
        self._registry = registry or RunRegistry()
        self._guard = guard or AccountGuard()
        self._directory_credential = directory_credential
        self._clock = clock
        self._logger = logging.getLogger(self.__class__.__module__)

    @property
    def organization_id(self) -> str:
        return self._organization.organization_id

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    def _log_info(self, message: str, **extra: Any) -> None:
        self._logger.info(message, extra={"organization_id": self.organization_id, **extra})

    def _log_warning(self, message: str, **extra: Any) -> None:
        self._logger.warning(message, extra={"organization_id": self.organization_id, **extra})

    async def shutdown(self) -> None:
        """Ask every run started by this service to stop and wait for it."""
        await self._registry.stop_all()

    # =========================================================================
    # Scans
    # =========================================================================

    async def get_scan(self, scan_id: str) -> ScanRun:
        doc = await self._store.get(SCANS, scan_id)
        if doc is None or doc.get("organizationId") != self.organization_id:
            raise NotFoundError("Scan not found", resource_type="scan", resource_id=scan_id)
        return ScanRun.from_dict(doc)

    async def _latest_completed_scan(self, account_id: str) -> ScanRun | None:
        filters = [
            Filter("organizationId", "==", self.organization_id),
            Filter("accountId", "==", account_id),
            Filter("status", "==", ScanStatus.COMPLETED.value),
        ]
        total = await self._store.count(SCANS, filters)
        docs = await query_sorted(
            self._store,
            SCANS,
            filters,
            OrderBy("completedAt", descending=True),
            1,
            0,
            total,
            self._settings.scan.max_in_memory_records,
        )
        return ScanRun.from_dict(docs[0]) if docs else None

    async def start_scan(
        self,
        account_id: str,
        scan_type: ScanType = ScanType.FULL,
        base_scan_id: str | None = None,
        wait: bool = False,
    ) -> ScanRun:
        """Create a scan for *account_id* and start driving it in the background.

        An incremental scan without *base_scan_id* builds on the account's
        latest completed scan. With *wait* the call returns the terminal
        scan instead of the freshly created one.
        """
        if scan_type == ScanType.INCREMENTAL:
            if base_scan_id is None:
                base = await self._latest_completed_scan(account_id)
                if base is None:
                    raise ValidationError(
                        f"No completed scan of {account_id} to build an incremental scan on",
                        field="base_scan_id",
                    )
                base_scan_id = base.id
            else:
                await self.get_scan(base_scan_id)

        scan = await open_scan_run(
            self._store,
            self._guard,
            organization_id=self.organization_id,
            account_id=account_id,
            organization_domain=self._organization.domain,
            scan_type=scan_type,
            base_scan_id=base_scan_id,
            started_by=self._organization.actor,
            stale_timeout_seconds=self._settings.scan.stale_timeout_seconds,
        )
        token = CancellationToken(
            probe=partial(cancel_requested, self._store, scan.id),
            probe_interval=self._settings.scan.cancel_probe_interval,
        )
        task = self._registry.start(scan.id, self._drive_scan(scan, token), token)
        self._log_info(f"Started {scan_type.value} scan {scan.id} for {account_id}", scan_id=scan.id)
        if wait:
            return await task
        return scan

    async def _drive_scan(self, scan: ScanRun, token: CancellationToken) -> ScanRun:
        runner_cls = runner_class(scan.scan_type)
        try:
            async with self._adapter_factory(scan.account_id) as adapter:
                runner = runner_cls(
                    self._store,
                    adapter,
                    policy=self._settings.risk.policy(),
                    batch_size=self._settings.scan.batch_size,
                    batch_write_retries=self._settings.scan.batch_write_retries,
                    guard=self._guard,
                    clock=self._clock,
                )
                return await runner.run(scan, token)
        except DriveAuditError as e:
            # Adapter setup failed, so the runner never took over the scan
            self._guard.release(scan.organization_id, scan.account_id, scan.id)
            self._log_warning(f"Scan {scan.id} could not start: {e}", scan_id=scan.id)
            final = await terminate_scan(self._store, scan.id, ScanStatus.FAILED, e.message, self._clock())
            return final or scan
        except Exception as e:
            self._guard.release(scan.organization_id, scan.account_id, scan.id)
            self._logger.exception(
                f"Scan {scan.id} could not start",
                extra={"organization_id": self.organization_id, "scan_id": scan.id},
            )
            message = str(e) or type(e).__name__
            final = await terminate_scan(self._store, scan.id, ScanStatus.FAILED, message, self._clock())
            return final or scan

    def _scan_view(self, scan: ScanRun, doc: dict[str, Any] | None = None) -> dict[str, Any]:
        view = {**(doc or {}), **scan.to_dict()}
        view["isStale"] = scan.is_stale(self._settings.scan.stale_timeout_seconds, self._clock())
        view["workerAttached"] = self._registry.is_attached(scan.id)
        return view

    async def get_scan_status(self, scan_id: str) -> dict[str, Any]:
        """Scan document plus ``isStale`` and ``workerAttached``; cheap enough to poll."""
        doc = await self._store.get(SCANS, scan_id)
        if doc is None or doc.get("organizationId") != self.organization_id:
            raise NotFoundError("Scan not found", resource_type="scan", resource_id=scan_id)
        return self._scan_view(ScanRun.from_dict(doc), doc)

    async def cancel_scan(self, scan_id: str) -> ScanRun:
        """Request cancellation of a running scan.

        A live driver stops at its next checkpoint and records
        ``cancelled``. A scan with no driver in this process that is
        already stale is cancelled directly.
        """
        scan = await self.get_scan(scan_id)
        if scan.status != ScanStatus.RUNNING:
            self._log_warning(
                f"Cannot cancel scan {scan_id}: status is {scan.status.value}", scan_id=scan_id
            )
            raise ConflictError(
                "Scan cannot be cancelled",
                resource_type="scan",
                details={"current_status": scan.status.value, "allowed_statuses": ["running"]},
            )

        await self._store.update(SCANS, scan_id, {"cancelRequested": True})
        if self._registry.cancel(scan_id, "cancel requested"):
            self._log_info(f"Cancellation requested for scan {scan_id}", scan_id=scan_id)
            return await self.get_scan(scan_id)

        if scan.is_stale(self._settings.scan.stale_timeout_seconds, self._clock()):
            final = await terminate_scan(
                self._store,
                scan_id,
                ScanStatus.CANCELLED,
                now=self._clock(),
            )
            self._guard.release(scan.organization_id, scan.account_id, scan.id)
            self._log_info(f"Cancelled abandoned scan {scan_id}", scan_id=scan_id)
            return final or scan

        self._log_info(f"Cancellation flagged for scan {scan_id}", scan_id=scan_id)
        return await self.get_scan(scan_id)

    async def list_scans(
        self,
        account_id: str | None = None,
        status: ScanStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> FilePage:
        """Scans of this organization, most recent first; items carry ``isStale``."""
        filters = [Filter("organizationId", "==", self.organization_id)]
        if account_id:
            filters.append(Filter("accountId", "==", account_id))
        if status is not None:
            filters.append(Filter("status", "==", status.value))

        total = await self._store.count(SCANS, filters)
        docs = await query_sorted(
            self._store,
            SCANS,
            filters,
            OrderBy("startedAt", descending=True),
            limit,
            offset,
            total,
            self._settings.scan.max_in_memory_records,
        )
        items = [self._scan_view(ScanRun.from_dict(doc), doc) for doc in docs]
        return FilePage(items=items, total=total, limit=limit, offset=offset)

    # =========================================================================
    # Reporting
    # =========================================================================

    async def list_files(
        self,
        scan_id: str,
        risk_level: RiskLevel | str | None = None,
        owner_type: OwnerType | str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
        folder_id: str | None = None,
    ) -> FilePage:
        await self.get_scan(scan_id)
        query = FileQuery.parse(
            risk_level=risk_level,
            owner_type=owner_type,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )
        return await list_files(
            self._store,
            scan_id,
            query,
            folder_id=folder_id,
            max_in_memory_records=self._settings.scan.max_in_memory_records,
        )

    async def list_folder_files(self, scan_id: str, folder_id: str, **params: Any) -> FilePage:
        """Files directly inside *folder_id*; ``root`` selects files with no parent."""
        return await self.list_files(scan_id, folder_id=folder_id, **params)

    async def list_folders(
        self,
        scan_id: str,
        min_risk_level: RiskLevel | None = None,
        owner_type: OwnerType = OwnerType.ALL,
        limit: int = 20,
        offset: int = 0,
    ) -> FilePage:
        await self.get_scan(scan_id)
        return await summarize_folders(
            self._store,
            scan_id,
            min_risk_level=min_risk_level,
            owner_type=owner_type,
            limit=limit,
            offset=offset,
            max_in_memory_records=self._settings.scan.max_in_memory_records,
        )

    async def get_folder_path(self, scan_id: str, folder_id: str) -> list[dict[str, Any]]:
        """Ancestors of *folder_id* from the drive root down to the folder itself."""
        scan = await self.get_scan(scan_id)
        if folder_id == ROOT_FOLDER_ID:
            return []
        async with self._adapter_factory(scan.account_id) as adapter:
            path = await adapter.get_folder_path(folder_id)
        return [folder.to_dict() for folder in path]

    # =========================================================================
    # Remediation
    # =========================================================================

    async def _with_mutator(self, scan: ScanRun, fn: Callable[[BulkMutator], Any]) -> BulkResult:
        async with self._adapter_factory(scan.account_id) as adapter:
            if not supports_mutation(adapter):
                raise ValidationError(
                    f"{type(adapter).__name__} cannot change permissions", field="adapter"
                )
            mutator = BulkMutator(
                self._store,
                adapter,
                max_files=self._settings.bulk.max_files_per_request,
                max_folder_files=self._settings.scan.max_in_memory_records,
                clock=self._clock,
            )
            return await fn(mutator)

    async def bulk_mutate(
        self,
        scan_id: str,
        file_ids: list[str],
        operation: MutationOperation,
        permission_filter: PermissionFilter | None = None,
        role: PermissionRole | None = None,
    ) -> BulkResult:
        """Apply *operation* to up to ``bulk.max_files_per_request`` files of a scan."""
        scan = await self.get_scan(scan_id)
        result = await self._with_mutator(
            scan,
            lambda mutator: mutator.apply(
                scan.id,
                file_ids,
                operation,
                permission_filter=permission_filter,
                role=role,
                actor=self._organization.actor,
            ),
        )
        self._log_info(
            f"{operation.value} on scan {scan_id}: {result.success}/{result.total} files",
            scan_id=scan_id,
        )
        return result

    async def mutate_permission(
        self,
        scan_id: str,
        file_id: str,
        operation: MutationOperation,
        permission_id: str | None = None,
        role: PermissionRole | None = None,
    ) -> BulkResult:
        """Single-file mutation; a one-element bulk call."""
        if operation in (MutationOperation.DELETE_PERMISSION, MutationOperation.UPDATE_ROLE):
            if not permission_id:
                raise ValidationError(
                    f"{operation.value} on a single file needs a permission id",
                    field="permission_id",
                )
        permission_filter = PermissionFilter(permission_id=permission_id) if permission_id else None
        return await self.bulk_mutate(scan_id, [file_id], operation, permission_filter, role)

    async def delete_folder_permissions(
        self,
        scan_id: str,
        folder_id: str,
        principal_type: PrincipalType,
        email: str | None = None,
    ) -> BulkResult:
        """Remove one principal's grants from every scanned file in a folder."""
        scan = await self.get_scan(scan_id)
        return await self._with_mutator(
            scan,
            lambda mutator: mutator.apply_to_folder(
                scan.id,
                folder_id,
                principal_type,
                email=email,
                actor=self._organization.actor,
            ),
        )

    async def list_actions(self, limit: int = 50) -> list[dict[str, Any]]:
        return await list_actions(self._store, self.organization_id, limit)

    # =========================================================================
    # Integrated scans
    # =========================================================================

    async def list_domain_users(self) -> list[DomainUser]:
        """Active members of the organization's domain."""
        if self._directory_credential is None:
            raise CredentialError(
                "No directory credential configured (delegation.key_file and delegation.admin_email)"
            )
        return [
            user
            async for user in list_domain_users(
                self._directory_credential,
                self._organization.domain,
                rate_config=self._settings.drive.rate_limiter_config(),
            )
        ]

    async def get_job(self, job_id: str) -> IntegratedScanJob:
        doc = await self._store.get(INTEGRATED_JOBS, job_id)
        if doc is None or doc.get("organizationId") != self.organization_id:
            raise NotFoundError("Integrated scan not found", resource_type="integrated_scan", resource_id=job_id)
        return IntegratedScanJob.from_dict(doc)

    def _orchestrator(self) -> IntegratedScanOrchestrator:
        return IntegratedScanOrchestrator(
            self._store,
            self._adapter_factory,
            guard=self._guard,
            policy=self._settings.risk.policy(),
            concurrency=self._settings.integrated.concurrency,
            batch_size=self._settings.scan.batch_size,
            batch_write_retries=self._settings.scan.batch_write_retries,
            stale_timeout_seconds=self._settings.scan.stale_timeout_seconds,
            clock=self._clock,
        )

    def _launch_job(self, job_id: str) -> asyncio.Task:
        token = CancellationToken(
            probe=partial(job_cancel_requested, self._store, job_id),
            probe_interval=self._settings.scan.cancel_probe_interval,
        )
        return self._registry.start(job_id, self._orchestrator().run(job_id, token), token)

    async def start_integrated_scan(
        self,
        user_emails: list[str] | None = None,
        max_files_per_user: int | None = None,
        wait: bool = False,
    ) -> IntegratedScanJob:
        """Snapshot the domain's members (optionally a subset) into a job and start it."""
        users = await self.list_domain_users()
        if user_emails:
            wanted = {email.lower() for email in user_emails}
            users = [u for u in users if u.email.lower() in wanted]
        targets = [TargetUser(email=u.email, display_name=u.display_name) for u in users]

        job = await create_integrated_job(
            self._store,
            self.organization_id,
            self._organization.domain,
            targets,
            max_files_per_user=max_files_per_user or self._settings.scan.max_files_per_user,
            started_by=self._organization.actor,
        )
        task = self._launch_job(job.id)
        self._log_info(f"Started integrated scan {job.id} for {len(targets)} users", job_id=job.id)
        if wait:
            return await task
        return job

    def _worker_attached(self, job: IntegratedScanJob) -> bool:
        if self._registry.is_attached(job.id):
            return True
        if job.status != JobStatus.RUNNING or job.worker_heartbeat_at is None:
            return False
        age = (self._clock() - job.worker_heartbeat_at).total_seconds()
        return age <= self._settings.integrated.heartbeat_timeout_seconds

    async def _latest_job(self) -> IntegratedScanJob | None:
        filters = [Filter("organizationId", "==", self.organization_id)]
        total = await self._store.count(INTEGRATED_JOBS, filters)
        docs = await query_sorted(
            self._store,
            INTEGRATED_JOBS,
            filters,
            OrderBy("createdAt", descending=True),
            1,
            0,
            total,
            self._settings.scan.max_in_memory_records,
        )
        return IntegratedScanJob.from_dict(docs[0]) if docs else None

    async def get_integrated_scan_status(self, job_id: str | None = None) -> dict[str, Any] | None:
        """Job document plus progress and worker attachment; the latest job if no id."""
        job = await self.get_job(job_id) if job_id else await self._latest_job()
        if job is None:
            return None
        total = len(job.target_users)
        view = job.to_dict()
        view["progress"] = {
            "processed": job.processed_users,
            "total": total,
            "percent": round(100 * job.processed_users / total, 1) if total else 100.0,
        }
        view["workerAttached"] = self._worker_attached(job)
        return view

    async def cancel_integrated_scan(self, job_id: str) -> IntegratedScanJob:
        """Cancel a pending or running job.

        A live worker finalizes the job at its next checkpoint. A job with
        no worker attached is finalized here.
        """
        job = await self.get_job(job_id)
        if not job.status.is_active:
            raise ConflictError(
                "Integrated scan cannot be cancelled",
                resource_type="integrated_scan",
                details={
                    "current_status": job.status.value,
                    "allowed_statuses": [JobStatus.PENDING.value, JobStatus.RUNNING.value],
                },
            )

        await self._store.update(INTEGRATED_JOBS, job_id, {"cancelRequested": True})
        if self._registry.cancel(job_id, "cancel requested") or self._worker_attached(job):
            self._log_info(f"Cancellation requested for integrated scan {job_id}", job_id=job_id)
            return await self.get_job(job_id)

        return await self._cancel_detached_job(job)

    async def _cancel_detached_job(self, job: IntegratedScanJob) -> IntegratedScanJob:
        now = self._clock()
        for result in job.user_results:
            if result.status == UserScanStatus.RUNNING and result.scan_id:
                await terminate_scan(self._store, result.scan_id, ScanStatus.CANCELLED, now=now)

        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise NotFoundError("Integrated scan not found", resource_type="integrated_scan", resource_id=job.id)
            stored = IntegratedScanJob.from_dict(current)
            if not stored.status.is_active:
                return current
            for result in stored.user_results:
                if not result.status.is_terminal:
                    result.status = UserScanStatus.SKIPPED
                    result.error_message = "cancelled"
            stored.status = JobStatus.CANCELLED
            stored.completed_at = now
            stored.current_user_email = None
            stored.recompute_aggregates()
            return {**current, **stored.to_dict()}

        final = IntegratedScanJob.from_dict(await self._store.transaction(INTEGRATED_JOBS, job.id, apply))
        self._log_info(f"Cancelled detached integrated scan {job.id}", job_id=job.id)
        return final

    async def resume_integrated_scan(self, job_id: str, wait: bool = False) -> IntegratedScanJob:
        """Restart the driver for an active job whose worker is gone."""
        job = await self.get_job(job_id)
        if not job.status.is_active:
            raise ConflictError(
                f"Integrated scan is {job.status.value} and cannot be resumed",
                resource_type="integrated_scan",
            )
        if self._worker_attached(job):
            raise ConflictError(
                "Integrated scan still has a worker attached",
                resource_type="integrated_scan",
                details={"worker_heartbeat_at": job.to_dict()["workerHeartbeatAt"]},
            )
        task = self._launch_job(job_id)
        self._log_info(f"Resumed integrated scan {job_id}", job_id=job_id)
        if wait:
            return await task
        return job
