"""
Integrated (organization-wide) scan orchestrator.

Runs one full scan per target user through a delegated credential and
keeps the job document as the single source of truth:

    integratedScanJobs/{jobId}
        targetUsers[i]  <->  userResults[i]
        lastProcessedUserIndex

Each user's terminal result and the advanced checkpoint are written in one
``store.transaction`` call, so a crash can never leave one without the
other. Aggregates are recomputed from the terminal results on every write.

With concurrency above 1 users can finish out of order; the checkpoint is
then the end of the contiguous run of terminal results, and a resume skips
any later user that is already terminal.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, suppress
from datetime import datetime
from functools import partial
from typing import Any

from driveaudit.adapters.base import FileEnumerator
from driveaudit.core.cancellation import CancellationToken
from driveaudit.core.scoring import RiskPolicy
from driveaudit.core.types import JobStatus, ScanStatus, UserScanStatus
from driveaudit.exceptions import (
    CheckpointError,
    ConflictError,
    DriveAuditError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from driveaudit.jobs.scan_run import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_BATCH_WRITE_RETRIES,
    STALE_SCAN_TIMEOUT_SECONDS,
    AccountGuard,
    ScanRunner,
    cancel_requested,
    open_scan_run,
    terminate_scan,
)
from driveaudit.logging import correlation_scope
from driveaudit.models import (
    INTEGRATED_JOBS,
    IntegratedScanJob,
    IntegratedScanUserResult,
    TargetUser,
    utcnow,
)
from driveaudit.services.usage import increment_scan_stats
from driveaudit.storage.base import DocumentStore, Filter

logger = logging.getLogger(__name__)

JOB_TYPE = "integrated_scan"
DEFAULT_MAX_FILES_PER_USER = 10000
DEFAULT_HEARTBEAT_INTERVAL = 30.0

EnumeratorFactory = Callable[[str], AbstractAsyncContextManager[FileEnumerator]]


def checkpoint_index(results: list[IntegratedScanUserResult]) -> int:
    """Highest index i such that results[0..i] are all terminal, else -1."""
    index = -1
    for result in results:
        if not result.status.is_terminal:
            break
        index += 1
    return index


async def job_cancel_requested(store: DocumentStore, job_id: str) -> bool:
    doc = await store.get(INTEGRATED_JOBS, job_id)
    if doc is None:
        return True
    return bool(doc.get("cancelRequested")) or doc.get("status") == JobStatus.CANCELLED.value


async def create_integrated_job(
    store: DocumentStore,
    organization_id: str,
    organization_domain: str,
    target_users: list[TargetUser],
    max_files_per_user: int | None = DEFAULT_MAX_FILES_PER_USER,
    started_by: str | None = None,
) -> IntegratedScanJob:
    """Snapshot *target_users* into a new pending job.

    Raises ValidationError for an empty target set and ConflictError if the
    organization already has a pending or running job.
    """
    if not target_users:
        raise ValidationError("An integrated scan needs at least one target user", field="target_users")

    active = await store.query(
        INTEGRATED_JOBS,
        [
            Filter("organizationId", "==", organization_id),
            Filter("status", "in", [JobStatus.PENDING.value, JobStatus.RUNNING.value]),
        ],
    )
    if active:
        raise ConflictError(
            "An integrated scan is already active for this organization",
            resource_type="integrated_scan",
            details={"job_id": active[0]["id"]},
        )

    job = IntegratedScanJob.create(
        job_id=uuid.uuid4().hex,
        organization_id=organization_id,
        organization_domain=organization_domain,
        target_users=target_users,
        max_files_per_user=max_files_per_user,
        started_by=started_by,
    )
    await store.create(INTEGRATED_JOBS, job.to_dict(), doc_id=job.id)
    logger.info(f"Created integrated scan {job.id} for {len(target_users)} users")
    return job


class IntegratedScanOrchestrator:
    """
    Drives an IntegratedScanJob to a terminal status.

    ``enumerator_factory(email)`` returns an async context manager yielding
    a FileEnumerator acting as that user (normally a GoogleDriveAdapter on a
    DelegatedCredential). Credential errors raised while entering it fail
    that user only.
    """

    def __init__(
        self,
        store: DocumentStore,
        enumerator_factory: EnumeratorFactory,
        guard: AccountGuard | None = None,
        policy: RiskPolicy | None = None,
        concurrency: int = 1,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_write_retries: int = DEFAULT_BATCH_WRITE_RETRIES,
        stale_timeout_seconds: float = STALE_SCAN_TIMEOUT_SECONDS,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.enumerator_factory = enumerator_factory
        self.guard = guard or AccountGuard()
        self.policy = policy
        self.concurrency = max(1, concurrency)
        self.batch_size = batch_size
        self.batch_write_retries = batch_write_retries
        self.stale_timeout_seconds = stale_timeout_seconds
        self.heartbeat_interval = heartbeat_interval
        self.clock = clock

    async def _load(self, job_id: str) -> IntegratedScanJob:
        doc = await self.store.get(INTEGRATED_JOBS, job_id)
        if doc is None:
            raise NotFoundError("Integrated scan not found", resource_type="integrated_scan", resource_id=job_id)
        return IntegratedScanJob.from_dict(doc)

    async def _update_job(
        self, job_id: str, fn: Callable[[IntegratedScanJob], None]
    ) -> IntegratedScanJob:
        """Atomic read-modify-write of the job document through *fn*."""

        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise NotFoundError(
                    "Integrated scan not found", resource_type="integrated_scan", resource_id=job_id
                )
            job = IntegratedScanJob.from_dict(current)
            fn(job)
            return {**current, **job.to_dict()}

        return IntegratedScanJob.from_dict(
            await self.store.transaction(INTEGRATED_JOBS, job_id, apply)
        )

    # -------------------------------------------------------------------------
    # Driver
    # -------------------------------------------------------------------------

    async def run(self, job_id: str, token: CancellationToken | None = None) -> IntegratedScanJob:
        """Run or resume *job_id* until every user is terminal or it is cancelled."""
        token = token or CancellationToken(probe=partial(job_cancel_requested, self.store, job_id))
        with correlation_scope(job_id):
            job = await self._load(job_id)
            if not job.status.is_active:
                logger.info(f"Integrated scan {job_id} is already {job.status.value}")
                return job

            job = await self._start(job)
            heartbeat = asyncio.create_task(self._heartbeat(job_id))
            try:
                await self._process_users(job, token)
            except CheckpointError as e:
                logger.error(f"Integrated scan {job_id} failed: {e}", exc_info=True)
                return await self._fail(job_id, e.message)
            except Exception as e:
                logger.exception(f"Integrated scan {job_id} failed unexpectedly")
                await self._fail(job_id, str(e) or type(e).__name__)
                raise
            finally:
                heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await heartbeat

            return await self._finalize(job_id, cancelled=token.is_cancelled)

    async def _start(self, job: IntegratedScanJob) -> IntegratedScanJob:
        """Promote to running and recover from a previous worker's crash."""
        orphaned = [
            r.scan_id for r in job.user_results
            if r.status == UserScanStatus.RUNNING and r.scan_id
        ]
        for scan_id in orphaned:
            await self._fail_orphaned_scan(scan_id)

        now = self.clock()

        def start(j: IntegratedScanJob) -> None:
            if j.status == JobStatus.PENDING:
                j.status = JobStatus.RUNNING
                j.started_at = now
            for result in j.user_results:
                if result.status == UserScanStatus.RUNNING:
                    result.status = UserScanStatus.PENDING
                    result.scan_id = None
                    result.started_at = None
            j.last_processed_user_index = checkpoint_index(j.user_results)
            j.recompute_aggregates()
            j.worker_heartbeat_at = now

        job = await self._update_job(job.id, start)
        if job.last_processed_user_index >= 0:
            logger.info(
                f"Resuming integrated scan {job.id} at user {job.last_processed_user_index + 1}"
                f" of {len(job.target_users)}"
            )
        return job

    async def _fail_orphaned_scan(self, scan_id: str) -> None:
        await terminate_scan(
            self.store,
            scan_id,
            ScanStatus.FAILED,
            "worker stopped before the scan finished",
            now=self.clock(),
        )
        logger.warning(f"Marked orphaned scan {scan_id} as failed")

    async def _process_users(self, job: IntegratedScanJob, token: CancellationToken) -> None:
        pending = [
            i for i, result in enumerate(job.user_results)
            if i > job.last_processed_user_index and not result.status.is_terminal
        ]
        # Stops every worker when a checkpoint write fails
        stop = token.child()
        indices = iter(pending)

        async def worker() -> None:
            # The iterator is shared; next() never awaits, so no index is taken twice
            for index in indices:
                if await stop.check():
                    return
                try:
                    await self._process_user(job, index, stop)
                except CheckpointError:
                    stop.cancel("checkpoint write failed")
                    raise

        workers = min(self.concurrency, len(pending))
        outcomes = await asyncio.gather(*(worker() for _ in range(workers)), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def _process_user(
        self, job: IntegratedScanJob, index: int, token: CancellationToken
    ) -> None:
        user = job.target_users[index]
        result = IntegratedScanUserResult(
            user_email=user.email,
            user_name=user.display_name,
            status=UserScanStatus.RUNNING,
            started_at=self.clock(),
        )
        logger.info(f"Scanning user {index + 1}/{len(job.target_users)}: {user.email}")

        try:
            async with self.enumerator_factory(user.email) as enumerator:
                scan = await open_scan_run(
                    self.store,
                    self.guard,
                    organization_id=job.organization_id,
                    account_id=user.email,
                    organization_domain=job.organization_domain,
                    started_by=f"integrated:{job.id}",
                    stale_timeout_seconds=self.stale_timeout_seconds,
                )
                result.scan_id = scan.id
                try:
                    await self._record(job.id, index, result, user.email)
                except CheckpointError:
                    self.guard.release(job.organization_id, user.email, scan.id)
                    raise

                runner = ScanRunner(
                    self.store,
                    enumerator,
                    policy=self.policy,
                    batch_size=self.batch_size,
                    batch_write_retries=self.batch_write_retries,
                    max_files=job.max_files_per_user,
                    guard=self.guard,
                    record_usage=False,
                    clock=self.clock,
                )
                final = await runner.run(
                    scan, token.child(probe=partial(cancel_requested, self.store, scan.id))
                )
        except CheckpointError:
            raise
        except DriveAuditError as e:
            logger.warning(f"User {user.email} could not be scanned: {e}")
            result.status = UserScanStatus.FAILED
            result.error_message = e.message
        except Exception as e:
            logger.exception(f"Unexpected error scanning user {user.email}")
            result.status = UserScanStatus.FAILED
            result.error_message = str(e) or type(e).__name__
        else:
            if final.status == ScanStatus.COMPLETED:
                result.status = UserScanStatus.COMPLETED
                result.files_scanned = final.total_files
                result.risky_summary = dict(final.risky_summary)
            elif final.status == ScanStatus.CANCELLED:
                result.status = UserScanStatus.SKIPPED
                result.error_message = "cancelled"
            else:
                result.status = UserScanStatus.FAILED
                result.error_message = final.error_message

        result.completed_at = self.clock()
        await self._record(job.id, index, result, None)

    async def _record(
        self,
        job_id: str,
        index: int,
        result: IntegratedScanUserResult,
        current_user: str | None,
    ) -> IntegratedScanJob:
        """Write one user's result and the checkpoint in a single transaction."""
        now = self.clock()

        def apply(job: IntegratedScanJob) -> None:
            job.user_results[index] = result
            job.last_processed_user_index = checkpoint_index(job.user_results)
            job.recompute_aggregates()
            job.current_user_email = current_user
            job.worker_heartbeat_at = now

        try:
            return await self._update_job(job_id, apply)
        except StorageError as e:
            raise CheckpointError(
                f"Could not record the result for {result.user_email}",
                job_id=job_id,
                job_type=JOB_TYPE,
                details={"user_index": index, "user_status": result.status.value},
            ) from e

    async def _heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.store.update(
                    INTEGRATED_JOBS, job_id, {"workerHeartbeatAt": self.clock().isoformat()}
                )
            except StorageError as e:
                logger.warning(f"Heartbeat for {job_id} not written: {e}")

    async def _fail(self, job_id: str, message: str) -> IntegratedScanJob:
        """Mark the job failed, leaving results and checkpoint as they are."""
        now = self.clock()

        def apply(job: IntegratedScanJob) -> None:
            if job.status.is_active:
                job.status = JobStatus.FAILED
                job.error_message = message
                job.completed_at = now
                job.current_user_email = None

        return await self._update_job(job_id, apply)

    async def _finalize(self, job_id: str, cancelled: bool) -> IntegratedScanJob:
        now = self.clock()

        def apply(job: IntegratedScanJob) -> None:
            if cancelled or job.status == JobStatus.CANCELLED:
                for result in job.user_results:
                    if not result.status.is_terminal:
                        result.status = UserScanStatus.SKIPPED
                        result.error_message = "cancelled"
                job.status = JobStatus.CANCELLED
            elif all(r.status.is_terminal for r in job.user_results):
                job.status = JobStatus.COMPLETED
            job.last_processed_user_index = checkpoint_index(job.user_results)
            job.recompute_aggregates()
            job.current_user_email = None
            if not job.status.is_active:
                job.completed_at = job.completed_at or now

        job = await self._update_job(job_id, apply)
        if job.status == JobStatus.COMPLETED:
            await increment_scan_stats(self.store, job.organization_id, job.total_files_scanned)
        logger.info(
            f"Integrated scan {job_id} {job.status.value}: "
            f"{job.processed_users}/{len(job.target_users)} users, "
            f"{job.total_files_scanned} files"
        )
        return job
