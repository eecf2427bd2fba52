"""
Scan run driver.

Drives one enumeration and scoring pass for one account through its phases:

    counting -> scanning -> resolving -> saving -> done

and then exactly one terminal status (completed, failed or cancelled).

- counting: best-effort file count for progress display, plus the change
  cursor the next incremental scan will start from.
- scanning: enumerate pages, score every entry, flush records in bounded
  batches. Per-file failures are counted and skipped.
- resolving: fill in parent folder names that were not known when the
  records were written.
- saving: recompute riskySummary and totalFiles from the stored records,
  so a re-run after a crash never double counts.

Cancellation is cooperative: the CancellationToken is checked between
pages and between batches. Nothing is interrupted mid-write.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from contextlib import aclosing
from datetime import datetime
from functools import partial
from typing import Any

from driveaudit.adapters.base import FileEntry, FileEnumerator, FileFailure
from driveaudit.adapters.google_drive import is_fatal_error
from driveaudit.core.cancellation import CancellationToken
from driveaudit.core.scoring import RiskPolicy, score
from driveaudit.core.types import RiskLevel, ScanPhase, ScanStatus, ScanType, empty_risky_summary
from driveaudit.exceptions import (
    ConflictError,
    DriveAPIError,
    DriveAuditError,
    NotFoundError,
    ScanError,
    StorageError,
    ValidationError,
)
from driveaudit.logging import correlation_scope
from driveaudit.models import SCANS, ScannedFileRecord, ScanRun, files_collection, utcnow
from driveaudit.services.usage import increment_scan_stats
from driveaudit.storage.base import DocumentStore, Filter

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
DEFAULT_BATCH_WRITE_RETRIES = 3
BATCH_RETRY_BASE_DELAY = 0.5
STALE_SCAN_TIMEOUT_SECONDS = 3 * 60 * 60


# =============================================================================
# PER-ACCOUNT GUARD
# =============================================================================


class AccountGuard:
    """
    In-process registry of accounts that have an active scan run.

    ``acquire`` never awaits, so two coroutines racing to start a scan for
    the same account cannot both get past it. The store-level check in
    ``open_scan_run`` covers runs started by other processes.
    """

    def __init__(self) -> None:
        self._active: dict[str, str] = {}

    @staticmethod
    def _key(organization_id: str, account_id: str) -> str:
        return f"{organization_id}/{account_id.lower()}"

    def acquire(self, organization_id: str, account_id: str, scan_id: str) -> None:
        key = self._key(organization_id, account_id)
        holder = self._active.get(key)
        if holder is not None:
            raise ConflictError(
                f"A scan is already running for {account_id}",
                resource_type="scan",
                details={"scan_id": holder},
            )
        self._active[key] = scan_id

    def release(self, organization_id: str, account_id: str, scan_id: str) -> None:
        key = self._key(organization_id, account_id)
        if self._active.get(key) == scan_id:
            del self._active[key]

    def holder(self, organization_id: str, account_id: str) -> str | None:
        return self._active.get(self._key(organization_id, account_id))


async def open_scan_run(
    store: DocumentStore,
    guard: AccountGuard,
    organization_id: str,
    account_id: str,
    organization_domain: str,
    scan_type: ScanType = ScanType.FULL,
    base_scan_id: str | None = None,
    started_by: str | None = None,
    stale_timeout_seconds: float = STALE_SCAN_TIMEOUT_SECONDS,
) -> ScanRun:
    """Create a running ScanRun, failing fast if the account already has one.

    The guard stays held for the new scan; ``ScanRunner.run`` releases it.
    A running scan older than *stale_timeout_seconds* is treated as
    abandoned and does not block a new one.
    """
    if scan_type == ScanType.INCREMENTAL and not base_scan_id:
        raise ValidationError("An incremental scan requires a base scan", field="base_scan_id")

    scan_id = uuid.uuid4().hex
    guard.acquire(organization_id, account_id, scan_id)
    try:
        running = await store.query(
            SCANS,
            [
                Filter("organizationId", "==", organization_id),
                Filter("accountId", "==", account_id),
                Filter("status", "==", ScanStatus.RUNNING.value),
            ],
        )
        active = [
            s for s in (ScanRun.from_dict(d) for d in running)
            if not s.is_stale(stale_timeout_seconds)
        ]
        if active:
            raise ConflictError(
                f"Scan {active[0].id} is already running for {account_id}",
                resource_type="scan",
                details={"scan_id": active[0].id},
            )

        scan = ScanRun(
            id=scan_id,
            organization_id=organization_id,
            account_id=account_id,
            organization_domain=organization_domain,
            scan_type=scan_type,
            base_scan_id=base_scan_id,
            started_by=started_by,
        )
        await store.create(SCANS, scan.to_dict(), doc_id=scan_id)
    except Exception:
        guard.release(organization_id, account_id, scan_id)
        raise

    logger.info(f"Created {scan_type.value} scan {scan_id} for {account_id}")
    return scan


async def cancel_requested(store: DocumentStore, scan_id: str) -> bool:
    """Probe for a cancel request recorded on the scan document."""
    doc = await store.get(SCANS, scan_id)
    if doc is None:
        return True
    return bool(doc.get("cancelRequested")) or doc.get("status") == ScanStatus.CANCELLED.value


async def terminate_scan(
    store: DocumentStore,
    scan_id: str,
    status: ScanStatus,
    error_message: str | None = None,
    now: datetime | None = None,
) -> ScanRun | None:
    """Move a scan with no live driver to a terminal *status*.

    A scan that is already terminal is returned unchanged. Returns None if
    the scan does not exist.
    """
    completed_at = (now or utcnow()).isoformat()

    def apply(current: dict[str, Any] | None) -> dict[str, Any]:
        if current is None:
            raise NotFoundError("Scan not found", resource_type="scan", resource_id=scan_id)
        if ScanStatus(current["status"]).is_terminal:
            return current
        return {
            **current,
            "status": status.value,
            "errorMessage": error_message,
            "completedAt": completed_at,
        }

    try:
        return ScanRun.from_dict(await store.transaction(SCANS, scan_id, apply))
    except NotFoundError:
        return None


# =============================================================================
# RUNNER
# =============================================================================


class ScanRunner:
    """Full-scan driver; IncrementalScanRunner overrides counting and scanning."""

    def __init__(
        self,
        store: DocumentStore,
        enumerator: FileEnumerator,
        policy: RiskPolicy | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_write_retries: int = DEFAULT_BATCH_WRITE_RETRIES,
        max_files: int | None = None,
        guard: AccountGuard | None = None,
        record_usage: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.enumerator = enumerator
        self.policy = policy or RiskPolicy.default()
        self.batch_size = max(1, batch_size)
        self.batch_write_retries = max(0, batch_write_retries)
        self.max_files = max_files
        self.guard = guard
        self.record_usage = record_usage
        self.clock = clock

    async def run(self, scan: ScanRun, token: CancellationToken | None = None) -> ScanRun:
        """Drive *scan* to a terminal status and return the stored result.

        Driver errors are recorded on the scan (status=failed) rather than
        raised; anything outside the DriveAuditError hierarchy is recorded
        and then re-raised.
        """
        token = token or CancellationToken(probe=partial(cancel_requested, self.store, scan.id))
        with correlation_scope(scan.id):
            logger.info(
                f"Scan {scan.id} started",
                extra={"account_id": scan.account_id, "scan_type": scan.scan_type.value},
            )
            try:
                status = await self._execute(scan, token)
                final = await self._finish(scan, status)
                if final.status == ScanStatus.COMPLETED and self.record_usage:
                    await increment_scan_stats(
                        self.store, final.organization_id, final.total_files
                    )
                return final
            except DriveAuditError as e:
                logger.error(f"Scan {scan.id} failed: {e}", exc_info=True)
                return await self._finish(scan, ScanStatus.FAILED, error_message=e.message)
            except Exception as e:
                logger.exception(f"Scan {scan.id} failed unexpectedly")
                await self._finish(
                    scan, ScanStatus.FAILED, error_message=str(e) or type(e).__name__
                )
                raise
            finally:
                if self.guard is not None:
                    self.guard.release(scan.organization_id, scan.account_id, scan.id)

    async def _execute(self, scan: ScanRun, token: CancellationToken) -> ScanStatus:
        now = self.clock()

        await self._count(scan)
        if await token.check():
            return ScanStatus.CANCELLED

        await self._advance(scan, ScanPhase.SCANNING)
        if not await self._scan(scan, token, now):
            return ScanStatus.CANCELLED

        await self._advance(scan, ScanPhase.RESOLVING)
        await self._resolve_folder_names(scan)
        if await token.check():
            return ScanStatus.CANCELLED

        await self._advance(scan, ScanPhase.SAVING)
        await self._summarize(scan)
        if await token.check():
            return ScanStatus.CANCELLED

        await self._advance(scan, ScanPhase.DONE)
        return ScanStatus.COMPLETED

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _count(self, scan: ScanRun) -> None:
        total = await self._best_effort("count files", self.enumerator.count_files())
        if total is not None:
            scan.total_files = min(total, self.max_files) if self.max_files else total
        scan.change_cursor = await self._best_effort(
            "fetch change cursor", self.enumerator.get_start_cursor()
        )
        await self._save_progress(scan, changeCursor=scan.change_cursor)
        logger.info(f"Scan {scan.id}: counted {scan.total_files} files")

    async def _scan(self, scan: ScanRun, token: CancellationToken, now: datetime) -> bool:
        """Enumerate and score every file. Returns False if cancelled."""
        pending: list[dict[str, Any]] = []
        async with aclosing(self.enumerator.enumerate()) as pages:
            async for page in pages:
                capped = False
                for entry in page.entries:
                    if self.max_files is not None and scan.processed_files >= self.max_files:
                        scan.truncated = True
                        capped = True
                        break
                    pending.append(self._score(scan, entry, now))
                    scan.processed_files += 1
                    scan.scanned_new_files += 1
                self._record_failures(scan, page.failures)

                if len(pending) >= self.batch_size:
                    await self._flush(scan, pending)
                    pending = []
                await self._save_progress(scan)

                if capped:
                    logger.info(f"Scan {scan.id}: stopped at the {self.max_files} file cap")
                    break
                if await token.check():
                    await self._flush(scan, pending)
                    await self._save_progress(scan)
                    return False

        await self._flush(scan, pending)
        return True

    async def _resolve_folder_names(self, scan: ScanRun) -> None:
        unresolved = [
            doc for doc in await self.store.query(
                files_collection(scan.id), [Filter("parentFolderName", "==", None)]
            )
            if doc.get("parentFolderId")
        ]
        if not unresolved:
            return

        folder_ids = sorted({doc["parentFolderId"] for doc in unresolved})
        names = await self.enumerator.get_folder_names(folder_ids)
        updated = [
            {**doc, "parentFolderName": names[doc["parentFolderId"]]}
            for doc in unresolved
            if doc["parentFolderId"] in names
        ]
        await self._flush(scan, updated)
        logger.info(f"Scan {scan.id}: resolved {len(names)} of {len(folder_ids)} folder names")

    async def _summarize(self, scan: ScanRun) -> None:
        collection = files_collection(scan.id)
        summary = empty_risky_summary()
        for level in RiskLevel:
            summary[level.value] = await self.store.count(
                collection, [Filter("riskLevel", "==", level.value)]
            )
        scan.risky_summary = summary
        scan.total_files = sum(summary.values())
        scan.processed_files = scan.total_files
        await self._save_progress(scan, riskySummary=summary)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _score(self, scan: ScanRun, entry: FileEntry, now: datetime) -> dict[str, Any]:
        assessment = score(entry, scan.organization_domain, self.policy, now)
        return ScannedFileRecord.from_entry(entry, assessment, scan.organization_domain).to_dict()

    def _record_failures(self, scan: ScanRun, failures: list[FileFailure]) -> None:
        for failure in failures:
            logger.warning(
                f"Scan {scan.id}: skipped file {failure.file_id}: {failure.error}",
                extra={"file_id": failure.file_id},
            )
        scan.failed_files += len(failures)

    async def _best_effort(self, what: str, call) -> Any:
        try:
            return await call
        except DriveAPIError as e:
            if is_fatal_error(e):
                raise
            logger.warning(f"Could not {what}: {e.message}")
            return None

    async def _flush(self, scan: ScanRun, documents: list[dict[str, Any]]) -> None:
        collection = files_collection(scan.id)
        for start in range(0, len(documents), self.batch_size):
            await self._write_batch(scan, collection, documents[start:start + self.batch_size])

    async def _write_batch(
        self, scan: ScanRun, collection: str, batch: list[dict[str, Any]]
    ) -> None:
        for attempt in range(self.batch_write_retries + 1):
            try:
                await self.store.batch_set(collection, batch)
                return
            except StorageError as e:
                if attempt >= self.batch_write_retries:
                    raise ScanError(
                        f"Could not save {len(batch)} file records",
                        scan_id=scan.id,
                        account_id=scan.account_id,
                        context=f"gave up after {attempt + 1} attempts",
                    ) from e
                delay = BATCH_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(f"Batch write failed, retrying in {delay:.1f}s: {e}")
                await asyncio.sleep(delay)

    async def _save_progress(self, scan: ScanRun, **extra: Any) -> None:
        # The approximate count never reads lower than what was already processed
        scan.total_files = max(scan.total_files, scan.processed_files)
        await self.store.update(SCANS, scan.id, {
            "phase": scan.phase.value,
            "totalFiles": scan.total_files,
            "processedFiles": scan.processed_files,
            "scannedNewFiles": scan.scanned_new_files,
            "copiedFiles": scan.copied_files,
            "failedFiles": scan.failed_files,
            "truncated": scan.truncated,
            **extra,
        })

    async def _advance(self, scan: ScanRun, phase: ScanPhase) -> None:
        if not scan.phase.can_advance_to(phase):
            raise ScanError(
                f"Cannot move from phase {scan.phase.value} to {phase.value}",
                scan_id=scan.id,
                account_id=scan.account_id,
            )
        scan.phase = phase
        await self._save_progress(scan)
        logger.info(f"Scan {scan.id}: phase {phase.value}")

    async def _finish(
        self, scan: ScanRun, status: ScanStatus, error_message: str | None = None
    ) -> ScanRun:
        """Set the terminal status unless someone else already did."""
        scan.status = status
        scan.completed_at = self.clock()
        scan.error_message = error_message

        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is not None and ScanStatus(current["status"]).is_terminal:
                return current
            if status == ScanStatus.COMPLETED and (current or {}).get("cancelRequested"):
                # A cancel that lands after the last safe point still wins
                scan.status = ScanStatus.CANCELLED
            return {**(current or {}), **scan.to_dict()}

        final = ScanRun.from_dict(await self.store.transaction(SCANS, scan.id, apply))
        if final.status != status:
            logger.warning(
                f"Scan {scan.id} ended {final.status.value} instead of {status.value}"
            )
        else:
            logger.info(
                f"Scan {scan.id} {status.value}",
                extra={"total_files": final.total_files, "failed_files": final.failed_files},
            )
        return final
