"""
Incremental scan driver.

Re-scores only the files the change list reports since the base scan's
change cursor, and copies every other base record forward unchanged:

    changed    -> re-scored                 (scannedNewFiles)
    deleted    -> omitted from the new scan
    unchanged  -> copied verbatim           (copiedFiles)

If the cursor is rejected as expired, or the base scan never recorded one,
the run falls back to a full enumeration and records why in
``fallbackReason``.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from datetime import datetime
from typing import Any

from driveaudit.core.cancellation import CancellationToken
from driveaudit.core.types import ChangeType, ScanStatus
from driveaudit.exceptions import CursorExpiredError, ScanError
from driveaudit.jobs.scan_run import ScanRunner
from driveaudit.models import SCANS, ScanRun, files_collection

logger = logging.getLogger(__name__)


class IncrementalScanRunner(ScanRunner):
    """Scan driver for ``scanType=incremental`` runs."""

    _base: ScanRun | None = None

    async def _load_base(self, scan: ScanRun) -> ScanRun:
        doc = await self.store.get(SCANS, scan.base_scan_id) if scan.base_scan_id else None
        if doc is None:
            raise ScanError(
                "Base scan not found",
                scan_id=scan.id,
                account_id=scan.account_id,
                details={"base_scan_id": scan.base_scan_id},
            )
        base = ScanRun.from_dict(doc)
        if base.status != ScanStatus.COMPLETED:
            raise ScanError(
                f"Base scan is {base.status.value}, not completed",
                scan_id=scan.id,
                account_id=scan.account_id,
                details={"base_scan_id": base.id},
            )
        if base.account_id != scan.account_id:
            raise ScanError(
                "Base scan belongs to a different account",
                scan_id=scan.id,
                account_id=scan.account_id,
                details={"base_scan_id": base.id},
            )
        return base

    async def _count(self, scan: ScanRun) -> None:
        self._base = await self._load_base(scan)
        # The base scan's size is a good enough estimate for progress display
        scan.total_files = self._base.total_files
        await self._save_progress(scan)

    async def _scan(self, scan: ScanRun, token: CancellationToken, now: datetime) -> bool:
        base = self._base
        if base.change_cursor is None:
            return await self._fall_back(scan, token, now, "base scan has no change cursor")
        try:
            return await self._scan_changes(scan, base, token, now)
        except CursorExpiredError as e:
            logger.warning(f"Scan {scan.id}: {e.message}, falling back to a full scan")
            return await self._fall_back(scan, token, now, "change cursor expired")

    async def _fall_back(
        self, scan: ScanRun, token: CancellationToken, now: datetime, reason: str
    ) -> bool:
        scan.fallback_reason = reason
        scan.processed_files = scan.scanned_new_files = scan.copied_files = 0
        scan.failed_files = 0
        await ScanRunner._count(self, scan)
        await self._save_progress(scan, fallbackReason=reason)
        return await ScanRunner._scan(self, scan, token, now)

    async def _scan_changes(
        self, scan: ScanRun, base: ScanRun, token: CancellationToken, now: datetime
    ) -> bool:
        collection = files_collection(scan.id)
        changed: set[str] = set()
        deleted: set[str] = set()
        failed: set[str] = set()
        pending: dict[str, dict[str, Any]] = {}
        new_cursor: str | None = None

        async with aclosing(self.enumerator.enumerate_changes(base.change_cursor)) as pages:
            async for page in pages:
                for change in page.changes:
                    if change.change_type == ChangeType.DELETED or change.entry is None:
                        deleted.add(change.file_id)
                        pending.pop(change.file_id, None)
                        if change.file_id in changed:
                            # Written by an earlier page, then deleted
                            changed.discard(change.file_id)
                            await self.store.delete(collection, change.file_id)
                    else:
                        deleted.discard(change.file_id)
                        changed.add(change.file_id)
                        pending[change.file_id] = self._score(scan, change.entry, now)
                failed.update(f.file_id for f in page.failures)
                self._record_failures(scan, page.failures)
                if page.new_cursor:
                    new_cursor = page.new_cursor

                if len(pending) >= self.batch_size:
                    await self._flush(scan, list(pending.values()))
                    pending = {}
                scan.scanned_new_files = len(changed)
                scan.processed_files = scan.scanned_new_files
                await self._save_progress(scan)

                if await token.check():
                    await self._flush(scan, list(pending.values()))
                    return False

        await self._flush(scan, list(pending.values()))
        scan.change_cursor = new_cursor or base.change_cursor
        await self._save_progress(scan, changeCursor=scan.change_cursor)
        logger.info(
            f"Scan {scan.id}: {len(changed)} changed, {len(deleted)} deleted since {base.id}"
        )

        return await self._copy_forward(scan, base, changed | deleted | failed, token)

    async def _copy_forward(
        self,
        scan: ScanRun,
        base: ScanRun,
        exclude: set[str],
        token: CancellationToken,
    ) -> bool:
        base_documents = await self.store.query(files_collection(base.id))
        carried = [doc for doc in base_documents if doc["id"] not in exclude]
        for start in range(0, len(carried), self.batch_size):
            batch = carried[start:start + self.batch_size]
            await self._flush(scan, batch)
            scan.copied_files += len(batch)
            scan.processed_files = scan.scanned_new_files + scan.copied_files
            await self._save_progress(scan)
            if await token.check():
                return False
        logger.info(f"Scan {scan.id}: copied {scan.copied_files} unchanged records")
        return True
