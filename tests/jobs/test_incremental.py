"""Tests for incremental scans: change application, copy-forward and fallback."""

import pytest

from driveaudit.adapters.base import ChangePage, FileChange, FileFailure
from driveaudit.core.types import ChangeType, ScanStatus, ScanType
from driveaudit.jobs.incremental import IncrementalScanRunner
from driveaudit.jobs.scan_run import AccountGuard, ScanRunner, open_scan_run
from driveaudit.models import SCANS, files_collection

from ..conftest import ORG_DOMAIN, FakeDriveAdapter, anyone, make_entry

ORG = "org-1"
ACCOUNT = "alice@example.com"


async def completed_base(store, adapter, clock):
    scan = await open_scan_run(store, AccountGuard(), ORG, ACCOUNT, ORG_DOMAIN)
    return await ScanRunner(store, adapter, clock=clock).run(scan)


async def run_incremental(store, adapter, base_id, clock, **kwargs):
    scan = await open_scan_run(
        store, AccountGuard(), ORG, ACCOUNT, ORG_DOMAIN,
        scan_type=ScanType.INCREMENTAL, base_scan_id=base_id,
    )
    return await IncrementalScanRunner(store, adapter, clock=clock, **kwargs).run(scan)


@pytest.fixture
def adapter():
    return FakeDriveAdapter(pages=[[make_entry("f1"), make_entry("f2"), make_entry("f3")]])


class UnreadableChangeAdapter(FakeDriveAdapter):
    """Reports one changed file as unreadable."""

    async def enumerate_changes(self, cursor):
        yield ChangePage(
            changes=[],
            new_cursor=self.new_cursor,
            failures=[FileFailure("f2", "HTTP 500")],
        )


# ── Change application tests ──────────────────────────────────────────


class TestChanges:

    @pytest.mark.asyncio
    async def test_changed_rescored_deleted_dropped_rest_copied(self, store, adapter, clock):
        base = await completed_base(store, adapter, clock)
        adapter.changes = [[
            FileChange("f1", ChangeType.MODIFIED, make_entry("f1", permissions=[anyone()])),
            FileChange("f2", ChangeType.DELETED),
        ]]

        final = await run_incremental(store, adapter, base.id, clock)

        assert final.status == ScanStatus.COMPLETED
        assert final.scanned_new_files == 1
        assert final.copied_files == 1
        assert final.total_files == 2
        assert final.change_cursor == "cursor-2"
        assert final.fallback_reason is None
        assert final.risky_summary["high"] == 1

        collection = files_collection(final.id)
        assert (await store.get(collection, "f1"))["riskLevel"] == "high"
        assert await store.get(collection, "f2") is None
        assert await store.get(collection, "f3") == await store.get(files_collection(base.id), "f3")

    @pytest.mark.asyncio
    async def test_base_scan_is_untouched(self, store, adapter, clock):
        base = await completed_base(store, adapter, clock)
        adapter.changes = [[FileChange("f1", ChangeType.DELETED)]]

        await run_incremental(store, adapter, base.id, clock)

        assert await store.count(files_collection(base.id)) == 3

    @pytest.mark.asyncio
    async def test_change_then_delete_across_pages(self, store, adapter, clock):
        base = await completed_base(store, adapter, clock)
        adapter.changes = [
            [FileChange("new", ChangeType.MODIFIED, make_entry("new"))],
            [FileChange("new", ChangeType.DELETED)],
        ]

        final = await run_incremental(store, adapter, base.id, clock, batch_size=1)

        assert await store.get(files_collection(final.id), "new") is None
        assert final.total_files == 3

    @pytest.mark.asyncio
    async def test_no_changes_copies_everything(self, store, adapter, clock):
        base = await completed_base(store, adapter, clock)
        final = await run_incremental(store, adapter, base.id, clock)
        assert final.copied_files == 3
        assert final.copied_files == final.total_files
        assert final.scanned_new_files == 0
        assert final.risky_summary == base.risky_summary

        def by_id(docs):
            return sorted(docs, key=lambda doc: doc["id"])

        base_records = by_id(await store.query(files_collection(base.id)))
        new_records = by_id(await store.query(files_collection(final.id)))
        assert new_records == base_records

    @pytest.mark.asyncio
    async def test_unreadable_file_not_copied_forward(self, store, clock):
        pages = [[make_entry("f1"), make_entry("f2")]]
        base = await completed_base(store, FakeDriveAdapter(pages=pages), clock)

        final = await run_incremental(store, UnreadableChangeAdapter(pages=pages), base.id, clock)

        assert final.failed_files == 1
        assert await store.get(files_collection(final.id), "f2") is None
        assert final.total_files == 1


# ── Fallback tests ────────────────────────────────────────────────────


class TestFallback:

    @pytest.mark.asyncio
    async def test_expired_cursor_runs_full_scan(self, store, adapter, clock):
        base = await completed_base(store, adapter, clock)
        adapter.cursor_expired = True
        adapter.pages = [[make_entry("f1"), make_entry("f4")]]

        final = await run_incremental(store, adapter, base.id, clock)

        assert final.status == ScanStatus.COMPLETED
        assert final.fallback_reason == "change cursor expired"
        assert final.copied_files == 0
        assert final.total_files == 2
        assert final.change_cursor == "cursor-1"

    @pytest.mark.asyncio
    async def test_base_without_cursor_runs_full_scan(self, store, adapter, clock):
        base = await completed_base(store, adapter, clock)
        await store.update(SCANS, base.id, {"changeCursor": None})

        final = await run_incremental(store, adapter, base.id, clock)

        assert final.fallback_reason == "base scan has no change cursor"
        assert final.scanned_new_files == 3


# ── Base validation tests ─────────────────────────────────────────────


class TestBaseValidation:

    @pytest.mark.asyncio
    async def test_missing_base_fails(self, store, adapter, clock):
        final = await run_incremental(store, adapter, "missing", clock)
        assert final.status == ScanStatus.FAILED
        assert final.error_message == "Base scan not found"

    @pytest.mark.asyncio
    async def test_incomplete_base_fails(self, store, adapter, clock):
        base = await completed_base(store, adapter, clock)
        await store.update(SCANS, base.id, {"status": "failed"})

        final = await run_incremental(store, adapter, base.id, clock)

        assert final.status == ScanStatus.FAILED
        assert "not completed" in final.error_message

    @pytest.mark.asyncio
    async def test_other_account_base_fails(self, store, adapter, clock):
        base = await completed_base(store, adapter, clock)
        await store.update(SCANS, base.id, {"accountId": "bob@example.com"})

        final = await run_incremental(store, adapter, base.id, clock)

        assert final.status == ScanStatus.FAILED
        assert "different account" in final.error_message
