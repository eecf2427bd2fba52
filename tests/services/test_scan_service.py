"""
Tests for ScanService: scan lifecycle, organization isolation, reporting
pass-through, remediation and integrated scan management.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from driveaudit.adapters.base import FolderInfo
from driveaudit.adapters.credentials import StaticTokenCredential
from driveaudit.adapters.directory import DomainUser
from driveaudit.config import Settings
from driveaudit.core.types import (
    JobStatus,
    MutationOperation,
    PrincipalType,
    ScanStatus,
    ScanType,
    UserScanStatus,
)
from driveaudit.exceptions import ConflictError, CredentialError, NotFoundError, ValidationError
from driveaudit.jobs.integrated import create_integrated_job
from driveaudit.models import ACTION_LOGS, INTEGRATED_JOBS, SCANS, ScanRun, TargetUser
from driveaudit.services.scan_service import OrganizationContext, ScanService

from ..conftest import NOW, ORG_DOMAIN, FakeDriveAdapter, FakeMutatingAdapter, anyone, make_entry

ORG = "org-1"
ACCOUNT = "alice@example.com"
DIRECTORY = [
    DomainUser("alice@example.com", "Alice", is_admin=True),
    DomainUser("bob@example.com", "Bob"),
]


class RefusedDelegation:

    async def __aenter__(self):
        raise CredentialError("unauthorized_client", subject=ACCOUNT)

    async def __aexit__(self, *exc):
        return None


class BrokenSetup:

    async def __aenter__(self):
        raise RuntimeError("token endpoint returned HTML")

    async def __aexit__(self, *exc):
        return None


async def fake_directory(credential, domain, rate_config=None):
    for user in DIRECTORY:
        yield user


@pytest.fixture
def adapters():
    """Adapter per account; unknown accounts get a one-file drive."""
    return {
        ACCOUNT: FakeMutatingAdapter(
            pages=[[make_entry("f1", permissions=[anyone()]), make_entry("f2")]],
            folders={
                "folder-1": FolderInfo("folder-1", "Reports", parent_id="top"),
                "top": FolderInfo("top", "My Drive"),
            },
        ),
    }


@pytest.fixture
def service(store, adapters, clock):
    def factory(account):
        return adapters.get(account) or FakeMutatingAdapter(pages=[[make_entry(f"{account}-f1")]])

    return ScanService(
        store,
        OrganizationContext(organization_id=ORG, domain=ORG_DOMAIN, actor="admin@example.com"),
        factory,
        settings=Settings(),
        directory_credential=StaticTokenCredential("tok"),
        clock=clock,
    )


async def put_scan(store, scan_id, organization_id=ORG, account_id=ACCOUNT, **fields):
    scan = ScanRun(
        id=scan_id,
        organization_id=organization_id,
        account_id=account_id,
        organization_domain=ORG_DOMAIN,
        **fields,
    )
    await store.create(SCANS, scan.to_dict(), doc_id=scan_id)
    return scan


# ── Scan lifecycle tests ──────────────────────────────────────────────


class TestScans:

    @pytest.mark.asyncio
    async def test_start_and_wait(self, service):
        final = await service.start_scan(ACCOUNT, wait=True)

        assert final.status == ScanStatus.COMPLETED
        assert final.total_files == 2
        assert final.started_by == "admin@example.com"

        status = await service.get_scan_status(final.id)
        assert status["status"] == "completed"
        assert status["isStale"] is False
        assert status["workerAttached"] is False

    @pytest.mark.asyncio
    async def test_start_in_background(self, service):
        scan = await service.start_scan(ACCOUNT)
        assert scan.status == ScanStatus.RUNNING
        assert (await service.get_scan_status(scan.id))["workerAttached"] is True

        final = await service.registry.wait(scan.id)
        assert final.status == ScanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_second_scan_for_account_conflicts(self, service):
        scan = await service.start_scan(ACCOUNT)
        with pytest.raises(ConflictError):
            await service.start_scan(ACCOUNT.upper())
        await service.registry.wait(scan.id)

    @pytest.mark.asyncio
    async def test_incremental_builds_on_latest_completed(self, service):
        base = await service.start_scan(ACCOUNT, wait=True)
        final = await service.start_scan(ACCOUNT, scan_type=ScanType.INCREMENTAL, wait=True)

        assert final.scan_type == ScanType.INCREMENTAL
        assert final.base_scan_id == base.id
        assert final.status == ScanStatus.COMPLETED
        assert final.copied_files == 2

    @pytest.mark.asyncio
    async def test_incremental_without_history(self, service):
        with pytest.raises(ValidationError):
            await service.start_scan(ACCOUNT, scan_type=ScanType.INCREMENTAL)

    @pytest.mark.asyncio
    async def test_incremental_base_from_other_org(self, store, service):
        await put_scan(store, "foreign", organization_id="org-2", status=ScanStatus.COMPLETED)
        with pytest.raises(NotFoundError):
            await service.start_scan(ACCOUNT, scan_type=ScanType.INCREMENTAL, base_scan_id="foreign")

    @pytest.mark.asyncio
    async def test_adapter_setup_failure_fails_scan(self, service, adapters):
        adapters[ACCOUNT] = RefusedDelegation()

        final = await service.start_scan(ACCOUNT, wait=True)

        assert final.status == ScanStatus.FAILED
        assert final.error_message == "unauthorized_client"
        # The account is free again
        await service.start_scan(ACCOUNT.upper(), wait=True)

    @pytest.mark.asyncio
    async def test_unexpected_setup_error_fails_scan_and_frees_account(self, store, service, adapters):
        adapters[ACCOUNT] = BrokenSetup()

        final = await service.start_scan(ACCOUNT, wait=True)

        assert final.status == ScanStatus.FAILED
        assert final.error_message == "token endpoint returned HTML"
        assert (await store.get(SCANS, final.id))["status"] == "failed"
        adapters.pop(ACCOUNT)
        again = await service.start_scan(ACCOUNT, wait=True)
        assert again.status == ScanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_other_organization_is_not_found(self, store, service):
        await put_scan(store, "foreign", organization_id="org-2")
        with pytest.raises(NotFoundError):
            await service.get_scan("foreign")
        with pytest.raises(NotFoundError):
            await service.get_scan_status("foreign")


class TestCancelScan:

    @pytest.mark.asyncio
    async def test_live_scan_stops(self, service):
        scan = await service.start_scan(ACCOUNT)
        await service.cancel_scan(scan.id)
        final = await service.registry.wait(scan.id)
        assert final.status == ScanStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_terminal_scan_conflicts(self, store, service):
        await put_scan(store, "done", status=ScanStatus.COMPLETED)
        with pytest.raises(ConflictError) as exc_info:
            await service.cancel_scan("done")
        assert exc_info.value.details["current_status"] == "completed"

    @pytest.mark.asyncio
    async def test_stale_detached_scan_cancelled_directly(self, store, service):
        await put_scan(store, "old", started_at=NOW - timedelta(hours=4))

        final = await service.cancel_scan("old")

        assert final.status == ScanStatus.CANCELLED
        assert final.completed_at == NOW

    @pytest.mark.asyncio
    async def test_recent_detached_scan_only_flagged(self, store, service):
        await put_scan(store, "elsewhere", started_at=NOW - timedelta(minutes=5))

        final = await service.cancel_scan("elsewhere")

        assert final.status == ScanStatus.RUNNING
        assert (await store.get(SCANS, "elsewhere"))["cancelRequested"] is True


class TestListScans:

    @pytest.mark.asyncio
    async def test_newest_first_with_filters(self, store, service):
        await put_scan(store, "s1", started_at=NOW - timedelta(days=2), status=ScanStatus.COMPLETED)
        await put_scan(store, "s2", started_at=NOW - timedelta(days=1), status=ScanStatus.FAILED)
        await put_scan(store, "s3", account_id="bob@example.com", started_at=NOW - timedelta(hours=5))
        await put_scan(store, "s4", organization_id="org-2")

        page = await service.list_scans()
        assert [s["id"] for s in page.items] == ["s3", "s2", "s1"]
        assert page.items[0]["isStale"] is True

        page = await service.list_scans(account_id=ACCOUNT, status=ScanStatus.COMPLETED)
        assert [s["id"] for s in page.items] == ["s1"]

        page = await service.list_scans(limit=1, offset=1)
        assert [s["id"] for s in page.items] == ["s2"]
        assert page.total == 3


# ── Reporting tests ───────────────────────────────────────────────────


class TestReporting:

    @pytest.mark.asyncio
    async def test_list_files(self, service):
        scan = await service.start_scan(ACCOUNT, wait=True)
        page = await service.list_files(scan.id, risk_level="high")
        assert [f["id"] for f in page.items] == ["f1"]

    @pytest.mark.asyncio
    async def test_invalid_listing_parameter(self, service):
        scan = await service.start_scan(ACCOUNT, wait=True)
        with pytest.raises(ValidationError):
            await service.list_files(scan.id, sort_by="size")

    @pytest.mark.asyncio
    async def test_listing_unknown_scan(self, service):
        with pytest.raises(NotFoundError):
            await service.list_files("nope")

    @pytest.mark.asyncio
    async def test_folders_and_folder_files(self, service):
        scan = await service.start_scan(ACCOUNT, wait=True)

        folders = await service.list_folders(scan.id)
        assert folders.items[0]["folderName"] == "Reports"

        page = await service.list_folder_files(scan.id, "folder-1", sort_by="name", sort_order="asc")
        assert [f["id"] for f in page.items] == ["f1", "f2"]

    @pytest.mark.asyncio
    async def test_folder_path(self, service):
        scan = await service.start_scan(ACCOUNT, wait=True)
        path = await service.get_folder_path(scan.id, "folder-1")
        assert [f["name"] for f in path] == ["My Drive", "Reports"]
        assert await service.get_folder_path(scan.id, "root") == []


# ── Remediation tests ─────────────────────────────────────────────────


class TestRemediation:

    @pytest.mark.asyncio
    async def test_bulk_mutate_logs_actor(self, store, service, adapters):
        scan = await service.start_scan(ACCOUNT, wait=True)

        result = await service.bulk_mutate(scan.id, ["f1", "f2"], MutationOperation.REMOVE_PUBLIC_ACCESS)

        assert (result.success, result.failed) == (1, 1)
        assert adapters[ACCOUNT].deleted == [("f1", "anyoneWithLink")]
        actions = await service.list_actions()
        assert actions[0]["actor"] == "admin@example.com"

    @pytest.mark.asyncio
    async def test_single_delete_needs_permission_id(self, service):
        scan = await service.start_scan(ACCOUNT, wait=True)
        with pytest.raises(ValidationError):
            await service.mutate_permission(scan.id, "f1", MutationOperation.DELETE_PERMISSION)

    @pytest.mark.asyncio
    async def test_single_delete(self, service, adapters):
        scan = await service.start_scan(ACCOUNT, wait=True)
        result = await service.mutate_permission(
            scan.id, "f1", MutationOperation.DELETE_PERMISSION, permission_id="anyoneWithLink"
        )
        assert result.success == 1

    @pytest.mark.asyncio
    async def test_folder_delete(self, store, service, adapters):
        scan = await service.start_scan(ACCOUNT, wait=True)

        result = await service.delete_folder_permissions(scan.id, "folder-1", PrincipalType.ANYONE)

        assert result.success == 1
        assert (await store.query(ACTION_LOGS))[0]["targetType"] == "folder"

    @pytest.mark.asyncio
    async def test_read_only_adapter_refused(self, service, adapters):
        scan = await service.start_scan(ACCOUNT, wait=True)
        adapters[ACCOUNT] = FakeDriveAdapter()
        with pytest.raises(ValidationError):
            await service.bulk_mutate(scan.id, ["f1"], MutationOperation.REMOVE_PUBLIC_ACCESS)


# ── Integrated scan tests ─────────────────────────────────────────────


@pytest.fixture
def directory():
    with patch("driveaudit.services.scan_service.list_domain_users", new=fake_directory):
        yield


class TestIntegrated:

    @pytest.mark.asyncio
    async def test_directory_requires_credential(self, store):
        service = ScanService(
            store,
            OrganizationContext(organization_id=ORG, domain=ORG_DOMAIN),
            lambda account: FakeDriveAdapter(),
            settings=Settings(),
        )
        with pytest.raises(CredentialError):
            await service.list_domain_users()

    @pytest.mark.asyncio
    async def test_list_domain_users(self, service, directory):
        users = await service.list_domain_users()
        assert [u.email for u in users] == ["alice@example.com", "bob@example.com"]

    @pytest.mark.asyncio
    async def test_start_and_status(self, service, directory):
        final = await service.start_integrated_scan(wait=True)

        assert final.status == JobStatus.COMPLETED
        assert final.total_files_scanned == 3
        assert final.max_files_per_user == 10000

        status = await service.get_integrated_scan_status()
        assert status["id"] == final.id
        assert status["progress"] == {"processed": 2, "total": 2, "percent": 100.0}
        assert status["workerAttached"] is False

    @pytest.mark.asyncio
    async def test_user_subset(self, service, directory):
        final = await service.start_integrated_scan(user_emails=["BOB@example.com"], wait=True)
        assert [u.email for u in final.target_users] == ["bob@example.com"]

    @pytest.mark.asyncio
    async def test_no_jobs_yet(self, service):
        assert await service.get_integrated_scan_status() is None

    @pytest.mark.asyncio
    async def test_cancel_detached_job(self, store, service):
        job = await create_integrated_job(store, ORG, ORG_DOMAIN, [TargetUser("alice@example.com")])

        final = await service.cancel_integrated_scan(job.id)

        assert final.status == JobStatus.CANCELLED
        assert final.user_results[0].status == UserScanStatus.SKIPPED
        assert final.completed_at == NOW

    @pytest.mark.asyncio
    async def test_cancel_job_with_live_remote_worker(self, store, service):
        job = await create_integrated_job(store, ORG, ORG_DOMAIN, [TargetUser("alice@example.com")])
        await store.update(INTEGRATED_JOBS, job.id, {
            "status": "running",
            "workerHeartbeatAt": (NOW - timedelta(seconds=10)).isoformat(),
        })

        final = await service.cancel_integrated_scan(job.id)

        assert final.status == JobStatus.RUNNING
        assert (await store.get(INTEGRATED_JOBS, job.id))["cancelRequested"] is True

    @pytest.mark.asyncio
    async def test_cancel_finished_job_conflicts(self, store, service):
        job = await create_integrated_job(store, ORG, ORG_DOMAIN, [TargetUser("alice@example.com")])
        await store.update(INTEGRATED_JOBS, job.id, {"status": "completed"})
        with pytest.raises(ConflictError):
            await service.cancel_integrated_scan(job.id)

    @pytest.mark.asyncio
    async def test_resume_detached_job(self, store, service):
        job = await create_integrated_job(store, ORG, ORG_DOMAIN, [TargetUser("alice@example.com")])
        await store.update(INTEGRATED_JOBS, job.id, {
            "status": "running",
            "workerHeartbeatAt": (NOW - timedelta(hours=1)).isoformat(),
        })

        final = await service.resume_integrated_scan(job.id, wait=True)

        assert final.status == JobStatus.COMPLETED
        assert final.total_files_scanned == 2

    @pytest.mark.asyncio
    async def test_resume_refused_while_worker_alive(self, store, service):
        job = await create_integrated_job(store, ORG, ORG_DOMAIN, [TargetUser("alice@example.com")])
        await store.update(INTEGRATED_JOBS, job.id, {
            "status": "running",
            "workerHeartbeatAt": NOW.isoformat(),
        })
        with pytest.raises(ConflictError):
            await service.resume_integrated_scan(job.id)

    @pytest.mark.asyncio
    async def test_other_organization_job_not_found(self, store, service):
        job = await create_integrated_job(store, "org-2", ORG_DOMAIN, [TargetUser("alice@example.com")])
        with pytest.raises(NotFoundError):
            await service.get_integrated_scan_status(job.id)


class TestShutdown:

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_scans(self, service):
        scan = await service.start_scan(ACCOUNT)
        await service.shutdown()
        assert (await service.get_scan(scan.id)).status == ScanStatus.CANCELLED
