"""
Tests for the integrated scan orchestrator: per-user scans, checkpointing,
resume after a crash, cancellation and usage accounting.
"""

import pytest

from driveaudit.core.cancellation import CancellationToken
from driveaudit.core.types import JobStatus, UserScanStatus
from driveaudit.exceptions import ConflictError, CredentialError, StorageError, ValidationError
from driveaudit.jobs.integrated import (
    IntegratedScanOrchestrator,
    checkpoint_index,
    create_integrated_job,
    job_cancel_requested,
)
from driveaudit.jobs.scan_run import AccountGuard, open_scan_run
from driveaudit.models import (
    INTEGRATED_JOBS,
    ORGANIZATIONS,
    SCANS,
    IntegratedScanJob,
    IntegratedScanUserResult,
    TargetUser,
)

from ..conftest import ORG_DOMAIN, FakeDriveAdapter, anyone, make_entry

ORG = "org-1"
USERS = [
    TargetUser("alice@example.com", "Alice"),
    TargetUser("bob@example.com", "Bob"),
    TargetUser("carol@example.com", "Carol"),
]


class RefusedDelegation:
    """Enumerator context that fails to obtain a delegated token."""

    def __init__(self, email):
        self.email = email

    async def __aenter__(self):
        raise CredentialError("unauthorized_client", subject=self.email)

    async def __aexit__(self, *exc):
        return None


def factory_for(adapters):
    def factory(email):
        return adapters.get(email) or FakeDriveAdapter(pages=[[make_entry(f"{email}-f1")]])
    return factory


def orchestrator(store, adapters=None, clock=None, **kwargs):
    extra = {"clock": clock} if clock else {}
    return IntegratedScanOrchestrator(store, factory_for(adapters or {}), **extra, **kwargs)


async def new_job(store, users=USERS, **kwargs):
    return await create_integrated_job(store, ORG, ORG_DOMAIN, users, **kwargs)


# ── Job creation tests ────────────────────────────────────────────────


class TestCreateJob:

    @pytest.mark.asyncio
    async def test_snapshot_of_target_users(self, store):
        job = await new_job(store, max_files_per_user=50)
        doc = await store.get(INTEGRATED_JOBS, job.id)
        assert doc["status"] == "pending"
        assert [u["email"] for u in doc["targetUsers"]] == [u.email for u in USERS]
        assert [r["status"] for r in doc["userResults"]] == ["pending"] * 3
        assert doc["lastProcessedUserIndex"] == -1
        assert doc["maxFilesPerUser"] == 50

    @pytest.mark.asyncio
    async def test_empty_target_set_rejected(self, store):
        with pytest.raises(ValidationError):
            await new_job(store, users=[])

    @pytest.mark.asyncio
    async def test_one_active_job_per_organization(self, store):
        await new_job(store)
        with pytest.raises(ConflictError):
            await new_job(store)

    @pytest.mark.asyncio
    async def test_finished_job_does_not_block(self, store):
        job = await new_job(store)
        await store.update(INTEGRATED_JOBS, job.id, {"status": "completed"})
        await new_job(store)


# ── Checkpoint tests ──────────────────────────────────────────────────


class TestCheckpointIndex:

    def result(self, status):
        return IntegratedScanUserResult(user_email="x@example.com", status=status)

    def test_contiguous_prefix(self):
        results = [
            self.result(UserScanStatus.COMPLETED),
            self.result(UserScanStatus.FAILED),
            self.result(UserScanStatus.PENDING),
            self.result(UserScanStatus.COMPLETED),
        ]
        assert checkpoint_index(results) == 1

    def test_nothing_terminal(self):
        assert checkpoint_index([self.result(UserScanStatus.RUNNING)]) == -1

    def test_all_terminal(self):
        assert checkpoint_index([self.result(UserScanStatus.SKIPPED)] * 3) == 2


# ── Run tests ─────────────────────────────────────────────────────────


class TestRun:

    @pytest.mark.asyncio
    async def test_all_users_scanned(self, store, clock):
        adapters = {
            "alice@example.com": FakeDriveAdapter(
                pages=[[make_entry("a1", permissions=[anyone()]), make_entry("a2")]]
            ),
        }
        job = await new_job(store)

        final = await orchestrator(store, adapters, clock).run(job.id)

        assert final.status == JobStatus.COMPLETED
        assert final.last_processed_user_index == 2
        assert final.processed_users == 3
        assert final.total_files_scanned == 4
        assert final.total_risky_summary["high"] == 1
        assert final.current_user_email is None
        assert [r.status for r in final.user_results] == [UserScanStatus.COMPLETED] * 3
        assert final.user_results[0].files_scanned == 2

        scan = await store.get(SCANS, final.user_results[1].scan_id)
        assert scan["accountId"] == "bob@example.com"
        assert scan["startedBy"] == f"integrated:{job.id}"
        assert scan["status"] == "completed"

    @pytest.mark.asyncio
    async def test_usage_counted_once_per_job(self, store, clock):
        job = await new_job(store)
        await orchestrator(store, clock=clock).run(job.id)

        usage = await store.get(ORGANIZATIONS, ORG)
        assert usage["totalScans"] == 1
        assert usage["totalFilesScanned"] == 3

    @pytest.mark.asyncio
    async def test_credential_failure_fails_only_that_user(self, store, clock):
        adapters = {"bob@example.com": RefusedDelegation("bob@example.com")}
        job = await new_job(store)

        final = await orchestrator(store, adapters, clock).run(job.id)

        assert final.status == JobStatus.COMPLETED
        statuses = [r.status for r in final.user_results]
        assert statuses == [UserScanStatus.COMPLETED, UserScanStatus.FAILED, UserScanStatus.COMPLETED]
        assert final.user_results[1].error_message == "unauthorized_client"
        assert final.user_results[1].scan_id is None
        assert final.total_files_scanned == 2

    @pytest.mark.asyncio
    async def test_failed_scan_recorded_on_user(self, store, clock):
        broken = FakeDriveAdapter(pages=[[make_entry("b1")], [make_entry("b2")]])
        broken.fail_at_page = 1
        job = await new_job(store)

        final = await orchestrator(store, {"bob@example.com": broken}, clock).run(job.id)

        bob = final.user_results[1]
        assert bob.status == UserScanStatus.FAILED
        assert bob.error_message == "backend unavailable"
        assert (await store.get(SCANS, bob.scan_id))["status"] == "failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_only_that_user(self, store, clock):
        broken = FakeDriveAdapter(pages=[[make_entry("a1")]])
        broken.fail_at_page = 0
        broken.fail_error = ValueError("Expecting value: line 1 column 1 (char 0)")
        job = await new_job(store)

        final = await orchestrator(store, {"alice@example.com": broken}, clock).run(job.id)

        assert final.status == JobStatus.COMPLETED
        statuses = [r.status for r in final.user_results]
        assert statuses == [UserScanStatus.FAILED, UserScanStatus.COMPLETED, UserScanStatus.COMPLETED]
        alice = final.user_results[0]
        assert alice.error_message.startswith("Expecting value")
        assert (await store.get(SCANS, alice.scan_id))["status"] == "failed"
        assert final.last_processed_user_index == 2
        assert final.total_files_scanned == 2

    @pytest.mark.asyncio
    async def test_max_files_per_user_applied(self, store, clock):
        adapters = {"alice@example.com": FakeDriveAdapter(pages=[[make_entry(f"a{i}") for i in range(5)]])}
        job = await new_job(store, max_files_per_user=2)

        final = await orchestrator(store, adapters, clock).run(job.id)

        assert final.user_results[0].files_scanned == 2
        assert (await store.get(SCANS, final.user_results[0].scan_id))["truncated"] is True

    @pytest.mark.asyncio
    async def test_concurrent_workers(self, store, clock):
        job = await new_job(store)
        final = await orchestrator(store, clock=clock, concurrency=2).run(job.id)
        assert final.status == JobStatus.COMPLETED
        assert final.last_processed_user_index == 2

    @pytest.mark.asyncio
    async def test_terminal_job_returned_unchanged(self, store, clock):
        job = await new_job(store)
        await store.update(INTEGRATED_JOBS, job.id, {"status": "failed"})
        final = await orchestrator(store, clock=clock).run(job.id)
        assert final.status == JobStatus.FAILED
        assert final.user_results[0].status == UserScanStatus.PENDING


# ── Resume tests ──────────────────────────────────────────────────────


class TestResume:

    @pytest.mark.asyncio
    async def test_resume_after_crash(self, store, clock):
        orphan = await open_scan_run(store, AccountGuard(), ORG, "bob@example.com", ORG_DOMAIN)
        job = IntegratedScanJob.create("job-1", ORG, ORG_DOMAIN, USERS)
        job.status = JobStatus.RUNNING
        job.user_results[0].status = UserScanStatus.COMPLETED
        job.user_results[0].files_scanned = 7
        job.user_results[0].scan_id = "earlier"
        job.user_results[1].status = UserScanStatus.RUNNING
        job.user_results[1].scan_id = orphan.id
        job.last_processed_user_index = 0
        await store.create(INTEGRATED_JOBS, job.to_dict(), doc_id=job.id)

        final = await orchestrator(store, clock=clock).run(job.id)

        assert final.status == JobStatus.COMPLETED
        assert final.user_results[0].scan_id == "earlier"
        assert final.user_results[1].status == UserScanStatus.COMPLETED
        assert final.user_results[1].scan_id != orphan.id
        assert final.total_files_scanned == 7 + 1 + 1

        orphan_doc = await store.get(SCANS, orphan.id)
        assert orphan_doc["status"] == "failed"
        assert orphan_doc["errorMessage"] == "worker stopped before the scan finished"

    @pytest.mark.asyncio
    async def test_resume_skips_terminal_users_past_checkpoint(self, store, clock):
        job = IntegratedScanJob.create("job-1", ORG, ORG_DOMAIN, USERS)
        job.user_results[2].status = UserScanStatus.FAILED
        job.user_results[2].error_message = "earlier failure"
        await store.create(INTEGRATED_JOBS, job.to_dict(), doc_id=job.id)
        seen = []

        def factory(email):
            seen.append(email)
            return FakeDriveAdapter(pages=[[make_entry(f"{email}-f1")]])

        final = await IntegratedScanOrchestrator(store, factory, clock=clock).run(job.id)

        assert seen == ["alice@example.com", "bob@example.com"]
        assert final.user_results[2].error_message == "earlier failure"
        assert final.status == JobStatus.COMPLETED


# ── Cancellation tests ────────────────────────────────────────────────


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_mid_job(self, store, clock):
        job = await new_job(store)
        token = CancellationToken()

        def factory(email):
            if email == "bob@example.com":
                token.cancel("user request")
            return FakeDriveAdapter(pages=[[make_entry(f"{email}-f1")]])

        final = await IntegratedScanOrchestrator(store, factory, clock=clock).run(job.id, token)

        assert final.status == JobStatus.CANCELLED
        statuses = [r.status for r in final.user_results]
        assert statuses == [UserScanStatus.COMPLETED, UserScanStatus.SKIPPED, UserScanStatus.SKIPPED]
        assert (await store.get(SCANS, final.user_results[1].scan_id))["status"] == "cancelled"
        assert final.completed_at is not None
        assert await store.get(ORGANIZATIONS, ORG) is None

    @pytest.mark.asyncio
    async def test_cancel_flag_on_job_document(self, store, clock):
        job = await new_job(store)
        await store.update(INTEGRATED_JOBS, job.id, {"cancelRequested": True})
        assert await job_cancel_requested(store, job.id)

        final = await orchestrator(store, clock=clock).run(job.id)

        assert final.status == JobStatus.CANCELLED
        assert all(r.status == UserScanStatus.SKIPPED for r in final.user_results)


# ── Checkpoint failure tests ──────────────────────────────────────────


class TestCheckpointFailure:

    @pytest.mark.asyncio
    async def test_failed_checkpoint_write_fails_job(self, store, clock):
        job = await new_job(store)
        original = store.transaction
        calls = {"jobs": 0}

        async def flaky(collection, doc_id, fn):
            if collection == INTEGRATED_JOBS:
                calls["jobs"] += 1
                if calls["jobs"] == 2:
                    raise StorageError("write rejected", collection=collection, doc_id=doc_id)
            return await original(collection, doc_id, fn)

        store.transaction = flaky
        guard = AccountGuard()

        final = await IntegratedScanOrchestrator(store, factory_for({}), guard=guard, clock=clock).run(job.id)

        assert final.status == JobStatus.FAILED
        assert final.error_message == "Could not record the result for alice@example.com"
        assert guard.holder(ORG, "alice@example.com") is None
        assert final.user_results[0].status == UserScanStatus.PENDING
