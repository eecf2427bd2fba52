"""Integrated (organization-wide) scan commands."""

from __future__ import annotations

import asyncio

import click

from driveaudit.cli.base import common_options, format_option, org_options, run_service, scan_progress
from driveaudit.cli.output import OutputFormatter
from driveaudit.core.types import JobStatus
from driveaudit.services.scan_service import ScanService

RESULT_COLUMNS = ["userEmail", "status", "filesScanned", "scanId", "errorMessage"]

POLL_INTERVAL = 2.0


async def follow_job(service: ScanService, job_id: str, quiet: bool) -> dict:
    """Poll a job until it is no longer active, showing per-user progress."""
    with scan_progress() as progress:
        task = progress.add_task("users", total=None, visible=not quiet)
        while True:
            status = await service.get_integrated_scan_status(job_id)
            progress.update(
                task,
                description=status.get("currentUserEmail") or status["status"],
                completed=status["progress"]["processed"],
                total=status["progress"]["total"],
            )
            if not JobStatus(status["status"]).is_active:
                break
            await asyncio.sleep(POLL_INTERVAL)
    await service.registry.wait(job_id)
    return await service.get_integrated_scan_status(job_id)


def print_job(fmt: OutputFormatter, status: dict) -> None:
    if fmt.format == "json":
        fmt.print_single(status)
        return
    fmt.print_single({
        "id": status["id"],
        "status": status["status"],
        "progress": f"{status['progress']['processed']}/{status['progress']['total']}",
        "totalFilesScanned": status["totalFilesScanned"],
        "totalRiskySummary": status["totalRiskySummary"],
        "workerAttached": status["workerAttached"],
        "errorMessage": status.get("errorMessage"),
    })
    fmt.print_table(status["userResults"], columns=RESULT_COLUMNS)


@click.group()
def integrated() -> None:
    """Organization-wide scans through Domain-Wide Delegation."""
    pass


@integrated.command("users")
@org_options
@format_option()
def integrated_users(org: str, domain: str, actor: str | None, output_format: str) -> None:
    """List the domain's active members."""
    fmt = OutputFormatter(output_format)
    users = run_service(org, domain, actor, lambda s: s.list_domain_users(), needs_directory=True)
    fmt.print_table([u.to_dict() for u in users], columns=["email", "displayName", "isAdmin"])


@integrated.command("start")
@click.option("--user", "users", multiple=True, help="Only scan these members (repeatable)")
@click.option("--max-files", type=int, default=None, help="Stop each member's scan after this many files")
@org_options
@common_options
@format_option(choices=["table", "json"])
def integrated_start(
    users: tuple[str, ...],
    max_files: int | None,
    org: str,
    domain: str,
    actor: str | None,
    quiet: bool,
    output_format: str,
) -> None:
    """Scan every member of the domain and wait for the job to finish."""
    fmt = OutputFormatter(output_format, quiet)

    async def run(service: ScanService) -> dict:
        job = await service.start_integrated_scan(list(users) or None, max_files)
        fmt.print_message(f"Started integrated scan {job.id} for {len(job.target_users)} users")
        return await follow_job(service, job.id, quiet)

    print_job(fmt, run_service(org, domain, actor, run, needs_directory=True))


@integrated.command("status")
@click.argument("job_id", required=False)
@org_options
@format_option(choices=["table", "json"])
def integrated_status(job_id: str | None, org: str, domain: str, actor: str | None, output_format: str) -> None:
    """Show a job's progress (the latest job if JOB_ID is omitted)."""
    fmt = OutputFormatter(output_format)
    status = run_service(org, domain, actor, lambda s: s.get_integrated_scan_status(job_id))
    if status is None:
        fmt.print_message("No integrated scans yet")
        return
    print_job(fmt, status)


@integrated.command("cancel")
@click.argument("job_id")
@org_options
@common_options
def integrated_cancel(job_id: str, org: str, domain: str, actor: str | None, quiet: bool) -> None:
    """Cancel a pending or running job."""
    fmt = OutputFormatter(quiet=quiet)
    job = run_service(org, domain, actor, lambda s: s.cancel_integrated_scan(job_id))
    if job.status == JobStatus.CANCELLED:
        fmt.print_success(f"Integrated scan {job_id} cancelled")
    else:
        fmt.print_success(f"Cancellation requested for integrated scan {job_id}")


@integrated.command("resume")
@click.argument("job_id")
@org_options
@common_options
@format_option(choices=["table", "json"])
def integrated_resume(
    job_id: str, org: str, domain: str, actor: str | None, quiet: bool, output_format: str
) -> None:
    """Resume a job whose worker stopped, from its last checkpoint."""
    fmt = OutputFormatter(output_format, quiet)

    async def run(service: ScanService) -> dict:
        await service.resume_integrated_scan(job_id)
        return await follow_job(service, job_id, quiet)

    print_job(fmt, run_service(org, domain, actor, run))
