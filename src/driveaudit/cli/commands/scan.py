"""Scan management commands."""

from __future__ import annotations

import asyncio

import click

from driveaudit.cli.base import common_options, format_option, org_options, run_service, scan_progress
from driveaudit.cli.output import OutputFormatter
from driveaudit.core.types import ScanStatus, ScanType
from driveaudit.services.scan_service import ScanService

SCAN_COLUMNS = [
    "id",
    "accountId",
    "scanType",
    "status",
    "phase",
    "processedFiles",
    "totalFiles",
    "startedAt",
    "isStale",
]

POLL_INTERVAL = 1.0


async def follow_scan(service: ScanService, scan_id: str, quiet: bool) -> dict:
    """Poll a scan until it is terminal, showing progress unless *quiet*."""
    with scan_progress() as progress:
        task = progress.add_task("counting", total=None, visible=not quiet)
        while True:
            status = await service.get_scan_status(scan_id)
            progress.update(
                task,
                description=status["phase"],
                completed=status["processedFiles"],
                total=status["totalFiles"] or None,
            )
            if ScanStatus(status["status"]).is_terminal:
                break
            await asyncio.sleep(POLL_INTERVAL)
    await service.registry.wait(scan_id)
    return await service.get_scan_status(scan_id)


@click.group()
def scan() -> None:
    """Scan management."""
    pass


@scan.command("start")
@click.argument("account")
@click.option("--incremental", is_flag=True, help="Only rescan files changed since a previous scan")
@click.option("--base", "base_scan_id", default=None, help="Base scan for --incremental (default: latest completed)")
@org_options
@common_options
@format_option()
def scan_start(
    account: str,
    incremental: bool,
    base_scan_id: str | None,
    org: str,
    domain: str,
    actor: str | None,
    quiet: bool,
    output_format: str,
) -> None:
    """Scan ACCOUNT's drive and wait for the result."""
    fmt = OutputFormatter(output_format, quiet)
    scan_type = ScanType.INCREMENTAL if incremental else ScanType.FULL

    async def run(service: ScanService) -> dict:
        created = await service.start_scan(account, scan_type, base_scan_id)
        fmt.print_message(f"Started scan {created.id}")
        return await follow_scan(service, created.id, quiet)

    result = run_service(org, domain, actor, run)
    fmt.print_single(result)
    if result["status"] == ScanStatus.FAILED.value:
        raise SystemExit(1)


@scan.command("status")
@click.argument("scan_id")
@org_options
@format_option(choices=["table", "json"])
def scan_status(scan_id: str, org: str, domain: str, actor: str | None, output_format: str) -> None:
    """Show one scan's status and progress."""
    fmt = OutputFormatter(output_format)
    fmt.print_single(run_service(org, domain, actor, lambda s: s.get_scan_status(scan_id)))


@scan.command("list")
@click.option("--account", default=None, help="Only scans of this account")
@click.option("--status", type=click.Choice([s.value for s in ScanStatus]), default=None)
@click.option("--limit", default=20, type=int)
@click.option("--offset", default=0, type=int)
@org_options
@common_options
@format_option()
def scan_list(
    account: str | None,
    status: str | None,
    limit: int,
    offset: int,
    org: str,
    domain: str,
    actor: str | None,
    quiet: bool,
    output_format: str,
) -> None:
    """List scans, most recent first."""
    fmt = OutputFormatter(output_format, quiet)
    page = run_service(
        org,
        domain,
        actor,
        lambda s: s.list_scans(
            account_id=account,
            status=ScanStatus(status) if status else None,
            limit=limit,
            offset=offset,
        ),
    )
    data = page.to_dict("scans")
    fmt.print_table(data["scans"], columns=SCAN_COLUMNS)
    fmt.print_pagination(data["pagination"])


@scan.command("cancel")
@click.argument("scan_id")
@org_options
@common_options
def scan_cancel(scan_id: str, org: str, domain: str, actor: str | None, quiet: bool) -> None:
    """Request cancellation of a running scan."""
    fmt = OutputFormatter(quiet=quiet)
    result = run_service(org, domain, actor, lambda s: s.cancel_scan(scan_id))
    if result.status == ScanStatus.CANCELLED:
        fmt.print_success(f"Scan {scan_id} cancelled")
    else:
        fmt.print_success(f"Cancellation requested for scan {scan_id}")
