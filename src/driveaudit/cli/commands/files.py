"""File and folder listing commands."""

from __future__ import annotations

import click

from driveaudit.cli.base import common_options, format_option, org_options, run_service
from driveaudit.cli.output import OutputFormatter
from driveaudit.core.types import OwnerType, RiskLevel

FILE_COLUMNS = ["id", "name", "riskLevel", "riskScore", "ownerEmail", "parentFolderName", "modifiedTime"]
FOLDER_COLUMNS = [
    "folderId",
    "folderName",
    "fileCount",
    "highestRiskLevel",
    "totalRiskScore",
    "internalCount",
    "externalCount",
]

risk_level_choice = click.Choice([level.value for level in RiskLevel])
owner_type_choice = click.Choice([o.value for o in OwnerType])


@click.group()
def files() -> None:
    """Scanned file listings."""
    pass


@files.command("list")
@click.argument("scan_id")
@click.option("--risk-level", type=risk_level_choice, default=None)
@click.option("--owner-type", type=owner_type_choice, default=OwnerType.ALL.value)
@click.option("--sort-by", type=click.Choice(["riskScore", "name", "modifiedTime"]), default="riskScore")
@click.option("--sort-order", type=click.Choice(["asc", "desc"]), default="desc")
@click.option("--folder", "folder_id", default=None, help="Only files directly in this folder ('root' for top level)")
@click.option("--limit", default=20, type=int)
@click.option("--offset", default=0, type=int)
@org_options
@common_options
@format_option()
def files_list(
    scan_id: str,
    risk_level: str | None,
    owner_type: str,
    sort_by: str,
    sort_order: str,
    folder_id: str | None,
    limit: int,
    offset: int,
    org: str,
    domain: str,
    actor: str | None,
    quiet: bool,
    output_format: str,
) -> None:
    """List a scan's files, riskiest first by default."""
    fmt = OutputFormatter(output_format, quiet)
    page = run_service(
        org,
        domain,
        actor,
        lambda s: s.list_files(
            scan_id,
            risk_level=risk_level,
            owner_type=owner_type,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
            folder_id=folder_id,
        ),
    )
    data = page.to_dict()
    fmt.print_table(data["files"], columns=FILE_COLUMNS)
    fmt.print_pagination(data["pagination"])


@click.group()
def folders() -> None:
    """Folder risk rollups."""
    pass


@folders.command("list")
@click.argument("scan_id")
@click.option("--min-risk-level", type=risk_level_choice, default=None)
@click.option("--owner-type", type=owner_type_choice, default=OwnerType.ALL.value)
@click.option("--limit", default=20, type=int)
@click.option("--offset", default=0, type=int)
@org_options
@common_options
@format_option()
def folders_list(
    scan_id: str,
    min_risk_level: str | None,
    owner_type: str,
    limit: int,
    offset: int,
    org: str,
    domain: str,
    actor: str | None,
    quiet: bool,
    output_format: str,
) -> None:
    """List folders by summed risk score."""
    fmt = OutputFormatter(output_format, quiet)
    page = run_service(
        org,
        domain,
        actor,
        lambda s: s.list_folders(
            scan_id,
            min_risk_level=RiskLevel(min_risk_level) if min_risk_level else None,
            owner_type=OwnerType(owner_type),
            limit=limit,
            offset=offset,
        ),
    )
    data = page.to_dict("folders")
    fmt.print_table(data["folders"], columns=FOLDER_COLUMNS)
    fmt.print_pagination(data["pagination"])


@folders.command("path")
@click.argument("scan_id")
@click.argument("folder_id")
@org_options
@format_option()
def folders_path(
    scan_id: str, folder_id: str, org: str, domain: str, actor: str | None, output_format: str
) -> None:
    """Show the ancestors of FOLDER_ID, root first."""
    fmt = OutputFormatter(output_format)
    path = run_service(org, domain, actor, lambda s: s.get_folder_path(scan_id, folder_id))
    fmt.print_table(path, columns=["id", "name", "parentId"])
