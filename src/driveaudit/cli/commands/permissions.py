"""Permission remediation commands."""

from __future__ import annotations

import click

from driveaudit.cli.base import common_options, format_option, org_options, run_service
from driveaudit.cli.output import OutputFormatter
from driveaudit.core.types import ASSIGNABLE_ROLES, MutationOperation, PermissionRole, PrincipalType
from driveaudit.remediation import BulkResult, PermissionFilter

principal_choice = click.Choice([p.value for p in PrincipalType])
role_choice = click.Choice([r.value for r in PermissionRole if r != PermissionRole.OWNER])


def filter_options(f):
    """Add ``--type``, ``--email`` and ``--role`` permission filter options."""
    f = click.option("--role", type=role_choice, default=None, help="Only grants with this role")(f)
    f = click.option("--email", default=None, help="Grantee email address or domain")(f)
    f = click.option("--type", "principal_type", type=principal_choice, default=None, help="Grantee type")(f)
    return f


def build_filter(principal_type: str | None, email: str | None, role: str | None) -> PermissionFilter:
    return PermissionFilter(
        principal_type=PrincipalType(principal_type) if principal_type else None,
        email=email,
        role=PermissionRole(role) if role else None,
    )


def report(fmt: OutputFormatter, result: BulkResult) -> None:
    data = result.to_dict()
    if fmt.format == "json":
        fmt.print_single(data)
        return
    fmt.print_table(data["details"], columns=["fileId", "fileName", "success", "permissionIds", "error"])
    fmt.print_message(f"{result.success} succeeded, {result.failed} failed of {result.total}")


def _bulk(
    operation: MutationOperation,
    scan_id: str,
    file_ids: tuple[str, ...],
    permission_filter: PermissionFilter | None,
    org: str,
    domain: str,
    actor: str | None,
    quiet: bool,
    output_format: str,
    role: PermissionRole | None = None,
) -> None:
    fmt = OutputFormatter(output_format, quiet)
    result = run_service(
        org,
        domain,
        actor,
        lambda s: s.bulk_mutate(scan_id, list(file_ids), operation, permission_filter, role),
    )
    report(fmt, result)
    if result.failed:
        raise SystemExit(2 if result.success else 1)


@click.group()
def permissions() -> None:
    """Permission remediation on scanned files."""
    pass


@permissions.command("remove-public")
@click.argument("scan_id")
@click.argument("file_ids", nargs=-1, required=True)
@org_options
@common_options
@format_option(choices=["table", "json"])
def remove_public(scan_id, file_ids, org, domain, actor, quiet, output_format) -> None:
    """Remove 'anyone with the link' access from FILE_IDS."""
    _bulk(MutationOperation.REMOVE_PUBLIC_ACCESS, scan_id, file_ids, None, org, domain, actor, quiet, output_format)


@permissions.command("demote")
@click.argument("scan_id")
@click.argument("file_ids", nargs=-1, required=True)
@filter_options
@org_options
@common_options
@format_option(choices=["table", "json"])
def demote(scan_id, file_ids, principal_type, email, role, org, domain, actor, quiet, output_format) -> None:
    """Turn editor grants on FILE_IDS into reader grants."""
    _bulk(
        MutationOperation.DEMOTE_TO_READER,
        scan_id,
        file_ids,
        build_filter(principal_type, email, role),
        org, domain, actor, quiet, output_format,
    )


@permissions.command("delete")
@click.argument("scan_id")
@click.argument("file_ids", nargs=-1, required=True)
@filter_options
@org_options
@common_options
@format_option(choices=["table", "json"])
def delete(scan_id, file_ids, principal_type, email, role, org, domain, actor, quiet, output_format) -> None:
    """Delete grants matching the filter from FILE_IDS."""
    _bulk(
        MutationOperation.DELETE_PERMISSION,
        scan_id,
        file_ids,
        build_filter(principal_type, email, role),
        org, domain, actor, quiet, output_format,
    )


@permissions.command("restore")
@click.argument("scan_id")
@click.argument("file_ids", nargs=-1, required=True)
@filter_options
@org_options
@common_options
@format_option(choices=["table", "json"])
def restore(scan_id, file_ids, principal_type, email, role, org, domain, actor, quiet, output_format) -> None:
    """Recreate deleted grants and undo demotions on FILE_IDS."""
    _bulk(
        MutationOperation.RESTORE,
        scan_id,
        file_ids,
        build_filter(principal_type, email, role),
        org, domain, actor, quiet, output_format,
    )


@permissions.command("update-role")
@click.argument("scan_id")
@click.argument("file_id")
@click.argument("permission_id")
@click.argument("role", type=click.Choice(sorted(r.value for r in ASSIGNABLE_ROLES)))
@org_options
@common_options
@format_option(choices=["table", "json"])
def update_role(scan_id, file_id, permission_id, role, org, domain, actor, quiet, output_format) -> None:
    """Change one grant's role."""
    fmt = OutputFormatter(output_format, quiet)
    result = run_service(
        org,
        domain,
        actor,
        lambda s: s.mutate_permission(
            scan_id, file_id, MutationOperation.UPDATE_ROLE, permission_id, PermissionRole(role)
        ),
    )
    report(fmt, result)
    if result.failed:
        raise SystemExit(1)


@permissions.command("folder-delete")
@click.argument("scan_id")
@click.argument("folder_id")
@click.option("--type", "principal_type", type=principal_choice, required=True)
@click.option("--email", default=None, help="Grantee email address or domain")
@org_options
@common_options
@format_option(choices=["table", "json"])
def folder_delete(scan_id, folder_id, principal_type, email, org, domain, actor, quiet, output_format) -> None:
    """Delete one grantee's access from every scanned file in FOLDER_ID."""
    fmt = OutputFormatter(output_format, quiet)
    result = run_service(
        org,
        domain,
        actor,
        lambda s: s.delete_folder_permissions(scan_id, folder_id, PrincipalType(principal_type), email),
    )
    report(fmt, result)


@permissions.command("log")
@click.option("--limit", default=50, type=int)
@org_options
@format_option()
def action_log(limit, org, domain, actor, output_format) -> None:
    """Show recent permission changes."""
    fmt = OutputFormatter(output_format)
    entries = run_service(org, domain, actor, lambda s: s.list_actions(limit))
    fmt.print_table(entries, columns=["createdAt", "actor", "actionType", "targetType", "targetId", "success", "errorMessage"])
