"""Shared CLI decorators and the service runner."""

from __future__ import annotations

import asyncio
import functools
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from driveaudit.config import Settings, get_settings
from driveaudit.exceptions import DriveAuditError
from driveaudit.services.scan_service import (
    AdapterFactory,
    OrganizationContext,
    ScanService,
    delegated_adapter_factory,
    delegated_directory_credential,
)
from driveaudit.storage import open_store

T = TypeVar("T")


def common_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Add ``--quiet`` flag to any command."""
    @click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
    @functools.wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return f(*args, **kwargs)
    return wrapper


def org_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Add ``--org``, ``--domain`` and ``--actor`` options.

    Commands receive ``org``, ``domain`` and ``actor`` keyword arguments.
    """
    @click.option("--org", envvar="DRIVEAUDIT_ORG", required=True, help="Organization id")
    @click.option("--domain", envvar="DRIVEAUDIT_DOMAIN", required=True, help="Organization domain")
    @click.option("--actor", envvar="DRIVEAUDIT_ACTOR", default=None, help="Email recorded as the caller")
    @functools.wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return f(*args, **kwargs)
    return wrapper


def format_option(
    choices: list[str] | None = None,
    default: str | None = None,
) -> Callable[..., Any]:
    """Add ``--format`` / ``-f`` option with configurable choices.

    The Python parameter is named ``output_format`` to avoid shadowing the
    built-in ``format``.
    """
    if choices is None:
        choices = ["table", "json", "csv"]
    if default is None:
        default = choices[0]

    def decorator(f: Callable[..., Any]) -> Callable[..., Any]:
        @click.option(
            "--format", "-f", "output_format",
            type=click.Choice(choices),
            default=default,
            help="Output format",
        )
        @functools.wraps(f)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return f(*args, **kwargs)
        return wrapper
    return decorator


def scan_progress() -> Progress:
    """Progress bar for a scan or job being polled until it finishes."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        transient=True,
    )


def lazy_adapter_factory(settings: Settings) -> AdapterFactory:
    """Defer reading the delegation key until a command actually calls the Drive API."""
    factory: AdapterFactory | None = None

    def get(account: str):
        nonlocal factory
        if factory is None:
            factory = delegated_adapter_factory(settings)
        return factory(account)

    return get


def run_service(
    org: str,
    domain: str,
    actor: str | None,
    fn: Callable[[ScanService], Awaitable[T]],
    needs_directory: bool = False,
) -> T:
    """Open the configured store, build a ScanService and run *fn* on it.

    DriveAuditError is reported on stderr and exits with status 1.
    """
    settings = get_settings()

    async def main() -> T:
        store = await open_store(settings.storage.url, echo=settings.storage.echo)
        try:
            service = ScanService(
                store,
                OrganizationContext(organization_id=org, domain=domain, actor=actor),
                lazy_adapter_factory(settings),
                settings=settings,
                directory_credential=(
                    delegated_directory_credential(settings) if needs_directory else None
                ),
            )
            try:
                return await fn(service)
            finally:
                await service.shutdown()
        finally:
            await store.close()

    try:
        return asyncio.run(main())
    except DriveAuditError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
