"""Structured output formatting for CLI commands."""

from __future__ import annotations

import csv
import io
import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

RISK_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "green",
}


class OutputFormatter:
    """Format command output as table, JSON, or CSV.

    Usage::

        fmt = OutputFormatter(output_format, quiet)
        fmt.print_table(data, columns=["name", "riskLevel", "riskScore"])
        fmt.print_success("Scan completed")
    """

    def __init__(
        self,
        output_format: str = "table",
        quiet: bool = False,
        console: Console | None = None,
    ) -> None:
        self.format = output_format
        self.quiet = quiet
        self.console = console or Console(soft_wrap=True)

    def print_table(
        self,
        data: list[dict[str, Any]],
        columns: list[str] | None = None,
        title: str | None = None,
    ) -> None:
        """Print *data* as a table, JSON array, or CSV.

        Always prints the header row even when *data* is empty so callers
        can tell the command succeeded.
        """
        if columns is None:
            columns = list(data[0].keys()) if data else []

        if self.format == "json":
            click.echo(json.dumps(data, indent=2, default=str))
            return

        if self.format == "csv":
            buf = io.StringIO()
            writer = csv.DictWriter(buf, fieldnames=columns, extrasaction="ignore")
            writer.writeheader()
            writer.writerows([{c: _cell(row.get(c)) for c in columns} for row in data])
            click.echo(buf.getvalue().rstrip())
            return

        if not columns:
            return

        table = Table(title=title, show_lines=False)
        for c in columns:
            table.add_column(_header(c), overflow="fold", max_width=50)
        for row in data:
            cells = []
            for c in columns:
                value = _cell(row.get(c))
                style = RISK_STYLES.get(value) if c in ("riskLevel", "highestRiskLevel") else None
                cells.append(f"[{style}]{value}[/{style}]" if style else value)
            table.add_row(*cells)
        self.console.print(table)

    def print_single(self, data: dict[str, Any]) -> None:
        """Print a single key-value record."""
        if self.format == "json":
            click.echo(json.dumps(data, indent=2, default=str))
        else:
            for key, value in data.items():
                click.echo(f"  {key}: {_cell(value)}")

    def print_pagination(self, pagination: dict[str, Any]) -> None:
        if self.format != "table" or self.quiet:
            return
        if pagination["total"] == 0:
            click.echo("No results")
        else:
            shown_to = pagination["offset"] + pagination["limit"]
            click.echo(
                f"Showing {pagination['offset'] + 1}-{min(shown_to, pagination['total'])} "
                f"of {pagination['total']}" + (" (more available)" if pagination["hasMore"] else "")
            )

    def print_success(self, message: str) -> None:
        """Print a success message (suppressed in quiet mode)."""
        if not self.quiet:
            click.echo(f"OK: {message}")

    def print_error(self, message: str) -> None:
        """Print an error message to stderr."""
        click.echo(f"Error: {message}", err=True)

    def print_message(self, message: str) -> None:
        """Print an informational message (suppressed in quiet mode)."""
        if not self.quiet:
            click.echo(message)


def _header(column: str) -> str:
    words = []
    current = ""
    for ch in column:
        if ch.isupper() and current:
            words.append(current)
            current = ch
        else:
            current += ch
    words.append(current)
    return " ".join(w.capitalize() for w in words)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        return ", ".join(f"{k}={v}" for k, v in value.items())
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)
