"""
driveaudit CLI entry point.

Usage:
    driveaudit scan start ACCOUNT [--incremental]
    driveaudit files list SCAN_ID [--risk-level high]
    driveaudit folders list SCAN_ID
    driveaudit permissions remove-public SCAN_ID FILE_ID...
    driveaudit integrated start
    driveaudit config show
"""

import click

from driveaudit.cli.commands import config, files, folders, integrated, permissions, scan
from driveaudit.config import get_settings
from driveaudit.logging import setup_logging


@click.group()
@click.version_option(package_name="driveaudit")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override the configured log level",
)
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
def cli(log_level, json_logs):
    """driveaudit - Sharing-risk scanning and remediation for cloud drives"""
    logging_settings = get_settings().logging
    setup_logging(
        level=(log_level or logging_settings.level).upper(),
        json_format=json_logs or logging_settings.json_format,
        log_file=logging_settings.file,
    )


cli.add_command(scan)
cli.add_command(files)
cli.add_command(folders)
cli.add_command(permissions)
cli.add_command(integrated)
cli.add_command(config)


def main():
    cli()


if __name__ == "__main__":
    main()
