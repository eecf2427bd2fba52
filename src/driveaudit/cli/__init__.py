"""
driveaudit CLI module.

Provides the command groups, shared decorators and output formatting.
"""

from driveaudit.cli.base import common_options, format_option, org_options, run_service
from driveaudit.cli.output import OutputFormatter

__all__ = [
    "OutputFormatter",
    "common_options",
    "format_option",
    "org_options",
    "run_service",
]
