"""
CLI command modules, one click group per area.
"""

# Configuration commands
from driveaudit.cli.commands.config import config

# File listings and folder rollups
from driveaudit.cli.commands.files import files, folders

# Organization-wide scans
from driveaudit.cli.commands.integrated import integrated

# Permission remediation
from driveaudit.cli.commands.permissions import permissions

# Scan management commands
from driveaudit.cli.commands.scan import scan

__all__ = [
    "config",
    "files",
    "folders",
    "integrated",
    "permissions",
    "scan",
]
