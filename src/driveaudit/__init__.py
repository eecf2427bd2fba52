"""
driveaudit - Sharing-risk scanner for organisation cloud drives

This package provides:
- Adapters: rate-limited Google Drive and Directory API access
- Jobs: scan runs, incremental scans and organisation-wide scans
- Reporting: folder summaries and filtered file listings
- Remediation: bulk permission changes with per-file accounting
- CLI: command-line operation
"""

__version__ = "0.1.0"
