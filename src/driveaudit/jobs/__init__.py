"""
Scan drivers.

- ``scan_run``: one account, full enumeration, plus the per-account guard
- ``incremental``: one account, changes since a base scan
- ``integrated``: one scan per organization member, checkpointed per user
"""

from driveaudit.core.types import ScanType
from driveaudit.jobs.incremental import IncrementalScanRunner
from driveaudit.jobs.integrated import (
    IntegratedScanOrchestrator,
    create_integrated_job,
)
from driveaudit.jobs.scan_run import AccountGuard, ScanRunner, open_scan_run


def runner_class(scan_type: ScanType) -> type[ScanRunner]:
    """Driver class for a scan of *scan_type*."""
    if scan_type == ScanType.INCREMENTAL:
        return IncrementalScanRunner
    return ScanRunner


__all__ = [
    "AccountGuard",
    "IncrementalScanRunner",
    "IntegratedScanOrchestrator",
    "ScanRunner",
    "create_integrated_job",
    "open_scan_run",
    "runner_class",
]
