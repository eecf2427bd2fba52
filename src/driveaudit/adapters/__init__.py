"""
File-store adapters for driveaudit.

Adapters implement the enumeration contract in ``adapters.base`` for one
cloud file store. Google Drive is the only store currently supported.
"""

from driveaudit.adapters.base import (
    ChangePage,
    EnumerationPage,
    FileChange,
    FileEntry,
    FileEnumerator,
    FileFailure,
    FolderInfo,
    PermissionEntry,
    PermissionMutator,
    supports_mutation,
)
from driveaudit.adapters.credentials import (
    CredentialProvider,
    DelegatedCredential,
    DelegationConfig,
    StaticTokenCredential,
)
from driveaudit.adapters.drive_client import DriveClient, RateLimiterConfig, TokenBucket
from driveaudit.adapters.google_drive import GoogleDriveAdapter

__all__ = [
    "ChangePage",
    "CredentialProvider",
    "DelegatedCredential",
    "DelegationConfig",
    "DriveClient",
    "EnumerationPage",
    "FileChange",
    "FileEntry",
    "FileEnumerator",
    "FileFailure",
    "FolderInfo",
    "GoogleDriveAdapter",
    "PermissionEntry",
    "PermissionMutator",
    "RateLimiterConfig",
    "StaticTokenCredential",
    "TokenBucket",
    "supports_mutation",
]
