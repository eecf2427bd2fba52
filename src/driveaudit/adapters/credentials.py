"""
Credential providers for the Google APIs.

Two kinds of credential are supported:

- ``StaticTokenCredential``: an OAuth access token obtained elsewhere (for
  example from an interactive sign-in). It cannot be refreshed.
- ``DelegatedCredential``: a service account acting on behalf of one
  organization member through Domain-Wide Delegation. Tokens are minted
  with google-auth and refreshed on demand.

``DelegationConfig`` holds the service account key and issues a
``DelegatedCredential`` per target user.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

import google.auth.exceptions
import google.auth.transport.requests
from google.oauth2 import service_account

from driveaudit.exceptions import CredentialError, ValidationError

logger = logging.getLogger(__name__)

DRIVE_READONLY_SCOPE = "https://www.googleapis.com/auth/drive.readonly"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"
DIRECTORY_USER_READONLY_SCOPE = "https://www.googleapis.com/auth/admin.directory.user.readonly"

READ_SCOPES = [DRIVE_READONLY_SCOPE, DIRECTORY_USER_READONLY_SCOPE]
MUTATION_SCOPES = [DRIVE_SCOPE, DIRECTORY_USER_READONLY_SCOPE]

# Refresh this long before the reported expiry
TOKEN_REFRESH_MARGIN = timedelta(seconds=60)


class CredentialProvider(Protocol):
    """Source of bearer tokens for one identity."""

    @property
    def subject(self) -> str | None:
        """Email of the identity the token acts as, if known."""
        ...

    async def get_token(self, force_refresh: bool = False) -> str:
        ...


class StaticTokenCredential:
    """Pre-issued OAuth access token."""

    def __init__(self, access_token: str, subject: str | None = None):
        if not access_token:
            raise ValidationError("Access token must not be empty", field="access_token")
        self._access_token = access_token
        self._subject = subject

    @property
    def subject(self) -> str | None:
        return self._subject

    async def get_token(self, force_refresh: bool = False) -> str:
        if force_refresh:
            raise CredentialError(
                "Static access token was rejected and cannot be refreshed",
                subject=self._subject,
            )
        return self._access_token


class DelegatedCredential:
    """Service account token impersonating *subject* via Domain-Wide Delegation."""

    def __init__(self, credentials: service_account.Credentials, subject: str):
        self._credentials = credentials
        self._subject = subject
        self._lock = asyncio.Lock()

    @property
    def subject(self) -> str:
        return self._subject

    def _is_fresh(self) -> bool:
        token = self._credentials.token
        expiry = self._credentials.expiry
        if not token or expiry is None:
            return False
        # google-auth reports expiry as a naive UTC datetime
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return expiry - TOKEN_REFRESH_MARGIN > datetime.now(timezone.utc)

    async def get_token(self, force_refresh: bool = False) -> str:
        async with self._lock:
            if not force_refresh and self._is_fresh():
                return self._credentials.token

            logger.debug(f"Refreshing delegated token for {self._subject}")
            request = google.auth.transport.requests.Request()
            try:
                await asyncio.to_thread(self._credentials.refresh, request)
            except google.auth.exceptions.RefreshError as e:
                raise CredentialError(
                    "Delegated token refresh was refused",
                    subject=self._subject,
                    context="check Domain-Wide Delegation scopes in the admin console",
                ) from e
            except google.auth.exceptions.TransportError as e:
                raise CredentialError(
                    "Could not reach the token endpoint",
                    subject=self._subject,
                ) from e
            return self._credentials.token


def parse_service_account_json(raw: str) -> dict:
    """Parse and minimally validate a service account key file's contents."""
    try:
        info = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError("Service account key is not valid JSON", field="service_account") from e

    if not isinstance(info, dict):
        raise ValidationError("Service account key must be a JSON object", field="service_account")
    missing = [key for key in ("client_email", "private_key") if not info.get(key)]
    if missing:
        raise ValidationError(
            "Service account key is missing required fields",
            field="service_account",
            details={"missing": missing},
        )
    return info


class DelegationConfig:
    """Service account key plus scopes, issuing per-user delegated credentials."""

    def __init__(self, service_account_info: dict, scopes: list[str] | None = None):
        self._info = service_account_info
        self.scopes = list(scopes or READ_SCOPES)

    @classmethod
    def from_file(cls, path: Path | str, scopes: list[str] | None = None) -> DelegationConfig:
        path = Path(path)
        try:
            raw = path.read_text()
        except OSError as e:
            raise ValidationError(
                "Cannot read service account key file", field="key_file", value=str(path)
            ) from e
        return cls(parse_service_account_json(raw), scopes)

    @property
    def client_email(self) -> str:
        return self._info["client_email"]

    @property
    def client_id(self) -> str | None:
        return self._info.get("client_id")

    def for_user(self, email: str) -> DelegatedCredential:
        """Credential acting as *email*."""
        try:
            base = service_account.Credentials.from_service_account_info(
                self._info, scopes=self.scopes
            )
        except (ValueError, KeyError) as e:
            raise CredentialError(
                "Service account key could not be loaded", subject=email
            ) from e
        return DelegatedCredential(base.with_subject(email), subject=email)
