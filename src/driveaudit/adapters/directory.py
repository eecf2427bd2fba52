"""
Organization member directory (Admin SDK Directory API).

Used by integrated scans to snapshot the list of accounts to process.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx

from driveaudit.adapters.credentials import CredentialProvider
from driveaudit.adapters.drive_client import (
    DIRECTORY_API_BASE,
    DriveClient,
    RateLimiterConfig,
)

logger = logging.getLogger(__name__)

USERS_PAGE_SIZE = 500


@dataclass
class DomainUser:
    email: str
    display_name: str
    is_admin: bool = False

    def to_dict(self) -> dict:
        return {"email": self.email, "displayName": self.display_name, "isAdmin": self.is_admin}


async def list_domain_users(
    credential: CredentialProvider,
    domain: str,
    rate_config: RateLimiterConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[DomainUser]:
    """Yield every active (non-suspended) user in *domain*.

    *credential* must act as a directory administrator.
    """
    async with DriveClient(
        credential,
        base_url=DIRECTORY_API_BASE,
        rate_config=rate_config,
        transport=transport,
    ) as client:
        page_token: str | None = None
        while True:
            params = {
                "domain": domain,
                "maxResults": USERS_PAGE_SIZE,
                "projection": "basic",
                "query": "isSuspended=false",
            }
            if page_token:
                params["pageToken"] = page_token
            data = await client.get("/users", params=params)
            for user in data.get("users", []):
                email = user.get("primaryEmail")
                if not email:
                    continue
                yield DomainUser(
                    email=email,
                    display_name=(user.get("name") or {}).get("fullName") or email,
                    is_admin=bool(user.get("isAdmin", False)),
                )
            page_token = data.get("nextPageToken")
            if not page_token:
                return
