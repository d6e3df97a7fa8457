"""User identity lookup.

The escrow core only needs three facts about a user: that they exist,
their role, and (for payees) the connected payout account transfers go to.
"""

from __future__ import annotations

from typing import Any

import httpx

from judicature_escrow.domain.collaborators import UserIdentity
from judicature_escrow.domain.enums import Role
from judicature_escrow.domain.exceptions import (
    UserDirectoryUnavailableError,
    UserNotFoundError,
)
from judicature_escrow.logging_config import get_logger

logger = get_logger(__name__)


def _identity_from_payload(data: dict[str, Any]) -> UserIdentity:
    return UserIdentity(
        id=str(data.get("id") or data["_id"]),
        role=Role(data["role"]),
        payout_account_ref=data.get("stripe_account_id") or data.get("payout_account_ref"),
        email=data.get("email"),
        display_name=data.get("name"),
    )


class HttpUserDirectory:
    """Resolve users against the user service's REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def resolve(self, user_id: str) -> UserIdentity:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(f"/internal/users/{user_id}")
        except httpx.HTTPError as exc:
            logger.error("user_directory.request_failed", user_id=user_id, error=str(exc))
            raise UserDirectoryUnavailableError(f"User service unreachable: {exc}") from exc

        if response.status_code == 404:
            raise UserNotFoundError(user_id)
        if response.status_code >= 400:
            logger.error(
                "user_directory.bad_status",
                user_id=user_id,
                status_code=response.status_code,
            )
            raise UserDirectoryUnavailableError(
                f"User service returned HTTP {response.status_code}"
            )

        body = response.json()
        return _identity_from_payload(body.get("data", body))


class StaticUserDirectory:
    """In-process directory for simulation and tests."""

    def __init__(self, users: list[UserIdentity] | None = None) -> None:
        self._users = {u.id: u for u in users or []}

    def add(self, identity: UserIdentity) -> None:
        self._users[identity.id] = identity

    async def resolve(self, user_id: str) -> UserIdentity:
        try:
            return self._users[user_id]
        except KeyError:
            raise UserNotFoundError(user_id) from None
