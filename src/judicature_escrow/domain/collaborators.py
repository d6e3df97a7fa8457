"""Contracts for the external collaborators the escrow core calls into.

Uses typing.Protocol for structural subtyping (duck typing with type safety).
Infrastructure adapters implement these; tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from judicature_escrow.domain.enums import Role


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of an operation.

    Produced by the upstream auth layer; the core only checks capabilities.
    """

    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM

    @classmethod
    def system(cls, source: str = "system") -> Actor:
        return cls(user_id=source, role=Role.SYSTEM)


@dataclass(frozen=True)
class UserIdentity:
    """A user as known to the identity service."""

    id: str
    role: Role
    payout_account_ref: str | None = None
    email: str | None = None
    display_name: str | None = None


@runtime_checkable
class UserDirectory(Protocol):
    async def resolve(self, user_id: str) -> UserIdentity:
        """Look up a user; raise UserNotFoundError if the id is unknown."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        """Deliver a user-facing event. May raise; callers treat it as best effort."""
        ...
