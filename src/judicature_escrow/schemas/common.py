"""Schemas shared by every router."""

from __future__ import annotations

import uuid  # noqa: TC003
from datetime import datetime  # noqa: TC003
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """One page of a paginated listing."""

    items: list[T]
    total: int
    page: int
    page_size: int


class AuditEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    subject_type: str
    subject_id: str
    event_type: str
    old_status: str | None
    new_status: str
    escrow_status: str | None
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class ErrorResponse(BaseModel):
    """Body of every non-2xx response produced by the error middleware."""

    error: str
    message: str
    details: dict | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
