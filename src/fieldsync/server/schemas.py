"""Pydantic schemas for API request/response models.

Wire fields are camelCase (offlineId, entityUuid...); Python attributes are
snake_case with aliases.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fieldsync.core.types import EntityType, SyncAction, VerdictStatus


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


# === Batch sync schemas ===


class ChangeRequest(BaseModel):
    """One queued mutation replayed against the server."""

    model_config = ConfigDict(populate_by_name=True)

    type: EntityType
    action: SyncAction
    data: dict[str, Any] = Field(default_factory=dict)
    offline_id: str = Field(alias="offlineId", min_length=1)
    version_number: int = Field(default=1, alias="versionNumber")
    entity_uuid: str = Field(alias="entityUuid", min_length=1)


class BatchRequest(BaseModel):
    """Request body for a batch sync."""

    changes: list[ChangeRequest]


class VerdictResponse(BaseModel):
    """Per-change verdict."""

    model_config = ConfigDict(populate_by_name=True)

    offline_id: str = Field(alias="offlineId")
    server_id: str = Field(default="", alias="serverId")
    status: VerdictStatus
    message: str | None = None
    conflict_data: dict[str, Any] | None = Field(default=None, alias="conflictData")
