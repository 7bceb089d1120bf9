"""Shared types for fieldsync.

This module defines the enums shared by the field client and the
reference batch endpoint.
"""

from __future__ import annotations

from enum import Enum


class EntityType(str, Enum):
    """Domain records a queued mutation can target."""

    ASSESSMENT = "assessment"
    RESPONSE = "response"
    ENTITY = "entity"


class SyncAction(str, Enum):
    """Mutation applied to the target record."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class VerdictStatus(str, Enum):
    """Per-item outcome reported by the batch endpoint."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    FAILED = "failed"
