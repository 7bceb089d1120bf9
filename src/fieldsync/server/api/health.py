"""Health check API route."""

from __future__ import annotations

from fastapi import APIRouter

from fieldsync.core.config import HEALTH_PATH
from fieldsync.server.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get(HEALTH_PATH, response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Check server health."""
    return HealthResponse(status="ok")
