"""Batch sync API route.

POST /api/v1/sync/batch applies each change in order and answers with one
verdict per change. Verdicts are matched by offlineId on the client, so
their order carries no meaning.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from fieldsync.core.config import BATCH_PATH
from fieldsync.core.types import VerdictStatus
from fieldsync.server.api.deps import get_registry, require_token
from fieldsync.server.records import RecordRegistry
from fieldsync.server.schemas import BatchRequest, VerdictResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])

# Largest batch a device may send in one request
MAX_BATCH_CHANGES = 100


@router.post(
    BATCH_PATH,
    response_model=list[VerdictResponse],
    response_model_exclude_none=True,
)
def sync_batch(
    request: BatchRequest,
    registry: RecordRegistry = Depends(get_registry),
    _auth: None = Depends(require_token),
) -> list[VerdictResponse]:
    """Apply a batch of offline changes."""
    if len(request.changes) > MAX_BATCH_CHANGES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Batch too large: {len(request.changes)} changes (max {MAX_BATCH_CHANGES})",
        )

    verdicts = [registry.apply(change) for change in request.changes]
    logger.info(
        "Processed batch of %d changes (%d conflicts)",
        len(verdicts),
        sum(1 for v in verdicts if v.status == VerdictStatus.CONFLICT),
    )
    return verdicts
