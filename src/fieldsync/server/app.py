"""FastAPI application for the FieldSync reference batch endpoint.

This module creates and configures the FastAPI application with:
- GET /health for connectivity probes
- POST /api/v1/sync/batch with version-based conflict detection

The endpoint keeps records in memory. It exists for field testing and
end-to-end tests of the sync engine.

Usage:
    uvicorn fieldsync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from fieldsync.server.api.router import router as api_router
from fieldsync.server.records import RecordRegistry

# Configuration from environment variables with defaults
LOG_PATH = Path(os.environ.get("FIELDSYNC_LOG_PATH", "fieldsync-server.log"))
TOKEN = os.environ.get("FIELDSYNC_TOKEN") or None

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for fieldsync
    root_logger = logging.getLogger("fieldsync")
    root_logger.setLevel(logging.INFO)

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def create_app(registry: RecordRegistry | None = None, token: str | None = None) -> FastAPI:
    """Create FastAPI application.

    Args:
        registry: Record registry (a fresh one by default).
        token: Bearer token required on the batch endpoint (None = open).

    Returns:
        Configured FastAPI application.
    """
    registry = registry if registry is not None else RecordRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        logger.info("=" * 60)
        logger.info("FieldSync Reference Endpoint Starting")
        logger.info("=" * 60)
        logger.info("  Auth:     %s", "bearer token" if token else "disabled")
        logger.info("  Records:  %d", len(registry))
        logger.info("=" * 60)

        yield

        logger.info("FieldSync endpoint shutting down")

    application = FastAPI(
        title="FieldSync Server",
        description="Reference batch endpoint for offline field data sync",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.registry = registry
    application.state.token = token

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    setup_logging(LOG_PATH)
    return create_app(token=TOKEN)
