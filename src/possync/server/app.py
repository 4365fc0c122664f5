"""FastAPI application of the reference remote sync endpoint.

This module creates and configures the FastAPI application with:
- POST /api/organizations/{organization_id}/sync (NDJSON answers)
- Record lookups for operators and tests
- GET /health

Usage:
    uvicorn possync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from possync.server.api.router import router as api_router
from possync.server.database import RemoteDatabase

logger = logging.getLogger(__name__)


def _db_path() -> Path:
    return Path(os.environ.get("POSSYNC_REMOTE_DB_PATH", "possync-remote.db"))


def _log_path() -> Path:
    return Path(os.environ.get("POSSYNC_REMOTE_LOG_PATH", "possync-remote.log"))


def setup_logging(log_path: Path | None) -> None:
    """Configure logging to output to stdout and, optionally, a file.

    Args:
        log_path: Path to the log file (None = stdout only).
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for possync
    root_logger = logging.getLogger("possync")
    root_logger.setLevel(logging.INFO)

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    if log_path is None:
        return

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def create_app(db: RemoteDatabase, token: str | None = None) -> FastAPI:
    """Create FastAPI application with a given database.

    Args:
        db: RemoteDatabase instance.
        token: Bearer token required from stations (None = open).

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        logger.info("=" * 60)
        logger.info("possync remote starting")
        logger.info("=" * 60)
        logger.info("  Database: %s", db.path)
        logger.info("  Auth:     %s", "bearer token" if token else "none")
        logger.info("=" * 60)

        yield

        logger.info("possync remote shutting down")

    application = FastAPI(
        title="possync remote",
        description="Reference remote endpoint for POS sync",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.token = token

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode.

    Reads POSSYNC_REMOTE_DB_PATH, POSSYNC_REMOTE_LOG_PATH and
    POSSYNC_REMOTE_TOKEN.
    """
    setup_logging(_log_path())
    return create_app(
        db=RemoteDatabase(_db_path()),
        token=os.environ.get("POSSYNC_REMOTE_TOKEN") or None,
    )
