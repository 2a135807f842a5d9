"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from gitrelay.api.deps import get_runtime, get_session
from gitrelay.runtime import RelayRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    queue: dict[str, int] | None = None
    workers: str


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    runtime: Annotated[RelayRuntime, Depends(get_runtime)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers."""
    db_status = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    queue_counts: dict[str, int] | None = None
    if db_status == "ok" and runtime.queue is not None:
        try:
            queue_counts = await runtime.queue.counts()
        except Exception:
            logger.warning("Health check queue query failed", exc_info=True)

    if runtime.pool is None or not runtime.settings.run_engine_in_app:
        workers = "disabled"
    else:
        workers = "running" if runtime.pool.running else "stopped"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        version="0.1.0",
        database=db_status,
        queue=queue_counts,
        workers=workers,
    )
