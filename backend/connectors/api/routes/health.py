"""Liveness endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.config import settings
from connectors.core.logging import get_logger
from connectors.db import get_db
from connectors.schemas.health import HealthResponse
from connectors.services.job_queue import JobQueueService
from connectors.workers.manager import get_worker_manager

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """Report version, database reachability, worker state and queue depth."""
    queue = None
    try:
        await db.execute(text("SELECT 1"))
        queue = await JobQueueService(db).get_queue_stats()
    except SQLAlchemyError as e:
        logger.error("health_database_unreachable", error=str(e))
        reachable = False
    else:
        reachable = True

    manager = get_worker_manager()
    return HealthResponse(
        status="ok" if reachable else "degraded",
        version=settings.version,
        database="connected" if reachable else "disconnected",
        workers_running=manager.is_running,
        workers=manager.get_stats(),
        queue=queue,
    )
