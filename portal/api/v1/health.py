import structlog
from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import portal.core.database as db_module
from portal.schemas.health import HealthResponse

logger = structlog.get_logger()
router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> HealthResponse:
    """Liveness and database check. No auth required."""
    try:
        async with db_module.async_session() as session:
            await session.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as exc:
        logger.warning("health_db_unreachable", error=str(exc))
        database = "disconnected"

    scheduler = getattr(request.app.state, "sync_scheduler", None)
    return HealthResponse(
        status="ok" if database == "connected" else "degraded",
        database=database,
        scheduler="running" if scheduler is not None and scheduler.running else "stopped",
    )
