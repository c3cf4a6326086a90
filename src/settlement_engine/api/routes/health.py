"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from settlement_engine.api.dependencies import DbSession
from settlement_engine.models import SettlementStepRecord

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response.

    ``failed_settlement_steps`` counts fan-out steps waiting for a redrive;
    it is None when the database is unreachable.
    """

    status: str
    timestamp: datetime
    database: str
    failed_settlement_steps: int | None = None


@router.get("/health", response_model=HealthResponse)
async def health_check(db: DbSession) -> HealthResponse:
    """Check database reachability and the settlement backlog."""
    failed_steps = None
    try:
        failed_steps = await db.scalar(
            select(func.count())
            .select_from(SettlementStepRecord)
            .where(SettlementStepRecord.status == "failed")
        )
    except SQLAlchemyError:
        logger.warning("Database health check failed", exc_info=True)

    db_ok = failed_steps is not None
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        timestamp=datetime.now(timezone.utc),
        database="healthy" if db_ok else "unhealthy",
        failed_settlement_steps=failed_steps,
    )


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
