"""
Health and metrics endpoints.
"""
import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from scraper.api.dependencies import get_batch_manager
from scraper.core.config import get_settings
from scraper.core.metrics import render_metrics
from scraper.db.database import get_db
from scraper.services.batch_manager import BatchCapacityManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Liveness plus a database round trip."""
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database = "unhealthy"
    return {
        "status": "healthy" if database == "healthy" else "degraded",
        "service": settings.service_name,
        "environment": settings.environment,
        "database": database,
    }


@router.get("/metrics")
def metrics(db: Session = Depends(get_db), batch_manager: BatchCapacityManager = Depends(get_batch_manager)):
    # Gauges are refreshed on scrape
    batch_manager.health_status(db)
    body, content_type = render_metrics()
    return Response(content=body, media_type=content_type)
