# app/routers/health.py
import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import schemas, security
from ..database import get_db
from ..services import appointment_service
from ..services.cache_service import get_cache
from ..services.realtime_service import connection_manager

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
)


@router.get("", response_model=schemas.ApiResponse[schemas.HealthStatus])
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Health check: storage unreachable: {e}")
        database = "unavailable"
    cache = get_cache()
    cache_status = "ok" if cache.ping() else "unavailable"
    overall = "ok" if database == "ok" and cache_status == "ok" else "degraded"
    return schemas.ok(schemas.HealthStatus(
        status=overall,
        database=database,
        cache=f"{cache_status} ({cache.backend_name})",
        online_connections=connection_manager.connection_count(),
    ))


@router.get("/consistency-check", response_model=schemas.ApiResponse[schemas.ConsistencyReport])
def check_system_consistency(
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    """Appointments pointing at missing patients or doctors, and double-held slot keys"""
    report = appointment_service.consistency_report(db)
    if report.orphan_appointments or report.double_booked_slots:
        logger.warning(
            f"Consistency check found {len(report.orphan_appointments)} orphan appointments "
            f"and {len(report.double_booked_slots)} double-booked slots"
        )
    return schemas.ok(report)
