# app/routers/logs.py
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..database import get_db
from ..security import require_admin

router = APIRouter(
    tags=["Logs"],
    dependencies=[Depends(require_admin)],
)


@router.get("/logs", response_model=schemas.ApiResponse[schemas.Page[schemas.AuditLogView]])
def read_audit_logs(
    params: schemas.PageParams = Depends(),
    user_id: Optional[uuid.UUID] = None,
    action: Optional[models.AuditAction] = None,
    category: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
):
    """
    Retrieve audit logs with optional filtering.
    Only accessible by administrators.
    """
    logs, total = crud.get_audit_logs(
        db, params, user_id=user_id, action=action, category=category,
        start_date=start_date, end_date=end_date,
    )
    return schemas.ok(schemas.Page[schemas.AuditLogView](
        items=[schemas.AuditLogView.model_validate(log) for log in logs],
        total=total, page=params.page, per_page=params.per_page,
    ))
