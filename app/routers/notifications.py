# app/routers/notifications.py
import uuid
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import models, schemas, security
from ..compliance_logger import compliance_logger
from ..database import get_db
from ..services import notification_service

router = APIRouter(
    prefix="/notifications",
    tags=["Notifications"],
)


@router.get("", response_model=schemas.ApiResponse[schemas.NotificationList])
def read_notifications(
    params: schemas.PageParams = Depends(),
    status: Optional[models.NotificationStatus] = None,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(notification_service.list_notifications(db, principal.user_id, params, status))


@router.get("/stats", response_model=schemas.ApiResponse[schemas.NotificationStats])
def read_notification_stats(
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(notification_service.get_stats(db, principal.user_id))


@router.put("/read-all", response_model=schemas.ApiResponse[int])
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    updated = notification_service.mark_all_read(db, principal.user_id)
    return schemas.ok(updated, f"Marked {updated} notifications as read")


@router.post("/announcement", response_model=schemas.ApiResponse[schemas.AnnouncementResult])
def send_announcement(
    announcement: schemas.AnnouncementCreate,
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    result = notification_service.announce(db, announcement)
    compliance_logger.log_event(
        action='CREATE', category='NOTIFICATION', user_id=current_admin.user_id,
        details=f"Announcement '{announcement.title}' to {announcement.target_role.value if announcement.target_role else 'everyone'}",
    )
    return schemas.ok(result, "Announcement sent")


@router.get("/{notification_id}", response_model=schemas.ApiResponse[schemas.NotificationView])
def read_notification(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    notification = notification_service.get_notification(db, notification_id, principal.user_id)
    return schemas.ok(schemas.NotificationView.model_validate(notification))


@router.put("/{notification_id}/read", response_model=schemas.ApiResponse[schemas.NotificationView])
def mark_notification_read(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    notification = notification_service.get_notification(db, notification_id, principal.user_id)
    notification = notification_service.mark_read(db, notification)
    return schemas.ok(schemas.NotificationView.model_validate(notification))


@router.delete("/{notification_id}", response_model=schemas.ApiResponse[None])
def delete_notification(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    notification = notification_service.get_notification(db, notification_id, principal.user_id)
    notification_service.delete_notification(db, notification)
    return schemas.ok(None, "Notification deleted")
