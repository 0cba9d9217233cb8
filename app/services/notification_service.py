# app/services/notification_service.py
"""Inbox notifications: a durable row per recipient plus a best-effort live push."""
import logging
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models, schemas
from ..core.errors import NotFoundError
from ..crud import paginate, storage_failure
from .realtime_service import connection_manager

logger = logging.getLogger(__name__)


def notify(db: Session, user_id: uuid.UUID, notification_type: models.NotificationType,
           title: str, content: str, related_id: Optional[uuid.UUID] = None) -> models.Notification:
    """Persist one notification, then push it to the recipient if they are online"""
    notification = models.Notification(
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        content=content,
        related_id=related_id,
        status=models.NotificationStatus.unread,
    )
    db.add(notification)
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "creating notification")
    db.refresh(notification)
    connection_manager.send_notification(notification)
    return notification


def notify_many(db: Session, user_ids: Iterable[uuid.UUID], notification_type: models.NotificationType,
                title: str, content: str, related_id: Optional[uuid.UUID] = None) -> List[models.Notification]:
    """Persist one row per recipient in a single transaction; no live push"""
    notifications = [
        models.Notification(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            content=content,
            related_id=related_id,
            status=models.NotificationStatus.unread,
        )
        for user_id in user_ids
    ]
    db.add_all(notifications)
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "creating notifications")
    return notifications


def _inbox(db: Session, user_id: uuid.UUID):
    return db.query(models.Notification).filter(
        models.Notification.user_id == user_id,
        models.Notification.status != models.NotificationStatus.deleted,
    )


def list_notifications(db: Session, user_id: uuid.UUID, params: schemas.PageParams,
                       status: Optional[models.NotificationStatus] = None) -> schemas.NotificationList:
    if status == models.NotificationStatus.deleted:
        query = db.query(models.Notification).filter(
            models.Notification.user_id == user_id,
            models.Notification.status == models.NotificationStatus.deleted,
        )
    else:
        query = _inbox(db, user_id)
        if status:
            query = query.filter(models.Notification.status == status)
    items, total = paginate(query.order_by(models.Notification.created_at.desc()), params)
    unread = _inbox(db, user_id).filter(models.Notification.status == models.NotificationStatus.unread).count()
    return schemas.NotificationList(
        items=[schemas.NotificationView.model_validate(n) for n in items],
        total=total,
        page=params.page,
        per_page=params.per_page,
        unread_count=unread,
    )


def get_stats(db: Session, user_id: uuid.UUID) -> schemas.NotificationStats:
    rows = db.query(models.Notification.status, func.count(models.Notification.id))\
        .filter(models.Notification.user_id == user_id,
                models.Notification.status != models.NotificationStatus.deleted)\
        .group_by(models.Notification.status).all()
    counts = {status: count for status, count in rows}
    unread = counts.get(models.NotificationStatus.unread, 0)
    read = counts.get(models.NotificationStatus.read, 0)
    return schemas.NotificationStats(total=unread + read, unread=unread, read=read)


def get_notification(db: Session, notification_id: uuid.UUID, user_id: uuid.UUID) -> models.Notification:
    """Inbox entries are visible to their recipient only"""
    notification = db.get(models.Notification, notification_id)
    if (notification is None or notification.user_id != user_id
            or notification.status == models.NotificationStatus.deleted):
        raise NotFoundError("Notification not found")
    return notification


def mark_read(db: Session, notification: models.Notification) -> models.Notification:
    if notification.status == models.NotificationStatus.unread:
        notification.status = models.NotificationStatus.read
        notification.read_at = models.utcnow()
        try:
            db.commit()
        except SQLAlchemyError as e:
            raise storage_failure(db, e, "marking notification read")
        db.refresh(notification)
    return notification


def mark_all_read(db: Session, user_id: uuid.UUID) -> int:
    try:
        updated = _inbox(db, user_id)\
            .filter(models.Notification.status == models.NotificationStatus.unread)\
            .update({
                models.Notification.status: models.NotificationStatus.read,
                models.Notification.read_at: models.utcnow(),
            }, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "marking notifications read")
    return updated


def delete_notification(db: Session, notification: models.Notification) -> None:
    notification.status = models.NotificationStatus.deleted
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "deleting notification")


def announce(db: Session, announcement: schemas.AnnouncementCreate) -> schemas.AnnouncementResult:
    """Store a system announcement for every active principal in the audience and broadcast it live"""
    query = db.query(models.User.id).filter(models.User.status == models.UserStatus.active)
    if announcement.target_role:
        query = query.filter(models.User.role == announcement.target_role)
    recipients = [user_id for (user_id,) in query.all()]

    notify_many(db, recipients, models.NotificationType.system_announcement,
                announcement.title, announcement.content)
    delivered = connection_manager.broadcast_announcement(
        announcement.title, announcement.content, announcement.target_role)
    logger.info(f"Announcement '{announcement.title}' stored for {len(recipients)} users, {delivered} online")
    return schemas.AnnouncementResult(recipients=len(recipients), delivered_live=delivered)
