# app/services/live_stream_service.py
import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..core.errors import ConflictError, ForbiddenError, NotFoundError
from .appointment_service import to_utc
from .cache_service import CacheKeys, get_cache
from .realtime_service import connection_manager

logger = logging.getLogger(__name__)

Status = models.LiveStreamStatus


# --- Viewer counter ---
def viewer_count(stream_id: uuid.UUID) -> int:
    value = get_cache().get(CacheKeys.live_stream_viewers(stream_id))
    try:
        return max(0, int(value)) if value is not None else 0
    except (TypeError, ValueError):
        return 0


def _adjust_viewers(stream_id: uuid.UUID, delta: int) -> int:
    cache = get_cache()
    key = CacheKeys.live_stream_viewers(stream_id)
    count = cache.increment(key, delta)
    if count is None:
        return viewer_count(stream_id)
    if count < 0:
        cache.set_persistent(key, 0)
        count = 0
    return count


def to_view(stream: models.LiveStream) -> schemas.LiveStreamView:
    view = schemas.LiveStreamView.model_validate(stream)
    view.viewer_count = viewer_count(stream.id) if stream.status == Status.live else 0
    return view


# --- Reads ---
def get_stream(db: Session, stream_id: uuid.UUID) -> models.LiveStream:
    stream = db.get(models.LiveStream, stream_id)
    if stream is None:
        raise NotFoundError("Live stream not found")
    return stream


def list_streams(db: Session, params: schemas.PageParams,
                 status: Optional[Status] = None) -> schemas.Page[schemas.LiveStreamView]:
    query = db.query(models.LiveStream)
    if status:
        query = query.filter(models.LiveStream.status == status)
    items, total = crud.paginate(query.order_by(models.LiveStream.scheduled_time.desc()), params)
    return schemas.Page[schemas.LiveStreamView](
        items=[to_view(s) for s in items], total=total, page=params.page, per_page=params.per_page,
    )


def list_upcoming(db: Session, params: schemas.PageParams) -> schemas.Page[schemas.LiveStreamView]:
    query = db.query(models.LiveStream).filter(
        models.LiveStream.status == Status.scheduled,
        models.LiveStream.scheduled_time >= models.utcnow(),
    )
    items, total = crud.paginate(query.order_by(models.LiveStream.scheduled_time.asc()), params)
    return schemas.Page[schemas.LiveStreamView](
        items=[to_view(s) for s in items], total=total, page=params.page, per_page=params.per_page,
    )


# --- Writes ---
def _ensure_host(principal: schemas.Principal, stream: models.LiveStream) -> None:
    if not security.is_admin(principal) and stream.host_id != principal.user_id:
        raise ForbiddenError("Only the host or an administrator can manage this live stream")


def _commit(db: Session, stream: models.LiveStream, action: str) -> models.LiveStream:
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, action)
    db.refresh(stream)
    return stream


def create_stream(db: Session, principal: schemas.Principal, data: schemas.LiveStreamCreate) -> models.LiveStream:
    host = crud.get_user_or_404(db, principal.user_id)
    stream = models.LiveStream(
        title=data.title,
        host_id=host.id,
        host_name=host.name,
        scheduled_time=to_utc(data.scheduled_time),
        status=Status.scheduled,
    )
    db.add(stream)
    return _commit(db, stream, "creating live stream")


def update_stream(db: Session, principal: schemas.Principal, stream: models.LiveStream,
                  data: schemas.LiveStreamUpdate) -> models.LiveStream:
    _ensure_host(principal, stream)
    if stream.status == Status.ended:
        raise ConflictError("An ended live stream cannot be changed")
    changes = data.model_dump(exclude_unset=True)
    if changes.get("scheduled_time") is not None:
        changes["scheduled_time"] = to_utc(changes["scheduled_time"])
    for field, value in changes.items():
        if value is not None or field == "stream_url":
            setattr(stream, field, value)
    return _commit(db, stream, "updating live stream")


def delete_stream(db: Session, principal: schemas.Principal, stream: models.LiveStream) -> None:
    _ensure_host(principal, stream)
    if stream.status != Status.scheduled:
        raise ConflictError("Only scheduled live streams can be deleted")
    db.delete(stream)
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, "deleting live stream")


def start_stream(db: Session, principal: schemas.Principal, stream: models.LiveStream,
                 data: schemas.LiveStreamStart) -> models.LiveStream:
    _ensure_host(principal, stream)
    if stream.status != Status.scheduled:
        raise ConflictError(f"Cannot start a live stream that is {stream.status.value}")
    stream.status = Status.live
    if data.stream_url:
        stream.stream_url = data.stream_url
    _commit(db, stream, "starting live stream")
    get_cache().set_persistent(CacheKeys.live_stream_viewers(stream.id), 0)
    delivered = connection_manager.broadcast_live_stream_started(stream.id, stream.title, stream.host_name)
    logger.info(f"Live stream {stream.id} started, announced to {delivered} connections")
    return stream


def end_stream(db: Session, principal: schemas.Principal, stream: models.LiveStream) -> models.LiveStream:
    _ensure_host(principal, stream)
    if stream.status != Status.live:
        raise ConflictError(f"Cannot end a live stream that is {stream.status.value}")
    stream.status = Status.ended
    _commit(db, stream, "ending live stream")
    get_cache().delete(CacheKeys.live_stream_viewers(stream.id))
    connection_manager.broadcast_live_stream_ended(stream.id)
    logger.info(f"Live stream {stream.id} ended")
    return stream


def join_stream(stream: models.LiveStream) -> schemas.ViewerCount:
    if stream.status != Status.live:
        raise ConflictError("This live stream is not on air")
    count = _adjust_viewers(stream.id, 1)
    connection_manager.broadcast_viewer_count(stream.id, count)
    return schemas.ViewerCount(stream_id=stream.id, count=count)


def leave_stream(stream: models.LiveStream) -> schemas.ViewerCount:
    if stream.status != Status.live:
        raise ConflictError("This live stream is not on air")
    count = _adjust_viewers(stream.id, -1)
    connection_manager.broadcast_viewer_count(stream.id, count)
    return schemas.ViewerCount(stream_id=stream.id, count=count)
