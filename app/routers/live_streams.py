# app/routers/live_streams.py
import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from .. import models, schemas, security
from ..database import get_db
from ..services import live_stream_service

router = APIRouter(
    prefix="/live-streams",
    tags=["Live Streams"],
)

Page = schemas.Page[schemas.LiveStreamView]


# Public reads
@router.get("", response_model=schemas.ApiResponse[Page])
def read_live_streams(
    params: schemas.PageParams = Depends(),
    status: Optional[models.LiveStreamStatus] = None,
    db: Session = Depends(get_db),
):
    return schemas.ok(live_stream_service.list_streams(db, params, status))


@router.get("/upcoming", response_model=schemas.ApiResponse[Page])
def read_upcoming_live_streams(params: schemas.PageParams = Depends(), db: Session = Depends(get_db)):
    return schemas.ok(live_stream_service.list_upcoming(db, params))


@router.get("/{stream_id}", response_model=schemas.ApiResponse[schemas.LiveStreamView])
def read_live_stream(stream_id: uuid.UUID, db: Session = Depends(get_db)):
    return schemas.ok(live_stream_service.to_view(live_stream_service.get_stream(db, stream_id)))


# Host management
@router.post("", response_model=schemas.ApiResponse[schemas.LiveStreamView])
def create_live_stream(
    stream: schemas.LiveStreamCreate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_doctor_or_admin),
):
    created = live_stream_service.create_stream(db, principal, stream)
    return schemas.ok(live_stream_service.to_view(created), "Live stream scheduled")


@router.put("/{stream_id}", response_model=schemas.ApiResponse[schemas.LiveStreamView])
def update_live_stream(
    stream_id: uuid.UUID,
    stream_update: schemas.LiveStreamUpdate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    stream = live_stream_service.get_stream(db, stream_id)
    stream = live_stream_service.update_stream(db, principal, stream, stream_update)
    return schemas.ok(live_stream_service.to_view(stream), "Live stream updated")


@router.delete("/{stream_id}", response_model=schemas.ApiResponse[None])
def delete_live_stream(
    stream_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    live_stream_service.delete_stream(db, principal, live_stream_service.get_stream(db, stream_id))
    return schemas.ok(None, "Live stream deleted")


@router.post("/{stream_id}/start", response_model=schemas.ApiResponse[schemas.LiveStreamView])
def start_live_stream(
    stream_id: uuid.UUID,
    start: Optional[schemas.LiveStreamStart] = Body(None),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    stream = live_stream_service.get_stream(db, stream_id)
    stream = live_stream_service.start_stream(db, principal, stream, start or schemas.LiveStreamStart())
    return schemas.ok(live_stream_service.to_view(stream), "Live stream started")


@router.post("/{stream_id}/end", response_model=schemas.ApiResponse[schemas.LiveStreamView])
def end_live_stream(
    stream_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    stream = live_stream_service.end_stream(db, principal, live_stream_service.get_stream(db, stream_id))
    return schemas.ok(live_stream_service.to_view(stream), "Live stream ended")


# Viewers
@router.post("/{stream_id}/join", response_model=schemas.ApiResponse[schemas.ViewerCount])
def join_live_stream(
    stream_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(live_stream_service.join_stream(live_stream_service.get_stream(db, stream_id)))


@router.post("/{stream_id}/leave", response_model=schemas.ApiResponse[schemas.ViewerCount])
def leave_live_stream(
    stream_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(live_stream_service.leave_stream(live_stream_service.get_stream(db, stream_id)))
