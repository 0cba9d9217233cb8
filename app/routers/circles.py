# app/routers/circles.py
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas, security
from ..database import get_db
from ..services import circle_service

router = APIRouter(
    tags=["Circles"],
)


@router.post("/circles", response_model=schemas.ApiResponse[schemas.CircleView])
def create_circle(
    circle: schemas.CircleCreate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    created = circle_service.create_circle(db, principal, circle)
    return schemas.ok(circle_service.to_view(db, created, principal.user_id), "Circle created")


@router.get("/circles", response_model=schemas.ApiResponse[schemas.Page[schemas.CircleView]])
def read_circles(
    params: schemas.PageParams = Depends(),
    category: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=50),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(circle_service.list_circles(db, params, category, search))


@router.get("/my-circles", response_model=schemas.ApiResponse[List[schemas.CircleView]])
def read_my_circles(
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(circle_service.list_my_circles(db, principal.user_id))


@router.get("/circles/{circle_id}", response_model=schemas.ApiResponse[schemas.CircleView])
def read_circle(
    circle_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle = circle_service.get_circle(db, circle_id)
    return schemas.ok(circle_service.to_view(db, circle, principal.user_id))


@router.put("/circles/{circle_id}", response_model=schemas.ApiResponse[schemas.CircleView])
def update_circle(
    circle_id: uuid.UUID,
    circle_update: schemas.CircleUpdate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle = circle_service.update_circle(db, principal, circle_service.get_circle(db, circle_id), circle_update)
    return schemas.ok(circle_service.to_view(db, circle, principal.user_id), "Circle updated")


@router.delete("/circles/{circle_id}", response_model=schemas.ApiResponse[None])
def delete_circle(
    circle_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle_service.delete_circle(db, principal, circle_service.get_circle(db, circle_id))
    return schemas.ok(None, "Circle deleted")


@router.post("/circles/{circle_id}/join", response_model=schemas.ApiResponse[schemas.CircleView])
def join_circle(
    circle_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle = circle_service.join_circle(db, principal, circle_service.get_circle(db, circle_id))
    return schemas.ok(circle_service.to_view(db, circle, principal.user_id), "Joined circle")


@router.post("/circles/{circle_id}/leave", response_model=schemas.ApiResponse[None])
def leave_circle(
    circle_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle_service.leave_circle(db, principal, circle_service.get_circle(db, circle_id))
    return schemas.ok(None, "Left circle")


@router.get("/circles/{circle_id}/members", response_model=schemas.ApiResponse[List[schemas.CircleMemberView]])
def read_circle_members(
    circle_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(circle_service.list_members(db, circle_service.get_circle(db, circle_id)))


@router.put("/circles/{circle_id}/members/{user_id}/role", response_model=schemas.ApiResponse[schemas.CircleMemberView])
def update_member_role(
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    update: schemas.MemberRoleUpdate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle = circle_service.get_circle(db, circle_id)
    member = circle_service.set_member_role(db, principal, circle, user_id, update.role)
    return schemas.ok(schemas.CircleMemberView(
        user_id=member.user_id, user_name=member.user.name, role=member.role, joined_at=member.joined_at,
    ), "Member role updated")


@router.delete("/circles/{circle_id}/members/{user_id}", response_model=schemas.ApiResponse[None])
def remove_member(
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle_service.remove_member(db, principal, circle_service.get_circle(db, circle_id), user_id)
    return schemas.ok(None, "Member removed")
