# app/routers/reviews.py
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import models, schemas, security
from ..database import get_db
from ..services import review_service

router = APIRouter(
    prefix="/reviews",
    tags=["Reviews"],
)

Page = schemas.Page[schemas.ReviewView]


@router.post("", response_model=schemas.ApiResponse[schemas.ReviewView])
def create_review(
    review: schemas.ReviewCreate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    created = review_service.create_review(db, principal, review)
    return schemas.ok(review_service.to_view(created, principal), "Review submitted")


@router.get("", response_model=schemas.ApiResponse[Page])
def read_reviews(
    params: schemas.PageParams = Depends(),
    doctor_id: Optional[uuid.UUID] = None,
    rating: Optional[int] = Query(None, ge=1, le=5),
    has_reply: Optional[bool] = None,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(review_service.list_reviews(db, principal, params, doctor_id, rating, has_reply))


# Public reads
@router.get("/doctor/{doctor_id}", response_model=schemas.ApiResponse[Page])
def read_doctor_reviews(
    doctor_id: uuid.UUID,
    params: schemas.PageParams = Depends(),
    db: Session = Depends(get_db),
):
    return schemas.ok(review_service.list_for_doctor(db, doctor_id, params))


@router.get("/doctor/{doctor_id}/statistics", response_model=schemas.ApiResponse[schemas.ReviewStatistics])
def read_doctor_review_statistics(doctor_id: uuid.UUID, db: Session = Depends(get_db)):
    return schemas.ok(review_service.doctor_statistics(db, doctor_id))


@router.get("/patient/{patient_id}", response_model=schemas.ApiResponse[Page])
def read_patient_reviews(
    patient_id: uuid.UUID,
    params: schemas.PageParams = Depends(),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(review_service.list_for_patient(db, principal, patient_id, params))


@router.get("/{review_id}", response_model=schemas.ApiResponse[schemas.ReviewView])
def read_review(
    review_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    review = review_service.get_review(db, review_id, principal)
    return schemas.ok(review_service.to_view(review, principal))


@router.put("/{review_id}", response_model=schemas.ApiResponse[schemas.ReviewView])
def update_review(
    review_id: uuid.UUID,
    review_update: schemas.ReviewUpdate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    review = review_service.get_review(db, review_id, principal)
    updated = review_service.update_review(db, principal, review, review_update)
    return schemas.ok(review_service.to_view(updated, principal), "Review updated")


@router.post("/{review_id}/reply", response_model=schemas.ApiResponse[schemas.ReviewView])
def reply_to_review(
    review_id: uuid.UUID,
    reply: schemas.ReviewReply,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_role(models.UserRole.doctor)),
):
    review = review_service.get_review(db, review_id, principal)
    answered = review_service.reply_to_review(db, principal, review, reply)
    return schemas.ok(review_service.to_view(answered, principal), "Reply posted")


@router.put("/{review_id}/visibility", response_model=schemas.ApiResponse[schemas.ReviewView])
def update_review_visibility(
    review_id: uuid.UUID,
    visibility: schemas.ReviewVisibility,
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    review = review_service.get_review(db, review_id, current_admin)
    updated = review_service.set_visibility(db, current_admin, review, visibility.is_visible)
    return schemas.ok(review_service.to_view(updated, current_admin), "Review visibility updated")
