# app/services/review_service.py
"""Patient reviews of completed visits and the per-doctor rating aggregate.

Hidden reviews stay readable by their author and by administrators only, and
anonymous reviews drop the patient identity for every other reader.
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .. import crud, models, schemas, security
from ..compliance_logger import compliance_logger
from ..core.errors import AppError, ConflictError, ForbiddenError, NotFoundError
from . import notification_service
from .appointment_service import to_utc
from .cache_service import CacheDurations, CacheKeys, cached, invalidate_generation

logger = logging.getLogger(__name__)

EDIT_WINDOW = timedelta(hours=24)
ALREADY_REVIEWED = "This appointment has already been reviewed"


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, action)


def _reveals_author(principal: Optional[schemas.Principal], review: models.Review) -> bool:
    if not review.is_anonymous:
        return True
    return principal is not None and (security.is_admin(principal) or review.patient_id == principal.user_id)


def to_view(review: models.Review, principal: Optional[schemas.Principal] = None) -> schemas.ReviewView:
    view = schemas.ReviewView.model_validate(review)
    if _reveals_author(principal, review):
        view.patient_name = review.patient.name if review.patient else None
    else:
        view.patient_id = None
    return view


def _can_see_hidden(principal: Optional[schemas.Principal], review: models.Review) -> bool:
    return principal is not None and (security.is_admin(principal) or review.patient_id == principal.user_id)


def invalidate_statistics(doctor_id: uuid.UUID) -> None:
    invalidate_generation(CacheKeys.review_statistics(doctor_id), CacheKeys.review_statistics_generation(doctor_id))


def create_review(db: Session, principal: schemas.Principal, data: schemas.ReviewCreate) -> models.Review:
    if principal.role != models.UserRole.patient:
        raise ForbiddenError("Only patients can review appointments")
    appointment = db.get(models.Appointment, data.appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment not found")
    if appointment.patient_id != principal.user_id:
        compliance_logger.log_access_denied(principal.user_id, "appointment", appointment.id,
                                            "Review of another patient's appointment")
        raise ForbiddenError("You can only review your own appointments")
    if appointment.status != models.AppointmentStatus.completed:
        raise ConflictError("Only completed appointments can be reviewed")
    if db.query(models.Review.id).filter(models.Review.appointment_id == appointment.id).first():
        raise ConflictError(ALREADY_REVIEWED)

    review = models.Review(
        **data.model_dump(),
        doctor_id=appointment.doctor_id,
        patient_id=principal.user_id,
        is_visible=True,
    )
    db.add(review)
    try:
        db.commit()
    except IntegrityError:
        # reviewed concurrently
        db.rollback()
        raise ConflictError(ALREADY_REVIEWED)
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, "creating review")
    db.refresh(review)
    invalidate_statistics(review.doctor_id)
    logger.info(f"Review {review.id} created for appointment {appointment.id}")
    return review


def get_review(db: Session, review_id: uuid.UUID, principal: Optional[schemas.Principal] = None) -> models.Review:
    review = db.query(models.Review).options(joinedload(models.Review.patient))\
        .filter(models.Review.id == review_id).first()
    if review is None or (not review.is_visible and not _can_see_hidden(principal, review)):
        raise NotFoundError("Review not found")
    return review


def _to_page(items, total, params: schemas.PageParams,
             principal: Optional[schemas.Principal]) -> schemas.Page[schemas.ReviewView]:
    return schemas.Page[schemas.ReviewView](
        items=[to_view(r, principal) for r in items],
        total=total, page=params.page, per_page=params.per_page,
    )


def _newest_first(query):
    return query.options(joinedload(models.Review.patient)).order_by(models.Review.created_at.desc())


def list_reviews(db: Session, principal: schemas.Principal, params: schemas.PageParams,
                 doctor_id: Optional[uuid.UUID] = None, rating: Optional[int] = None,
                 has_reply: Optional[bool] = None) -> schemas.Page[schemas.ReviewView]:
    query = db.query(models.Review)
    if not security.is_admin(principal):
        query = query.filter(models.Review.is_visible.is_(True))
    if doctor_id is not None:
        query = query.filter(models.Review.doctor_id == doctor_id)
    if rating is not None:
        query = query.filter(models.Review.rating == rating)
    if has_reply is not None:
        query = query.filter(models.Review.reply.isnot(None) if has_reply else models.Review.reply.is_(None))
    items, total = crud.paginate(_newest_first(query), params)
    return _to_page(items, total, params, principal)


def list_for_doctor(db: Session, doctor_id: uuid.UUID, params: schemas.PageParams) -> schemas.Page[schemas.ReviewView]:
    crud.get_doctor_or_404(db, doctor_id)
    query = db.query(models.Review).filter(models.Review.doctor_id == doctor_id, models.Review.is_visible.is_(True))
    items, total = crud.paginate(_newest_first(query), params)
    return _to_page(items, total, params, None)


def list_for_patient(db: Session, principal: schemas.Principal, patient_id: uuid.UUID,
                     params: schemas.PageParams) -> schemas.Page[schemas.ReviewView]:
    security.ensure_self_or_admin(principal, patient_id)
    query = db.query(models.Review).filter(models.Review.patient_id == patient_id)
    items, total = crud.paginate(_newest_first(query), params)
    return _to_page(items, total, params, principal)


def update_review(db: Session, principal: schemas.Principal, review: models.Review,
                  data: schemas.ReviewUpdate) -> models.Review:
    if review.patient_id != principal.user_id:
        raise ForbiddenError("You can only edit your own reviews")
    if models.utcnow() - to_utc(review.created_at) > EDIT_WINDOW:
        raise ConflictError("Reviews can only be edited within 24 hours")
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(review, field, value)
    _commit(db, "updating review")
    db.refresh(review)
    invalidate_statistics(review.doctor_id)
    return review


def reply_to_review(db: Session, principal: schemas.Principal, review: models.Review,
                    data: schemas.ReviewReply) -> models.Review:
    doctor = crud.get_doctor_by_user(db, principal.user_id)
    if doctor is None or doctor.id != review.doctor_id:
        raise ForbiddenError("You can only reply to reviews of your own appointments")
    review.reply = data.reply
    review.reply_at = models.utcnow()
    _commit(db, "replying to review")
    db.refresh(review)

    try:
        notification_service.notify(
            db, review.patient_id, models.NotificationType.review_reply,
            "Your review was answered", f"Dr. {doctor.name} replied to your review", related_id=review.id,
        )
    except AppError as e:
        logger.error(f"Review {review.id} answered but notification failed: {e.message}")
    return review


def set_visibility(db: Session, principal: schemas.Principal, review: models.Review, is_visible: bool) -> models.Review:
    review.is_visible = is_visible
    _commit(db, "changing review visibility")
    db.refresh(review)
    invalidate_statistics(review.doctor_id)
    compliance_logger.log_event(
        action='UPDATE', category='REVIEW', user_id=principal.user_id,
        details=f"Review {review.id} {'shown' if is_visible else 'hidden'}",
        resource_type='review', resource_id=review.id,
    )
    return review


@cached(lambda db, doctor_id: CacheKeys.review_statistics(doctor_id), CacheDurations.LONG, schemas.ReviewStatistics,
        generation=lambda db, doctor_id: CacheKeys.review_statistics_generation(doctor_id))
def _statistics(db: Session, doctor_id: uuid.UUID) -> schemas.ReviewStatistics:
    def stars(n):
        return func.coalesce(func.sum(case((models.Review.rating == n, 1), else_=0)), 0)

    row = db.query(
        func.count(models.Review.id),
        func.avg(models.Review.rating),
        func.avg(models.Review.attitude_rating),
        func.avg(models.Review.professionalism_rating),
        func.avg(models.Review.efficiency_rating),
        stars(5), stars(4), stars(3), stars(2), stars(1),
    ).filter(models.Review.doctor_id == doctor_id, models.Review.is_visible.is_(True)).one()

    def average(value) -> float:
        return round(float(value), 2) if value is not None else 0.0

    return schemas.ReviewStatistics(
        doctor_id=doctor_id,
        total_reviews=row[0],
        average_rating=average(row[1]),
        average_attitude=average(row[2]),
        average_professionalism=average(row[3]),
        average_efficiency=average(row[4]),
        rating_distribution=schemas.RatingDistribution(
            five_star=row[5], four_star=row[6], three_star=row[7], two_star=row[8], one_star=row[9],
        ),
    )


def doctor_statistics(db: Session, doctor_id: uuid.UUID) -> schemas.ReviewStatistics:
    crud.get_doctor_or_404(db, doctor_id)
    return _statistics(db, doctor_id)
