# app/services/appointment_service.py
"""Appointment booking, the status state machine and slot availability.

Slot uniqueness is enforced by the partial unique index
``uq_appointments_active_slot``; the occupancy pre-check only gives the
common case a friendly error without hitting the constraint.
"""
import logging
import uuid
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..compliance_logger import compliance_logger
from ..core.errors import AppError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from . import notification_service
from .cache_service import CacheDurations, CacheKeys, cached, invalidate_generation

logger = logging.getLogger(__name__)

SLOT_TAKEN = "The selected time slot is already booked"

Status = models.AppointmentStatus

# (from, to) pairs; everything else is refused
ALLOWED_TRANSITIONS = {
    (Status.pending, Status.confirmed),
    (Status.confirmed, Status.completed),
    (Status.pending, Status.cancelled),
    (Status.confirmed, Status.cancelled),
}

RESCHEDULE_FIELDS = ("appointment_date", "time_slot", "visit_type", "symptoms", "has_visited_before")


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def slot_day(value: datetime) -> date:
    """Date part of the slot key"""
    return to_utc(value).date()


# --- Availability ---
def _occupied_slots(db: Session, doctor_id: uuid.UUID, day: date) -> set:
    rows = db.query(models.Appointment.time_slot).filter(
        models.Appointment.doctor_id == doctor_id,
        models.Appointment.appointment_day == day,
        models.Appointment.status.in_(models.OCCUPYING_STATUSES),
    ).all()
    return {slot for (slot,) in rows}


@cached(lambda db, doctor_id, day: CacheKeys.appointment_slots(doctor_id, day), CacheDurations.SHORT, List[str],
        generation=lambda db, doctor_id, day: CacheKeys.appointment_slots_generation(doctor_id, day))
def _free_slots(db: Session, doctor_id: uuid.UUID, day: date) -> List[str]:
    occupied = _occupied_slots(db, doctor_id, day)
    return [slot for slot in schemas.TIME_SLOTS if slot not in occupied]


def available_slots(db: Session, doctor_id: uuid.UUID, day: date) -> schemas.AvailableSlots:
    crud.get_doctor_or_404(db, doctor_id)
    return schemas.AvailableSlots(doctor_id=doctor_id, date=day, slots=_free_slots(db, doctor_id, day))


def invalidate_slots(doctor_id: uuid.UUID, day: date) -> None:
    invalidate_generation(CacheKeys.appointment_slots(doctor_id, day),
                          CacheKeys.appointment_slots_generation(doctor_id, day))


def _ensure_unoccupied(db: Session, doctor_id: uuid.UUID, day: date, time_slot: str,
                       exclude_id: Optional[uuid.UUID] = None) -> None:
    query = db.query(models.Appointment.id).filter(
        models.Appointment.doctor_id == doctor_id,
        models.Appointment.appointment_day == day,
        models.Appointment.time_slot == time_slot,
        models.Appointment.status.in_(models.OCCUPYING_STATUSES),
    )
    if exclude_id is not None:
        query = query.filter(models.Appointment.id != exclude_id)
    if query.first():
        raise ConflictError(SLOT_TAKEN)


def _commit_booking(db: Session, action: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        # lost the race for the slot key
        db.rollback()
        raise ConflictError(SLOT_TAKEN)
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, action)


def _notify(db: Session, user_id: uuid.UUID, kind: models.NotificationType, title: str,
            content: str, appointment_id: uuid.UUID) -> None:
    try:
        notification_service.notify(db, user_id, kind, title, content, related_id=appointment_id)
    except AppError as e:
        logger.error(f"Appointment {appointment_id} saved but notifying {user_id} failed: {e.message}")


def _describe(appointment: models.Appointment) -> str:
    return f"{appointment.appointment_day.isoformat()} {appointment.time_slot}"


# --- Reads ---
def get_appointment(db: Session, principal: schemas.Principal, appointment_id: uuid.UUID) -> models.Appointment:
    appointment = db.get(models.Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment not found")
    if not security.can_access_appointment(principal, appointment):
        compliance_logger.log_access_denied(principal.user_id, "appointment", appointment_id,
                                            "Appointment belongs to another patient and doctor")
        raise ForbiddenError("You do not have access to this appointment")
    return appointment


def _filtered(query, status: Optional[Status], date_from: Optional[date], date_to: Optional[date]):
    if status:
        query = query.filter(models.Appointment.status == status)
    if date_from:
        query = query.filter(models.Appointment.appointment_day >= date_from)
    if date_to:
        query = query.filter(models.Appointment.appointment_day <= date_to)
    return query


def _to_page(items, total, params: schemas.PageParams) -> schemas.Page[schemas.AppointmentView]:
    return schemas.Page[schemas.AppointmentView](
        items=[schemas.AppointmentView.model_validate(a) for a in items],
        total=total, page=params.page, per_page=params.per_page,
    )


def list_appointments(db: Session, principal: schemas.Principal, params: schemas.PageParams,
                      status: Optional[Status] = None, date_from: Optional[date] = None,
                      date_to: Optional[date] = None, doctor_id: Optional[uuid.UUID] = None,
                      patient_id: Optional[uuid.UUID] = None) -> schemas.Page[schemas.AppointmentView]:
    """Admins see everything; doctors and patients see their own appointments"""
    query = db.query(models.Appointment)
    if security.is_admin(principal):
        if doctor_id:
            query = query.filter(models.Appointment.doctor_id == doctor_id)
        if patient_id:
            query = query.filter(models.Appointment.patient_id == patient_id)
    elif principal.role == models.UserRole.doctor:
        doctor = crud.get_doctor_by_user(db, principal.user_id)
        if doctor is None:
            return _to_page([], 0, params)
        query = query.filter(models.Appointment.doctor_id == doctor.id)
    else:
        query = query.filter(models.Appointment.patient_id == principal.user_id)

    query = _filtered(query, status, date_from, date_to)
    items, total = crud.paginate(query.order_by(models.Appointment.appointment_date.asc()), params)
    return _to_page(items, total, params)


def list_for_doctor(db: Session, principal: schemas.Principal, doctor_id: uuid.UUID, params: schemas.PageParams,
                    status: Optional[Status] = None, date_from: Optional[date] = None,
                    date_to: Optional[date] = None) -> schemas.Page[schemas.AppointmentView]:
    doctor = crud.get_doctor_or_404(db, doctor_id)
    if not security.is_admin(principal) and doctor.user_id != principal.user_id:
        raise ForbiddenError("You can only view your own schedule")
    query = _filtered(db.query(models.Appointment).filter(models.Appointment.doctor_id == doctor_id),
                      status, date_from, date_to)
    items, total = crud.paginate(query.order_by(models.Appointment.appointment_date.asc()), params)
    return _to_page(items, total, params)


def list_for_patient(db: Session, principal: schemas.Principal, patient_id: uuid.UUID, params: schemas.PageParams,
                     status: Optional[Status] = None, date_from: Optional[date] = None,
                     date_to: Optional[date] = None) -> schemas.Page[schemas.AppointmentView]:
    """Patient history, most recent first"""
    security.ensure_self_or_admin(principal, patient_id)
    query = _filtered(db.query(models.Appointment).filter(models.Appointment.patient_id == patient_id),
                      status, date_from, date_to)
    items, total = crud.paginate(query.order_by(models.Appointment.appointment_date.desc()), params)
    return _to_page(items, total, params)


# --- Booking ---
def create_appointment(db: Session, principal: schemas.Principal,
                       data: schemas.AppointmentCreate) -> models.Appointment:
    if principal.role == models.UserRole.doctor:
        raise ForbiddenError("Doctors cannot book appointments")
    if principal.role == models.UserRole.patient:
        patient_id = principal.user_id
    else:
        if data.patient_id is None:
            raise ValidationError("patient_id is required when booking on behalf of a patient")
        patient = crud.get_user_or_404(db, data.patient_id)
        if patient.role != models.UserRole.patient:
            raise ValidationError("Appointments can only be booked for patient accounts")
        patient_id = patient.id

    doctor = crud.get_doctor_or_404(db, data.doctor_id)
    appointment_date = to_utc(data.appointment_date)
    day = appointment_date.date()
    _ensure_unoccupied(db, doctor.id, day, data.time_slot)

    appointment = models.Appointment(
        patient_id=patient_id,
        doctor_id=doctor.id,
        appointment_date=appointment_date,
        appointment_day=day,
        time_slot=data.time_slot,
        visit_type=data.visit_type,
        symptoms=data.symptoms,
        has_visited_before=data.has_visited_before,
        status=Status.pending,
    )
    db.add(appointment)
    _commit_booking(db, "creating appointment")
    db.refresh(appointment)
    invalidate_slots(doctor.id, day)

    logger.info(f"Appointment {appointment.id} booked for doctor {doctor.id} at {day} {data.time_slot}")
    compliance_logger.log_event(
        action='CREATE', category='APPOINTMENT', user_id=principal.user_id,
        details=f"Booked {day.isoformat()} {data.time_slot} with doctor {doctor.id}",
        resource_type='appointment', resource_id=appointment.id,
    )
    _notify(db, doctor.user_id, models.NotificationType.appointment_reminder, "New appointment",
            f"A new appointment was booked for {_describe(appointment)}", appointment.id)
    return appointment


# --- State machine ---
def _guarded_update(db: Session, appointment: models.Appointment, expected: Status, values: dict,
                    action: str) -> None:
    """Write ``values`` only while the row still holds ``expected``; losing that race is a 409"""
    try:
        updated = db.query(models.Appointment).filter(
            models.Appointment.id == appointment.id,
            models.Appointment.status == expected,
        ).update(values, synchronize_session=False)
    except IntegrityError:
        # the new slot key is held by another active appointment
        db.rollback()
        raise ConflictError(SLOT_TAKEN)
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, action)
    if updated != 1:
        db.rollback()
        raise ConflictError("The appointment was changed concurrently, reload and try again")
    _commit_booking(db, action)
    db.refresh(appointment)


def _ensure_actor(principal: schemas.Principal, appointment: models.Appointment, target: Status) -> None:
    if security.is_admin(principal):
        return
    if target == Status.cancelled:
        if appointment.patient_id != principal.user_id:
            raise ForbiddenError("Only the patient or an administrator can cancel this appointment")
    elif appointment.doctor is None or appointment.doctor.user_id != principal.user_id:
        raise ForbiddenError("Only the assigned doctor or an administrator can change this appointment")


def transition(db: Session, principal: schemas.Principal, appointment: models.Appointment,
               target: Status, reason: Optional[str] = None) -> models.Appointment:
    _ensure_actor(principal, appointment, target)
    current = appointment.status
    if (current, target) not in ALLOWED_TRANSITIONS:
        raise ConflictError(f"Cannot change an appointment from {current.value} to {target.value}")

    values = {models.Appointment.status: target}
    if target == Status.cancelled:
        values[models.Appointment.cancellation_reason] = reason
    _guarded_update(db, appointment, current, values, f"moving appointment to {target.value}")

    if target == Status.cancelled:
        invalidate_slots(appointment.doctor_id, appointment.appointment_day)

    logger.info(f"Appointment {appointment.id}: {current.value} -> {target.value}")
    compliance_logger.log_event(
        action='UPDATE', category='APPOINTMENT', user_id=principal.user_id,
        details=f"Status {current.value} -> {target.value}",
        resource_type='appointment', resource_id=appointment.id,
    )

    if target == Status.confirmed:
        _notify(db, appointment.patient_id, models.NotificationType.appointment_confirmed,
                "Appointment confirmed", f"Your appointment on {_describe(appointment)} is confirmed",
                appointment.id)
    elif target == Status.cancelled:
        doctor_user_id = appointment.doctor.user_id if appointment.doctor else None
        content = f"The appointment on {_describe(appointment)} was cancelled"
        if reason:
            content = f"{content}: {reason}"
        for user_id in {appointment.patient_id, doctor_user_id} - {principal.user_id, None}:
            _notify(db, user_id, models.NotificationType.appointment_cancelled,
                    "Appointment cancelled", content, appointment.id)
    return appointment


def confirm(db: Session, principal: schemas.Principal, appointment: models.Appointment) -> models.Appointment:
    return transition(db, principal, appointment, Status.confirmed)


def complete(db: Session, principal: schemas.Principal, appointment: models.Appointment) -> models.Appointment:
    return transition(db, principal, appointment, Status.completed)


def cancel(db: Session, principal: schemas.Principal, appointment: models.Appointment,
           reason: Optional[str] = None) -> models.Appointment:
    return transition(db, principal, appointment, Status.cancelled, reason)


def update_appointment(db: Session, principal: schemas.Principal, appointment: models.Appointment,
                       data: schemas.AppointmentUpdate) -> models.Appointment:
    """Apply a status change or a reschedule; the two cannot be mixed in one request"""
    changes = data.model_dump(exclude_unset=True)
    status = changes.pop("status", None)
    reason = changes.pop("cancellation_reason", None)

    if status is not None:
        if changes:
            raise ValidationError("A status change cannot be combined with other edits")
        return transition(db, principal, appointment, status, reason)
    if reason is not None:
        raise ValidationError("cancellation_reason is only accepted together with status=cancelled")
    if not changes:
        return appointment
    if appointment.status != Status.pending:
        raise ConflictError("Only pending appointments can be changed")

    old_day, old_slot = appointment.appointment_day, appointment.time_slot
    if changes.get("appointment_date") is not None:
        changes["appointment_date"] = to_utc(changes["appointment_date"])
        changes["appointment_day"] = changes["appointment_date"].date()
    for field in RESCHEDULE_FIELDS:
        if field in changes and changes[field] is None:
            raise ValidationError(f"{field} cannot be null")

    new_day = changes.get("appointment_day", old_day)
    new_slot = changes.get("time_slot", old_slot)
    moved = (new_day, new_slot) != (old_day, old_slot)
    if moved:
        _ensure_unoccupied(db, appointment.doctor_id, new_day, new_slot, exclude_id=appointment.id)

    _guarded_update(db, appointment, Status.pending, changes, "updating appointment")

    if moved:
        invalidate_slots(appointment.doctor_id, old_day)
        invalidate_slots(appointment.doctor_id, new_day)
        compliance_logger.log_event(
            action='UPDATE', category='APPOINTMENT', user_id=principal.user_id,
            details=f"Rescheduled from {old_day.isoformat()} {old_slot} to {new_day.isoformat()} {new_slot}",
            resource_type='appointment', resource_id=appointment.id,
        )
    return appointment


# --- Maintenance ---
def consistency_report(db: Session) -> schemas.ConsistencyReport:
    """Appointments whose patient or doctor profile is gone, and active slot keys held more than once"""
    orphans = db.query(models.Appointment.id)\
        .outerjoin(models.User, models.Appointment.patient_id == models.User.id)\
        .outerjoin(models.Doctor, models.Appointment.doctor_id == models.Doctor.id)\
        .filter((models.User.id.is_(None)) | (models.Doctor.id.is_(None)))\
        .all()
    duplicates = db.query(models.Appointment.doctor_id, models.Appointment.appointment_day,
                          models.Appointment.time_slot)\
        .filter(models.Appointment.status.in_(models.OCCUPYING_STATUSES))\
        .group_by(models.Appointment.doctor_id, models.Appointment.appointment_day, models.Appointment.time_slot)\
        .having(func.count(models.Appointment.id) > 1)\
        .all()
    return schemas.ConsistencyReport(
        orphan_appointments=[appointment_id for (appointment_id,) in orphans],
        double_booked_slots=[f"{doctor_id}:{day.isoformat()}:{slot}" for doctor_id, day, slot in duplicates],
    )
