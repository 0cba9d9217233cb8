# app/routers/appointments.py
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from .. import models, schemas, security
from ..database import get_db
from ..services import appointment_service

router = APIRouter(
    prefix="/appointments",
    tags=["Appointments"],
)

Page = schemas.Page[schemas.AppointmentView]


def _view(appointment: models.Appointment) -> schemas.AppointmentView:
    return schemas.AppointmentView.model_validate(appointment)


@router.get("/available-slots", response_model=schemas.ApiResponse[schemas.AvailableSlots])
def read_available_slots(
    doctor_id: uuid.UUID,
    date: date = Query(..., description="Calendar date, YYYY-MM-DD"),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(appointment_service.available_slots(db, doctor_id, date))


@router.get("", response_model=schemas.ApiResponse[Page])
def read_appointments(
    params: schemas.PageParams = Depends(),
    status: Optional[models.AppointmentStatus] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    doctor_id: Optional[uuid.UUID] = None,
    patient_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(appointment_service.list_appointments(
        db, principal, params, status=status, date_from=date_from, date_to=date_to,
        doctor_id=doctor_id, patient_id=patient_id,
    ))


@router.get("/doctor/{doctor_id}", response_model=schemas.ApiResponse[Page])
def read_doctor_appointments(
    doctor_id: uuid.UUID,
    params: schemas.PageParams = Depends(),
    status: Optional[models.AppointmentStatus] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_doctor_or_admin),
):
    return schemas.ok(appointment_service.list_for_doctor(
        db, principal, doctor_id, params, status=status, date_from=date_from, date_to=date_to,
    ))


@router.get("/patient/{patient_id}", response_model=schemas.ApiResponse[Page])
def read_patient_appointments(
    patient_id: uuid.UUID,
    params: schemas.PageParams = Depends(),
    status: Optional[models.AppointmentStatus] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_patient_or_admin),
):
    """Visit history, most recent first"""
    return schemas.ok(appointment_service.list_for_patient(
        db, principal, patient_id, params, status=status, date_from=date_from, date_to=date_to,
    ))


@router.post("", response_model=schemas.ApiResponse[schemas.AppointmentView])
def create_appointment(
    appointment: schemas.AppointmentCreate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_patient_or_admin),
):
    created = appointment_service.create_appointment(db, principal, appointment)
    return schemas.ok(_view(created), "Appointment booked")


@router.get("/{appointment_id}", response_model=schemas.ApiResponse[schemas.AppointmentView])
def read_appointment(
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(_view(appointment_service.get_appointment(db, principal, appointment_id)))


@router.put("/{appointment_id}", response_model=schemas.ApiResponse[schemas.AppointmentView])
def update_appointment(
    appointment_id: uuid.UUID,
    changes: schemas.AppointmentUpdate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    appointment = appointment_service.get_appointment(db, principal, appointment_id)
    updated = appointment_service.update_appointment(db, principal, appointment, changes)
    return schemas.ok(_view(updated), "Appointment updated")


@router.put("/{appointment_id}/confirm", response_model=schemas.ApiResponse[schemas.AppointmentView])
def confirm_appointment(
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_doctor_or_admin),
):
    appointment = appointment_service.get_appointment(db, principal, appointment_id)
    return schemas.ok(_view(appointment_service.confirm(db, principal, appointment)), "Appointment confirmed")


@router.put("/{appointment_id}/complete", response_model=schemas.ApiResponse[schemas.AppointmentView])
def complete_appointment(
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_doctor_or_admin),
):
    appointment = appointment_service.get_appointment(db, principal, appointment_id)
    return schemas.ok(_view(appointment_service.complete(db, principal, appointment)), "Appointment completed")


@router.put("/{appointment_id}/cancel", response_model=schemas.ApiResponse[schemas.AppointmentView])
def cancel_appointment(
    appointment_id: uuid.UUID,
    request: Optional[schemas.CancelRequest] = Body(None),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_patient_or_admin),
):
    appointment = appointment_service.get_appointment(db, principal, appointment_id)
    reason = request.reason if request else None
    return schemas.ok(_view(appointment_service.cancel(db, principal, appointment, reason)), "Appointment cancelled")
