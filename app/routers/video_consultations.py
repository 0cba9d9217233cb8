# app/routers/video_consultations.py
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import models, schemas, security
from ..core.errors import ConflictError, ForbiddenError
from ..database import get_db
from ..services import appointment_service
from ..services.signaling_service import call_registry

router = APIRouter(
    prefix="/video-consultations",
    tags=["Video Consultations"],
)


@router.post("/{appointment_id}/call", response_model=schemas.ApiResponse[schemas.CallResult])
def start_call(
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    """Ring the other participant of a confirmed online consultation"""
    appointment = appointment_service.get_appointment(db, principal, appointment_id)
    if appointment.visit_type != models.VisitType.online_video:
        raise ConflictError("This appointment is not an online video consultation")
    if appointment.status != models.AppointmentStatus.confirmed:
        raise ConflictError("Calls can only be placed for confirmed appointments")

    doctor_user_id = appointment.doctor.user_id
    if principal.user_id == appointment.patient_id:
        callee = doctor_user_id
    elif principal.user_id == doctor_user_id:
        callee = appointment.patient_id
    else:
        raise ForbiddenError("Only the patient or the assigned doctor can place this call")

    delivered = call_registry.ring(appointment.id, principal.user_id, callee)
    message = "Call request sent" if delivered else "The other participant is offline"
    return schemas.ok(schemas.CallResult(consultation_id=appointment.id, to_user_id=callee, delivered=delivered), message)
