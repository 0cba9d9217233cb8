# app/services/prescription_service.py
import logging
import secrets
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..compliance_logger import compliance_logger
from ..core.errors import AppError, ForbiddenError, InternalError, NotFoundError, ValidationError
from . import notification_service

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 5


def generate_code(issued_on=None) -> str:
    """RX + issue date (yyyymmdd) + four random digits"""
    issued_on = issued_on or models.utcnow()
    return f"RX{issued_on:%Y%m%d}{secrets.randbelow(10000):04d}"


def _code_taken(db: Session, code: str) -> bool:
    return db.query(models.Prescription.id).filter(models.Prescription.code == code).first() is not None


def issue_prescription(db: Session, principal: schemas.Principal,
                       data: schemas.PrescriptionCreate) -> models.Prescription:
    if security.is_admin(principal):
        if data.doctor_id is None:
            raise ValidationError("doctor_id is required when an administrator issues a prescription")
        doctor = crud.get_doctor_or_404(db, data.doctor_id)
    else:
        doctor = crud.get_doctor_by_user(db, principal.user_id)
        if doctor is None:
            raise ForbiddenError("A doctor profile is required to issue prescriptions")

    patient = crud.get_user_or_404(db, data.patient_id)
    if patient.role != models.UserRole.patient:
        raise ValidationError("Prescriptions can only be issued to patient accounts")

    issued_at = data.prescription_date or models.utcnow()
    for _ in range(CODE_ATTEMPTS):
        code = generate_code(issued_at)
        if _code_taken(db, code):
            continue
        prescription = models.Prescription(
            code=code,
            doctor_id=doctor.id,
            patient_id=patient.id,
            patient_name=data.patient_name,
            diagnosis=data.diagnosis,
            medicines=[m.model_dump() for m in data.medicines],
            instructions=data.instructions,
            prescription_date=issued_at,
        )
        db.add(prescription)
        try:
            db.commit()
        except IntegrityError:
            # code claimed concurrently
            db.rollback()
            logger.warning(f"Prescription code {code} collided, retrying")
            continue
        except SQLAlchemyError as e:
            raise crud.storage_failure(db, e, "issuing prescription")
        db.refresh(prescription)
        break
    else:
        logger.error(f"Could not allocate a prescription code after {CODE_ATTEMPTS} attempts")
        raise InternalError("Could not allocate a prescription code, retry later")

    compliance_logger.log_event(
        action='CREATE', category='PRESCRIPTION', user_id=principal.user_id,
        details=f"Issued {prescription.code} to patient {patient.id}",
        resource_type='prescription', resource_id=prescription.id,
    )
    try:
        notification_service.notify(
            db, patient.id, models.NotificationType.prescription_ready,
            "Prescription ready", f"Prescription {prescription.code} has been issued", related_id=prescription.id,
        )
    except AppError as e:
        logger.error(f"Prescription {prescription.code} issued but notification failed: {e.message}")
    return prescription


def _ensure_access(principal: schemas.Principal, prescription: models.Prescription) -> None:
    if not security.can_access_prescription(principal, prescription):
        compliance_logger.log_access_denied(principal.user_id, "prescription", prescription.id,
                                            "Prescription belongs to another patient and doctor")
        raise ForbiddenError("You do not have access to this prescription")


def get_prescription(db: Session, principal: schemas.Principal, prescription_id: uuid.UUID) -> models.Prescription:
    prescription = db.get(models.Prescription, prescription_id)
    if prescription is None:
        raise NotFoundError("Prescription not found")
    _ensure_access(principal, prescription)
    return prescription


def get_by_code(db: Session, principal: schemas.Principal, code: str) -> models.Prescription:
    prescription = db.query(models.Prescription).filter(models.Prescription.code == code.upper()).first()
    if prescription is None:
        raise NotFoundError("Prescription not found")
    _ensure_access(principal, prescription)
    return prescription


def _to_page(items, total, params: schemas.PageParams) -> schemas.Page[schemas.PrescriptionView]:
    return schemas.Page[schemas.PrescriptionView](
        items=[schemas.PrescriptionView.model_validate(p) for p in items],
        total=total, page=params.page, per_page=params.per_page,
    )


def list_prescriptions(db: Session, params: schemas.PageParams,
                       search: Optional[str] = None) -> schemas.Page[schemas.PrescriptionView]:
    query = db.query(models.Prescription)
    if search:
        query = query.filter(
            crud.contains(models.Prescription.code, search)
            | crud.contains(models.Prescription.patient_name, search)
            | crud.contains(models.Prescription.diagnosis, search)
        )
    items, total = crud.paginate(query.order_by(models.Prescription.prescription_date.desc()), params)
    return _to_page(items, total, params)


def list_for_doctor(db: Session, principal: schemas.Principal, doctor_id: uuid.UUID,
                    params: schemas.PageParams) -> schemas.Page[schemas.PrescriptionView]:
    doctor = crud.get_doctor_or_404(db, doctor_id)
    if not security.is_admin(principal) and doctor.user_id != principal.user_id:
        raise ForbiddenError("You can only view prescriptions you issued")
    query = db.query(models.Prescription).filter(models.Prescription.doctor_id == doctor_id)
    items, total = crud.paginate(query.order_by(models.Prescription.prescription_date.desc()), params)
    return _to_page(items, total, params)


def list_for_patient(db: Session, principal: schemas.Principal, patient_id: uuid.UUID,
                     params: schemas.PageParams) -> schemas.Page[schemas.PrescriptionView]:
    security.ensure_self_or_admin(principal, patient_id)
    query = db.query(models.Prescription).filter(models.Prescription.patient_id == patient_id)
    items, total = crud.paginate(query.order_by(models.Prescription.prescription_date.desc()), params)
    return _to_page(items, total, params)
