# app/routers/prescriptions.py
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas, security
from ..database import get_db
from ..services import prescription_service

router = APIRouter(
    prefix="/prescriptions",
    tags=["Prescriptions"],
)

Page = schemas.Page[schemas.PrescriptionView]


@router.post("", response_model=schemas.ApiResponse[schemas.PrescriptionView])
def issue_prescription(
    prescription: schemas.PrescriptionCreate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_doctor_or_admin),
):
    created = prescription_service.issue_prescription(db, principal, prescription)
    return schemas.ok(schemas.PrescriptionView.model_validate(created), "Prescription issued")


@router.get("", response_model=schemas.ApiResponse[Page])
def read_prescriptions(
    params: schemas.PageParams = Depends(),
    search: Optional[str] = Query(None, max_length=50),
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    return schemas.ok(prescription_service.list_prescriptions(db, params, search))


@router.get("/code/{code}", response_model=schemas.ApiResponse[schemas.PrescriptionView])
def read_prescription_by_code(
    code: str,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    prescription = prescription_service.get_by_code(db, principal, code)
    return schemas.ok(schemas.PrescriptionView.model_validate(prescription))


@router.get("/doctor/{doctor_id}", response_model=schemas.ApiResponse[Page])
def read_doctor_prescriptions(
    doctor_id: uuid.UUID,
    params: schemas.PageParams = Depends(),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_doctor_or_admin),
):
    return schemas.ok(prescription_service.list_for_doctor(db, principal, doctor_id, params))


@router.get("/patient/{patient_id}", response_model=schemas.ApiResponse[Page])
def read_patient_prescriptions(
    patient_id: uuid.UUID,
    params: schemas.PageParams = Depends(),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_patient_or_admin),
):
    return schemas.ok(prescription_service.list_for_patient(db, principal, patient_id, params))


@router.get("/{prescription_id}", response_model=schemas.ApiResponse[schemas.PrescriptionView])
def read_prescription(
    prescription_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    prescription = prescription_service.get_prescription(db, principal, prescription_id)
    return schemas.ok(schemas.PrescriptionView.model_validate(prescription))
