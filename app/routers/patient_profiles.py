# app/routers/patient_profiles.py
import uuid
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import crud, schemas, security
from ..database import get_db

router = APIRouter(
    prefix="/patient-profiles",
    tags=["Patient Profiles"],
)


@router.get("", response_model=schemas.ApiResponse[List[schemas.PatientProfileView]])
def read_my_profiles(
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    profiles = crud.list_patient_profiles(db, principal.user_id)
    return schemas.ok([schemas.PatientProfileView.model_validate(p) for p in profiles])


@router.post("", response_model=schemas.ApiResponse[schemas.PatientProfileView])
def create_profile(
    profile: schemas.PatientProfileCreate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    db_profile = crud.create_patient_profile(db, principal.user_id, profile)
    return schemas.ok(schemas.PatientProfileView.model_validate(db_profile), "Patient profile created")


@router.get("/{profile_id}", response_model=schemas.ApiResponse[schemas.PatientProfileView])
def read_profile(
    profile_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    profile = crud.get_patient_profile(db, profile_id, principal.user_id)
    return schemas.ok(schemas.PatientProfileView.model_validate(profile))


@router.put("/{profile_id}", response_model=schemas.ApiResponse[schemas.PatientProfileView])
def update_profile(
    profile_id: uuid.UUID,
    profile_update: schemas.PatientProfileUpdate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    db_profile = crud.get_patient_profile(db, profile_id, principal.user_id)
    db_profile = crud.update_patient_profile(db, db_profile, profile_update)
    return schemas.ok(schemas.PatientProfileView.model_validate(db_profile), "Patient profile updated")


@router.put("/{profile_id}/default", response_model=schemas.ApiResponse[schemas.PatientProfileView])
def set_default_profile(
    profile_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    db_profile = crud.get_patient_profile(db, profile_id, principal.user_id)
    db_profile = crud.set_default_patient_profile(db, db_profile)
    return schemas.ok(schemas.PatientProfileView.model_validate(db_profile), "Default profile set")


@router.delete("/{profile_id}", response_model=schemas.ApiResponse[None])
def delete_profile(
    profile_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    crud.delete_patient_profile(db, crud.get_patient_profile(db, profile_id, principal.user_id))
    return schemas.ok(None, "Patient profile deleted")
