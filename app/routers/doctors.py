# app/routers/doctors.py
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.orm import Session

from .. import crud, schemas, security
from ..compliance_logger import compliance_logger
from ..core.errors import NotFoundError, ValidationError
from ..database import get_db
from ..services.storage_service import LocalFileStorage, get_storage

router = APIRouter(
    prefix="/doctors",
    tags=["Doctors"],
)


@router.get("", response_model=schemas.ApiResponse[schemas.Page[schemas.DoctorView]])
def read_doctors(
    params: schemas.PageParams = Depends(),
    department: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=50),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    doctors, total = crud.list_doctors(db, params, department=department, search=search)
    return schemas.ok(schemas.Page[schemas.DoctorView](
        items=[schemas.DoctorView.model_validate(d) for d in doctors],
        total=total, page=params.page, per_page=params.per_page,
    ))


@router.get("/by-user/{user_id}", response_model=schemas.ApiResponse[schemas.DoctorView])
def read_doctor_by_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    doctor = crud.get_doctor_by_user(db, user_id)
    if doctor is None:
        raise NotFoundError("Doctor not found")
    return schemas.ok(schemas.DoctorView.model_validate(doctor))


@router.get("/{doctor_id}", response_model=schemas.ApiResponse[schemas.DoctorView])
def read_doctor(
    doctor_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    doctor = crud.get_doctor_view(db, doctor_id)
    if doctor is None:
        raise NotFoundError("Doctor not found")
    return schemas.ok(doctor)


@router.post("", response_model=schemas.ApiResponse[schemas.DoctorView])
def create_doctor_profile(
    doctor: schemas.DoctorCreate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.require_doctor_or_admin),
):
    """Admins attach a profile to any doctor account; doctors create their own"""
    if security.is_admin(principal):
        if doctor.user_id is None:
            raise ValidationError("user_id is required")
        user_id = doctor.user_id
    else:
        user_id = principal.user_id
    db_doctor = crud.create_doctor(db, user_id, doctor)
    compliance_logger.log_event(
        action='CREATE', category='DOCTOR', user_id=principal.user_id,
        resource_type='doctor', resource_id=db_doctor.id, details=f"Created doctor profile for user {user_id}",
    )
    return schemas.ok(schemas.DoctorView.model_validate(db_doctor), "Doctor profile created")


@router.put("/{doctor_id}", response_model=schemas.ApiResponse[schemas.DoctorView])
def update_doctor_profile(
    doctor_id: uuid.UUID,
    doctor_update: schemas.DoctorUpdate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    db_doctor = crud.get_doctor_or_404(db, doctor_id)
    security.ensure_doctor_owner_or_admin(principal, db_doctor)
    values = {k: v for k, v in doctor_update.model_dump(exclude_unset=True).items()
              if v is not None or k in ("id_number", "introduction", "experience")}
    db_doctor = crud.update_doctor(db, db_doctor, values)
    return schemas.ok(schemas.DoctorView.model_validate(db_doctor), "Doctor profile updated")


@router.put("/{doctor_id}/photos", response_model=schemas.ApiResponse[schemas.DoctorView])
def upload_doctor_photos(
    doctor_id: uuid.UUID,
    avatar: Optional[UploadFile] = File(None),
    license_photo: Optional[UploadFile] = File(None),
    id_card_front: Optional[UploadFile] = File(None),
    id_card_back: Optional[UploadFile] = File(None),
    title_cert: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
    storage: LocalFileStorage = Depends(get_storage),
):
    db_doctor = crud.get_doctor_or_404(db, doctor_id)
    security.ensure_doctor_owner_or_admin(principal, db_doctor)

    uploads = {
        "avatar": avatar,
        "license_photo": license_photo,
        "id_card_front": id_card_front,
        "id_card_back": id_card_back,
        "title_cert": title_cert,
    }
    uploads = {field: f for field, f in uploads.items() if f is not None and f.filename}
    if not uploads:
        raise ValidationError(f"Upload at least one of: {', '.join(schemas.DOCTOR_PHOTO_FIELDS)}")

    values, previous = {}, {}
    for field, upload in uploads.items():
        values[field] = storage.save(upload, f"doctors/{field}")
        previous[field] = getattr(db_doctor, field)
    db_doctor = crud.update_doctor(db, db_doctor, values)
    for url in previous.values():
        storage.delete(url)
    return schemas.ok(schemas.DoctorView.model_validate(db_doctor), "Photos uploaded")


@router.delete("/{doctor_id}", response_model=schemas.ApiResponse[None])
def delete_doctor_profile(
    doctor_id: uuid.UUID,
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    crud.delete_doctor(db, crud.get_doctor_or_404(db, doctor_id))
    compliance_logger.log_event(
        action='DELETE', category='DOCTOR', user_id=current_admin.user_id,
        resource_type='doctor', resource_id=doctor_id,
    )
    return schemas.ok(None, "Doctor profile deleted")
