# app/crud.py - data access for the reference entities
import logging
import uuid
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select, update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from . import models, schemas
from .core.errors import ConflictError, DependencyUnavailableError, InternalError, NotFoundError
from .security import get_password_hash
from .services.cache_service import CacheDurations, CacheKeys, cached, get_cache

logger = logging.getLogger(__name__)


def storage_failure(db: Session, error: SQLAlchemyError, action: str):
    """Roll back and classify a storage error"""
    db.rollback()
    if isinstance(error, OperationalError):
        logger.error(f"Storage unavailable while {action}: {error}")
        return DependencyUnavailableError("Storage is unavailable, retry later")
    logger.error(f"Storage error while {action}: {error}", exc_info=error)
    return InternalError()


def contains(column, term: str):
    return func.lower(column).contains(term.lower(), autoescape=True)


def paginate(query, params: schemas.PageParams) -> Tuple[list, int]:
    total = query.order_by(None).count()
    items = query.offset(params.offset).limit(params.per_page).all()
    return items, total


# ==================== USERS ====================

def get_user(db: Session, user_id: uuid.UUID) -> Optional[models.User]:
    return db.get(models.User, user_id)


def get_user_or_404(db: Session, user_id: uuid.UUID) -> models.User:
    user = get_user(db, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def get_user_by_account(db: Session, account: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.account == account).first()


@cached(lambda db, user_id: CacheKeys.user(user_id), CacheDurations.MEDIUM, schemas.UserView)
def get_user_view(db: Session, user_id: uuid.UUID) -> Optional[schemas.UserView]:
    """Principal view, memoized under user:<id>"""
    user = get_user(db, user_id)
    return schemas.UserView.model_validate(user) if user else None


def invalidate_user_cache(user: models.User) -> None:
    get_cache().delete(CacheKeys.user(user.id))


def list_users(db: Session, params: schemas.PageParams, role: Optional[models.UserRole] = None,
               status: Optional[models.UserStatus] = None, search: Optional[str] = None) -> Tuple[List[models.User], int]:
    query = db.query(models.User)
    if role:
        query = query.filter(models.User.role == role)
    if status:
        query = query.filter(models.User.status == status)
    if search:
        query = query.filter(or_(
            contains(models.User.account, search),
            contains(models.User.name, search),
            contains(models.User.phone, search),
        ))
    return paginate(query.order_by(models.User.created_at.desc()), params)


def create_user(db: Session, user: schemas.RegisterRequest) -> models.User:
    if get_user_by_account(db, user.account):
        raise ConflictError("Account already registered")

    db_user = models.User(
        account=user.account,
        name=user.name,
        password_hash=get_password_hash(user.password),
        gender=user.gender,
        phone=user.phone,
        email=user.email,
        birthday=user.birthday,
        role=user.role,
        status=models.UserStatus.active,
    )
    db.add(db_user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Account already registered")
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "creating user")
    db.refresh(db_user)
    return db_user


def update_user(db: Session, db_user: models.User, user_update: schemas.UserUpdate) -> models.User:
    data = user_update.model_dump(exclude_unset=True)
    password = data.pop("password", None)
    for field, value in data.items():
        setattr(db_user, field, value)
    if password:
        db_user.password_hash = get_password_hash(password)
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "updating user")
    db.refresh(db_user)
    invalidate_user_cache(db_user)
    return db_user


def deactivate_user(db: Session, db_user: models.User) -> models.User:
    db_user.status = models.UserStatus.inactive
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "deactivating user")
    db.refresh(db_user)
    invalidate_user_cache(db_user)
    return db_user


def batch_delete_users(db: Session, user_ids: List[uuid.UUID]) -> int:
    """Hard-delete principals and everything they solely own, in one transaction.

    Principals still referenced by appointments or prescriptions (as patient
    or through their clinician profile) are refused as a whole.
    """
    users = db.query(models.User).filter(models.User.id.in_(user_ids)).all()
    if len(users) != len(set(user_ids)):
        raise NotFoundError("One or more users do not exist")

    doctor_ids = [d for (d,) in db.query(models.Doctor.id).filter(models.Doctor.user_id.in_(user_ids)).all()]
    referenced = db.query(models.Appointment.id).filter(or_(
        models.Appointment.patient_id.in_(user_ids),
        models.Appointment.doctor_id.in_(doctor_ids),
    )).first() or db.query(models.Prescription.id).filter(or_(
        models.Prescription.patient_id.in_(user_ids),
        models.Prescription.doctor_id.in_(doctor_ids),
    )).first()
    if referenced:
        raise ConflictError("Users with appointments or prescriptions cannot be deleted; deactivate them instead")

    try:
        db.query(models.PostLike).filter(models.PostLike.user_id.in_(user_ids)).delete(synchronize_session=False)
        db.query(models.PostComment).filter(models.PostComment.author_id.in_(user_ids)).delete(synchronize_session=False)
        # cascades to other users' likes and comments on these posts
        for post in db.query(models.CirclePost).filter(models.CirclePost.author_id.in_(user_ids)).all():
            db.delete(post)
        db.flush()
        memberships = db.query(models.CircleMember).filter(models.CircleMember.user_id.in_(user_ids)).all()
        for membership in memberships:
            if membership.circle.creator_id not in user_ids:
                membership.circle.member_count = max(0, membership.circle.member_count - 1)
            db.delete(membership)
        db.flush()
        for circle in db.query(models.Circle).filter(models.Circle.creator_id.in_(user_ids)).all():
            db.delete(circle)
        db.query(models.Notification).filter(models.Notification.user_id.in_(user_ids)).delete(synchronize_session=False)
        db.query(models.PatientProfile).filter(models.PatientProfile.user_id.in_(user_ids)).delete(synchronize_session=False)
        db.query(models.LiveStream).filter(models.LiveStream.host_id.in_(user_ids)).delete(synchronize_session=False)
        db.query(models.Doctor).filter(models.Doctor.user_id.in_(user_ids)).delete(synchronize_session=False)
        for user in users:
            db.delete(user)
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "deleting users")

    cache = get_cache()
    for user in users:
        invalidate_user_cache(user)
    for doctor_id in doctor_ids:
        cache.delete(CacheKeys.doctor(doctor_id))
    return len(users)


# ==================== DEPARTMENTS ====================

def _department_list_key(db, params, status=None):
    return CacheKeys.departments_list(params.page, params.per_page, status.value if status else None)


@cached(_department_list_key, CacheDurations.LONG, schemas.Page[schemas.DepartmentView])
def list_departments(db: Session, params: schemas.PageParams,
                     status: Optional[models.DepartmentStatus] = None) -> schemas.Page[schemas.DepartmentView]:
    query = db.query(models.Department)
    if status:
        query = query.filter(models.Department.status == status)
    items, total = paginate(query.order_by(models.Department.name), params)
    return schemas.Page[schemas.DepartmentView](
        items=[schemas.DepartmentView.model_validate(d) for d in items],
        total=total, page=params.page, per_page=params.per_page,
    )


@cached(lambda db, department_id: CacheKeys.department(department_id), CacheDurations.LONG, schemas.DepartmentView)
def get_department_view(db: Session, department_id: uuid.UUID) -> Optional[schemas.DepartmentView]:
    department = db.get(models.Department, department_id)
    return schemas.DepartmentView.model_validate(department) if department else None


def get_department_by_code(db: Session, code: str) -> Optional[models.Department]:
    return db.query(models.Department).filter(models.Department.code == code).first()


def _invalidate_departments() -> None:
    get_cache().delete_pattern(CacheKeys.DEPARTMENTS_PATTERN)


def create_department(db: Session, department: schemas.DepartmentCreate) -> models.Department:
    if get_department_by_code(db, department.code):
        raise ConflictError("Department code already exists")
    db_department = models.Department(**department.model_dump())
    db.add(db_department)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Department code already exists")
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "creating department")
    db.refresh(db_department)
    _invalidate_departments()
    return db_department


def update_department(db: Session, department_id: uuid.UUID, department_update: schemas.DepartmentUpdate) -> models.Department:
    db_department = db.get(models.Department, department_id)
    if not db_department:
        raise NotFoundError("Department not found")
    data = department_update.model_dump(exclude_unset=True)
    if "code" in data and data["code"] != db_department.code and get_department_by_code(db, data["code"]):
        raise ConflictError("Department code already exists")
    for field, value in data.items():
        setattr(db_department, field, value)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Department code already exists")
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "updating department")
    db.refresh(db_department)
    _invalidate_departments()
    return db_department


def delete_department(db: Session, department_id: uuid.UUID) -> None:
    db_department = db.get(models.Department, department_id)
    if not db_department:
        raise NotFoundError("Department not found")
    db.delete(db_department)
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "deleting department")
    _invalidate_departments()


# ==================== DOCTORS ====================

def get_doctor(db: Session, doctor_id: uuid.UUID) -> Optional[models.Doctor]:
    return db.get(models.Doctor, doctor_id)


def get_doctor_or_404(db: Session, doctor_id: uuid.UUID) -> models.Doctor:
    doctor = get_doctor(db, doctor_id)
    if not doctor:
        raise NotFoundError("Doctor not found")
    return doctor


def get_doctor_by_user(db: Session, user_id: uuid.UUID) -> Optional[models.Doctor]:
    return db.query(models.Doctor).filter(models.Doctor.user_id == user_id).first()


def get_doctor_user_id(db: Session, doctor_id: uuid.UUID) -> Optional[uuid.UUID]:
    return db.execute(select(models.Doctor.user_id).where(models.Doctor.id == doctor_id)).scalar_one_or_none()


@cached(lambda db, doctor_id: CacheKeys.doctor(doctor_id), CacheDurations.LONG, schemas.DoctorView)
def get_doctor_view(db: Session, doctor_id: uuid.UUID) -> Optional[schemas.DoctorView]:
    doctor = get_doctor(db, doctor_id)
    return schemas.DoctorView.model_validate(doctor) if doctor else None


def list_doctors(db: Session, params: schemas.PageParams, department: Optional[str] = None,
                 search: Optional[str] = None) -> Tuple[List[models.Doctor], int]:
    query = db.query(models.Doctor).join(models.User, models.Doctor.user_id == models.User.id)\
        .options(joinedload(models.Doctor.user))
    if department:
        query = query.filter(models.Doctor.department == department)
    if search:
        query = query.filter(or_(
            contains(models.User.name, search),
            contains(models.Doctor.hospital, search),
            contains(models.Doctor.title, search),
        ))
    return paginate(query.order_by(models.Doctor.created_at), params)


def create_doctor(db: Session, user_id: uuid.UUID, doctor: schemas.DoctorCreate) -> models.Doctor:
    user = get_user_or_404(db, user_id)
    if user.role != models.UserRole.doctor:
        raise ConflictError("A doctor profile can only be attached to a doctor account")
    if get_doctor_by_user(db, user_id):
        raise ConflictError("This doctor already has a profile")

    db_doctor = models.Doctor(user_id=user_id, **doctor.model_dump(exclude={"user_id"}))
    db.add(db_doctor)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("This doctor already has a profile")
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "creating doctor profile")
    db.refresh(db_doctor)
    return db_doctor


def update_doctor(db: Session, db_doctor: models.Doctor, values: dict) -> models.Doctor:
    for field, value in values.items():
        setattr(db_doctor, field, value)
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "updating doctor profile")
    db.refresh(db_doctor)
    get_cache().delete(CacheKeys.doctor(db_doctor.id))
    return db_doctor


def delete_doctor(db: Session, db_doctor: models.Doctor) -> None:
    in_use = db.query(models.Appointment.id).filter(models.Appointment.doctor_id == db_doctor.id).first() \
        or db.query(models.Prescription.id).filter(models.Prescription.doctor_id == db_doctor.id).first()
    if in_use:
        raise ConflictError("Doctor profile is referenced by appointments or prescriptions")
    doctor_id = db_doctor.id
    db.delete(db_doctor)
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "deleting doctor profile")
    get_cache().delete(CacheKeys.doctor(doctor_id))


# ==================== PATIENT PROFILES ====================

def list_patient_profiles(db: Session, user_id: uuid.UUID) -> List[models.PatientProfile]:
    return db.query(models.PatientProfile)\
        .filter(models.PatientProfile.user_id == user_id)\
        .order_by(models.PatientProfile.is_default.desc(), models.PatientProfile.created_at)\
        .all()


def get_patient_profile(db: Session, profile_id: uuid.UUID, user_id: uuid.UUID) -> models.PatientProfile:
    """Contact cards are visible to their owner only; anyone else sees a 404"""
    profile = db.get(models.PatientProfile, profile_id)
    if not profile or profile.user_id != user_id:
        raise NotFoundError("Patient profile not found")
    return profile


def _clear_default(db: Session, user_id: uuid.UUID, keep_id: Optional[uuid.UUID] = None) -> None:
    stmt = sa_update(models.PatientProfile)\
        .where(models.PatientProfile.user_id == user_id, models.PatientProfile.is_default.is_(True))
    if keep_id is not None:
        stmt = stmt.where(models.PatientProfile.id != keep_id)
    db.execute(stmt.values(is_default=False))


def create_patient_profile(db: Session, user_id: uuid.UUID, profile: schemas.PatientProfileCreate) -> models.PatientProfile:
    has_any = db.query(models.PatientProfile.id).filter(models.PatientProfile.user_id == user_id).first()
    is_default = profile.is_default or not has_any
    try:
        if is_default:
            _clear_default(db, user_id)
        db_profile = models.PatientProfile(user_id=user_id, **profile.model_dump(exclude={"is_default"}), is_default=is_default)
        db.add(db_profile)
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "creating patient profile")
    db.refresh(db_profile)
    return db_profile


def update_patient_profile(db: Session, db_profile: models.PatientProfile,
                           profile_update: schemas.PatientProfileUpdate) -> models.PatientProfile:
    for field, value in profile_update.model_dump(exclude_unset=True).items():
        setattr(db_profile, field, value)
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "updating patient profile")
    db.refresh(db_profile)
    return db_profile


def set_default_patient_profile(db: Session, db_profile: models.PatientProfile) -> models.PatientProfile:
    try:
        _clear_default(db, db_profile.user_id, keep_id=db_profile.id)
        db_profile.is_default = True
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "setting default patient profile")
    db.refresh(db_profile)
    return db_profile


def delete_patient_profile(db: Session, db_profile: models.PatientProfile) -> None:
    user_id, was_default = db_profile.user_id, db_profile.is_default
    try:
        db.delete(db_profile)
        db.flush()
        if was_default:
            successor = db.query(models.PatientProfile)\
                .filter(models.PatientProfile.user_id == user_id)\
                .order_by(models.PatientProfile.created_at).first()
            if successor:
                successor.is_default = True
        db.commit()
    except SQLAlchemyError as e:
        raise storage_failure(db, e, "deleting patient profile")


# ==================== AUDIT LOGS ====================

def get_audit_logs(db: Session, params: schemas.PageParams, user_id: Optional[uuid.UUID] = None,
                   action: Optional[models.AuditAction] = None, category: Optional[str] = None,
                   start_date: Optional[date] = None, end_date: Optional[date] = None) -> Tuple[List[models.AuditLog], int]:
    query = db.query(models.AuditLog)
    if user_id:
        query = query.filter(models.AuditLog.user_id == user_id)
    if action:
        query = query.filter(models.AuditLog.action == action)
    if category:
        query = query.filter(models.AuditLog.category == category.upper())
    if start_date:
        query = query.filter(func.date(models.AuditLog.timestamp) >= start_date)
    if end_date:
        query = query.filter(func.date(models.AuditLog.timestamp) <= end_date)
    return paginate(query.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc()), params)
