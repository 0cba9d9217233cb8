# app/routers/users.py
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..compliance_logger import compliance_logger
from ..core.errors import ConflictError, ForbiddenError
from ..database import get_db

router = APIRouter(
    prefix="/users",
    tags=["Users"],
)


@router.get("", response_model=schemas.ApiResponse[schemas.Page[schemas.UserView]])
def read_all_users(
    params: schemas.PageParams = Depends(),
    role: Optional[models.UserRole] = None,
    status: Optional[models.UserStatus] = None,
    search: Optional[str] = Query(None, max_length=50),
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    users, total = crud.list_users(db, params, role=role, status=status, search=search)
    return schemas.ok(schemas.Page[schemas.UserView](
        items=[schemas.UserView.model_validate(u) for u in users],
        total=total, page=params.page, per_page=params.per_page,
    ))


@router.post("", response_model=schemas.ApiResponse[schemas.UserView])
def create_new_user(
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    new_user = crud.create_user(db, user)
    compliance_logger.log_event(
        action='CREATE', category='USER', user_id=current_admin.user_id,
        resource_type='user', resource_id=new_user.id,
        details=f"Created new user: {new_user.account} with role {new_user.role.value}",
    )
    return schemas.ok(schemas.UserView.model_validate(new_user), "User created")


@router.post("/batch-delete", response_model=schemas.ApiResponse[int])
def batch_delete_users(
    request: schemas.BatchDeleteRequest,
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    if current_admin.user_id in request.ids:
        raise ConflictError("You cannot delete your own account")
    deleted = crud.batch_delete_users(db, request.ids)
    compliance_logger.log_event(
        action='BULK_ACTION', category='USER', user_id=current_admin.user_id, severity='WARNING',
        details=f"Deleted {deleted} users: {', '.join(str(i) for i in request.ids)}",
    )
    return schemas.ok(deleted, f"Deleted {deleted} users")


@router.get("/{user_id}", response_model=schemas.ApiResponse[schemas.UserView])
def read_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    security.ensure_self_or_admin(principal, user_id)
    return schemas.ok(schemas.UserView.model_validate(crud.get_user_or_404(db, user_id)))


@router.put("/{user_id}", response_model=schemas.ApiResponse[schemas.UserView])
def update_existing_user(
    user_id: uuid.UUID,
    user_update: schemas.UserUpdate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    security.ensure_self_or_admin(principal, user_id)
    changes = user_update.model_fields_set
    if not security.is_admin(principal) and changes & {"role", "status"}:
        raise ForbiddenError("Only administrators can change role or status")

    db_user = crud.get_user_or_404(db, user_id)
    updated_user = crud.update_user(db, db_user, user_update)
    compliance_logger.log_event(
        action='UPDATE', category='USER', user_id=principal.user_id,
        resource_type='user', resource_id=user_id,
        details=f"Updated user {updated_user.account}: {', '.join(sorted(changes - {'password'}))}",
    )
    return schemas.ok(schemas.UserView.model_validate(updated_user), "User updated")


@router.delete("/{user_id}", response_model=schemas.ApiResponse[schemas.UserView])
def deactivate_existing_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    """Accounts are deactivated rather than removed; see batch-delete for hard deletion"""
    if user_id == current_admin.user_id:
        raise ConflictError("You cannot deactivate your own account")
    db_user = crud.deactivate_user(db, crud.get_user_or_404(db, user_id))
    compliance_logger.log_event(
        action='DELETE', category='USER', user_id=current_admin.user_id,
        resource_type='user', resource_id=user_id, details=f"Deactivated user: {db_user.account}",
    )
    return schemas.ok(schemas.UserView.model_validate(db_user), "User deactivated")
