# app/routers/departments.py
import uuid
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..compliance_logger import compliance_logger
from ..core.errors import NotFoundError
from ..database import get_db

router = APIRouter(
    prefix="/departments",
    tags=["Departments"],
)


# Public reads
@router.get("", response_model=schemas.ApiResponse[schemas.Page[schemas.DepartmentView]])
def read_departments(
    params: schemas.PageParams = Depends(),
    status: Optional[models.DepartmentStatus] = None,
    db: Session = Depends(get_db),
):
    return schemas.ok(crud.list_departments(db, params, status))


@router.get("/code/{code}", response_model=schemas.ApiResponse[schemas.DepartmentView])
def read_department_by_code(code: str, db: Session = Depends(get_db)):
    department = crud.get_department_by_code(db, code)
    if not department:
        raise NotFoundError("Department not found")
    return schemas.ok(schemas.DepartmentView.model_validate(department))


@router.get("/{department_id}", response_model=schemas.ApiResponse[schemas.DepartmentView])
def read_department(department_id: uuid.UUID, db: Session = Depends(get_db)):
    department = crud.get_department_view(db, department_id)
    if department is None:
        raise NotFoundError("Department not found")
    return schemas.ok(department)


# Admin writes
@router.post("", response_model=schemas.ApiResponse[schemas.DepartmentView])
def create_department(
    department: schemas.DepartmentCreate,
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    db_department = crud.create_department(db, department)
    compliance_logger.log_event(
        action='CREATE', category='DEPARTMENT', user_id=current_admin.user_id,
        resource_type='department', resource_id=db_department.id, details=f"Created department {db_department.code}",
    )
    return schemas.ok(schemas.DepartmentView.model_validate(db_department), "Department created")


@router.put("/{department_id}", response_model=schemas.ApiResponse[schemas.DepartmentView])
def update_department(
    department_id: uuid.UUID,
    department: schemas.DepartmentUpdate,
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    db_department = crud.update_department(db, department_id, department)
    return schemas.ok(schemas.DepartmentView.model_validate(db_department), "Department updated")


@router.delete("/{department_id}", response_model=schemas.ApiResponse[None])
def delete_department(
    department_id: uuid.UUID,
    db: Session = Depends(get_db),
    current_admin: schemas.Principal = Depends(security.require_admin),
):
    crud.delete_department(db, department_id)
    compliance_logger.log_event(
        action='DELETE', category='DEPARTMENT', user_id=current_admin.user_id,
        resource_type='department', resource_id=department_id,
    )
    return schemas.ok(None, "Department deleted")
