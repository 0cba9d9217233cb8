# app/services/circle_service.py
"""Community circles. Membership roles (owner/admin/member) are local to each
circle and independent of the account role; a global admin may still manage
any circle."""
import logging
import uuid
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .. import crud, models, schemas, security
from ..core.errors import ConflictError, ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

Role = models.CircleRole


def _membership(db: Session, circle_id: uuid.UUID, user_id: uuid.UUID) -> Optional[models.CircleMember]:
    return db.query(models.CircleMember).filter(
        models.CircleMember.circle_id == circle_id,
        models.CircleMember.user_id == user_id,
    ).first()


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, action)


def _shift_member_count(db: Session, circle: models.Circle, delta: int, action: str) -> None:
    """Adjust the counter in SQL so concurrent joins and leaves do not overwrite each other"""
    query = db.query(models.Circle).filter(models.Circle.id == circle.id)
    if delta < 0:
        query = query.filter(models.Circle.member_count > 0)
    try:
        query.update({models.Circle.member_count: models.Circle.member_count + delta}, synchronize_session=False)
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, action)


def to_view(db: Session, circle: models.Circle, user_id: Optional[uuid.UUID] = None) -> schemas.CircleView:
    view = schemas.CircleView.model_validate(circle)
    if user_id is not None:
        membership = _membership(db, circle.id, user_id)
        view.member_role = membership.role if membership else None
    return view


def get_circle(db: Session, circle_id: uuid.UUID) -> models.Circle:
    circle = db.get(models.Circle, circle_id)
    if circle is None:
        raise NotFoundError("Circle not found")
    return circle


def list_circles(db: Session, params: schemas.PageParams, category: Optional[str] = None,
                 search: Optional[str] = None) -> schemas.Page[schemas.CircleView]:
    query = db.query(models.Circle).filter(models.Circle.is_active.is_(True))
    if category:
        query = query.filter(models.Circle.category == category)
    if search:
        query = query.filter(crud.contains(models.Circle.name, search) | crud.contains(models.Circle.description, search))
    items, total = crud.paginate(query.order_by(models.Circle.member_count.desc(), models.Circle.created_at.desc()), params)
    return schemas.Page[schemas.CircleView](
        items=[schemas.CircleView.model_validate(c) for c in items],
        total=total, page=params.page, per_page=params.per_page,
    )


def list_my_circles(db: Session, user_id: uuid.UUID) -> List[schemas.CircleView]:
    memberships = db.query(models.CircleMember)\
        .options(joinedload(models.CircleMember.circle))\
        .filter(models.CircleMember.user_id == user_id)\
        .order_by(models.CircleMember.joined_at.desc()).all()
    views = []
    for membership in memberships:
        view = schemas.CircleView.model_validate(membership.circle)
        view.member_role = membership.role
        views.append(view)
    return views


def create_circle(db: Session, principal: schemas.Principal, data: schemas.CircleCreate) -> models.Circle:
    circle = models.Circle(**data.model_dump(), creator_id=principal.user_id, member_count=1, is_active=True)
    circle.members.append(models.CircleMember(user_id=principal.user_id, role=Role.owner))
    db.add(circle)
    _commit(db, "creating circle")
    db.refresh(circle)
    logger.info(f"Circle {circle.id} created by {principal.user_id}")
    return circle


def local_role(db: Session, circle: models.Circle, principal: schemas.Principal) -> Optional[Role]:
    membership = _membership(db, circle.id, principal.user_id)
    return membership.role if membership else None


def update_circle(db: Session, principal: schemas.Principal, circle: models.Circle,
                  data: schemas.CircleUpdate) -> models.Circle:
    if not security.is_admin(principal) and local_role(db, circle, principal) not in (Role.owner, Role.admin):
        raise ForbiddenError("Only circle owners and admins can edit this circle")
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(circle, field, value)
    _commit(db, "updating circle")
    db.refresh(circle)
    return circle


def delete_circle(db: Session, principal: schemas.Principal, circle: models.Circle) -> None:
    if not security.is_admin(principal) and local_role(db, circle, principal) != Role.owner:
        raise ForbiddenError("Only the circle owner can delete this circle")
    db.delete(circle)
    _commit(db, "deleting circle")


def join_circle(db: Session, principal: schemas.Principal, circle: models.Circle) -> models.Circle:
    if not circle.is_active:
        raise ConflictError("This circle is no longer active")
    if _membership(db, circle.id, principal.user_id):
        raise ConflictError("You are already a member of this circle")
    db.add(models.CircleMember(circle_id=circle.id, user_id=principal.user_id, role=Role.member))
    _shift_member_count(db, circle, 1, "joining circle")
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("You are already a member of this circle")
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, "joining circle")
    db.refresh(circle)
    return circle


def leave_circle(db: Session, principal: schemas.Principal, circle: models.Circle) -> None:
    membership = _membership(db, circle.id, principal.user_id)
    if membership is None:
        raise NotFoundError("You are not a member of this circle")
    if membership.role == Role.owner:
        raise ConflictError("The owner cannot leave the circle")
    db.delete(membership)
    _shift_member_count(db, circle, -1, "leaving circle")
    _commit(db, "leaving circle")


def list_members(db: Session, circle: models.Circle) -> List[schemas.CircleMemberView]:
    members = db.query(models.CircleMember)\
        .options(joinedload(models.CircleMember.user))\
        .filter(models.CircleMember.circle_id == circle.id)\
        .order_by(models.CircleMember.joined_at).all()
    return [
        schemas.CircleMemberView(user_id=m.user_id, user_name=m.user.name, role=m.role, joined_at=m.joined_at)
        for m in members
    ]


def set_member_role(db: Session, principal: schemas.Principal, circle: models.Circle,
                    user_id: uuid.UUID, role: Role) -> models.CircleMember:
    """Owners (and global admins) may grant admin or member; circle admins may only set member"""
    actor_role = Role.owner if security.is_admin(principal) else local_role(db, circle, principal)
    if actor_role not in (Role.owner, Role.admin):
        raise ForbiddenError("Only circle owners and admins can change member roles")
    if role == Role.owner:
        raise ConflictError("Ownership cannot be assigned")
    if actor_role == Role.admin and role != Role.member:
        raise ForbiddenError("Circle admins can only assign the member role")

    membership = _membership(db, circle.id, user_id)
    if membership is None:
        raise NotFoundError("Member not found")
    if membership.role == Role.owner:
        raise ConflictError("The owner's role cannot be changed")
    membership.role = role
    _commit(db, "changing member role")
    db.refresh(membership)
    return membership


def remove_member(db: Session, principal: schemas.Principal, circle: models.Circle, user_id: uuid.UUID) -> None:
    actor_role = Role.owner if security.is_admin(principal) else local_role(db, circle, principal)
    if actor_role not in (Role.owner, Role.admin):
        raise ForbiddenError("Only circle owners and admins can remove members")
    membership = _membership(db, circle.id, user_id)
    if membership is None:
        raise NotFoundError("Member not found")
    if membership.role == Role.owner:
        raise ConflictError("The owner cannot be removed")
    if actor_role == Role.admin and membership.role == Role.admin:
        raise ForbiddenError("Circle admins cannot remove other admins")
    db.delete(membership)
    _shift_member_count(db, circle, -1, "removing circle member")
    _commit(db, "removing circle member")
