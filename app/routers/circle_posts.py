# app/routers/circle_posts.py
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas, security
from ..database import get_db
from ..services import circle_post_service, circle_service

router = APIRouter(
    tags=["Circle Posts"],
)

Page = schemas.Page[schemas.PostView]


@router.post("/circles/{circle_id}/posts", response_model=schemas.ApiResponse[schemas.PostView])
def create_post(
    circle_id: uuid.UUID,
    post: schemas.PostCreate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle = circle_service.get_circle(db, circle_id)
    created = circle_post_service.create_post(db, principal, circle, post)
    return schemas.ok(circle_post_service.to_view(db, created, principal.user_id), "Post created")


@router.get("/circles/{circle_id}/posts", response_model=schemas.ApiResponse[Page])
def read_circle_posts(
    circle_id: uuid.UUID,
    params: schemas.PageParams = Depends(),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle = circle_service.get_circle(db, circle_id)
    return schemas.ok(circle_post_service.list_circle_posts(db, principal, circle, params))


@router.get("/users/{user_id}/posts", response_model=schemas.ApiResponse[Page])
def read_user_posts(
    user_id: uuid.UUID,
    params: schemas.PageParams = Depends(),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    return schemas.ok(circle_post_service.list_user_posts(db, principal, user_id, params))


@router.get("/posts/{post_id}", response_model=schemas.ApiResponse[schemas.PostView])
def read_post(
    post_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    post = circle_post_service.get_post(db, post_id)
    return schemas.ok(circle_post_service.to_view(db, post, principal.user_id))


@router.put("/posts/{post_id}", response_model=schemas.ApiResponse[schemas.PostView])
def update_post(
    post_id: uuid.UUID,
    post_update: schemas.PostUpdate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    post = circle_post_service.update_post(db, principal, circle_post_service.get_post(db, post_id), post_update)
    return schemas.ok(circle_post_service.to_view(db, post, principal.user_id), "Post updated")


@router.delete("/posts/{post_id}", response_model=schemas.ApiResponse[None])
def delete_post(
    post_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle_post_service.delete_post(db, principal, circle_post_service.get_post(db, post_id))
    return schemas.ok(None, "Post deleted")


@router.post("/posts/{post_id}/like", response_model=schemas.ApiResponse[schemas.LikeResult])
def toggle_like(
    post_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    result = circle_post_service.toggle_like(db, principal, circle_post_service.get_post(db, post_id))
    return schemas.ok(result, "Liked" if result.liked else "Like removed")


@router.post("/posts/{post_id}/comments", response_model=schemas.ApiResponse[schemas.CommentView])
def create_comment(
    post_id: uuid.UUID,
    comment: schemas.CommentCreate,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    post = circle_post_service.get_post(db, post_id)
    return schemas.ok(circle_post_service.create_comment(db, principal, post, comment), "Comment posted")


@router.get("/posts/{post_id}/comments", response_model=schemas.ApiResponse[schemas.Page[schemas.CommentView]])
def read_comments(
    post_id: uuid.UUID,
    params: schemas.PageParams = Depends(),
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    post = circle_post_service.get_post(db, post_id)
    return schemas.ok(circle_post_service.list_comments(db, post, params))


@router.delete("/comments/{comment_id}", response_model=schemas.ApiResponse[None])
def delete_comment(
    comment_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    circle_post_service.delete_comment(db, principal, comment_id)
    return schemas.ok(None, "Comment deleted")
