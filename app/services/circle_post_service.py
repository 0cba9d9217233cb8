# app/services/circle_post_service.py
"""Posts, likes and comments inside circles.

Only members may post to a circle. Posts and comments are soft-deleted, and
like and comment counts are computed on read rather than stored.
"""
import logging
import uuid
from typing import Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .. import crud, models, schemas, security
from ..core.errors import AppError, ConflictError, ForbiddenError, NotFoundError
from . import circle_service, notification_service

logger = logging.getLogger(__name__)

Post = models.CirclePost
Comment = models.PostComment


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, action)


# --- Views ---
def _like_counts(db: Session, post_ids: List[uuid.UUID]) -> Dict[uuid.UUID, int]:
    rows = db.query(models.PostLike.post_id, func.count(models.PostLike.id))\
        .filter(models.PostLike.post_id.in_(post_ids)).group_by(models.PostLike.post_id).all()
    return dict(rows)


def _comment_counts(db: Session, post_ids: List[uuid.UUID]) -> Dict[uuid.UUID, int]:
    rows = db.query(Comment.post_id, func.count(Comment.id))\
        .filter(Comment.post_id.in_(post_ids), Comment.is_deleted.is_(False)).group_by(Comment.post_id).all()
    return dict(rows)


def _liked_by(db: Session, post_ids: List[uuid.UUID], user_id: uuid.UUID) -> Set[uuid.UUID]:
    rows = db.query(models.PostLike.post_id)\
        .filter(models.PostLike.post_id.in_(post_ids), models.PostLike.user_id == user_id).all()
    return {post_id for (post_id,) in rows}


def to_views(db: Session, posts: List[models.CirclePost], viewer_id: uuid.UUID) -> List[schemas.PostView]:
    """Build views for a page of posts with three grouped count queries"""
    post_ids = [p.id for p in posts]
    if not post_ids:
        return []
    likes = _like_counts(db, post_ids)
    comments = _comment_counts(db, post_ids)
    liked = _liked_by(db, post_ids, viewer_id)
    return [
        schemas.PostView(
            id=p.id, circle_id=p.circle_id, circle_name=p.circle.name,
            author_id=p.author_id, author_name=p.author.name,
            title=p.title, content=p.content, images=p.images or [],
            likes=likes.get(p.id, 0), comments=comments.get(p.id, 0), is_liked=p.id in liked,
            created_at=p.created_at, updated_at=p.updated_at,
        )
        for p in posts
    ]


def to_view(db: Session, post: models.CirclePost, viewer_id: uuid.UUID) -> schemas.PostView:
    return to_views(db, [post], viewer_id)[0]


def _visible_posts(db: Session):
    return db.query(Post)\
        .options(joinedload(Post.author), joinedload(Post.circle))\
        .filter(Post.is_deleted.is_(False))


def _to_page(db: Session, query, params: schemas.PageParams, viewer_id: uuid.UUID) -> schemas.Page[schemas.PostView]:
    items, total = crud.paginate(query.order_by(Post.created_at.desc()), params)
    return schemas.Page[schemas.PostView](
        items=to_views(db, items, viewer_id), total=total, page=params.page, per_page=params.per_page,
    )


# --- Posts ---
def get_post(db: Session, post_id: uuid.UUID) -> models.CirclePost:
    post = _visible_posts(db).filter(Post.id == post_id).first()
    if post is None:
        raise NotFoundError("Post not found")
    return post


def create_post(db: Session, principal: schemas.Principal, circle: models.Circle,
                data: schemas.PostCreate) -> models.CirclePost:
    if not circle.is_active:
        raise ConflictError("This circle is no longer active")
    if circle_service.local_role(db, circle, principal) is None:
        raise ForbiddenError("You must be a member of the circle to post")

    post = Post(circle_id=circle.id, author_id=principal.user_id, **data.model_dump())
    db.add(post)
    _commit(db, "creating post")
    db.refresh(post)
    logger.info(f"Post {post.id} created in circle {circle.id} by {principal.user_id}")

    recipients = [
        user_id for (user_id,) in db.query(models.CircleMember.user_id).filter(
            models.CircleMember.circle_id == circle.id,
            models.CircleMember.user_id != principal.user_id,
        ).all()
    ]
    if recipients:
        try:
            notification_service.notify_many(
                db, recipients, models.NotificationType.group_message,
                f"New post in {circle.name}", post.title, related_id=post.id,
            )
        except AppError as e:
            logger.error(f"Post {post.id} created but member notifications failed: {e.message}")
    return post


def list_circle_posts(db: Session, principal: schemas.Principal, circle: models.Circle,
                      params: schemas.PageParams) -> schemas.Page[schemas.PostView]:
    query = _visible_posts(db).filter(Post.circle_id == circle.id)
    return _to_page(db, query, params, principal.user_id)


def list_user_posts(db: Session, principal: schemas.Principal, user_id: uuid.UUID,
                    params: schemas.PageParams) -> schemas.Page[schemas.PostView]:
    crud.get_user_or_404(db, user_id)
    query = _visible_posts(db).filter(Post.author_id == user_id)
    return _to_page(db, query, params, principal.user_id)


def update_post(db: Session, principal: schemas.Principal, post: models.CirclePost,
                data: schemas.PostUpdate) -> models.CirclePost:
    if post.author_id != principal.user_id:
        raise ForbiddenError("Only the author can edit this post")
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(post, field, value)
    _commit(db, "updating post")
    db.refresh(post)
    return post


def _moderates(db: Session, principal: schemas.Principal, circle: models.Circle) -> bool:
    if security.is_admin(principal):
        return True
    return circle_service.local_role(db, circle, principal) in (models.CircleRole.owner, models.CircleRole.admin)


def delete_post(db: Session, principal: schemas.Principal, post: models.CirclePost) -> None:
    if post.author_id != principal.user_id and not _moderates(db, principal, post.circle):
        raise ForbiddenError("You cannot delete this post")
    post.is_deleted = True
    _commit(db, "deleting post")
    logger.info(f"Post {post.id} deleted by {principal.user_id}")


def toggle_like(db: Session, principal: schemas.Principal, post: models.CirclePost) -> schemas.LikeResult:
    existing = db.query(models.PostLike).filter(
        models.PostLike.post_id == post.id,
        models.PostLike.user_id == principal.user_id,
    ).first()
    if existing is not None:
        db.delete(existing)
        liked = False
    else:
        db.add(models.PostLike(post_id=post.id, user_id=principal.user_id))
        liked = True
    try:
        db.commit()
    except IntegrityError:
        # liked concurrently from another request
        db.rollback()
        liked = True
    except SQLAlchemyError as e:
        raise crud.storage_failure(db, e, "toggling like")
    return schemas.LikeResult(post_id=post.id, liked=liked, likes=_like_counts(db, [post.id]).get(post.id, 0))


# --- Comments ---
def _comment_view(comment: models.PostComment) -> schemas.CommentView:
    return schemas.CommentView(
        id=comment.id, post_id=comment.post_id, author_id=comment.author_id,
        author_name=comment.author.name, content=comment.content, created_at=comment.created_at,
    )


def create_comment(db: Session, principal: schemas.Principal, post: models.CirclePost,
                   data: schemas.CommentCreate) -> schemas.CommentView:
    comment = Comment(post_id=post.id, author_id=principal.user_id, content=data.content)
    db.add(comment)
    _commit(db, "creating comment")
    db.refresh(comment)
    return _comment_view(comment)


def list_comments(db: Session, post: models.CirclePost,
                  params: schemas.PageParams) -> schemas.Page[schemas.CommentView]:
    query = db.query(Comment).options(joinedload(Comment.author))\
        .filter(Comment.post_id == post.id, Comment.is_deleted.is_(False))\
        .order_by(Comment.created_at)
    items, total = crud.paginate(query, params)
    return schemas.Page[schemas.CommentView](
        items=[_comment_view(c) for c in items], total=total, page=params.page, per_page=params.per_page,
    )


def delete_comment(db: Session, principal: schemas.Principal, comment_id: uuid.UUID) -> None:
    comment: Optional[models.PostComment] = db.query(Comment).options(joinedload(Comment.post))\
        .filter(Comment.id == comment_id, Comment.is_deleted.is_(False)).first()
    if comment is None:
        raise NotFoundError("Comment not found")
    allowed = (
        security.is_admin(principal)
        or comment.author_id == principal.user_id
        or comment.post.author_id == principal.user_id
    )
    if not allowed:
        raise ForbiddenError("You cannot delete this comment")
    comment.is_deleted = True
    _commit(db, "deleting comment")
