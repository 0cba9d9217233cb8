# app/routers/auth.py
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..core.errors import ForbiddenError, UnauthorizedError
from ..database import get_db

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)


def _client_ip(request: Request):
    return request.client.host if request.client else None


def _token_response(user: models.User, token: str) -> schemas.TokenResponse:
    return schemas.TokenResponse(
        access_token=token,
        expires_in=get_settings().jwt_expiration,
        user=schemas.UserView.model_validate(user),
    )


@router.post("/register", response_model=schemas.ApiResponse[schemas.UserView])
def register(user: schemas.RegisterRequest, request: Request, db: Session = Depends(get_db)):
    """Self-registration for patients and doctors"""
    if user.role == models.UserRole.admin:
        raise ForbiddenError("Administrator accounts cannot be self-registered")
    db_user = crud.create_user(db, user)
    compliance_logger.log_event(
        action='CREATE', category='AUTHENTICATION', user_id=db_user.id, username=db_user.account,
        details=f"Registered {db_user.role.value} account", resource_type='user', resource_id=db_user.id,
        ip_address=_client_ip(request),
    )
    logger.info(f"Registered {db_user.role.value} account '{db_user.account}'")
    return schemas.ok(schemas.UserView.model_validate(db_user), "Registration successful")


@router.post(
    "/login",
    response_model=schemas.ApiResponse[schemas.TokenResponse],
    dependencies=[Depends(security.rate_limiter.limit("login"))],
)
def login(credentials: schemas.LoginRequest, request: Request, db: Session = Depends(get_db)):
    user = crud.get_user_by_account(db, credentials.account)
    digest = user.password_hash if user else security.DUMMY_PASSWORD_HASH
    password_ok = security.verify_password(credentials.password, digest)
    if not user or not password_ok:
        logger.warning(f"Failed login attempt for account: {credentials.account}")
        compliance_logger.log_event(
            action='LOGIN', category='AUTHENTICATION', user_id=user.id if user else None,
            username=credentials.account, details="Login failed: bad credentials", severity='WARNING',
            ip_address=_client_ip(request),
        )
        raise UnauthorizedError("Incorrect account or password")
    if not user.is_active:
        raise UnauthorizedError("Account is not active")

    token, _ = security.issue_session(user)
    compliance_logger.log_event(
        action='LOGIN', category='AUTHENTICATION', user_id=user.id, username=user.account,
        details=f"User {user.account} logged in successfully.", ip_address=_client_ip(request),
    )
    logger.info(f"User '{user.account}' successfully authenticated.")
    return schemas.ok(_token_response(user, token), "Login successful")


@router.post("/logout", response_model=schemas.ApiResponse[None])
def logout(
    token: str = Depends(security.get_bearer_token),
    principal: schemas.Principal = Depends(security.get_current_principal),
):
    security.revoke_token(token)
    compliance_logger.log_event(
        action='LOGOUT', category='AUTHENTICATION', user_id=principal.user_id, details="Session revoked",
    )
    return schemas.ok(None, "Logged out")


@router.get("/me", response_model=schemas.ApiResponse[schemas.UserView])
def read_me(current_user: models.User = Depends(security.get_current_user)):
    """Get the current logged in user's details."""
    return schemas.ok(schemas.UserView.model_validate(current_user))


@router.post("/refresh", response_model=schemas.ApiResponse[schemas.TokenResponse])
def refresh(
    token: str = Depends(security.get_bearer_token),
    current_user: models.User = Depends(security.get_current_user),
):
    """Swap the presented token for a fresh one; the old token stops working"""
    new_token, _ = security.issue_session(current_user)
    security.revoke_token(token)
    return schemas.ok(_token_response(current_user, new_token), "Token refreshed")
