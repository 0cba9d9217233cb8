# app/security.py - identity, session resolution and the authorization gate
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from . import models, schemas
from .config import get_settings
from .core.errors import ForbiddenError, RateLimitedError, UnauthorizedError
from .database import get_db
from .services.cache_service import CacheKeys, get_cache
from .services.session_service import session_service

security_logger = logging.getLogger("security")

_settings = get_settings()

# Memory-hard hashing; the salt is generated per digest
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
    argon2__rounds=_settings.password_hash_time_cost,
    argon2__memory_cost=_settings.password_hash_memory_cost,
    argon2__parallelism=1,
)

# Verified against when the account is unknown, so both login paths cost one hash
DUMMY_PASSWORD_HASH = pwd_context.hash(secrets.token_urlsafe(16))

bearer_scheme = HTTPBearer(auto_error=False)

ACCESS_TOKEN_TYPE = "access"


# Password utilities
def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        # Unknown or malformed digests are a non-match, never a crash
        return False


def get_password_hash(password: str) -> str:
    """Generate password hash"""
    return pwd_context.hash(password)


# JWT utilities
def create_access_token(user_id: uuid.UUID, role: models.UserRole,
                        expires_delta: Optional[timedelta] = None) -> Tuple[str, datetime]:
    """Create a signed access token; returns the token and its expiry instant"""
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    expire = issued_at + (expires_delta or timedelta(seconds=settings.jwt_expiration))

    to_encode = {
        "sub": str(user_id),
        "role": role.value,
        "iat": issued_at,
        "exp": expire,
        "type": ACCESS_TOKEN_TYPE,
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm), expire


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify signature and expiry; None when either fails or the claims are incomplete"""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        return None
    if not payload.get("sub") or payload.get("role") not in models.UserRole.__members__:
        return None
    try:
        uuid.UUID(payload["sub"])
    except ValueError:
        return None
    return payload


def token_expiry(payload: Dict[str, Any]) -> Optional[datetime]:
    exp = payload.get("exp")
    return datetime.fromtimestamp(exp, tz=timezone.utc) if exp is not None else None


def issue_session(user: models.User) -> Tuple[str, datetime]:
    """Create a token and its session record for an authenticated user"""
    token, expires_at = create_access_token(user.id, user.role)
    session_service.create(token, user.id, user.role, expires_at, email=user.email)
    return token, expires_at


def resolve_token(token: str, db: Session) -> schemas.Principal:
    """Resolve a bearer token to the calling principal.

    A live session record answers directly. Otherwise the token must verify,
    must not have been revoked, and must name an active user; a session
    record is then created for it.
    """
    from . import crud  # local import, crud depends on this module

    session = session_service.get(token)
    if session is not None:
        return schemas.Principal(user_id=session.user_id, role=session.role)

    payload = verify_token(token)
    if payload is None:
        raise UnauthorizedError("Invalid or expired token")
    if session_service.is_revoked(payload.get("jti")):
        raise UnauthorizedError("Session has been revoked")

    user = crud.get_user_view(db, uuid.UUID(payload["sub"]))
    if user is None or user.status != models.UserStatus.active:
        security_logger.warning(f"Token presented for missing or inactive user {payload['sub']}")
        raise UnauthorizedError("Account is not active")

    session_service.create(token, user.id, user.role, token_expiry(payload), email=user.email)
    if session_service.is_revoked(payload.get("jti")):
        # a logout landed between the first check and the write
        session_service.invalidate(token)
        raise UnauthorizedError("Session has been revoked")
    return schemas.Principal(user_id=user.id, role=user.role)


def revoke_token(token: str) -> None:
    """Revoke a token: drop its session and refuse it until it expires"""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        claims = {}
    session_service.revoke(token, claims.get("jti"), token_expiry(claims))


# Dependencies for FastAPI
def get_bearer_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> str:
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Missing bearer token")
    return credentials.credentials


def get_current_principal(
    token: str = Depends(get_bearer_token),
    db: Session = Depends(get_db),
) -> schemas.Principal:
    return resolve_token(token, db)


def get_current_user(
    principal: schemas.Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> models.User:
    user = db.get(models.User, principal.user_id)
    if user is None or not user.is_active:
        raise UnauthorizedError("Account is not active")
    return user


def require_role(*allowed_roles: models.UserRole):
    """Dependency factory for role-based access control"""
    def role_dependency(principal: schemas.Principal = Depends(get_current_principal)) -> schemas.Principal:
        if principal.role not in allowed_roles:
            raise ForbiddenError(f"Access denied. Required roles: {', '.join(r.value for r in allowed_roles)}")
        return principal

    return role_dependency


# Specific role dependencies
require_admin = require_role(models.UserRole.admin)
require_doctor_or_admin = require_role(models.UserRole.doctor, models.UserRole.admin)
require_patient_or_admin = require_role(models.UserRole.patient, models.UserRole.admin)


# Ownership predicates
def is_admin(principal: schemas.Principal) -> bool:
    return principal.role == models.UserRole.admin


def ensure_self_or_admin(principal: schemas.Principal, user_id: uuid.UUID) -> None:
    if not is_admin(principal) and principal.user_id != user_id:
        raise ForbiddenError("You can only access your own records")


def ensure_doctor_owner_or_admin(principal: schemas.Principal, doctor: models.Doctor) -> None:
    if not is_admin(principal) and doctor.user_id != principal.user_id:
        raise ForbiddenError("You can only manage your own doctor profile")


def can_access_appointment(principal: schemas.Principal, appointment: models.Appointment) -> bool:
    """Patient-owner, the assigned doctor's account, or an admin"""
    if is_admin(principal):
        return True
    if appointment.patient_id == principal.user_id:
        return True
    return appointment.doctor is not None and appointment.doctor.user_id == principal.user_id


def can_access_prescription(principal: schemas.Principal, prescription: models.Prescription) -> bool:
    """Patient-recipient, the issuing doctor's account, or an admin"""
    if is_admin(principal):
        return True
    if prescription.patient_id == principal.user_id:
        return True
    return prescription.doctor is not None and prescription.doctor.user_id == principal.user_id


class RateLimiter:
    """Fixed-window counters on the cache; a cache outage lets requests through"""

    def is_allowed(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        cache = get_cache()
        count = cache.increment(key)
        if count is None:
            return True
        if count == 1:
            cache.expire(key, window_seconds)
        return count <= limit

    def limit(self, endpoint: str, limit: Optional[int] = None, window_seconds: int = 60):
        """Dependency factory keyed by client address and endpoint name"""
        def rate_limit_dependency(request: Request) -> None:
            max_requests = limit if limit is not None else get_settings().rate_limit_login
            client_ip = request.client.host if request.client else "unknown"
            if not self.is_allowed(CacheKeys.rate_limit(client_ip, endpoint), max_requests, window_seconds):
                security_logger.warning(f"Rate limit exceeded for {client_ip} on {endpoint}")
                raise RateLimitedError(f"Rate limit exceeded: {max_requests} per {window_seconds} seconds")

        return rate_limit_dependency


rate_limiter = RateLimiter()
