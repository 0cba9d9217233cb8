# app/services/session_service.py
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, TypeAdapter

from ..models import UserRole
from .cache_service import CacheDurations, CacheKeys, CacheService, get_cache

logger = logging.getLogger(__name__)


class SessionData(BaseModel):
    user_id: uuid.UUID
    email: Optional[str] = None
    role: UserRole
    created_at: datetime
    last_accessed: datetime
    expires_at: datetime


_session_adapter = TypeAdapter(SessionData)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SessionService:
    """Session records keyed by bearer token, plus revocation markers keyed by token id"""

    def __init__(self, cache: Optional[CacheService] = None):
        self._cache = cache

    @property
    def cache(self) -> CacheService:
        return self._cache or get_cache()

    def create(self, token: str, user_id: uuid.UUID, role: UserRole, expires_at: datetime,
               email: Optional[str] = None) -> SessionData:
        now = datetime.now(timezone.utc)
        session = SessionData(
            user_id=user_id,
            email=email,
            role=role,
            created_at=now,
            last_accessed=now,
            expires_at=expires_at,
        )
        if not self.cache.set(CacheKeys.session(token), session, CacheDurations.DAY):
            logger.warning(f"Session record for user {user_id} was not stored")
        return session

    def get(self, token: str) -> Optional[SessionData]:
        """Fetch a live session and refresh its last-access time and day TTL"""
        key = CacheKeys.session(token)
        session = self.cache.get(key, _session_adapter)
        if session is None:
            return None

        now = datetime.now(timezone.utc)
        if _aware(session.expires_at) <= now:
            self.cache.delete(key)
            return None

        session.last_accessed = now
        self.cache.set(key, session, CacheDurations.DAY)
        return session

    def invalidate(self, token: str) -> bool:
        return self.cache.delete(CacheKeys.session(token))

    def is_session_valid(self, token: str) -> bool:
        return self.cache.exists(CacheKeys.session(token))

    def revoke(self, token: str, jti: Optional[str], expires_at: Optional[datetime]) -> bool:
        """Keep the token id refused until the token itself expires, then drop the session.

        The marker must exist before the session is gone; resolve_token
        re-checks it after writing a session.
        """
        marked = False
        if jti and expires_at is not None:
            remaining = int((_aware(expires_at) - datetime.now(timezone.utc)).total_seconds())
            marked = remaining <= 0 or self.cache.set(CacheKeys.session_revoked(jti), True, remaining)
        self.invalidate(token)
        return marked

    def is_revoked(self, jti: Optional[str]) -> bool:
        return bool(jti) and self.cache.exists(CacheKeys.session_revoked(jti))


session_service = SessionService()
