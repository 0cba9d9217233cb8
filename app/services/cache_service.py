# app/services/cache_service.py
"""Keyed cache with TTLs, pattern invalidation and counters.

Every operation tolerates a backend outage: reads come back as a miss,
writes return False and are logged. Values are stored as JSON text.
"""
import fnmatch
import functools
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import redis
from pydantic import TypeAdapter
from pydantic_core import to_json

from ..config import get_settings

logger = logging.getLogger(__name__)


class CacheDurations:
    SHORT = 60
    MEDIUM = 300
    LONG = 3600
    DAY = 86400
    WEEK = 604800


class CacheKeys:
    """One domain prefix per entity family"""

    @staticmethod
    def user(user_id) -> str:
        return f"user:{user_id}"

    @staticmethod
    def session(token: str) -> str:
        return f"session:{token}"

    @staticmethod
    def session_revoked(jti: str) -> str:
        return f"session:revoked:{jti}"

    @staticmethod
    def doctor(doctor_id) -> str:
        return f"doctor:{doctor_id}"

    @staticmethod
    def appointment_slots(doctor_id, day) -> str:
        return f"appointment_slots:{doctor_id}:{day.isoformat()}"

    @staticmethod
    def appointment_slots_generation(doctor_id, day) -> str:
        return f"{CacheKeys.appointment_slots(doctor_id, day)}:gen"

    @staticmethod
    def review_statistics(doctor_id) -> str:
        return f"reviews:statistics:{doctor_id}"

    @staticmethod
    def review_statistics_generation(doctor_id) -> str:
        return f"{CacheKeys.review_statistics(doctor_id)}:gen"

    @staticmethod
    def department(department_id) -> str:
        return f"departments:item:{department_id}"

    @staticmethod
    def departments_list(page: int, per_page: int, status: Optional[str] = None) -> str:
        key = f"departments:list:page{page}:size{per_page}"
        return f"{key}:{status}" if status else key

    DEPARTMENTS_PATTERN = "departments:*"

    @staticmethod
    def rate_limit(ip: str, endpoint: str) -> str:
        return f"rate_limit:{ip}:{endpoint}"

    @staticmethod
    def live_stream_viewers(stream_id) -> str:
        return f"live_stream:{stream_id}:viewers"


# --- Backends ---
class MemoryBackend:
    """Process-local store used when no Redis URL is configured"""

    name = "memory"

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] is not None and entry[1] <= time.monotonic():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires = time.monotonic() + ttl if ttl else None
        with self._lock:
            self._data[key] = (value, expires)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    def keys(self, pattern: str) -> List[str]:
        with self._lock:
            candidates = list(self._data.keys())
            return [k for k in candidates if fnmatch.fnmatchcase(k, pattern) and self._live(k) is not None]

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    def incr(self, key: str, delta: int) -> int:
        with self._lock:
            entry = self._live(key)
            current = int(entry[0]) if entry else 0
            expires = entry[1] if entry else None
            current += delta
            self._data[key] = (str(current), expires)
            return current

    def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], time.monotonic() + ttl)
            return True

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0, int(round(entry[1] - time.monotonic())))

    def ping(self) -> bool:
        return True

    def flush(self) -> None:
        with self._lock:
            self._data.clear()


class RedisBackend:
    name = "redis"

    def __init__(self, url: str, timeout: int = 5, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            health_check_interval=30,
        )

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            self.client.setex(key, ttl, value)
        else:
            self.client.set(key, value)

    def delete(self, *keys: str) -> int:
        return int(self.client.delete(*keys)) if keys else 0

    def keys(self, pattern: str) -> List[str]:
        return list(self.client.scan_iter(match=pattern, count=500))

    def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    def incr(self, key: str, delta: int) -> int:
        return int(self.client.incrby(key, delta))

    def expire(self, key: str, ttl: int) -> bool:
        return bool(self.client.expire(key, ttl))

    def ttl(self, key: str) -> Optional[int]:
        remaining = self.client.ttl(key)
        # -1: no expiry, -2: missing
        return remaining if remaining is not None and remaining >= 0 else None

    def ping(self) -> bool:
        return bool(self.client.ping())

    def flush(self) -> None:
        self.client.flushdb()


class NullBackend:
    """Caching disabled: every read misses, every write is dropped"""

    name = "disabled"

    def get(self, key):
        return None

    def set(self, key, value, ttl=None):
        return None

    def delete(self, *keys):
        return 0

    def keys(self, pattern):
        return []

    def exists(self, key):
        return False

    def incr(self, key, delta):
        return None

    def expire(self, key, ttl):
        return False

    def ttl(self, key):
        return None

    def ping(self):
        return False

    def flush(self):
        return None


_BACKEND_ERRORS = (redis.RedisError, OSError)
_DELETE_BATCH = 500


class CacheService:
    """Cache operations over a backend; never lets a backend failure escape"""

    def __init__(self, backend):
        self.backend = backend

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def get(self, key: str, model: Union[TypeAdapter, Any, None] = None) -> Optional[Any]:
        """Return the cached value, or None on miss, outage or undecodable value"""
        try:
            raw = self.backend.get(key)
        except _BACKEND_ERRORS as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            if model is None:
                return json.loads(raw)
            adapter = model if isinstance(model, TypeAdapter) else TypeAdapter(model)
            return adapter.validate_json(raw)
        except ValueError as e:
            logger.warning(f"Cache value for {key} could not be decoded: {e}")
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = CacheDurations.MEDIUM) -> bool:
        try:
            payload = to_json(value).decode()
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache value for {key} is not serializable: {e}")
            return False
        try:
            self.backend.set(key, payload, ttl)
            return True
        except _BACKEND_ERRORS as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    def set_persistent(self, key: str, value: Any) -> bool:
        return self.set(key, value, ttl=None)

    def delete(self, key: str) -> bool:
        try:
            self.backend.delete(key)
            return True
        except _BACKEND_ERRORS as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Expand the glob to concrete keys, then delete them; O(n) in matches"""
        try:
            keys = self.backend.keys(pattern)
            removed = 0
            for start in range(0, len(keys), _DELETE_BATCH):
                removed += self.backend.delete(*keys[start:start + _DELETE_BATCH])
            return removed
        except _BACKEND_ERRORS as e:
            logger.warning(f"Cache pattern delete failed for {pattern}: {e}")
            return 0

    def exists(self, key: str) -> bool:
        try:
            return self.backend.exists(key)
        except _BACKEND_ERRORS as e:
            logger.warning(f"Cache exists failed for {key}: {e}")
            return False

    def increment(self, key: str, delta: int = 1) -> Optional[int]:
        try:
            return self.backend.incr(key, delta)
        except _BACKEND_ERRORS as e:
            logger.warning(f"Cache increment failed for {key}: {e}")
            return None

    def expire(self, key: str, ttl: int) -> bool:
        try:
            return self.backend.expire(key, ttl)
        except _BACKEND_ERRORS as e:
            logger.warning(f"Cache expire failed for {key}: {e}")
            return False

    def ttl(self, key: str) -> Optional[int]:
        try:
            return self.backend.ttl(key)
        except _BACKEND_ERRORS as e:
            logger.warning(f"Cache ttl failed for {key}: {e}")
            return None

    def ping(self) -> bool:
        try:
            return self.backend.ping()
        except _BACKEND_ERRORS:
            return False

    def clear(self) -> None:
        try:
            self.backend.flush()
        except _BACKEND_ERRORS as e:
            logger.warning(f"Cache flush failed: {e}")


def build_cache(settings=None) -> CacheService:
    settings = settings or get_settings()
    if not settings.cache_enabled:
        return CacheService(NullBackend())
    if settings.redis_url:
        return CacheService(RedisBackend(settings.redis_url, timeout=settings.cache_timeout))
    logger.warning("REDIS_URL not set, using in-process memory cache")
    return CacheService(MemoryBackend())


_cache: Optional[CacheService] = None
_cache_lock = threading.Lock()


def get_cache() -> CacheService:
    global _cache
    if _cache is None:
        with _cache_lock:
            if _cache is None:
                _cache = build_cache()
    return _cache


class CachePolicy:
    """Read-through memoization rule: how to key, how long to keep, how to revive"""

    def __init__(self, key_builder: Callable[..., str], ttl: Optional[int], model: Any,
                 generation: Optional[Callable[..., str]] = None):
        self.key_builder = key_builder
        self.ttl = ttl
        self.adapter = TypeAdapter(model)
        self.generation = generation

    def key(self, *args, **kwargs) -> str:
        return self.key_builder(*args, **kwargs)


def cached(key_builder: Callable[..., str], ttl: Optional[int], model: Any,
           generation: Optional[Callable[..., str]] = None):
    """Decorate a service read so hits skip storage and misses fill the cache.

    The key builders receive the same arguments as the wrapped function. A
    ``None`` result is not cached. With a ``generation`` key the fill is
    dropped again when :func:`invalidate_generation` ran while the value was
    being computed, so a slow read cannot store a result older than a write.
    """
    policy = CachePolicy(key_builder, ttl, model, generation)

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            cache = get_cache()
            key = policy.key(*args, **kwargs)
            hit = cache.get(key, policy.adapter)
            if hit is not None:
                return hit
            generation_key = policy.generation(*args, **kwargs) if policy.generation else None
            before = cache.get(generation_key) if generation_key else None
            value = func(*args, **kwargs)
            if value is not None:
                cache.set(key, value, policy.ttl)
                if generation_key and cache.get(generation_key) != before:
                    cache.delete(key)
            return value

        wrapper.cache_policy = policy
        return wrapper

    return decorator


def invalidate_generation(key: str, generation_key: str) -> None:
    """Drop ``key`` and bump its generation so in-flight fills discard themselves"""
    cache = get_cache()
    cache.increment(generation_key)
    cache.expire(generation_key, CacheDurations.DAY)
    cache.delete(key)
