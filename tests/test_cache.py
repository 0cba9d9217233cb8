# tests/test_cache.py
import time
import uuid
from datetime import datetime, timedelta, timezone

import redis
from pydantic import BaseModel

from conftest import API, auth, login, make_user

from app.services import cache_service
from app.services.cache_service import CacheKeys, CacheService, MemoryBackend, RedisBackend, cached
from app.services.session_service import SessionService


class Item(BaseModel):
    id: int
    name: str


class UnreachableRedis:
    """Client double whose every call fails like a dropped connection"""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("connection refused")
        return fail


def memory_cache():
    return CacheService(MemoryBackend())


def outage_cache():
    return CacheService(RedisBackend("redis://localhost:6379/0", client=UnreachableRedis()))


def test_set_get_roundtrip_with_model():
    cache = memory_cache()
    assert cache.set("item:1", Item(id=1, name="ginseng"))
    assert cache.get("item:1", Item) == Item(id=1, name="ginseng")
    assert cache.get("item:1") == {"id": 1, "name": "ginseng"}


def test_get_missing_key_is_none():
    assert memory_cache().get("nope") is None


def test_ttl_expiry():
    backend = MemoryBackend()
    cache = CacheService(backend)
    cache.set("short", "value", ttl=10)
    assert 9 <= cache.ttl("short") <= 10

    value, _ = backend._data["short"]
    backend._data["short"] = (value, time.monotonic() - 1)
    assert cache.get("short") is None
    assert not cache.exists("short")


def test_set_persistent_has_no_ttl():
    cache = memory_cache()
    cache.set_persistent("forever", 1)
    assert cache.exists("forever")
    assert cache.ttl("forever") is None


def test_delete_pattern_only_touches_matching_keys():
    cache = memory_cache()
    for i in range(3):
        cache.set(f"departments:list:page{i}", i)
    cache.set("doctor:1", "kept")
    assert cache.delete_pattern("departments:*") == 3
    assert cache.get("doctor:1") == "kept"
    assert cache.get("departments:list:page0") is None


def test_increment_and_expire():
    cache = memory_cache()
    assert cache.increment("counter") == 1
    assert cache.increment("counter", 5) == 6
    assert cache.increment("counter", -2) == 4
    assert cache.expire("counter", 30)
    assert 0 < cache.ttl("counter") <= 30
    assert not cache.expire("missing", 30)


def test_backend_outage_degrades_to_miss():
    cache = outage_cache()
    assert cache.get("key") is None
    assert cache.set("key", "value") is False
    assert cache.delete("key") is False
    assert cache.delete_pattern("key*") == 0
    assert cache.exists("key") is False
    assert cache.increment("key") is None
    assert cache.expire("key", 10) is False
    assert cache.ping() is False
    cache.clear()


def test_undecodable_value_is_a_miss():
    backend = MemoryBackend()
    backend.set("broken", "{not json")
    assert CacheService(backend).get("broken") is None


def test_cached_decorator_reads_through(monkeypatch):
    cache = memory_cache()
    monkeypatch.setattr(cache_service, "get_cache", lambda: cache)
    calls = []

    @cached(lambda item_id: f"item:{item_id}", 60, Item)
    def load(item_id):
        calls.append(item_id)
        return Item(id=item_id, name="astragalus")

    assert load(7) == Item(id=7, name="astragalus")
    assert load(7) == Item(id=7, name="astragalus")
    assert calls == [7]
    assert cache.ttl("item:7") == 60


def test_cached_decorator_skips_none(monkeypatch):
    cache = memory_cache()
    monkeypatch.setattr(cache_service, "get_cache", lambda: cache)

    @cached(lambda key: key, 60, Item)
    def load(key):
        return None

    assert load("absent") is None
    assert not cache.exists("absent")


def test_cached_decorator_survives_outage(monkeypatch):
    cache = outage_cache()
    monkeypatch.setattr(cache_service, "get_cache", lambda: cache)

    @cached(lambda item_id: f"item:{item_id}", 60, Item)
    def load(item_id):
        return Item(id=item_id, name="licorice")

    assert load(3).name == "licorice"


def test_cached_fill_racing_invalidation_is_dropped(monkeypatch):
    cache = memory_cache()
    monkeypatch.setattr(cache_service, "get_cache", lambda: cache)
    calls = []

    @cached(lambda item_id: f"item:{item_id}", 60, Item, generation=lambda item_id: f"item:{item_id}:gen")
    def load(item_id):
        calls.append(item_id)
        if len(calls) == 1:
            # a write lands while the first read is still computing
            cache_service.invalidate_generation(f"item:{item_id}", f"item:{item_id}:gen")
        return Item(id=item_id, name=f"version {len(calls)}")

    assert load(4).name == "version 1"
    assert not cache.exists("item:4")
    assert load(4).name == "version 2"
    assert load(4).name == "version 2"
    assert calls == [4, 4]
    assert cache.get("item:4:gen") == 1
    assert cache.ttl("item:4:gen") is not None


def test_session_service_roundtrip_and_revoke():
    sessions = SessionService(memory_cache())
    user_id = uuid.uuid4()
    expires = datetime.now(timezone.utc) + timedelta(hours=1)
    sessions.create("tok", user_id, "patient", expires)

    session = sessions.get("tok")
    assert session.user_id == user_id
    assert sessions.is_session_valid("tok")

    assert sessions.revoke("tok", "jti-1", expires)
    assert sessions.get("tok") is None
    assert sessions.is_revoked("jti-1")
    assert not sessions.is_revoked(None)


def test_session_past_expiry_is_dropped():
    sessions = SessionService(memory_cache())
    sessions.create("tok", uuid.uuid4(), "patient", datetime.now(timezone.utc) - timedelta(seconds=1))
    assert sessions.get("tok") is None
    assert not sessions.is_session_valid("tok")


def test_authenticated_request_survives_cache_outage(client, monkeypatch):
    make_user("patient1")
    token = login(client, "patient1")

    broken = outage_cache()
    monkeypatch.setattr(cache_service, "_cache", broken)
    response = client.get(f"{API}/auth/me", headers=auth(token))
    assert response.status_code == 200

    health = client.get(f"{API}/health")
    assert health.status_code == 200
    assert health.json()["data"]["status"] == "degraded"


def test_health_reports_memory_backend(client):
    response = client.get(f"{API}/health")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "ok"
    assert data["database"] == "ok"
    assert "memory" in data["cache"]
    assert data["online_connections"] == 0


def test_user_view_is_cached_under_user_key(client):
    user = make_user("patient1")
    token = login(client, "patient1")
    from app.services.cache_service import get_cache

    get_cache().delete(CacheKeys.session(token))
    assert client.get(f"{API}/auth/me", headers=auth(token)).status_code == 200
    assert get_cache().exists(CacheKeys.user(user.id))
