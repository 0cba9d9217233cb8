# tests/conftest.py
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone

import pytest

_workdir = tempfile.mkdtemp(prefix="tcm-tests-")

# Settings are read once at import time, so the environment goes first
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_workdir, 'test.db')}"
os.environ["JWT_SECRET"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["PASSWORD_HASH_TIME_COST"] = "1"
os.environ["PASSWORD_HASH_MEMORY_COST"] = "1024"
os.environ["RATE_LIMIT_LOGIN"] = "1000"
os.environ["STORAGE_LOCAL_DIR"] = os.path.join(_workdir, "uploads")
os.environ["LOG_JSON"] = "false"
os.environ["REDIS_URL"] = ""
os.environ.pop("ADMIN_ACCOUNT", None)
os.environ.pop("ADMIN_PASSWORD", None)

from fastapi.testclient import TestClient  # noqa: E402

from app import database, models, security  # noqa: E402
from app.main import app  # noqa: E402
from app.services.cache_service import get_cache  # noqa: E402
from app.services.realtime_service import connection_manager  # noqa: E402
from app.services.signaling_service import call_registry  # noqa: E402

API = "/api/v1"
PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def clean_state():
    database.drop_tables()
    database.create_tables()
    get_cache().clear()
    connection_manager.clear()
    call_registry.clear()
    yield
    connection_manager.clear()
    call_registry.clear()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_user(account, role=models.UserRole.patient, name=None, phone="13800000001",
              status=models.UserStatus.active):
    session = database.SessionLocal()
    try:
        user = models.User(
            account=account,
            name=name or account.title(),
            password_hash=security.get_password_hash(PASSWORD),
            phone=phone,
            role=role,
            status=status,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        session.expunge(user)
        return user
    finally:
        session.close()


def make_doctor(user):
    session = database.SessionLocal()
    try:
        doctor = models.Doctor(
            user_id=user.id,
            hospital="City TCM Hospital",
            department="Internal Medicine",
            title="Chief Physician",
            specialties=["acupuncture"],
        )
        session.add(doctor)
        session.commit()
        session.refresh(doctor)
        session.expunge(doctor)
        return doctor
    finally:
        session.close()


def login(client, account, password=PASSWORD):
    response = client.post(f"{API}/auth/login", json={"account": account, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]["access_token"]


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def future_day(days=3):
    return (datetime.now(timezone.utc) + timedelta(days=days)).date()


def slot_datetime(day, slot="09:00"):
    hour, minute = (int(part) for part in slot.split(":"))
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc).isoformat()


class Actor:
    def __init__(self, user, token, doctor=None):
        self.user = user
        self.token = token
        self.doctor = doctor

    @property
    def id(self) -> uuid.UUID:
        return self.user.id

    @property
    def headers(self):
        return auth(self.token)


@pytest.fixture
def admin(client):
    user = make_user("admin", models.UserRole.admin)
    return Actor(user, login(client, "admin"))


@pytest.fixture
def patient(client):
    user = make_user("patient1")
    return Actor(user, login(client, "patient1"))


@pytest.fixture
def other_patient(client):
    user = make_user("patient2", phone="13800000002")
    return Actor(user, login(client, "patient2"))


@pytest.fixture
def doctor(client):
    user = make_user("doctor1", models.UserRole.doctor, name="Dr Li")
    return Actor(user, login(client, "doctor1"), make_doctor(user))


@pytest.fixture
def other_doctor(client):
    user = make_user("doctor2", models.UserRole.doctor, name="Dr Wang")
    return Actor(user, login(client, "doctor2"), make_doctor(user))


def book(client, patient, doctor, day=None, slot="09:00", visit_type="offline"):
    day = day or future_day()
    return client.post(f"{API}/appointments", headers=patient.headers, json={
        "doctor_id": str(doctor.doctor.id),
        "appointment_date": slot_datetime(day, slot),
        "time_slot": slot,
        "visit_type": visit_type,
        "symptoms": "headache",
    })
