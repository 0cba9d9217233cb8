# tests/test_authorization.py
import re
import uuid

import pytest
from fastapi.routing import APIRoute

from conftest import API, auth, book, login, make_user

from app import models
from app.main import app

PUBLIC = {
    ("POST", f"{API}/auth/register"),
    ("POST", f"{API}/auth/login"),
    ("GET", f"{API}/departments"),
    ("GET", f"{API}/departments/code/{{code}}"),
    ("GET", f"{API}/departments/{{department_id}}"),
    ("GET", f"{API}/health"),
    ("GET", f"{API}/live-streams"),
    ("GET", f"{API}/live-streams/upcoming"),
    ("GET", f"{API}/live-streams/{{stream_id}}"),
    ("GET", f"{API}/reviews/doctor/{{doctor_id}}"),
    ("GET", f"{API}/reviews/doctor/{{doctor_id}}/statistics"),
}

ROUTES = sorted(
    (method, route.path)
    for route in app.routes if isinstance(route, APIRoute)
    for method in route.methods
)

PATH_PARAM = re.compile(r"\{[^}]+\}")


def concrete(path):
    return PATH_PARAM.sub(lambda _: str(uuid.uuid4()), path)


def test_public_routes_exist():
    assert PUBLIC <= set(ROUTES)


@pytest.mark.parametrize("method,path", [r for r in ROUTES if r not in PUBLIC])
def test_every_private_route_requires_a_token(client, method, path):
    response = client.request(method, concrete(path))
    assert response.status_code == 401, f"{method} {path} -> {response.status_code}"
    assert response.json()["success"] is False


@pytest.mark.parametrize("method,path", [r for r in sorted(PUBLIC) if r[0] == "GET"])
def test_public_reads_need_no_token(client, method, path):
    assert client.request(method, concrete(path)).status_code != 401


# Role gates: (method, path template, roles allowed past the gate)
ROLE_MATRIX = [
    ("POST", "/appointments", {"patient", "admin"}),
    ("GET", "/appointments/doctor/{doctor}", {"doctor", "admin"}),
    ("GET", "/appointments/patient/{patient}", {"patient", "admin"}),
    ("PUT", "/appointments/{any}/confirm", {"doctor", "admin"}),
    ("PUT", "/appointments/{any}/complete", {"doctor", "admin"}),
    ("PUT", "/appointments/{any}/cancel", {"patient", "admin"}),
    ("POST", "/prescriptions", {"doctor", "admin"}),
    ("GET", "/prescriptions", {"admin"}),
    ("GET", "/prescriptions/doctor/{doctor}", {"doctor", "admin"}),
    ("GET", "/prescriptions/patient/{patient}", {"patient", "admin"}),
]


@pytest.mark.parametrize("role", ["admin", "doctor", "patient"])
@pytest.mark.parametrize("method,template,allowed", ROLE_MATRIX)
def test_role_gates(client, request, patient, doctor, role, method, template, allowed):
    actor = request.getfixturevalue(role)
    path = API + template.format(doctor=doctor.doctor.id, patient=patient.id, any=uuid.uuid4())
    status = client.request(method, path, headers=actor.headers).status_code
    if role in allowed:
        assert status not in (401, 403), f"{role} {method} {template} -> {status}"
    else:
        assert status == 403, f"{role} {method} {template} -> {status}"


def test_admin_only_routes_refuse_other_roles(client, patient, doctor):
    for actor in (patient, doctor):
        assert client.get(f"{API}/users", headers=actor.headers).status_code == 403
        assert client.get(f"{API}/logs", headers=actor.headers).status_code == 403
        assert client.get(f"{API}/prescriptions", headers=actor.headers).status_code == 403


def test_admin_lists_and_filters_users(client, admin, patient, doctor):
    data = client.get(f"{API}/users", headers=admin.headers).json()["data"]
    assert data["total"] == 3

    data = client.get(f"{API}/users", headers=admin.headers, params={"role": "doctor"}).json()["data"]
    assert [u["account"] for u in data["items"]] == ["doctor1"]

    data = client.get(f"{API}/users", headers=admin.headers, params={"search": "PATIENT"}).json()["data"]
    assert [u["account"] for u in data["items"]] == ["patient1"]


def test_admin_creates_user_of_any_role(client, admin):
    response = client.post(f"{API}/users", headers=admin.headers, json={
        "account": "second-admin", "name": "Second Admin", "phone": "13700000000",
        "password": "secret123", "role": "admin",
    })
    assert response.status_code == 200
    assert response.json()["data"]["role"] == "admin"


def test_user_reads_self_but_not_others(client, patient, other_patient, admin):
    assert client.get(f"{API}/users/{patient.id}", headers=patient.headers).status_code == 200
    assert client.get(f"{API}/users/{other_patient.id}", headers=patient.headers).status_code == 403
    assert client.get(f"{API}/users/{patient.id}", headers=admin.headers).status_code == 200
    assert client.get(f"{API}/users/{uuid.uuid4()}", headers=admin.headers).status_code == 404


def test_user_cannot_promote_self(client, patient):
    response = client.put(f"{API}/users/{patient.id}", headers=patient.headers, json={"role": "admin"})
    assert response.status_code == 403

    response = client.put(f"{API}/users/{patient.id}", headers=patient.headers, json={"name": "Renamed"})
    assert response.status_code == 200
    assert response.json()["data"]["name"] == "Renamed"


def test_password_change_takes_effect(client, patient):
    response = client.put(f"{API}/users/{patient.id}", headers=patient.headers, json={"password": "newsecret"})
    assert response.status_code == 200
    assert login(client, "patient1", "newsecret")


def test_role_change_refreshes_cached_view(client, admin, patient):
    response = client.put(f"{API}/users/{patient.id}", headers=admin.headers, json={"role": "doctor"})
    assert response.status_code == 200
    fresh = login(client, "patient1")
    assert client.get(f"{API}/auth/me", headers=auth(fresh)).json()["data"]["role"] == "doctor"


def test_deactivated_user_cannot_log_in(client, admin, patient):
    response = client.delete(f"{API}/users/{patient.id}", headers=admin.headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "inactive"

    response = client.post(f"{API}/auth/login", json={"account": "patient1", "password": "secret123"})
    assert response.status_code == 401
    assert client.get(f"{API}/auth/me", headers=patient.headers).status_code == 401


def test_admin_cannot_deactivate_self(client, admin):
    assert client.delete(f"{API}/users/{admin.id}", headers=admin.headers).status_code == 409


def test_batch_delete(client, admin):
    first = make_user("temp1")
    second = make_user("temp2")
    response = client.post(f"{API}/users/batch-delete", headers=admin.headers,
                           json={"ids": [str(first.id), str(second.id)]})
    assert response.status_code == 200
    assert response.json()["data"] == 2
    assert client.get(f"{API}/users/{first.id}", headers=admin.headers).status_code == 404


def test_batch_delete_refuses_referenced_users(client, admin, patient, doctor):
    assert book(client, patient, doctor).status_code == 200
    response = client.post(f"{API}/users/batch-delete", headers=admin.headers, json={"ids": [str(patient.id)]})
    assert response.status_code == 409


def test_batch_delete_refuses_self_and_unknown(client, admin):
    assert client.post(f"{API}/users/batch-delete", headers=admin.headers,
                       json={"ids": [str(admin.id)]}).status_code == 409
    assert client.post(f"{API}/users/batch-delete", headers=admin.headers,
                       json={"ids": [str(uuid.uuid4())]}).status_code == 404


def test_foreign_appointment_is_forbidden_and_audited(client, db, patient, other_patient, doctor):
    booked = book(client, patient, doctor).json()["data"]["id"]
    response = client.get(f"{API}/appointments/{booked}", headers=other_patient.headers)
    assert response.status_code == 403

    denied = db.query(models.AuditLog).filter(models.AuditLog.action == models.AuditAction.ACCESS_DENIED).all()
    assert len(denied) == 1
    assert denied[0].user_id == other_patient.id
    assert denied[0].resource_type == "appointment"


def test_assigned_doctor_and_admin_can_read_appointment(client, admin, patient, doctor, other_doctor):
    booked = book(client, patient, doctor).json()["data"]["id"]
    assert client.get(f"{API}/appointments/{booked}", headers=doctor.headers).status_code == 200
    assert client.get(f"{API}/appointments/{booked}", headers=admin.headers).status_code == 200
    assert client.get(f"{API}/appointments/{booked}", headers=other_doctor.headers).status_code == 403


def test_unknown_appointment_is_not_found(client, patient):
    assert client.get(f"{API}/appointments/{uuid.uuid4()}", headers=patient.headers).status_code == 404


def test_doctor_schedule_of_another_doctor_is_forbidden(client, doctor, other_doctor):
    response = client.get(f"{API}/appointments/doctor/{other_doctor.doctor.id}", headers=doctor.headers)
    assert response.status_code == 403


def test_audit_log_listing(client, admin, patient):
    response = client.get(f"{API}/logs", headers=admin.headers, params={"action": "LOGIN"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] >= 2
    assert all(item["action"] == "LOGIN" for item in data["items"])


def test_bootstrap_admin_is_created_and_synced(monkeypatch):
    from app.config import get_settings
    from app.database import SessionLocal
    from app.hash_password import create_or_update_admin
    from app.security import verify_password

    settings = get_settings()
    monkeypatch.setattr(settings, "admin_account", "root")
    monkeypatch.setattr(settings, "admin_password", "first-password")
    create_or_update_admin()

    monkeypatch.setattr(settings, "admin_password", "second-password")
    create_or_update_admin()

    session = SessionLocal()
    try:
        admins = session.query(models.User).filter(models.User.account == "root").all()
        assert len(admins) == 1
        assert admins[0].role == models.UserRole.admin
        assert verify_password("second-password", admins[0].password_hash)
    finally:
        session.close()


def test_bootstrap_admin_skipped_without_credentials():
    from app.database import SessionLocal
    from app.hash_password import create_or_update_admin

    create_or_update_admin()
    session = SessionLocal()
    try:
        assert session.query(models.User).count() == 0
    finally:
        session.close()
