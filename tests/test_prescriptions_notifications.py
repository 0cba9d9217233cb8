# tests/test_prescriptions_notifications.py
import re
import uuid
from datetime import datetime

import pytest

from conftest import API, book

from app.services import prescription_service

CODE_PATTERN = re.compile(r"^RX\d{8}\d{4}$")


def prescription_payload(patient, **overrides):
    payload = {
        "patient_id": str(patient.id),
        "patient_name": "Patient One",
        "diagnosis": "Qi deficiency",
        "medicines": [{
            "name": "Astragalus", "dosage": "15g", "frequency": "twice daily", "duration": "7 days",
        }],
        "instructions": "Take after meals",
    }
    payload.update(overrides)
    return payload


def issue(client, doctor, patient, **overrides):
    response = client.post(f"{API}/prescriptions", headers=doctor.headers,
                           json=prescription_payload(patient, **overrides))
    assert response.status_code == 200, response.text
    return response.json()["data"]


def test_generate_code_format():
    code = prescription_service.generate_code(datetime(2026, 3, 9))
    assert CODE_PATTERN.match(code)
    assert code.startswith("RX20260309")


def test_doctor_issues_prescription(client, doctor, patient):
    data = issue(client, doctor, patient)
    assert CODE_PATTERN.match(data["code"])
    assert data["doctor_id"] == str(doctor.doctor.id)
    assert data["medicines"][0]["name"] == "Astragalus"


def test_prescription_requires_a_medicine(client, doctor, patient):
    response = client.post(f"{API}/prescriptions", headers=doctor.headers,
                           json=prescription_payload(patient, medicines=[]))
    assert response.status_code == 400


def test_prescription_only_for_patient_accounts(client, doctor, other_doctor):
    response = client.post(f"{API}/prescriptions", headers=doctor.headers,
                           json=prescription_payload(other_doctor))
    assert response.status_code == 400


def test_patient_cannot_issue(client, patient):
    response = client.post(f"{API}/prescriptions", headers=patient.headers, json=prescription_payload(patient))
    assert response.status_code == 403


def test_admin_must_name_the_doctor(client, admin, doctor, patient):
    response = client.post(f"{API}/prescriptions", headers=admin.headers, json=prescription_payload(patient))
    assert response.status_code == 400
    data = issue(client, admin, patient, doctor_id=str(doctor.doctor.id))
    assert data["doctor_id"] == str(doctor.doctor.id)


def test_code_collision_is_retried(client, doctor, patient, monkeypatch):
    first = issue(client, doctor, patient)
    codes = iter([first["code"], "RX202601010001"])
    monkeypatch.setattr(prescription_service, "generate_code", lambda issued_on=None: next(codes))
    second = issue(client, doctor, patient)
    assert second["code"] == "RX202601010001"


def test_code_exhaustion_is_internal_error(client, doctor, patient, monkeypatch):
    first = issue(client, doctor, patient)
    monkeypatch.setattr(prescription_service, "generate_code", lambda issued_on=None: first["code"])
    response = client.post(f"{API}/prescriptions", headers=doctor.headers, json=prescription_payload(patient))
    assert response.status_code == 500
    assert response.json()["success"] is False


def test_prescription_access(client, admin, doctor, other_doctor, patient, other_patient):
    data = issue(client, doctor, patient)
    url = f"{API}/prescriptions/{data['id']}"
    assert client.get(url, headers=patient.headers).status_code == 200
    assert client.get(url, headers=doctor.headers).status_code == 200
    assert client.get(url, headers=admin.headers).status_code == 200
    assert client.get(url, headers=other_patient.headers).status_code == 403
    assert client.get(url, headers=other_doctor.headers).status_code == 403
    assert client.get(f"{API}/prescriptions/{uuid.uuid4()}", headers=admin.headers).status_code == 404


def test_lookup_by_code(client, doctor, patient):
    data = issue(client, doctor, patient)
    response = client.get(f"{API}/prescriptions/code/{data['code'].lower()}", headers=patient.headers)
    assert response.status_code == 200
    assert response.json()["data"]["id"] == data["id"]


def test_prescription_listings(client, admin, doctor, other_doctor, patient):
    issue(client, doctor, patient)
    issue(client, doctor, patient, diagnosis="Damp heat")

    by_doctor = client.get(f"{API}/prescriptions/doctor/{doctor.doctor.id}", headers=doctor.headers)
    assert by_doctor.json()["data"]["total"] == 2
    assert client.get(f"{API}/prescriptions/doctor/{doctor.doctor.id}",
                      headers=other_doctor.headers).status_code == 403

    by_patient = client.get(f"{API}/prescriptions/patient/{patient.id}", headers=patient.headers)
    assert by_patient.json()["data"]["total"] == 2

    searched = client.get(f"{API}/prescriptions", headers=admin.headers, params={"search": "damp"})
    assert searched.json()["data"]["total"] == 1


# --- Notifications ---
def test_prescription_notifies_patient(client, doctor, patient):
    data = issue(client, doctor, patient)
    inbox = client.get(f"{API}/notifications", headers=patient.headers).json()["data"]
    assert inbox["total"] == 1
    assert inbox["unread_count"] == 1
    item = inbox["items"][0]
    assert item["notification_type"] == "prescription_ready"
    assert item["related_id"] == data["id"]


@pytest.fixture
def inbox_of_two(client, patient, doctor):
    book(client, patient, doctor, slot="09:00")
    book(client, patient, doctor, slot="09:30")
    data = client.get(f"{API}/notifications", headers=doctor.headers).json()["data"]
    assert data["total"] == 2
    return [item["id"] for item in data["items"]]


def test_mark_read_and_stats(client, doctor, inbox_of_two):
    first, _ = inbox_of_two
    response = client.put(f"{API}/notifications/{first}/read", headers=doctor.headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "read"
    assert response.json()["data"]["read_at"] is not None

    stats = client.get(f"{API}/notifications/stats", headers=doctor.headers).json()["data"]
    assert stats == {"total": 2, "unread": 1, "read": 1}

    response = client.put(f"{API}/notifications/read-all", headers=doctor.headers)
    assert response.json()["data"] == 1
    stats = client.get(f"{API}/notifications/stats", headers=doctor.headers).json()["data"]
    assert stats == {"total": 2, "unread": 0, "read": 2}


def test_deleted_notifications_leave_the_inbox(client, doctor, inbox_of_two):
    first, second = inbox_of_two
    assert client.delete(f"{API}/notifications/{first}", headers=doctor.headers).status_code == 200
    assert client.get(f"{API}/notifications/{first}", headers=doctor.headers).status_code == 404

    data = client.get(f"{API}/notifications", headers=doctor.headers).json()["data"]
    assert [item["id"] for item in data["items"]] == [second]

    trash = client.get(f"{API}/notifications", headers=doctor.headers, params={"status": "deleted"}).json()["data"]
    assert [item["id"] for item in trash["items"]] == [first]


def test_notifications_are_private(client, doctor, patient, inbox_of_two):
    first, _ = inbox_of_two
    assert client.get(f"{API}/notifications/{first}", headers=patient.headers).status_code == 404
    assert client.put(f"{API}/notifications/{first}/read", headers=patient.headers).status_code == 404


def test_announcement_is_admin_only_and_persisted(client, admin, patient, doctor):
    payload = {"title": "Holiday", "content": "Clinic closed on Monday"}
    assert client.post(f"{API}/notifications/announcement", headers=patient.headers, json=payload).status_code == 403

    response = client.post(f"{API}/notifications/announcement", headers=admin.headers, json=payload)
    assert response.status_code == 200
    assert response.json()["data"] == {"recipients": 3, "delivered_live": 0}

    inbox = client.get(f"{API}/notifications", headers=patient.headers).json()["data"]
    assert inbox["items"][0]["notification_type"] == "system_announcement"
