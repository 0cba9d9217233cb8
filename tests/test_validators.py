# tests/test_validators.py
import uuid

import pytest
from pydantic import ValidationError

from app import schemas
from app.schemas import is_valid_id_number


@pytest.mark.parametrize("id_number", [
    "11010519491231002X",
    "11010519491231002x",
    "110105491231002",
])
def test_valid_identity_numbers(id_number):
    assert is_valid_id_number(id_number)


@pytest.mark.parametrize("id_number", [
    "110105194912310021",   # wrong check character
    "11010519491331002X",   # month 13
    "11010519490230002X",   # February 30th
    "11010519490431002X",   # April 31st
    "1101051949123100",     # wrong length
    "1101051949123100AX",   # letters in the body
    "11010549123100A",      # letters in a 15-character number
    "\uff11\uff11\uff10\uff11\uff10\uff15\uff14\uff19\uff11\uff12\uff13\uff11\uff10\uff10\uff12",  # full-width digits
    "1101051949123\u0661002X",  # Arabic-Indic digit in the body
])
def test_invalid_identity_numbers(id_number):
    assert not is_valid_id_number(id_number)


def test_patient_profile_rejects_invalid_identity_number():
    with pytest.raises(ValidationError):
        schemas.PatientProfileCreate(name="Zhang San", id_number="110105194912310021", phone="13800000000")


def test_phone_must_be_eleven_digits():
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(account="abc", name="Abc", phone="1380000000", password="secret123")
    schemas.RegisterRequest(account="abc", name="Abc", phone="13800000000", password="secret123")


def test_time_slot_must_be_a_fixed_slot():
    base = {
        "doctor_id": str(uuid.uuid4()),
        "appointment_date": "2030-01-01T09:00:00Z",
        "visit_type": "offline",
    }
    with pytest.raises(ValidationError):
        schemas.AppointmentCreate(time_slot="12:00", **base)
    assert schemas.AppointmentCreate(time_slot="16:30", **base).time_slot == "16:30"


def test_fixed_slots_are_twelve_half_hours():
    assert len(schemas.TIME_SLOTS) == 12
    assert schemas.TIME_SLOTS[0] == "09:00"
    assert schemas.TIME_SLOTS[-1] == "16:30"
    assert "12:00" not in schemas.TIME_SLOTS


def test_page_size_is_clamped():
    params = schemas.PageParams(page=2, per_page=500)
    assert params.per_page == schemas.MAX_PER_PAGE
    assert params.offset == schemas.MAX_PER_PAGE


def test_specialties_length_is_checked():
    with pytest.raises(ValidationError):
        schemas.DoctorCreate(hospital="H", department="D", title="T", specialties=[""])


def test_fanout_envelope_is_discriminated_by_type():
    message = schemas.ws_message_adapter.validate_json('{"type": "heartbeat"}')
    assert isinstance(message, schemas.Heartbeat)
    with pytest.raises(ValidationError):
        schemas.ws_message_adapter.validate_json('{"type": "teleport"}')
