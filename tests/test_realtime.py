# tests/test_realtime.py
import uuid

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import API, book

from app import models, schemas
from app.services.realtime_service import Connection, ConnectionManager, connection_manager
from app.services.signaling_service import CallRegistry

WS = f"{API}/ws"


def authenticate(ws, actor):
    ws.send_json({"type": "auth", "token": actor.token})
    reply = ws.receive_json()
    assert reply["type"] == "auth_success", reply
    return reply


def assert_nothing_pending(ws):
    """Queues are FIFO, so a heartbeat answered next means nothing else was waiting"""
    ws.send_json({"type": "heartbeat"})
    assert ws.receive_json() == {"type": "heartbeat_ack"}


def test_auth_success_registers_connection(client, patient):
    with client.websocket_connect(WS) as ws:
        reply = authenticate(ws, patient)
        assert reply["user_id"] == str(patient.id)
        assert reply["role"] == "patient"
        assert connection_manager.is_online(patient.id)
    assert not connection_manager.is_online(patient.id)


def test_repeated_sessions_close_cleanly(client, patient):
    for _ in range(10):
        with client.websocket_connect(WS) as ws:
            authenticate(ws, patient)
            assert_nothing_pending(ws)
        assert connection_manager.connection_count() == 0


def test_bad_token_is_rejected_with_policy_close(client):
    with client.websocket_connect(WS) as ws:
        ws.send_json({"type": "auth", "token": "garbage"})
        reply = ws.receive_json()
        assert reply["type"] == "auth_error"
        with pytest.raises(WebSocketDisconnect) as closed:
            ws.receive_json()
        assert closed.value.code == 1008
    assert connection_manager.connection_count() == 0


def test_first_frame_must_be_auth(client, patient):
    with client.websocket_connect(WS) as ws:
        ws.send_json({"type": "heartbeat"})
        assert ws.receive_json()["type"] == "auth_error"
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


def test_heartbeat_and_malformed_frames(client, patient):
    with client.websocket_connect(WS) as ws:
        authenticate(ws, patient)
        ws.send_json({"type": "heartbeat"})
        assert ws.receive_json() == {"type": "heartbeat_ack"}

        ws.send_text("{not json")
        assert ws.receive_json()["type"] == "error"
        ws.send_json({"type": "teleport"})
        assert ws.receive_json()["type"] == "error"
        assert_nothing_pending(ws)


def test_chat_is_stamped_echoed_and_delivered(client, patient, doctor):
    with client.websocket_connect(WS) as patient_ws, client.websocket_connect(WS) as doctor_ws:
        authenticate(patient_ws, patient)
        authenticate(doctor_ws, doctor)

        patient_ws.send_json({"type": "chat_message", "receiver_id": str(doctor.id), "content": "hello doctor"})
        echo = patient_ws.receive_json()
        delivered = doctor_ws.receive_json()

        assert echo == delivered
        assert echo["type"] == "chat_message"
        assert echo["sender_id"] == str(patient.id)
        assert echo["receiver_id"] == str(doctor.id)
        assert echo["content"] == "hello doctor"
        assert echo["id"] and echo["timestamp"]


def test_booking_notification_reaches_only_the_doctor(client, patient, other_patient, doctor):
    with client.websocket_connect(WS) as doctor_ws, client.websocket_connect(WS) as bystander_ws:
        authenticate(doctor_ws, doctor)
        authenticate(bystander_ws, other_patient)

        booked = book(client, patient, doctor).json()["data"]["id"]

        message = doctor_ws.receive_json()
        assert message["type"] == "notification"
        assert message["notification_type"] == "appointment_reminder"
        assert message["title"] == "New appointment"

        assert_nothing_pending(bystander_ws)
        assert_nothing_pending(doctor_ws)

    assert connection_manager.connection_count() == 0
    assert booked


def test_second_connection_supersedes_first(client, patient):
    with client.websocket_connect(WS) as first:
        authenticate(first, patient)
        with client.websocket_connect(WS) as second:
            authenticate(second, patient)

            notice = first.receive_json()
            assert notice["type"] == "error"
            with pytest.raises(WebSocketDisconnect):
                first.receive_json()

            assert connection_manager.connection_count() == 1
            assert_nothing_pending(second)
        assert not connection_manager.is_online(patient.id)


def test_announcement_targets_role(client, admin, patient, doctor):
    with client.websocket_connect(WS) as patient_ws, client.websocket_connect(WS) as doctor_ws:
        authenticate(patient_ws, patient)
        authenticate(doctor_ws, doctor)

        response = client.post(f"{API}/notifications/announcement", headers=admin.headers, json={
            "title": "Clinic closed", "content": "Closed on Friday", "target_role": "patient",
        })
        assert response.status_code == 200
        assert response.json()["data"] == {"recipients": 1, "delivered_live": 1}

        message = patient_ws.receive_json()
        assert message == {"type": "system_announcement", "title": "Clinic closed", "content": "Closed on Friday"}
        assert_nothing_pending(doctor_ws)


def test_video_call_signaling(client, patient, doctor):
    booked = book(client, patient, doctor, visit_type="online_video").json()["data"]["id"]

    response = client.post(f"{API}/video-consultations/{booked}/call", headers=patient.headers)
    assert response.status_code == 409

    client.put(f"{API}/appointments/{booked}/confirm", headers=doctor.headers)
    response = client.post(f"{API}/video-consultations/{booked}/call", headers=patient.headers)
    assert response.status_code == 200
    assert response.json()["data"]["delivered"] is False

    with client.websocket_connect(WS) as patient_ws, client.websocket_connect(WS) as doctor_ws:
        authenticate(patient_ws, patient)
        authenticate(doctor_ws, doctor)
        response = client.post(f"{API}/video-consultations/{booked}/call", headers=patient.headers)
        assert response.json()["data"] == {
            "consultation_id": booked, "to_user_id": str(doctor.id), "delivered": True,
        }

        ring = doctor_ws.receive_json()
        assert ring["type"] == "video_call_request"
        assert ring["from_user_id"] == str(patient.id)

        doctor_ws.send_json({"type": "video_call_accepted", "consultation_id": booked})
        assert patient_ws.receive_json() == {"type": "video_call_accepted", "consultation_id": booked}

        patient_ws.send_json({"type": "video_call_ended", "consultation_id": booked})
        assert doctor_ws.receive_json() == {"type": "video_call_ended", "consultation_id": booked}

        # the call is over; further signals go nowhere
        patient_ws.send_json({"type": "video_call_ended", "consultation_id": booked})
        assert_nothing_pending(doctor_ws)


def test_offline_visit_cannot_be_called(client, patient, doctor):
    booked = book(client, patient, doctor, visit_type="offline").json()["data"]["id"]
    client.put(f"{API}/appointments/{booked}/confirm", headers=doctor.headers)
    assert client.post(f"{API}/video-consultations/{booked}/call", headers=patient.headers).status_code == 409


# --- Registry internals ---
@pytest.mark.asyncio
async def test_full_buffer_drops_oldest():
    connection = Connection(uuid.uuid4(), models.UserRole.patient, buffer_size=2)
    for i in range(3):
        assert connection.send(schemas.ErrorMessage(message=str(i)))

    assert connection.dropped == 1
    assert (await connection.next_message()).message == "1"
    assert (await connection.next_message()).message == "2"


@pytest.mark.asyncio
async def test_close_ends_stream_after_reason():
    connection = Connection(uuid.uuid4(), models.UserRole.patient)
    connection.close("bye")
    assert not connection.send(schemas.HeartbeatAck())
    assert (await connection.next_message()).message == "bye"
    assert await connection.next_message() is None


@pytest.mark.asyncio
async def test_unregister_is_identity_checked():
    manager = ConnectionManager()
    user_id = uuid.uuid4()
    old = Connection(user_id, models.UserRole.doctor)
    new = Connection(user_id, models.UserRole.doctor)

    assert manager.register(old) is None
    assert manager.register(new) is old
    assert old.closed

    # the stale connection's cleanup must not evict its successor
    assert manager.unregister(old) is False
    assert manager.get(user_id) is new
    assert manager.unregister(new) is True
    assert manager.unregister(new) is False
    assert manager.connection_count() == 0


@pytest.mark.asyncio
async def test_role_broadcast_counts_recipients():
    manager = ConnectionManager()
    manager.register(Connection(uuid.uuid4(), models.UserRole.doctor))
    manager.register(Connection(uuid.uuid4(), models.UserRole.patient))
    manager.register(Connection(uuid.uuid4(), models.UserRole.patient))

    assert manager.broadcast_to_role(models.UserRole.patient, schemas.HeartbeatAck()) == 2
    assert manager.broadcast_to_all(schemas.HeartbeatAck()) == 3
    assert manager.send_to_user(uuid.uuid4(), schemas.HeartbeatAck()) is False


@pytest.mark.asyncio
async def test_relay_ignores_strangers():
    manager = ConnectionManager()
    registry = CallRegistry(manager)
    caller, callee, stranger = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    consultation = uuid.uuid4()
    callee_connection = Connection(callee, models.UserRole.doctor)
    manager.register(callee_connection)

    assert registry.ring(consultation, caller, callee) is True
    assert registry.peer_of(consultation, caller) == callee
    assert registry.relay(stranger, schemas.VideoCallEnded(consultation_id=consultation)) is False
    assert registry.peer_of(consultation, callee) == caller
