# tests/test_community.py
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from conftest import API

from app import database, models, schemas
from app.services import circle_service, live_stream_service
from app.services.cache_service import CacheKeys, get_cache

WS = f"{API}/ws"


def scheduled_in(hours=24):
    return (datetime.now(timezone.utc) + timedelta(hours=hours)).isoformat()


def schedule(client, actor, title="Seasonal wellness talk", hours=24):
    response = client.post(f"{API}/live-streams", headers=actor.headers,
                           json={"title": title, "scheduled_time": scheduled_in(hours)})
    assert response.status_code == 200, response.text
    return response.json()["data"]


# --- Live streams ---
def test_doctor_schedules_stream(client, doctor):
    stream = schedule(client, doctor)
    assert stream["status"] == "scheduled"
    assert stream["host_id"] == str(doctor.id)
    assert stream["host_name"] == "Dr Li"
    assert stream["viewer_count"] == 0


def test_patient_cannot_schedule(client, patient):
    response = client.post(f"{API}/live-streams", headers=patient.headers,
                           json={"title": "Nope", "scheduled_time": scheduled_in()})
    assert response.status_code == 403


def test_public_listing(client, doctor):
    later = schedule(client, doctor, "Later", hours=48)
    sooner = schedule(client, doctor, "Sooner", hours=2)
    schedule(client, doctor, "Past", hours=-2)

    upcoming = client.get(f"{API}/live-streams/upcoming").json()["data"]
    assert [s["id"] for s in upcoming["items"]] == [sooner["id"], later["id"]]

    everything = client.get(f"{API}/live-streams").json()["data"]
    assert everything["total"] == 3
    assert client.get(f"{API}/live-streams/{later['id']}").json()["data"]["title"] == "Later"
    assert client.get(f"{API}/live-streams/{uuid.uuid4()}").status_code == 404


def test_stream_lifecycle_and_viewers(client, doctor, patient, other_patient):
    stream = schedule(client, doctor)
    url = f"{API}/live-streams/{stream['id']}"

    assert client.post(f"{url}/join", headers=patient.headers).status_code == 409
    assert client.post(f"{url}/end", headers=doctor.headers).status_code == 409

    response = client.post(f"{url}/start", headers=doctor.headers, json={"stream_url": "rtmp://live/abc"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "live"
    assert response.json()["data"]["stream_url"] == "rtmp://live/abc"
    assert client.post(f"{url}/start", headers=doctor.headers).status_code == 409

    assert client.post(f"{url}/join", headers=patient.headers).json()["data"]["count"] == 1
    assert client.post(f"{url}/join", headers=other_patient.headers).json()["data"]["count"] == 2
    assert client.post(f"{url}/leave", headers=patient.headers).json()["data"]["count"] == 1
    assert client.get(url).json()["data"]["viewer_count"] == 1

    assert client.delete(url, headers=doctor.headers).status_code == 409

    response = client.post(f"{url}/end", headers=doctor.headers)
    assert response.json()["data"]["status"] == "ended"
    assert response.json()["data"]["viewer_count"] == 0
    assert get_cache().get(CacheKeys.live_stream_viewers(uuid.UUID(stream["id"]))) is None

    assert client.put(url, headers=doctor.headers, json={"title": "Rerun"}).status_code == 409
    assert client.post(f"{url}/leave", headers=patient.headers).status_code == 409


def test_viewer_count_never_goes_negative(client, doctor, patient):
    stream = schedule(client, doctor)
    url = f"{API}/live-streams/{stream['id']}"
    client.post(f"{url}/start", headers=doctor.headers)
    assert client.post(f"{url}/leave", headers=patient.headers).json()["data"]["count"] == 0
    assert client.post(f"{url}/join", headers=patient.headers).json()["data"]["count"] == 1


def test_viewer_count_reads_zero_on_garbage():
    stream_id = uuid.uuid4()
    get_cache().set_persistent(CacheKeys.live_stream_viewers(stream_id), "many")
    assert live_stream_service.viewer_count(stream_id) == 0


def test_only_host_or_admin_manages(client, admin, doctor, other_doctor):
    stream = schedule(client, doctor)
    url = f"{API}/live-streams/{stream['id']}"
    assert client.put(url, headers=other_doctor.headers, json={"title": "Hijacked"}).status_code == 403
    assert client.post(f"{url}/start", headers=other_doctor.headers).status_code == 403

    response = client.put(url, headers=admin.headers, json={"title": "Renamed by admin"})
    assert response.json()["data"]["title"] == "Renamed by admin"

    assert client.delete(url, headers=doctor.headers).status_code == 200
    assert client.get(url).status_code == 404


def test_start_and_end_are_broadcast(client, doctor, patient):
    stream = schedule(client, doctor)
    url = f"{API}/live-streams/{stream['id']}"

    with client.websocket_connect(WS) as ws:
        ws.send_json({"type": "auth", "token": patient.token})
        assert ws.receive_json()["type"] == "auth_success"

        client.post(f"{url}/start", headers=doctor.headers)
        assert ws.receive_json() == {
            "type": "live_stream_started", "stream_id": stream["id"],
            "title": "Seasonal wellness talk", "host_name": "Dr Li",
        }

        client.post(f"{url}/join", headers=patient.headers)
        assert ws.receive_json() == {"type": "live_stream_viewer_count", "stream_id": stream["id"], "count": 1}

        client.post(f"{url}/end", headers=doctor.headers)
        assert ws.receive_json() == {"type": "live_stream_ended", "stream_id": stream["id"]}


# --- Circles ---
def create_circle(client, actor, name="Herbal tea lovers", category="herbs"):
    response = client.post(f"{API}/circles", headers=actor.headers,
                           json={"name": name, "category": category, "description": "Share recipes"})
    assert response.status_code == 200, response.text
    return response.json()["data"]


@pytest.fixture
def circle(client, patient):
    return create_circle(client, patient)


def member_url(circle, user):
    return f"{API}/circles/{circle['id']}/members/{user.id}"


def role_url(circle, user):
    return f"{member_url(circle, user)}/role"


def test_creator_owns_new_circle(client, patient, circle):
    assert circle["member_count"] == 1
    assert circle["creator_id"] == str(patient.id)
    assert circle["member_role"] == "owner"

    mine = client.get(f"{API}/my-circles", headers=patient.headers).json()["data"]
    assert [(c["id"], c["member_role"]) for c in mine] == [(circle["id"], "owner")]


def test_join_and_leave(client, patient, other_patient, circle):
    url = f"{API}/circles/{circle['id']}"
    response = client.post(f"{url}/join", headers=other_patient.headers)
    assert response.status_code == 200
    assert response.json()["data"]["member_count"] == 2
    assert response.json()["data"]["member_role"] == "member"
    assert client.post(f"{url}/join", headers=other_patient.headers).status_code == 409

    members = client.get(f"{url}/members", headers=patient.headers).json()["data"]
    assert [(m["user_name"], m["role"]) for m in members] == [("Patient1", "owner"), ("Patient2", "member")]

    assert client.post(f"{url}/leave", headers=other_patient.headers).status_code == 200
    assert client.post(f"{url}/leave", headers=other_patient.headers).status_code == 404
    assert client.post(f"{url}/leave", headers=patient.headers).status_code == 409
    assert client.get(url, headers=patient.headers).json()["data"]["member_count"] == 1


def test_inactive_circle_cannot_be_joined_or_listed(client, patient, other_patient, circle):
    url = f"{API}/circles/{circle['id']}"
    assert client.put(url, headers=patient.headers, json={"is_active": False}).status_code == 200
    assert client.post(f"{url}/join", headers=other_patient.headers).status_code == 409
    assert client.get(f"{API}/circles", headers=other_patient.headers).json()["data"]["total"] == 0


def test_circle_listing_filters(client, patient, doctor):
    create_circle(client, patient)
    create_circle(client, doctor, name="Morning tai chi", category="exercise")

    listing = client.get(f"{API}/circles", headers=patient.headers).json()["data"]
    assert listing["total"] == 2
    by_category = client.get(f"{API}/circles", headers=patient.headers, params={"category": "exercise"}).json()["data"]
    assert [c["name"] for c in by_category["items"]] == ["Morning tai chi"]
    searched = client.get(f"{API}/circles", headers=patient.headers, params={"search": "TEA"}).json()["data"]
    assert [c["name"] for c in searched["items"]] == ["Herbal tea lovers"]


def test_member_roles_are_local(client, patient, other_patient, doctor, circle):
    url = f"{API}/circles/{circle['id']}"
    client.post(f"{url}/join", headers=other_patient.headers)
    client.post(f"{url}/join", headers=doctor.headers)

    # account roles grant nothing inside a circle
    assert client.put(url, headers=doctor.headers, json={"name": "Taken over"}).status_code == 403
    assert client.put(role_url(circle, other_patient), headers=doctor.headers,
                      json={"role": "admin"}).status_code == 403

    response = client.put(role_url(circle, other_patient), headers=patient.headers, json={"role": "admin"})
    assert response.status_code == 200
    assert response.json()["data"]["role"] == "admin"

    # a circle admin may edit the circle and demote to member only
    assert client.put(url, headers=other_patient.headers, json={"description": "Updated"}).status_code == 200
    assert client.put(role_url(circle, doctor), headers=other_patient.headers,
                      json={"role": "admin"}).status_code == 403
    assert client.put(role_url(circle, doctor), headers=other_patient.headers,
                      json={"role": "member"}).status_code == 200

    assert client.put(role_url(circle, doctor), headers=patient.headers, json={"role": "owner"}).status_code == 409
    assert client.put(role_url(circle, patient), headers=patient.headers, json={"role": "member"}).status_code == 409


def test_member_removal_rules(client, patient, other_patient, doctor, other_doctor, circle):
    url = f"{API}/circles/{circle['id']}"
    for actor in (other_patient, doctor, other_doctor):
        client.post(f"{url}/join", headers=actor.headers)
    client.put(role_url(circle, other_patient), headers=patient.headers, json={"role": "admin"})
    client.put(role_url(circle, doctor), headers=patient.headers, json={"role": "admin"})

    assert client.delete(member_url(circle, doctor), headers=other_patient.headers).status_code == 403
    assert client.delete(member_url(circle, patient), headers=other_patient.headers).status_code == 409
    assert client.delete(member_url(circle, other_doctor), headers=other_patient.headers).status_code == 200
    assert client.delete(member_url(circle, other_doctor), headers=patient.headers).status_code == 404
    assert client.delete(member_url(circle, doctor), headers=patient.headers).status_code == 200

    assert client.get(url, headers=patient.headers).json()["data"]["member_count"] == 2


def test_circle_deletion(client, admin, patient, other_patient, circle):
    url = f"{API}/circles/{circle['id']}"
    client.post(f"{url}/join", headers=other_patient.headers)
    client.put(role_url(circle, other_patient), headers=patient.headers, json={"role": "admin"})

    assert client.delete(url, headers=other_patient.headers).status_code == 403
    assert client.delete(url, headers=patient.headers).status_code == 200
    assert client.get(url, headers=patient.headers).status_code == 404
    assert client.get(f"{API}/my-circles", headers=other_patient.headers).json()["data"] == []

    other = create_circle(client, patient, name="Another")
    assert client.delete(f"{API}/circles/{other['id']}", headers=admin.headers).status_code == 200


def test_concurrent_joins_keep_every_member_counted(client, patient, other_patient, doctor, circle):
    circle_id = uuid.UUID(circle["id"])
    sessions = [database.SessionLocal(), database.SessionLocal()]
    try:
        # both sessions read member_count == 1 before either join commits
        loaded = [session.get(models.Circle, circle_id) for session in sessions]
        assert [c.member_count for c in loaded] == [1, 1]
        for session, loaded_circle, actor in zip(sessions, loaded, (other_patient, doctor)):
            principal = schemas.Principal(user_id=actor.id, role=actor.user.role)
            circle_service.join_circle(session, principal, loaded_circle)
    finally:
        for session in sessions:
            session.close()

    url = f"{API}/circles/{circle['id']}"
    assert client.get(url, headers=patient.headers).json()["data"]["member_count"] == 3
    client.post(f"{url}/leave", headers=other_patient.headers)
    assert client.get(url, headers=patient.headers).json()["data"]["member_count"] == 2


# --- Circle posts ---
def publish(client, actor, circle, title="Chrysanthemum tea", **overrides):
    payload = {"title": title, "content": "Steep five flowers for three minutes", "images": []}
    payload.update(overrides)
    response = client.post(f"{API}/circles/{circle['id']}/posts", headers=actor.headers, json=payload)
    assert response.status_code == 200, response.text
    return response.json()["data"]


def join(client, actor, circle):
    assert client.post(f"{API}/circles/{circle['id']}/join", headers=actor.headers).status_code == 200


def test_members_post_and_others_are_notified(client, patient, other_patient, doctor, circle):
    join(client, other_patient, circle)
    post = publish(client, patient, circle)
    assert post["author_name"] == "Patient1"
    assert post["circle_name"] == "Herbal tea lovers"
    assert (post["likes"], post["comments"], post["is_liked"]) == (0, 0, False)

    inbox = client.get(f"{API}/notifications", headers=other_patient.headers).json()["data"]["items"]
    assert [(n["notification_type"], n["related_id"]) for n in inbox] == [("group_message", post["id"])]
    assert client.get(f"{API}/notifications", headers=patient.headers).json()["data"]["total"] == 0

    response = client.post(f"{API}/circles/{circle['id']}/posts", headers=doctor.headers,
                           json={"title": "Outsider", "content": "Not a member"})
    assert response.status_code == 403


def test_post_input_is_validated(client, patient, circle):
    url = f"{API}/circles/{circle['id']}/posts"
    too_many = {"title": "Gallery", "content": "Photos", "images": [f"/uploads/{i}.png" for i in range(10)]}
    assert client.post(url, headers=patient.headers, json=too_many).status_code == 400
    assert client.post(url, headers=patient.headers, json={"title": "", "content": "x"}).status_code == 400


def test_inactive_circle_takes_no_posts(client, patient, circle):
    client.put(f"{API}/circles/{circle['id']}", headers=patient.headers, json={"is_active": False})
    response = client.post(f"{API}/circles/{circle['id']}/posts", headers=patient.headers,
                           json={"title": "Late", "content": "Too late"})
    assert response.status_code == 409


def test_post_listings_are_newest_first(client, patient, other_patient, circle):
    join(client, other_patient, circle)
    first = publish(client, patient, circle, "First")
    second = publish(client, other_patient, circle, "Second")

    listed = client.get(f"{API}/circles/{circle['id']}/posts", headers=patient.headers).json()["data"]
    assert [p["id"] for p in listed["items"]] == [second["id"], first["id"]]

    by_author = client.get(f"{API}/users/{patient.id}/posts", headers=other_patient.headers).json()["data"]
    assert [p["title"] for p in by_author["items"]] == ["First"]
    assert client.get(f"{API}/users/{uuid.uuid4()}/posts", headers=patient.headers).status_code == 404


def test_only_author_edits_post(client, patient, other_patient, circle):
    join(client, other_patient, circle)
    post = publish(client, patient, circle)
    url = f"{API}/posts/{post['id']}"

    assert client.put(url, headers=other_patient.headers, json={"title": "Hijacked"}).status_code == 403
    response = client.put(url, headers=patient.headers, json={"title": "Chrysanthemum and goji tea"})
    assert response.status_code == 200
    assert response.json()["data"]["title"] == "Chrysanthemum and goji tea"
    assert response.json()["data"]["content"] == post["content"]


def test_post_deletion_is_soft_and_moderated(client, admin, patient, other_patient, doctor, circle):
    join(client, other_patient, circle)
    join(client, doctor, circle)
    post = publish(client, other_patient, circle)
    url = f"{API}/posts/{post['id']}"

    assert client.delete(url, headers=doctor.headers).status_code == 403
    # the circle owner moderates posts by members
    assert client.delete(url, headers=patient.headers).status_code == 200
    assert client.get(url, headers=patient.headers).status_code == 404
    assert client.get(f"{API}/circles/{circle['id']}/posts", headers=patient.headers).json()["data"]["total"] == 0

    session = database.SessionLocal()
    try:
        assert session.get(models.CirclePost, uuid.UUID(post["id"])).is_deleted is True
    finally:
        session.close()

    own = publish(client, doctor, circle, "Own post")
    assert client.delete(f"{API}/posts/{own['id']}", headers=doctor.headers).status_code == 200
    other = publish(client, doctor, circle, "Another post")
    assert client.delete(f"{API}/posts/{other['id']}", headers=admin.headers).status_code == 200


def test_like_toggles(client, patient, other_patient, circle):
    post = publish(client, patient, circle)
    url = f"{API}/posts/{post['id']}/like"

    liked = client.post(url, headers=other_patient.headers).json()["data"]
    assert (liked["liked"], liked["likes"]) == (True, 1)
    client.post(url, headers=patient.headers)

    view = client.get(f"{API}/posts/{post['id']}", headers=other_patient.headers).json()["data"]
    assert (view["likes"], view["is_liked"]) == (2, True)

    unliked = client.post(url, headers=other_patient.headers).json()["data"]
    assert (unliked["liked"], unliked["likes"]) == (False, 1)
    view = client.get(f"{API}/posts/{post['id']}", headers=other_patient.headers).json()["data"]
    assert view["is_liked"] is False


def test_comments_flow(client, admin, patient, other_patient, doctor, circle):
    post = publish(client, patient, circle)
    url = f"{API}/posts/{post['id']}/comments"

    first = client.post(url, headers=other_patient.headers, json={"content": "Lovely"}).json()["data"]
    second = client.post(url, headers=doctor.headers, json={"content": "Mind the dose"}).json()["data"]
    assert first["author_name"] == "Patient2"
    assert client.post(url, headers=doctor.headers, json={"content": "x" * 501}).status_code == 400

    listed = client.get(url, headers=patient.headers).json()["data"]
    assert [c["id"] for c in listed["items"]] == [first["id"], second["id"]]
    assert client.get(f"{API}/posts/{post['id']}", headers=patient.headers).json()["data"]["comments"] == 2

    assert client.delete(f"{API}/comments/{second['id']}", headers=other_patient.headers).status_code == 403
    # the post author may clear comments under their post
    assert client.delete(f"{API}/comments/{second['id']}", headers=patient.headers).status_code == 200
    assert client.delete(f"{API}/comments/{second['id']}", headers=patient.headers).status_code == 404
    assert client.delete(f"{API}/comments/{first['id']}", headers=admin.headers).status_code == 200
    assert client.get(url, headers=patient.headers).json()["data"]["total"] == 0


def test_deleted_post_takes_no_likes_or_comments(client, patient, other_patient, circle):
    post = publish(client, patient, circle)
    client.delete(f"{API}/posts/{post['id']}", headers=patient.headers)
    assert client.post(f"{API}/posts/{post['id']}/like", headers=other_patient.headers).status_code == 404
    response = client.post(f"{API}/posts/{post['id']}/comments", headers=other_patient.headers, json={"content": "Hi"})
    assert response.status_code == 404


def test_deleting_a_circle_removes_its_posts(client, patient, other_patient, circle):
    post = publish(client, patient, circle)
    client.post(f"{API}/posts/{post['id']}/like", headers=other_patient.headers)
    client.post(f"{API}/posts/{post['id']}/comments", headers=other_patient.headers, json={"content": "Nice"})

    assert client.delete(f"{API}/circles/{circle['id']}", headers=patient.headers).status_code == 200
    session = database.SessionLocal()
    try:
        assert session.query(models.CirclePost).count() == 0
        assert session.query(models.PostLike).count() == 0
        assert session.query(models.PostComment).count() == 0
    finally:
        session.close()


def test_batch_delete_removes_community_content(client, admin, patient, other_patient, circle):
    join(client, other_patient, circle)
    kept = publish(client, patient, circle, "Kept")
    removed = publish(client, other_patient, circle, "Removed")
    client.post(f"{API}/posts/{kept['id']}/like", headers=other_patient.headers)
    client.post(f"{API}/posts/{kept['id']}/comments", headers=other_patient.headers, json={"content": "Bye"})
    client.post(f"{API}/posts/{removed['id']}/like", headers=patient.headers)

    response = client.post(f"{API}/users/batch-delete", headers=admin.headers, json={"ids": [str(other_patient.id)]})
    assert response.status_code == 200, response.text

    view = client.get(f"{API}/posts/{kept['id']}", headers=patient.headers).json()["data"]
    assert (view["likes"], view["comments"]) == (0, 0)
    assert client.get(f"{API}/posts/{removed['id']}", headers=patient.headers).status_code == 404
    session = database.SessionLocal()
    try:
        assert session.query(models.PostLike).count() == 0
    finally:
        session.close()
