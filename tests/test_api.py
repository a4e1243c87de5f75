from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from rsvpdesk import api, database
from rsvpdesk.models import Event, User
from rsvpdesk.utils import new_object_id, utctoday


@pytest.fixture()
def client(notifier):
    """FastAPI test client with the recording notifier injected."""

    api.app.dependency_overrides[api.get_notifier] = lambda: notifier
    with TestClient(api.app) as test_client:
        yield test_client
    api.app.dependency_overrides.clear()


def _auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {user.api_token}"}


def _event_payload(**overrides):
    payload = {
        "title": "Board Game Night",
        "description": "Bring your favourite game",
        "date": (utctoday() + timedelta(days=5)).isoformat(),
        "time": "19:00",
        "location": "Library Hall",
        "capacity": 10,
    }
    payload.update(overrides)
    return payload


def _go_online(client, admin):
    response = client.put("/api/v1/chat/status", json={"isOnline": True}, headers=_auth(admin))
    assert response.status_code == 200


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_event_lifecycle_end_to_end(client, notifier, admin, user, other_user, make_user):
    third = make_user(name="Third")

    created = client.post(
        "/api/v1/events",
        json=_event_payload(capacity=2, invited_emails="friend@example.com, pal@example.com"),
        headers=_auth(user),
    )
    assert created.status_code == 201
    event = created.json()["event"]
    assert event["status"] == "pending_approval"
    assert notifier.sent == []

    # Pending events are hidden from everyone but the organizer and admins.
    assert client.get(f"/api/v1/events/{event['id']}").status_code == 404

    approved = client.patch(
        f"/api/v1/events/{event['id']}",
        json={"status": "upcoming"},
        headers=_auth(admin),
    )
    assert approved.status_code == 200
    assert approved.json()["event"]["status"] == "upcoming"
    assert sorted(notifier.recipients) == ["friend@example.com", "pal@example.com"]

    for attendee in (user, other_user):
        response = client.post(
            f"/api/v1/events/{event['id']}/rsvp",
            json={"status": "attending"},
            headers=_auth(attendee),
        )
        assert response.status_code == 200

    full = client.post(
        f"/api/v1/events/{event['id']}/rsvp",
        json={"status": "attending"},
        headers=_auth(third),
    )
    assert full.status_code == 400
    assert full.json() == {"error": "EventFull", "message": "Event is at full capacity"}

    public = client.get(f"/api/v1/events/{event['id']}").json()["event"]
    assert public["attending_count"] == 2
    assert public["available_spots"] == 0
    assert "invited_emails" not in public


def test_chat_end_to_end(client, admin, user):
    _go_online(client, admin)

    started = client.post(
        "/api/v1/chat", json={"initial_message": "Hi, I need help"}, headers=_auth(user)
    )
    assert started.status_code == 201
    body = started.json()
    chat_id = body["chat"]["id"]
    assert body["created"] is True
    assert len(body["chat"]["messages"]) == 1
    message_id = body["message"]["id"]
    assert body["message"]["is_read"] is False

    assert client.get("/api/v1/chat/unread", headers=_auth(admin)).json() == {"unread": 1}

    first = client.put(
        "/api/v1/chat/messages/read",
        json={"chat_id": chat_id, "message_ids": [message_id]},
        headers=_auth(admin),
    )
    assert first.status_code == 200
    assert first.json() == {"updated": 1}

    second = client.put(
        "/api/v1/chat/messages/read",
        json={"chat_id": chat_id, "message_ids": [message_id]},
        headers=_auth(admin),
    )
    assert second.json() == {"updated": 0}

    thread = client.get(f"/api/v1/chat/{chat_id}", headers=_auth(user)).json()["chat"]
    assert thread["messages"][0]["is_read"] is True


def test_chat_offline_and_archive_routes(client, admin, user):
    offline = client.post(
        "/api/v1/chat", json={"initial_message": "Hello?"}, headers=_auth(user)
    )
    assert offline.status_code == 409
    assert offline.json()["error"] == "ChatOffline"

    _go_online(client, admin)
    chat_id = client.post(
        "/api/v1/chat", json={"initial_message": "Hello"}, headers=_auth(user)
    ).json()["chat"]["id"]
    appended = client.post(
        "/api/v1/chat", json={"initial_message": "Again"}, headers=_auth(user)
    )
    assert appended.status_code == 200
    assert appended.json()["created"] is False

    reply = client.post(
        f"/api/v1/chat/{chat_id}/message", json={"content": "Hi!"}, headers=_auth(admin)
    )
    assert reply.status_code == 201
    assert client.put(f"/api/v1/chat/{chat_id}/read", headers=_auth(user)).json() == {
        "updated": 1
    }

    assert client.delete(f"/api/v1/chat/{chat_id}", headers=_auth(user)).status_code == 200
    closed = client.post(
        f"/api/v1/chat/{chat_id}/message", json={"content": "More"}, headers=_auth(user)
    )
    assert closed.status_code == 409
    assert closed.json()["error"] == "ChatArchived"
    assert client.get("/api/v1/chat", headers=_auth(user)).json() == {"chats": []}

    reopened = client.post(f"/api/v1/chat/{chat_id}/reopen", headers=_auth(admin))
    assert reopened.json()["chat"]["is_active"] is True


def test_presence_routes(client, admin, user):
    assert client.get("/api/v1/store/status").json()["status"]["is_online"] is False

    denied = client.put("/api/v1/store/status", json={"isOnline": True}, headers=_auth(user))
    assert denied.status_code == 403

    invalid = client.put(
        "/api/v1/store/status", json={"isOnline": "yes"}, headers=_auth(admin)
    )
    assert invalid.status_code == 400
    assert invalid.json()["message"] == "isOnline field must be a boolean"

    updated = client.put("/api/v1/store/status", json={"isOnline": True}, headers=_auth(admin))
    assert updated.json()["status"]["is_online"] is True
    assert client.get("/api/v1/chat/status").json()["status"]["is_online"] is False


def test_auth_and_id_validation(client, user):
    anonymous = client.post("/api/v1/events", json=_event_payload())
    assert anonymous.status_code == 401
    assert anonymous.json()["error"] == "Unauthenticated"

    bad_token = client.get("/api/v1/chat", headers={"Authorization": "Bearer nope"})
    assert bad_token.status_code == 401

    invalid = client.get("/api/v1/events/not-an-id")
    assert invalid.status_code == 400
    assert invalid.json() == {"error": "ValidationError", "message": "Invalid event ID"}

    missing = client.get(f"/api/v1/chat/{new_object_id()}", headers=_auth(user))
    assert missing.status_code == 404


def test_edit_and_delete_event_routes(client, admin, user, other_user):
    event_id = client.post(
        "/api/v1/events", json=_event_payload(), headers=_auth(user)
    ).json()["event"]["id"]

    forbidden = client.put(
        f"/api/v1/events/{event_id}", json={"title": "Hijacked"}, headers=_auth(other_user)
    )
    assert forbidden.status_code == 403

    status_change = client.put(
        f"/api/v1/events/{event_id}", json={"status": "upcoming"}, headers=_auth(user)
    )
    assert status_change.status_code == 400

    edited = client.put(
        f"/api/v1/events/{event_id}",
        json={"title": "Game Night Deluxe", "capacity": 12},
        headers=_auth(user),
    )
    assert edited.status_code == 200
    assert edited.json()["event"]["title"] == "Game Night Deluxe"
    assert edited.json()["event"]["capacity"] == 12

    own = client.get("/api/v1/events?status=pending_approval", headers=_auth(user))
    assert [e["id"] for e in own.json()["events"]] == [event_id]
    assert client.get("/api/v1/events").json()["events"] == []

    assert client.delete(f"/api/v1/events/{event_id}", headers=_auth(admin)).status_code == 204
    session = database.SessionLocal()
    assert session.get(Event, event_id) is None
    session.close()


def test_stats_and_delete_request_routes(client, admin, user):
    stats = client.get("/api/v1/users/me/stats", headers=_auth(user))
    assert stats.json()["stats"] == {
        "upcoming_events": 0,
        "maybe_events": 0,
        "past_events": 0,
        "organized_events": 0,
    }

    created = client.post(
        "/api/v1/users/delete-request", json={"reason": "Bye"}, headers=_auth(user)
    )
    assert created.status_code == 201
    request_id = created.json()["delete_request"]["id"]

    duplicate = client.post(
        "/api/v1/users/delete-request", json={}, headers=_auth(user)
    )
    assert duplicate.status_code == 400

    assert client.get("/api/v1/users/delete-request", headers=_auth(user)).status_code == 403
    listing = client.get("/api/v1/users/delete-request", headers=_auth(admin))
    assert [r["id"] for r in listing.json()["delete_requests"]] == [request_id]

    resolved = client.patch(
        f"/api/v1/users/delete-request/{request_id}",
        json={"action": "approve"},
        headers=_auth(admin),
    )
    assert resolved.status_code == 200
    assert resolved.json()["delete_request"]["status"] == "approved"

    # The deleted account's token no longer resolves.
    assert client.get("/api/v1/users/me/stats", headers=_auth(user)).status_code == 401


def test_database_errors_map_to_persistence_error(client, monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(api.events, "list_events", broken)

    response = client.get("/api/v1/events")

    assert response.status_code == 503
    assert response.json() == {
        "error": "PersistenceError",
        "message": "We hit a database issue. Please try again later.",
    }


def test_event_list_pagination(client, admin):
    for day in range(1, 4):
        response = client.post(
            "/api/v1/events",
            json=_event_payload(
                title=f"Day {day}", date=(utctoday() + timedelta(days=day)).isoformat()
            ),
            headers=_auth(admin),
        )
        assert response.status_code == 201

    first = client.get("/api/v1/events?per_page=2").json()
    assert [e["title"] for e in first["events"]] == ["Day 1", "Day 2"]
    assert first["pagination"]["total_pages"] == 2
    assert first["pagination"]["next_page"] == 2

    second = client.get("/api/v1/events?per_page=2&page=2").json()
    assert [e["title"] for e in second["events"]] == ["Day 3"]
    assert second["pagination"]["has_next"] is False


def test_issue_token_with_password(client, user):
    issued = client.post(
        "/api/v1/auth/token", json={"email": user.email, "password": "secret123"}
    )
    assert issued.status_code == 200
    assert issued.json()["token"] == user.api_token
    assert issued.json()["user"]["id"] == user.id
    assert "password_hash" not in issued.json()["user"]

    denied = client.post(
        "/api/v1/auth/token", json={"email": user.email, "password": "wrong"}
    )
    assert denied.status_code == 401
    assert denied.json() == {
        "error": "Unauthenticated",
        "message": "Invalid email or password",
    }


def test_user_management_routes(client, admin, user, other_user):
    assert client.get("/api/v1/users", headers=_auth(user)).status_code == 403
    listing = client.get("/api/v1/users", headers=_auth(admin))
    assert {u["id"] for u in listing.json()["users"]} == {admin.id, user.id, other_user.id}

    assert client.get(f"/api/v1/users/{user.id}", headers=_auth(user)).status_code == 200
    assert client.get(f"/api/v1/users/{user.id}", headers=_auth(other_user)).status_code == 403
    assert client.get("/api/v1/users/not-an-id", headers=_auth(admin)).status_code == 400

    denied = client.patch(
        f"/api/v1/users/{other_user.id}", json={"role": "admin"}, headers=_auth(user)
    )
    assert denied.status_code == 403
    promoted = client.patch(
        f"/api/v1/users/{other_user.id}", json={"role": "admin"}, headers=_auth(admin)
    )
    assert promoted.status_code == 200
    assert promoted.json()["user"]["role"] == "admin"
    invalid = client.patch(
        f"/api/v1/users/{user.id}", json={"role": "owner"}, headers=_auth(admin)
    )
    assert invalid.status_code == 400


def test_profile_routes(client, user):
    me = client.get("/api/v1/users/me", headers=_auth(user)).json()["user"]
    assert me["id"] == user.id
    assert me["receive_email_notifications"] is True

    updated = client.put(
        "/api/v1/users/me",
        json={"phone": "555-0100", "receive_email_notifications": False},
        headers=_auth(user),
    )
    assert updated.status_code == 200
    assert updated.json()["user"]["phone"] == "555-0100"
    assert updated.json()["user"]["receive_email_notifications"] is False

    role_change = client.put(
        "/api/v1/users/me", json={"role": "admin"}, headers=_auth(user)
    )
    assert role_change.status_code == 400
    assert client.get("/api/v1/users/me", headers=_auth(user)).json()["user"]["role"] == "user"


def test_user_events_route(client, admin, user, other_user):
    event_id = client.post(
        "/api/v1/events", json=_event_payload(), headers=_auth(admin)
    ).json()["event"]["id"]
    client.post(
        f"/api/v1/events/{event_id}/rsvp", json={"status": "attending"}, headers=_auth(user)
    )

    grouped = client.get(f"/api/v1/users/{user.id}/events", headers=_auth(user)).json()
    assert [e["id"] for e in grouped["attending"]] == [event_id]
    assert grouped["organized"] == grouped["maybe"] == grouped["past"] == []

    forbidden = client.get(f"/api/v1/users/{user.id}/events", headers=_auth(other_user))
    assert forbidden.status_code == 403


def test_mark_read_rejects_non_string_ids(client, admin, user):
    _go_online(client, admin)
    chat_id = client.post(
        "/api/v1/chat", json={"initial_message": "Hello"}, headers=_auth(user)
    ).json()["chat"]["id"]

    response = client.put(
        "/api/v1/chat/messages/read",
        json={"chat_id": chat_id, "message_ids": [{"x": 1}]},
        headers=_auth(admin),
    )

    assert response.status_code == 400
    assert response.json() == {
        "error": "ValidationError",
        "message": "Message IDs must be strings",
    }
