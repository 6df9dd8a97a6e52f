from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from starlette.websockets import WebSocketDisconnect

from apps.api.core.config import Settings
from apps.api.dependencies.errors import FORCE_SIGN_OUT_HEADER
from apps.api.main import build_service, create_app
from apps.api.services.store import MemoryStore

SECRET = "test-secret"


def _token(user_id: str, email: str, name: str | None = None) -> str:
    claims = {"sub": user_id, "email": email, "aud": "authenticated"}
    if name:
        claims["user_metadata"] = {"full_name": name}
    return jwt.encode(claims, SECRET, algorithm="HS256")


def _auth(user_id: str, email: str, name: str | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {_token(user_id, email, name)}"}


ANA = _auth("U1", "ana@example.com", "Ana")
BO = _auth("A1", "dev@anycorp.com", "Bo")


@pytest.fixture
def settings() -> Settings:
    return Settings(session_secret=SECRET, database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
def app(settings, feed, registry):
    app = create_app(settings)
    app.state.change_feed = feed
    app.state.metrics_registry = registry
    app.state.helpdesk_service = build_service(settings, MemoryStore(feed=feed), registry=registry)
    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


def _create(client: TestClient, headers=ANA, **extra) -> dict:
    payload = {"title": "VPN down", "description": "No tunnel", "priority": "HIGH"}
    response = client.post("/tickets", json=payload, headers={**headers, **extra})
    assert response.status_code == 201, response.text
    return response.json()


def test_ping_is_public(client):
    assert client.get("/ping").json() == {"status": "ok"}


def test_requests_without_token_are_rejected(client):
    response = client.get("/tickets")

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_token_signed_with_another_secret_is_rejected(client):
    forged = jwt.encode({"sub": "U1", "aud": "authenticated"}, "other", algorithm="HS256")

    assert client.get("/me", headers={"Authorization": f"Bearer {forged}"}).status_code == 401


def test_first_contact_creates_profile_and_promotes_bootstrap_admin(client):
    me = client.get("/me", headers=ANA).json()
    admin = client.get("/me", headers=BO).json()

    assert (me["name"], me["role"]) == ("Ana", "USER")
    assert admin["role"] == "ADMIN"


def test_missing_service_returns_503(settings):
    client = TestClient(create_app(settings))

    assert client.get("/tickets", headers=ANA).status_code == 503


def test_create_and_list_tickets(client):
    client.get("/me", headers=BO)

    body = _create(client)

    assert body["ticket"]["status"] == "OPEN"
    assert body["ticket"]["ticket_number"] == 1
    assert body["notified"] == 1
    assert body["fan_out_complete"] is True
    assert [t["title"] for t in client.get("/tickets", headers=ANA).json()] == ["VPN down"]
    assert client.get("/notifications/unread-count", headers=BO).json() == {"unread": 1}


def test_idempotency_key_deduplicates_creates(client):
    first = _create(client, **{"Idempotency-Key": "req-1"})
    second = _create(client, **{"Idempotency-Key": "req-1"})

    assert first["ticket"]["id"] == second["ticket"]["id"]
    assert len(client.get("/tickets", headers=ANA).json()) == 1


def test_status_change_permissions_and_notifications(client):
    client.get("/me", headers=BO)
    ticket_id = _create(client)["ticket"]["id"]

    denied = client.post(f"/tickets/{ticket_id}/status", json={"status": "RESOLVED"}, headers=ANA)
    invalid = client.post(f"/tickets/{ticket_id}/status", json={"status": "ARCHIVED"}, headers=BO)
    resolved = client.post(f"/tickets/{ticket_id}/status", json={"status": "RESOLVED"}, headers=BO)

    assert denied.status_code == 403
    assert invalid.status_code == 422
    assert resolved.status_code == 200
    assert resolved.json()["ticket"]["resolved_at"] is not None
    history = client.get(f"/tickets/{ticket_id}/history", headers=ANA).json()
    assert [entry["action"] for entry in history] == ["CREATED", "STATUS_CHANGE"]
    inbox = client.get("/notifications", headers=ANA).json()
    assert len(inbox) == 1
    assert "RESOLVED" in inbox[0]["message"]


def test_other_requesters_get_403_and_missing_tickets_404(client):
    ticket_id = _create(client)["ticket"]["id"]
    dee = _auth("U2", "dee@example.com")

    assert client.get(f"/tickets/{ticket_id}", headers=dee).status_code == 403
    assert client.get("/tickets/missing", headers=ANA).status_code == 404


def test_edit_requires_fields(client):
    ticket_id = _create(client)["ticket"]["id"]

    empty = client.patch(f"/tickets/{ticket_id}", json={}, headers=ANA)
    edited = client.patch(f"/tickets/{ticket_id}", json={"category": "Network"}, headers=ANA)

    assert empty.status_code == 400
    assert edited.json()["ticket"]["category"] == "Network"


def test_comments_and_delete(client):
    client.get("/me", headers=BO)
    ticket_id = _create(client)["ticket"]["id"]

    reply = client.post(f"/tickets/{ticket_id}/comments", json={"body": "On it"}, headers=BO)
    external = client.post(f"/tickets/{ticket_id}/external-replies", json={"body": "Thanks"}, headers=ANA)

    assert reply.status_code == 201
    assert reply.json()["notified"] == 1
    assert external.status_code == 403
    assert [c["body"] for c in client.get(f"/tickets/{ticket_id}/comments", headers=ANA).json()] == ["On it"]
    assert client.delete(f"/tickets/{ticket_id}", headers=ANA).status_code == 204
    assert client.get("/tickets", headers=BO).json() == []


def test_inbox_routes(client):
    client.get("/me", headers=BO)
    _create(client)
    _create(client)
    inbox = client.get("/notifications", headers=BO).json()

    assert client.post(f"/notifications/{inbox[0]['id']}/read", headers=ANA).status_code == 404
    assert client.post(f"/notifications/{inbox[0]['id']}/read", headers=BO).json()["is_read"] is True
    assert client.post("/notifications/read-all", headers=BO).json() == {"updated": 1}
    assert client.delete(f"/notifications/{inbox[1]['id']}", headers=BO).status_code == 204
    assert client.get("/notifications/unread-count", headers=BO).json() == {"unread": 0}


def test_deactivated_account_is_forced_to_sign_out(client):
    client.get("/me", headers=ANA)
    client.get("/me", headers=BO)

    self_lockout = client.post("/users/A1/active", json={"active": False}, headers=BO)
    deactivated = client.post("/users/U1/active", json={"active": False}, headers=BO)
    response = client.get("/tickets", headers=ANA)

    assert self_lockout.status_code == 403
    assert deactivated.json()["is_active"] is False
    assert response.status_code == 403
    assert response.headers[FORCE_SIGN_OUT_HEADER] == "true"


def test_admin_only_routes(client):
    client.get("/me", headers=ANA)

    assert client.get("/users", headers=ANA).status_code == 403
    assert client.get("/activity", headers=ANA).status_code == 403
    assert client.get("/metrics", headers=ANA).status_code == 403
    assert len(client.get("/users", headers=BO).json()) == 2



def test_insight_routes_without_model(client):
    client.get("/me", headers=BO)
    ticket_id = _create(client)["ticket"]["id"]

    triage = client.post("/tickets/triage", json={"title": "VPN down", "description": "No tunnel"}, headers=ANA)

    assert triage.status_code == 200
    assert triage.json() is None
    assert client.get(f"/tickets/{ticket_id}/insights", headers=ANA).status_code == 403
    assert client.get(f"/tickets/{ticket_id}/insights", headers=BO).json() is None


def test_metrics_endpoint_renders_counters(client):
    _create(client)

    response = client.get("/metrics", headers=BO)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "helpdesk_tickets_created_total 1.0" in response.text


def test_stats(client):
    _create(client)

    assert client.get("/tickets/stats", headers=ANA).json() == {
        "total": 1,
        "open": 1,
        "in_progress": 0,
        "resolved": 0,
        "critical": 0,
    }


def test_event_stream_pushes_collections(client, feed):
    ticket_id = _create(client)["ticket"]["id"]

    with client.websocket_connect(f"/events?token={_token('U1', 'ana@example.com')}") as ws:
        tickets = ws.receive_json()
        notifications = ws.receive_json()
        ws.send_json({"action": "open_ticket", "ticket_id": ticket_id})
        comments = ws.receive_json()
        history = ws.receive_json()
        ws.send_json({"action": "dance"})
        error = ws.receive_json()
        ws.send_json({"action": "sign_out"})
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()

    assert (tickets["collection"], [t["id"] for t in tickets["data"]]) == ("tickets", [ticket_id])
    assert (notifications["collection"], notifications["data"]) == ("notifications", [])
    assert (comments["collection"], comments["data"]) == ("comments", [])
    assert history["collection"] == "history" and history["data"][0]["action"] == "CREATED"
    assert error["event"] == "error"
    assert feed.subscriber_count == 0


def test_event_stream_requires_token(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/events") as ws:
            ws.receive_json()

    assert excinfo.value.code == 4401
