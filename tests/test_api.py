import pytest
from fastapi.testclient import TestClient

from access_service.app import create_app


@pytest.fixture
def client(svc):
    with TestClient(create_app(service=svc, start_background=False)) as c:
        yield c


def submit(client, user="U1", door="D1"):
    r = client.post("/v1/access-requests", json={
        "user_id": user, "door_id": door, "site_id": "S1", "permissions": ["open"],
    })
    assert r.status_code == 201
    return r.json()["request"]["id"]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "sweeper": False}


def test_request_lifecycle_over_http(client):
    rid = submit(client)
    assert client.get(f"/v1/access-requests/{rid}").json()["request"]["status"] == "pending"

    r = client.post(f"/v1/access-requests/{rid}/decision", json={"outcome": "grant", "ttl_minutes": 30})
    assert r.status_code == 200
    body = r.json()
    assert body["request"]["status"] == "granted"
    hold_id, token = body["hold"]["id"], body["token"]

    v = client.post("/v1/access/validate", json={"token": token}).json()
    assert v["valid"] is True and v["holdId"] == hold_id

    r = client.post(f"/v1/holds/{hold_id}/extend", json={"minutes": 15})
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert client.get(f"/v1/holds/{hold_id}").json()["hold"]["extensionCount"] == 1

    r = client.post(f"/v1/holds/{hold_id}/revoke", json={"reason": "shift over"})
    assert r.json()["hold"]["status"] == "revoked"
    v = client.post("/v1/access/validate", json={"token": token}).json()
    assert v == {"valid": False, "reason": "hold-inactive"}


def test_decision_errors_map_to_http_status(client):
    rid = submit(client)
    assert client.post(f"/v1/access-requests/{rid}/decision", json={"outcome": "maybe"}).status_code == 400
    assert client.post(f"/v1/access-requests/{rid}/decision", json={"outcome": "deny"}).status_code == 200
    assert client.post(f"/v1/access-requests/{rid}/decision", json={"outcome": "grant"}).status_code == 409
    assert client.post("/v1/access-requests/999/decision", json={"outcome": "deny"}).status_code == 404
    assert client.get("/v1/holds/999").status_code == 404
    assert client.post("/v1/holds/999/extend", json={"minutes": 5}).status_code == 404


def test_bad_submission_is_rejected(client):
    r = client.post("/v1/access-requests", json={
        "user_id": "U1", "door_id": "D9", "site_id": "S1", "permissions": ["open"],
    })
    assert r.status_code == 400
    assert client.post("/v1/access-requests", json={"user_id": "U1"}).status_code == 422


def test_held_resource_grant_is_a_deny(client):
    first = submit(client)
    client.post(f"/v1/access-requests/{first}/decision", json={"outcome": "grant"})
    second = submit(client, user="U2")
    r = client.post(f"/v1/access-requests/{second}/decision", json={"outcome": "grant"})
    assert r.status_code == 200
    assert r.json()["request"]["reason"] == "resource-held"


def test_sweep_endpoint(client):
    rid = submit(client)
    hold_id = client.post(f"/v1/access-requests/{rid}/decision",
                          json={"outcome": "grant", "ttl_minutes": 5}).json()["hold"]["id"]
    r = client.post("/v1/sweeps", json={"now": "2100-01-01T00:00:00"})
    assert r.status_code == 200
    assert r.json()["expired"] == [hold_id]
    assert client.get(f"/v1/access-requests/{rid}").json()["request"]["status"] == "expired"


def test_notification_endpoints(client, push):
    r = client.post("/v1/notifications", json={
        "event_id": "notice-1", "kind": "custom", "target": {"user_ids": ["U1", "U2"]},
        "payload": {"title": "Elevator out", "body": "Use stairs B"},
    })
    assert r.status_code == 200
    assert r.json()["delivered"] == 2
    assert client.post("/v1/notifications", json={"event_id": "bad"}).status_code == 400

    r = client.post("/v1/notifications/batch", json=[
        {"eventId": "n-1", "target": {"user_id": "M1"}, "payload": {"title": "t", "body": "b"}, "type": "push"},
        42,
    ])
    assert r.status_code == 200
    assert r.json()["sent"] == 1
    assert r.json()["failures"][0]["index"] == 1
    assert "Elevator out" in push.titles_for("tok-U2")
