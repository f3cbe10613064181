import threading
from datetime import timedelta

from conftest import T0


def test_request_grant_validate_revoke(svc, push, publisher):
    submitted = svc.submit_access_request("U1", "D1", "S1", ["open"])
    assert submitted["ok"] is True
    rid = submitted["request"]["id"]
    assert submitted["request"]["status"] == "pending"

    granted = svc.decide_access_request(rid, "grant", ttl_minutes=30, now=T0)
    assert granted["ok"] is True
    assert granted["request"]["status"] == "granted"
    token = granted["token"]
    hold_id = granted["hold"]["id"]

    check = svc.validate_access_token(token, now=T0 + timedelta(minutes=1))
    assert check["valid"] is True
    assert (check["userId"], check["doorId"], check["siteId"]) == ("U1", "D1", "S1")
    assert check["permissions"] == ["open"]
    assert check["holdId"] == hold_id

    revoked = svc.revoke_hold(hold_id, "badge lost")
    assert revoked["ok"] is True
    assert revoked["hold"]["status"] == "revoked"
    assert svc.get_access_request(rid)["request"]["status"] == "revoked"
    assert svc.validate_access_token(token, now=T0 + timedelta(minutes=2)) == \
           {"valid": False, "reason": "hold-inactive"}

    assert publisher.types() == ["AccessRequested", "AccessGranted", "HoldRevoked"]
    assert push.titles_for("tok-U1") == ["Access Request Approved", "Access Revoked"]


def test_exclusive_resource_is_free_again_after_expiry(svc, push):
    a = svc.submit_access_request("U1", "EQ1", "S1", ["operate"])["request"]["id"]
    b = svc.submit_access_request("U2", "EQ1", "S1", ["operate"])["request"]["id"]

    assert svc.decide_access_request(a, "grant", ttl_minutes=15, now=T0)["request"]["status"] == "granted"
    refused = svc.decide_access_request(b, "grant", now=T0)
    assert refused["ok"] is True
    assert (refused["request"]["status"], refused["request"]["reason"]) == ("denied", "resource-held")
    assert "token" not in refused

    swept = svc.run_sweep(T0 + timedelta(minutes=15))
    assert swept["ok"] is True and len(swept["expired"]) == 1
    assert svc.get_access_request(a)["request"]["status"] == "expired"

    c = svc.submit_access_request("U2", "EQ1", "S1", ["operate"])["request"]["id"]
    again = svc.decide_access_request(c, "grant", now=T0 + timedelta(minutes=16))
    assert again["request"]["status"] == "granted"
    assert "Access Request Denied" in push.titles_for("tok-U2")
    assert "Access Request Approved" in push.titles_for("tok-U2")


def test_extension_keeps_token_valid_past_first_deadline(svc):
    rid = svc.submit_access_request("U1", "D2", "S1", ["open"])["request"]["id"]
    granted = svc.decide_access_request(rid, "grant", ttl_minutes=10, now=T0)
    hold_id, first_token = granted["hold"]["id"], granted["token"]

    ext = svc.extend_hold(hold_id, 20, now=T0 + timedelta(minutes=8))
    assert ext["ok"] is True
    assert ext["newExpiresAt"] == T0 + timedelta(minutes=30)

    later = T0 + timedelta(minutes=12)
    assert svc.validate_access_token(first_token, now=later)["reason"] == "expired"
    assert svc.validate_access_token(ext["token"], now=later)["valid"] is True
    assert svc.run_sweep(later)["expired"] == []
    assert svc.get_hold(hold_id)["hold"]["extensionCount"] == 1


def test_errors_are_structured(svc):
    missing = svc.get_access_request(4242)
    assert (missing["ok"], missing["error"]) == (False, "not-found")
    assert missing["message"]
    bad = svc.submit_access_request("U1", "D9", "S1", ["open"])
    assert (bad["ok"], bad["error"]) == (False, "validation")
    assert svc.extend_hold(999, 10)["error"] == "not-found"
    assert svc.revoke_hold(999)["error"] == "not-found"
    assert svc.validate_access_token("garbage") == {"valid": False, "reason": "malformed"}
    assert svc.dispatch_notification({"event_id": "x", "kind": "custom"})["error"] == "validation"


def test_operation_timeout_is_reported(svc, monkeypatch):
    release = threading.Event()

    def stuck(*args, **kwargs):
        release.wait(5)
        return {}

    monkeypatch.setattr(svc, "timeout", 0.1)
    monkeypatch.setattr(svc.sweeper, "run_sweep", stuck)
    res = svc.run_sweep(T0)
    release.set()
    assert res == {"ok": False, "error": "timeout", "message": "sweep timed out"}


def test_dispatch_and_batch_through_service(svc, push, gateways):
    one = svc.dispatch_notification({
        "event_id": "drill-1", "kind": "custom",
        "target": {"site_id": "S1", "role": "responder"},
        "payload": {"title": "Fire drill", "body": "Assemble at gate B"},
        "channels": ["push"],
    })
    assert one["ok"] is True and one["delivered"] == 1
    assert push.titles_for("tok-R1") == ["Fire drill"]

    res = svc.batch_dispatch([
        {"eventId": "m-1", "target": {"user_id": "U1"}, "payload": {"title": "a", "body": "b"}, "type": "email"},
        {"target": {"user_id": "U1"}, "type": "email"},
    ])
    assert res["ok"] is True
    assert res["sent"] == 1
    assert [f["index"] for f in res["failures"]] == [1]
    assert gateways["email"].sent[0][0] == "ana@example.com"


def test_oversized_ttl_is_a_validation_error(svc, push):
    rid = svc.submit_access_request("U1", "D1", "S1", ["open"])["request"]["id"]
    res = svc.decide_access_request(rid, "grant", ttl_minutes=10**12, now=T0)
    assert (res["ok"], res["error"]) == (False, "validation")
    assert svc.get_access_request(rid)["request"]["status"] == "pending"
    ok = svc.decide_access_request(rid, "grant", ttl_minutes=svc.machine.max_ttl_min, now=T0)
    assert ok["ok"] is True


def test_unexpected_failure_is_reported_as_internal(svc, monkeypatch, caplog):
    def broken(*args, **kwargs):
        raise OverflowError("date value out of range")

    monkeypatch.setattr(svc.ledger, "revoke", broken)
    res = svc.revoke_hold(1)
    assert res == {"ok": False, "error": "internal", "message": "revoke failed"}
    assert "revoke failed" in caplog.text
