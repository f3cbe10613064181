import time
from datetime import timedelta

from access_service.repository import AccessRequestRepository
from access_service.sweeper import ExpirySweeper

from conftest import T0


def grant(svc, user, door, ttl_minutes=10):
    r = svc.machine.submit(user, door, "S1", ["open"])
    return svc.machine.decide(r.id, "grant", ttl_minutes=ttl_minutes, now=T0)


def test_sweep_expires_hold_and_request(svc, push, publisher):
    r = grant(svc, "U1", "D1")
    res = svc.sweeper.run_sweep(T0 + timedelta(minutes=10))

    assert res["expired"] == [r.hold_id]
    assert svc.ledger.get(r.hold_id).status == "expired"
    assert svc.machine.get(r.id).status == "expired"
    assert push.titles_for("tok-U1").count("Hold Expired") == 1
    assert "Hold Expired" in push.titles_for("tok-M1")
    assert publisher.types().count("HoldExpired") == 1


def test_sweep_is_idempotent_for_same_instant(svc, push):
    a = grant(svc, "U1", "D1")
    b = grant(svc, "U2", "D2")
    now = T0 + timedelta(minutes=11)

    first = svc.sweeper.run_sweep(now)
    second = svc.sweeper.run_sweep(now)

    assert sorted(first["expired"]) == sorted([a.hold_id, b.hold_id])
    assert second == {"expired": [], "expiring": []}
    assert push.kinds().count("expired") == 2 * 3  # holder + manager + responder, par hold


def test_expiring_soon_warning_is_sent_once(svc, push):
    r = grant(svc, "U1", "D1", ttl_minutes=10)
    now = T0 + timedelta(minutes=6)

    assert svc.sweeper.run_sweep(now)["expiring"] == [r.hold_id]
    assert svc.sweeper.run_sweep(now)["expiring"] == []
    assert push.titles_for("tok-U1").count("Hold Expiring Soon") == 1
    assert svc.ledger.get(r.hold_id).status == "expiring"

    # un hold "expiring" prolongé repasse en extended, puis expire normalement
    svc.ledger.extend(r.hold_id, 20, now=now)
    assert svc.ledger.get(r.hold_id).status == "extended"
    assert svc.sweeper.run_sweep(T0 + timedelta(minutes=30))["expired"] == [r.hold_id]


def test_extended_hold_survives_sweep_at_old_deadline(svc):
    r = grant(svc, "U1", "D1")
    deadline = svc.ledger.get(r.hold_id).expires_at
    svc.ledger.extend(r.hold_id, 10, now=deadline - timedelta(seconds=1))

    res = svc.sweeper.run_sweep(deadline + timedelta(seconds=1))
    assert res["expired"] == []
    assert svc.ledger.get(r.hold_id).status in ("active", "extended")
    assert svc.machine.get(r.id).status == "granted"


def test_background_loop_starts_and_stops(svc, engine):
    sweeper = ExpirySweeper(svc.ledger, svc.dispatcher, svc.directory, svc.sweeper.publisher, interval=0.05)
    r = svc.machine.submit("U1", "D1", "S1", ["open"])
    svc.machine.decide(r.id, "grant", ttl_minutes=1, now=T0)  # déjà échu

    sweeper.start()
    assert sweeper.running
    deadline = time.monotonic() + 5
    while svc.machine.get(r.id).status != "expired" and time.monotonic() < deadline:
        time.sleep(0.02)
    sweeper.stop(timeout=5)

    assert not sweeper.running
    assert svc.machine.get(r.id).status == "expired"


def test_stop_without_start_is_harmless(svc):
    svc.sweeper.stop(timeout=0.1)
    assert not svc.sweeper.running


def test_failed_expiry_is_retried_by_next_sweep(svc, push, monkeypatch):
    a = grant(svc, "U1", "D1", ttl_minutes=10)
    b = grant(svc, "U2", "D2", ttl_minutes=11)
    original = AccessRequestRepository.close
    calls = []

    def flaky(self, request_id, status):
        calls.append(request_id)
        if len(calls) == 1:
            raise RuntimeError("database blip")
        return original(self, request_id, status)

    monkeypatch.setattr(AccessRequestRepository, "close", flaky)
    now = T0 + timedelta(minutes=12)

    assert svc.sweeper.run_sweep(now)["expired"] == [b.hold_id]
    assert svc.ledger.get(a.hold_id).is_live
    assert svc.machine.get(a.id).status == "granted"
    assert svc.machine.get(b.id).status == "expired"

    assert svc.sweeper.run_sweep(now)["expired"] == [a.hold_id]
    assert svc.machine.get(a.id).status == "expired"
    assert push.titles_for("tok-U1").count("Hold Expired") == 1
    assert push.titles_for("tok-U2").count("Hold Expired") == 1


def test_announce_failure_does_not_skip_remaining_holds(svc, push, publisher, monkeypatch):
    a = grant(svc, "U1", "D1", ttl_minutes=10)
    b = grant(svc, "U2", "D2", ttl_minutes=11)
    original = svc.directory.site_staff
    calls = []

    def flaky(site_id):
        calls.append(site_id)
        if len(calls) == 1:
            raise RuntimeError("directory unavailable")
        return original(site_id)

    monkeypatch.setattr(svc.directory, "site_staff", flaky)
    res = svc.sweeper.run_sweep(T0 + timedelta(minutes=12))

    assert res["expired"] == [a.hold_id, b.hold_id]
    assert svc.machine.get(a.id).status == "expired"
    assert svc.machine.get(b.id).status == "expired"
    assert "Hold Expired" in push.titles_for("tok-U1")
    assert "Hold Expired" in push.titles_for("tok-U2")
    assert publisher.types().count("HoldExpired") == 2
