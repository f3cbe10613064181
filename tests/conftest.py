import threading
from datetime import datetime, timezone

import pytest

from access_service.db import init_db, make_engine
from access_service.errors import TransportError
from access_service.models import Door, Site, SiteMembership, User
from access_service.service import build_service
from access_service.transports import Gateway

T0 = datetime(2024, 3, 4, 9, 0, 0, tzinfo=timezone.utc)


class RecordingGateway(Gateway):
    def __init__(self, channel, fail_for=()):
        self.channel = channel
        self.fail_for = set(fail_for)
        self.sent = []
        self.lock = threading.Lock()

    def deliver(self, recipient, payload):
        if recipient in self.fail_for:
            raise TransportError(f"{self.channel} refused {recipient}")
        with self.lock:
            self.sent.append((recipient, payload))

    def titles_for(self, recipient):
        return [p["title"] for r, p in self.sent if r == recipient]

    def kinds(self):
        return [p["data"]["type"] for _, p in self.sent]


class FakePublisher:
    def __init__(self):
        self.events = []

    def publish(self, event_type, payload):
        self.events.append((event_type, payload))

    def types(self):
        return [t for t, _ in self.events]


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'access.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def gateways():
    return {c: RecordingGateway(c) for c in ("push", "email", "sms")}


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def svc(engine, gateways, publisher):
    service = build_service(engine, gateways=gateways, publisher=publisher, channels=["push"], timeout=10)
    service.directory.add(
        Site(id="S1", name="Main campus"),
        Site(id="S2", name="Warehouse"),
        Door(id="D1", site_id="S1", name="Lab door"),
        Door(id="D2", site_id="S1", name="Server room"),
        Door(id="EQ1", site_id="S1", name="Forklift", kind="equipment"),
        Door(id="D9", site_id="S2", name="Dock"),
        User(id="U1", name="Ana", email="ana@example.com", phone="+15550001", push_token="tok-U1"),
        User(id="U2", name="Ben", email="ben@example.com", push_token="tok-U2"),
        User(id="M1", name="Mia", role="site_manager", email="mia@example.com", push_token="tok-M1"),
        User(id="R1", name="Raj", role="emergency_responder", push_token="tok-R1"),
        User(id="A1", name="Ada", role="admin", push_token="tok-A1"),
        SiteMembership(site_id="S1", user_id="U1", role="member"),
        SiteMembership(site_id="S1", user_id="U2", role="member"),
        SiteMembership(site_id="S1", user_id="M1", role="manager"),
        SiteMembership(site_id="S1", user_id="R1", role="responder"),
    )
    yield service
    service.close()


@pytest.fixture
def push(gateways):
    return gateways["push"]
