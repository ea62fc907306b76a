# Each test gets its own SQLite file so transactions and row locks behave
# like a real database shared between sessions.
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from portbroker.adapters import RecordingNotifier
from portbroker.db import build_engine, init_db, make_session_factory
from portbroker.domain import Actor
from portbroker.main import create_app
from portbroker.service import PortBrokerService

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'broker.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(session_factory, notifier, clock):
    return PortBrokerService(session_factory, notifier=notifier, clock=clock, max_retries=0)


@pytest.fixture
def owner():
    return Actor("op-owner")


@pytest.fixture
def requester():
    return Actor("op-requester")


@pytest.fixture
def outsider():
    return Actor("op-outsider")


@pytest.fixture
def admin():
    return Actor("op-admin", is_admin=True)


@pytest.fixture
def box(service, owner):
    return service.create_box(owner, "CTO Rua A", 4, -23.55, -46.63)


@pytest.fixture
def port(service, owner, box):
    first = service.list_ports(owner, box.id)[0]
    return service.set_port_price(owner, first.id, 5000)


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as c:
        yield c
