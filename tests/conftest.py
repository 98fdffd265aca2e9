from datetime import datetime, timedelta

import pytest
from apscheduler.jobstores.base import JobLookupError
from fastapi.testclient import TestClient

import credentials
from concurrency import KeyedLock
from config import Settings
from credentials import CredentialStore
from database import init_db, make_engine, make_session_factory
from errors import NotificationFailure
from events import EventBus
from ledger import ExpenseLedger
from main import create_app
from notifier import Notifier
from scheduler import RecurrenceScheduler
from storage import LocalBlobStore


class FakeClock:
    """Virtual clock the tests move forward by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.fail = False

    def notify(self, user, expense):
        if self.fail:
            raise NotificationFailure("mail server down")
        self.sent.append((user.id, expense.id, expense.title))


class FakeTimer:
    """Stands in for APScheduler's BackgroundScheduler."""

    def __init__(self):
        self.jobs = {}

    def add_job(self, func, trigger, run_date, args, id, replace_existing, **kwargs):
        assert trigger == "date"
        assert replace_existing
        self.jobs[id] = (run_date, tuple(args))

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(credentials, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 9, 0, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def scheduler(session_factory, notifier, locks, clock, timer, bus):
    scheduler = RecurrenceScheduler(
        session_factory,
        notifier=notifier,
        locks=locks,
        clock=clock,
        timer=timer,
        notification_timeout=2.0,
    )
    scheduler.bind(bus)
    return scheduler


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(str(tmp_path / "uploads"))


@pytest.fixture
def ledger(db, bus, blobs, locks, scheduler):
    return ExpenseLedger(db, bus=bus, blobs=blobs, locks=locks, blob_timeout=2.0)


@pytest.fixture
def store(db):
    return CredentialStore(db)


@pytest.fixture
def alice(store):
    return store.register("alice", "alice-password")


@pytest.fixture
def bob(store):
    return store.register("bob", "bob-password")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        jwt_secret="test-secret",
        upload_dir=str(tmp_path / "api-uploads"),
        log_json=False,
    )


@pytest.fixture
def app(settings, notifier, clock):
    return create_app(settings, notifier=notifier, clock=clock, start_timers=False)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def register(client, username, password="secret-pw"):
    response = client.post(
        "/auth/register", json={"username": username, "password": password}
    )
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
