"""Shared pytest fixtures: in-memory database, store and a fake email transport."""

from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

import crud
import database
from errors import DeliveryError
from notifier import NotificationDispatcher
from scheduler import ReminderScheduler, SchedulerConfig
from schemas import DeliveryReceipt
from store import MedicationStore

APP_URL = "https://medlove.test"


class RecordingTransport:
    """Email transport that records messages instead of sending them.

    Addresses in `failing` (or every address while `fail_all` is set) are
    rejected with DeliveryError; `raise_error` is raised as is.
    """

    def __init__(self):
        self.sent = []
        self.failing = set()
        self.fail_all = False
        self.raise_error = None

    async def send(self, to_address, subject, body_html):
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_all or to_address in self.failing:
            raise DeliveryError(f"Relay rejected message to {to_address}", to_address)
        self.sent.append((to_address, subject, body_html))
        return DeliveryReceipt(
            message_id=f"msg-{len(self.sent)}",
            to_address=to_address,
            accepted_at=datetime.now(timezone.utc),
        )

    def subjects(self):
        return [subject for _, subject, _ in self.sent]


@pytest.fixture
def engine():
    engine = database.make_engine("sqlite:///:memory:")
    database.init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def store(session_factory):
    return MedicationStore(session_factory)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def make_user(session_factory):
    def factory(user_id="user-1", email="jane@example.com", display_name="Jane"):
        with session_factory() as db:
            crud.create_user(db, {"id": user_id, "email": email, "display_name": display_name})
        return user_id
    return factory


@pytest.fixture
def make_medication(session_factory):
    def factory(user_id="user-1", times=("08:00",), name="Vitamin D", dosage="1 tablet", **extra):
        data = {"name": name, "dosage": dosage, "times": list(times)}
        data.update(extra)
        with session_factory() as db:
            return crud.create_medication(db, user_id, data).id
    return factory


@pytest.fixture
def make_scheduler(store, transport):
    def factory(store=store, **config):
        config = SchedulerConfig(**config)
        dispatcher = NotificationDispatcher(transport, store, APP_URL, max_attempts=config.max_attempts)
        return ReminderScheduler(store, dispatcher, config=config)
    return factory


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()
