"""
Shared fixtures: a throwaway SQLite database and fake providers.
"""
import os
import tempfile
import threading

_DB_DIR = tempfile.mkdtemp(prefix="community-capital-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["SMS_PROVIDER"] = "log"
os.environ["PAYMENT_WORKER_ENABLED"] = "false"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.core.exceptions import TransientPaymentError
from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import engine, SessionLocal
from app.main import app
from app.api.dependencies import (
    get_payment_worker, get_notifier, get_bank_link_provider, get_sms_sender, get_payment_rate_limiter
)
from app.core.rate_limit import SlidingWindowRateLimiter
from app.models.event import Event, Item, Participant, EventStatus
from app.models.payment import BankAccount
from app.models.user import User
from app.services.bank_link_service import LinkedAccount
from app.services.payment_service import PaymentOrchestrator
from app.services.payment_worker import PaymentWorker
from app.services.settlement_service import SettlementTrigger


class FakePaymentProcessor:
    """Records calls; failures can be queued per payment source token."""

    def __init__(self):
        self.charges = []
        self.settlements = []
        self.charge_failures = {}
        self.settlement_failure = None
        self._lock = threading.Lock()

    def fail_next_charges(self, source_token, *errors):
        self.charge_failures.setdefault(source_token, []).extend(errors)

    def charge(self, amount_cents, source_token, metadata, idempotency_key):
        with self._lock:
            self.charges.append({
                "amount_cents": amount_cents,
                "source_token": source_token,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            })
            failures = self.charge_failures.get(source_token)
            if failures:
                raise failures.pop(0)
            return f"ch_{len(self.charges)}"

    def create_merchant_settlement(self, amount_cents, metadata, idempotency_key):
        with self._lock:
            self.settlements.append({
                "amount_cents": amount_cents,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            })
            if self.settlement_failure:
                raise self.settlement_failure
            return f"ic_{len(self.settlements)}"

    def charges_for(self, source_token):
        return [c for c in self.charges if c["source_token"] == source_token]


class RecordingNotifier:
    def __init__(self):
        self.messages = []
        self._lock = threading.Lock()

    def publish(self, room, event, payload, exclude=None):
        with self._lock:
            self.messages.append((room, event, payload))

    def events(self, room=None):
        return [event for r, event, _ in self.messages if room is None or r == room]


class FakeSmsSender:
    def __init__(self):
        self.sent = []

    def send(self, phone_number, message):
        self.sent.append((phone_number, message))

    def last_code(self):
        return self.sent[-1][1].rsplit(" ", 1)[-1]


class FakeBankLinkProvider:
    def __init__(self):
        self.tokens = []

    def exchange_public_token(self, public_token):
        self.tokens.append(public_token)
        return LinkedAccount(
            item_id=f"item-{public_token}",
            payment_source_token=f"btok-{public_token}",
            account_mask="6789",
            institution_name="First Platypus Bank",
        )


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def settlement(processor, notifier):
    return SettlementTrigger(SessionLocal, processor, notifier)


@pytest.fixture
def orchestrator(processor, notifier, settlement, sleeps):
    return PaymentOrchestrator(
        SessionLocal, processor, notifier, settlement,
        max_attempts=3, backoff_seconds=2.0, sleep=sleeps.append,
    )


@pytest.fixture
def worker(orchestrator):
    return PaymentWorker(orchestrator, threads=1)


@pytest.fixture
def sms_sender():
    return FakeSmsSender()


@pytest.fixture
def bank_provider():
    return FakeBankLinkProvider()


@pytest.fixture
def payment_limiter():
    return SlidingWindowRateLimiter(max_requests=5, window_seconds=900)


@pytest.fixture
def client(worker, notifier, sms_sender, bank_provider, payment_limiter):
    app.dependency_overrides[get_payment_worker] = lambda: worker
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_sms_sender] = lambda: sms_sender
    app.dependency_overrides[get_bank_link_provider] = lambda: bank_provider
    app.dependency_overrides[get_payment_rate_limiter] = lambda: payment_limiter
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, phone_number, name=None, with_bank=True):
    user = User(phone_number=phone_number, name=name)
    db.add(user)
    db.flush()
    if with_bank:
        db.add(BankAccount(
            user_id=user.id,
            plaid_item_id=f"item-{user.id}",
            payment_source_token=f"btok-{name or user.id}",
            account_mask="0000",
            institution_name="Test Bank",
        ))
    db.commit()
    db.refresh(user)
    return user


def make_event(db, creator, items, tax="0", tip_percentage="0", participants=(),
               status=EventStatus.AWAITING_PARTICIPANTS, code="ABC123"):
    """Event with (name, price[, shared]) items; creator plus ``participants`` joined."""
    event = Event(
        creator_id=creator.id,
        name="Dinner",
        restaurant_name="Chez Test",
        code=code,
        tax=Decimal(tax),
        tip_percentage=Decimal(tip_percentage),
        status=status,
    )
    event.items = [
        Item(
            name=line[0],
            price=Decimal(line[1]),
            is_shared_by_table=line[2] if len(line) > 2 else False,
            position=position,
        )
        for position, line in enumerate(items)
    ]
    db.add(event)
    db.flush()
    for user in (creator, *participants):
        db.add(Participant(event_id=event.id, user_id=user.id))
    db.commit()
    db.refresh(event)
    return event


def item_ids(event):
    return {item.name: item.id for item in event.items}


def auth_headers(user):
    token = create_access_token(data={"sub": user.phone_number, "user_id": user.id})
    return {"Authorization": f"Bearer {token}"}


def transient(message="gateway timeout"):
    return TransientPaymentError(message, code="timeout")
