"""
Tests for the settlement trigger.
"""
import threading
from decimal import Decimal

import pytest

from app.core.exceptions import SettlementError, PermanentPaymentError
from app.models.event import Event, EventStatus, Participant
from app.models.payment import Payment, PaymentStatus
from app.services.claim_service import upsert_claims
from app.services.notifier import event_room
from app.services.settlement_service import check_all_participants_paid, build_settlement_summary
from conftest import make_user, make_event, item_ids


@pytest.fixture
def paid_dinner(db):
    """Two participants with completed payments; the event is waiting to settle."""
    alice = make_user(db, "+15550000001", "alice")
    bob = make_user(db, "+15550000002", "bob")
    event = make_event(
        db, alice,
        items=[("Burger", "12.99"), ("Fries", "4.99")],
        tax="1.50", tip_percentage="18", participants=[bob],
    )
    ids = item_ids(event)
    upsert_claims(db, event.id, alice.id, [ids["Burger"]])
    upsert_claims(db, event.id, bob.id, [ids["Fries"]])
    for user, amount in ((alice, "16.41"), (bob, "6.30")):
        db.add(Payment(
            event_id=event.id,
            user_id=user.id,
            bank_account_id=user.bank_accounts[0].id,
            amount=Decimal(amount),
            status=PaymentStatus.COMPLETED,
            charge_id=f"ch_{user.name}",
            idempotency_key=f"charge-{event.id}-{user.id}-1",
            reservation=1,
            attempts=1,
        ))
    db.query(Event).filter(Event.id == event.id).update({Event.status: EventStatus.PAYMENT_PENDING})
    db.commit()
    return event, alice, bob


def test_concurrent_triggers_settle_exactly_once(db, paid_dinner, settlement, processor):
    event, _, _ = paid_dinner
    thread_count = 8
    barrier = threading.Barrier(thread_count)
    results = []
    lock = threading.Lock()

    def trigger():
        barrier.wait()
        settlement_id = settlement.settle_if_complete(event.id)
        with lock:
            results.append(settlement_id)

    threads = [threading.Thread(target=trigger) for _ in range(thread_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(processor.settlements) == 1
    assert [r for r in results if r is not None] == ["ic_1"]
    db.expire_all()
    assert db.get(Event, event.id).status == EventStatus.COMPLETED


def test_no_settlement_until_everyone_paid(db, paid_dinner, settlement, processor):
    event, _, bob = paid_dinner
    db.query(Payment).filter(Payment.user_id == bob.id).update({Payment.status: PaymentStatus.FAILED})
    db.commit()

    assert check_all_participants_paid(db, event.id) is False
    assert settlement.settle_if_complete(event.id) is None
    assert processor.settlements == []


def test_zero_share_participant_counts_as_paid(db, paid_dinner, settlement):
    event, _, _ = paid_dinner
    carol = make_user(db, "+15550000003", "carol")
    db.add(Participant(event_id=event.id, user_id=carol.id))
    db.commit()

    assert check_all_participants_paid(db, event.id) is True
    assert settlement.settle_if_complete(event.id) == "ic_1"


def test_settlement_failure_fails_event(db, paid_dinner, settlement, processor, notifier):
    event, _, _ = paid_dinner
    processor.settlement_failure = PermanentPaymentError("Card program suspended", code="account_invalid")

    with pytest.raises(SettlementError):
        settlement.settle_if_complete(event.id)

    db.expire_all()
    failed = db.get(Event, event.id)
    assert failed.status == EventStatus.FAILED
    assert "Card program suspended" in failed.failure_reason
    assert failed.virtual_card_id is None
    assert "settlementFailed" in notifier.events(event_room(event.id))

    # The guard stays claimed, so nothing retries the settlement
    processor.settlement_failure = None
    assert settlement.settle_if_complete(event.id) is None
    assert len(processor.settlements) == 1


def test_settlement_summary(db, paid_dinner, settlement):
    event, alice, bob = paid_dinner
    settlement.settle_if_complete(event.id)
    db.expire_all()

    summary = build_settlement_summary(event.id, db)

    assert summary["status"] == EventStatus.COMPLETED
    assert summary["all_paid"] is True
    assert summary["total_collected"] == Decimal("22.71")
    assert summary["virtual_card_id"] == "ic_1"
    owed = {p["user_id"]: p["total_owed"] for p in summary["participants"]}
    assert owed == {alice.id: Decimal("16.41"), bob.id: Decimal("6.30")}


def test_interrupted_settlement_is_retried_after_its_lease_expires(db, paid_dinner, settlement, processor, worker):
    event, _, _ = paid_dinner
    processor.settlement_failure = RuntimeError("worker killed mid-settlement")
    with pytest.raises(RuntimeError):
        settlement.settle_if_complete(event.id)
    processor.settlement_failure = None

    db.expire_all()
    stuck = db.get(Event, event.id)
    assert stuck.status == EventStatus.PAYMENT_PENDING
    assert stuck.settlement_claimed is True
    assert stuck.settlement_started_at is not None

    # The lease is still held
    assert settlement.settle_if_complete(event.id) is None
    assert worker.recover() == 0

    settlement.lease_seconds = 0
    assert worker.recover() == 1
    worker.drain()

    db.expire_all()
    settled = db.get(Event, event.id)
    assert settled.status == EventStatus.COMPLETED
    assert settled.virtual_card_id == "ic_2"
    assert {s["idempotency_key"] for s in processor.settlements} == {f"settlement-{event.id}"}
    assert worker.recover() == 0


def test_recoverable_events_exclude_unpaid_and_settled(db, paid_dinner, settlement):
    event, _, bob = paid_dinner
    assert settlement.recoverable_event_ids() == [event.id]

    db.query(Payment).filter(Payment.user_id == bob.id).update({Payment.status: PaymentStatus.FAILED})
    db.commit()
    assert settlement.recoverable_event_ids() == []

    db.query(Payment).filter(Payment.user_id == bob.id).update({Payment.status: PaymentStatus.COMPLETED})
    db.commit()
    settlement.settle_if_complete(event.id)
    assert settlement.recoverable_event_ids() == []
