"""
Tests for the payment orchestrator and worker.
"""
from decimal import Decimal

import pytest

from app.core.exceptions import (
    MissingPaymentSourceError, NothingOwedError, PermissionDeniedError,
    PermanentPaymentError, InvalidTransitionError
)
from app.db.session import SessionLocal
from app.models.event import Event, EventStatus
from app.models.payment import Payment, PaymentStatus
from app.services import payment_service
from app.services.claim_service import upsert_claims
from app.services.event_service import cancel_event
from app.services.notifier import event_room, user_room
from app.services.payment_service import FAILURE_GUIDANCE
from app.services.payment_worker import PaymentJob
from conftest import make_user, make_event, item_ids, transient


@pytest.fixture
def dinner(db):
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
    return event, alice, bob


def _event(db, event_id):
    db.expire_all()
    return db.get(Event, event_id)


def _payment(db, event_id, user_id):
    db.expire_all()
    return db.query(Payment).filter(Payment.event_id == event_id, Payment.user_id == user_id).first()


def test_successful_charge_leaves_event_pending_until_everyone_pays(db, dinner, orchestrator, processor):
    event, alice, _ = dinner

    outcome = orchestrator.charge_participant(event.id, alice.id)

    assert outcome.status == PaymentStatus.COMPLETED
    assert outcome.amount == Decimal("16.41")
    assert outcome.charge_id == "ch_1"
    assert outcome.attempts == 1
    assert processor.charges[0]["amount_cents"] == 1641
    assert processor.charges[0]["idempotency_key"] == f"charge-{event.id}-{alice.id}-1"
    assert processor.settlements == []
    assert _event(db, event.id).status == EventStatus.PAYMENT_PENDING


def test_last_payment_triggers_settlement(db, dinner, orchestrator, processor, notifier):
    event, alice, bob = dinner

    orchestrator.charge_participant(event.id, alice.id)
    orchestrator.charge_participant(event.id, bob.id)

    assert len(processor.settlements) == 1
    settlement = processor.settlements[0]
    assert settlement["amount_cents"] == 1641 + 630
    assert settlement["idempotency_key"] == f"settlement-{event.id}"

    settled = _event(db, event.id)
    assert settled.status == EventStatus.COMPLETED
    assert settled.virtual_card_id == "ic_1"
    assert settled.settlement_amount == Decimal("22.71")
    assert settled.settled_at is not None
    assert "paymentCompleted" in notifier.events(event_room(event.id))


def test_transient_failures_are_retried_with_backoff(db, dinner, orchestrator, processor, sleeps, notifier):
    event, alice, bob = dinner
    processor.fail_next_charges("btok-alice", transient(), transient(), transient())

    outcome = orchestrator.charge_participant(event.id, alice.id)

    assert outcome.status == PaymentStatus.FAILED
    assert outcome.attempts == 3
    assert sleeps == [2.0, 4.0]
    keys = {c["idempotency_key"] for c in processor.charges_for("btok-alice")}
    assert keys == {f"charge-{event.id}-{alice.id}-1"}
    assert "paymentFailed" in notifier.events(user_room(alice.id))

    payment = _payment(db, event.id, alice.id)
    assert payment.is_transient_failure is True

    # The other participant is unaffected and the event stays pending
    assert orchestrator.charge_participant(event.id, bob.id).status == PaymentStatus.COMPLETED
    assert _event(db, event.id).status == EventStatus.PAYMENT_PENDING
    assert processor.settlements == []


def test_transient_failure_then_success(dinner, orchestrator, processor, sleeps):
    event, alice, _ = dinner
    processor.fail_next_charges("btok-alice", transient(), transient())

    outcome = orchestrator.charge_participant(event.id, alice.id)

    assert outcome.status == PaymentStatus.COMPLETED
    assert outcome.attempts == 3
    assert sleeps == [2.0, 4.0]


def test_permanent_failure_is_not_retried(dinner, orchestrator, processor, sleeps, notifier):
    event, alice, _ = dinner
    processor.fail_next_charges(
        "btok-alice", PermanentPaymentError("Your account has insufficient funds", code="insufficient_funds")
    )

    outcome = orchestrator.charge_participant(event.id, alice.id)

    assert outcome.status == PaymentStatus.FAILED
    assert outcome.attempts == 1
    assert outcome.failure_code == "insufficient_funds"
    assert sleeps == []
    room, name, payload = notifier.messages[-1]
    assert (room, name) == (user_room(alice.id), "paymentFailed")
    assert payload["guidance"] == FAILURE_GUIDANCE["insufficient_funds"]


def test_second_charge_request_does_not_charge_again(dinner, orchestrator, processor):
    event, alice, _ = dinner

    first = orchestrator.charge_participant(event.id, alice.id)
    second = orchestrator.charge_participant(event.id, alice.id)

    assert second.payment_id == first.payment_id
    assert second.status == PaymentStatus.COMPLETED
    assert len(processor.charges_for("btok-alice")) == 1


def test_reserve_returns_existing_processing_payment(db, dinner, orchestrator):
    event, alice, _ = dinner

    first = orchestrator.reserve(db, event.id, alice.id)
    second = orchestrator.reserve(db, event.id, alice.id)

    assert first.needs_execution is True
    assert second.payment_id == first.payment_id
    assert second.needs_execution is False


def test_retry_after_failure_uses_new_reservation(db, dinner, orchestrator, processor):
    event, alice, _ = dinner
    processor.fail_next_charges("btok-alice", PermanentPaymentError("Declined", code="card_declined"))
    orchestrator.charge_participant(event.id, alice.id)

    outcome = orchestrator.charge_participant(event.id, alice.id)

    assert outcome.status == PaymentStatus.COMPLETED
    payment = _payment(db, event.id, alice.id)
    assert payment.reservation == 2
    assert payment.failure_code is None
    assert processor.charges[-1]["idempotency_key"] == f"charge-{event.id}-{alice.id}-2"


def test_missing_bank_account(db, orchestrator):
    carol = make_user(db, "+15550000003", "carol", with_bank=False)
    event = make_event(db, carol, items=[("Soup", "5.00")], code="SOUP01")
    upsert_claims(db, event.id, carol.id, [item_ids(event)["Soup"]])

    with pytest.raises(MissingPaymentSourceError):
        orchestrator.charge_participant(event.id, carol.id)
    assert _payment(db, event.id, carol.id) is None


def test_nothing_owed(db, dinner, orchestrator, processor):
    event, alice, _ = dinner
    carol = make_user(db, "+15550000003", "carol")
    other = make_event(db, alice, items=[("Soup", "5.00")], participants=[carol], code="SOUP01")
    upsert_claims(db, other.id, alice.id, [item_ids(other)["Soup"]])

    with pytest.raises(NothingOwedError):
        orchestrator.charge_participant(other.id, carol.id)
    assert processor.charges == []


def test_non_participant_cannot_pay(db, dinner, orchestrator):
    event, _, _ = dinner
    stranger = make_user(db, "+15550000009", "stranger")
    with pytest.raises(PermissionDeniedError):
        orchestrator.charge_participant(event.id, stranger.id)


def test_cancelled_event_cannot_be_paid(db, dinner, orchestrator):
    event, alice, _ = dinner
    cancel_event(db, db.get(Event, event.id), "Wrong receipt")
    with pytest.raises(InvalidTransitionError):
        orchestrator.charge_participant(event.id, alice.id)


def test_claims_frozen_once_payment_reserved(db, dinner, orchestrator):
    event, alice, bob = dinner
    orchestrator.reserve(db, event.id, alice.id)
    with pytest.raises(InvalidTransitionError):
        upsert_claims(db, event.id, bob.id, [item_ids(event)["Burger"]])


def test_worker_executes_queued_payment(db, dinner, orchestrator, worker, processor):
    event, alice, _ = dinner
    reservation = orchestrator.reserve(db, event.id, alice.id)

    worker.submit(PaymentJob(reservation.payment_id))
    assert worker.drain() == 1

    assert _payment(db, event.id, alice.id).status == PaymentStatus.COMPLETED
    assert len(processor.charges) == 1


def test_recover_requeues_interrupted_payments(db, dinner, orchestrator, worker, processor):
    event, alice, bob = dinner
    # Reserved but never executed, as after a crash
    orchestrator.reserve(db, event.id, alice.id)
    orchestrator.charge_participant(event.id, bob.id)

    assert worker.recover() == 1
    worker.drain()

    assert _payment(db, event.id, alice.id).status == PaymentStatus.COMPLETED
    assert processor.charges_for("btok-alice")[0]["idempotency_key"] == f"charge-{event.id}-{alice.id}-1"
    assert _event(db, event.id).status == EventStatus.COMPLETED
    assert worker.recover() == 0


def test_execute_skips_payments_no_longer_processing(dinner, orchestrator, processor):
    event, alice, _ = dinner
    outcome = orchestrator.charge_participant(event.id, alice.id)

    again = orchestrator.execute(outcome.payment_id)

    assert again.status == PaymentStatus.COMPLETED
    assert len(processor.charges) == 1


def test_worker_threads_process_jobs_until_stopped(db, dinner, orchestrator, worker):
    event, alice, _ = dinner
    reservation = orchestrator.reserve(db, event.id, alice.id)

    worker.start()
    assert worker.running
    worker.submit(PaymentJob(reservation.payment_id))
    worker.stop()

    assert not worker.running
    assert _payment(db, event.id, alice.id).status == PaymentStatus.COMPLETED


def test_cancel_during_reservation_stops_the_charge(db, dinner, orchestrator, processor, monkeypatch):
    event, alice, _ = dinner
    lookup_source = payment_service.get_payment_source

    # The creator cancels after the reservation passed its status check
    def cancel_then_lookup(session, user_id):
        other = SessionLocal()
        try:
            cancel_event(other, other.get(Event, event.id), "Wrong receipt")
        finally:
            other.close()
        return lookup_source(session, user_id)

    monkeypatch.setattr(payment_service, "get_payment_source", cancel_then_lookup)

    with pytest.raises(InvalidTransitionError):
        orchestrator.charge_participant(event.id, alice.id)

    assert _event(db, event.id).status == EventStatus.FAILED
    assert _payment(db, event.id, alice.id) is None
    assert processor.charges == []


def test_cancel_rejected_once_a_payment_is_reserved(db, dinner, orchestrator, processor):
    event, alice, bob = dinner
    reservation = orchestrator.reserve(db, event.id, alice.id)

    with pytest.raises(InvalidTransitionError):
        cancel_event(db, db.get(Event, event.id), "Too late")
    assert _event(db, event.id).status == EventStatus.PAYMENT_PENDING

    orchestrator.execute(reservation.payment_id)
    orchestrator.charge_participant(event.id, bob.id)

    assert _event(db, event.id).status == EventStatus.COMPLETED
    assert len(processor.settlements) == 1


def test_nothing_owed_leaves_event_status_alone(db, dinner, orchestrator):
    event, alice, _ = dinner
    carol = make_user(db, "+15550000003", "carol")
    other = make_event(db, alice, items=[("Soup", "5.00")], participants=[carol], code="SOUP01")
    upsert_claims(db, other.id, alice.id, [item_ids(other)["Soup"]])

    with pytest.raises(NothingOwedError):
        orchestrator.charge_participant(other.id, carol.id)
    assert _event(db, other.id).status == EventStatus.ITEMS_CLAIMED


def test_recover_settles_event_paid_before_a_crash(db, dinner, orchestrator, worker, processor, monkeypatch):
    event, alice, bob = dinner
    orchestrator.charge_participant(event.id, alice.id)
    # The process stops between confirming the last payment and settling
    monkeypatch.setattr(orchestrator.settlement, "settle_if_complete", lambda event_id: None)
    orchestrator.charge_participant(event.id, bob.id)
    monkeypatch.undo()
    assert _event(db, event.id).status == EventStatus.PAYMENT_PENDING

    assert worker.recover() == 1
    worker.drain()

    assert _event(db, event.id).status == EventStatus.COMPLETED
    assert len(processor.settlements) == 1
    assert worker.recover() == 0
