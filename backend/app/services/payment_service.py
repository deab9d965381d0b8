"""
Payment orchestration: one ACH charge per participant per event.

A charge runs in two phases. ``reserve`` validates the request and records
the Payment as ``processing`` before any money moves; ``execute`` submits the
external charge (retrying transient failures with exponential backoff) and
then confirms or releases the reservation. A crash between the phases leaves
a ``processing`` Payment without a charge id, which ``recoverable_payment_ids``
reports so the worker can execute it again under the same idempotency key.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.exceptions import (
    MissingPaymentSourceError, NothingOwedError, NotFoundError, PermissionDeniedError,
    PaymentProviderError, TransientPaymentError, SettlementError
)
from app.core.utils import to_cents, to_minor_units
from app.models.event import Event, EventStatus, Participant
from app.models.payment import Payment, PaymentStatus, BankAccount
from app.services.bank_link_service import get_payment_source
from app.services.claim_service import get_user_share
from app.services.event_state import advance_event, ensure_status, guard_status, PAYABLE_STATES
from app.services.notifier import event_room, user_room

logger = logging.getLogger(__name__)

FAILURE_GUIDANCE = {
    "insufficient_funds": "Insufficient funds. Try another account.",
    "transient": "Temporary problem with the payment provider, please retry.",
    "default": "Payment method was declined. Change payment method.",
}


@dataclass(frozen=True)
class Reservation:
    """Outcome of the reserve phase."""
    payment_id: int
    status: PaymentStatus
    needs_execution: bool


@dataclass(frozen=True)
class PaymentOutcome:
    """Snapshot of a payment after an orchestrator call."""
    payment_id: int
    event_id: int
    user_id: int
    status: PaymentStatus
    amount: Decimal
    charge_id: Optional[str] = None
    attempts: int = 0
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentOutcome":
        return cls(
            payment_id=payment.id,
            event_id=payment.event_id,
            user_id=payment.user_id,
            status=payment.status,
            amount=payment.amount,
            charge_id=payment.charge_id,
            attempts=payment.attempts,
            failure_code=payment.failure_code,
            failure_reason=payment.failure_reason,
        )


def failure_guidance(error: PaymentProviderError) -> str:
    """Actionable message shown to the participant whose charge failed."""
    if isinstance(error, TransientPaymentError):
        return FAILURE_GUIDANCE["transient"]
    return FAILURE_GUIDANCE.get(error.code or "", FAILURE_GUIDANCE["default"])


def idempotency_key_for(event_id: int, user_id: int, reservation: int) -> str:
    return f"charge-{event_id}-{user_id}-{reservation}"


class PaymentOrchestrator:
    """Drives per-participant payments and hands off to settlement."""

    def __init__(self, session_factory, processor, notifier, settlement,
                 max_attempts: int = 3, backoff_seconds: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.session_factory = session_factory
        self.processor = processor
        self.notifier = notifier
        self.settlement = settlement
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    # Reserve phase

    def reserve(self, db: Session, event_id: int, user_id: int) -> Reservation:
        """
        Record a ``processing`` Payment for the participant, or return the
        existing one.

        A payment that is already processing or completed is returned with
        ``needs_execution=False`` so the caller never issues a second charge.
        A failed payment is re-reserved for a retry.
        """
        event = db.query(Event).filter(Event.id == event_id).first()
        if not event:
            raise NotFoundError("Event not found")
        is_participant = db.query(Participant.id).filter(
            Participant.event_id == event_id,
            Participant.user_id == user_id
        ).first()
        if not is_participant:
            raise PermissionDeniedError("Access denied to this event")

        existing = self._find_payment(db, event_id, user_id)
        if existing and existing.status in (PaymentStatus.PROCESSING, PaymentStatus.COMPLETED):
            logger.info(f"Payment {existing.id} already {existing.status.value}; not charging again")
            return Reservation(existing.id, existing.status, needs_execution=False)

        ensure_status(event, PAYABLE_STATES, "start a payment")
        source = get_payment_source(db, user_id)
        if not source:
            raise MissingPaymentSourceError("No linked bank account")

        # Moving to paymentPending closes claims and cancellation in the same
        # transaction that fixes the amount and records the payment
        guard_status(db, event_id, PAYABLE_STATES, "start a payment")
        advance_event(db, event_id, EventStatus.PAYMENT_PENDING)
        amount = to_cents(get_user_share(db, event_id, user_id).total)
        if amount <= 0:
            db.rollback()
            raise NothingOwedError("Nothing owed for this event")

        if existing is None:
            payment = Payment(
                event_id=event_id,
                user_id=user_id,
                bank_account_id=source.id,
                amount=amount,
                status=PaymentStatus.PROCESSING,
                reservation=1,
                idempotency_key=idempotency_key_for(event_id, user_id, 1),
                attempts=0,
            )
            db.add(payment)
            try:
                db.flush()
            except IntegrityError:
                # Concurrent request for the same participant won the insert
                db.rollback()
                winner = self._find_payment(db, event_id, user_id)
                return Reservation(winner.id, winner.status, needs_execution=False)
        else:
            reservation = existing.reservation + 1
            result = db.execute(
                update(Payment)
                .where(
                    Payment.id == existing.id,
                    Payment.status == PaymentStatus.FAILED,
                    Payment.reservation == existing.reservation,
                )
                .values(
                    status=PaymentStatus.PROCESSING,
                    reservation=reservation,
                    idempotency_key=idempotency_key_for(event_id, user_id, reservation),
                    bank_account_id=source.id,
                    amount=amount,
                    attempts=0,
                    charge_id=None,
                    failure_code=None,
                    failure_reason=None,
                    is_transient_failure=False,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                winner = self._find_payment(db, event_id, user_id)
                return Reservation(winner.id, winner.status, needs_execution=False)
            payment = existing

        db.commit()
        db.refresh(payment)
        logger.info(f"Reserved payment {payment.id} for user {user_id} on event {event_id}: {amount}")
        self.notifier.publish(user_room(user_id), "paymentProcessing", {
            "eventId": event_id,
            "paymentId": payment.id,
            "amount": str(amount),
        })
        return Reservation(payment.id, payment.status, needs_execution=True)

    # Execute phase

    def execute(self, payment_id: int) -> PaymentOutcome:
        """
        Submit the external charge for a reserved payment and record the
        result. Payments that are no longer ``processing`` are returned as-is.
        """
        db = self.session_factory()
        try:
            payment = db.query(Payment).filter(Payment.id == payment_id).first()
            if not payment:
                raise NotFoundError("Payment not found")
            if payment.status != PaymentStatus.PROCESSING or payment.charge_id:
                return PaymentOutcome.from_payment(payment)

            source = db.query(BankAccount).filter(BankAccount.id == payment.bank_account_id).first()
            event_id = payment.event_id
            reservation = payment.reservation
            try:
                charge_id = self._charge_with_retry(db, payment, source.payment_source_token)
            except PaymentProviderError as e:
                self._release(db, payment, reservation, e)
                return PaymentOutcome.from_payment(self._reload(db, payment_id))

            self._confirm(db, payment, reservation, charge_id)
            outcome = PaymentOutcome.from_payment(self._reload(db, payment_id))
        finally:
            db.close()

        if outcome.status == PaymentStatus.COMPLETED:
            try:
                self.settlement.settle_if_complete(event_id)
            except SettlementError as e:
                # Event already marked failed and broadcast; the payment itself stands
                logger.error(f"Settlement after payment {payment_id} failed: {e.message}")
        return outcome

    def charge_participant(self, event_id: int, user_id: int) -> PaymentOutcome:
        """Reserve and execute in one call."""
        db = self.session_factory()
        try:
            reservation = self.reserve(db, event_id, user_id)
            if not reservation.needs_execution:
                payment = db.query(Payment).filter(Payment.id == reservation.payment_id).first()
                return PaymentOutcome.from_payment(payment)
        finally:
            db.close()
        return self.execute(reservation.payment_id)

    def recoverable_payment_ids(self) -> List[int]:
        """Payments reserved but never confirmed or released."""
        db = self.session_factory()
        try:
            rows = db.query(Payment.id).filter(
                Payment.status == PaymentStatus.PROCESSING,
                Payment.charge_id.is_(None)
            ).order_by(Payment.id).all()
            return [row.id for row in rows]
        finally:
            db.close()

    def _charge_with_retry(self, db: Session, payment: Payment, source_token: str) -> str:
        amount_cents = to_minor_units(payment.amount)
        metadata = {
            "eventId": str(payment.event_id),
            "userId": str(payment.user_id),
            "paymentId": str(payment.id),
        }
        idempotency_key = payment.idempotency_key
        delay = self.backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            self._record_attempt(db, payment.id, attempt)
            try:
                return self.processor.charge(amount_cents, source_token, metadata, idempotency_key)
            except TransientPaymentError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"Payment {payment.id} failed after {attempt} attempts: {e.message}")
                    raise
                logger.warning(
                    f"Payment {payment.id} attempt {attempt} failed ({e.message}); retrying in {delay}s"
                )
                self.sleep(delay)
                delay *= 2

    def _record_attempt(self, db: Session, payment_id: int, attempt: int):
        db.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(attempts=attempt)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def _confirm(self, db: Session, payment: Payment, reservation: int, charge_id: str):
        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status == PaymentStatus.PROCESSING,
                Payment.reservation == reservation,
            )
            .values(status=PaymentStatus.COMPLETED, charge_id=charge_id)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            logger.warning(f"Payment {payment.id} changed while charging; charge {charge_id} not recorded")
            return
        logger.info(f"Payment {payment.id} completed with charge {charge_id}")
        self.notifier.publish(event_room(payment.event_id), "paymentSucceeded", {
            "eventId": payment.event_id,
            "userId": payment.user_id,
            "paymentId": payment.id,
        })

    def _release(self, db: Session, payment: Payment, reservation: int, error: PaymentProviderError):
        transient = isinstance(error, TransientPaymentError)
        db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status == PaymentStatus.PROCESSING,
                Payment.reservation == reservation,
            )
            .values(
                status=PaymentStatus.FAILED,
                failure_code=error.code or ("transient" if transient else "declined"),
                failure_reason=error.message,
                is_transient_failure=transient,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.warning(f"Payment {payment.id} failed: {error.message}")
        self.notifier.publish(user_room(payment.user_id), "paymentFailed", {
            "eventId": payment.event_id,
            "paymentId": payment.id,
            "reason": error.message,
            "guidance": failure_guidance(error),
        })

    @staticmethod
    def _find_payment(db: Session, event_id: int, user_id: int) -> Optional[Payment]:
        return db.query(Payment).filter(
            Payment.event_id == event_id,
            Payment.user_id == user_id
        ).first()

    @staticmethod
    def _reload(db: Session, payment_id: int) -> Payment:
        db.expire_all()
        return db.query(Payment).filter(Payment.id == payment_id).first()
