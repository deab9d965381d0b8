"""
Settlement service: pays the merchant once every participant has paid.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import or_, update
from sqlalchemy.orm import Session
from app.core.config import settings
from app.core.exceptions import NotFoundError, PaymentProviderError, SettlementError
from app.core.utils import to_cents, to_minor_units
from app.models.event import Event, EventStatus
from app.models.payment import Payment, PaymentStatus
from app.models.user import User
from app.services.claim_service import calculate_event_totals, get_participant_ids
from app.services.event_state import transition_event
from app.services.notifier import event_room

logger = logging.getLogger(__name__)


def completed_payments_by_user(db: Session, event_id: int) -> Dict[int, Payment]:
    payments = db.query(Payment).filter(
        Payment.event_id == event_id,
        Payment.status == PaymentStatus.COMPLETED
    ).all()
    return {p.user_id: p for p in payments}


def check_all_participants_paid(db: Session, event_id: int) -> bool:
    """
    True when every current participant has a completed payment.

    Participants whose share rounds to zero have nothing to pay and count as
    paid. At least one completed payment is required.
    """
    participant_ids = get_participant_ids(db, event_id)
    if not participant_ids:
        return False
    completed = completed_payments_by_user(db, event_id)
    if not completed:
        return False
    shares = calculate_event_totals(db, event_id)
    for user_id in participant_ids:
        if user_id in completed:
            continue
        if to_cents(shares[user_id].total) > 0:
            return False
    return True


class SettlementTrigger:
    """
    Fan-in check plus the exactly-once merchant settlement.

    Claiming the settlement stamps ``settlement_started_at``. A claim that
    never reached completed or failed (a crash, an unexpected error) expires
    after ``lease_seconds`` and may be claimed again; the retry reuses the
    ``settlement-{event_id}`` idempotency key so the merchant is paid once.
    """

    def __init__(self, session_factory, processor, notifier, lease_seconds: float = None):
        self.session_factory = session_factory
        self.processor = processor
        self.notifier = notifier
        self.lease_seconds = settings.SETTLEMENT_LEASE_SECONDS if lease_seconds is None else lease_seconds

    def settle_if_complete(self, event_id: int) -> Optional[str]:
        """
        Settle the event if everyone has paid.

        Returns the settlement id when this call performed the settlement,
        None when the event is not fully paid or another caller holds the
        settlement guard. Raises SettlementError when the merchant
        settlement fails; the event is marked failed first.
        """
        db = self.session_factory()
        try:
            if not check_all_participants_paid(db, event_id):
                return None
            if not self._claim_settlement(db, event_id):
                logger.debug(f"Settlement for event {event_id} already claimed, skipping")
                return None

            event = db.query(Event).filter(Event.id == event_id).first()
            total = sum(
                (p.amount for p in completed_payments_by_user(db, event_id).values()),
                Decimal(0)
            )
            metadata = {
                "eventId": str(event_id),
                "merchantName": event.restaurant_name or event.name,
            }
            try:
                settlement_id = self.processor.create_merchant_settlement(
                    to_minor_units(total), metadata, idempotency_key=f"settlement-{event_id}"
                )
            except PaymentProviderError as e:
                logger.error(f"Merchant settlement failed for event {event_id}: {e.message}")
                db.rollback()
                transition_event(db, event_id, EventStatus.FAILED,
                                 failure_reason=f"Merchant settlement failed: {e.message}")
                db.commit()
                self.notifier.publish(event_room(event_id), "settlementFailed", {
                    "eventId": event_id,
                    "reason": e.message,
                })
                raise SettlementError(f"Merchant settlement failed: {e.message}") from e

            transition_event(
                db, event_id, EventStatus.COMPLETED,
                virtual_card_id=settlement_id,
                settlement_amount=total,
                settled_at=datetime.utcnow(),
            )
            db.commit()
            logger.info(f"Event {event_id} settled: {total} via {settlement_id}")
            self.notifier.publish(event_room(event_id), "paymentCompleted", {
                "eventId": event_id,
                "virtualCardId": settlement_id,
                "totalAmount": str(total),
            })
            return settlement_id
        finally:
            db.close()

    def recoverable_event_ids(self) -> List[int]:
        """
        Fully paid events still waiting on their merchant settlement: never
        claimed (the process stopped after the last payment confirmed) or
        claimed under an expired lease.
        """
        db = self.session_factory()
        try:
            rows = db.query(Event.id).filter(
                Event.status == EventStatus.PAYMENT_PENDING,
                self._claimable(datetime.utcnow())
            ).order_by(Event.id).all()
            return [row.id for row in rows if check_all_participants_paid(db, row.id)]
        finally:
            db.close()

    def _claimable(self, now: datetime):
        expired = now - timedelta(seconds=self.lease_seconds)
        return or_(
            Event.settlement_claimed.is_(False),
            Event.settlement_started_at <= expired,
        )

    def _claim_settlement(self, db: Session, event_id: int) -> bool:
        """Compare-and-set the settlement lease; one caller wins per lease."""
        now = datetime.utcnow()
        result = db.execute(
            update(Event)
            .where(
                Event.id == event_id,
                Event.status == EventStatus.PAYMENT_PENDING,
                self._claimable(now),
            )
            .values(settlement_claimed=True, settlement_started_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1


def build_settlement_summary(event_id: int, db: Session) -> Dict[str, Any]:
    """Per-participant payment state and totals for an event."""
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        raise NotFoundError("Event not found")

    shares = calculate_event_totals(db, event_id)
    payments = {
        p.user_id: p for p in db.query(Payment).filter(Payment.event_id == event_id).all()
    }
    user_map = {
        u.id: u.name or u.phone_number[-4:]
        for u in db.query(User).filter(User.id.in_(list(shares.keys()) or [0])).all()
    }

    participants = []
    for user_id, share in shares.items():
        payment = payments.get(user_id)
        participants.append({
            "user_id": user_id,
            "user_name": user_map.get(user_id, ""),
            "total_owed": to_cents(share.total),
            "payment_status": payment.status if payment else PaymentStatus.PENDING,
            "amount_paid": payment.amount if payment and payment.status == PaymentStatus.COMPLETED else Decimal("0.00"),
        })

    collected = sum((p["amount_paid"] for p in participants), Decimal(0))
    return {
        "event_id": event.id,
        "status": event.status,
        "total_collected": to_cents(collected),
        "settlement_amount": event.settlement_amount,
        "virtual_card_id": event.virtual_card_id,
        "settled_at": event.settled_at,
        "failure_reason": event.failure_reason,
        "participants": participants,
        "all_paid": check_all_participants_paid(db, event_id),
    }
