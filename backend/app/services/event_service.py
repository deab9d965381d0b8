"""
Event service for creating, opening, joining and cancelling bill-splitting events.
"""
import logging
import secrets
from decimal import Decimal
from typing import Dict, List
from sqlalchemy import exists, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.exceptions import NotFoundError, PermissionDeniedError, InvalidTransitionError, ValidationError
from app.core.utils import to_cents
from app.models.event import Event, Item, Participant, EventStatus
from app.models.payment import Payment, PaymentStatus
from app.models.user import User
from app.services.allocation_service import EMPTY_SHARE
from app.services.claim_service import calculate_event_totals, find_claims_by_event
from app.services.event_state import (
    transition_event, ensure_status, guard_status, sources_for, JOINABLE_STATES, TERMINAL_STATES
)

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
CODE_LENGTH = 6
CODE_ATTEMPTS = 10


def generate_event_code() -> str:
    """Random six-character join code."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def _build_items(items_data: List[dict]) -> List[Item]:
    items = []
    for position, data in enumerate(items_data):
        price = Decimal(data["price"])
        if price < 0:
            raise ValidationError("Item price must not be negative")
        items.append(Item(
            name=data["name"],
            price=price,
            quantity=data.get("quantity", 1),
            is_shared_by_table=data.get("is_shared_by_table", False),
            position=position,
        ))
    return items


def create_event(
    db: Session,
    creator_id: int,
    name: str,
    restaurant_name: str = None,
    items: List[dict] = None,
    tax: Decimal = Decimal(0),
    tip_percentage: Decimal = Decimal(0),
) -> Event:
    """Create a draft event with its items; the creator joins as first participant."""
    if tax < 0:
        raise ValidationError("Tax must not be negative")
    if not (0 <= tip_percentage <= 100):
        raise ValidationError("Tip percentage must be between 0 and 100")
    item_rows = _build_items(items or [])

    for attempt in range(CODE_ATTEMPTS):
        event = Event(
            creator_id=creator_id,
            name=name,
            restaurant_name=restaurant_name,
            code=generate_event_code(),
            tax=tax,
            tip_percentage=tip_percentage,
            status=EventStatus.DRAFT,
        )
        event.items = item_rows
        db.add(event)
        try:
            db.flush()
            break
        except IntegrityError:
            # Join code collision
            db.rollback()
            item_rows = _build_items(items or [])
            if attempt >= CODE_ATTEMPTS - 1:
                raise

    db.add(Participant(event_id=event.id, user_id=creator_id))
    db.commit()
    db.refresh(event)
    logger.info(f"Event {event.id} created by user {creator_id} with {len(item_rows)} item(s)")
    return event


def get_event(db: Session, event_id: int) -> Event:
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        raise NotFoundError("Event not found")
    return event


def check_event_access(db: Session, event_id: int, user_id: int) -> Event:
    """Check that the user participates in the event."""
    event = get_event(db, event_id)
    participant = db.query(Participant).filter(
        Participant.event_id == event_id,
        Participant.user_id == user_id
    ).first()
    if not participant:
        raise PermissionDeniedError("Access denied to this event")
    return event


def check_event_creator(db: Session, event_id: int, user_id: int) -> Event:
    event = get_event(db, event_id)
    if event.creator_id != user_id:
        raise PermissionDeniedError("Only the event creator can do this")
    return event


def replace_items(db: Session, event: Event, items: List[dict], tax: Decimal = None,
                  tip_percentage: Decimal = None) -> Event:
    """Replace the receipt lines while the event is still a draft."""
    ensure_status(event, frozenset({EventStatus.DRAFT}), "edit items")
    event.items = _build_items(items)
    if tax is not None:
        event.tax = tax
    if tip_percentage is not None:
        event.tip_percentage = tip_percentage
    db.commit()
    db.refresh(event)
    return event


def open_event(db: Session, event: Event) -> Event:
    """Make a draft event joinable by code."""
    transition_event(db, event.id, EventStatus.AWAITING_PARTICIPANTS)
    db.commit()
    db.refresh(event)
    return event


def join_event(db: Session, code: str, user_id: int) -> Event:
    """Add the user to the event with this code. Joining twice is a no-op."""
    event = db.query(Event).filter(Event.code == code.strip().upper()).first()
    if not event:
        raise NotFoundError("Event not found")

    existing = db.query(Participant).filter(
        Participant.event_id == event.id,
        Participant.user_id == user_id
    ).first()
    if existing:
        return event

    ensure_status(event, JOINABLE_STATES, "join")
    guard_status(db, event.id, JOINABLE_STATES, "join")
    db.add(Participant(event_id=event.id, user_id=user_id))
    try:
        db.commit()
    except IntegrityError:
        # Same user joined concurrently
        db.rollback()
    db.refresh(event)
    logger.info(f"User {user_id} joined event {event.id}")
    return event


def cancel_event(db: Session, event: Event, reason: str = None) -> Event:
    """
    Fail the event. Only allowed before any money has moved.

    The payment check and the status change are a single UPDATE, so a
    payment reserved concurrently either blocks the cancel or is itself
    rejected by the failed event.
    """
    moving = exists().where(
        Payment.event_id == event.id,
        Payment.status.in_([PaymentStatus.PROCESSING, PaymentStatus.COMPLETED])
    )
    result = db.execute(
        update(Event)
        .where(
            Event.id == event.id,
            Event.status.in_(list(sources_for(EventStatus.FAILED))),
            ~moving,
        )
        .values(status=EventStatus.FAILED, failure_reason=reason or "Cancelled by creator")
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(event)
        if event.status in TERMINAL_STATES:
            raise InvalidTransitionError(
                f"Cannot move event from {event.status.value} to {EventStatus.FAILED.value}",
                current=event.status,
                target=EventStatus.FAILED,
            )
        raise InvalidTransitionError("Cannot cancel an event with payments in progress", current=event.status)
    db.commit()
    db.refresh(event)
    logger.info(f"Event {event.id} cancelled")
    return event


def build_participant_views(db: Session, event_id: int) -> List[Dict]:
    """Participants with their derived money fields and payment status."""
    shares = calculate_event_totals(db, event_id)
    participants = db.query(Participant).filter(
        Participant.event_id == event_id
    ).order_by(Participant.id).all()
    payments = {
        p.user_id: p for p in db.query(Payment).filter(Payment.event_id == event_id).all()
    }

    views = []
    for participant in participants:
        share = shares.get(participant.user_id, EMPTY_SHARE)
        payment = payments.get(participant.user_id)
        user = db.query(User).filter(User.id == participant.user_id).first()
        views.append({
            "id": participant.id,
            "user_id": participant.user_id,
            "user_name": (user.name if user and user.name else ""),
            "subtotal": to_cents(share.subtotal),
            "tax_amount": to_cents(share.tax),
            "tip_amount": to_cents(share.tip),
            "total_owed": to_cents(share.total),
            "payment_status": payment.status if payment else PaymentStatus.PENDING,
            "payment_intent_id": payment.charge_id if payment else None,
        })
    return views


def build_item_views(db: Session, event: Event) -> List[Dict]:
    """Items with the user ids that currently claim them."""
    claims = find_claims_by_event(db, event.id)
    views = []
    for item in event.items:
        claimed_by = sorted(user_id for user_id, item_ids in claims.items() if item.id in item_ids)
        views.append({
            "id": item.id,
            "name": item.name,
            "price": item.price,
            "quantity": item.quantity,
            "is_shared_by_table": item.is_shared_by_table,
            "claimed_by": claimed_by,
        })
    return views


def build_event_detail(db: Session, event: Event) -> Dict:
    subtotal = sum((item.price for item in event.items), Decimal(0))
    return {
        "id": event.id,
        "creator_id": event.creator_id,
        "name": event.name,
        "restaurant_name": event.restaurant_name,
        "code": event.code,
        "tax": event.tax,
        "tip_percentage": event.tip_percentage,
        "subtotal": to_cents(subtotal),
        "status": event.status,
        "virtual_card_id": event.virtual_card_id,
        "created_at": event.created_at,
        "items": build_item_views(db, event),
        "participants": build_participant_views(db, event.id),
    }
