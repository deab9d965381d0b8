"""
Claim store: which items each participant is responsible for.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Set
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.core.exceptions import InvalidClaimError, NotFoundError
from app.models.event import Event, Item, Participant, Claim, EventStatus
from app.services.allocation_service import allocate, ShareBreakdown, EMPTY_SHARE
from app.services.event_state import ensure_status, guard_status, CLAIMABLE_STATES

logger = logging.getLogger(__name__)

UPSERT_ATTEMPTS = 3


def get_participant_ids(db: Session, event_id: int) -> List[int]:
    """User ids of the event's current participants, in join order."""
    rows = db.query(Participant.user_id).filter(
        Participant.event_id == event_id
    ).order_by(Participant.id).all()
    return [row.user_id for row in rows]


def find_claims_by_event(db: Session, event_id: int) -> Dict[int, Set[int]]:
    """All claims for an event as ``user_id -> {item_id, ...}``."""
    claims: Dict[int, Set[int]] = {}
    rows = db.query(Claim.user_id, Claim.item_id).filter(Claim.event_id == event_id).all()
    for row in rows:
        claims.setdefault(row.user_id, set()).add(row.item_id)
    return claims


def upsert_claims(db: Session, event_id: int, user_id: int, item_ids: Iterable[int]) -> Set[int]:
    """
    Replace the user's claimed items for an event.

    The stored set becomes exactly ``item_ids``; anything claimed before and
    not listed is dropped. The first non-empty claim moves the event from
    awaitingParticipants to itemsClaimed.
    """
    requested = set(item_ids)
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        raise NotFoundError("Event not found")
    ensure_status(event, CLAIMABLE_STATES, "claim items")

    is_participant = db.query(Participant.id).filter(
        Participant.event_id == event_id,
        Participant.user_id == user_id
    ).first()
    if not is_participant:
        raise InvalidClaimError("Only participants can claim items")

    valid_ids = {row.id for row in db.query(Item.id).filter(Item.event_id == event_id).all()}
    unknown = requested - valid_ids
    if unknown:
        raise InvalidClaimError(f"Items not on this event: {sorted(unknown)}")

    for attempt in range(UPSERT_ATTEMPTS):
        try:
            # Re-checked in the write so a claim can't land after payments start
            guard_status(
                db, event_id, CLAIMABLE_STATES, "claim items",
                target=EventStatus.ITEMS_CLAIMED if requested else None,
            )
            _replace_claims(db, event_id, user_id, requested)
            db.commit()
            break
        except IntegrityError:
            # Same user upserting concurrently; last write wins
            db.rollback()
            if attempt >= UPSERT_ATTEMPTS - 1:
                raise
            logger.debug(f"Claim upsert conflict for event {event_id} user {user_id}, retrying")

    logger.info(f"User {user_id} claimed {len(requested)} item(s) on event {event_id}")
    return requested


def _replace_claims(db: Session, event_id: int, user_id: int, item_ids: Set[int]):
    db.query(Claim).filter(
        Claim.event_id == event_id,
        Claim.user_id == user_id
    ).delete(synchronize_session=False)
    claimed_at = datetime.utcnow()
    for item_id in sorted(item_ids):
        db.add(Claim(event_id=event_id, user_id=user_id, item_id=item_id, claimed_at=claimed_at))
    db.flush()


def calculate_event_totals(db: Session, event_id: int) -> Dict[int, ShareBreakdown]:
    """Every participant's share, keyed by user id."""
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        raise NotFoundError("Event not found")
    items = db.query(Item).filter(Item.event_id == event_id).all()
    return allocate(
        items=items,
        tax=event.tax,
        tip_percentage=event.tip_percentage,
        participant_ids=get_participant_ids(db, event_id),
        claims=find_claims_by_event(db, event_id),
    )


def get_user_share(db: Session, event_id: int, user_id: int) -> ShareBreakdown:
    """A single participant's share; zero for users who are not participants."""
    return calculate_event_totals(db, event_id).get(user_id, EMPTY_SHARE)
