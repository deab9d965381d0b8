"""
Event lifecycle state machine.

Transitions are applied as compare-and-set updates on ``events.status`` so
concurrent participant flows can never move an event backwards or out of a
terminal state.
"""
import logging
from typing import Dict, FrozenSet, Optional
from sqlalchemy import update
from sqlalchemy.orm import Session
from app.core.exceptions import InvalidTransitionError, NotFoundError
from app.models.event import Event, EventStatus

logger = logging.getLogger(__name__)

TERMINAL_STATES: FrozenSet[EventStatus] = frozenset({EventStatus.COMPLETED, EventStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[EventStatus, FrozenSet[EventStatus]] = {
    EventStatus.DRAFT: frozenset({EventStatus.AWAITING_PARTICIPANTS, EventStatus.FAILED}),
    EventStatus.AWAITING_PARTICIPANTS: frozenset({EventStatus.ITEMS_CLAIMED, EventStatus.FAILED}),
    EventStatus.ITEMS_CLAIMED: frozenset({EventStatus.PAYMENT_PENDING, EventStatus.FAILED}),
    EventStatus.PAYMENT_PENDING: frozenset({EventStatus.COMPLETED, EventStatus.FAILED}),
    EventStatus.COMPLETED: frozenset(),
    EventStatus.FAILED: frozenset(),
}

# Forward path used when a flow needs the event to be "at least" some state
LIFECYCLE = [
    EventStatus.DRAFT,
    EventStatus.AWAITING_PARTICIPANTS,
    EventStatus.ITEMS_CLAIMED,
    EventStatus.PAYMENT_PENDING,
    EventStatus.COMPLETED,
]

JOINABLE_STATES = frozenset({EventStatus.AWAITING_PARTICIPANTS, EventStatus.ITEMS_CLAIMED})
CLAIMABLE_STATES = JOINABLE_STATES
PAYABLE_STATES = frozenset({
    EventStatus.AWAITING_PARTICIPANTS, EventStatus.ITEMS_CLAIMED, EventStatus.PAYMENT_PENDING
})


def can_transition(current: EventStatus, target: EventStatus) -> bool:
    """Check whether ``current -> target`` is a legal transition."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def sources_for(target: EventStatus) -> FrozenSet[EventStatus]:
    """All states from which ``target`` may be entered."""
    return frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def transition_event(db: Session, event_id: int, target: EventStatus, **values) -> bool:
    """
    Move an event to ``target`` if its current status allows it.

    Extra column ``values`` are written in the same statement. Returns True
    when this call performed the transition. Raises InvalidTransitionError
    when the event's current status cannot reach ``target``. Does not commit.
    """
    result = db.execute(
        update(Event)
        .where(Event.id == event_id, Event.status.in_(list(sources_for(target))))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        logger.info(f"Event {event_id} -> {target.value}")
        return True

    current = db.query(Event.status).filter(Event.id == event_id).scalar()
    if current is None:
        raise NotFoundError("Event not found")
    raise InvalidTransitionError(
        f"Cannot move event from {current.value} to {target.value}",
        current=current,
        target=target,
    )


def advance_event(db: Session, event_id: int, target: EventStatus) -> EventStatus:
    """
    Walk the event forward along the lifecycle until it reaches ``target``.

    Events already at or past ``target`` are left alone. Raises
    InvalidTransitionError when the event has failed. Does not commit.
    """
    target_index = LIFECYCLE.index(target)
    while True:
        current = db.query(Event.status).filter(Event.id == event_id).scalar()
        if current is None:
            raise NotFoundError("Event not found")
        if current == EventStatus.FAILED:
            raise InvalidTransitionError(
                f"Event has failed and cannot move to {target.value}",
                current=current,
                target=target,
            )
        current_index = LIFECYCLE.index(current)
        if current_index >= target_index:
            return current
        next_state = LIFECYCLE[current_index + 1]
        result = db.execute(
            update(Event)
            .where(Event.id == event_id, Event.status == current)
            .values(status=next_state)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(f"Event {event_id} -> {next_state.value}")
        # Otherwise another flow moved it concurrently; re-read and continue


def guard_status(db: Session, event_id: int, allowed: FrozenSet[EventStatus], action: str,
                 target: Optional[EventStatus] = None):
    """
    Check the event's status inside the caller's write transaction.

    A conditional UPDATE matches only while the status is in ``allowed``, so
    the check and the caller's writes commit together or not at all. The row
    moves to ``target`` when one is given and is otherwise rewritten as is.
    Does not commit. When the status no longer qualifies the transaction is
    rolled back and InvalidTransitionError raised.
    """
    result = db.execute(
        update(Event)
        .where(Event.id == event_id, Event.status.in_(list(allowed)))
        .values(status=target if target is not None else Event.status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    db.rollback()
    current = db.query(Event.status).filter(Event.id == event_id).scalar()
    if current is None:
        raise NotFoundError("Event not found")
    raise InvalidTransitionError(f"Cannot {action} while event is {current.value}", current=current)


def ensure_status(event: Event, allowed: FrozenSet[EventStatus], action: str):
    """Raise InvalidTransitionError unless the event is in one of ``allowed``."""
    if event.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action} while event is {event.status.value}",
            current=event.status,
        )
