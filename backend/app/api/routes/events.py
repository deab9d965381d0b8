"""
Event management routes: create, edit, open, join, claim and cancel.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Dict, List
from app.db.session import get_db
from app.models.user import User
from app.models.event import Event, Participant
from app.schemas.event import (
    EventCreate, EventResponse, EventDetailResponse, ItemsReplace,
    JoinEventRequest, CancelEventRequest, ClaimRequest, ClaimResponse, ShareResponse
)
from app.api.dependencies import get_current_user, get_notifier
from app.services import event_service
from app.services.claim_service import upsert_claims, calculate_event_totals, get_user_share
from app.services.notifier import event_room, user_room

router = APIRouter(prefix="/events", tags=["events"])


def _rounded_totals(totals) -> dict:
    return {user_id: share.rounded() for user_id, share in totals.items()}


@router.post("", response_model=EventDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    event_data: EventCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier)
):
    """Create a draft event from a parsed or hand-entered receipt."""
    event = event_service.create_event(
        db,
        creator_id=current_user.id,
        name=event_data.name,
        restaurant_name=event_data.restaurant_name,
        items=[item.model_dump() for item in event_data.items],
        tax=event_data.tax,
        tip_percentage=event_data.tip_percentage,
    )
    notifier.publish(user_room(current_user.id), "eventCreated", {"eventId": event.id, "code": event.code})
    return event_service.build_event_detail(db, event)


@router.get("", response_model=List[EventResponse])
async def list_events(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List all events the current user participates in, newest first."""
    return db.query(Event).join(Participant).filter(
        Participant.user_id == current_user.id
    ).order_by(Event.id.desc()).all()


@router.post("/join", response_model=EventDetailResponse)
async def join_event(
    request: JoinEventRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier)
):
    """Join an event by its six-character code."""
    event = event_service.join_event(db, request.code, current_user.id)
    notifier.publish(event_room(event.id), "participantJoined", {
        "userId": current_user.id,
        "userName": current_user.name,
    })
    return event_service.build_event_detail(db, event)


@router.get("/{event_id}", response_model=EventDetailResponse)
async def get_event(
    event_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get event details with items, claims and participant shares."""
    event = event_service.check_event_access(db, event_id, current_user.id)
    return event_service.build_event_detail(db, event)


@router.put("/{event_id}/items", response_model=EventDetailResponse)
async def replace_items(
    event_id: int,
    items_data: ItemsReplace,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Replace a draft event's items (and optionally tax and tip)."""
    event = event_service.check_event_creator(db, event_id, current_user.id)
    event = event_service.replace_items(
        db, event,
        items=[item.model_dump() for item in items_data.items],
        tax=items_data.tax,
        tip_percentage=items_data.tip_percentage,
    )
    return event_service.build_event_detail(db, event)


@router.post("/{event_id}/open", response_model=EventDetailResponse)
async def open_event(
    event_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Make a draft event joinable by code."""
    event = event_service.check_event_creator(db, event_id, current_user.id)
    event = event_service.open_event(db, event)
    return event_service.build_event_detail(db, event)


@router.post("/{event_id}/cancel", response_model=EventDetailResponse)
async def cancel_event(
    event_id: int,
    request: CancelEventRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier)
):
    """Cancel an event before any payment has started."""
    event = event_service.check_event_creator(db, event_id, current_user.id)
    event = event_service.cancel_event(db, event, request.reason)
    notifier.publish(event_room(event.id), "eventCancelled", {
        "eventId": event.id,
        "reason": event.failure_reason,
    })
    return event_service.build_event_detail(db, event)


@router.post("/{event_id}/claim", response_model=ClaimResponse)
async def claim_items(
    event_id: int,
    claim: ClaimRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier)
):
    """Replace the caller's claimed items and return everyone's new totals."""
    event_service.check_event_access(db, event_id, current_user.id)
    items = upsert_claims(db, event_id, current_user.id, claim.items)
    totals = _rounded_totals(calculate_event_totals(db, event_id))

    notifier.publish(event_room(event_id), "itemsClaimed", {
        "userId": current_user.id,
        "items": sorted(items),
        "totals": {str(uid): {k: str(v) for k, v in t.items()} for uid, t in totals.items()},
    })
    return {"items": sorted(items), "totals": totals}


@router.get("/{event_id}/totals", response_model=Dict[int, ShareResponse])
async def get_event_totals(
    event_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Every participant's current share."""
    event_service.check_event_access(db, event_id, current_user.id)
    return _rounded_totals(calculate_event_totals(db, event_id))


@router.get("/{event_id}/share", response_model=ShareResponse)
async def get_my_share(
    event_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The caller's current share."""
    event_service.check_event_access(db, event_id, current_user.id)
    return get_user_share(db, event_id, current_user.id).rounded()
