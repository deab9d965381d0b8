"""
WebSocket channel for live claim and payment updates.
"""
import logging
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from app.db.session import SessionLocal
from app.models.event import Participant
from app.api.dependencies import get_user_from_token
from app.services.notifier import notifier, event_room, user_room

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def _is_participant(user_id: int, event_id: int) -> bool:
    db = SessionLocal()
    try:
        return db.query(Participant.id).filter(
            Participant.event_id == event_id,
            Participant.user_id == user_id
        ).first() is not None
    finally:
        db.close()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str = ""):
    """Authenticated socket; joins the user's room and any event rooms requested."""
    db = SessionLocal()
    try:
        user = get_user_from_token(token, db)
        user_id = user.id if user else None
    finally:
        db.close()
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    notifier.join(user_room(user_id), websocket)
    logger.info(f"User {user_id} connected")
    try:
        while True:
            message = await websocket.receive_json()
            action = message.get("action")
            event_id = message.get("eventId")
            if not isinstance(event_id, int) or not _is_participant(user_id, event_id):
                await websocket.send_json({"event": "error", "data": {"detail": "Access denied to this event"}})
                continue
            if action == "joinEvent":
                notifier.join(event_room(event_id), websocket)
            elif action == "updateClaim":
                # In-progress selection, relayed to everyone else in the room
                notifier.publish(event_room(event_id), "claimUpdated", {
                    "userId": user_id,
                    "items": message.get("items", []),
                }, exclude=websocket)
    except WebSocketDisconnect:
        logger.info(f"User {user_id} disconnected")
    finally:
        notifier.leave_all(websocket)
