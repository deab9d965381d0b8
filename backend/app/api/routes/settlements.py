"""
Settlement routes.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.models.user import User
from app.schemas.payment import SettlementSummary
from app.api.dependencies import get_current_user
from app.services.event_service import check_event_access
from app.services.settlement_service import build_settlement_summary

router = APIRouter(prefix="/settlement", tags=["settlement"])


@router.get("/{event_id}", response_model=SettlementSummary)
async def get_settlement(
    event_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get who has paid and whether the merchant has been settled."""
    check_event_access(db, event_id, current_user.id)
    return build_settlement_summary(event_id, db)
