"""
Pydantic schemas for Event, Item, Participant and Claim entities.
"""
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal
from app.models.event import EventStatus
from app.models.payment import PaymentStatus


class ItemCreate(BaseModel):
    """Schema for a receipt line."""
    name: str = Field(min_length=1, max_length=200)
    price: Decimal = Field(ge=0, decimal_places=2)
    quantity: int = Field(default=1, ge=1)
    is_shared_by_table: bool = False


class EventCreate(BaseModel):
    """Schema for event creation."""
    name: str = Field(min_length=1, max_length=200)
    restaurant_name: Optional[str] = None
    items: List[ItemCreate] = []
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    tip_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class ItemsReplace(BaseModel):
    """Schema for editing a draft event's receipt lines."""
    items: List[ItemCreate]
    tax: Optional[Decimal] = Field(default=None, ge=0)
    tip_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)


class JoinEventRequest(BaseModel):
    """Schema for joining an event by code."""
    code: str = Field(min_length=6, max_length=6)


class CancelEventRequest(BaseModel):
    reason: Optional[str] = None


class ClaimRequest(BaseModel):
    """Full replacement of the caller's claimed items."""
    items: List[int]


class ItemResponse(BaseModel):
    id: int
    name: str
    price: Decimal
    quantity: int
    is_shared_by_table: bool
    claimed_by: List[int] = []


class ParticipantResponse(BaseModel):
    """Participant with derived amounts."""
    id: int
    user_id: int
    user_name: str
    subtotal: Decimal
    tax_amount: Decimal
    tip_amount: Decimal
    total_owed: Decimal
    payment_status: PaymentStatus
    payment_intent_id: Optional[str] = None


class EventResponse(BaseModel):
    """Schema for event response."""
    id: int
    creator_id: int
    name: str
    restaurant_name: Optional[str] = None
    code: str
    tax: Decimal
    tip_percentage: Decimal
    status: EventStatus
    virtual_card_id: Optional[str] = None
    created_at: datetime
    
    class Config:
        from_attributes = True


class EventDetailResponse(EventResponse):
    """Schema for detailed event response with items and participants."""
    subtotal: Decimal
    items: List[ItemResponse] = []
    participants: List[ParticipantResponse] = []


class ShareResponse(BaseModel):
    """One participant's cent-rounded share."""
    subtotal: Decimal
    tax: Decimal
    tip: Decimal
    total: Decimal


class ClaimResponse(BaseModel):
    items: List[int]
    totals: Dict[int, ShareResponse]
