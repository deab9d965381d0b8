"""
Pydantic schemas for payments, bank linking and settlement.
"""
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from app.models.event import EventStatus
from app.models.payment import PaymentStatus


class LinkBankRequest(BaseModel):
    """Plaid Link public token from the mobile app."""
    public_token: str


class BankAccountResponse(BaseModel):
    id: int
    account_mask: Optional[str] = None
    institution_name: Optional[str] = None
    created_at: datetime
    
    class Config:
        from_attributes = True


class ChargeRequest(BaseModel):
    event_id: int


class PaymentResponse(BaseModel):
    """Schema for payment response."""
    id: int
    event_id: int
    user_id: int
    amount: Decimal
    status: PaymentStatus
    charge_id: Optional[str] = None
    attempts: int
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    
    class Config:
        from_attributes = True


class SettlementParticipant(BaseModel):
    user_id: int
    user_name: str
    total_owed: Decimal
    payment_status: PaymentStatus
    amount_paid: Decimal


class SettlementSummary(BaseModel):
    """Schema for an event's settlement state."""
    event_id: int
    status: EventStatus
    total_collected: Decimal
    settlement_amount: Optional[Decimal] = None
    virtual_card_id: Optional[str] = None
    settled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    participants: List[SettlementParticipant]
    all_paid: bool
