"""
Payment models for participant charges and linked bank accounts.
"""
from sqlalchemy import (
    Column, String, Numeric, Boolean, Enum as SQLEnum,
    ForeignKey, Integer, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
import enum


class PaymentStatus(str, enum.Enum):
    """Participant payment status enumeration."""
    PENDING = "pending"  # No Payment row yet; never stored
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Payment(BaseModel):
    """One charge per participant per event."""
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_payment_event_user"),)
    
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    bank_account_id = Column(Integer, ForeignKey("bank_accounts.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(PaymentStatus), nullable=False, index=True)
    charge_id = Column(String(100), nullable=True)
    idempotency_key = Column(String(100), nullable=False)
    reservation = Column(Integer, nullable=False, default=1)  # Bumped on every retry reservation
    attempts = Column(Integer, nullable=False, default=0)
    failure_code = Column(String(50), nullable=True)
    failure_reason = Column(Text, nullable=True)
    is_transient_failure = Column(Boolean, default=False, nullable=False)
    
    # Relationships
    event = relationship("Event", back_populates="payments")


class BankAccount(BaseModel):
    """Linked bank account usable as an ACH payment source."""
    __tablename__ = "bank_accounts"
    __table_args__ = (UniqueConstraint("user_id", "plaid_item_id", name="uq_bank_account_user_item"),)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plaid_item_id = Column(String(100), nullable=False)
    payment_source_token = Column(String(255), nullable=False)
    account_mask = Column(String(10), nullable=True)
    institution_name = Column(String(200), nullable=True)
    
    # Relationships
    user = relationship("User", back_populates="bank_accounts")
