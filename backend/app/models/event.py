"""
Event models for bill-splitting sessions.
"""
from sqlalchemy import (
    Column, String, Numeric, Boolean, DateTime, Enum as SQLEnum,
    ForeignKey, Integer, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
import enum


class EventStatus(str, enum.Enum):
    """Event lifecycle status enumeration."""
    DRAFT = "draft"
    AWAITING_PARTICIPANTS = "awaitingParticipants"
    ITEMS_CLAIMED = "itemsClaimed"
    PAYMENT_PENDING = "paymentPending"
    COMPLETED = "completed"
    FAILED = "failed"


class Event(BaseModel):
    """One bill-splitting session tied to a single restaurant visit."""
    __tablename__ = "events"
    
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    restaurant_name = Column(String(200), nullable=True)
    code = Column(String(6), unique=True, nullable=False, index=True)  # Join code
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    tip_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    status = Column(SQLEnum(EventStatus), default=EventStatus.DRAFT, nullable=False, index=True)
    
    # Settlement
    settlement_claimed = Column(Boolean, default=False, nullable=False)  # Single-winner guard
    settlement_started_at = Column(DateTime, nullable=True)  # Lease on a claimed settlement
    virtual_card_id = Column(String(100), nullable=True)
    settlement_amount = Column(Numeric(12, 2), nullable=True)
    settled_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    
    # Relationships
    creator = relationship("User", back_populates="events_created")
    items = relationship(
        "Item", back_populates="event", cascade="all, delete-orphan",
        order_by="Item.position"
    )
    participants = relationship("Participant", back_populates="event", cascade="all, delete-orphan")
    claims = relationship("Claim", back_populates="event", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="event")


class Item(BaseModel):
    """A receipt line. ``price`` is the line total, ``quantity`` informational."""
    __tablename__ = "items"
    
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    is_shared_by_table = Column(Boolean, default=False, nullable=False)
    position = Column(Integer, nullable=False, default=0)  # Order on the receipt
    
    # Relationships
    event = relationship("Event", back_populates="items")


class Participant(BaseModel):
    """Junction table for Event and User; money fields are derived on read."""
    __tablename__ = "participants"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_participant_event_user"),)
    
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    
    # Relationships
    event = relationship("Event", back_populates="participants")
    user = relationship("User", back_populates="participations")


class Claim(BaseModel):
    """A participant's claim on one item."""
    __tablename__ = "claims"
    __table_args__ = (UniqueConstraint("event_id", "user_id", "item_id", name="uq_claim_event_user_item"),)
    
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    claimed_at = Column(DateTime, nullable=False)
    
    # Relationships
    event = relationship("Event", back_populates="claims")
