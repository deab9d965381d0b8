"""
User model for phone-based authentication.
"""
from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.orm import relationship
from app.db.base import BaseModel


class User(BaseModel):
    """User identified by a verified phone number."""
    __tablename__ = "users"
    
    phone_number = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=True)
    email = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    
    # Relationships
    events_created = relationship("Event", back_populates="creator")
    participations = relationship("Participant", back_populates="user", cascade="all, delete-orphan")
    bank_accounts = relationship("BankAccount", back_populates="user", cascade="all, delete-orphan")


class OtpCode(BaseModel):
    """Hashed one-time code sent by SMS during login."""
    __tablename__ = "otp_codes"
    
    phone_number = Column(String(20), nullable=False, index=True)
    code_hash = Column(String(255), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed = Column(Boolean, default=False, nullable=False)
