"""Models package - Import all models for SQLAlchemy registration."""
from app.models.user import User, OtpCode
from app.models.event import Event, Item, Participant, Claim, EventStatus
from app.models.payment import Payment, PaymentStatus, BankAccount

__all__ = [
    "User",
    "OtpCode",
    "Event",
    "Item",
    "Participant",
    "Claim",
    "EventStatus",
    "Payment",
    "PaymentStatus",
    "BankAccount",
]
