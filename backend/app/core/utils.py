"""
Utility functions for the application.
"""
from decimal import Decimal, ROUND_HALF_UP
import re

CENT = Decimal("0.01")

_PHONE_PATTERN = re.compile(r"^\+?\d{10,15}$")


def to_cents(amount: Decimal) -> Decimal:
    """Round a currency amount to the cent (half up)."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer cents for provider APIs."""
    return int(to_cents(amount) * 100)


def normalize_phone_number(phone_number: str) -> str:
    """Strip formatting characters and validate the result."""
    cleaned = re.sub(r"[\s\-().]", "", phone_number or "")
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("Invalid phone number")
    return cleaned
