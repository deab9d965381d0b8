"""
Pydantic schemas for receipt parsing.
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from decimal import Decimal


class ReceiptParseRequest(BaseModel):
    """OCR text lines recognized on the device."""
    lines: List[str] = Field(max_length=500)


class ParsedItem(BaseModel):
    name: str
    price: Decimal
    quantity: int = 1


class ParsedReceipt(BaseModel):
    """Draft items extracted from a receipt."""
    items: List[ParsedItem]
    merchant_name: Optional[str] = None
    tax: Optional[Decimal] = None
    confidence: float
    low_confidence: bool
    raw_text: List[str]
