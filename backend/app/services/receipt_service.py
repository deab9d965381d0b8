"""
Receipt text parsing.

The mobile app runs OCR on-device and uploads the recognized lines; this
module turns them into draft items for a new event.
"""
import logging
import re
from decimal import Decimal
from typing import List, Optional
from app.core.config import settings
from app.schemas.receipt import ParsedReceipt, ParsedItem

logger = logging.getLogger(__name__)

PRICE_PATTERN = re.compile(r'\$?(\d+\.\d{2})')
SUMMARY_KEYWORDS = ["total", "subtotal", "tax", "tip"]
# Lines that carry an amount but are never items
NON_ITEM_KEYWORDS = SUMMARY_KEYWORDS + ["change", "balance", "amount due", "cash", "visa", "mastercard"]
MAX_REASONABLE_PRICE = Decimal(1000)


def parse_receipt_lines(lines: List[str]) -> ParsedReceipt:
    """Extract items, merchant name and tax from OCR lines and score the result."""
    cleaned = [line.strip() for line in lines if line and line.strip()]
    items = _parse_items(cleaned)
    merchant_name = _extract_merchant_name(cleaned)
    tax = _extract_tax(cleaned)
    confidence = _calculate_confidence(items, cleaned)

    logger.debug(f"Parsed {len(items)} item(s) from {len(cleaned)} line(s), confidence {confidence:.2f}")
    return ParsedReceipt(
        items=items,
        merchant_name=merchant_name,
        tax=tax,
        confidence=confidence,
        low_confidence=confidence < settings.RECEIPT_MIN_CONFIDENCE,
        raw_text=cleaned,
    )


def _is_non_item(line: str) -> bool:
    lowered = line.lower()
    return any(keyword in lowered for keyword in NON_ITEM_KEYWORDS)


def _parse_items(lines: List[str]) -> List[ParsedItem]:
    items = []
    for line in lines:
        match = PRICE_PATTERN.search(line)
        if not match or _is_non_item(line):
            continue
        price = Decimal(match.group(1))
        name = line[:match.start()].strip(" .:-\t")
        if name and price > 0:
            items.append(ParsedItem(name=name, price=price, quantity=1))
    return items


def _extract_merchant_name(lines: List[str]) -> Optional[str]:
    # First line without a price is usually the merchant
    for line in lines:
        if "$" not in line and not PRICE_PATTERN.search(line):
            return line
    return None


def _extract_tax(lines: List[str]) -> Optional[Decimal]:
    for line in lines:
        lowered = line.lower()
        if "tax" in lowered and "total" not in lowered:
            match = PRICE_PATTERN.search(line)
            if match:
                return Decimal(match.group(1))
    return None


def _calculate_confidence(items: List[ParsedItem], lines: List[str]) -> float:
    score = 0.0
    if items:
        score += 0.3

    keyword_count = sum(
        1 for line in lines if any(keyword in line.lower() for keyword in SUMMARY_KEYWORDS)
    )
    score += min(keyword_count * 0.1, 0.3)

    if items:
        valid_prices = sum(1 for item in items if 0 < item.price < MAX_REASONABLE_PRICE)
        score += min(valid_prices / len(items) * 0.4, 0.4)

    return round(min(score, 1.0), 2)
