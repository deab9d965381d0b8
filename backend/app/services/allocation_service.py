"""
Money allocation for split bills.

Pure functions: given an event's items, tax and tip percentage, the current
participants and their claims, compute what every participant owes. Amounts
stay at full ``Decimal`` precision; callers round with ``to_cents`` only when
presenting a value or fixing a charge amount.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Sequence, Set

from app.core.utils import to_cents

ZERO = Decimal(0)
HUNDRED = Decimal(100)


@dataclass(frozen=True)
class AllocatableItem:
    """Minimal view of an item needed for allocation."""
    id: int
    price: Decimal
    is_shared_by_table: bool = False


@dataclass(frozen=True)
class ShareBreakdown:
    """One participant's share of the bill."""
    subtotal: Decimal
    tax: Decimal
    tip: Decimal

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax + self.tip

    def rounded(self) -> Dict[str, Decimal]:
        """Cent-rounded values for presentation."""
        return {
            "subtotal": to_cents(self.subtotal),
            "tax": to_cents(self.tax),
            "tip": to_cents(self.tip),
            "total": to_cents(self.total),
        }


EMPTY_SHARE = ShareBreakdown(subtotal=ZERO, tax=ZERO, tip=ZERO)


def event_subtotal(items: Iterable) -> Decimal:
    """Sum of all item prices, claimed or not."""
    return sum((Decimal(item.price) for item in items), ZERO)


def claimants_by_item(claims: Mapping[int, Set[int]]) -> Dict[int, Set[int]]:
    """Invert ``user_id -> item_ids`` into ``item_id -> user_ids``."""
    result: Dict[int, Set[int]] = {}
    for user_id, item_ids in claims.items():
        for item_id in item_ids:
            result.setdefault(item_id, set()).add(user_id)
    return result


def allocate(
    items: Sequence,
    tax: Decimal,
    tip_percentage: Decimal,
    participant_ids: Sequence[int],
    claims: Mapping[int, Set[int]],
) -> Dict[int, ShareBreakdown]:
    """
    Compute every participant's subtotal, tax share and tip share.

    Table-shared items are split evenly across all participants, ignoring
    claims. Any other item is split evenly among the participants who
    claimed it; claims from users who are no longer participants are
    ignored. Unclaimed items count towards the event subtotal but towards
    nobody's share.
    """
    tax = Decimal(tax or 0)
    tip_rate = Decimal(tip_percentage or 0) / HUNDRED
    participants = list(dict.fromkeys(participant_ids))
    subtotals: Dict[int, Decimal] = {user_id: ZERO for user_id in participants}

    item_claimants = claimants_by_item(claims)
    for item in items:
        price = Decimal(item.price)
        if item.is_shared_by_table:
            sharers = participants
        else:
            claimed_by = item_claimants.get(item.id, set())
            sharers = [u for u in participants if u in claimed_by]
        if not sharers:
            continue
        portion = price / len(sharers)
        for user_id in sharers:
            subtotals[user_id] += portion

    total_subtotal = event_subtotal(items)
    shares: Dict[int, ShareBreakdown] = {}
    for user_id, subtotal in subtotals.items():
        tax_share = subtotal / total_subtotal * tax if total_subtotal > 0 else ZERO
        shares[user_id] = ShareBreakdown(
            subtotal=subtotal,
            tax=tax_share,
            tip=subtotal * tip_rate,
        )
    return shares
