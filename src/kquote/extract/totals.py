"""Totals reconciliation.

Each aggregate is taken from the first source that offers a positive value:

1. the AI answer (shipping, discount, statedTotal)
2. document scans (labelled amounts in text, marketplace footer cells)
3. summary rows split off by the row classifier
4. derivation from the remaining items

The grand total is the stated one when any source states it, otherwise
items_subtotal + shipping - discount. Both are returned.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

from kquote.extract.models import LineItem, Totals, TotalsCandidates
from kquote.extract.normalize import Number, is_positive, positive_or_none


def first_positive(*values: object) -> Optional[Number]:
    for v in values:
        if is_positive(v):
            return positive_or_none(v)
    return None


def max_positive(values: Iterable[object]) -> Optional[Number]:
    vals = [v for v in values if is_positive(v)]
    return positive_or_none(max(vals)) if vals else None


def compute_items_subtotal(items: Sequence[LineItem]) -> Optional[Number]:
    """Sum of resolved item amounts, None when the sum is not positive."""
    total: Number = 0
    for it in items or []:
        total += it.resolved_amount()
    return positive_or_none(total)


def resolve_totals(
    items: Sequence[LineItem],
    *,
    ai: Optional[TotalsCandidates] = None,
    scanned: Optional[TotalsCandidates] = None,
    summary_shipping: Optional[Number] = None,
    summary_discount: Optional[Number] = None,
) -> Totals:
    ai = ai or TotalsCandidates()
    scanned = scanned or TotalsCandidates()

    subtotal = compute_items_subtotal(items)
    shipping = first_positive(ai.shipping, scanned.shipping, summary_shipping)
    discount = first_positive(ai.discount, scanned.discount, summary_discount)
    stated = first_positive(ai.grand_total, scanned.grand_total)

    derived = positive_or_none((subtotal or 0) + (shipping or 0) - (discount or 0))
    return Totals(
        items_subtotal=subtotal,
        shipping=shipping,
        discount=discount,
        grand_total=stated if stated is not None else derived,
        stated_total=stated,
    )


def combine_max(candidates: Iterable[TotalsCandidates]) -> TotalsCandidates:
    """Merge candidates by maximum; a totals line repeated on several pages counts once."""
    cands = list(candidates)
    return TotalsCandidates(
        shipping=max_positive(c.shipping for c in cands),
        discount=max_positive(c.discount for c in cands),
        grand_total=max_positive(c.grand_total for c in cands),
    )
