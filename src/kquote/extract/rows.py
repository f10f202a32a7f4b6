"""Walk rows below the header, build line items and split off summary rows."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from kquote.extract.models import ColumnMap, LineItem
from kquote.extract.normalize import Number, clean_cell, positive_or_none

# Whole-label totals: discarded, the amount is a (sub)total not a purchase.
_TOTAL_LABEL_RE = re.compile(r"^(합계|소계|총계|총\s*합계|총\s*금액|결제\s*금액|총\s*구매\s*금액|총\s*결제\s*금액)$", re.IGNORECASE)
# Footer rows whose text starts with a total label, e.g. "합계 : 20,000원".
_TOTAL_ROW_RE = re.compile(r"^(합계|총\s*구매\s*금액|총\s*결제\s*금액|결제\s*금액)(\s|[:：]|[0-9]|$)")
_DISCOUNT_RE = re.compile(r"할인|쿠폰|프로모션")
_SHIPPING_RE = re.compile(r"배송|선결제")


def pick_cell(row: Sequence[object], idx: int) -> str:
    """Cell at idx as clean text; ragged rows and idx=-1 give ""."""
    if idx < 0 or row is None or idx >= len(row):
        return ""
    return clean_cell(row[idx])


def row_to_item(row: Sequence[object], cols: ColumnMap) -> Optional[LineItem]:
    """Candidate item for one row, or None when all value cells are empty."""
    name = pick_cell(row, cols.name)
    spec = pick_cell(row, cols.spec)
    qty = pick_cell(row, cols.qty)
    unit_price = pick_cell(row, cols.unit_price)
    amount = pick_cell(row, cols.amount)
    note = pick_cell(row, cols.note)
    if not (name or spec or qty or unit_price or amount):
        return None
    item = LineItem.from_mapping(
        {"name": name, "spec": spec, "qty": qty, "unitPrice": unit_price, "amount": amount, "note": note}
    )
    return None if item.is_empty() else item


def summary_label(item: LineItem, row_text: str = "") -> str:
    label = clean_cell(item.name)
    return label or clean_cell(row_text)


@dataclass
class SplitResult:
    items: List[LineItem]
    shipping: Optional[Number]
    discount: Optional[Number]
    discarded: int = 0


class AdjustmentSplitter:
    """
    Linear accumulator over candidate items.

    Each candidate ends up in exactly one place: the item list, the shipping
    sum, the discount sum, or the discarded count.
    """

    def __init__(self) -> None:
        self.items: List[LineItem] = []
        self._shipping: Number = 0
        self._discount: Number = 0
        self.discarded = 0

    def feed(self, item: LineItem, row_text: str = "") -> str:
        label = summary_label(item, row_text)
        if _TOTAL_LABEL_RE.match(label) or _TOTAL_ROW_RE.match(label):
            self.discarded += 1
            return "total"

        is_discount = bool(_DISCOUNT_RE.search(label))
        is_shipping = not is_discount and bool(_SHIPPING_RE.search(label))
        if is_discount or is_shipping:
            amt = item.amount
            if amt is None:
                # labelled adjustment without a value carries no information
                self.discarded += 1
                return "discarded"
            if is_discount:
                self._discount += abs(amt)
                return "discount"
            if amt >= 0:
                self._shipping += amt
                return "shipping"

        self.items.append(item)
        return "item"

    def result(self) -> SplitResult:
        return SplitResult(
            items=list(self.items),
            shipping=positive_or_none(self._shipping),
            discount=positive_or_none(self._discount),
            discarded=self.discarded,
        )


def split_adjustments(items: Sequence[LineItem]) -> SplitResult:
    """Separate shipping/discount/total rows from purchasable items."""
    splitter = AdjustmentSplitter()
    for it in items or []:
        splitter.feed(it)
    return splitter.result()


def build_items(rows: Sequence[Sequence[object]], header_idx: int, cols: ColumnMap) -> SplitResult:
    """Rows after the header -> classified items plus summed shipping/discount."""
    splitter = AdjustmentSplitter()
    for r in list(rows or [])[header_idx + 1:]:
        item = row_to_item(r, cols)
        if item is None:
            continue
        row_text = " ".join(c for c in (clean_cell(x) for x in (r or [])) if c)
        splitter.feed(item, row_text)
    return splitter.result()
