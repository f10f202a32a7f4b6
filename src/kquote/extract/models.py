from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from kquote.extract.normalize import Number, clamp_string, positive_or_none, to_number

RawTable = List[List[str]]

# Bounded prefix of the raw table kept for AI fallback payloads.
RAW_ROWS_KEEP = 2000


@dataclass(frozen=True)
class LineItem:
    name: str = ""
    spec: str = ""
    qty: Optional[Number] = None
    unit_price: Optional[Number] = None
    amount: Optional[Number] = None
    note: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LineItem":
        """Build a normalized item from a camelCase or snake_case mapping.

        A missing spec falls back to the note, as marketplace exports often put
        the option text in a remarks column.
        """
        note = clamp_string(data.get("note") or "")
        unit_price = data.get("unitPrice", data.get("unit_price"))
        return cls(
            name=clamp_string(data.get("name") or "").strip(),
            spec=clamp_string(data.get("spec") or note).strip(),
            qty=to_number(data.get("qty")),
            unit_price=to_number(unit_price),
            amount=to_number(data.get("amount")),
            note=note.strip(),
        )

    def is_empty(self) -> bool:
        return not (self.name or self.spec or self.amount is not None or self.unit_price is not None)

    def has_amount(self) -> bool:
        return self.amount is not None and self.amount >= 0

    def has_computable_amount(self) -> bool:
        return self.qty is not None and self.unit_price is not None

    def resolved_amount(self) -> Number:
        """Stated amount, else qty * unit price, else 0."""
        if self.amount is not None:
            return self.amount
        if self.qty is not None and self.unit_price is not None:
            return self.qty * self.unit_price
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "spec": self.spec,
            "qty": self.qty,
            "unitPrice": self.unit_price,
            "amount": self.amount,
            "note": self.note,
        }


@dataclass(frozen=True)
class Totals:
    items_subtotal: Optional[Number] = None
    shipping: Optional[Number] = None
    discount: Optional[Number] = None
    grand_total: Optional[Number] = None
    stated_total: Optional[Number] = None

    @property
    def derived_total(self) -> Optional[Number]:
        return positive_or_none((self.items_subtotal or 0) + (self.shipping or 0) - (self.discount or 0))

    @property
    def disagrees(self) -> bool:
        """True when a stated grand total differs from the derived one."""
        return self.stated_total is not None and self.derived_total is not None and self.stated_total != self.derived_total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemsSubtotal": self.items_subtotal,
            "shipping": self.shipping,
            "discount": self.discount,
            "grandTotal": self.grand_total,
            "statedTotal": self.stated_total,
        }


@dataclass(frozen=True)
class ColumnMap:
    name: int = -1
    spec: int = -1
    qty: int = -1
    unit_price: int = -1
    amount: int = -1
    note: int = -1


@dataclass(frozen=True)
class TotalsCandidates:
    """Totals read from one source (AI answer, document text, footer cells)."""

    shipping: Optional[Number] = None
    discount: Optional[Number] = None
    grand_total: Optional[Number] = None


@dataclass
class ExtractionResult:
    source: str  # "xlsx" | "pdf" | "multi"
    items: List[LineItem]
    totals: Totals
    raw_text: str = ""
    mode: str = "heuristic"  # "heuristic" | "ai" | "ai_refine" | "none"
    filename: str = ""
    header_index: int = -1
    raw_rows: Optional[RawTable] = None
    notes: List[str] = field(default_factory=list)

    @property
    def total(self) -> Optional[Number]:
        return self.totals.grand_total

    def to_dict(self, *, include_raw: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "source": self.source,
            "mode": self.mode,
            "items": [it.to_dict() for it in self.items],
            "totals": self.totals.to_dict(),
            "total": self.total,
            "rawText": self.raw_text,
        }
        if self.filename:
            out["filename"] = self.filename
        if include_raw and self.raw_rows is not None:
            out["rawRows"] = self.raw_rows
        return out


def items_from_mappings(rows: Sequence[Mapping[str, Any]]) -> List[LineItem]:
    out: List[LineItem] = []
    for r in rows or []:
        if not isinstance(r, Mapping):
            continue
        it = LineItem.from_mapping(r)
        if not it.is_empty():
            out.append(it)
    return out
