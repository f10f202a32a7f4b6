"""Header row detection and header -> semantic column mapping."""
from __future__ import annotations

from typing import List, Optional, Sequence, Set

from kquote.extract.models import ColumnMap
from kquote.extract.normalize import clean_cell

DEFAULT_MAX_SCAN_ROWS = 60
SPREADSHEET_MAX_SCAN_ROWS = 400
MIN_HEADER_CELLS = 4

# Keywords are matched as substrings of the lower-cased joined row.
NAME_KEYS = ("상품명", "품목", "항목", "내용", "내역", "상품", "item", "product", "description")
QTY_OR_MONEY_KEYS = (
    "수량",
    "주문수량",
    "구매수량",
    "단가",
    "판매가",
    "금액",
    "공급가액",
    "공급합계",
    "합계",
    "총액",
    "총금액",
    "결제금액",
    "qty",
    "quantity",
    "price",
    "amount",
)
# Loose mode counts distinct hits from this combined list (marketplace exports with sparse headers).
LOOSE_KEYS = (
    "품목",
    "항목",
    "내용",
    "규격",
    "옵션",
    "수량",
    "주문수량",
    "구매수량",
    "단가",
    "판매가",
    "금액",
    "합계",
    "합계금액",
    "주문금액",
    "결제금액",
)
LOOSE_MIN_HITS = 2

COLUMN_KEYWORDS = {
    "name": ("품목", "항목", "내용", "제품", "서비스", "내역", "상품명", "상품", "상품정보", "item", "product", "description"),
    "spec": ("규격", "사양", "옵션", "모델", "모델명", "spec"),
    "qty": ("수량", "수 량", "qty", "quantity", "주문수량", "구매수량"),
    "unit_price": ("단가", "단 가", "판매가", "판매 단가", "unit", "price", "단위금액", "단위 금액"),
    "note": ("비고", "설명", "note", "memo"),
}
# Ordered by preference: post-discount line totals win over generic amount labels.
AMOUNT_KEYWORDS = (
    "공급합계",
    "공급 합계",
    "결제금액",
    "총액",
    "총금액",
    "합계금액",
    "합계 금액",
    "금액",
    "공급가액",
    "공급가",
    "주문금액",
    "합계",
    "amount",
    "total",
)
# An amount column never describes an adjustment.
AMOUNT_EXCLUDE = ("할인", "배송", "단위")


def _row_text(row: Sequence[object]) -> List[str]:
    return [clean_cell(c) for c in (row or [])]


def is_header_row(row: Sequence[object], *, loose: bool = False) -> bool:
    cells = _row_text(row)
    if len(cells) < MIN_HEADER_CELLS:
        return False
    joined = " ".join(cells).lower()
    if loose:
        return sum(1 for k in LOOSE_KEYS if k in joined) >= LOOSE_MIN_HITS
    has_name = any(k in joined for k in NAME_KEYS)
    has_qty_or_money = any(k in joined for k in QTY_OR_MONEY_KEYS)
    return has_name and has_qty_or_money


def find_header_row(
    rows: Sequence[Sequence[object]],
    *,
    max_scan: int = DEFAULT_MAX_SCAN_ROWS,
    loose: bool = False,
) -> int:
    """Index of the first header-looking row within the scan window, or -1."""
    scan_n = min(len(rows or []), max(1, int(max_scan or DEFAULT_MAX_SCAN_ROWS)))
    for i in range(scan_n):
        if is_header_row(rows[i], loose=loose):
            return i
    return -1


def _first_cell(header: Sequence[str], keys: Sequence[str], claimed: Set[int]) -> int:
    for i, cell in enumerate(header):
        if i in claimed:
            continue
        if any(k in cell for k in keys):
            return i
    return -1


def _amount_cell(header: Sequence[str], claimed: Set[int]) -> int:
    for k in AMOUNT_KEYWORDS:
        for i, cell in enumerate(header):
            if i in claimed or any(x in cell for x in AMOUNT_EXCLUDE):
                continue
            if k in cell:
                return i
    return -1


def map_columns(header: Sequence[object]) -> ColumnMap:
    """
    Map header cells to semantic columns.

    Columns are resolved in the fixed order name, spec, qty, unit_price, amount, note;
    a cell taken by an earlier column is not considered for later ones.
    """
    cells = [c.lower() for c in _row_text(header)]
    claimed: Set[int] = set()
    found: dict[str, int] = {}
    for col in ("name", "spec", "qty", "unit_price", "amount", "note"):
        if col == "amount":
            idx = _amount_cell(cells, claimed)
        else:
            idx = _first_cell(cells, COLUMN_KEYWORDS[col], claimed)
        if idx >= 0:
            claimed.add(idx)
        found[col] = idx
    return ColumnMap(**found)


def locate_columns(
    rows: Sequence[Sequence[object]],
    *,
    max_scan: int = DEFAULT_MAX_SCAN_ROWS,
    loose: bool = False,
) -> tuple[int, Optional[ColumnMap]]:
    header_idx = find_header_row(rows, max_scan=max_scan, loose=loose)
    if header_idx < 0:
        return -1, None
    return header_idx, map_columns(rows[header_idx])
