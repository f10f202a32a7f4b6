"""HTML table exports ("xls" files that are really HTML pages)."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from bs4 import BeautifulSoup
from bs4.element import Tag

from kquote.extract.columns import SPREADSHEET_MAX_SCAN_ROWS, find_header_row, map_columns
from kquote.extract.models import RawTable, TotalsCandidates
from kquote.extract.normalize import Number, clean_cell, is_positive, positive_or_none, to_number
from kquote.extract.rows import pick_cell
from kquote.extract.totals import max_positive

ROW_SEP = " ¦ "

GRAND_TOTAL_LABELS = ("총 구매금액", "총구매금액", "결제금액", "최종견적금액", "합계 금액", "합계금액", "총액", "총 금액")
SHIPPING_LABELS = ("배송비",)
DISCOUNT_LABELS = ("할인금액", "할인 금액")
FALLBACK_TABLE_KEYS = ("상품명", "품목", "항목", "내용", "규격", "수량", "단가", "판매가", "공급가액", "공급합계", "금액", "합계", "총액")


def parse_html(data: Union[bytes, str]) -> BeautifulSoup:
    # bytes let bs4 honour <meta charset> (EUC-KR/CP949 exports are common)
    return BeautifulSoup(data, "html.parser")


def table_to_rows(table: Tag) -> RawTable:
    rows: RawTable = []
    for tr in table.find_all("tr"):
        cells = [clean_cell(td.get_text(" ")) for td in tr.find_all(["th", "td"])]
        if any(cells):
            rows.append(cells)
    return rows


def _count_item_rows(rows: Sequence[Sequence[str]], header_idx: int) -> int:
    cols = map_columns(rows[header_idx])
    count = 0
    for r in rows[header_idx + 1:]:
        name = pick_cell(r, cols.name)
        spec = pick_cell(r, cols.spec)
        unit_price = to_number(pick_cell(r, cols.unit_price))
        amount = to_number(pick_cell(r, cols.amount))
        if name or spec or unit_price is not None or amount is not None:
            count += 1
    return count


def score_table(rows: Sequence[Sequence[str]], *, max_scan: int = SPREADSHEET_MAX_SCAN_ROWS) -> int:
    """Rank a table as an item-list candidate; navigation/ad tables score low."""
    score = 0
    header_idx = find_header_row(rows, max_scan=min(len(rows), max_scan))
    if header_idx >= 0:
        score += 1000
        score += max(0, 200 - header_idx)
        score += min(300, _count_item_rows(rows, header_idx)) * 10
    else:
        joined = " ".join(" ".join(r) for r in rows[:200])
        score += sum(2 for k in FALLBACK_TABLE_KEYS if k in joined)
    max_cols = max((len(r) for r in rows), default=0)
    score += min(20, len(rows)) + min(10, max_cols)
    return score


def pick_best_table(soup: BeautifulSoup, *, max_scan: int = SPREADSHEET_MAX_SCAN_ROWS) -> RawTable:
    best_score = -1
    best: RawTable = []
    for table in soup.find_all("table"):
        rows = table_to_rows(table)
        if len(rows) < 2:
            continue
        score = score_table(rows, max_scan=max_scan)
        if score > best_score:
            best_score, best = score, rows
    return best


def document_text(soup: BeautifulSoup) -> str:
    """Whole-document text with table rows kept apart, so a label never reads into the next row."""
    doc = BeautifulSoup(str(soup), "html.parser")
    for tr in doc.find_all("tr"):
        tr.append(ROW_SEP)
    body = doc.body or doc
    return clean_cell(body.get_text(" "))


def _find_all(text: str, labels: Sequence[str]) -> List[Number]:
    out: List[Number] = []
    for label in labels:
        pattern = re.compile(re.escape(label) + r"\s*[:：]?\s*(-?[0-9][0-9,]*)\s*(?:원)?")
        for m in pattern.finditer(text):
            n = to_number(m.group(1))
            if n is not None:
                out.append(n)
    return out


def scan_labelled_totals(text: str) -> TotalsCandidates:
    """Label/amount pairs in free text; repeated labels resolve to the max, never the sum."""
    return TotalsCandidates(
        grand_total=max_positive(_find_all(text, GRAND_TOTAL_LABELS)),
        shipping=max_positive(_find_all(text, SHIPPING_LABELS)),
        discount=max_positive(abs(n) for n in _find_all(text, DISCOUNT_LABELS)),
    )


@dataclass(frozen=True)
class FooterTotals:
    subtotal_before: Optional[Number] = None
    discount: Optional[Number] = None
    subtotal_after: Optional[Number] = None


def footer_totals(soup: BeautifulSoup) -> FooterTotals:
    """
    Marketplace "table.list" exports sum their columns in <tfoot>:
    [합계, 공급가액 sum, 할인금액 sum, 공급합계 sum] with no discount label.
    The last three numeric cells are read positionally.
    """
    tables = soup.select("table.list")
    if not tables:
        return FooterTotals()

    def _score(t: Tag) -> int:
        return len(t.select("tbody tr")) * 10 + len(t.select("thead th"))

    table = max(tables, key=_score)
    tfoot = table.find("tfoot")
    tr = tfoot.find("tr") if tfoot else None
    if tr is None:
        return FooterTotals()
    nums = [to_number(clean_cell(td.get_text(" "))) for td in tr.find_all(["th", "td"])]
    nums = [n for n in nums if n is not None and n >= 0]
    if len(nums) < 3:
        return FooterTotals()
    before, discount, after = nums[-3:]
    return FooterTotals(subtotal_before=before, discount=discount, subtotal_after=after)


def footer_net_subtotal(foot: FooterTotals) -> Optional[Number]:
    """Post-discount footer subtotal, rebuilt from the pre-discount sum when that cell reads 0."""
    if is_positive(foot.subtotal_after):
        return foot.subtotal_after
    if is_positive(foot.subtotal_before):
        return positive_or_none(foot.subtotal_before - (foot.discount or 0))
    return None


def scan_html_totals(soup: BeautifulSoup) -> TotalsCandidates:
    labelled = scan_labelled_totals(document_text(soup))
    foot = footer_totals(soup)
    discount = foot.discount if is_positive(foot.discount) else labelled.discount
    grand = labelled.grand_total
    if grand is None:
        net = footer_net_subtotal(foot)
        if net is not None:
            grand = net + (labelled.shipping or 0)
    return TotalsCandidates(shipping=labelled.shipping, discount=discount, grand_total=grand)
