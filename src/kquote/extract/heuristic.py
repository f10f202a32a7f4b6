from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Sequence

from kquote.extract.columns import DEFAULT_MAX_SCAN_ROWS, locate_columns
from kquote.extract.models import ColumnMap, LineItem, Totals, TotalsCandidates
from kquote.extract.normalize import Number
from kquote.extract.rows import build_items
from kquote.extract.totals import resolve_totals
from kquote.utils.logging_setup import log_event

log = logging.getLogger(__name__)


@dataclass
class HeuristicResult:
    items: List[LineItem]
    totals: Totals
    header_index: int = -1
    columns: Optional[ColumnMap] = None
    summary_shipping: Optional[Number] = None
    summary_discount: Optional[Number] = None
    discarded_rows: int = 0
    scanned: TotalsCandidates = field(default_factory=TotalsCandidates)

    @property
    def header_found(self) -> bool:
        return self.header_index >= 0


def extract_from_rows(
    rows: Optional[Sequence[Sequence[object]]],
    *,
    max_scan: int = DEFAULT_MAX_SCAN_ROWS,
    loose: bool = False,
    scanned: Optional[TotalsCandidates] = None,
) -> HeuristicResult:
    """Rule-based extraction: header -> columns -> rows -> totals.

    Without a header row the result is empty (header_index == -1); totals
    may still carry document-scanned values.
    """
    scanned = scanned or TotalsCandidates()
    rows = list(rows or [])
    header_idx, cols = locate_columns(rows, max_scan=max_scan, loose=loose)
    if header_idx < 0 or cols is None:
        log_event(log, "extract.header", "No header row found", rows=len(rows), max_scan=max_scan, loose=loose)
        return HeuristicResult(items=[], totals=resolve_totals([], scanned=scanned), scanned=scanned)

    split = build_items(rows, header_idx, cols)
    totals = resolve_totals(
        split.items,
        scanned=scanned,
        summary_shipping=split.shipping,
        summary_discount=split.discount,
    )
    log_event(
        log,
        "extract.heuristic",
        "Heuristic extraction",
        header_index=header_idx,
        columns=asdict(cols),
        items=len(split.items),
        discarded=split.discarded,
        grand_total=totals.grand_total,
    )
    return HeuristicResult(
        items=split.items,
        totals=totals,
        header_index=header_idx,
        columns=cols,
        summary_shipping=split.shipping,
        summary_discount=split.discount,
        discarded_rows=split.discarded,
        scanned=scanned,
    )
