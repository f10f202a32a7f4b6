"""Spreadsheet uploads: native OOXML/BIFF workbooks and HTML pages saved as .xls."""
from __future__ import annotations

import logging
import math
from datetime import date, datetime
from io import BytesIO
from typing import Any, List

import pandas as pd

from kquote.errors import ExtractionError, redact_secrets
from kquote.extract.columns import SPREADSHEET_MAX_SCAN_ROWS
from kquote.extract.models import RawTable
from kquote.extract.normalize import clean_cell
from kquote.sources.base import SourceData, Strategy, run_strategies
from kquote.sources.html_tables import parse_html, pick_best_table, scan_html_totals
from kquote.utils.logging_setup import log_event

log = logging.getLogger(__name__)

SNIFF_BYTES = 256
_BOM = b"\xef\xbb\xbf"


def looks_like_html_bytes(data: bytes) -> bool:
    """First non-whitespace byte (after an optional UTF-8 BOM) is '<'."""
    head = bytes(data[:SNIFF_BYTES]).lstrip()
    if head.startswith(_BOM):
        head = head[len(_BOM):].lstrip()
    return head[:1] == b"<"


def cell_to_text(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, float):
        if math.isnan(v):
            return ""
        if v.is_integer():
            return str(int(v))
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    try:
        if pd.isna(v):
            return ""
    except (TypeError, ValueError):
        pass
    return clean_cell(v)


def read_binary_rows(data: bytes) -> RawTable:
    """First sheet of a native workbook as text rows (openpyxl for xlsx, xlrd for xls)."""
    df = pd.read_excel(BytesIO(data), sheet_name=0, header=None, dtype=object)
    rows: RawTable = []
    for rec in df.itertuples(index=False, name=None):
        rows.append([cell_to_text(v) for v in rec])
    # trailing blank rows are common in exported sheets
    while rows and not any(rows[-1]):
        rows.pop()
    return rows


def _binary_strategy(data: bytes) -> SourceData:
    return SourceData(kind="spreadsheet", rows=read_binary_rows(data))


def _html_strategy(max_scan: int):
    def _run(data: bytes) -> SourceData:
        soup = parse_html(data)
        rows = pick_best_table(soup, max_scan=max_scan)
        return SourceData(kind="spreadsheet", rows=rows, scanned=scan_html_totals(soup))

    return _run


def spreadsheet_strategies(data: bytes, *, max_scan: int = SPREADSHEET_MAX_SCAN_ROWS) -> List[Strategy]:
    html = Strategy("html", _html_strategy(max_scan))
    if looks_like_html_bytes(data):
        return [html]
    return [Strategy("binary", _binary_strategy), html]


def load_spreadsheet(data: bytes, filename: str = "", *, max_scan: int = SPREADSHEET_MAX_SCAN_ROWS) -> SourceData:
    strategies = spreadsheet_strategies(data, max_scan=max_scan)
    out, errors = run_strategies(strategies, data)
    for err in errors:
        log_event(log, "extract.dispatch", "Spreadsheet strategy failed", strategy_error=redact_secrets(err))
    if out is None:
        raise ExtractionError(f"스프레드시트를 읽지 못했습니다: {filename or '(이름 없음)'}")
    log_event(
        log,
        "extract.dispatch",
        "Spreadsheet rows loaded",
        strategy=out.strategy,
        rows=len(out.rows),
        scanned_grand_total=out.scanned.grand_total,
    )
    return out
