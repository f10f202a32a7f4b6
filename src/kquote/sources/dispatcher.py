from __future__ import annotations

from pathlib import Path

from kquote.errors import UnsupportedFormat
from kquote.extract.columns import SPREADSHEET_MAX_SCAN_ROWS
from kquote.sources.base import SourceData
from kquote.sources.pdf import TEXT_FLOOR, load_pdf
from kquote.sources.spreadsheet import load_spreadsheet

SPREADSHEET_EXTS = (".xls", ".xlsx")
PDF_EXTS = (".pdf",)
SUPPORTED_EXTS = SPREADSHEET_EXTS + PDF_EXTS


def file_kind(filename: str) -> str:
    ext = Path(str(filename or "")).suffix.lower()
    if ext in SPREADSHEET_EXTS:
        return "spreadsheet"
    if ext in PDF_EXTS:
        return "pdf"
    raise UnsupportedFormat(f"지원하지 않는 파일 형식입니다: {ext or '(확장자 없음)'} (지원: .xls, .xlsx, .pdf)")


def load_source(
    filename: str,
    data: bytes,
    *,
    spreadsheet_scan_rows: int = SPREADSHEET_MAX_SCAN_ROWS,
    text_floor: int = TEXT_FLOOR,
) -> SourceData:
    """Route an upload to the row-producing strategy for its format."""
    kind = file_kind(filename)
    if kind == "spreadsheet":
        return load_spreadsheet(data, filename, max_scan=spreadsheet_scan_rows)
    return load_pdf(data, text_floor=text_floor)
