from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Sequence

import pytest
from openpyxl import Workbook


def make_minimal_pdf_with_text(text: str) -> bytes:
    # Minimal single-page PDF with embedded text that pypdf can extract.
    s = (text or "").replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
    content = f"BT /F1 10 Tf 50 750 Td ({s}) Tj ET"

    def obj(n: int, body: str) -> str:
        return f"{n} 0 obj\n{body}\nendobj\n"

    header = "%PDF-1.4\n%\xe2\xe3\xcf\xd3\n"
    objs: List[str] = []
    objs.append(obj(1, "<< /Type /Catalog /Pages 2 0 R >>"))
    objs.append(obj(2, "<< /Type /Pages /Kids [3 0 R] /Count 1 >>"))
    objs.append(
        obj(
            3,
            "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
            "/Resources << /Font << /F1 5 0 R >> >> >>",
        )
    )
    stream_len = len(content.encode("latin1"))
    objs.append(f"4 0 obj\n<< /Length {stream_len} >>\nstream\n{content}\nendstream\nendobj\n")
    objs.append(obj(5, "<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>"))

    offsets: List[int] = [0]
    cur = len(header.encode("latin1"))
    for o in objs:
        offsets.append(cur)
        cur += len(o.encode("latin1"))

    xref_start = cur
    xref = "xref\n0 6\n"
    xref += "0000000000 65535 f \n"
    for off in offsets[1:]:
        xref += f"{off:010d} 00000 n \n"

    trailer = "trailer\n<< /Size 6 /Root 1 0 R >>\nstartxref\n" + str(xref_start) + "\n%%EOF\n"
    return (header + "".join(objs) + xref + trailer).encode("latin1")


def write_xlsx(path: Path, rows: Sequence[Sequence[object]]) -> Path:
    wb = Workbook()
    ws = wb.active
    for r in rows:
        ws.append(list(r))
    wb.save(path)
    return path


QUOTE_HEADER = ["상품명", "규격", "수량", "단가", "금액"]


@pytest.fixture
def make_xlsx(tmp_path) -> Callable[..., Path]:
    def _make(rows: Sequence[Sequence[object]], name: str = "quote.xlsx") -> Path:
        return write_xlsx(tmp_path / name, rows)

    return _make


@pytest.fixture
def minimal_pdf() -> Callable[[str], bytes]:
    return make_minimal_pdf_with_text
