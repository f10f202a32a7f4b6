"""PDF uploads: text layer via pypdf, page images via pypdfium2 for scanned documents."""
from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from io import BytesIO
from typing import Iterator, List, Sequence, Tuple

import numpy as np
import pypdfium2 as pdfium
from PIL import Image
from pypdf import PdfReader

from kquote.errors import ExtractionError, PayloadTooLarge
from kquote.extract.models import RawTable, TotalsCandidates
from kquote.extract.normalize import clean_cell
from kquote.sources.base import SourceData
from kquote.sources.html_tables import ROW_SEP, scan_labelled_totals
from kquote.utils.forensic_context import forensic_scope
from kquote.utils.logging_setup import log_event

log = logging.getLogger(__name__)

TEXT_FLOOR = 80
MAX_IMAGE_CHARS = 2_400_000
_CELL_SPLIT_RE = re.compile(r"\s{2,}|\t")


def read_page_texts(data: bytes) -> List[str]:
    reader = PdfReader(BytesIO(data))
    if reader.is_encrypted:
        try:
            ok = reader.decrypt("")
        except Exception as e:
            raise ExtractionError(f"암호로 보호된 PDF입니다 (encrypted): {type(e).__name__}") from e
        if not ok:
            raise ExtractionError("암호로 보호된 PDF입니다 (password required)")
    texts: List[str] = []
    for page in reader.pages:
        try:
            # layout mode keeps table columns apart with runs of spaces
            t = page.extract_text(extraction_mode="layout") or ""
        except Exception as e:
            log.debug("layout extraction failed, using plain mode: %s", e)
            t = page.extract_text() or ""
        texts.append(t)
    return texts


def collapsed_length(text: str) -> int:
    return len(clean_cell(text))


def is_scanned_text(text: str, floor: int = TEXT_FLOOR) -> bool:
    """Text layer too thin to parse: whitespace-collapsed length below the floor."""
    return collapsed_length(text) < int(floor)


def text_to_rows(text: str) -> RawTable:
    """Layout-mode lines -> rows; cells are separated by 2+ spaces or tabs."""
    rows: RawTable = []
    for line in (text or "").splitlines():
        cells = [clean_cell(c) for c in _CELL_SPLIT_RE.split(line.strip())]
        cells = [c for c in cells if c]
        if cells:
            rows.append(cells)
    return rows


def text_layer_totals(text: str) -> TotalsCandidates:
    """Labelled totals in layout text; a label at the end of one line never reads into the next."""
    lines = (clean_cell(line) for line in (text or "").splitlines())
    return scan_labelled_totals(ROW_SEP.join(line for line in lines if line))


def load_pdf(data: bytes, *, text_floor: int = TEXT_FLOOR) -> SourceData:
    pages = read_page_texts(data)
    raw_text = "\n".join(pages).strip()
    if is_scanned_text(raw_text, text_floor):
        log_event(
            log,
            "extract.dispatch",
            "PDF text layer below floor, using page images",
            pages=len(pages),
            text_len=collapsed_length(raw_text),
            text_floor=text_floor,
        )
        return SourceData(kind="pdf_scanned", raw_text=raw_text, page_count=len(pages), strategy="page_images")

    rows = text_to_rows(raw_text)
    log_event(log, "extract.dispatch", "PDF text layer parsed", pages=len(pages), rows=len(rows))
    return SourceData(
        kind="pdf_text",
        rows=rows,
        scanned=text_layer_totals(raw_text),
        raw_text=raw_text,
        page_count=len(pages),
        strategy="text_layer",
    )


@dataclass(frozen=True)
class RenderStep:
    scale: float
    quality: int


def render_ladder(scale: float = 1.15, quality: int = 72) -> List[RenderStep]:
    """Each step trades resolution/JPEG quality for size; the last is the floor."""
    return [
        RenderStep(float(scale), int(quality)),
        RenderStep(max(0.9, float(scale) * 0.9), 65),
        RenderStep(0.9, 60),
    ]


def _page_image(page: "pdfium.PdfPage", scale: float) -> Image.Image:
    bitmap = page.render(scale=scale, rev_byteorder=True)
    arr = bitmap.to_numpy()
    if arr.ndim == 3 and arr.shape[2] == 4:
        arr = arr[:, :, :3]
    img = Image.fromarray(np.ascontiguousarray(arr.astype(np.uint8)))
    return img.convert("RGB")


def image_to_data_url(img: Image.Image, quality: int) -> str:
    bio = BytesIO()
    img.save(bio, format="JPEG", quality=int(quality))
    return "data:image/jpeg;base64," + base64.b64encode(bio.getvalue()).decode("ascii")


def render_page_data_url(
    page: "pdfium.PdfPage",
    ladder: Sequence[RenderStep],
    *,
    max_chars: int = MAX_IMAGE_CHARS,
) -> str:
    """
    Walk the ladder until the encoded page fits max_chars.

    Steps are sequential: the next one is only tried after measuring the previous output.
    """
    last_len = 0
    for step in ladder:
        url = image_to_data_url(_page_image(page, step.scale), step.quality)
        last_len = len(url)
        log_event(log, "pdf.render", "Rendered page", scale=round(step.scale, 3), quality=step.quality, chars=last_len)
        if last_len <= max_chars:
            return url
    raise PayloadTooLarge(f"페이지 이미지가 허용 크기를 초과했습니다 ({last_len} > {max_chars} 문자)")


def iter_page_chunks(
    data: bytes,
    chunk_size: int,
    *,
    scale: float = 1.15,
    quality: int = 72,
    max_chars: int = MAX_IMAGE_CHARS,
) -> Iterator[Tuple[int, int, List[str]]]:
    """Yield (chunk_no, first_page_no, data_urls) with 1-based page numbers."""
    size = max(1, int(chunk_size))
    ladder = render_ladder(scale, quality)
    pdf = pdfium.PdfDocument(data)
    try:
        n = len(pdf)
        for chunk_no, start in enumerate(range(0, n, size), start=1):
            urls: List[str] = []
            with forensic_scope(chunk=chunk_no):
                for i in range(start, min(n, start + size)):
                    page = pdf[i]
                    try:
                        urls.append(render_page_data_url(page, ladder, max_chars=max_chars))
                    finally:
                        page.close()
            yield chunk_no, start + 1, urls
    finally:
        pdf.close()
