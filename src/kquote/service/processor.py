from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from kquote.errors import AIServiceError, HeaderNotFound, NoItemsExtracted
from kquote.extract.columns import DEFAULT_MAX_SCAN_ROWS, SPREADSHEET_MAX_SCAN_ROWS
from kquote.extract.heuristic import HeuristicResult, extract_from_rows
from kquote.extract.models import RAW_ROWS_KEEP, ExtractionResult, RawTable, Totals
from kquote.integrations.openai_extract import (
    MAX_IMAGES,
    MAX_RAW_TEXT,
    AIRequest,
    AIResult,
    OpenAIConfig,
    call_or_raise,
    request_extraction,
)
from kquote.service.refine import MISS_ALL_RATIO, MISS_AMOUNT_RATIO, merge_chunk_payloads, reconcile_ai_payload, should_refine
from kquote.sources.base import SourceData
from kquote.sources.dispatcher import load_source
from kquote.sources.pdf import MAX_IMAGE_CHARS, TEXT_FLOOR, iter_page_chunks
from kquote.utils.config import deep_get
from kquote.utils.forensic_context import forensic_scope
from kquote.utils.logging_setup import log_event

RequestFn = Callable[[OpenAIConfig, AIRequest], AIResult]


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class ProcessorOptions:
    max_scan_rows: int = DEFAULT_MAX_SCAN_ROWS
    spreadsheet_scan_rows: int = SPREADSHEET_MAX_SCAN_ROWS
    loose_header: bool = False
    miss_all_ratio: float = MISS_ALL_RATIO
    miss_amount_ratio: float = MISS_AMOUNT_RATIO
    text_floor: int = TEXT_FLOOR
    chunk_size: int = 4
    scale: float = 1.15
    quality: int = 72
    max_image_chars: int = MAX_IMAGE_CHARS

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], *, constrained: bool = False) -> "ProcessorOptions":
        ex = deep_get(cfg, ["extraction"], {}) or {}
        pdf = deep_get(cfg, ["pdf"], {}) or {}
        return cls(
            max_scan_rows=int(ex.get("max_scan_rows", DEFAULT_MAX_SCAN_ROWS)),
            spreadsheet_scan_rows=int(ex.get("spreadsheet_scan_rows", SPREADSHEET_MAX_SCAN_ROWS)),
            loose_header=str(ex.get("header_mode", "strict")).lower() == "loose",
            miss_all_ratio=float(ex.get("refine_miss_all_ratio", MISS_ALL_RATIO)),
            miss_amount_ratio=float(ex.get("refine_miss_amount_ratio", MISS_AMOUNT_RATIO)),
            text_floor=int(pdf.get("text_floor", TEXT_FLOOR)),
            chunk_size=int(pdf.get("constrained_chunk_size", 2) if constrained else pdf.get("chunk_size", 4)),
            scale=float(pdf.get("constrained_scale", 1.0) if constrained else pdf.get("scale", 1.15)),
            quality=int(pdf.get("quality", 72)),
            max_image_chars=int(pdf.get("max_image_chars", MAX_IMAGE_CHARS)),
        )

    @property
    def images_per_request(self) -> int:
        # a chunk larger than the per-request image cap would silently drop pages
        return max(1, min(int(self.chunk_size), MAX_IMAGES))


def _rows_text(rows: RawTable) -> str:
    out: List[str] = []
    size = 0
    for r in rows:
        line = "\t".join(c for c in r if c)
        if not line:
            continue
        out.append(line)
        size += len(line) + 1
        if size >= MAX_RAW_TEXT:
            break
    return "\n".join(out)


class QuoteProcessor:
    """
    Per-file pipeline: dispatch -> heuristic -> refinement gate -> (AI) -> result.

    Files are independent; one processor may be shared by worker threads.
    """

    def __init__(
        self,
        options: ProcessorOptions | None = None,
        *,
        ai: OpenAIConfig | None = None,
        request_fn: RequestFn = request_extraction,
        logger: logging.Logger | None = None,
    ):
        self.options = options or ProcessorOptions()
        self.ai = ai
        self._request_fn = request_fn
        self.log = logger or logging.getLogger(__name__)

    def _call_ai(self, req: AIRequest) -> Dict[str, Any]:
        assert self.ai is not None
        return call_or_raise(self.ai, req, request_fn=self._request_fn)

    def process_path(self, path: Path) -> ExtractionResult:
        path = Path(path)
        return self.process_bytes(path.name, path.read_bytes())

    def process_bytes(self, filename: str, data: bytes) -> ExtractionResult:
        """Extract one file; raises ExtractionError when no item could be extracted."""
        result, ai_error = self.extract(filename, data)
        if result.items:
            return result
        if ai_error is not None:
            raise ai_error
        if result.source == "xlsx" and result.header_index < 0:
            raise HeaderNotFound("표의 헤더 행(내용/수량/단가/금액)을 찾지 못했습니다.")
        raise NoItemsExtracted("품목을 찾지 못했습니다.")

    def extract(self, filename: str, data: bytes) -> Tuple[ExtractionResult, Optional[AIServiceError]]:
        """
        Run the pipeline. AI failures never raise here: they are returned
        next to a heuristic result, or an empty result with mode "none".
        """
        sha = sha256_bytes(data)
        with forensic_scope(filename=filename, file_sha256=sha, phase="dispatch"):
            src = load_source(
                filename,
                data,
                spreadsheet_scan_rows=self.options.spreadsheet_scan_rows,
                text_floor=self.options.text_floor,
            )
            with forensic_scope(source=src.source):
                if src.kind == "pdf_scanned":
                    result, err = self._extract_scanned(filename, data, src)
                else:
                    result, err = self._extract_rows(filename, src)
            result.filename = filename
            with forensic_scope(mode=result.mode):
                log_event(
                    self.log,
                    "extract.dispatch",
                    "File extracted",
                    kind=src.kind,
                    strategy=src.strategy,
                    items=len(result.items),
                    grand_total=result.total,
                    ai_error=str(err) if err else None,
                )
            return result, err

    def _scan_rows_for(self, src: SourceData) -> int:
        # workbook exports (binary or HTML) carry long order preambles
        if src.kind == "spreadsheet":
            return self.options.spreadsheet_scan_rows
        return self.options.max_scan_rows

    def _extract_rows(self, filename: str, src: SourceData) -> Tuple[ExtractionResult, Optional[AIServiceError]]:
        with forensic_scope(phase="heuristic"):
            heur = extract_from_rows(
                src.rows,
                max_scan=self._scan_rows_for(src),
                loose=self.options.loose_header,
                scanned=src.scanned,
            )
        raw_text = src.raw_text or _rows_text(src.rows)

        def _result(items, totals: Totals, mode: str, notes: List[str] | None = None) -> ExtractionResult:
            return ExtractionResult(
                source=src.source,
                items=list(items),
                totals=totals,
                raw_text=raw_text,
                mode=mode,
                header_index=heur.header_index,
                raw_rows=src.rows[:RAW_ROWS_KEEP],
                notes=list(notes or []),
            )

        heuristic = _result(heur.items, heur.totals, "heuristic")
        if self.ai is None:
            return (heuristic if heur.items else _result([], heur.totals, "none")), None

        if heur.items and not should_refine(
            heur.items,
            heur.totals.grand_total,
            totals=heur.totals,
            miss_all_ratio=self.options.miss_all_ratio,
            miss_amount_ratio=self.options.miss_amount_ratio,
        ):
            return heuristic, None

        mode = "ai_refine" if heur.items else "ai"
        req = AIRequest(
            source=src.source,
            filename=filename,
            rows=src.rows,
            raw_text=raw_text,
            initial_items=heur.items or None,
        )
        try:
            with forensic_scope(phase=mode):
                payload = self._call_ai(req)
        except AIServiceError as e:
            return self._ai_fallback(heur, e, _result)
        items, totals = reconcile_ai_payload(payload, scanned=src.scanned)
        if not items and heur.items:
            # an empty AI answer is not a correction
            return _result(heur.items, heur.totals, "heuristic", ["AI 보정 결과가 비어 기존 추출 결과를 사용했습니다."]), None
        return _result(items, totals, mode), None

    def _ai_fallback(self, heur: HeuristicResult, err: AIServiceError, make) -> Tuple[ExtractionResult, AIServiceError]:
        log_event(self.log, "ai.error", "AI refinement failed, falling back", error_type=err.code, error=str(err))
        note = f"AI 보정 실패: {err}"
        if heur.items:
            return make(heur.items, heur.totals, "heuristic", [note]), err
        return make([], heur.totals, "none", [note]), err

    def _extract_scanned(
        self, filename: str, data: bytes, src: SourceData
    ) -> Tuple[ExtractionResult, Optional[AIServiceError]]:
        empty = ExtractionResult(source="pdf", items=[], totals=Totals(), raw_text=src.raw_text, mode="none")
        if self.ai is None:
            empty.notes.append("스캔 PDF는 AI 키가 있어야 추출할 수 있습니다.")
            return empty, None

        opts = self.options
        if opts.images_per_request != opts.chunk_size:
            log_event(
                self.log,
                "pdf.render",
                "PDF chunk size clamped to the per-request image limit",
                chunk_size=opts.chunk_size,
                images_per_request=opts.images_per_request,
                max_images=MAX_IMAGES,
            )
        payloads: List[Dict[str, Any]] = []
        try:
            with forensic_scope(phase="pdf_images"):
                for chunk_no, first_page, urls in iter_page_chunks(
                    data,
                    opts.images_per_request,
                    scale=opts.scale,
                    quality=opts.quality,
                    max_chars=opts.max_image_chars,
                ):
                    req = AIRequest(
                        source="pdf",
                        filename=f"{filename} (p.{first_page}-{first_page + len(urls) - 1})",
                        raw_text=src.raw_text,
                        page_images=urls,
                    )
                    with forensic_scope(chunk=chunk_no):
                        payloads.append(self._call_ai(req))
        except AIServiceError as e:
            log_event(self.log, "ai.error", "Scanned PDF chunk failed", error_type=e.code, error=str(e), chunks_done=len(payloads))
            empty.notes.append(f"AI 추출 실패: {e}")
            return empty, e

        items, totals = reconcile_ai_payload(merge_chunk_payloads(payloads), max_items=None)
        return (
            ExtractionResult(source="pdf", items=items, totals=totals, raw_text=src.raw_text, mode="ai" if items else "none"),
            None,
        )

