"""Multi-file batches: per-file extraction, failure collection and result merging."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import reduce
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from kquote.errors import ExtractionError, redact_secrets, suggest_fix
from kquote.extract.models import ExtractionResult, LineItem, Totals
from kquote.extract.normalize import Number, positive_or_none
from kquote.extract.totals import compute_items_subtotal
from kquote.service.processor import QuoteProcessor
from kquote.utils.forensic_context import forensic_scope
from kquote.utils.logging_setup import log_event

log = logging.getLogger(__name__)

GENERIC_ERROR = "처리 중 알 수 없는 오류가 발생했습니다."


def _add(a: Optional[Number], b: Optional[Number]) -> Optional[Number]:
    # only finite positive terms are accepted into a sum
    a, b = positive_or_none(a), positive_or_none(b)
    if a is None:
        return b
    if b is None:
        return a
    return positive_or_none(a + b)


@dataclass(frozen=True)
class Partial:
    """
    Merge unit for per-file results.

    merge() is associative and has EMPTY as identity, so files can be
    extracted in any order or in parallel and folded afterwards.
    """

    items: Tuple[LineItem, ...] = ()
    subtotal: Optional[Number] = None
    shipping: Optional[Number] = None
    discount: Optional[Number] = None
    grand_total: Optional[Number] = None
    stated_total: Optional[Number] = None
    raw_texts: Tuple[str, ...] = ()
    modes: Tuple[str, ...] = ()

    @classmethod
    def from_result(cls, r: ExtractionResult) -> "Partial":
        banner = f"----- {r.filename or '(file)'} -----"
        return cls(
            items=tuple(r.items),
            subtotal=positive_or_none(r.totals.items_subtotal),
            shipping=positive_or_none(r.totals.shipping),
            discount=positive_or_none(r.totals.discount),
            grand_total=positive_or_none(r.totals.grand_total),
            stated_total=positive_or_none(r.totals.stated_total),
            raw_texts=(f"{banner}\n{r.raw_text or ''}".rstrip(),),
            modes=(r.mode,),
        )

    def merge(self, other: "Partial") -> "Partial":
        return Partial(
            items=self.items + other.items,
            subtotal=_add(self.subtotal, other.subtotal),
            shipping=_add(self.shipping, other.shipping),
            discount=_add(self.discount, other.discount),
            grand_total=_add(self.grand_total, other.grand_total),
            stated_total=_add(self.stated_total, other.stated_total),
            raw_texts=self.raw_texts + other.raw_texts,
            modes=self.modes + other.modes,
        )


EMPTY = Partial()


def combined_mode(modes: Sequence[str]) -> str:
    uniq = set(modes)
    if len(uniq) == 1:
        return modes[0]
    if uniq & {"ai", "ai_refine"}:
        return "ai_refine"
    if "heuristic" in uniq:
        return "heuristic"
    return "none"


def aggregate(results: Sequence[ExtractionResult]) -> Optional[ExtractionResult]:
    """
    Combine per-file results. The grand total is the sum of per-file grand
    totals, which already carry each file's shipping/discount; it is only
    recomputed from the merged items when no file resolved one.
    """
    results = list(results)
    if not results:
        return None
    if len(results) == 1:
        return results[0]

    acc = reduce(Partial.merge, (Partial.from_result(r) for r in results), EMPTY)
    grand = acc.grand_total
    if grand is None:
        subtotal = compute_items_subtotal(acc.items)
        grand = positive_or_none((subtotal or 0) + (acc.shipping or 0) - (acc.discount or 0))
    totals = Totals(
        items_subtotal=acc.subtotal,
        shipping=acc.shipping,
        discount=acc.discount,
        grand_total=grand,
        stated_total=acc.stated_total,
    )
    return ExtractionResult(
        source="multi",
        items=list(acc.items),
        totals=totals,
        raw_text="\n\n".join(acc.raw_texts),
        mode=combined_mode(acc.modes),
    )


@dataclass
class FileFailure:
    filename: str
    error: str
    error_type: str
    hint: str

    def to_dict(self) -> Dict[str, Any]:
        return {"filename": self.filename, "error": self.error, "errorType": self.error_type, "hint": self.hint}


@dataclass
class BatchResult:
    ok: List[ExtractionResult] = field(default_factory=list)
    failed: List[FileFailure] = field(default_factory=list)
    result: Optional[ExtractionResult] = None

    @property
    def succeeded(self) -> bool:
        return bool(self.ok)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": [r.to_dict() for r in self.ok],
            "failed": [f.to_dict() for f in self.failed],
            "result": self.result.to_dict() if self.result else None,
        }


def _failure(filename: str, exc: BaseException, secrets: Sequence[str]) -> FileFailure:
    if isinstance(exc, ExtractionError):
        msg, etype = str(exc), exc.code
    elif isinstance(exc, OSError):
        msg, etype = f"파일을 읽을 수 없습니다: {exc.strerror or type(exc).__name__}", "io_error"
    else:
        msg, etype = GENERIC_ERROR, "internal_error"
    return FileFailure(
        filename=filename,
        error=redact_secrets(msg, secrets),
        error_type=etype,
        hint=suggest_fix(filename, exc),
    )


Outcome = Union[ExtractionResult, FileFailure]


def process_one(processor: QuoteProcessor, path: Path) -> Outcome:
    path = Path(path)
    secrets = [processor.ai.api_key] if processor.ai else []
    try:
        return processor.process_path(path)
    except ExtractionError as e:
        failure = _failure(path.name, e, secrets)
    except OSError as e:
        failure = _failure(path.name, e, secrets)
    except Exception as e:
        # unexpected: keep the traceback in the log, show only a generic message
        log.exception("Unexpected error while processing %s", path.name)
        failure = _failure(path.name, e, secrets)
    with forensic_scope(filename=path.name):
        log_event(log, "batch.file_failed", "File failed", error_type=failure.error_type, error=failure.error)
    return failure


def run_batch(processor: QuoteProcessor, paths: Sequence[Path], *, workers: int = 1) -> BatchResult:
    """
    Extract every file; a failure never aborts the batch. Output order follows
    input order regardless of the worker count.
    """
    paths = [Path(p) for p in paths]
    workers = max(1, int(workers or 1))
    if workers == 1 or len(paths) <= 1:
        outcomes = [process_one(processor, p) for p in paths]
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            outcomes = list(executor.map(lambda p: process_one(processor, p), paths))

    batch = BatchResult()
    for out in outcomes:
        if isinstance(out, FileFailure):
            batch.failed.append(out)
        else:
            batch.ok.append(out)
    batch.result = aggregate(batch.ok)
    log_event(
        log,
        "batch.done",
        "Batch finished",
        files=len(paths),
        ok=len(batch.ok),
        failed=len(batch.failed),
        grand_total=batch.result.total if batch.result else None,
        mode=batch.result.mode if batch.result else None,
    )
    return batch
