"""AI refinement gate and reconciliation of AI answers into the heuristic totals model."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from kquote.extract.models import LineItem, Totals, TotalsCandidates, items_from_mappings
from kquote.extract.normalize import is_positive, to_number
from kquote.extract.rows import split_adjustments
from kquote.extract.totals import combine_max, resolve_totals
from kquote.utils.logging_setup import log_event

log = logging.getLogger(__name__)

MISS_ALL_RATIO = 0.25
MISS_AMOUNT_RATIO = 0.55
MAX_AI_ITEMS = 80


def coverage_gaps(items: Sequence[LineItem]) -> Tuple[int, int]:
    """(items with neither amount nor qty*unitPrice, items without a usable amount)."""
    miss_amount = sum(1 for it in items if not it.has_amount())
    miss_all = sum(1 for it in items if not it.has_amount() and not it.has_computable_amount())
    return miss_all, miss_amount


def should_refine(
    items: Sequence[LineItem],
    total: Any,
    *,
    miss_all_ratio: float = MISS_ALL_RATIO,
    miss_amount_ratio: float = MISS_AMOUNT_RATIO,
    totals: Optional[Totals] = None,
) -> bool:
    """
    True when the heuristic result needs AI correction.

    A few incomplete rows are tolerated; an unreadable structure (no items, no
    positive total, too many rows without amounts) is not. When totals are
    given, a stated total that differs from the derived one is logged with
    the decision but does not force a refinement on its own.
    """
    items = list(items or [])
    if not items:
        reason = "no_items"
    elif not is_positive(total):
        reason = "no_total"
    else:
        miss_all, miss_amount = coverage_gaps(items)
        n = len(items)
        if miss_all / n > miss_all_ratio:
            reason = "miss_all"
        elif miss_amount / n > miss_amount_ratio:
            reason = "miss_amount"
        else:
            reason = ""
    audit: Dict[str, Any] = {}
    if totals is not None:
        audit = {
            "stated_total": totals.stated_total,
            "derived_total": totals.derived_total,
            "disagrees": totals.disagrees,
        }
    log_event(
        log, "refine.gate", "Refinement gate", items=len(items), total=total, refine=bool(reason), reason=reason or None, **audit
    )
    return bool(reason)


def ai_candidates(payload: Mapping[str, Any]) -> TotalsCandidates:
    discount = to_number(payload.get("discount"))
    return TotalsCandidates(
        shipping=to_number(payload.get("shipping")),
        # a discount may be reported signed; only its magnitude is meaningful
        discount=abs(discount) if discount is not None else None,
        grand_total=to_number(payload.get("statedTotal")),
    )


def reconcile_ai_payload(
    payload: Mapping[str, Any],
    *,
    scanned: Optional[TotalsCandidates] = None,
    max_items: Optional[int] = MAX_AI_ITEMS,
) -> Tuple[List[LineItem], Totals]:
    """
    AI items go through the same normalizer and adjustment splitter as table
    rows, so summary-like rows the model left in are still caught.
    """
    raw_items = payload.get("items") if isinstance(payload.get("items"), list) else []
    items = items_from_mappings(raw_items if max_items is None else raw_items[:max_items])
    split = split_adjustments(items)
    totals = resolve_totals(
        split.items,
        ai=ai_candidates(payload),
        scanned=scanned,
        summary_shipping=split.shipping,
        summary_discount=split.discount,
    )
    return split.items, totals



def merge_chunk_payloads(payloads: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Combine per-chunk answers of one scanned PDF. Items are concatenated
    (each chunk capped on its own); shipping/discount/statedTotal take the
    max, since a totals line may be visible on more than one chunk.
    """
    items: List[Any] = []
    for p in payloads:
        if isinstance(p.get("items"), list):
            items.extend(p["items"][:MAX_AI_ITEMS])
    merged = combine_max(ai_candidates(p) for p in payloads)
    return {
        "items": items,
        "shipping": merged.shipping,
        "discount": merged.discount,
        "statedTotal": merged.grand_total,
    }
