from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Mapping, Optional

from kquote.extract.models import ExtractionResult
from kquote.extract.normalize import clamp_string
from kquote.extract.totals import compute_items_subtotal


def to_doc_payload(result: ExtractionResult, meta: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """
    Request body for the document drafting service.

    quote.total prefers the resolved grand total (it carries shipping and
    discount); recomputation from items is the fallback only.
    """
    meta = dict(meta or {})
    total = result.total
    if total is None:
        total = compute_items_subtotal(result.items)
    return {
        "meta": {
            "subject": clamp_string(meta.get("subject") or ""),
            "docDate": str(meta.get("docDate") or dt.date.today().isoformat()),
            "purpose": clamp_string(meta.get("purpose") or ""),
            "notes": clamp_string(meta.get("notes") or "", 2000),
        },
        "quote": {
            "source": result.source,
            "currency": "KRW",
            "items": [it.to_dict() for it in result.items],
            "total": total,
            "totals": result.totals.to_dict(),
            "rawText": result.raw_text,
        },
    }
