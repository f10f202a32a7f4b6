from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List

from kquote.extract.models import RawTable, TotalsCandidates


@dataclass
class SourceData:
    """Rows and document-level totals read from one uploaded file."""

    kind: str  # "spreadsheet" | "pdf_text" | "pdf_scanned"
    rows: RawTable = field(default_factory=list)
    scanned: TotalsCandidates = field(default_factory=TotalsCandidates)
    raw_text: str = ""
    strategy: str = ""
    page_count: int = 0

    @property
    def source(self) -> str:
        return "xlsx" if self.kind == "spreadsheet" else "pdf"


@dataclass(frozen=True)
class Strategy:
    name: str
    run: Callable[[bytes], SourceData]


def run_strategies(strategies: List[Strategy], data: bytes) -> tuple[SourceData | None, List[str]]:
    """
    Try strategies in order and return the first one that yields rows.

    Sequential fallback is the contract: a later strategy only runs when the
    earlier ones raised or produced an empty table. Errors are returned, not raised.
    """
    errors: List[str] = []
    for st in strategies:
        try:
            out = st.run(data)
        except Exception as e:
            errors.append(f"{st.name}: {type(e).__name__}: {e}")
            continue
        if out.rows:
            out.strategy = st.name
            return out, errors
        errors.append(f"{st.name}: empty table")
    return None, errors
