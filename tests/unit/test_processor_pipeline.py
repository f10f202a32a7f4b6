from __future__ import annotations

import logging
from typing import Any, Dict, List

import pytest

from kquote.errors import AISchemaError, AITransportError, HeaderNotFound, NoItemsExtracted, UnsupportedFormat
from kquote.integrations.openai_extract import AIOk, AIRequest, AISchemaFailure, AITransportFailure, OpenAIConfig
from kquote.service.processor import ProcessorOptions, QuoteProcessor
from kquote.sources.base import SourceData

HEADER = ["상품명", "규격", "수량", "단가", "금액"]

AI_ANSWER: Dict[str, Any] = {
    "items": [
        {"name": "키보드", "spec": "기계식", "qty": 2, "unitPrice": 10000, "amount": 20000, "note": ""},
        {"name": "배송비", "spec": "", "qty": None, "unitPrice": None, "amount": 3000, "note": ""},
    ],
    "shipping": None,
    "discount": None,
    "statedTotal": None,
}


class FakeAI:
    def __init__(self, *results) -> None:
        self.results = list(results)
        self.requests: List[AIRequest] = []

    def __call__(self, cfg: OpenAIConfig, req: AIRequest):
        self.requests.append(req)
        r = self.results[min(len(self.requests) - 1, len(self.results) - 1)]
        return r


def _processor(fake=None) -> QuoteProcessor:
    ai = OpenAIConfig(api_key="sk-test-0123456789abcdefghij", model="gpt-4o") if fake is not None else None
    kwargs = {"request_fn": fake} if fake is not None else {}
    return QuoteProcessor(ProcessorOptions(), ai=ai, **kwargs)


def test_heuristic_only_without_key(make_xlsx) -> None:
    path = make_xlsx([HEADER, ["키보드", "기계식", 2, 10000, 20000], ["배송비", "", "", "", 3000]])
    res = _processor().process_path(path)
    assert res.mode == "heuristic"
    assert res.source == "xlsx"
    assert res.filename == "quote.xlsx"
    assert [it.name for it in res.items] == ["키보드"]
    assert res.total == 23000
    assert "키보드" in res.raw_text


def test_good_heuristic_result_skips_ai(make_xlsx) -> None:
    fake = FakeAI(AIOk(AI_ANSWER))
    path = make_xlsx([HEADER, ["키보드", "기계식", 2, 10000, 20000]])
    res = _processor(fake).process_path(path)
    assert res.mode == "heuristic"
    assert fake.requests == []


def test_incomplete_rows_are_refined_by_ai(make_xlsx) -> None:
    fake = FakeAI(AIOk(AI_ANSWER, model="gpt-4o"))
    path = make_xlsx([HEADER, ["키보드", "기계식", "", "", ""], ["마우스", "", "", "", ""]])
    res = _processor(fake).process_path(path)
    assert res.mode == "ai_refine"
    assert [it.name for it in res.items] == ["키보드"]
    assert res.totals.shipping == 3000
    assert res.total == 23000

    req = fake.requests[0]
    assert req.source == "xlsx"
    assert [it.name for it in req.initial_items] == ["키보드", "마우스"]
    assert req.rows[0] == HEADER


def test_ai_failure_keeps_heuristic_result(make_xlsx) -> None:
    fake = FakeAI(AITransportFailure("OpenAI HTTP 503: overloaded", 503))
    path = make_xlsx([HEADER, ["키보드", "기계식", "", "", ""]])
    proc = _processor(fake)

    result, err = proc.extract(path.name, path.read_bytes())
    assert isinstance(err, AITransportError)
    assert result.mode == "heuristic"
    assert any("AI 보정 실패" in n for n in result.notes)

    # items exist, so the file still counts as extracted
    assert proc.process_path(path).items


def test_empty_ai_answer_does_not_erase_items(make_xlsx) -> None:
    empty = {"items": [], "shipping": None, "discount": None, "statedTotal": None}
    path = make_xlsx([HEADER, ["키보드", "기계식", "", "", ""]])
    res = _processor(FakeAI(AIOk(empty))).process_path(path)
    assert res.mode == "heuristic"
    assert [it.name for it in res.items] == ["키보드"]
    assert res.notes


def test_missing_header_without_ai(make_xlsx) -> None:
    path = make_xlsx([["주문 내역"], ["배송지", "서울"], ["연락처", "010-0000-0000"]])
    with pytest.raises(HeaderNotFound):
        _processor().process_path(path)


def test_missing_header_uses_ai_extraction(make_xlsx) -> None:
    fake = FakeAI(AIOk(AI_ANSWER))
    path = make_xlsx([["주문 내역"], ["키보드 기계식 2개", "20000"]])
    res = _processor(fake).process_path(path)
    assert res.mode == "ai"
    assert fake.requests[0].initial_items is None
    assert res.total == 23000


def test_missing_header_with_ai_failure_surfaces_ai_error(make_xlsx) -> None:
    fake = FakeAI(AISchemaFailure("OpenAI가 JSON이 아닌 내용을 반환했습니다."))
    path = make_xlsx([["주문 내역"], ["키보드 기계식 2개", "20000"]])
    proc = _processor(fake)
    result, err = proc.extract(path.name, path.read_bytes())
    assert result.mode == "none"
    assert result.items == []
    with pytest.raises(AISchemaError):
        proc.process_path(path)


def test_transport_error_without_items_is_raised(make_xlsx) -> None:
    fake = FakeAI(AITransportFailure("OpenAI 요청 실패: ConnectionError"))
    path = make_xlsx([["메모"]])
    with pytest.raises(AITransportError):
        _processor(fake).process_path(path)


def test_scanned_pdf_needs_ai(minimal_pdf) -> None:
    proc = _processor()
    result, err = proc.extract("scan.pdf", minimal_pdf("hi"))
    assert err is None
    assert result.mode == "none"
    assert result.notes
    with pytest.raises(NoItemsExtracted):
        proc.process_bytes("scan.pdf", minimal_pdf("hi"))


def test_scanned_pdf_with_ai(minimal_pdf) -> None:
    fake = FakeAI(AIOk(AI_ANSWER))
    res = _processor(fake).process_bytes("scan.pdf", minimal_pdf("hi"))
    assert res.mode == "ai"
    assert res.source == "pdf"
    assert [it.name for it in res.items] == ["키보드"]
    assert res.total == 23000

    req = fake.requests[0]
    assert len(req.page_images) == 1
    assert req.page_images[0].startswith("data:image/jpeg;base64,")
    assert req.filename == "scan.pdf (p.1-1)"


def test_scanned_pdf_chunk_failure(minimal_pdf) -> None:
    fake = FakeAI(AITransportFailure("OpenAI HTTP 500: boom", 500))
    with pytest.raises(AITransportError):
        _processor(fake).process_bytes("scan.pdf", minimal_pdf("hi"))


def test_unsupported_extension() -> None:
    with pytest.raises(UnsupportedFormat):
        _processor().process_bytes("quote.hwp", b"whatever")


def test_options_from_config() -> None:
    cfg = {
        "extraction": {"header_mode": "loose", "max_scan_rows": 30},
        "pdf": {"chunk_size": 6, "constrained_chunk_size": 2, "constrained_scale": 0.9},
    }
    opts = ProcessorOptions.from_config(cfg)
    assert opts.loose_header
    assert opts.max_scan_rows == 30
    assert opts.chunk_size == 6
    assert opts.images_per_request == 3

    small = ProcessorOptions.from_config(cfg, constrained=True)
    assert small.chunk_size == 2
    assert small.scale == 0.9
    assert small.images_per_request == 2


def test_header_after_long_preamble_in_native_workbook(make_xlsx) -> None:
    preamble = [[f"주문 안내 {i}"] for i in range(70)]
    path = make_xlsx(preamble + [HEADER, ["키보드", "기계식", 2, 10000, 20000]])
    result, err = _processor().extract(path.name, path.read_bytes())
    assert err is None
    assert result.header_index == 70
    assert [it.name for it in result.items] == ["키보드"]
    assert result.total == 20000


def test_pdf_text_keeps_the_short_scan_window() -> None:
    proc = _processor()
    assert proc._scan_rows_for(SourceData(kind="pdf_text")) == proc.options.max_scan_rows
    assert proc._scan_rows_for(SourceData(kind="spreadsheet", strategy="binary")) == proc.options.spreadsheet_scan_rows


def test_gate_logs_stated_versus_derived_total(caplog) -> None:
    caplog.set_level(logging.INFO, logger="kquote.service.refine")
    fake = FakeAI(AIOk(AI_ANSWER))
    html = (
        "<html><body><table>"
        "<tr><th>상품명</th><th>규격</th><th>수량</th><th>단가</th><th>금액</th></tr>"
        "<tr><td>키보드</td><td>기계식</td><td>2</td><td>10,000</td><td>20,000</td></tr>"
        "</table><p>총 구매금액 25,000원</p></body></html>"
    ).encode("utf-8")
    res = _processor(fake).process_bytes("quote.xls", html)
    assert res.mode == "heuristic"
    assert res.totals.disagrees
    assert fake.requests == []

    gate = [r for r in caplog.records if getattr(r, "event_name", "") == "refine.gate"]
    payload = gate[-1].extra_payload
    assert payload["refine"] is False
    assert payload["disagrees"] is True
    assert (payload["stated_total"], payload["derived_total"]) == (25000, 20000)


def test_chunk_clamp_is_logged(minimal_pdf, caplog) -> None:
    caplog.set_level(logging.INFO, logger="kquote.service.processor")
    fake = FakeAI(AIOk(AI_ANSWER))
    proc = QuoteProcessor(
        ProcessorOptions(chunk_size=4),
        ai=OpenAIConfig(api_key="sk-test-0123456789abcdefghij", model="gpt-4o"),
        request_fn=fake,
    )
    proc.process_bytes("scan.pdf", minimal_pdf("hi"))
    clamp = [r for r in caplog.records if getattr(r, "event_name", "") == "pdf.render" and "clamped" in r.getMessage()]
    assert clamp
    assert clamp[0].extra_payload["images_per_request"] == 3
