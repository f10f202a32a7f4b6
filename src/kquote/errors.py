from __future__ import annotations

import re
from typing import Iterable

_SECRET_RE = re.compile(r"sk-[A-Za-z0-9_-]{6,}")
_BEARER_RE = re.compile(r"(?i)bearer\s+[A-Za-z0-9._-]+")


class ExtractionError(Exception):
    """Base for per-file failures; str(err) is the user-facing diagnostic."""

    code = "extraction_error"


class UnsupportedFormat(ExtractionError):
    code = "unsupported_format"


class HeaderNotFound(ExtractionError):
    code = "header_not_found"


class NoItemsExtracted(ExtractionError):
    code = "no_items_extracted"


class AIServiceError(ExtractionError):
    code = "ai_service_error"


class AITransportError(AIServiceError):
    code = "ai_transport_error"


class AISchemaError(AIServiceError):
    code = "ai_schema_error"


class PayloadTooLarge(ExtractionError):
    code = "payload_too_large"


def redact_secrets(text: str, secrets: Iterable[str] = ()) -> str:
    """Mask API keys and bearer tokens in text that may end up in errors or logs."""
    out = str(text or "")
    for s in secrets:
        if s:
            out = out.replace(s, "***")
    out = _SECRET_RE.sub("sk-***", out)
    return _BEARER_RE.sub("Bearer ***", out)


def suggest_fix(filename: str, err: BaseException | str | None) -> str:
    """Format-specific remediation hint shown next to a failed file."""
    name = str(filename or "").lower()
    msg = str(err or "")

    if name.endswith(".pdf"):
        if re.search(r"암호|password|encrypted", msg, re.IGNORECASE):
            return "해결: 암호를 해제한 PDF로 다시 저장해 주세요."
        if isinstance(err, PayloadTooLarge):
            return "해결: 페이지 이미지가 너무 큽니다. 페이지를 나누거나 해상도를 낮춰 다시 스캔해 주세요."
        if isinstance(err, NoItemsExtracted) or "품목을 찾지 못" in msg:
            return "해결: 스캔본이면 해상도(권장 300dpi)를 높이거나, 표가 포함된 페이지가 있는지 확인해 주세요."
        return "해결: 스캔본/이미지 PDF일 수 있어요. 글자가 선명한 PDF로 다시 저장하면 정확도가 올라갑니다."

    if name.endswith(".xls") or name.endswith(".xlsx"):
        if isinstance(err, HeaderNotFound) or re.search(r"헤더|내용/수량/단가/금액", msg):
            return "해결: 표의 헤더(내용/수량/단가/금액)가 포함되도록 하거나, 제공된 업로드 양식을 사용해 주세요."
        return "해결: 첫 시트에 품목 표가 있는지 확인해 주세요. 가능하면 제공된 업로드 양식을 사용해 주세요."

    return "해결: 지원 형식(.xls, .xlsx, .pdf)인지 확인해 주세요."
