from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import requests

from kquote.errors import AISchemaError, AITransportError, redact_secrets
from kquote.extract.models import LineItem, RawTable
from kquote.extract.normalize import clamp_string
from kquote.utils.config import deep_get
from kquote.utils.forensic_context import forensic_scope
from kquote.utils.logging_setup import log_event

DEFAULT_BASE_URL = "https://api.openai.com"

# Request bounds: the model does not need the whole export.
MAX_TABLE_ROWS = 220
MAX_TABLE_COLS = 18
MAX_RAW_TEXT = 9000
MAX_INITIAL_ITEMS = 60
MAX_IMAGES = 3
MAX_IMAGE_URL_CHARS = 2_500_000

_MODEL_CACHE_TTL_SEC = 300
_RETRYABLE_HTTP_STATUSES = {408, 409, 429, 500, 502, 503, 504}
_RETRY_BASE_DELAY_SEC = 0.5

# Vision-capable models, best first.
DEFAULT_PREFER_MODELS = [
    "gpt-5.2",
    "gpt-5.1",
    "gpt-5",
    "gpt-4.1",
    "gpt-4o",
    "gpt-4.1-mini",
    "gpt-4o-mini",
]

INSTRUCTIONS = "\n".join(
    [
        "You extract line items from Korean marketplace quotation/order exports (XLS/XLSX/PDF text).",
        "If page images are provided (scanned PDF / image-only tables), use them as the primary source of truth.",
        "If initialItems are provided, treat them as a hint but correct any missing/wrong qty/unitPrice/amount.",
        "Rules:",
        "- Do not invent numbers. If missing, use null.",
        "- Prefer amount; else compute amount=qty*unitPrice when both exist.",
        "- Do NOT include shipping/discount/summary lines in items; put them into shipping/discount/statedTotal.",
        "- Keep items <= 80.",
        "- Currency is KRW unless explicitly stated otherwise.",
    ]
)


@dataclass
class OpenAIConfig:
    api_key: str
    model: str = "auto"
    prefer_models: List[str] = field(default_factory=lambda: list(DEFAULT_PREFER_MODELS))
    base_url: str = DEFAULT_BASE_URL
    timeout_sec: int = 90
    max_output_tokens: int = 8000
    max_retries: int = 2
    temperature: Optional[float] = None

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], api_key: str) -> "OpenAIConfig":
        temp = deep_get(cfg, ["openai", "temperature"])
        return cls(
            api_key=api_key,
            model=str(deep_get(cfg, ["openai", "model"], "auto") or "auto"),
            prefer_models=list(deep_get(cfg, ["openai", "prefer_models"]) or DEFAULT_PREFER_MODELS),
            base_url=str(deep_get(cfg, ["openai", "base_url"], DEFAULT_BASE_URL) or DEFAULT_BASE_URL).rstrip("/"),
            timeout_sec=int(deep_get(cfg, ["openai", "timeout_sec"], 90) or 90),
            max_output_tokens=int(deep_get(cfg, ["openai", "max_output_tokens"], 8000) or 8000),
            max_retries=max(0, int(deep_get(cfg, ["openai", "max_retries"], 2) or 0)),
            temperature=float(temp) if temp is not None else None,
        )


@dataclass
class AIRequest:
    """Bounded context for one extraction call."""

    source: str
    filename: str = ""
    rows: Optional[RawTable] = None
    raw_text: str = ""
    page_images: Sequence[str] = ()
    initial_items: Optional[Sequence[LineItem]] = None


@dataclass(frozen=True)
class AIOk:
    payload: Dict[str, Any]
    model: str = ""


@dataclass(frozen=True)
class AISchemaFailure:
    message: str


@dataclass(frozen=True)
class AITransportFailure:
    message: str
    http_status: Optional[int] = None


AIResult = Union[AIOk, AISchemaFailure, AITransportFailure]


class SchemaInvariantError(ValueError):
    """Schema breaks the invariants required by strict json_schema mode."""


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sha256_json(obj: Any) -> str:
    return _sha256_bytes(_canonical_json(obj).encode("utf-8"))


_NUM_OR_NULL = {"type": ["number", "null"]}

_JSON_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string"},
                    "spec": {"type": "string"},
                    "qty": dict(_NUM_OR_NULL),
                    "unitPrice": dict(_NUM_OR_NULL),
                    "amount": dict(_NUM_OR_NULL),
                    "note": {"type": "string"},
                },
                "required": [],
            },
        },
        "shipping": dict(_NUM_OR_NULL),
        "discount": dict(_NUM_OR_NULL),
        "statedTotal": dict(_NUM_OR_NULL),
    },
    "required": [],
}


def canonicalize_openai_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Canonicalize a schema for strict mode:
    - every object node with properties gets required = all property keys
    - additionalProperties defaults to false
    """

    def _walk(node: Any) -> Any:
        if isinstance(node, dict):
            out = {k: _walk(v) for k, v in node.items()}
            node_type = out.get("type")
            has_object = node_type == "object" or (isinstance(node_type, list) and "object" in node_type)
            props = out.get("properties")
            if has_object and isinstance(props, dict):
                out["required"] = sorted(props.keys())
                if "additionalProperties" not in out:
                    out["additionalProperties"] = False
            return out
        if isinstance(node, list):
            return [_walk(item) for item in node]
        return node

    return _walk(schema)


def validate_schema_invariants_or_raise(schema: Dict[str, Any], *, log: logging.Logger | None = None) -> None:
    """Fail fast when an object node does not require all of its properties."""

    def _walk(node: Any, path: str) -> None:
        if isinstance(node, dict):
            node_type = node.get("type")
            has_object = node_type == "object" or (isinstance(node_type, list) and "object" in node_type)
            props = node.get("properties")
            if has_object and isinstance(props, dict):
                required = node.get("required")
                if not isinstance(required, list):
                    if log:
                        log.error("Schema invariant broken: required is not a list", extra={"schema_path": path})
                    raise SchemaInvariantError(f"{path}: required must be list")
                missing = sorted(key for key in props.keys() if key not in required)
                if missing:
                    if log:
                        log.error(
                            "Schema invariant broken: required misses properties",
                            extra={"schema_path": path, "missing_required_keys": missing},
                        )
                    raise SchemaInvariantError(f"{path}: missing required keys {missing}")
            for key, value in node.items():
                _walk(value, f"{path}.{key}")
        elif isinstance(node, list):
            for idx, value in enumerate(node):
                _walk(value, f"{path}[{idx}]")

    _walk(schema, "$")


OPENAI_JSON_SCHEMA: Dict[str, Any] = canonicalize_openai_schema(_JSON_SCHEMA)
JSON_SCHEMA_HASH = _sha256_json(OPENAI_JSON_SCHEMA)


def build_text_format() -> Dict[str, Any]:
    validate_schema_invariants_or_raise(OPENAI_JSON_SCHEMA)
    return {
        "type": "json_schema",
        "name": "extract_items",
        "description": "Extract estimate line items and totals as strict JSON.",
        "schema": OPENAI_JSON_SCHEMA,
        "strict": True,
    }


def _validate_type(value: Any, expected) -> bool:
    if isinstance(expected, list):
        return any(_validate_type(value, e) for e in expected)
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, list)
    if expected == "null":
        return value is None
    return False


def validate_against_schema(obj: Any, schema: Dict[str, Any], path: str = "") -> List[str]:
    """Small structural validator covering the subset of JSON Schema used above."""
    errors: List[str] = []
    typ = schema.get("type")
    if typ and not _validate_type(obj, typ):
        errors.append(f"{path or '$'}: type")
        return errors

    props = schema.get("properties", {}) if isinstance(schema, dict) else {}
    required = schema.get("required", []) if isinstance(schema, dict) else []

    if isinstance(obj, dict):
        additional = schema.get("additionalProperties", True)
        for k, v in obj.items():
            child_path = f"{path}.{k}" if path else k
            if k in props:
                errors.extend(validate_against_schema(v, props[k], child_path))
            elif additional is False:
                errors.append(f"{child_path}: additionalProperties")
        for req in required:
            if req not in obj:
                errors.append(f"{path or '$'}: missing {req}")
    elif isinstance(obj, list):
        item_schema = schema.get("items")
        if item_schema:
            for idx, itm in enumerate(obj):
                errors.extend(validate_against_schema(itm, item_schema, f"{path}[{idx}]"))
    return errors


def normalize_page_images(images: Optional[Sequence[Any]]) -> List[str]:
    """Keep at most MAX_IMAGES data:image/ URLs, skipping oversized ones."""
    out: List[str] = []
    for x in images or []:
        if not isinstance(x, str):
            continue
        s = x.strip()
        if not s.startswith("data:image/"):
            continue
        if len(s) > MAX_IMAGE_URL_CHARS:
            continue
        out.append(s)
        if len(out) >= MAX_IMAGES:
            break
    return out


def bounded_context(req: AIRequest, images: Sequence[str]) -> Dict[str, Any]:
    rows = None
    if req.rows is not None:
        rows = [[clamp_string(c) for c in list(r)[:MAX_TABLE_COLS]] for r in list(req.rows)[:MAX_TABLE_ROWS]]
    initial = None
    if req.initial_items:
        initial = [it.to_dict() for it in list(req.initial_items)[:MAX_INITIAL_ITEMS]]
    return {
        "source": clamp_string(req.source, 40),
        "filename": clamp_string(req.filename, 120),
        "rows": rows,
        "rawText": clamp_string(req.raw_text, MAX_RAW_TEXT),
        # images travel as separate multimodal parts
        "pageImages": {"count": len(images)} if images else None,
        "initialItems": initial,
    }


def build_payload(cfg: OpenAIConfig, model: str, req: AIRequest) -> Dict[str, Any]:
    images = normalize_page_images(req.page_images)
    content: List[Dict[str, Any]] = [
        {"type": "input_text", "text": json.dumps(bounded_context(req, images), ensure_ascii=False)}
    ]
    for url in images:
        content.append({"type": "input_image", "image_url": url})
    payload: Dict[str, Any] = {
        "model": model,
        "instructions": INSTRUCTIONS,
        "input": [{"role": "user", "content": content}],
        "text": {"format": build_text_format()},
        "max_output_tokens": int(cfg.max_output_tokens or 8000),
    }
    if cfg.temperature is not None:
        payload["temperature"] = float(cfg.temperature)
    return payload


def list_models(api_key: str, *, base_url: str = DEFAULT_BASE_URL, timeout: int = 20) -> List[str]:
    r = requests.get(
        f"{base_url.rstrip('/')}/v1/models",
        headers={"Authorization": f"Bearer {api_key}"},
        timeout=timeout,
    )
    r.raise_for_status()
    data = r.json()
    ids = [m.get("id") for m in data.get("data", []) if isinstance(m, dict)]
    return sorted(i for i in ids if isinstance(i, str))


@dataclass
class _CachedModels:
    ts: float
    ids: List[str]


# Keyed by (base_url, sha256(api_key)); entries expire after the TTL.
_MODEL_CACHE: Dict[Tuple[str, str], _CachedModels] = {}
_MODEL_CACHE_LOCK = threading.Lock()


def _cache_key(api_key: str, base_url: str) -> Tuple[str, str]:
    return base_url.rstrip("/"), _sha256_bytes(api_key.encode("utf-8"))


def list_models_cached(api_key: str, *, base_url: str = DEFAULT_BASE_URL) -> List[str]:
    key = _cache_key(api_key, base_url)
    now = time.time()
    with _MODEL_CACHE_LOCK:
        hit = _MODEL_CACHE.get(key)
        if hit and hit.ids and now - hit.ts < _MODEL_CACHE_TTL_SEC:
            return list(hit.ids)
    ids = list_models(api_key, base_url=base_url)
    with _MODEL_CACHE_LOCK:
        _MODEL_CACHE[key] = _CachedModels(ts=now, ids=list(ids))
    return ids


def clear_model_cache() -> None:
    with _MODEL_CACHE_LOCK:
        _MODEL_CACHE.clear()


def resolve_model(cfg: OpenAIConfig, *, log: logging.Logger | None = None) -> str:
    model = str(cfg.model or "").strip()
    if model and model.lower() != "auto":
        return model
    prefer = list(cfg.prefer_models or DEFAULT_PREFER_MODELS)
    try:
        ids = list_models_cached(cfg.api_key, base_url=cfg.base_url)
        for cand in prefer:
            if cand in ids:
                return cand
    except requests.RequestException as e:
        if log:
            log.warning("Model listing failed, using first preferred model: %s", redact_secrets(str(e), [cfg.api_key]))
    return prefer[0]


def _attachments_meta(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for part in payload.get("input", [{}])[0].get("content", []):
        if part.get("type") != "input_image":
            continue
        url = part.get("image_url") or ""
        meta: Dict[str, Any] = {"mime": None, "size_bytes": None, "content_hash": None}
        if url.startswith("data:") and ";base64," in url:
            meta["mime"] = url.split("data:", 1)[1].split(";")[0]
            try:
                raw = base64.b64decode(url.split(";base64,", 1)[1], validate=False)
                meta["size_bytes"] = len(raw)
                meta["content_hash"] = _sha256_bytes(raw)
            except ValueError:
                pass
        out.append(meta)
    return out


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "")[:180]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message") or "")
    return ""


def _post_responses(
    cfg: OpenAIConfig,
    payload: Dict[str, Any],
    *,
    log: logging.Logger,
    attempt: int,
) -> Tuple[requests.Response, float, str]:
    """One POST to /v1/responses. Logs ai.request and ai.error; never logs the body itself."""
    req_id_client = str(uuid.uuid4())
    body_hash = _sha256_bytes(_canonical_json(payload).encode("utf-8"))
    prompt_text = payload["input"][0]["content"][0].get("text", "")
    url = f"{cfg.base_url.rstrip('/')}/v1/responses"

    with forensic_scope(ai_request_id_client=req_id_client, attempt=attempt):
        log_event(
            log,
            "ai.request",
            "AI extraction request",
            endpoint="/v1/responses",
            base_url=cfg.base_url,
            timeout_sec=cfg.timeout_sec,
            model=payload.get("model"),
            schema_hash=JSON_SCHEMA_HASH,
            prompt_hash=_sha256_bytes(prompt_text.encode("utf-8")),
            prompt_length=len(prompt_text),
            attachments=_attachments_meta(payload),
            request_body_hash=body_hash,
        )
        start = time.perf_counter()
        try:
            r = requests.post(
                url,
                headers={"Authorization": f"Bearer {cfg.api_key}", "Content-Type": "application/json"},
                json=payload,
                timeout=cfg.timeout_sec,
            )
        except requests.RequestException as exc:
            log_event(
                log,
                "ai.error",
                "AI request exception",
                latency_ms=int((time.perf_counter() - start) * 1000.0),
                retryable=True,
                safe_excerpt=redact_secrets(str(exc), [cfg.api_key])[:500],
            )
            raise
        latency_ms = (time.perf_counter() - start) * 1000.0
        if r.status_code >= 400:
            raw = r.content or b""
            log_event(
                log,
                "ai.error",
                "AI HTTP error",
                http_status=r.status_code,
                latency_ms=int(latency_ms),
                response_body_hash=_sha256_bytes(raw) if raw else None,
                retryable=r.status_code in _RETRYABLE_HTTP_STATUSES,
                safe_excerpt=redact_secrets(_error_message(r), [cfg.api_key])[:500],
                openai_request_id=r.headers.get("x-request-id"),
            )
        return r, latency_ms, req_id_client


def _post_with_retry(
    cfg: OpenAIConfig,
    payload: Dict[str, Any],
    *,
    log: logging.Logger,
) -> Tuple[requests.Response, float, int]:
    """Retry transport exceptions and 408/409/429/5xx with exponential backoff."""
    attempt = 1
    while True:
        try:
            resp, latency_ms, _ = _post_responses(cfg, payload, log=log, attempt=attempt)
        except requests.RequestException:
            if attempt - 1 >= cfg.max_retries:
                raise
            reason = "request_exception"
        else:
            if resp.status_code not in _RETRYABLE_HTTP_STATUSES or attempt - 1 >= cfg.max_retries:
                return resp, latency_ms, attempt
            reason = f"http_{resp.status_code}"
        backoff = _RETRY_BASE_DELAY_SEC * (2 ** (attempt - 1))
        log_event(
            log,
            "ai.retry",
            "AI retry",
            attempt_from=attempt,
            attempt_to=attempt + 1,
            reason=reason,
            backoff_ms=int(backoff * 1000),
        )
        time.sleep(backoff)
        attempt += 1


def extract_output_text(data: Dict[str, Any]) -> str:
    """output_text shortcut, else the concatenated output_text parts of output[]."""
    direct = data.get("output_text")
    if isinstance(direct, str) and direct:
        return direct
    parts: List[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict):
            continue
        for c in item.get("content") or []:
            if isinstance(c, dict) and c.get("type") == "output_text" and c.get("text"):
                parts.append(str(c["text"]))
    return "\n".join(parts)


def parse_response_body(data: Any, *, log: logging.Logger) -> AIResult:
    """Validate a decoded response body before any field of it is used."""
    if not isinstance(data, dict):
        return AISchemaFailure("OpenAI 응답이 객체가 아닙니다.")
    text = extract_output_text(data)
    if not text:
        log_event(log, "structured_output.parse", "Structured output parse", status="fail", error="empty_content")
        return AISchemaFailure("OpenAI 응답 content가 비어 있습니다.")
    try:
        obj = json.loads(text)
    except ValueError as e:
        log_event(log, "structured_output.parse", "Structured output parse", status="fail", length=len(text), error=str(e))
        return AISchemaFailure("OpenAI가 JSON이 아닌 내용을 반환했습니다.")
    log_event(log, "structured_output.parse", "Structured output parse", status="ok", length=len(text))

    errors = validate_against_schema(obj, OPENAI_JSON_SCHEMA)
    log_event(
        log,
        "structured_output.validate",
        "Structured output validate",
        status="pass" if not errors else "fail",
        invalid_paths=errors[:50],
    )
    if errors:
        return AISchemaFailure("OpenAI 응답이 스키마와 맞지 않습니다: " + ", ".join(errors[:5]))
    return AIOk(payload=obj)


def request_extraction(cfg: OpenAIConfig, req: AIRequest) -> AIResult:
    """One AI extraction call; failures come back as tagged values, not exceptions."""
    log = logging.getLogger(__name__)
    model = resolve_model(cfg, log=log)
    payload = build_payload(cfg, model, req)
    secrets = [cfg.api_key]

    try:
        resp, latency_ms, attempt = _post_with_retry(cfg, payload, log=log)
    except requests.RequestException as e:
        return AITransportFailure(redact_secrets(f"OpenAI 요청 실패: {type(e).__name__}: {e}", secrets))

    if resp.status_code >= 400:
        msg = _error_message(resp) or f"OpenAI HTTP {resp.status_code}"
        return AITransportFailure(redact_secrets(f"OpenAI HTTP {resp.status_code}: {msg}", secrets), resp.status_code)

    try:
        data = resp.json()
    except ValueError:
        excerpt = (resp.text or "")[:180]
        return AISchemaFailure(redact_secrets(f"OpenAI 응답 파싱 실패: {excerpt}", secrets))

    result = parse_response_body(data, log=log)
    log_event(
        log,
        "ai.response",
        "AI response",
        http_status=resp.status_code,
        latency_ms=int(latency_ms),
        attempts=attempt,
        model=model,
        ok=isinstance(result, AIOk),
        usage=data.get("usage") if isinstance(data, dict) else None,
        openai_request_id=resp.headers.get("x-request-id"),
    )
    if isinstance(result, AIOk):
        return AIOk(payload=result.payload, model=model)
    if isinstance(result, AISchemaFailure):
        return AISchemaFailure(redact_secrets(result.message, secrets))
    return result


def call_or_raise(
    cfg: OpenAIConfig,
    req: AIRequest,
    *,
    request_fn: Callable[[OpenAIConfig, AIRequest], AIResult] = request_extraction,
) -> Dict[str, Any]:
    result = request_fn(cfg, req)
    if isinstance(result, AIOk):
        return result.payload
    if isinstance(result, AISchemaFailure):
        raise AISchemaError(result.message)
    raise AITransportError(result.message)
