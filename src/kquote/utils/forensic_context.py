from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator

# Per-thread / per-task context attached to every log record.
request_id_var = contextvars.ContextVar("request_id", default=None)
filename_var = contextvars.ContextVar("filename", default=None)
file_sha256_var = contextvars.ContextVar("file_sha256", default=None)
source_var = contextvars.ContextVar("source", default=None)
phase_var = contextvars.ContextVar("phase", default=None)
chunk_var = contextvars.ContextVar("chunk", default=None)
attempt_var = contextvars.ContextVar("attempt", default=None)
mode_var = contextvars.ContextVar("mode", default=None)
ai_request_id_client_var = contextvars.ContextVar("ai_request_id_client", default=None)

_VARS: Dict[str, contextvars.ContextVar] = {
    "request_id": request_id_var,
    "filename": filename_var,
    "file_sha256": file_sha256_var,
    "source": source_var,
    "phase": phase_var,
    "chunk": chunk_var,
    "attempt": attempt_var,
    "mode": mode_var,
    "ai_request_id_client": ai_request_id_client_var,
}


def new_request_id() -> str:
    return str(uuid.uuid4())


def get_forensic_fields() -> Dict[str, Any]:
    """Snapshot of all context fields as a dict."""
    return {name: var.get() for name, var in _VARS.items()}


@contextmanager
def forensic_scope(**fields: Any) -> Iterator[None]:
    """
    Temporarily set selected context fields; previous values are restored on exit.
    Unknown field names are ignored.
    """
    tokens: Dict[str, contextvars.Token] = {}
    try:
        for name, value in fields.items():
            var = _VARS.get(name)
            if var is not None:
                tokens[name] = var.set(value)
        yield
    finally:
        for name, tok in tokens.items():
            try:
                _VARS[name].reset(tok)
            except ValueError:
                # token created in another context (e.g. a worker thread)
                pass
