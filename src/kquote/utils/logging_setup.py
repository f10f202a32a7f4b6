from __future__ import annotations

import json
import logging
import os
import platform
import socket
import sys
import threading
import traceback
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict

from kquote.utils.forensic_context import get_forensic_fields

_FALSE_VALUES = {"0", "false", "False", "FALSE", "no", "NO"}
_TRUE_VALUES = {"1", "true", "TRUE", "yes", "YES"}


class LineCappedFileHandler(logging.Handler):
    """
    Single log file with "ring buffer" behavior:
    - appends normally
    - once it grows beyond max_lines (+ small chunk), it truncates to last max_lines
    """

    def __init__(
        self,
        filename: Path,
        *,
        max_lines: int = 5000,
        encoding: str = "utf-8",
    ):
        super().__init__()
        self._filename = Path(filename)
        self._encoding = encoding
        self.max_lines = int(max_lines)
        # trim every N extra lines to avoid rewriting on every emit
        self._trim_chunk = max(10, self.max_lines // 100)
        self._mtx = threading.RLock()
        self._stream = None
        self._line_count = 0
        self._open_and_count()

    def _open_and_count(self) -> None:
        self._filename.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self._filename, "r", encoding=self._encoding, errors="ignore") as rf:
                self._line_count = sum(1 for _ in rf)
        except FileNotFoundError:
            self._line_count = 0
        # tolerant errors so a log write never crashes extraction
        self._stream = open(self._filename, "a", encoding=self._encoding, errors="backslashreplace")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if not msg.endswith("\n"):
                msg += "\n"
            with self._mtx:
                if self._stream is None:
                    self._open_and_count()
                assert self._stream is not None
                self._stream.write(msg)
                self._stream.flush()
                self._line_count += msg.count("\n")
                if self._line_count >= (self.max_lines + self._trim_chunk):
                    self._trim_to_last_max_lines()
        except Exception:
            self.handleError(record)

    def _trim_to_last_max_lines(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        try:
            tail: deque[str] = deque(maxlen=self.max_lines)
            try:
                with open(self._filename, "r", encoding=self._encoding, errors="ignore") as rf:
                    tail.extend(rf)
            except FileNotFoundError:
                pass
            with open(self._filename, "w", encoding=self._encoding, errors="backslashreplace") as wf:
                wf.writelines(tail)
            self._line_count = len(tail)
        finally:
            self._stream = open(self._filename, "a", encoding=self._encoding, errors="backslashreplace")

    def close(self) -> None:
        with self._mtx:
            if self._stream is not None:
                try:
                    self._stream.close()
                except OSError:
                    pass
            self._stream = None
        super().close()


_ROOT_CONFIGURED = False
_ROOT_CONFIG_LOCK = threading.Lock()
_HOOKS_INSTALLED = False


class ForensicContextFilter(logging.Filter):
    """Attach host/runtime metadata and the current forensic context to each record."""

    def __init__(self) -> None:
        super().__init__()
        self._hostname = socket.gethostname()
        self._platform = platform.platform(terse=True)
        self._python = sys.version.split()[0]

    def filter(self, record: logging.LogRecord) -> bool:
        record.hostname = self._hostname
        record.platform = self._platform
        record.python = self._python
        record.forensic = get_forensic_fields()
        return True


class JsonLineFormatter(logging.Formatter):
    """Serialize a log record as one JSON line for machine reading."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "line": record.lineno,
            "process": record.process,
            "threadName": record.threadName,
            "hostname": getattr(record, "hostname", None),
            "platform": getattr(record, "platform", None),
            "python": getattr(record, "python", None),
            "event_name": getattr(record, "event_name", None),
        }

        payload["forensic"] = getattr(record, "forensic", None) or get_forensic_fields()

        extra_obj = getattr(record, "extra_payload", None)
        if extra_obj:
            payload["extra"] = extra_obj

        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


def _install_runtime_hooks(log: logging.Logger) -> None:
    global _HOOKS_INSTALLED
    if _HOOKS_INSTALLED:
        return
    _HOOKS_INSTALLED = True

    def _sys_excepthook(exc_type, exc, tb):
        log.critical("Uncaught exception", exc_info=(exc_type, exc, tb))

    sys.excepthook = _sys_excepthook
    logging.captureWarnings(True)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _compute_max_lines() -> int:
    """
    max_lines by priority:
    1) KQUOTE_LOG_MAX_LINES
    2) KQUOTE_LOG_RETENTION_DAYS * KQUOTE_LOG_LINES_PER_DAY_ESTIMATE
    """
    env_max = _env_int("KQUOTE_LOG_MAX_LINES", 0)
    if env_max > 0:
        return env_max
    retention_days = _env_int("KQUOTE_LOG_RETENTION_DAYS", 7)
    lines_per_day = _env_int("KQUOTE_LOG_LINES_PER_DAY_ESTIMATE", 20000)
    return max(1000, retention_days * lines_per_day)


def _detail_enabled_from_env() -> bool:
    return str(os.environ.get("KQUOTE_LOG_DETAIL", "1")).strip() not in _FALSE_VALUES


def setup_logging(log_dir: Path, name: str = "kquote") -> logging.Logger:
    """
    Configure the root logger once:
      <log_dir>/kquote.log             human readable, line capped
      <log_dir>/kquote_forensic.jsonl  JSON lines with event payloads

    Console output is off by default; enable with KQUOTE_LOG_CONSOLE=1.
    """
    global _ROOT_CONFIGURED

    log_dir.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    max_lines = _compute_max_lines()
    detail = _detail_enabled_from_env()

    with _ROOT_CONFIG_LOCK:
        if not _ROOT_CONFIGURED:
            root = logging.getLogger()
            root.setLevel(logging.DEBUG)

            fmt = logging.Formatter(
                "%(asctime)s.%(msecs)03d %(levelname)s "
                "pid=%(process)d tid=%(threadName)s "
                "[%(name)s:%(funcName)s:%(lineno)d] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
            forensic_filter = ForensicContextFilter()

            fh = LineCappedFileHandler(log_dir / "kquote.log", max_lines=max_lines)
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(fmt)
            fh.addFilter(forensic_filter)
            root.addHandler(fh)

            fh_json = LineCappedFileHandler(log_dir / "kquote_forensic.jsonl", max_lines=max_lines * 2)
            fh_json.setLevel(logging.DEBUG)
            fh_json.setFormatter(JsonLineFormatter())
            fh_json.addFilter(forensic_filter)
            root.addHandler(fh_json)

            if os.environ.get("KQUOTE_LOG_CONSOLE", "").strip() in _TRUE_VALUES:
                ch = logging.StreamHandler()
                ch.setLevel(logging.INFO)
                ch.setFormatter(fmt)
                ch.addFilter(forensic_filter)
                root.addHandler(ch)

            setattr(root, "_kquote_log_detail", detail)
            _ROOT_CONFIGURED = True

    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    _install_runtime_hooks(logger)
    logger.info(
        "Logging initialized: log_dir=%s pid=%s max_lines=%s detail=%s",
        log_dir,
        os.getpid(),
        max_lines,
        int(detail),
        extra={
            "event_name": "logging.start",
            "extra_payload": {"max_lines": max_lines, "detail": int(detail)},
        },
    )
    return logger


def log_event(logger: logging.Logger, event_name: str, message: str, **extra: Any) -> None:
    """
    Structured logging helper:
    - sets event_name and extra_payload on the record
    - appends a readable key=value suffix to the text message
    """
    extra_payload: Dict[str, Any] = extra or {}
    detail_enabled = bool(getattr(logging.getLogger(), "_kquote_log_detail", True))

    if not detail_enabled:
        extra_payload = {k: v for k, v in extra_payload.items() if len(repr(v)) <= 400}

    suffix = ""
    if extra_payload:
        suffix = " | " + " ".join(f"{k}={extra_payload[k]!r}" for k in sorted(extra_payload))
    logger.info(
        f"{message}{suffix}",
        extra={
            "event_name": event_name,
            "extra_payload": extra_payload,
            "forensic": get_forensic_fields(),
        },
    )
