from __future__ import annotations

import os
from pathlib import Path

APP_NAME = "kquote"


def default_log_dir() -> Path:
    base = os.environ.get("KQUOTE_LOG_DIR")
    if base:
        return Path(base)
    state = os.environ.get("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return Path(state) / APP_NAME / "logs"


def resolve_log_dir(log_dir: str | None) -> Path:
    ld = Path(log_dir) if log_dir else default_log_dir()
    ld.mkdir(parents=True, exist_ok=True)
    return ld
