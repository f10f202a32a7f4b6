from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict

import yaml


DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "openai": {
        "enabled": True,
        "api_key_env": ["KQUOTE_OPENAI_API_KEY", "OPENAI_API_KEY"],
        "base_url": "https://api.openai.com",
        "model": "auto",
        # "auto" picks the first of these that the account can see
        "prefer_models": ["gpt-5.2", "gpt-5.1", "gpt-5", "gpt-4.1", "gpt-4o", "gpt-4.1-mini", "gpt-4o-mini"],
        "temperature": None,
        "timeout_sec": 90,
        "max_output_tokens": 8000,
        "max_retries": 2,
    },
    "extraction": {
        "max_scan_rows": 60,
        "spreadsheet_scan_rows": 400,
        "header_mode": "strict",
        "refine_miss_all_ratio": 0.25,
        "refine_miss_amount_ratio": 0.55,
    },
    "pdf": {
        "text_floor": 80,
        "chunk_size": 4,
        "constrained_chunk_size": 2,
        "scale": 1.15,
        "constrained_scale": 1.0,
        "quality": 72,
        "max_image_chars": 2_400_000,
    },
    "batch": {
        "workers": 1,
    },
    "logging": {
        "log_dir": None,
    },
}


def load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def merge_defaults(cfg: Dict[str, Any], defaults: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Deep-merge cfg over defaults; the inputs are not modified."""
    out = copy.deepcopy(defaults if defaults is not None else DEFAULT_CONFIG)
    for key, value in (cfg or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = merge_defaults(value, out[key])
        else:
            out[key] = copy.deepcopy(value)
    return out


def load_config(path: Path | None) -> Dict[str, Any]:
    return merge_defaults(load_yaml(path) if path else {})


def deep_get(d: Dict[str, Any], keys: list[str], default: Any = None) -> Any:
    cur: Any = d
    for k in keys:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur
