from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Dict, Iterable


def load_dotenv(path: Path) -> Dict[str, str]:
    """
    Load KEY=VALUE lines from a .env file into os.environ.
    Variables already set in the environment win. Returns the keys that were applied.
    """
    loaded: Dict[str, str] = {}
    if not path.exists():
        return loaded
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line or line.lstrip().startswith("#") or "=" not in line:
            continue
        k, v = line.split("=", 1)
        k = k.strip()
        v = v.strip().strip("\"'")
        if not k or k in os.environ:
            continue
        os.environ[k] = v
        loaded[k] = v
    return loaded


def sanitize_openai_api_key(raw: str | None) -> str:
    """
    Return the most plausible OpenAI API key found in arbitrary text.

    Handles pasted values with quotes, a "Bearer " prefix or several lines.
    """
    if raw is None:
        return ""
    s = str(raw).strip().strip("\"'").strip()
    if s.lower().startswith("bearer "):
        s = s[7:].strip()

    m = re.search(r"(sk-[A-Za-z0-9_-]{20,})", s)
    if m:
        return m.group(1)
    one = s.splitlines()[0].strip() if s else ""
    if one.startswith("sk-") and len(one) >= 24:
        return one
    return ""


def resolve_api_key(env_names: Iterable[str] | str) -> str:
    names = [env_names] if isinstance(env_names, str) else list(env_names or [])
    for name in names:
        key = sanitize_openai_api_key(os.environ.get(name))
        if key:
            return key
    return ""
