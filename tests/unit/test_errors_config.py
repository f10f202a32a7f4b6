from __future__ import annotations

import os

from kquote.errors import (
    HeaderNotFound,
    NoItemsExtracted,
    PayloadTooLarge,
    UnsupportedFormat,
    redact_secrets,
    suggest_fix,
)
from kquote.utils.config import DEFAULT_CONFIG, deep_get, load_config, merge_defaults
from kquote.utils.env import load_dotenv, resolve_api_key, sanitize_openai_api_key
from kquote.utils.paths import resolve_log_dir

KEY = "sk-proj-abcdefghijklmnopqrstuvwxyz012345"


def test_redact_secrets() -> None:
    text = f"failed with Authorization: Bearer {KEY} and key={KEY}"
    out = redact_secrets(text, [KEY])
    assert KEY not in out
    assert "Bearer ***" in out
    assert redact_secrets("sk-live_ABCDEFGH leaked") == "sk-*** leaked"


def test_hints_are_format_specific() -> None:
    assert "헤더" in suggest_fix("q.xlsx", HeaderNotFound("x"))
    assert "양식" in suggest_fix("q.xls", RuntimeError("x"))
    assert "암호" in suggest_fix("q.pdf", "암호로 보호된 PDF입니다")
    assert "300dpi" in suggest_fix("q.pdf", NoItemsExtracted("품목을 찾지 못했습니다."))
    assert "해상도" in suggest_fix("q.pdf", PayloadTooLarge("big"))
    assert ".xls, .xlsx, .pdf" in suggest_fix("q.doc", UnsupportedFormat("x"))


def test_config_merge_keeps_defaults(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("openai:\n  model: gpt-4.1\npdf:\n  chunk_size: 2\n", encoding="utf-8")
    cfg = load_config(path)
    assert deep_get(cfg, ["openai", "model"]) == "gpt-4.1"
    assert deep_get(cfg, ["openai", "timeout_sec"]) == 90
    assert deep_get(cfg, ["pdf", "chunk_size"]) == 2
    assert deep_get(cfg, ["pdf", "text_floor"]) == 80
    assert DEFAULT_CONFIG["openai"]["model"] == "auto"


def test_missing_config_file_gives_defaults(tmp_path) -> None:
    assert load_config(tmp_path / "nope.yaml") == merge_defaults({})
    assert load_config(None)["extraction"]["header_mode"] == "strict"
    assert deep_get({"a": 1}, ["a", "b"], "d") == "d"


def test_dotenv_does_not_override_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("KQUOTE_EXISTING", "keep")
    monkeypatch.delenv("KQUOTE_FROM_FILE", raising=False)
    env = tmp_path / ".env"
    env.write_text("# comment\nKQUOTE_EXISTING=replaced\nKQUOTE_FROM_FILE=\"value\"\n", encoding="utf-8")
    loaded = load_dotenv(env)
    try:
        assert loaded == {"KQUOTE_FROM_FILE": "value"}
        assert os.environ["KQUOTE_EXISTING"] == "keep"
    finally:
        os.environ.pop("KQUOTE_FROM_FILE", None)


def test_api_key_sanitizing(monkeypatch) -> None:
    assert sanitize_openai_api_key(f'  "Bearer {KEY}"  ') == KEY
    assert sanitize_openai_api_key("not a key") == ""
    assert sanitize_openai_api_key(None) == ""

    monkeypatch.setenv("KQUOTE_OPENAI_API_KEY", "garbage")
    monkeypatch.setenv("OPENAI_API_KEY", KEY)
    assert resolve_api_key(["KQUOTE_OPENAI_API_KEY", "OPENAI_API_KEY"]) == KEY


def test_log_dir_env_override(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("KQUOTE_LOG_DIR", str(tmp_path / "logs"))
    assert resolve_log_dir(None) == tmp_path / "logs"
    assert (tmp_path / "logs").is_dir()
    assert resolve_log_dir(str(tmp_path / "explicit")) == tmp_path / "explicit"
