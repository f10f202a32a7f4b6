from __future__ import annotations

import json

import pytest

from kquote.service.cli import build_parser, main, make_processor
from kquote.utils.config import load_config

HEADER = ["상품명", "규격", "수량", "단가", "금액"]


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("KQUOTE_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("KQUOTE_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return tmp_path


def test_extract_prints_batch_and_doc_payload(cli_env, make_xlsx, capsys) -> None:
    path = make_xlsx([HEADER, ["키보드", "기계식", 2, 10000, 20000], ["배송비", "", "", "", 3000]])
    rc = main(["extract", str(path), "--meta-subject", "사무용품 구매"])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["failed"] == []
    assert out["result"]["total"] == 23000
    assert out["docPayload"]["meta"]["subject"] == "사무용품 구매"
    assert out["docPayload"]["quote"]["total"] == 23000


def test_extract_all_failed_returns_one(cli_env, capsys) -> None:
    rc = main(["extract", str(cli_env / "missing.xlsx")])
    assert rc == 1
    out = json.loads(capsys.readouterr().out)
    assert out["result"] is None
    assert out["failed"][0]["errorType"] == "io_error"


def test_models_without_key(cli_env, capsys) -> None:
    assert main(["models"]) == 1
    assert "API key not found" in capsys.readouterr().err


def test_config_file_in_working_directory(cli_env) -> None:
    (cli_env / "config.yaml").write_text("openai:\n  enabled: false\n", encoding="utf-8")
    args = build_parser().parse_args(["extract", "a.xlsx", "--no-ai", "--constrained"])
    assert args.no_ai and args.constrained
    cfg = load_config(cli_env / "config.yaml")
    assert make_processor(cfg).ai is None


def test_key_enables_ai(cli_env, monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-0123456789abcdefghijklmn")
    cfg = load_config(None)
    assert make_processor(cfg).ai is not None
    assert make_processor(cfg, no_ai=True).ai is None
