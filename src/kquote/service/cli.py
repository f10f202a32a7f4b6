from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from kquote.errors import redact_secrets
from kquote.integrations.openai_extract import OpenAIConfig, list_models
from kquote.service.aggregate import run_batch
from kquote.service.payload import to_doc_payload
from kquote.service.processor import ProcessorOptions, QuoteProcessor
from kquote.utils.config import DEFAULT_CONFIG_NAME, deep_get, load_config
from kquote.utils.env import load_dotenv, resolve_api_key
from kquote.utils.forensic_context import forensic_scope, new_request_id
from kquote.utils.logging_setup import setup_logging
from kquote.utils.paths import resolve_log_dir


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="kquote", description="Extract quotation line items from XLS/XLSX/PDF exports.")
    ap.add_argument("--config", default=None, help=f"YAML config (default: ./{DEFAULT_CONFIG_NAME} when present)")
    sub = ap.add_subparsers(dest="command", required=True)

    ap_ex = sub.add_parser("extract", help="extract items and totals from one or more files")
    ap_ex.add_argument("files", nargs="+", type=Path)
    ap_ex.add_argument("--meta-subject", default=None, help="also print the drafting payload with this subject")
    ap_ex.add_argument("--meta-purpose", default="")
    ap_ex.add_argument("--no-ai", action="store_true", help="heuristic extraction only")
    ap_ex.add_argument("--constrained", action="store_true", help="smaller page chunks and render scale")
    ap_ex.add_argument("--workers", type=int, default=None)
    ap_ex.add_argument("--pretty", action="store_true")

    sub.add_parser("models", help="list models visible to the configured API key")
    return ap


def _config_path(raw: Optional[str]) -> Optional[Path]:
    if raw:
        return Path(raw)
    default = Path.cwd() / DEFAULT_CONFIG_NAME
    return default if default.exists() else None


def _api_key(cfg: Dict[str, Any]) -> str:
    return resolve_api_key(deep_get(cfg, ["openai", "api_key_env"]) or ["KQUOTE_OPENAI_API_KEY", "OPENAI_API_KEY"])


def make_processor(cfg: Dict[str, Any], *, no_ai: bool = False, constrained: bool = False) -> QuoteProcessor:
    ai = None
    if not no_ai and bool(deep_get(cfg, ["openai", "enabled"], True)):
        key = _api_key(cfg)
        if key:
            ai = OpenAIConfig.from_config(cfg, key)
    return QuoteProcessor(ProcessorOptions.from_config(cfg, constrained=constrained), ai=ai)


def _dump(obj: Any, pretty: bool) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2 if pretty else None)


def cmd_extract(args: argparse.Namespace, cfg: Dict[str, Any], log) -> int:
    processor = make_processor(cfg, no_ai=args.no_ai, constrained=args.constrained)
    if processor.ai is None:
        log.info("AI disabled: heuristic extraction only")
    workers = args.workers if args.workers is not None else int(deep_get(cfg, ["batch", "workers"], 1) or 1)
    batch = run_batch(processor, args.files, workers=workers)

    out = batch.to_dict()
    if args.meta_subject is not None and batch.result is not None:
        out["docPayload"] = to_doc_payload(batch.result, {"subject": args.meta_subject, "purpose": args.meta_purpose})
    print(_dump(out, args.pretty))
    return 0 if batch.succeeded else 1


def cmd_models(args: argparse.Namespace, cfg: Dict[str, Any], log) -> int:
    key = _api_key(cfg)
    if not key:
        print("API key not found (KQUOTE_OPENAI_API_KEY / OPENAI_API_KEY).", file=sys.stderr)
        return 1
    base_url = str(deep_get(cfg, ["openai", "base_url"], "") or "https://api.openai.com")
    try:
        ids = list_models(key, base_url=base_url)
    except requests.RequestException as e:
        msg = redact_secrets(str(e), [key])
        log.warning("Model listing failed: %s", msg)
        print(f"Model listing failed: {msg}", file=sys.stderr)
        return 1
    for mid in ids:
        print(mid)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv(Path.cwd() / ".env")
    cfg = load_config(_config_path(args.config))
    log = setup_logging(resolve_log_dir(deep_get(cfg, ["logging", "log_dir"])), name="kquote")

    with forensic_scope(request_id=new_request_id()):
        if args.command == "models":
            return cmd_models(args, cfg, log)
        return cmd_extract(args, cfg, log)


if __name__ == "__main__":
    raise SystemExit(main())
