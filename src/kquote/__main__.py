"""Entry point for `python -m kquote`."""

from __future__ import annotations

from kquote.service.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
