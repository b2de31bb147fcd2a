#!/usr/bin/env python3
"""
Container entrypoint: release phase, then gunicorn.

    python scripts/start.py

PORT (default 8080) and WEB_CONCURRENCY (default 2) come from the environment.
gunicorn replaces this process via os.execvp so it receives signals directly.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        print(f"ERROR: {name}={raw!r} is not an integer.", flush=True)
        sys.exit(1)
    if not lo <= value <= hi:
        print(f"ERROR: {name}={value} out of range {lo}-{hi}.", flush=True)
        sys.exit(1)
    return value


def main() -> None:
    port = _int_env("PORT", 8080, lo=1, hi=65535)
    workers = _int_env("WEB_CONCURRENCY", 2, lo=1, hi=32)

    print("=== Running release phase ===", flush=True)
    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    print(f"=== Starting gunicorn on 0.0.0.0:{port} ({workers} workers) ===", flush=True)
    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "app.wsgi:app",
            "--bind", f"0.0.0.0:{port}",
            "--workers", str(workers),
            "--timeout", "60",
            "--preload",
            "--access-logfile", "-",
            "--error-logfile", "-",
        ],
    )


if __name__ == "__main__":
    main()
