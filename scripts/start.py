#!/usr/bin/env python3
"""
Container entrypoint: run the release phase, then exec gunicorn on $PORT.

Usage:
    PORT=8080 WEB_CONCURRENCY=2 python scripts/start.py
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

DEFAULT_PORT = 8080


def _port() -> int:
    raw = (os.environ.get("PORT") or "").strip()
    if not raw:
        print(f"PORT not set; using {DEFAULT_PORT}", flush=True)
        return DEFAULT_PORT
    if not raw.isdigit() or not 1 <= int(raw) <= 65535:
        print(f"ERROR: PORT must be an integer in 1-65535, got {raw!r}", flush=True)
        sys.exit(1)
    return int(raw)


def gunicorn_argv(port: int, workers: str) -> list[str]:
    # --preload imports the app once; create_app disposes the engine in each forked worker.
    return [
        "gunicorn",
        "app.wsgi:app",
        f"--bind=0.0.0.0:{port}",
        f"--workers={workers}",
        "--timeout=60",
        "--preload",
        "--access-logfile=-",
        "--error-logfile=-",
    ]


def main() -> None:
    port = _port()
    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed, not starting the web server: {e}", flush=True)
        sys.exit(1)

    workers = (os.environ.get("WEB_CONCURRENCY") or "2").strip()
    argv = gunicorn_argv(port, workers)
    print("Starting " + " ".join(argv), flush=True)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
