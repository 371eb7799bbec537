#!/usr/bin/env python3
"""TimeDash launcher (Windows/macOS/Linux)"""

from __future__ import annotations

import os
import platform
import subprocess
import sys
import time
from typing import TYPE_CHECKING, cast

import requests
from dotenv import load_dotenv
from utils import (
    API_HOST,
    API_PID_FILE,
    API_PORT,
    LOG_DIR,
    REPO_ROOT,
    error,
    info,
    ok,
    warn,
)

if TYPE_CHECKING:
    from pathlib import Path


HTTP_OK_MIN = 200
HTTP_OK_MAX = 400
CREATE_NEW_PROCESS_GROUP = 0x00000200
DETACHED_PROCESS = 0x00000008


def http_ok(url: str, timeout: float = 2.5) -> bool:
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.RequestException:
        return False
    else:
        status = cast("int", getattr(resp, "status_code", 0))
        return HTTP_OK_MIN <= status < HTTP_OK_MAX


def wait_http(url: str, attempts: int = 30, interval: float = 1.0) -> bool:
    for _ in range(attempts):
        if http_ok(url):
            return True
        time.sleep(interval)
        sys.stdout.write(".")
        sys.stdout.flush()
    sys.stdout.write("\n")
    return http_ok(url)


def background_popen(
    cmd: list[str], stdout_path: Path, stderr_path: Path, env: dict[str, str]
) -> subprocess.Popen:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    with stdout_path.open("ab", buffering=0) as stdout_f, stderr_path.open(
        "ab", buffering=0
    ) as stderr_f:
        creationflags = 0
        start_new_session = False
        if platform.system() == "Windows":
            creationflags = CREATE_NEW_PROCESS_GROUP | DETACHED_PROCESS
        else:
            start_new_session = True

        return subprocess.Popen(  # noqa: S603
            cmd,
            cwd=str(REPO_ROOT),
            stdout=stdout_f,
            stderr=stderr_f,
            env=env,
            creationflags=creationflags,
            start_new_session=start_new_session,
        )


def start_api(env: dict[str, str]) -> int:
    info("Starting TimeDash API (uvicorn)...")
    proc = background_popen(
        [
            sys.executable,
            "-m",
            "uvicorn",
            "timedash.api.main:app",
            "--port",
            str(API_PORT),
            "--host",
            API_HOST,
        ],
        stdout_path=LOG_DIR / "api.log",
        stderr_path=LOG_DIR / "api.err.log",
        env=env,
    )
    API_PID_FILE.write_text(str(proc.pid), encoding="ascii")
    sys.stdout.write("   Waiting for server to respond...\n")
    if wait_http(f"http://{API_HOST}:{API_PORT}/status", attempts=30):
        ok(f"TimeDash API up (PID {proc.pid})")
    else:
        warn("TimeDash API did not respond in time. Check logs under ./log/")
    return proc.pid


def main() -> int:
    os.chdir(REPO_ROOT)
    sys.stdout.write("===============================\n")
    sys.stdout.write(" TimeDash Starting up...\n")
    sys.stdout.write("===============================\n")

    if API_PID_FILE.exists():
        error(f"{API_PID_FILE.name} exists; run scripts/stop.py first")
        return 1

    if load_dotenv(REPO_ROOT / ".env.local"):
        ok("Loaded .env.local")
    else:
        info("No .env.local; using defaults")

    child_env = os.environ.copy()
    child_env["PYTHONPATH"] = str(REPO_ROOT)
    api_pid = start_api(child_env)

    sys.stdout.write("\n")
    sys.stdout.write(f"  - API Server: http://{API_HOST}:{API_PORT}  (PID: {api_pid} )\n")
    sys.stdout.write(
        f"  - Browser bridge: {os.environ.get('TIMEDASH_BRIDGE_URL', 'http://127.0.0.1:5578')}\n"
    )
    sys.stdout.write("\n")
    sys.stdout.write("Logs: ./log/api.log, ./log/timedash.log\n")
    sys.stdout.write("Stop: python scripts/stop.py or python3 scripts/stop.py\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
