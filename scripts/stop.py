#!/usr/bin/env python3
import contextlib
import os
from pathlib import Path

import psutil
from utils import API_PID_FILE, REPO_ROOT, info, ok, warn

STOP_TIMEOUT = 10


def stop_by_pid_file(path: Path) -> bool:
    if not path.exists():
        info(f"{path.name} not found; nothing to stop")
        return False
    pid = int(path.read_text(encoding="ascii"))
    try:
        proc = psutil.Process(pid)
        proc.terminate()
        proc.wait(timeout=STOP_TIMEOUT)
    except psutil.NoSuchProcess:
        info(f"PID {pid} already stopped")
    except psutil.TimeoutExpired:
        warn(f"PID {pid} ignored terminate; killing")
        proc.kill()
    else:
        ok(f"Stopped PID {pid}")
    with contextlib.suppress(OSError):
        path.unlink(missing_ok=True)
    return True


def main() -> int:
    os.chdir(REPO_ROOT)
    info("============== TimeDash stopping ================")
    stop_by_pid_file(API_PID_FILE)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
