"""Process configuration loaded from the environment (and ``.env.local``)."""

import os
from dataclasses import dataclass
from datetime import time as dtime
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_BRIDGE_URL = "http://127.0.0.1:5578"
DEFAULT_BLOCK_PAGE_URL = "chrome-extension://timedash/block/block.html"


@dataclass
class AppConfig:
    """Knobs for the coordinator and its scheduled triggers.

    Intervals are in seconds.  ``data_path`` of ``None`` keeps the document
    in memory only, which is what the tests use.
    """

    data_path: Path | None = None
    bridge_url: str = DEFAULT_BRIDGE_URL
    block_page_url: str = DEFAULT_BLOCK_PAGE_URL
    bridge_timeout: float = 3.0

    flush_interval: float = 5.0
    liveness_interval: float = 1.0
    quota_interval: float = 30 * 60
    quota_initial_delay: float = 60.0
    cleanup_interval: float = 6 * 60 * 60
    cleanup_initial_delay: float = 30 * 60
    daily_reset_at: dtime = dtime(0, 0)
    backup_at: dtime = dtime(2, 0)

    retention_days: int = 90
    block_stats_retention_days: int = 30
    max_backups: int = 7
    temp_access_minutes: float = 5.0


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        msg = f"{name} must be a number, got {raw!r}"
        raise RuntimeError(msg) from None


def load_config(env_file: Path | None = None) -> AppConfig:
    """Build an :class:`AppConfig` from ``TIMEDASH_*`` environment variables.

    ``.env.local`` in the repository root is loaded first (without
    overriding variables already set in the process environment).
    """
    load_dotenv(dotenv_path=env_file or REPO_ROOT / ".env.local", override=False)

    data_path = os.getenv("TIMEDASH_DATA_PATH", "./data/timedash.json")
    return AppConfig(
        data_path=Path(data_path) if data_path else None,
        bridge_url=os.getenv("TIMEDASH_BRIDGE_URL", DEFAULT_BRIDGE_URL).rstrip("/"),
        block_page_url=os.getenv("TIMEDASH_BLOCK_PAGE_URL", DEFAULT_BLOCK_PAGE_URL),
        flush_interval=_env_float("TIMEDASH_FLUSH_INTERVAL", 5.0),
        liveness_interval=_env_float("TIMEDASH_LIVENESS_INTERVAL", 1.0),
        retention_days=int(_env_float("TIMEDASH_RETENTION_DAYS", 90)),
    )
