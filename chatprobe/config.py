from __future__ import annotations

import os
from dataclasses import dataclass


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int, *, lo: int, hi: int) -> int:
    try:
        value = int(os.environ.get(name) or default)
    except Exception:
        value = default
    return max(lo, min(value, hi))


def _float_env(name: str, default: float, *, lo: float, hi: float) -> float:
    try:
        value = float(os.environ.get(name) or default)
    except Exception:
        value = default
    return max(lo, min(value, hi))


@dataclass
class ProbeSettings:
    """Process-wide knobs; per-target behaviour lives in BrowserWebSocketConfig."""

    redis_url: str = ""
    key_prefix: str = ""
    worker_concurrency: int = 2
    lock_ttl_ms: int = 120_000
    skip_window_ms: int = 30_000
    job_attempts: int = 5
    job_backoff_ms: int = 5_000
    nav_timeout_ms: int = 30_000
    frame_settle_ms: int = 2_000
    headless_override: bool | None = None

    @classmethod
    def from_env(cls) -> ProbeSettings:
        headless_raw = os.environ.get("CHATPROBE_HEADLESS")
        return cls(
            redis_url=(os.environ.get("CHATPROBE_REDIS_URL") or "").strip(),
            key_prefix=(os.environ.get("CHATPROBE_KEY_PREFIX") or "").strip(),
            worker_concurrency=_int_env("CHATPROBE_WORKER_CONCURRENCY", 2, lo=1, hi=32),
            lock_ttl_ms=_int_env("CHATPROBE_LOCK_TTL_MS", 120_000, lo=5_000, hi=3_600_000),
            skip_window_ms=_int_env("CHATPROBE_SKIP_WINDOW_MS", 30_000, lo=0, hi=600_000),
            job_attempts=_int_env("CHATPROBE_JOB_ATTEMPTS", 5, lo=1, hi=20),
            job_backoff_ms=_int_env("CHATPROBE_JOB_BACKOFF_MS", 5_000, lo=100, hi=600_000),
            nav_timeout_ms=_int_env("CHATPROBE_NAV_TIMEOUT_MS", 30_000, lo=1_000, hi=300_000),
            frame_settle_ms=_int_env("CHATPROBE_FRAME_SETTLE_MS", 2_000, lo=0, hi=60_000),
            headless_override=None if headless_raw is None else _bool_env("CHATPROBE_HEADLESS", True),
        )

    def key(self, raw: str) -> str:
        return f"{self.key_prefix}{raw}" if self.key_prefix else raw


def log_level_from_env(default: str = "INFO") -> str:
    level = (os.environ.get("CHATPROBE_LOG_LEVEL") or default).strip().upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return default
    return level


__all__ = ["ProbeSettings", "_bool_env", "_float_env", "_int_env", "log_level_from_env"]
