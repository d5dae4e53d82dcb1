from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from datetime import datetime, timezone

from ..types import DEFAULT_MAX_AGE_MS, DEFAULT_REFRESH_AHEAD, BrowserWebSocketConfig
from .queue import JobQueue, RefreshJob
from .status import RefreshStatusStore

_LOGGER = logging.getLogger("chatprobe.refresh.scheduler")

JOB_PREFIX = "refresh:"
MANUAL_MARKER = ":manual:"


def job_key(target_id: str) -> str:
    return f"{JOB_PREFIX}{target_id}"


def refresh_interval_ms(max_age_ms: int, refresh_ahead_percent: float) -> int:
    return int(math.floor(max_age_ms * refresh_ahead_percent))


class RefreshScheduler:
    """One repeating refresh job per target, plus one-off forced refreshes."""

    def __init__(
        self,
        queue: JobQueue,
        status: RefreshStatusStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.queue = queue
        self.status = status
        self._clock = clock

    def schedule(
        self,
        target_id: str,
        config: BrowserWebSocketConfig,
        *,
        refresh_ahead_percent: float | None = None,
    ) -> int:
        max_age = config.session.max_age
        ahead = refresh_ahead_percent if refresh_ahead_percent is not None else config.session.refresh_ahead_percent
        interval = refresh_interval_ms(max_age, ahead)
        job = RefreshJob(
            target_id=target_id,
            max_age_ms=max_age,
            refresh_ahead_percent=ahead,
            force_fresh=True,
            triggered_by="scheduled",
        )
        first_run = self.queue.add_repeatable(job_key(target_id), job, interval)
        self.status.set(
            target_id,
            is_active=True,
            refresh_interval_ms=interval,
            next_refresh_at=datetime.fromtimestamp(first_run, tz=timezone.utc),
        )
        _LOGGER.info(
            "refresh scheduled target=%s every_ms=%d max_age_ms=%d ahead=%s",
            target_id,
            interval,
            max_age,
            ahead,
        )
        return interval

    def cancel(self, target_id: str) -> None:
        if self.queue.remove_repeatable(job_key(target_id)):
            _LOGGER.info("refresh cancelled target=%s", target_id)
        self.status.clear(target_id)

    def force_refresh(
        self,
        target_id: str,
        *,
        triggered_by: str = "manual",
        config: BrowserWebSocketConfig | None = None,
    ) -> str:
        stamp = int(self._clock() * 1000)
        job_id = f"{job_key(target_id)}{MANUAL_MARKER}{stamp}"
        job = RefreshJob(
            target_id=target_id,
            max_age_ms=config.session.max_age if config else DEFAULT_MAX_AGE_MS,
            refresh_ahead_percent=config.session.refresh_ahead_percent if config else DEFAULT_REFRESH_AHEAD,
            force_fresh=True,
            triggered_by=triggered_by,
        )
        self.queue.add(job_id, job)
        _LOGGER.info("refresh forced target=%s job=%s triggered_by=%s", target_id, job_id, triggered_by)
        return job_id

    def auto_start(self, target_id: str, config: BrowserWebSocketConfig) -> bool:
        """Schedule a verified target and warm its cache; no-op when refresh is disabled."""
        if not config.session.token_refresh_enabled:
            return False
        self.schedule(target_id, config)
        self.force_refresh(target_id, triggered_by="auto-start", config=config)
        return True

    def is_scheduled(self, target_id: str) -> bool:
        return job_key(target_id) in self.queue.repeatable_keys()

    def get_scheduled_targets(self) -> list[str]:
        out = []
        for key in self.queue.repeatable_keys():
            if not key.startswith(JOB_PREFIX) or MANUAL_MARKER in key:
                continue
            out.append(key[len(JOB_PREFIX) :])
        return out


__all__ = ["RefreshScheduler", "job_key", "refresh_interval_ms"]
