from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from ..errors import ConfigurationError
from ..targets import TargetSource
from ..types import BrowserWebSocketConfig
from .queue import JobQueue
from .scheduler import RefreshScheduler, job_key
from .status import RefreshStatusStore

_LOGGER = logging.getLogger("chatprobe.refresh.admin")

MIN_REFRESH_AHEAD = 0.1
MAX_REFRESH_AHEAD = 1.0
ACTIONS = ("start", "stop", "force")


class RefreshAdmin:
    """Start/stop/force/inspect refresh for one target at a time."""

    def __init__(
        self,
        scheduler: RefreshScheduler,
        status: RefreshStatusStore,
        queue: JobQueue,
        targets: TargetSource,
    ) -> None:
        self.scheduler = scheduler
        self.status = status
        self.queue = queue
        self.targets = targets

    def _config(self, target_id: str) -> BrowserWebSocketConfig:
        record = self.targets.get(target_id)
        if record is None:
            raise ConfigurationError(reason="Target not found", details={"targetId": target_id})
        return record.browser_config()

    def run(self, target_id: str, action: str, *, refresh_ahead_percent: float | None = None) -> dict[str, Any]:
        if action not in ACTIONS:
            raise ConfigurationError(reason=f"Unknown action: {action}", details={"allowed": list(ACTIONS)})
        if action == "start":
            return self.start(target_id, refresh_ahead_percent=refresh_ahead_percent)
        if action == "stop":
            return self.stop(target_id)
        return self.force(target_id)

    def start(self, target_id: str, *, refresh_ahead_percent: float | None = None) -> dict[str, Any]:
        if refresh_ahead_percent is not None and not (
            MIN_REFRESH_AHEAD <= refresh_ahead_percent <= MAX_REFRESH_AHEAD
        ):
            raise ConfigurationError(
                reason=f"refreshAheadPercent must be within [{MIN_REFRESH_AHEAD}, {MAX_REFRESH_AHEAD}]",
                details={"refreshAheadPercent": refresh_ahead_percent},
            )
        config = self._config(target_id)
        interval = self.scheduler.schedule(target_id, config, refresh_ahead_percent=refresh_ahead_percent)
        return {"action": "started", "targetId": target_id, "refreshIntervalMs": interval}

    def stop(self, target_id: str) -> dict[str, Any]:
        self._config(target_id)
        self.scheduler.cancel(target_id)
        return {"action": "stopped", "targetId": target_id}

    def force(self, target_id: str) -> dict[str, Any]:
        config = self._config(target_id)
        job_id = self.scheduler.force_refresh(target_id, config=config)
        return {"action": "force-refreshed", "targetId": target_id, "jobId": job_id}

    def overview(self, target_id: str) -> dict[str, Any]:
        if self.targets.get(target_id) is None:
            raise ConfigurationError(reason="Target not found", details={"targetId": target_id})
        data: dict[str, Any] = {"targetId": target_id, **self.status.get(target_id).to_dict()}
        next_run = self.queue.next_run_at(job_key(target_id))
        if next_run is not None:
            data["nextRefreshAt"] = datetime.fromtimestamp(next_run, tz=timezone.utc).isoformat()
        data["isScheduled"] = self.scheduler.is_scheduled(target_id)
        data["queueStats"] = self.queue.stats().to_dict()
        data["queueDepth"] = self.queue.depth(target_id)
        return data


__all__ = ["RefreshAdmin"]
