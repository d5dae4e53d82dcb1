"""Refresh job body.

Per job: take the per-target lease (skip if held), skip if the cache was
refreshed moments ago, otherwise rediscover with a fresh browser session,
republish and record the outcome. The lease is released in ``finally`` and
only while this worker still holds it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from ..config import ProbeSettings
from ..discovery import DiscoveryService
from ..errors import ConfigurationError
from ..store import Store
from ..targets import TargetSource
from ..types import DEFAULT_MAX_REFRESH_FAILURES
from .events import RefreshEvents
from .queue import RefreshJob
from .status import RefreshStatusStore

_LOGGER = logging.getLogger("chatprobe.refresh.worker")


@dataclass(frozen=True, slots=True)
class RefreshOutcome:
    target_id: str
    status: str
    detail: str = ""

    @property
    def refreshed(self) -> bool:
        return self.status == "refreshed"


class RefreshWorker:
    def __init__(
        self,
        store: Store,
        discovery: DiscoveryService,
        targets: TargetSource,
        status: RefreshStatusStore,
        events: RefreshEvents,
        *,
        settings: ProbeSettings | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.discovery = discovery
        self.targets = targets
        self.status = status
        self.events = events
        self.settings = settings or ProbeSettings()
        self.worker_id = worker_id or str(uuid.uuid4())

    def lock_key(self, target_id: str) -> str:
        return self.settings.key(f"refresh-lock:{target_id}")

    def __call__(self, job: RefreshJob) -> RefreshOutcome:
        return self.process(job)

    def process(self, job: RefreshJob) -> RefreshOutcome:
        target_id = job.target_id
        lock_key = self.lock_key(target_id)
        if not self.store.acquire(lock_key, self.worker_id, self.settings.lock_ttl_ms):
            _LOGGER.info("refresh skipped target=%s reason=lock_held", target_id)
            return RefreshOutcome(target_id, "skipped", "lock held by another worker")

        try:
            cached = self.discovery.get_cached(target_id)
            if cached is not None:
                age = cached.age_ms()
                if age < self.settings.skip_window_ms:
                    _LOGGER.info("refresh skipped target=%s reason=fresh age_ms=%d", target_id, age)
                    return RefreshOutcome(target_id, "skipped", f"refreshed {age}ms ago")
            return self._refresh(job)
        finally:
            try:
                if not self.store.release(lock_key, self.worker_id):
                    _LOGGER.warning("refresh lease_lost target=%s worker=%s", target_id, self.worker_id)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("refresh lock_release_failed target=%s error=%s", target_id, exc)

    def _refresh(self, job: RefreshJob) -> RefreshOutcome:
        target_id = job.target_id
        ceiling = DEFAULT_MAX_REFRESH_FAILURES
        try:
            record = self.targets.get(target_id)
            if record is None:
                raise ConfigurationError(reason=f"Target {target_id} not found", details={"targetId": target_id})
            config = record.browser_config()
            ceiling = config.session.max_consecutive_refresh_failures

            _LOGGER.info("refresh starting target=%s triggered_by=%s", target_id, job.triggered_by)
            self.discovery.invalidate(target_id)
            result = self.discovery.discover(config, target_id, force_fresh=True)
            self.discovery.set_cached(target_id, result, config.session.max_age)
            self.events.publish(target_id, job.triggered_by)
            self.status.set(
                target_id,
                last_refresh_at=datetime.now(timezone.utc),
                last_refresh_status="success",
                last_refresh_error=None,
                consecutive_failures=0,
            )
            _LOGGER.info("refresh completed target=%s protocol=%s", target_id, result.detected_protocol)
            return RefreshOutcome(target_id, "refreshed")
        except Exception as exc:
            failures = self.status.get(target_id).consecutive_failures + 1
            self.status.set(
                target_id,
                last_refresh_at=datetime.now(timezone.utc),
                last_refresh_status="failed",
                last_refresh_error=str(exc),
                consecutive_failures=failures,
            )
            if failures >= ceiling:
                _LOGGER.warning(
                    "refresh failing target=%s consecutive_failures=%d max=%d manual intervention may be needed",
                    target_id,
                    failures,
                    ceiling,
                )
            _LOGGER.error("refresh failed target=%s error=%s", target_id, exc)
            raise


__all__ = ["RefreshOutcome", "RefreshWorker"]
