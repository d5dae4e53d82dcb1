from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from ..config import ProbeSettings
from ..store import Store, Subscription

_LOGGER = logging.getLogger("chatprobe.refresh.events")

REFRESH_CHANNEL = "token-refreshed"


@dataclass(frozen=True, slots=True)
class RefreshEvent:
    target_id: str
    timestamp: str
    triggered_by: str

    def to_json(self) -> str:
        return json.dumps({"targetId": self.target_id, "timestamp": self.timestamp, "triggeredBy": self.triggered_by})

    @classmethod
    def from_json(cls, raw: str) -> RefreshEvent:
        data = json.loads(raw)
        return cls(
            target_id=str(data["targetId"]),
            timestamp=str(data.get("timestamp") or ""),
            triggered_by=str(data.get("triggeredBy") or "scheduled"),
        )


class RefreshEvents:
    """Publish/subscribe "credentials refreshed" notifications."""

    def __init__(self, store: Store, settings: ProbeSettings | None = None) -> None:
        self.store = store
        self.settings = settings or ProbeSettings()

    @property
    def channel(self) -> str:
        return self.settings.key(REFRESH_CHANNEL)

    def publish(self, target_id: str, triggered_by: str) -> RefreshEvent:
        event = RefreshEvent(
            target_id=target_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            triggered_by=triggered_by,
        )
        receivers = self.store.publish(self.channel, event.to_json())
        _LOGGER.debug("refresh_event published target=%s receivers=%s", target_id, receivers)
        return event

    def subscribe(self, callback: Callable[[RefreshEvent], None]) -> Subscription:
        def _on_message(raw: str) -> None:
            try:
                event = RefreshEvent.from_json(raw)
            except (ValueError, KeyError, TypeError) as exc:
                _LOGGER.warning("refresh_event malformed error=%s", exc)
                return
            callback(event)

        return self.store.subscribe(self.channel, _on_message)


__all__ = ["REFRESH_CHANNEL", "RefreshEvent", "RefreshEvents"]
