from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chatprobe.config import ProbeSettings
from chatprobe.refresh.status import RefreshStatusStore
from chatprobe.store import MemoryStore


def test_missing_status_has_defaults() -> None:
    status = RefreshStatusStore(MemoryStore())
    current = status.get("t1")
    assert current.consecutive_failures == 0
    assert current.is_active is False
    assert current.last_refresh_at is None


def test_fields_are_string_encoded() -> None:
    store = MemoryStore()
    status = RefreshStatusStore(store, ProbeSettings(key_prefix="cp:"))
    at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    status.set("t1", is_active=True, refresh_interval_ms=225000, next_refresh_at=at, last_refresh_error=None)
    assert store.hgetall("cp:refresh-status:t1") == {
        "isActive": "true",
        "refreshIntervalMs": "225000",
        "nextRefreshAt": "2026-03-01T12:00:00+00:00",
        "lastRefreshError": "",
    }
    current = status.get("t1")
    assert current.is_active is True
    assert current.refresh_interval_ms == 225000
    assert current.next_refresh_at == at
    assert current.last_refresh_error is None


def test_partial_updates_merge_and_clear_removes() -> None:
    status = RefreshStatusStore(MemoryStore())
    status.set("t1", is_active=True)
    status.set("t1", consecutive_failures=2, last_refresh_status="failed")
    current = status.get("t1")
    assert current.is_active is True
    assert current.consecutive_failures == 2
    assert current.to_dict()["lastRefreshStatus"] == "failed"
    status.clear("t1")
    assert status.get("t1").is_active is False


def test_unknown_field_is_rejected() -> None:
    with pytest.raises(ValueError):
        RefreshStatusStore(MemoryStore()).set("t1", colour="blue")


def test_refresh_events_round_trip_and_skip_malformed() -> None:
    from chatprobe.refresh.events import RefreshEvents

    store = MemoryStore()
    events = RefreshEvents(store)
    got = []
    events.subscribe(got.append)
    store.publish(events.channel, "not json")
    store.publish(events.channel, '{"timestamp": "x"}')
    published = events.publish("t1", "manual")
    assert len(got) == 1
    assert got[0] == published
    assert got[0].target_id == "t1"
    assert got[0].triggered_by == "manual"
    assert events.channel == "token-refreshed"
