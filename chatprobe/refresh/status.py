"""Per-target refresh status, stored as a hash of strings.

Every field is string-encoded (``"true"``/``"false"``, decimal integers,
ISO-8601 timestamps, ``""`` for null) so any hash-capable store can hold it.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any

from ..config import ProbeSettings
from ..store import Store

_HASH_FIELDS = {
    "last_refresh_at": "lastRefreshAt",
    "last_refresh_status": "lastRefreshStatus",
    "last_refresh_error": "lastRefreshError",
    "consecutive_failures": "consecutiveFailures",
    "next_refresh_at": "nextRefreshAt",
    "refresh_interval_ms": "refreshIntervalMs",
    "is_active": "isActive",
}


@dataclass
class RefreshStatus:
    last_refresh_at: datetime | None = None
    last_refresh_status: str | None = None
    last_refresh_error: str | None = None
    consecutive_failures: int = 0
    next_refresh_at: datetime | None = None
    refresh_interval_ms: int | None = None
    is_active: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[_HASH_FIELDS[f.name]] = value.isoformat() if isinstance(value, datetime) else value
        return out


def _encode(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _parse_time(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_int(raw: str | None) -> int | None:
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class RefreshStatusStore:
    def __init__(self, store: Store, settings: ProbeSettings | None = None) -> None:
        self.store = store
        self.settings = settings or ProbeSettings()

    def key(self, target_id: str) -> str:
        return self.settings.key(f"refresh-status:{target_id}")

    def get(self, target_id: str) -> RefreshStatus:
        raw = self.store.hgetall(self.key(target_id))
        if not raw:
            return RefreshStatus()
        return RefreshStatus(
            last_refresh_at=_parse_time(raw.get("lastRefreshAt")),
            last_refresh_status=raw.get("lastRefreshStatus") or None,
            last_refresh_error=raw.get("lastRefreshError") or None,
            consecutive_failures=_parse_int(raw.get("consecutiveFailures")) or 0,
            next_refresh_at=_parse_time(raw.get("nextRefreshAt")),
            refresh_interval_ms=_parse_int(raw.get("refreshIntervalMs")),
            is_active=raw.get("isActive") == "true",
        )

    def set(self, target_id: str, **changes: Any) -> None:
        """Write only the given fields (snake_case names of ``RefreshStatus``)."""
        unknown = set(changes) - set(_HASH_FIELDS)
        if unknown:
            raise ValueError(f"Unknown refresh status fields: {sorted(unknown)}")
        if not changes:
            return
        self.store.hset(self.key(target_id), {_HASH_FIELDS[k]: _encode(v) for k, v in changes.items()})

    def clear(self, target_id: str) -> None:
        self.store.delete(self.key(target_id))


__all__ = ["RefreshStatus", "RefreshStatusStore"]
