"""Target configuration source.

Targets are owned by an external store; the refresh subsystem only reads
them. ``InMemoryTargets`` backs tests and the CLI (loaded from a JSON file).
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .errors import ConfigurationError
from .types import BrowserWebSocketConfig


@dataclass(frozen=True, slots=True)
class TargetRecord:
    id: str
    name: str = ""
    protocol_config: dict[str, Any] = field(default_factory=dict)

    def browser_config(self) -> BrowserWebSocketConfig:
        if not self.protocol_config:
            raise ConfigurationError(
                reason=f"Target {self.id} has no protocol configuration",
                details={"targetId": self.id},
            )
        return BrowserWebSocketConfig.from_dict(self.protocol_config)


class TargetSource(Protocol):
    def get(self, target_id: str) -> TargetRecord | None: ...

    def ids(self) -> list[str]: ...


class InMemoryTargets:
    def __init__(self, records: list[TargetRecord] | None = None) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, TargetRecord] = {r.id: r for r in records or []}

    def put(self, record: TargetRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def get(self, target_id: str) -> TargetRecord | None:
        with self._lock:
            return self._records.get(target_id)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._records)

    @classmethod
    def from_file(cls, path: str | Path) -> InMemoryTargets:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        items = raw.get("targets", []) if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            raise ConfigurationError(reason=f"{path}: expected a list of targets")
        records = []
        for item in items:
            if not isinstance(item, dict) or not item.get("id"):
                raise ConfigurationError(reason=f"{path}: every target needs an id")
            records.append(
                TargetRecord(
                    id=str(item["id"]),
                    name=str(item.get("name") or ""),
                    protocol_config=dict(item.get("protocolConfig") or {}),
                )
            )
        return cls(records)


__all__ = ["InMemoryTargets", "TargetRecord", "TargetSource"]
