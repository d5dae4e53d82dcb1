"""Error taxonomy for discovery, activation and refresh.

`ProbeError` mirrors a structured tool error: it carries enough context to be
rendered for a human (``str``) or serialized for a status record (``to_dict``).
The ``retryable`` flag is consulted by the refresh queue: configuration problems
fail immediately, everything else is retried with backoff.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class CdpError(Exception):
    """Low-level DevTools transport failure (socket, timeout, protocol error)."""


@dataclass
class ProbeError(Exception):
    """Structured failure raised at a discovery or refresh stage."""

    stage: str
    reason: str
    suggestion: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = True

    def __str__(self) -> str:
        if self.suggestion:
            return f"[{self.stage}] {self.reason}. Suggestion: {self.suggestion}"
        return f"[{self.stage}] {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "stage": self.stage,
            "reason": self.reason,
            "suggestion": self.suggestion,
            "details": self.details,
            "retryable": self.retryable,
        }


@dataclass
class ConfigurationError(ProbeError):
    stage: str = "config"
    reason: str = "Invalid configuration"
    retryable: bool = False


@dataclass
class NavigationError(ProbeError):
    stage: str = "navigate"
    reason: str = "Navigation failed"


@dataclass
class ActivationError(ProbeError):
    stage: str = "activate"
    reason: str = "Chat widget could not be activated"


@dataclass
class CaptureError(ProbeError):
    stage: str = "capture"
    reason: str = "No matching WebSocket was observed"


@dataclass
class ConnectorError(ProbeError):
    stage: str = "connect"
    reason: str = "Direct WebSocket connection failed"


__all__ = [
    "ActivationError",
    "CaptureError",
    "CdpError",
    "ConfigurationError",
    "ConnectorError",
    "NavigationError",
    "ProbeError",
]
