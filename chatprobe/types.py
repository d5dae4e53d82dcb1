"""Data model shared by discovery, detection and refresh.

Two families live here:
- target configuration (what the operator asks for), parsed from camelCase JSON
  via ``BrowserWebSocketConfig.from_dict`` and validated eagerly;
- capture/result records (what discovery observed), immutable once built and
  serialized back to camelCase JSON for the cache.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import ConfigurationError

DEFAULT_PING_INTERVAL_MS = 25_000
DEFAULT_PING_TIMEOUT_MS = 20_000
DEFAULT_EIO_VERSION = 4

DEFAULT_MAX_AGE_MS = 300_000
DEFAULT_REFRESH_AHEAD = 0.75
DEFAULT_DETECTION_TIMEOUT_MS = 15_000
DEFAULT_MAX_REFRESH_FAILURES = 5

STRATEGIES = ("heuristic", "selector", "steps")
STEP_ACTIONS = ("click", "type", "wait", "waitForSelector", "evaluate")
POSITIONS = ("bottom-right", "bottom-left", "bottom-center", "custom")
ELEMENT_TYPES = ("button", "div", "iframe", "any")
PROTOCOL_TYPES = ("auto", "multiplexed", "raw")


def _str_list(raw: Any, field_name: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise ConfigurationError(reason=f"{field_name} must be a list of strings")
    return tuple(str(item) for item in raw if str(item).strip())


def _positive_int(raw: Any, default: int, field_name: str) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(reason=f"{field_name} must be an integer") from None
    if value <= 0:
        raise ConfigurationError(reason=f"{field_name} must be positive", details={field_name: raw})
    return value


def _bool(raw: Any, default: bool, field_name: str) -> bool:
    if raw is None:
        return default
    if not isinstance(raw, bool):
        raise ConfigurationError(reason=f"{field_name} must be true or false", details={field_name: raw})
    return raw


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(reason=f"{key} must be an object")
    return value


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


# ---------------------------------------------------------------------------
# Target configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class WidgetHints:
    button_text: tuple[str, ...] = ()
    contains_class: tuple[str, ...] = ()
    contains_id: tuple[str, ...] = ()
    iframe_src: tuple[str, ...] = ()
    position: str | None = None
    element_type: str | None = None
    within_selector: str | None = None
    data_attributes: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> WidgetHints | None:
        if not raw:
            return None
        position = raw.get("position")
        if position is not None and position not in POSITIONS:
            raise ConfigurationError(reason=f"Unknown widget position: {position}")
        element_type = raw.get("elementType")
        if element_type is not None and element_type not in ELEMENT_TYPES:
            raise ConfigurationError(reason=f"Unknown widget element type: {element_type}")
        attrs = raw.get("dataAttributes") or {}
        if not isinstance(attrs, dict):
            raise ConfigurationError(reason="hints.dataAttributes must be an object")
        return cls(
            button_text=_str_list(raw.get("buttonText"), "hints.buttonText"),
            contains_class=_str_list(raw.get("containsClass"), "hints.containsClass"),
            contains_id=_str_list(raw.get("containsId"), "hints.containsId"),
            iframe_src=_str_list(raw.get("iframeSrc"), "hints.iframeSrc"),
            position=position,
            element_type=element_type,
            within_selector=(raw.get("withinSelector") or None),
            data_attributes={str(k): str(v) for k, v in attrs.items()},
        )


@dataclass(frozen=True, slots=True)
class InteractionStep:
    action: str
    selector: str | None = None
    value: str | None = None
    timeout: int | None = None
    script: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> InteractionStep:
        if not isinstance(raw, dict):
            raise ConfigurationError(reason="Each interaction step must be an object")
        action = raw.get("action")
        if action not in STEP_ACTIONS:
            raise ConfigurationError(reason=f"Unknown interaction step action: {action}")
        value = raw.get("value")
        timeout = raw.get("timeout")
        return cls(
            action=action,
            selector=raw.get("selector") or None,
            value=None if value is None else str(value),
            timeout=None if timeout is None else _positive_int(timeout, 0, "step.timeout"),
            script=raw.get("script") or None,
        )


@dataclass(frozen=True, slots=True)
class WidgetDetectionConfig:
    strategy: str = "heuristic"
    selector: str | None = None
    steps: tuple[InteractionStep, ...] = ()
    timeout: int = DEFAULT_DETECTION_TIMEOUT_MS
    hints: WidgetHints | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WidgetDetectionConfig:
        strategy = raw.get("strategy") or "heuristic"
        if strategy not in STRATEGIES:
            raise ConfigurationError(reason=f"Unknown widget detection strategy: {strategy}")
        selector = raw.get("selector") or None
        steps_raw = raw.get("steps") or []
        if not isinstance(steps_raw, list):
            raise ConfigurationError(reason="widgetDetection.steps must be a list")
        steps = tuple(InteractionStep.from_dict(step) for step in steps_raw)
        if strategy == "selector" and not selector:
            raise ConfigurationError(
                reason="Selector strategy requires a selector",
                suggestion="Set widgetDetection.selector or use the heuristic strategy",
            )
        if strategy == "steps" and not steps:
            raise ConfigurationError(
                reason="Steps strategy requires at least one step",
                suggestion="Add widgetDetection.steps or use the heuristic strategy",
            )
        return cls(
            strategy=strategy,
            selector=selector,
            steps=steps,
            timeout=_positive_int(raw.get("timeout"), DEFAULT_DETECTION_TIMEOUT_MS, "widgetDetection.timeout"),
            hints=WidgetHints.from_dict(raw.get("hints")),
        )


@dataclass(frozen=True, slots=True)
class WsFilter:
    url_pattern: str | None = None
    index: int = 0

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WsFilter:
        try:
            index = int(raw.get("index") or 0)
        except (TypeError, ValueError):
            raise ConfigurationError(reason="wsFilter.index must be an integer") from None
        if index < 0:
            raise ConfigurationError(reason="wsFilter.index must not be negative")
        return cls(url_pattern=raw.get("urlPattern") or None, index=index)


@dataclass(frozen=True, slots=True)
class BrowserOptions:
    headless: bool = True
    viewport: tuple[int, int] | None = None
    user_agent: str | None = None
    proxy: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BrowserOptions:
        viewport = None
        vp = raw.get("viewport")
        if vp:
            try:
                viewport = (int(vp["width"]), int(vp["height"]))
            except (KeyError, TypeError, ValueError):
                raise ConfigurationError(reason="browser.viewport needs integer width and height") from None
        headless = raw.get("headless")
        return cls(
            headless=_bool(headless, True, "browser.headless"),
            viewport=viewport,
            user_agent=raw.get("userAgent") or None,
            proxy=raw.get("proxy") or None,
        )


@dataclass(frozen=True, slots=True)
class SessionOptions:
    max_age: int = DEFAULT_MAX_AGE_MS
    keep_browser_alive: bool = False
    refresh_ahead_percent: float = DEFAULT_REFRESH_AHEAD
    token_refresh_enabled: bool = True
    max_consecutive_refresh_failures: int = DEFAULT_MAX_REFRESH_FAILURES

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SessionOptions:
        ahead_raw = raw.get("refreshAheadPercent")
        try:
            ahead = DEFAULT_REFRESH_AHEAD if ahead_raw is None else float(ahead_raw)
        except (TypeError, ValueError):
            raise ConfigurationError(reason="session.refreshAheadPercent must be a number") from None
        if not 0 < ahead <= 1:
            raise ConfigurationError(
                reason="session.refreshAheadPercent must be within (0, 1]",
                details={"refreshAheadPercent": ahead_raw},
            )
        enabled = raw.get("tokenRefreshEnabled")
        return cls(
            max_age=_positive_int(raw.get("maxAge"), DEFAULT_MAX_AGE_MS, "session.maxAge"),
            keep_browser_alive=_bool(raw.get("keepBrowserAlive"), False, "session.keepBrowserAlive"),
            refresh_ahead_percent=ahead,
            token_refresh_enabled=_bool(enabled, True, "session.tokenRefreshEnabled"),
            max_consecutive_refresh_failures=_positive_int(
                raw.get("maxConsecutiveRefreshFailures"),
                DEFAULT_MAX_REFRESH_FAILURES,
                "session.maxConsecutiveRefreshFailures",
            ),
        )


@dataclass(frozen=True, slots=True)
class ProtocolOptions:
    type: str = "auto"
    socket_io_version: int | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ProtocolOptions:
        kind = raw.get("type") or "auto"
        if kind == "socket.io":
            kind = "multiplexed"
        if kind not in PROTOCOL_TYPES:
            raise ConfigurationError(reason=f"Unknown protocol type: {kind}")
        version = raw.get("socketIOVersion")
        if version is not None and version not in (3, 4):
            raise ConfigurationError(reason="protocol.socketIOVersion must be 3 or 4")
        return cls(type=kind, socket_io_version=version)


@dataclass(frozen=True, slots=True)
class BrowserWebSocketConfig:
    page_url: str
    widget_detection: WidgetDetectionConfig = field(default_factory=WidgetDetectionConfig)
    ws_filter: WsFilter = field(default_factory=WsFilter)
    browser: BrowserOptions = field(default_factory=BrowserOptions)
    session: SessionOptions = field(default_factory=SessionOptions)
    protocol: ProtocolOptions = field(default_factory=ProtocolOptions)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BrowserWebSocketConfig:
        if not isinstance(raw, dict):
            raise ConfigurationError(reason="Protocol configuration must be an object")
        page_url = str(raw.get("pageUrl") or "").strip()
        if not page_url:
            raise ConfigurationError(
                reason="pageUrl is required",
                suggestion="Set pageUrl to the page hosting the chat widget",
            )
        if not page_url.startswith(("http://", "https://", "file://")):
            raise ConfigurationError(reason=f"pageUrl must be an http(s) or file URL: {page_url}")
        return cls(
            page_url=page_url,
            widget_detection=WidgetDetectionConfig.from_dict(_section(raw, "widgetDetection")),
            ws_filter=WsFilter.from_dict(_section(raw, "wsFilter")),
            browser=BrowserOptions.from_dict(_section(raw, "browser")),
            session=SessionOptions.from_dict(_section(raw, "session")),
            protocol=ProtocolOptions.from_dict(_section(raw, "protocol")),
        )


# ---------------------------------------------------------------------------
# Capture and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CapturedFrame:
    direction: str
    data: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {"direction": self.direction, "data": self.data, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CapturedFrame:
        return cls(
            direction=str(raw.get("direction") or "received"),
            data=str(raw.get("data") or ""),
            timestamp=int(raw.get("timestamp") or 0),
        )


@dataclass(slots=True)
class CapturedWebSocket:
    """A socket observed in the page. Frames are appended as they arrive."""

    url: str
    request_id: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    frames: list[CapturedFrame] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    closed: bool = False

    def add_frame(self, direction: str, data: str, timestamp: int | None = None) -> None:
        self.frames.append(CapturedFrame(direction, data, now_ms() if timestamp is None else timestamp))


@dataclass(frozen=True, slots=True)
class HandshakeConfig:
    sid: str = ""
    ping_interval: int = DEFAULT_PING_INTERVAL_MS
    ping_timeout: int = DEFAULT_PING_TIMEOUT_MS
    version: int = DEFAULT_EIO_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "sid": self.sid,
            "pingInterval": self.ping_interval,
            "pingTimeout": self.ping_timeout,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> HandshakeConfig:
        def _int(key: str, default: int) -> int:
            value = raw.get(key)
            return default if value is None else int(value)

        sid = raw.get("sid")
        return cls(
            sid="" if sid is None else str(sid),
            ping_interval=_int("pingInterval", DEFAULT_PING_INTERVAL_MS),
            ping_timeout=_int("pingTimeout", DEFAULT_PING_TIMEOUT_MS),
            version=_int("version", DEFAULT_EIO_VERSION),
        )


@dataclass(frozen=True, slots=True)
class ProtocolInfo:
    protocol: str
    handshake: HandshakeConfig | None = None
    handshake_inferred: bool = False

    @property
    def is_multiplexed(self) -> bool:
        return self.protocol == "multiplexed"


@dataclass(frozen=True, slots=True)
class DiscoveryResult:
    wss_url: str
    cookies: tuple[dict[str, str], ...] = ()
    headers: dict[str, str] = field(default_factory=dict)
    local_storage: dict[str, str] = field(default_factory=dict)
    session_storage: dict[str, str] = field(default_factory=dict)
    captured_frames: tuple[CapturedFrame, ...] = ()
    detected_protocol: str = "raw"
    handshake: HandshakeConfig | None = None
    handshake_inferred: bool = False
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_multiplexed(self) -> bool:
        return self.detected_protocol == "multiplexed"

    def age_ms(self, now: datetime | None = None) -> int:
        current = now or datetime.now(timezone.utc)
        return int((current - self.discovered_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "wssUrl": self.wss_url,
            "cookies": [dict(c) for c in self.cookies],
            "headers": dict(self.headers),
            "localStorage": dict(self.local_storage),
            "sessionStorage": dict(self.session_storage),
            "capturedFrames": [f.to_dict() for f in self.captured_frames],
            "detectedProtocol": self.detected_protocol,
            "discoveredAt": self.discovered_at.isoformat(),
        }
        if self.handshake is not None:
            out["handshakeConfig"] = self.handshake.to_dict()
        if self.handshake_inferred:
            out["handshakeInferred"] = True
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DiscoveryResult:
        hs = raw.get("handshakeConfig")
        discovered = raw.get("discoveredAt")
        at = datetime.fromisoformat(discovered) if discovered else datetime.now(timezone.utc)
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        return cls(
            wss_url=str(raw.get("wssUrl") or ""),
            cookies=tuple(
                {"name": str(c.get("name", "")), "value": str(c.get("value", "")), "domain": str(c.get("domain", ""))}
                for c in raw.get("cookies") or []
            ),
            headers={str(k): str(v) for k, v in (raw.get("headers") or {}).items()},
            local_storage={str(k): str(v) for k, v in (raw.get("localStorage") or {}).items()},
            session_storage={str(k): str(v) for k, v in (raw.get("sessionStorage") or {}).items()},
            captured_frames=tuple(CapturedFrame.from_dict(f) for f in raw.get("capturedFrames") or []),
            detected_protocol=str(raw.get("detectedProtocol") or "raw"),
            handshake=HandshakeConfig.from_dict(hs) if isinstance(hs, dict) else None,
            handshake_inferred=bool(raw.get("handshakeInferred", False)),
            discovered_at=at,
        )


__all__ = [
    "BrowserOptions",
    "BrowserWebSocketConfig",
    "CapturedFrame",
    "CapturedWebSocket",
    "DiscoveryResult",
    "HandshakeConfig",
    "InteractionStep",
    "ProtocolInfo",
    "ProtocolOptions",
    "SessionOptions",
    "WidgetDetectionConfig",
    "WidgetHints",
    "WsFilter",
    "now_ms",
]
