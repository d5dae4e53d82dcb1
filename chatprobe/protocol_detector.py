"""Classify a captured WebSocket as multiplexed (Engine.IO / Socket.IO) or raw.

Nothing in this module raises: malformed input degrades to "no signal" so the
discovery pipeline always receives a well-typed verdict.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from urllib.parse import parse_qsl, urlsplit

from .types import (
    DEFAULT_EIO_VERSION,
    DEFAULT_PING_INTERVAL_MS,
    DEFAULT_PING_TIMEOUT_MS,
    CapturedFrame,
    HandshakeConfig,
    ProtocolInfo,
)

_LOGGER = logging.getLogger("chatprobe.protocol")

_EIO_RE = re.compile(r"[?&]eio=(\d+)", re.IGNORECASE)
_MIN_FRAME_SIGNALS = 2


def _eio_param(url: str) -> str | None:
    try:
        query = urlsplit(url).query
    except ValueError:
        query = ""
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key.lower() == "eio":
            return value
    match = _EIO_RE.search(url or "")
    return match.group(1) if match else None


def detect_eio_version(url: str) -> int:
    raw = _eio_param(url)
    if raw in {"3", "4"}:
        return int(raw)
    return DEFAULT_EIO_VERSION


def is_multiplexed_url(url: str) -> bool:
    if not url:
        return False
    try:
        path = urlsplit(url).path
    except ValueError:
        path = url
    if "socket.io" in path.lower().split("/"):
        return True
    return _eio_param(url) is not None


def parse_handshake(data: str) -> HandshakeConfig | None:
    """Parse an Engine.IO open packet (``0{...}``); anything else yields None."""
    if not isinstance(data, str) or not data.startswith("0{"):
        return None
    try:
        payload = json.loads(data[1:])
    except (ValueError, TypeError):
        return None
    if not isinstance(payload, dict):
        return None
    sid = payload.get("sid")
    if not isinstance(sid, str):
        return None

    def _ms(key: str, default: int) -> int:
        value = payload.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return default
        return int(value)

    return HandshakeConfig(
        sid=sid,
        ping_interval=_ms("pingInterval", DEFAULT_PING_INTERVAL_MS),
        ping_timeout=_ms("pingTimeout", DEFAULT_PING_TIMEOUT_MS),
    )


def _frame_signal(data: str) -> str | None:
    if data == "2":
        return "ping"
    if data == "3":
        return "pong"
    if data == "6":
        return "noop"
    if data == "40" or data.startswith(("40/", "40{")):
        return "connect"
    if data.startswith("42[") or (data.startswith("42") and "[" in data[:64]):
        return "event"
    return None


def has_multiplexed_frame_patterns(frames: Iterable[CapturedFrame]) -> bool:
    """True when at least two distinct protocol signals appear among the frames."""
    seen: set[str] = set()
    for frame in frames:
        signal = _frame_signal(frame.data or "")
        if signal is not None:
            seen.add(signal)
            if len(seen) >= _MIN_FRAME_SIGNALS:
                return True
    return False


def find_handshake(frames: Iterable[CapturedFrame]) -> HandshakeConfig | None:
    for frame in frames:
        if frame.direction != "received":
            continue
        parsed = parse_handshake(frame.data)
        if parsed is not None:
            return parsed
    return None


def detect(wss_url: str, frames: Iterable[CapturedFrame]) -> ProtocolInfo:
    frames = list(frames or ())
    version = detect_eio_version(wss_url)
    handshake = find_handshake(frames)
    if handshake is not None:
        handshake = HandshakeConfig(
            sid=handshake.sid,
            ping_interval=handshake.ping_interval,
            ping_timeout=handshake.ping_timeout,
            version=version,
        )

    url_match = is_multiplexed_url(wss_url)
    frame_match = has_multiplexed_frame_patterns(frames)

    if handshake is not None:
        return ProtocolInfo(protocol="multiplexed", handshake=handshake)

    if url_match or frame_match:
        # Default timing may be wrong if the URL match was a false positive.
        _LOGGER.warning(
            "protocol_detect handshake_missing url=%s url_signal=%s frame_signal=%s frames=%d",
            _redact_url(wss_url),
            url_match,
            frame_match,
            len(frames),
        )
        return ProtocolInfo(
            protocol="multiplexed",
            handshake=HandshakeConfig(version=version),
            handshake_inferred=True,
        )

    return ProtocolInfo(protocol="raw")


def _redact_url(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<invalid>"
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


__all__ = [
    "detect",
    "detect_eio_version",
    "find_handshake",
    "has_multiplexed_frame_patterns",
    "is_multiplexed_url",
    "parse_handshake",
]
