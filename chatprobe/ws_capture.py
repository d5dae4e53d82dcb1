"""WebSocket capture built from DevTools ``Network.webSocket*`` events.

Events from out-of-process iframes arrive on child sessions and may reuse
request ids, so sockets are keyed by ``(sessionId, requestId)``.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable
from typing import Any

from .types import CapturedWebSocket, WsFilter, now_ms

_LOGGER = logging.getLogger("chatprobe.capture")

MIN_FRAMES = 2

_WS_EVENTS = {
    "Network.webSocketCreated",
    "Network.webSocketWillSendHandshakeRequest",
    "Network.webSocketFrameSent",
    "Network.webSocketFrameReceived",
    "Network.webSocketClosed",
}


def _wall_ms(params: dict[str, Any]) -> int:
    wall = params.get("wallTime")
    if isinstance(wall, (int, float)) and wall > 0:
        return int(wall * 1000)
    return now_ms()


class WebSocketCapture:
    """Accumulates sockets and their frames in creation order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sockets: dict[tuple[str, str], CapturedWebSocket] = {}

    @staticmethod
    def wants(method: str) -> bool:
        return method in _WS_EVENTS

    def handle_event(self, event: dict[str, Any]) -> None:
        method = event.get("method")
        if method not in _WS_EVENTS:
            return
        params = event.get("params") if isinstance(event.get("params"), dict) else {}
        request_id = str(params.get("requestId") or "")
        if not request_id:
            return
        key = (str(event.get("sessionId") or ""), request_id)

        with self._lock:
            ws = self._sockets.get(key)
            if method == "Network.webSocketCreated":
                url = str(params.get("url") or "")
                if ws is None:
                    self._sockets[key] = CapturedWebSocket(url=url, request_id=request_id)
                    _LOGGER.debug("capture ws_created url=%s", url.split("?", 1)[0])
                return
            if ws is None:
                # Created before capture started; the URL is unknown until the handshake.
                ws = CapturedWebSocket(url=str(params.get("url") or ""), request_id=request_id)
                self._sockets[key] = ws

            if method == "Network.webSocketWillSendHandshakeRequest":
                request = params.get("request") if isinstance(params.get("request"), dict) else {}
                headers = request.get("headers") if isinstance(request.get("headers"), dict) else {}
                ws.headers = {str(k): str(v) for k, v in headers.items()}
            elif method == "Network.webSocketFrameSent":
                ws.add_frame("sent", _payload(params), _wall_ms(params))
            elif method == "Network.webSocketFrameReceived":
                ws.add_frame("received", _payload(params), _wall_ms(params))
            elif method == "Network.webSocketClosed":
                ws.closed = True

    def sockets(self) -> list[CapturedWebSocket]:
        with self._lock:
            return list(self._sockets.values())


def _payload(params: dict[str, Any]) -> str:
    response = params.get("response") if isinstance(params.get("response"), dict) else {}
    data = response.get("payloadData")
    return data if isinstance(data, str) else ""


def matches_url_pattern(url: str, pattern: str | None) -> bool:
    """Regex search on the URL; an invalid regex falls back to a substring test."""
    if not pattern:
        return True
    try:
        return re.search(pattern, url) is not None
    except re.error:
        return pattern in url


def select_websocket(
    sockets: Iterable[CapturedWebSocket],
    ws_filter: WsFilter,
    *,
    min_frames: int = MIN_FRAMES,
) -> CapturedWebSocket | None:
    candidates = [ws for ws in sockets if ws.url and matches_url_pattern(ws.url, ws_filter.url_pattern)]
    if len(candidates) <= ws_filter.index:
        return None
    chosen = candidates[ws_filter.index]
    if len(chosen.frames) < min_frames:
        return None
    return chosen


__all__ = ["MIN_FRAMES", "WebSocketCapture", "matches_url_pattern", "select_websocket"]
