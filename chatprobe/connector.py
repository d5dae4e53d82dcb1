"""Direct WebSocket connection built from a discovery result.

The browser is only needed to find the endpoint and collect credentials;
afterwards the chat is held open directly with the captured upgrade headers
and cookies. Multiplexed endpoints get a ``SocketIOHandler`` for heartbeat
and framing. Refresh notifications swap in fresh credentials for the next
reconnect.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.sync.client import ClientConnection, connect

from .credentials import build_cookie_header
from .discovery import DiscoveryService
from .errors import ConnectorError, ProbeError
from .refresh.events import RefreshEvent, RefreshEvents
from .socketio_handler import SocketIOEvent, SocketIOHandler, decode_message, encode_message, is_message_frame
from .store import Subscription
from .types import BrowserWebSocketConfig, DiscoveryResult

_LOGGER = logging.getLogger("chatprobe.connector")

DEFAULT_SEND_TIMEOUT = 30.0
OPEN_TIMEOUT = 10.0

# Headers the WebSocket client computes itself for every upgrade.
_HANDSHAKE_HEADERS = {
    "host",
    "connection",
    "upgrade",
    "content-length",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "origin",
    "user-agent",
    "cookie",
}


@dataclass(frozen=True, slots=True)
class ConnectOptions:
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    origin: str | None = None
    user_agent: str | None = None
    subprotocols: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ConnectorResponse:
    content: str
    response_time_ms: int
    raw: Any = None


@dataclass(frozen=True, slots=True)
class HealthStatus:
    healthy: bool
    error: str | None = None
    latency_ms: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def build_connect_options(result: DiscoveryResult) -> ConnectOptions:
    """Replay the browser's upgrade request: captured headers plus a fresh Cookie header."""
    headers: dict[str, str] = {}
    origin = user_agent = None
    subprotocols: tuple[str, ...] = ()
    for name, value in result.headers.items():
        lowered = name.lower()
        if lowered == "origin":
            origin = value
        elif lowered == "user-agent":
            user_agent = value
        elif lowered == "sec-websocket-protocol":
            subprotocols = tuple(p.strip() for p in value.split(",") if p.strip())
        elif lowered not in _HANDSHAKE_HEADERS:
            headers[name] = value
    cookie = build_cookie_header(result.cookies)
    if cookie:
        headers["Cookie"] = cookie
    return ConnectOptions(
        url=result.wss_url,
        headers=headers,
        origin=origin,
        user_agent=user_agent,
        subprotocols=subprotocols,
    )


def open_websocket(options: ConnectOptions) -> ClientConnection:
    kwargs: dict[str, Any] = {
        "additional_headers": options.headers,
        "open_timeout": OPEN_TIMEOUT,
        "close_timeout": 2.0,
        # Engine.IO runs its own heartbeat; raw endpoints may not answer protocol pings.
        "ping_interval": None,
        "ping_timeout": None,
    }
    if options.origin:
        kwargs["origin"] = options.origin
    if options.user_agent:
        kwargs["user_agent_header"] = options.user_agent
    if options.subprotocols:
        kwargs["subprotocols"] = list(options.subprotocols)
    return connect(options.url, **kwargs)


class DirectSocket:
    """Adapts a websockets client connection to the listener-style socket the handler expects."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._listeners: list[Callable[[str], None]] = []
        self._lock = threading.Lock()
        self._open = True
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._read_loop, name="chatprobe-direct-ws", daemon=True)
        self._thread.start()

    @property
    def is_open(self) -> bool:
        return self._open

    def _read_loop(self) -> None:
        try:
            for message in self._conn:
                if isinstance(message, (bytes, bytearray)):
                    message = bytes(message).decode("utf-8", errors="replace")
                self.dispatch(message)
        except ConnectionClosed as exc:
            _LOGGER.info("direct_ws closed code=%s reason=%s", getattr(exc.rcvd, "code", None), getattr(exc.rcvd, "reason", ""))
        finally:
            self._open = False

    def dispatch(self, message: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(message)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("direct_ws listener_failed error=%s", exc)

    def send(self, data: str) -> None:
        self._conn.send(data)

    def close(self, code: int = 1000, reason: str = "") -> None:
        self._open = False
        self._conn.close(code, reason)

    def add_listener(self, listener: Callable[[str], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[str], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)


class BrowserWebSocketConnector:
    def __init__(
        self,
        target_id: str,
        config: BrowserWebSocketConfig,
        discovery: DiscoveryService,
        *,
        events: RefreshEvents | None = None,
        open_fn: Callable[[ConnectOptions], Any] = open_websocket,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.target_id = target_id
        self.config = config
        self.discovery = discovery
        self.events = events
        self._open_fn = open_fn
        self.send_timeout = send_timeout
        self._on_progress = on_progress
        self.result: DiscoveryResult | None = None
        self.socket: DirectSocket | None = None
        self.handler: SocketIOHandler | None = None
        self._subscription: Subscription | None = None
        self._connected = False

    def _emit(self, message: str) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(message)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("connector progress_callback_failed error=%s", exc)

    # -- lifecycle --------------------------------------------------------------

    def connect(self, *, force_fresh: bool = False) -> DiscoveryResult:
        self._emit("Starting browser discovery")
        try:
            result = self.discovery.discover(
                self.config,
                self.target_id,
                on_progress=self._emit,
                force_fresh=force_fresh,
            )
        except ProbeError:
            raise
        except Exception as exc:
            raise ConnectorError(reason=f"Browser discovery failed: {exc}") from exc
        self.result = result
        self._open(result)

        if self.events is not None and self.config.session.token_refresh_enabled and self._subscription is None:
            self._subscription = self.events.subscribe(self._on_refreshed)
        return result

    def reconnect(self) -> DiscoveryResult:
        """Reopen the direct socket with the stored result, without running the browser."""
        result = self.result
        if result is None:
            raise ConnectorError(reason="Nothing to reconnect to; call connect() first")
        self._teardown_socket()
        self._connected = False
        self._open(result)
        return result

    def _open(self, result: DiscoveryResult) -> None:
        self._emit("Connecting to discovered WebSocket endpoint")
        options = build_connect_options(result)
        try:
            conn = self._open_fn(options)
        except (OSError, TimeoutError, InvalidHandshake) as exc:
            raise ConnectorError(
                reason=f"Failed to connect to discovered WebSocket {result.wss_url}: {exc}",
                details={"url": result.wss_url},
            ) from exc
        socket = DirectSocket(conn)
        self.socket = socket

        if result.is_multiplexed and result.handshake is not None:
            if result.handshake_inferred:
                _LOGGER.warning("connector handshake_inferred target=%s using default heartbeat", self.target_id)
            self.handler = SocketIOHandler(
                socket,
                result.handshake,
                on_message=self._on_event,
                on_error=self._on_protocol_error,
            )
            self.handler.start()
        socket.start()

        self._connected = True
        self._emit("Connected successfully")

    def disconnect(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self._teardown_socket()
        if not self.config.session.keep_browser_alive:
            self.discovery.close_browser()
        self._connected = False
        self.result = None

    def _teardown_socket(self) -> None:
        if self.handler is not None:
            self.handler.stop()
            self.handler = None
        if self.socket is not None:
            try:
                self.socket.close()
            except (ConnectionClosed, OSError) as exc:
                _LOGGER.debug("connector close_failed error=%s", exc)
            self.socket = None

    def is_connected(self) -> bool:
        return self._connected and self.socket is not None and self.socket.is_open

    # -- messaging --------------------------------------------------------------

    def send_message(self, text: str, *, timeout: float | None = None) -> ConnectorResponse:
        socket = self.socket
        if not self._connected or socket is None:
            raise ConnectorError(reason="Connector is not connected")

        multiplexed = self.handler is not None
        inbox: queue.Queue[str] = queue.Queue()

        def _collect(frame: str) -> None:
            if not multiplexed or is_message_frame(frame):
                inbox.put(frame)

        socket.add_listener(_collect)
        started = time.time()
        try:
            try:
                socket.send(encode_message("message", text) if multiplexed else text)
            except (ConnectionClosed, OSError) as exc:
                raise ConnectorError(reason=f"Failed to send message: {exc}") from exc
            try:
                frame = inbox.get(timeout=self.send_timeout if timeout is None else timeout)
            except queue.Empty:
                raise ConnectorError(reason="Timed out waiting for a reply") from None
        finally:
            socket.remove_listener(_collect)

        elapsed = int((time.time() - started) * 1000)
        if not multiplexed:
            return ConnectorResponse(content=frame, response_time_ms=elapsed, raw=frame)
        event = decode_message(frame)
        if event is None:
            return ConnectorResponse(content=frame, response_time_ms=elapsed, raw=frame)
        content = event.data if isinstance(event.data, str) else json.dumps(event.data)
        return ConnectorResponse(content=content, response_time_ms=elapsed, raw=event)

    def _on_event(self, event: SocketIOEvent) -> None:
        _LOGGER.debug("connector event target=%s name=%s", self.target_id, event.event)

    def _on_protocol_error(self, payload: str) -> None:
        _LOGGER.warning("connector protocol_error target=%s payload=%s", self.target_id, payload[:200])

    # -- health / refresh -------------------------------------------------------

    def health_check(self) -> HealthStatus:
        socket = self.socket
        if socket is None:
            return HealthStatus(healthy=False, error="Not connected")

        alive = socket.is_open and (self.handler is None or self.handler.state == "active")
        if alive:
            return HealthStatus(healthy=True)

        result = self.result
        if result is None:
            return HealthStatus(healthy=False, error="WebSocket is not open")

        if result.age_ms() < self.config.session.max_age:
            try:
                self.reconnect()
            except ConnectorError as exc:
                _LOGGER.info("connector reconnect_failed target=%s error=%s", self.target_id, exc)
            else:
                return HealthStatus(healthy=True)

        try:
            self.rediscover()
        except Exception as exc:  # noqa: BLE001
            return HealthStatus(healthy=False, error=f"Rediscovery failed: {exc}")
        return HealthStatus(healthy=True)

    def rediscover(self) -> DiscoveryResult:
        self._teardown_socket()
        self._connected = False
        return self.connect(force_fresh=True)

    def _on_refreshed(self, event: RefreshEvent) -> None:
        if event.target_id != self.target_id:
            return
        fresh = self.discovery.get_cached(self.target_id)
        if fresh is None:
            _LOGGER.warning("connector refresh_missing_cache target=%s", self.target_id)
            return
        # Applied on the next reconnect; the open socket keeps its session.
        self.result = fresh
        _LOGGER.info("connector credentials_updated target=%s triggered_by=%s", self.target_id, event.triggered_by)


__all__ = [
    "BrowserWebSocketConnector",
    "ConnectOptions",
    "ConnectorResponse",
    "DirectSocket",
    "HealthStatus",
    "build_connect_options",
    "open_websocket",
]
