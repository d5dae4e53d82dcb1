"""Engine.IO / Socket.IO framing and heartbeat for a directly held socket.

The handler never owns the socket: it registers a frame listener, answers
pings, watches the ping deadline and decodes event packets. Anything that
looks like a socket works (see ``LiveSocket``); the direct connector adapts
a ``websockets`` client connection.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from .types import HandshakeConfig

_LOGGER = logging.getLogger("chatprobe.socketio")

PING_TIMEOUT_CLOSE_CODE = 4000
PING_TIMEOUT_REASON = "Ping timeout"

# Engine.IO packet types
EIO_OPEN = "0"
EIO_CLOSE = "1"
EIO_PING = "2"
EIO_PONG = "3"
EIO_MESSAGE = "4"
EIO_NOOP = "6"

# Socket.IO packet types (carried inside an Engine.IO message)
SIO_CONNECT = "40"
SIO_DISCONNECT = "41"
SIO_EVENT = "42"
SIO_ACK = "43"
SIO_CONNECT_ERROR = "44"

_EVENT_RE = re.compile(r"^42(?:(/[^,]*),)?(\d*)(\[.*)$", re.DOTALL)


class LiveSocket(Protocol):
    def send(self, data: str) -> None: ...

    def close(self, code: int = 1000, reason: str = "") -> None: ...

    def add_listener(self, listener: Callable[[str], None]) -> None: ...

    def remove_listener(self, listener: Callable[[str], None]) -> None: ...


class Cancellable(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], Cancellable]


@dataclass(frozen=True, slots=True)
class SocketIOEvent:
    event: str
    data: Any = None
    namespace: str = "/"
    ack_id: int | None = None


def encode_message(event: str, payload: Any = None) -> str:
    return SIO_EVENT + json.dumps([event, payload], separators=(",", ":"), ensure_ascii=False)


def decode_message(frame: str) -> SocketIOEvent | None:
    """Decode ``42[...]`` (optionally ``42/ns,<ack>[...]``); None when not an event."""
    if not isinstance(frame, str):
        return None
    match = _EVENT_RE.match(frame)
    if match is None:
        return None
    namespace, ack, body = match.groups()
    try:
        packet = json.loads(body)
    except (ValueError, TypeError):
        return None
    if not isinstance(packet, list) or not packet or not isinstance(packet[0], str):
        return None
    args = packet[1:]
    if not args:
        data: Any = None
    elif len(args) == 1:
        data = args[0]
    else:
        data = args
    return SocketIOEvent(
        event=packet[0],
        data=data,
        namespace=namespace or "/",
        ack_id=int(ack) if ack else None,
    )


def is_message_frame(frame: str) -> bool:
    return isinstance(frame, str) and frame.startswith(SIO_EVENT)


def is_ping_frame(frame: str) -> bool:
    return frame == EIO_PING


def packet_type(frame: str) -> str:
    """Return the Socket.IO packet type for ``4x`` frames, else the Engine.IO type."""
    if not frame:
        return ""
    if frame[0] == EIO_MESSAGE and len(frame) > 1 and frame[1].isdigit():
        return frame[:2]
    return frame[0]


class SocketIOHandler:
    """Heartbeat + namespace lifecycle over an already open socket."""

    def __init__(
        self,
        socket: LiveSocket,
        handshake: HandshakeConfig,
        *,
        namespace: str = "/",
        on_message: Callable[[SocketIOEvent], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.socket = socket
        self.handshake = handshake
        self.namespace = namespace or "/"
        self.on_message = on_message
        self.on_error = on_error
        self._timer_factory: TimerFactory = timer_factory or _daemon_timer
        self._timer: Cancellable | None = None
        self._lock = threading.RLock()
        self._state = "idle"

    @property
    def state(self) -> str:
        return self._state

    @property
    def deadline_seconds(self) -> float:
        return (self.handshake.ping_interval + self.handshake.ping_timeout) / 1000.0

    def start(self) -> None:
        with self._lock:
            if self._state != "idle":
                return
            self._state = "active"
            self.socket.add_listener(self.handle_frame)
            if self.namespace != "/":
                self.socket.send(f"{SIO_CONNECT}{self.namespace},")
            else:
                self.socket.send(SIO_CONNECT)
            self._arm_deadline()

    def stop(self) -> None:
        with self._lock:
            if self._state == "stopped":
                return
            was_active = self._state == "active"
            self._state = "stopped"
            self._cancel_deadline()
        if was_active:
            try:
                self.socket.remove_listener(self.handle_frame)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("socketio remove_listener failed error=%s", exc)

    def send_event(self, event: str, payload: Any = None) -> None:
        if self._state != "active":
            raise RuntimeError(f"Handler is {self._state}; cannot send")
        self.socket.send(encode_message(event, payload))

    def handle_frame(self, data: str) -> None:
        if self._state != "active":
            return
        if not isinstance(data, str) or not data:
            return

        if data == EIO_PING:
            with self._lock:
                if self._state != "active":
                    return
                self._arm_deadline()
            self.socket.send(EIO_PONG)
            return

        if data == EIO_CLOSE or data.startswith(SIO_DISCONNECT):
            _LOGGER.info("socketio closed_by_server packet=%s", data[:2])
            self.stop()
            return

        if data.startswith(SIO_EVENT):
            event = decode_message(data)
            if event is None:
                _LOGGER.debug("socketio undecodable_event len=%d", len(data))
                return
            if self.on_message is not None:
                self.on_message(event)
            return

        if data.startswith(SIO_CONNECT_ERROR):
            payload = data[2:]
            if self.on_error is not None:
                self.on_error(payload or "Socket.IO connection error")
            return

        # open, noop, pong, connect ack, ack: nothing to do

    def _arm_deadline(self) -> None:
        self._cancel_deadline()
        timer: Cancellable | None = None

        def fire() -> None:
            self._on_deadline(timer)

        timer = self._timer_factory(self.deadline_seconds, fire)
        self._timer = timer
        timer.start()

    def _cancel_deadline(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def _on_deadline(self, timer: Cancellable | None) -> None:
        with self._lock:
            # A ping may have re-armed while this timer waited for the lock.
            if self._state != "active" or timer is None or self._timer is not timer:
                return
        _LOGGER.warning(
            "socketio ping_timeout sid=%s deadline_s=%.1f",
            self.handshake.sid or "-",
            self.deadline_seconds,
        )
        try:
            self.socket.close(PING_TIMEOUT_CLOSE_CODE, PING_TIMEOUT_REASON)
        finally:
            self.stop()


def _daemon_timer(interval: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, fn)
    timer.daemon = True
    return timer


__all__ = [
    "PING_TIMEOUT_CLOSE_CODE",
    "PING_TIMEOUT_REASON",
    "LiveSocket",
    "SocketIOEvent",
    "SocketIOHandler",
    "decode_message",
    "encode_message",
    "is_message_frame",
    "is_ping_frame",
    "packet_type",
]
