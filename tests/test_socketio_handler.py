from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from chatprobe.socketio_handler import SocketIOHandler
from chatprobe.types import HandshakeConfig


class DummySocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed: tuple[int, str] | None = None
        self.listeners: list[Callable[[str], None]] = []

    def send(self, data: str) -> None:
        self.sent.append(data)

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def add_listener(self, listener: Callable[[str], None]) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: Callable[[str], None]) -> None:
        self.listeners.remove(listener)

    def emit(self, data: str) -> None:
        for listener in list(self.listeners):
            listener(data)


class DummyTimer:
    def __init__(self, interval: float, fn: Callable[[], None]) -> None:
        self.interval = interval
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fn()


class TimerLog:
    def __init__(self) -> None:
        self.timers: list[DummyTimer] = []

    def __call__(self, interval: float, fn: Callable[[], None]) -> DummyTimer:
        timer = DummyTimer(interval, fn)
        self.timers.append(timer)
        return timer

    @property
    def current(self) -> DummyTimer:
        return self.timers[-1]


def _handler(**kwargs: Any) -> tuple[SocketIOHandler, DummySocket, TimerLog]:
    sock = DummySocket()
    timers = TimerLog()
    handshake = HandshakeConfig(sid="abc", ping_interval=25000, ping_timeout=20000)
    handler = SocketIOHandler(sock, handshake, timer_factory=timers, **kwargs)
    return handler, sock, timers


def test_start_sends_connect_and_arms_deadline() -> None:
    handler, sock, timers = _handler()
    handler.start()
    assert handler.state == "active"
    assert sock.sent == ["40"]
    assert timers.current.started
    assert timers.current.interval == pytest.approx(45.0)

    handler.start()
    assert sock.sent == ["40"]


def test_namespace_connect_packet() -> None:
    handler, sock, _ = _handler(namespace="/support")
    handler.start()
    assert sock.sent == ["40/support,"]


def test_ping_answers_pong_and_resets_deadline() -> None:
    handler, sock, timers = _handler()
    handler.start()
    first = timers.current
    sock.emit("2")
    assert sock.sent[-1] == "3"
    assert first.cancelled
    assert timers.current is not first
    assert timers.current.started


def test_non_ping_frames_do_not_reset_deadline() -> None:
    handler, sock, timers = _handler()
    handler.start()
    armed = len(timers.timers)
    sock.emit("6")
    sock.emit('42["message","hi"]')
    sock.emit("3")
    assert len(timers.timers) == armed


def test_deadline_expiry_closes_with_policy_code() -> None:
    handler, sock, timers = _handler()
    handler.start()
    timers.current.fire()
    assert sock.closed == (4000, "Ping timeout")
    assert handler.state == "stopped"
    assert sock.listeners == []


def test_close_packets_stop_handler() -> None:
    for packet in ("1", "41"):
        handler, sock, _ = _handler()
        handler.start()
        sock.emit(packet)
        assert handler.state == "stopped"
        assert sock.listeners == []


def test_stopped_handler_ignores_frames() -> None:
    received: list[Any] = []
    handler, sock, _ = _handler(on_message=received.append)
    handler.start()
    handler.stop()
    handler.stop()
    handler.handle_frame('42["message","late"]')
    handler.handle_frame("2")
    assert received == []
    assert sock.sent == ["40"]


def test_event_and_error_dispatch() -> None:
    events: list[Any] = []
    errors: list[str] = []
    handler, sock, _ = _handler(on_message=events.append, on_error=errors.append)
    handler.start()
    sock.emit('42/support,7["reply",{"text":"hello"}]')
    sock.emit('44{"message":"unauthorized"}')
    sock.emit('44/support,{"message":"denied"}')
    assert len(events) == 1
    assert events[0].event == "reply"
    assert events[0].data == {"text": "hello"}
    assert events[0].namespace == "/support"
    assert events[0].ack_id == 7
    assert errors == ['{"message":"unauthorized"}', '/support,{"message":"denied"}']


def test_bare_error_packet_uses_default_message() -> None:
    errors: list[str] = []
    handler, sock, _ = _handler(on_error=errors.append)
    handler.start()
    sock.emit("44")
    assert errors == ["Socket.IO connection error"]


def test_superseded_deadline_timer_does_not_close() -> None:
    handler, sock, timers = _handler()
    handler.start()
    stale = timers.current
    sock.emit("2")
    # The old timer fired before the ping could cancel it.
    stale.fire()
    assert sock.closed is None
    assert handler.state == "active"

    timers.current.fire()
    assert sock.closed == (4000, "Ping timeout")


def test_send_event_requires_active_state() -> None:
    handler, sock, _ = _handler()
    with pytest.raises(RuntimeError):
        handler.send_event("message", "hi")
    handler.start()
    handler.send_event("message", {"text": "hi"})
    assert sock.sent[-1] == '42["message",{"text":"hi"}]'


@pytest.mark.parametrize("payload", [None, 0, "text", [1, {"a": None}], {"nested": {"list": [True, 1.5]}}])
def test_encode_decode_are_dual(payload: Any) -> None:
    from chatprobe.socketio_handler import decode_message, encode_message

    decoded = decode_message(encode_message("message", payload))
    assert decoded is not None
    assert decoded.event == "message"
    assert decoded.data == payload


def test_decode_rejects_non_events() -> None:
    from chatprobe.socketio_handler import decode_message, is_message_frame, packet_type

    assert decode_message("2") is None
    assert decode_message("42not-json") is None
    assert decode_message("42[1]") is None
    assert is_message_frame('42["x"]')
    assert not is_message_frame("40")
    assert packet_type("42[]") == "42"
    assert packet_type("2") == "2"
