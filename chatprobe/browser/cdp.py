"""DevTools protocol connection over websocket-client.

One connection talks to the browser endpoint; pages and out-of-process
iframes are reached through flattened sessions (``sessionId`` on each
message). Commands are serialized by a re-entrant lock so several threads
(and event sinks that issue follow-up commands) can share one socket.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websocket

from ..errors import CdpError

_LOGGER = logging.getLogger("chatprobe.browser.cdp")


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, websocket.WebSocketTimeoutException)):
        return True
    return "timed out" in str(exc).lower()


class CdpConnection:
    """Low-level CDP WebSocket connection."""

    def __init__(self, ws_url: str, timeout: float = 10.0, *, ws: Any = None):
        self.ws = ws if ws is not None else websocket.create_connection(ws_url, timeout=timeout, suppress_origin=True)
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        self._lock = threading.RLock()
        # Events must not be dropped while waiting for command responses.
        self._event_queue: list[dict[str, Any]] = []
        self._max_event_queue = 2000
        # Responses read by a nested wait (event sink issuing commands) for an outer caller.
        self._responses: dict[int, dict[str, Any]] = {}
        self._event_sink: Callable[[dict[str, Any]], None] | None = None
        self._events_seen = 0
        self._closed = False

    def set_event_sink(self, sink: Callable[[dict[str, Any]], None] | None) -> None:
        """Attach an event sink called for every received CDP event."""
        self._event_sink = sink

    def _push_event(self, event: dict[str, Any]) -> None:
        self._events_seen += 1
        sink = self._event_sink
        if sink is not None:
            try:
                sink(event)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("cdp event_sink failed method=%s error=%s", event.get("method"), exc)

        self._event_queue.append(event)
        if len(self._event_queue) > self._max_event_queue:
            # Drop oldest events to avoid unbounded growth in long sessions.
            del self._event_queue[: len(self._event_queue) - self._max_event_queue]

    def pop_event(self, event_name: str, *, session_id: str | None = None) -> dict[str, Any] | None:
        """Pop the oldest queued event params for the given event name (and session)."""
        with self._lock:
            for i, ev in enumerate(self._event_queue):
                if ev.get("method") != event_name:
                    continue
                if session_id is not None and ev.get("sessionId") != session_id:
                    continue
                self._event_queue.pop(i)
                params = ev.get("params")
                return params if isinstance(params, dict) else {}
        return None

    def discard_events(self, session_id: str) -> None:
        with self._lock:
            self._event_queue = [ev for ev in self._event_queue if ev.get("sessionId") != session_id]

    def _read_one(self, wait: float) -> dict[str, Any] | None:
        """Read one message; events go to the queue/sink, responses are returned."""
        try:
            self.ws.settimeout(max(0.01, wait))
            raw = self.ws.recv()
        except Exception as exc:  # noqa: BLE001
            if _is_timeout(exc):
                return None
            raise CdpError(str(exc)) from exc

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(data, dict):
            return None

        if isinstance(data.get("method"), str) and "id" not in data:
            self._push_event(data)
            return None
        return data

    def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send CDP command and wait for response."""
        with self._lock:
            if self._closed:
                raise CdpError("CDP connection is closed")
            msg_id = self._next_id
            self._next_id += 1

            msg: dict[str, Any] = {"id": msg_id, "method": method}
            if params:
                msg["params"] = params
            if session_id:
                msg["sessionId"] = session_id

            try:
                self.ws.settimeout(min(2.0, max(0.5, float(self.timeout))))
                self.ws.send(json.dumps(msg))
            except Exception as exc:  # noqa: BLE001
                raise CdpError(str(exc)) from exc

            return self._recv_until(msg_id, self.timeout if timeout is None else timeout)

    def _recv_until(self, expected_id: int, timeout: float) -> dict[str, Any]:
        deadline = time.time() + timeout
        while True:
            stashed = self._responses.pop(expected_id, None)
            if stashed is not None:
                return self._unwrap(stashed)

            remaining = deadline - time.time()
            if remaining <= 0:
                raise CdpError("CDP response timed out")

            data = self._read_one(min(0.5, remaining))
            if data is None:
                continue
            if data.get("id") == expected_id:
                return self._unwrap(data)
            if isinstance(data.get("id"), int):
                self._responses[data["id"]] = data

    @staticmethod
    def _unwrap(data: dict[str, Any]) -> dict[str, Any]:
        if "error" in data:
            raise CdpError(str(data["error"]))
        result = data.get("result")
        return result if isinstance(result, dict) else {}

    def wait_for_event(
        self,
        event_name: str,
        timeout: float = 10.0,
        *,
        session_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Wait for a specific CDP event; other events keep flowing to the sink."""
        deadline = time.time() + timeout
        while True:
            queued = self.pop_event(event_name, session_id=session_id)
            if queued is not None:
                return queued
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            with self._lock:
                data = self._read_one(min(0.2, remaining))
                if data is not None and isinstance(data.get("id"), int):
                    self._responses[data["id"]] = data

    def pump(self, duration: float) -> int:
        """Read and dispatch events for ``duration`` seconds; returns the count read."""
        deadline = time.time() + max(0.0, duration)
        start = self._events_seen
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                return self._events_seen - start
            # Release the lock between reads so commands from other threads interleave.
            with self._lock:
                data = self._read_one(min(0.1, remaining))
                if data is not None and isinstance(data.get("id"), int):
                    self._responses[data["id"]] = data

    def abort(self) -> None:
        """Hard break of the underlying socket; websocket-client close() may hang."""
        sock = getattr(self.ws, "sock", None)
        if sock is not None:
            with suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
            with suppress(OSError):
                sock.close()

    def close(self) -> None:
        self._closed = True
        self.abort()


__all__ = ["CdpConnection"]
