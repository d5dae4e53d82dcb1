from __future__ import annotations

import logging
import tempfile
import threading
import time
from contextlib import suppress
from typing import Any

from ..errors import CdpError, NavigationError
from ..selectors import Box, split_text_selector
from ..types import CapturedWebSocket
from ..ws_capture import WebSocketCapture
from . import js
from .base import PageOptions
from .cdp import CdpConnection
from .config import BrowserConfig
from .launcher import BrowserLauncher

_LOGGER = logging.getLogger("chatprobe.browser.page")

_POLL_INTERVAL = 0.1
_ATTACH_TYPES = {"iframe", "worker"}


def _remote_value(result: dict[str, Any]) -> Any:
    if result.get("exceptionDetails"):
        details = result["exceptionDetails"]
        text = details.get("exception", {}).get("description") or details.get("text") or "evaluation failed"
        raise CdpError(f"JavaScript error: {text}")
    remote = result.get("result", {})
    if remote.get("type") == "undefined" or remote.get("subtype") == "null":
        return None
    return remote.get("value")


class CdpContext:
    """Isolated browser context (fresh cookie jar) owned by one page."""

    def __init__(self, conn: CdpConnection, context_id: str) -> None:
        self.conn = conn
        self.context_id = context_id

    def cookies(self) -> list[dict[str, Any]]:
        result = self.conn.send("Storage.getCookies", {"browserContextId": self.context_id})
        cookies = result.get("cookies")
        return cookies if isinstance(cookies, list) else []

    def close(self) -> None:
        with suppress(CdpError):
            self.conn.send("Target.disposeBrowserContext", {"browserContextId": self.context_id})


class CdpPage:
    def __init__(
        self,
        driver: CdpDriver,
        conn: CdpConnection,
        target_id: str,
        session_id: str,
        context: CdpContext,
    ) -> None:
        self.driver = driver
        self.conn = conn
        self.target_id = target_id
        self.session_id = session_id
        self.context = context
        self.capture = WebSocketCapture()
        self._frame_sessions: list[str] = []
        self._closed = False

    # -- plumbing -----------------------------------------------------------

    def send(self, method: str, params: dict[str, Any] | None = None, *, session_id: str | None = None) -> dict[str, Any]:
        return self.conn.send(method, params, session_id=session_id or self.session_id)

    def setup(self, options: PageOptions) -> None:
        self.send("Page.enable")
        self.send("Network.enable")
        self.send(
            "Target.setAutoAttach",
            {"autoAttach": True, "waitForDebuggerOnStart": True, "flatten": True},
        )
        if options.viewport:
            width, height = options.viewport
            self.send(
                "Emulation.setDeviceMetricsOverride",
                {"width": width, "height": height, "deviceScaleFactor": 1, "mobile": False},
            )
        if options.user_agent:
            self.send("Network.setUserAgentOverride", {"userAgent": options.user_agent})

    def handle_event(self, event: dict[str, Any]) -> None:
        method = event.get("method") or ""
        if WebSocketCapture.wants(method):
            self.capture.handle_event(event)
            return
        params = event.get("params") or {}
        if method == "Target.attachedToTarget":
            self._on_attached(params)
        elif method == "Target.detachedFromTarget":
            child = params.get("sessionId")
            if child in self._frame_sessions:
                self._frame_sessions.remove(child)
            self.driver.unregister_session(child)

    def _on_attached(self, params: dict[str, Any]) -> None:
        child = params.get("sessionId")
        info = params.get("targetInfo") or {}
        if not isinstance(child, str):
            return
        kind = info.get("type")
        if kind in _ATTACH_TYPES:
            self.driver.register_session(child, self)
            with suppress(CdpError):
                self.send("Network.enable", session_id=child)
            if kind == "iframe":
                self._frame_sessions.append(child)
                with suppress(CdpError):
                    self.send(
                        "Target.setAutoAttach",
                        {"autoAttach": True, "waitForDebuggerOnStart": True, "flatten": True},
                        session_id=child,
                    )
        with suppress(CdpError):
            self.send("Runtime.runIfWaitingForDebugger", session_id=child)

    def _eval(self, expression: str, *, session_id: str | None = None) -> Any:
        result = self.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
            session_id=session_id,
        )
        return _remote_value(result)

    def _mouse_click(self, x: float, y: float) -> None:
        self.send("Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y})
        for phase in ("mousePressed", "mouseReleased"):
            self.send(
                "Input.dispatchMouseEvent",
                {"type": phase, "x": x, "y": y, "button": "left", "clickCount": 1},
            )

    # -- page surface -------------------------------------------------------

    def navigate(self, url: str, *, timeout: float) -> None:
        result = self.send("Page.navigate", {"url": url})
        error = result.get("errorText")
        if error:
            raise NavigationError(reason=f"Navigation to {url} failed: {error}", details={"url": url})
        deadline = time.time() + timeout
        if self.conn.wait_for_event("Page.domContentEventFired", timeout, session_id=self.session_id) is None:
            raise NavigationError(
                reason=f"Navigation to {url} timed out after {timeout:.0f}s",
                suggestion="Check that the page is reachable from the browser host",
                details={"url": url},
            )
        remaining = deadline - time.time()
        if remaining > 0 and self.conn.wait_for_event("Page.loadEventFired", remaining, session_id=self.session_id) is None:
            _LOGGER.info("page load_event_missing url=%s", url)

    def _info(self) -> dict[str, Any]:
        info = self._eval(js.call(js.PAGE_INFO))
        return info if isinstance(info, dict) else {}

    def title(self) -> str:
        return str(self._info().get("title") or "")

    def url(self) -> str:
        return str(self._info().get("url") or "")

    def frame_count(self) -> int:
        return int(self._info().get("iframes") or 0)

    def viewport(self) -> tuple[int, int]:
        info = self._info()
        return int(info.get("width") or 0), int(info.get("height") or 0)

    def _try_click(self, css: str, text: str | None, index: int = 0) -> bool:
        point = self._eval(js.call(js.CLICK_POINT, css, text, index))
        if isinstance(point, dict):
            self._mouse_click(float(point["x"]), float(point["y"]))
            return True
        # Cross-origin frames: dispatch the click inside the frame itself.
        for child in list(self._frame_sessions):
            try:
                if self._eval(js.call(js.CLICK_ELEMENT, css, text, index), session_id=child):
                    return True
            except CdpError:
                continue
        return False

    def click(self, selector: str, *, timeout: float) -> bool:
        css, text = split_text_selector(selector)
        deadline = time.time() + timeout
        while True:
            if self._try_click(css, text):
                return True
            if time.time() >= deadline:
                return False
            self.pump(_POLL_INTERVAL)

    def click_nth(self, selector: str, index: int) -> bool:
        css, text = split_text_selector(selector)
        point = self._eval(js.call(js.CLICK_POINT, css, text, index))
        if not isinstance(point, dict):
            return False
        self._mouse_click(float(point["x"]), float(point["y"]))
        return True

    def fill(self, selector: str, value: str, *, timeout: float) -> bool:
        css, text = split_text_selector(selector)
        deadline = time.time() + timeout
        while True:
            sessions = [self.session_id, *self._frame_sessions]
            for session in sessions:
                try:
                    focused = self._eval(js.call(js.FOCUS_AND_CLEAR, css, text), session_id=session)
                except CdpError:
                    continue
                if focused:
                    self.send("Input.insertText", {"text": value}, session_id=session)
                    return True
            if time.time() >= deadline:
                return False
            self.pump(_POLL_INTERVAL)

    def wait_for_selector(self, selector: str, *, timeout: float) -> bool:
        deadline = time.time() + timeout
        while True:
            if self.element_boxes(selector):
                return True
            if time.time() >= deadline:
                return False
            self.pump(_POLL_INTERVAL)

    def evaluate(self, script: str) -> Any:
        return self._eval(script)

    def element_boxes(self, selector: str) -> list[Box]:
        css, text = split_text_selector(selector)
        raw = self._eval(js.call(js.BOXES, css, text))
        if not isinstance(raw, list):
            return []
        return [Box(float(b["x"]), float(b["y"]), float(b["width"]), float(b["height"])) for b in raw]

    def websockets(self) -> list[CapturedWebSocket]:
        return self.capture.sockets()

    def pump(self, duration: float) -> None:
        self.conn.pump(duration)

    def _storage(self, kind: str) -> dict[str, str]:
        raw = self._eval(js.call(js.STORAGE_DUMP, kind))
        if not isinstance(raw, dict):
            return {}
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}

    def local_storage(self) -> dict[str, str]:
        return self._storage("localStorage")

    def session_storage(self) -> dict[str, str]:
        return self._storage("sessionStorage")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with suppress(CdpError):
            self.conn.send("Target.closeTarget", {"targetId": self.target_id})
        for child in [self.session_id, *self._frame_sessions]:
            self.driver.unregister_session(child)
            self.conn.discard_events(child)
        self.context.close()


class CdpDriver:
    """Chrome driven over one browser-level DevTools connection."""

    def __init__(
        self,
        config: BrowserConfig | None = None,
        *,
        launcher: BrowserLauncher | None = None,
        connection_factory: Any = CdpConnection,
    ) -> None:
        self.config = config or BrowserConfig.from_env()
        self.launcher = launcher or BrowserLauncher(self.config)
        self._connection_factory = connection_factory
        self._conn: CdpConnection | None = None
        self._sessions: dict[str, CdpPage] = {}
        self._lock = threading.Lock()

    def _connection(self) -> CdpConnection:
        with self._lock:
            if self._conn is None:
                result = self.launcher.ensure_running()
                if not self.launcher.cdp_ready():
                    raise CdpError(f"Browser is not reachable: {result.message}")
                conn = self._connection_factory(self.launcher.browser_ws_url(), timeout=self.config.cdp_timeout)
                conn.set_event_sink(self._dispatch)
                self._conn = conn
            return self._conn

    def _dispatch(self, event: dict[str, Any]) -> None:
        page = self._sessions.get(event.get("sessionId") or "")
        if page is not None:
            page.handle_event(event)

    def register_session(self, session_id: str, page: CdpPage) -> None:
        self._sessions[session_id] = page

    def unregister_session(self, session_id: str | None) -> None:
        if session_id:
            self._sessions.pop(session_id, None)

    def open_page(self, options: PageOptions) -> CdpPage:
        conn = self._connection()
        params: dict[str, Any] = {"disposeOnDetach": True}
        if options.proxy:
            params["proxyServer"] = options.proxy
        context_id = conn.send("Target.createBrowserContext", params)["browserContextId"]
        context = CdpContext(conn, context_id)
        try:
            target_id = conn.send(
                "Target.createTarget",
                {"url": "about:blank", "browserContextId": context_id},
            )["targetId"]
            session_id = conn.send("Target.attachToTarget", {"targetId": target_id, "flatten": True})["sessionId"]
        except (CdpError, KeyError):
            context.close()
            raise
        page = CdpPage(self, conn, target_id, session_id, context)
        self.register_session(session_id, page)
        page.setup(options)
        _LOGGER.debug("page opened target=%s context=%s", target_id, context_id)
        return page

    def close(self) -> None:
        with self._lock:
            conn = self._conn
            self._conn = None
            self._sessions.clear()
        if conn is not None:
            conn.close()
        self.launcher.stop()


def cdp_driver_factory(options: PageOptions) -> CdpDriver:
    """Build a driver; in launch mode every driver owns its own Chrome, port and profile."""
    config = BrowserConfig.from_env()
    config.headless = options.headless
    if config.mode == "launch":
        config.cdp_port = BrowserLauncher.find_free_port()
        config.profile_path = tempfile.mkdtemp(prefix=f"chatprobe-profile-{config.cdp_port}-")
        config.ephemeral_profile = True
    return CdpDriver(config)


__all__ = ["CdpContext", "CdpDriver", "CdpPage", "cdp_driver_factory"]
