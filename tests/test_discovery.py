from __future__ import annotations

import json
from typing import Any

import pytest

from chatprobe.browser.base import PageOptions
from chatprobe.config import ProbeSettings
from chatprobe.discovery import DiscoveryService
from chatprobe.errors import CaptureError
from chatprobe.selectors import Box
from chatprobe.store import MemoryStore
from chatprobe.types import BrowserWebSocketConfig, CapturedWebSocket

SOCKET_IO_URL = "wss://chat.example.com/socket.io/?EIO=4&transport=websocket"


class FakeContext:
    def cookies(self) -> list[dict[str, Any]]:
        return [{"name": "sid", "value": "s3cr3t", "domain": ".example.com"}]

    def close(self) -> None:
        return None


class FakePage:
    def __init__(self, url: str | None, frames: list[tuple[str, str]]) -> None:
        self.context = FakeContext()
        self.ws_url = url
        self.frames = frames
        self.sockets: list[CapturedWebSocket] = []
        self.navigated: list[str] = []
        self.closed = False
        self.banner = False

    def navigate(self, url: str, *, timeout: float) -> None:
        self.navigated.append(url)

    def element_boxes(self, selector: str) -> list[Box]:
        if self.banner and selector == "#onetrust-accept-btn-handler":
            return [Box(0, 0, 10, 10)]
        return []

    def click(self, selector: str, *, timeout: float) -> bool:
        if selector == "#onetrust-accept-btn-handler" and self.banner:
            self.banner = False
            return True
        if selector == '[class*="chat-button"]' and self.ws_url:
            ws = CapturedWebSocket(url=self.ws_url, headers={"Origin": "https://shop.example.com"})
            for direction, data in self.frames:
                ws.add_frame(direction, data, 0)
            self.sockets.append(ws)
            return True
        return False

    def websockets(self) -> list[CapturedWebSocket]:
        return list(self.sockets)

    def pump(self, duration: float) -> None:
        return None

    def local_storage(self) -> dict[str, str]:
        return {"visitor": "v1"}

    def session_storage(self) -> dict[str, str]:
        return {}

    def title(self) -> str:
        return "Shop"

    def url(self) -> str:
        return "https://shop.example.com/"

    def frame_count(self) -> int:
        return 0

    def viewport(self) -> tuple[int, int]:
        return (1280, 720)

    def close(self) -> None:
        self.closed = True


class FakeDriver:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.opened: list[PageOptions] = []
        self.closed = 0

    def open_page(self, options: PageOptions) -> FakePage:
        self.opened.append(options)
        return self.page

    def close(self) -> None:
        self.closed += 1


FRAMES = [
    ("received", '0{"sid":"abc","pingInterval":25000,"pingTimeout":20000}'),
    ("sent", "40"),
    ("received", "40"),
    ("received", '42["message",{"text":"hi"}]'),
]


def _service(page: FakePage, store: MemoryStore | None = None) -> tuple[DiscoveryService, list[FakeDriver]]:
    drivers: list[FakeDriver] = []

    def factory(options: PageOptions) -> FakeDriver:
        driver = FakeDriver(page)
        drivers.append(driver)
        return driver

    settings = ProbeSettings(frame_settle_ms=0)
    return DiscoveryService(store or MemoryStore(), driver_factory=factory, settings=settings), drivers


def _config(**extra: Any) -> BrowserWebSocketConfig:
    raw = {"pageUrl": "https://shop.example.com/", "widgetDetection": {"timeout": 2000}}
    raw.update(extra)
    return BrowserWebSocketConfig.from_dict(raw)


def test_full_discovery_detects_protocol_and_caches() -> None:
    page = FakePage(SOCKET_IO_URL, FRAMES)
    page.banner = True
    store = MemoryStore()
    service, drivers = _service(page, store)
    progress: list[str] = []

    result = service.discover(_config(), "t1", on_progress=progress.append)

    assert result.wss_url == SOCKET_IO_URL
    assert result.is_multiplexed
    assert result.handshake is not None and result.handshake.sid == "abc"
    assert result.cookies == ({"name": "sid", "value": "s3cr3t", "domain": ".example.com"},)
    assert result.local_storage == {"visitor": "v1"}
    assert result.headers == {"Origin": "https://shop.example.com"}
    assert len(result.captured_frames) == 4

    assert progress[0] == "Starting browser discovery"
    assert "Dismissed cookie banner (#onetrust-accept-btn-handler)" in progress
    assert f"WebSocket captured: {SOCKET_IO_URL}" in progress
    assert "Protocol: multiplexed (SID: abc)" in progress
    assert "Frames captured: 4 (1 sent, 3 received)" in progress
    assert progress[-1] == "Discovery complete and cached"

    cached = json.loads(store.get("discovery:t1") or "{}")
    assert cached["detectedProtocol"] == "multiplexed"
    assert page.closed
    assert drivers[0].closed == 1


def test_cached_result_short_circuits_browser() -> None:
    page = FakePage(SOCKET_IO_URL, FRAMES)
    service, drivers = _service(page)
    first = service.discover(_config(), "t1")
    progress: list[str] = []
    second = service.discover(_config(), "t1", on_progress=progress.append)
    assert second == first
    assert progress == ["Using cached discovery result"]
    assert len(drivers) == 1

    service.discover(_config(), "t1", force_fresh=True)
    assert len(drivers) == 2


def test_corrupt_cache_is_ignored() -> None:
    store = MemoryStore()
    store.set("discovery:t1", "{broken")
    service, _ = _service(FakePage(SOCKET_IO_URL, FRAMES), store)
    assert service.get_cached("t1") is None


def test_raw_override_wins_over_detection() -> None:
    service, _ = _service(FakePage(SOCKET_IO_URL, FRAMES))
    result = service.discover(_config(protocol={"type": "raw"}), "t1")
    assert result.detected_protocol == "raw"
    assert result.handshake is None


def test_forced_multiplexed_without_handshake_is_inferred() -> None:
    frames = [("received", "hello"), ("received", "world")]
    service, _ = _service(FakePage("wss://chat.example.com/live", frames))
    result = service.discover(_config(protocol={"type": "multiplexed", "socketIOVersion": 3}), "t1")
    assert result.is_multiplexed
    assert result.handshake_inferred
    assert result.handshake is not None and result.handshake.version == 3


def test_missing_websocket_raises_capture_error() -> None:
    page = FakePage(None, [])
    page.click = lambda selector, *, timeout: selector == "#open"  # type: ignore[method-assign]
    service, drivers = _service(page)
    config = _config(widgetDetection={"strategy": "selector", "selector": "#open", "timeout": 200})
    with pytest.raises(CaptureError) as excinfo:
        service.discover(config, "t1")
    assert "No WebSocket connection detected" in excinfo.value.reason
    assert page.closed
    assert drivers[0].closed == 1


def test_keep_browser_alive_reuses_one_driver() -> None:
    service, drivers = _service(FakePage(SOCKET_IO_URL, FRAMES))
    config = _config(session={"keepBrowserAlive": True})
    service.discover(config, "t1", force_fresh=True)
    service.discover(config, "t1", force_fresh=True)
    assert len(drivers) == 1
    assert drivers[0].closed == 0
    service.close_browser()
    assert drivers[0].closed == 1


def test_headless_override_from_settings() -> None:
    page = FakePage(SOCKET_IO_URL, FRAMES)
    drivers: list[FakeDriver] = []

    def factory(options: PageOptions) -> FakeDriver:
        drivers.append(FakeDriver(page))
        return drivers[-1]

    service = DiscoveryService(
        MemoryStore(),
        driver_factory=factory,
        settings=ProbeSettings(frame_settle_ms=0, headless_override=False),
    )
    service.discover(_config(browser={"viewport": {"width": 800, "height": 600}}), "t1")
    assert drivers[0].opened[0] == PageOptions(headless=False, viewport=(800, 600))
