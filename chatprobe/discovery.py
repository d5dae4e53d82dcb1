"""Browser discovery: page → widget → WebSocket → credentials + protocol.

The result is cached under ``discovery:{target_id}`` with TTL equal to the
target's ``session.max_age``. Results are immutable and replaced wholesale.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from .browser.base import BrowserDriver, BrowserPage, PageOptions
from .config import ProbeSettings
from .credentials import CredentialExtractor
from .errors import CaptureError
from .protocol_detector import detect, detect_eio_version
from .selectors import COOKIE_ACCEPT_SELECTORS
from .store import Store
from .types import BrowserWebSocketConfig, CapturedWebSocket, DiscoveryResult, HandshakeConfig, ProtocolInfo
from .widget_detector import WidgetDetector
from .ws_capture import MIN_FRAMES, select_websocket

_LOGGER = logging.getLogger("chatprobe.discovery")

ProgressFn = Callable[[str], None]
DriverFactory = Callable[[PageOptions], BrowserDriver]

COOKIE_BANNER_CLICK_TIMEOUT = 3.0
COOKIE_BANNER_SETTLE = 1.0


def _default_driver_factory(options: PageOptions) -> BrowserDriver:
    from .browser.cdp_page import cdp_driver_factory

    return cdp_driver_factory(options)


def _truncate(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[:limit] + "..."


class DiscoveryService:
    def __init__(
        self,
        store: Store,
        *,
        driver_factory: DriverFactory | None = None,
        settings: ProbeSettings | None = None,
        extractor: CredentialExtractor | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or ProbeSettings.from_env()
        self._driver_factory = driver_factory or _default_driver_factory
        self.extractor = extractor or CredentialExtractor()
        self._shared_driver: BrowserDriver | None = None
        self._driver_lock = threading.Lock()

    # -- cache ----------------------------------------------------------------

    def cache_key(self, target_id: str) -> str:
        return self.settings.key(f"discovery:{target_id}")

    def get_cached(self, target_id: str) -> DiscoveryResult | None:
        try:
            raw = self.store.get(self.cache_key(target_id))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("discovery cache_read_failed target=%s error=%s", target_id, exc)
            return None
        if not raw:
            return None
        try:
            return DiscoveryResult.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError) as exc:
            _LOGGER.warning("discovery cache_corrupt target=%s error=%s", target_id, exc)
            return None

    def set_cached(self, target_id: str, result: DiscoveryResult, ttl_ms: int) -> None:
        try:
            self.store.set(self.cache_key(target_id), json.dumps(result.to_dict()), ttl_ms)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("discovery cache_write_failed target=%s error=%s", target_id, exc)

    def invalidate(self, target_id: str) -> None:
        self.store.delete(self.cache_key(target_id))

    # -- browser lifecycle ----------------------------------------------------

    def _driver_for(self, config: BrowserWebSocketConfig, options: PageOptions) -> BrowserDriver:
        if not config.session.keep_browser_alive:
            return self._driver_factory(options)
        with self._driver_lock:
            if self._shared_driver is None:
                self._shared_driver = self._driver_factory(options)
            return self._shared_driver

    def close_browser(self) -> None:
        with self._driver_lock:
            driver = self._shared_driver
            self._shared_driver = None
        if driver is not None:
            try:
                driver.close()
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("discovery browser_close_failed error=%s", exc)

    # -- discovery --------------------------------------------------------------

    def discover(
        self,
        config: BrowserWebSocketConfig,
        target_id: str,
        *,
        on_progress: ProgressFn | None = None,
        force_fresh: bool = False,
    ) -> DiscoveryResult:
        def progress(message: str) -> None:
            if on_progress is None:
                return
            try:
                on_progress(message)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("discovery progress_callback_failed error=%s", exc)

        if not force_fresh:
            cached = self.get_cached(target_id)
            if cached is not None:
                progress("Using cached discovery result")
                return cached

        started = time.time()
        progress("Starting browser discovery")
        options = PageOptions.from_browser_options(config.browser, headless=self.settings.headless_override)
        driver = self._driver_for(config, options)
        page: BrowserPage | None = None
        try:
            page = driver.open_page(options)
            progress("WebSocket capture attached")

            progress(f"Navigating to {config.page_url}")
            page.navigate(config.page_url, timeout=self.settings.nav_timeout_ms / 1000.0)
            progress("Page loaded")

            self._dismiss_cookie_banners(page, progress)

            progress("Detecting chat widget")
            detector = WidgetDetector(page, config, on_progress=lambda msg: progress(f"[Widget] {msg}"))
            detector.detect()
            progress("Widget activated")

            progress("Waiting for WebSocket connection")
            ws = self._wait_for_websocket(page, config)
            progress(f"WebSocket captured: {ws.url}")

            # Let the handshake and first frames arrive.
            page.pump(self.settings.frame_settle_ms / 1000.0)
            frames = tuple(ws.frames)

            progress("Detecting protocol")
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="chatprobe-discovery") as pool:
                f_protocol = pool.submit(detect, ws.url, frames)
                f_credentials = pool.submit(self.extractor.extract, page, page.context)
                info = self._apply_protocol_override(config, ws.url, f_protocol.result())
                credentials = f_credentials.result()

            result = DiscoveryResult(
                wss_url=ws.url,
                cookies=credentials.cookies,
                headers=dict(ws.headers),
                local_storage=credentials.local_storage,
                session_storage=credentials.session_storage,
                captured_frames=frames,
                detected_protocol=info.protocol,
                handshake=info.handshake,
                handshake_inferred=info.handshake_inferred,
            )
            self._report(result, progress)

            self.set_cached(target_id, result, config.session.max_age)
            progress("Discovery complete and cached")
            _LOGGER.info(
                "discovery ok target=%s protocol=%s frames=%d cookies=%d elapsed_s=%.1f",
                target_id,
                result.detected_protocol,
                len(frames),
                len(result.cookies),
                time.time() - started,
            )
            return result
        finally:
            if page is not None:
                try:
                    page.close()
                except Exception as exc:  # noqa: BLE001
                    _LOGGER.debug("discovery page_close_failed error=%s", exc)
            if not config.session.keep_browser_alive:
                try:
                    driver.close()
                except Exception as exc:  # noqa: BLE001
                    _LOGGER.debug("discovery browser_close_failed error=%s", exc)

    def _dismiss_cookie_banners(self, page: BrowserPage, progress: ProgressFn) -> bool:
        for selector in COOKIE_ACCEPT_SELECTORS:
            try:
                if not page.element_boxes(selector):
                    continue
                if page.click(selector, timeout=COOKIE_BANNER_CLICK_TIMEOUT):
                    progress(f"Dismissed cookie banner ({selector})")
                    page.pump(COOKIE_BANNER_SETTLE)
                    return True
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("discovery cookie_banner_failed selector=%s error=%s", selector, exc)
        return False

    def _wait_for_websocket(self, page: BrowserPage, config: BrowserWebSocketConfig) -> CapturedWebSocket:
        timeout = config.widget_detection.timeout / 1000.0
        deadline = time.time() + timeout
        while True:
            chosen = select_websocket(page.websockets(), config.ws_filter, min_frames=MIN_FRAMES)
            if chosen is not None:
                return chosen
            remaining = deadline - time.time()
            if remaining <= 0:
                break
            page.pump(min(0.2, remaining))

        seen = [ws.url.split("?", 1)[0] for ws in page.websockets()]
        pattern = config.ws_filter.url_pattern
        raise CaptureError(
            reason=(
                f"No WebSocket connection detected on {config.page_url} within {timeout:.0f}s "
                f"(pattern={pattern or '*'}, index={config.ws_filter.index}, observed={len(seen)})"
            ),
            suggestion="Ensure the chat widget opens a WebSocket connection, or relax wsFilter",
            details={"observed": seen, "urlPattern": pattern, "index": config.ws_filter.index},
        )

    @staticmethod
    def _apply_protocol_override(config: BrowserWebSocketConfig, url: str, info: ProtocolInfo) -> ProtocolInfo:
        forced = config.protocol.type
        version = config.protocol.socket_io_version
        if forced == "raw":
            return ProtocolInfo(protocol="raw")
        if forced == "multiplexed" and info.handshake is None:
            return ProtocolInfo(
                protocol="multiplexed",
                handshake=HandshakeConfig(version=version or detect_eio_version(url)),
                handshake_inferred=True,
            )
        if info.handshake is not None and version and info.handshake.version != version:
            hs = info.handshake
            return ProtocolInfo(
                protocol=info.protocol,
                handshake=HandshakeConfig(hs.sid, hs.ping_interval, hs.ping_timeout, version),
                handshake_inferred=info.handshake_inferred,
            )
        return info

    @staticmethod
    def _report(result: DiscoveryResult, progress: ProgressFn) -> None:
        progress(
            f"Credentials: {len(result.cookies)} cookies, {len(result.headers)} headers, "
            f"{len(result.local_storage)} localStorage, {len(result.session_storage)} sessionStorage"
        )
        if result.cookies:
            progress(
                "Cookies: "
                + ", ".join(f"{c['name']}={_truncate(c['value'], 20)} ({c['domain']})" for c in result.cookies)
            )
        if result.headers:
            progress("Headers: " + ", ".join(f"{k}: {_truncate(v, 40)}" for k, v in result.headers.items()))
        sid = f" (SID: {result.handshake.sid})" if result.handshake is not None else ""
        progress(f"Protocol: {result.detected_protocol}{sid}")
        sent = sum(1 for f in result.captured_frames if f.direction == "sent")
        progress(
            f"Frames captured: {len(result.captured_frames)} "
            f"({sent} sent, {len(result.captured_frames) - sent} received)"
        )


__all__ = ["DiscoveryService"]
