from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chatprobe.errors import ConfigurationError
from chatprobe.types import BrowserWebSocketConfig


def test_minimal_config_gets_defaults() -> None:
    cfg = BrowserWebSocketConfig.from_dict({"pageUrl": "https://shop.example.com/"})
    assert cfg.widget_detection.strategy == "heuristic"
    assert cfg.widget_detection.timeout == 15000
    assert cfg.ws_filter.index == 0
    assert cfg.browser.headless is True
    assert cfg.session.max_age == 300000
    assert cfg.session.refresh_ahead_percent == 0.75
    assert cfg.session.token_refresh_enabled is True
    assert cfg.protocol.type == "auto"


def test_full_config_parses_camel_case() -> None:
    cfg = BrowserWebSocketConfig.from_dict(
        {
            "pageUrl": "https://shop.example.com/",
            "widgetDetection": {
                "strategy": "steps",
                "steps": [
                    {"action": "click", "selector": "#open"},
                    {"action": "type", "selector": "#name", "value": "Ada"},
                    {"action": "wait", "timeout": 500},
                ],
                "hints": {"buttonText": ["Chat"], "position": "bottom-right", "elementType": "button"},
            },
            "wsFilter": {"urlPattern": "socket\\.io", "index": 1},
            "browser": {"headless": False, "viewport": {"width": 1280, "height": 720}, "proxy": "http://p:1"},
            "session": {"maxAge": 60000, "keepBrowserAlive": True, "refreshAheadPercent": 0.5},
            "protocol": {"type": "socket.io", "socketIOVersion": 3},
        }
    )
    assert [s.action for s in cfg.widget_detection.steps] == ["click", "type", "wait"]
    assert cfg.widget_detection.steps[1].value == "Ada"
    assert cfg.widget_detection.hints is not None
    assert cfg.widget_detection.hints.button_text == ("Chat",)
    assert cfg.ws_filter.url_pattern == "socket\\.io"
    assert cfg.browser.viewport == (1280, 720)
    assert cfg.session.keep_browser_alive is True
    assert cfg.protocol.type == "multiplexed"
    assert cfg.protocol.socket_io_version == 3


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"pageUrl": "ftp://example.com"},
        {"pageUrl": "https://x", "widgetDetection": {"strategy": "selector"}},
        {"pageUrl": "https://x", "widgetDetection": {"strategy": "steps"}},
        {"pageUrl": "https://x", "widgetDetection": {"strategy": "magic"}},
        {"pageUrl": "https://x", "widgetDetection": {"steps": [{"action": "dance"}]}},
        {"pageUrl": "https://x", "wsFilter": {"index": -1}},
        {"pageUrl": "https://x", "session": {"refreshAheadPercent": 1.5}},
        {"pageUrl": "https://x", "session": {"maxAge": 0}},
        {"pageUrl": "https://x", "protocol": {"type": "mqtt"}},
        {"pageUrl": "https://x", "browser": {"viewport": {"width": "wide"}}},
        {"pageUrl": "https://x", "session": {"keepBrowserAlive": "false"}},
        {"pageUrl": "https://x", "session": {"tokenRefreshEnabled": "no"}},
        {"pageUrl": "https://x", "browser": {"headless": 1}},
    ],
)
def test_invalid_configs_are_rejected(raw: dict) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        BrowserWebSocketConfig.from_dict(raw)
    assert excinfo.value.retryable is False
    assert excinfo.value.stage == "config"


def test_discovery_result_serializes_camel_case() -> None:
    from chatprobe.types import CapturedFrame, DiscoveryResult, HandshakeConfig

    at = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    result = DiscoveryResult(
        wss_url="wss://chat.example.com/socket.io/?EIO=4",
        cookies=({"name": "sid", "value": "1", "domain": ".example.com"},),
        headers={"Origin": "https://example.com"},
        local_storage={"token": "t"},
        captured_frames=(CapturedFrame(direction="received", data="40", timestamp=5),),
        detected_protocol="multiplexed",
        handshake=HandshakeConfig(sid="abc"),
        discovered_at=at,
    )
    data = result.to_dict()
    assert data["wssUrl"] == result.wss_url
    assert data["discoveredAt"] == "2026-01-02T03:04:05+00:00"
    assert data["handshakeConfig"]["pingInterval"] == 25000
    assert "handshakeInferred" not in data
    assert DiscoveryResult.from_dict(data) == result


def test_discovery_result_age() -> None:
    from chatprobe.types import DiscoveryResult

    at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    result = DiscoveryResult(wss_url="wss://x", discovered_at=at)
    assert result.age_ms(at + timedelta(seconds=2)) == 2000
    assert not result.is_multiplexed


def test_probe_error_rendering() -> None:
    from chatprobe.errors import CaptureError

    err = CaptureError(reason="No WebSocket", suggestion="Check wsFilter.urlPattern", details={"seen": 0})
    assert str(err) == "[capture] No WebSocket. Suggestion: Check wsFilter.urlPattern"
    assert err.to_dict()["retryable"] is True
    assert err.to_dict()["details"] == {"seen": 0}


def test_explicit_false_and_zero_are_kept() -> None:
    from chatprobe.types import HandshakeConfig

    cfg = BrowserWebSocketConfig.from_dict(
        {"pageUrl": "https://x", "session": {"tokenRefreshEnabled": False}, "browser": {"headless": False}}
    )
    assert cfg.session.token_refresh_enabled is False
    assert cfg.browser.headless is False

    handshake = HandshakeConfig.from_dict({"sid": "abc", "pingInterval": 0, "pingTimeout": 0})
    assert (handshake.ping_interval, handshake.ping_timeout, handshake.version) == (0, 0, 4)
