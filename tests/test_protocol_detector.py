from __future__ import annotations

import logging

import pytest

from chatprobe.types import CapturedFrame


def _received(*data: str) -> list[CapturedFrame]:
    return [CapturedFrame(direction="received", data=d, timestamp=i) for i, d in enumerate(data)]


def test_end_to_end_socket_io_capture() -> None:
    from chatprobe.protocol_detector import detect

    frames = _received(
        '0{"sid":"abc","pingInterval":25000,"pingTimeout":20000}',
        "40",
        '42["message",{"text":"hi"}]',
    )
    info = detect("wss://chat.example.com/socket.io/?EIO=4&transport=websocket", frames)
    assert info.protocol == "multiplexed"
    assert info.is_multiplexed
    assert info.handshake is not None
    assert info.handshake.to_dict() == {"sid": "abc", "pingInterval": 25000, "pingTimeout": 20000, "version": 4}
    assert info.handshake_inferred is False


def test_eio_version_from_url() -> None:
    from chatprobe.protocol_detector import detect_eio_version

    assert detect_eio_version("wss://x/socket.io/?EIO=3&transport=websocket") == 3
    assert detect_eio_version("wss://x/ws?eio=4") == 4
    assert detect_eio_version("wss://x/ws?EIO=9") == 4
    assert detect_eio_version("wss://x/ws") == 4


def test_url_signals() -> None:
    from chatprobe.protocol_detector import is_multiplexed_url

    assert is_multiplexed_url("wss://x/Socket.IO/?transport=websocket")
    assert is_multiplexed_url("wss://x/realtime?EIO=4")
    assert not is_multiplexed_url("wss://x/socket.iox/")
    assert not is_multiplexed_url("wss://x/chat")
    assert not is_multiplexed_url("")


@pytest.mark.parametrize(
    "data",
    [
        '0{"sid":1}',
        "0{not json",
        '0{"pingInterval":1}',
        '{"sid":"abc"}',
        "0[1,2]",
    ],
)
def test_parse_handshake_rejects_malformed(data: str) -> None:
    from chatprobe.protocol_detector import parse_handshake

    assert parse_handshake(data) is None


def test_parse_handshake_defaults_missing_timing() -> None:
    from chatprobe.protocol_detector import parse_handshake

    parsed = parse_handshake('0{"sid":"s1"}')
    assert parsed is not None
    assert (parsed.sid, parsed.ping_interval, parsed.ping_timeout) == ("s1", 25000, 20000)


def test_single_signal_frame_is_not_enough() -> None:
    from chatprobe.protocol_detector import detect, has_multiplexed_frame_patterns

    assert not has_multiplexed_frame_patterns(_received("2", "2", "hello"))
    assert detect("wss://x/chat", _received("2", "hello")).protocol == "raw"


def test_two_distinct_signals_classify_multiplexed() -> None:
    from chatprobe.protocol_detector import has_multiplexed_frame_patterns

    assert has_multiplexed_frame_patterns(_received("2", "3"))
    assert has_multiplexed_frame_patterns(_received("40/support,", '42["hi"]'))


def test_sent_handshake_is_ignored() -> None:
    from chatprobe.protocol_detector import find_handshake

    frames = [CapturedFrame(direction="sent", data='0{"sid":"client"}', timestamp=1)]
    assert find_handshake(frames) is None


def test_url_signal_without_handshake_is_flagged(caplog: pytest.LogCaptureFixture) -> None:
    from chatprobe.protocol_detector import detect

    with caplog.at_level(logging.WARNING, logger="chatprobe.protocol"):
        info = detect("wss://x/socket.io/?EIO=3", [])
    assert info.protocol == "multiplexed"
    assert info.handshake_inferred is True
    assert info.handshake is not None
    assert info.handshake.sid == ""
    assert info.handshake.version == 3
    assert "handshake_missing" in caplog.text


def test_received_handshake_alone_classifies_multiplexed() -> None:
    from chatprobe.protocol_detector import detect

    info = detect(
        "wss://chat.example.com/ws",
        _received('0{"sid":"abc","pingInterval":10000,"pingTimeout":5000}'),
    )
    assert info.protocol == "multiplexed"
    assert info.handshake_inferred is False
    assert info.handshake is not None
    assert (info.handshake.sid, info.handshake.ping_interval, info.handshake.ping_timeout) == ("abc", 10000, 5000)
    assert info.handshake.version == 4
