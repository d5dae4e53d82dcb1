from __future__ import annotations

from chatprobe.types import CapturedWebSocket, WsFilter
from chatprobe.ws_capture import WebSocketCapture, matches_url_pattern, select_websocket


def _event(method: str, session: str = "", **params: object) -> dict:
    return {"method": method, "sessionId": session, "params": params}


def test_capture_builds_sockets_from_events() -> None:
    cap = WebSocketCapture()
    cap.handle_event(_event("Network.webSocketCreated", requestId="1", url="wss://chat.example.com/ws"))
    cap.handle_event(
        _event(
            "Network.webSocketWillSendHandshakeRequest",
            requestId="1",
            request={"headers": {"Origin": "https://example.com", "User-Agent": "UA"}},
        )
    )
    cap.handle_event(_event("Network.webSocketFrameSent", requestId="1", response={"payloadData": "hello"}))
    cap.handle_event(
        _event("Network.webSocketFrameReceived", requestId="1", wallTime=1.5, response={"payloadData": "welcome"})
    )
    cap.handle_event(_event("Network.webSocketClosed", requestId="1"))
    cap.handle_event(_event("Page.loadEventFired"))

    [ws] = cap.sockets()
    assert ws.url == "wss://chat.example.com/ws"
    assert ws.headers["Origin"] == "https://example.com"
    assert [(f.direction, f.data) for f in ws.frames] == [("sent", "hello"), ("received", "welcome")]
    assert ws.frames[1].timestamp == 1500
    assert ws.closed


def test_same_request_id_on_different_sessions_stays_separate() -> None:
    cap = WebSocketCapture()
    cap.handle_event(_event("Network.webSocketCreated", "main", requestId="7", url="wss://a/ws"))
    cap.handle_event(_event("Network.webSocketCreated", "frame", requestId="7", url="wss://b/ws"))
    assert [ws.url for ws in cap.sockets()] == ["wss://a/ws", "wss://b/ws"]
    assert WebSocketCapture.wants("Network.webSocketFrameReceived")
    assert not WebSocketCapture.wants("Network.requestWillBeSent")


def test_url_pattern_regex_and_fallback() -> None:
    assert matches_url_pattern("wss://x/socket.io/?EIO=4", r"socket\.io")
    assert matches_url_pattern("wss://x/chat", None)
    assert not matches_url_pattern("wss://x/chat", r"^https")
    assert matches_url_pattern("wss://x/chat[1]", "chat[1")


def _ws(url: str, frames: int) -> CapturedWebSocket:
    ws = CapturedWebSocket(url=url)
    for i in range(frames):
        ws.add_frame("received", str(i), i)
    return ws


def test_select_websocket_honours_index_and_minimum_frames() -> None:
    sockets = [_ws("wss://analytics/ws", 5), _ws("wss://chat/ws", 3), _ws("wss://chat/ws2", 1)]
    assert select_websocket(sockets, WsFilter()) is sockets[0]
    assert select_websocket(sockets, WsFilter(url_pattern="chat")) is sockets[1]
    assert select_websocket(sockets, WsFilter(url_pattern="chat", index=1)) is None
    assert select_websocket(sockets, WsFilter(url_pattern="chat", index=5)) is None
