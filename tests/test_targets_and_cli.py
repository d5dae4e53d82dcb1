from __future__ import annotations

import json
from pathlib import Path

import pytest

from chatprobe.errors import ConfigurationError
from chatprobe.targets import InMemoryTargets, TargetRecord


def test_targets_from_file_accepts_list_or_object(tmp_path: Path) -> None:
    listing = [{"id": "t1", "name": "Shop", "protocolConfig": {"pageUrl": "https://shop.example.com/"}}]
    as_list = tmp_path / "list.json"
    as_list.write_text(json.dumps(listing), encoding="utf-8")
    as_object = tmp_path / "object.json"
    as_object.write_text(json.dumps({"targets": listing}), encoding="utf-8")

    for path in (as_list, as_object):
        targets = InMemoryTargets.from_file(path)
        assert targets.ids() == ["t1"]
        record = targets.get("t1")
        assert record is not None
        assert record.browser_config().page_url == "https://shop.example.com/"


def test_targets_without_ids_are_rejected(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_text(json.dumps([{"name": "nameless"}]), encoding="utf-8")
    with pytest.raises(ConfigurationError):
        InMemoryTargets.from_file(path)


def test_target_without_protocol_config() -> None:
    with pytest.raises(ConfigurationError, match="no protocol configuration"):
        TargetRecord(id="t1").browser_config()


def test_cli_detect_prints_verdict(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    from chatprobe.main import main

    frames = tmp_path / "frames.json"
    frames.write_text(
        json.dumps(['0{"sid":"abc","pingInterval":1000,"pingTimeout":500}', {"direction": "received", "data": "40"}]),
        encoding="utf-8",
    )
    assert main(["detect", "wss://chat.example.com/socket.io/?EIO=3", str(frames)]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out == {
        "protocol": "multiplexed",
        "handshake": {"sid": "abc", "pingInterval": 1000, "pingTimeout": 500, "version": 3},
        "handshakeInferred": False,
    }


def test_cli_reports_configuration_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    from chatprobe.main import main

    config = tmp_path / "config.json"
    config.write_text(json.dumps({"pageUrl": ""}), encoding="utf-8")
    assert main(["discover", str(config)]) == 1
    out = json.loads(capsys.readouterr().out)
    assert out["stage"] == "config"
    assert out["reason"] == "pageUrl is required"


def test_cli_status_overview(tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch) -> None:
    from chatprobe.main import main

    monkeypatch.delenv("CHATPROBE_REDIS_URL", raising=False)
    targets = tmp_path / "targets.json"
    targets.write_text(
        json.dumps([{"id": "t1", "protocolConfig": {"pageUrl": "https://shop.example.com/"}}]), encoding="utf-8"
    )
    assert main(["status", "t1", "--targets", str(targets)]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["targetId"] == "t1"
    assert out["isScheduled"] is False
    assert out["consecutiveFailures"] == 0


def test_cli_status_sees_schedule_from_another_worker(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    from chatprobe import main as main_module
    from chatprobe.refresh.queue import JobQueue
    from chatprobe.refresh.scheduler import RefreshScheduler
    from chatprobe.refresh.status import RefreshStatusStore
    from chatprobe.store import MemoryStore
    from chatprobe.types import BrowserWebSocketConfig

    shared = MemoryStore()
    worker_queue = JobQueue(shared, lambda job: None)
    RefreshScheduler(worker_queue, RefreshStatusStore(shared)).schedule(
        "t1", BrowserWebSocketConfig.from_dict({"pageUrl": "https://shop.example.com/"})
    )

    monkeypatch.setattr(main_module, "create_store", lambda settings: shared)
    targets = tmp_path / "targets.json"
    targets.write_text(
        json.dumps([{"id": "t1", "protocolConfig": {"pageUrl": "https://shop.example.com/"}}]), encoding="utf-8"
    )
    assert main_module.main(["status", "t1", "--targets", str(targets)]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["isActive"] is True
    assert out["isScheduled"] is True
    assert out["queueDepth"] == 1
    assert out["nextRefreshAt"] is not None
