"""Command line entry point.

    chatprobe discover config.json [--target ID] [--force]
    chatprobe detect URL [frames.json]
    chatprobe worker --targets targets.json
    chatprobe status TARGET_ID --targets targets.json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any

from .config import ProbeSettings, log_level_from_env
from .discovery import DiscoveryService
from .errors import ProbeError
from .protocol_detector import detect
from .refresh.admin import RefreshAdmin
from .refresh.events import RefreshEvents
from .refresh.queue import JobQueue
from .refresh.scheduler import RefreshScheduler
from .refresh.status import RefreshStatusStore
from .refresh.worker import RefreshWorker
from .store import create_store
from .targets import InMemoryTargets
from .types import BrowserWebSocketConfig, CapturedFrame

logger = logging.getLogger("chatprobe")


def _load_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _print(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
    sys.stdout.flush()


def _cmd_discover(args: argparse.Namespace, settings: ProbeSettings) -> int:
    config = BrowserWebSocketConfig.from_dict(_load_json(args.config))
    store = create_store(settings)
    service = DiscoveryService(store, settings=settings)
    try:
        result = service.discover(
            config,
            args.target,
            on_progress=lambda message: logger.info("progress %s", message),
            force_fresh=args.force,
        )
    finally:
        service.close_browser()
        store.close()
    _print(result.to_dict())
    return 0


def _cmd_detect(args: argparse.Namespace, settings: ProbeSettings) -> int:
    frames: list[CapturedFrame] = []
    if args.frames:
        for item in _load_json(args.frames):
            if isinstance(item, str):
                frames.append(CapturedFrame(direction="received", data=item, timestamp=0))
            elif isinstance(item, dict):
                frames.append(CapturedFrame.from_dict(item))
    info = detect(args.url, frames)
    _print(
        {
            "protocol": info.protocol,
            "handshake": info.handshake.to_dict() if info.handshake else None,
            "handshakeInferred": info.handshake_inferred,
        }
    )
    return 0


def _build_refresh(settings: ProbeSettings, targets_path: str):  # noqa: ANN202
    store = create_store(settings)
    targets = InMemoryTargets.from_file(targets_path)
    discovery = DiscoveryService(store, settings=settings)
    status = RefreshStatusStore(store, settings)
    events = RefreshEvents(store, settings)
    worker = RefreshWorker(store, discovery, targets, status, events, settings=settings)
    queue = JobQueue(
        store,
        worker,
        settings=settings,
        concurrency=settings.worker_concurrency,
        attempts=settings.job_attempts,
        backoff_ms=settings.job_backoff_ms,
    )
    scheduler = RefreshScheduler(queue, status)
    return store, targets, discovery, status, queue, scheduler


def _cmd_worker(args: argparse.Namespace, settings: ProbeSettings) -> int:
    store, targets, discovery, _status, queue, scheduler = _build_refresh(settings, args.targets)
    started = 0
    for target_id in targets.ids():
        record = targets.get(target_id)
        if record is None:
            continue
        try:
            if scheduler.auto_start(target_id, record.browser_config()):
                started += 1
        except ProbeError as exc:
            logger.warning("worker skip_target target=%s error=%s", target_id, exc)
    logger.info("worker started targets=%d concurrency=%d", started, queue.concurrency)

    queue.start()
    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("worker stopping")
    finally:
        queue.stop()
        discovery.close_browser()
        store.close()
    return 0


def _cmd_status(args: argparse.Namespace, settings: ProbeSettings) -> int:
    store, targets, _discovery, status, queue, scheduler = _build_refresh(settings, args.targets)
    try:
        admin = RefreshAdmin(scheduler, status, queue, targets)
        _print(admin.overview(args.target_id))
    finally:
        store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatprobe", description="Chat widget WebSocket discovery")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("discover", help="Run browser discovery for one configuration")
    p.add_argument("config", help="Path to a protocol configuration JSON file")
    p.add_argument("--target", default="cli", help="Target id used for the cache key (default: cli)")
    p.add_argument("--force", action="store_true", help="Ignore the cached result")
    p.set_defaults(func=_cmd_discover)

    p = sub.add_parser("detect", help="Classify a WebSocket URL and optional captured frames")
    p.add_argument("url")
    p.add_argument("frames", nargs="?", help="JSON list of frames (strings or {direction,data,timestamp})")
    p.set_defaults(func=_cmd_detect)

    p = sub.add_parser("worker", help="Run the refresh queue for every target in a file")
    p.add_argument("--targets", required=True, help="Path to a targets JSON file")
    p.set_defaults(func=_cmd_worker)

    p = sub.add_parser("status", help="Show refresh status for a target")
    p.add_argument("target_id")
    p.add_argument("--targets", required=True, help="Path to a targets JSON file")
    p.set_defaults(func=_cmd_status)
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=log_level_from_env(),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    args = build_parser().parse_args(argv)
    settings = ProbeSettings.from_env()
    try:
        return int(args.func(args, settings))
    except ProbeError as exc:
        logger.error("command failed %s", exc)
        _print(exc.to_dict())
        return 1


if __name__ == "__main__":
    sys.exit(main())
