from __future__ import annotations

import threading
from typing import Any

from chatprobe.refresh.queue import JobQueue
from chatprobe.refresh.scheduler import RefreshScheduler, refresh_interval_ms
from chatprobe.refresh.status import RefreshStatusStore
from chatprobe.store import MemoryStore
from chatprobe.types import BrowserWebSocketConfig


class Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


def _config(**session: object) -> BrowserWebSocketConfig:
    return BrowserWebSocketConfig.from_dict({"pageUrl": "https://shop.example.com/", "session": session})


def _scheduler(processor: Any = None) -> tuple[RefreshScheduler, JobQueue, RefreshStatusStore, Clock]:
    clock = Clock()
    store = MemoryStore()
    queue = JobQueue(store, processor or (lambda job: None), clock=clock)
    status = RefreshStatusStore(store)
    return RefreshScheduler(queue, status, clock=clock), queue, status, clock


def test_interval_is_floor_of_max_age_times_ahead() -> None:
    assert refresh_interval_ms(300000, 0.75) == 225000
    assert refresh_interval_ms(1001, 0.5) == 500


def test_schedule_records_status() -> None:
    scheduler, queue, status, clock = _scheduler()
    assert scheduler.schedule("t1", _config()) == 225000
    current = status.get("t1")
    assert current.is_active is True
    assert current.refresh_interval_ms == 225000
    assert current.next_refresh_at is not None
    assert current.next_refresh_at.timestamp() == clock.now + 225
    assert scheduler.is_scheduled("t1")
    assert scheduler.get_scheduled_targets() == ["t1"]


def test_force_refresh_does_not_touch_repeating_job() -> None:
    scheduler, queue, status, clock = _scheduler()
    scheduler.schedule("t1", _config(maxAge=60000))
    job_id = scheduler.force_refresh("t1")
    assert job_id == f"refresh:t1:manual:{int(clock.now * 1000)}"
    assert queue.repeatable_keys() == ["refresh:t1"]
    assert queue.depth("t1") == 2
    assert scheduler.get_scheduled_targets() == ["t1"]


def test_cancel_removes_job_and_status() -> None:
    scheduler, queue, status, _ = _scheduler()
    scheduler.schedule("t1", _config())
    scheduler.cancel("t1")
    scheduler.cancel("t1")
    assert not scheduler.is_scheduled("t1")
    assert status.get("t1").is_active is False


def test_auto_start_respects_token_refresh_flag() -> None:
    scheduler, queue, _, _ = _scheduler()
    assert scheduler.auto_start("t1", _config()) is True
    assert scheduler.auto_start("t2", _config(tokenRefreshEnabled=False)) is False
    assert scheduler.get_scheduled_targets() == ["t1"]
    assert queue.stats().waiting == 1


def test_cancel_during_running_refresh_stops_future_runs() -> None:
    started = threading.Event()
    release = threading.Event()
    ran: list[str] = []

    def blocking(job: Any) -> None:
        ran.append(job.target_id)
        started.set()
        release.wait(5.0)

    scheduler, queue, status, clock = _scheduler(blocking)
    scheduler.schedule("t1", _config(maxAge=60000))
    clock.now += 45
    runner = threading.Thread(target=queue.run_due)
    runner.start()
    try:
        assert started.wait(5.0)
        scheduler.cancel("t1")
    finally:
        release.set()
        runner.join(5.0)

    assert not runner.is_alive()
    assert ran == ["t1"]
    assert queue.repeatable_keys() == []
    assert queue.stats().completed == 1
    assert status.get("t1").is_active is False

    clock.now += 3600
    assert queue.run_due() == 0
    assert ran == ["t1"]


def test_schedulers_sharing_a_store_install_one_job() -> None:
    scheduler, queue, status, clock = _scheduler()
    other_queue = JobQueue(queue.store, lambda job: None, clock=clock)
    other = RefreshScheduler(other_queue, status, clock=clock)

    scheduler.schedule("t1", _config())
    other.schedule("t1", _config())
    assert other.is_scheduled("t1")
    assert queue.repeatable_keys() == ["refresh:t1"]
    assert queue.stats().total == 1
    assert other_queue.depth("t1") == 1
