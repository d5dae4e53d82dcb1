"""Refresh job queue kept in the shared store.

Repeat definitions, pending jobs, the run schedule, running jobs and the
completed/failed counters all live in the ``Store``, so every worker process
(and the admin CLI) sees the same queue:

* a repeating job owns one schedule slot named after its key, so scheduling
  the same target from several processes still leaves one pending occurrence;
* a due job runs in whichever process removes it from the schedule first.

Each process runs a dispatcher thread that hands claimed jobs to a bounded
pool. Failed jobs are retried with exponential backoff unless the error says
it is not retryable; every failure is reported to ``on_failed`` listeners
with a flag telling whether more attempts follow.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from ..config import ProbeSettings
from ..store import Store

_LOGGER = logging.getLogger("chatprobe.refresh.queue")

DEFAULT_ATTEMPTS = 5
DEFAULT_BACKOFF_MS = 5_000
DEFAULT_POLL_INTERVAL = 1.0

_INF = float("inf")


@dataclass(frozen=True, slots=True)
class RefreshJob:
    target_id: str
    max_age_ms: int
    refresh_ahead_percent: float
    force_fresh: bool = True
    triggered_by: str = "scheduled"

    def to_dict(self) -> dict[str, Any]:
        return {
            "targetId": self.target_id,
            "maxAge": self.max_age_ms,
            "refreshAheadPercent": self.refresh_ahead_percent,
            "forceFresh": self.force_fresh,
            "triggeredBy": self.triggered_by,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RefreshJob:
        return cls(
            target_id=str(raw["targetId"]),
            max_age_ms=int(raw["maxAge"]),
            refresh_ahead_percent=float(raw["refreshAheadPercent"]),
            force_fresh=bool(raw.get("forceFresh", True)),
            triggered_by=str(raw.get("triggeredBy") or "scheduled"),
        )


@dataclass(slots=True)
class _Entry:
    member: str
    job_id: str
    job: RefreshJob
    run_at: float
    attempts_made: int = 0
    repeat_key: str | None = None
    token: str = ""

    @property
    def is_occurrence(self) -> bool:
        return self.repeat_key is not None and self.attempts_made == 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "jobId": self.job_id,
                "job": self.job.to_dict(),
                "attemptsMade": self.attempts_made,
                "repeatKey": self.repeat_key,
            },
            separators=(",", ":"),
        )


@dataclass(frozen=True, slots=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.delayed

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "delayed": self.delayed,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }


Processor = Callable[[RefreshJob], Any]
CompletedListener = Callable[[str, RefreshJob, Any], None]
FailedListener = Callable[[str, RefreshJob, BaseException, bool], None]


def _retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", True))


def _loads(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class JobQueue:
    def __init__(
        self,
        store: Store,
        processor: Processor | None = None,
        *,
        settings: ProbeSettings | None = None,
        name: str = "refresh",
        concurrency: int = 2,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff_ms: int = DEFAULT_BACKOFF_MS,
        clock: Callable[[], float] = time.time,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.store = store
        self.settings = settings or ProbeSettings()
        self._processor = processor
        self.concurrency = max(1, int(concurrency))
        self.attempts = max(1, int(attempts))
        self.backoff_ms = max(0, int(backoff_ms))
        self.poll_interval = max(0.01, float(poll_interval))
        self.worker_id = uuid.uuid4().hex
        self._clock = clock

        prefix = self.settings.key(f"queue:{name}")
        self._repeat_key = f"{prefix}:repeat"
        self._jobs_key = f"{prefix}:jobs"
        self._schedule_key = f"{prefix}:schedule"
        self._active_key = f"{prefix}:active"
        self._completed_key = f"{prefix}:completed"
        self._failed_key = f"{prefix}:failed"

        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._active: dict[str, _Entry] = {}
        self._on_completed: list[CompletedListener] = []
        self._on_failed: list[FailedListener] = []
        self._thread: threading.Thread | None = None
        self._pool: ThreadPoolExecutor | None = None
        self._stopping = False

    def set_processor(self, processor: Processor) -> None:
        self._processor = processor

    def on_completed(self, listener: CompletedListener) -> None:
        self._on_completed.append(listener)

    def on_failed(self, listener: FailedListener) -> None:
        self._on_failed.append(listener)

    # -- enqueueing -------------------------------------------------------------

    def _push(self, entry: _Entry) -> None:
        # Occurrences are rebuilt from the repeat definition when claimed.
        if not entry.is_occurrence:
            self.store.hset(self._jobs_key, {entry.member: entry.to_json()})
        self.store.zadd(self._schedule_key, entry.member, entry.run_at)
        with self._cond:
            self._cond.notify_all()

    def add(self, job_id: str, job: RefreshJob, *, delay_ms: int = 0) -> None:
        self._push(_Entry(member=job_id, job_id=job_id, job=job, run_at=self._clock() + delay_ms / 1000.0))

    def add_repeatable(self, key: str, job: RefreshJob, every_ms: int) -> float:
        """Install (or replace) a repeating job; returns the first run time (epoch seconds)."""
        if every_ms <= 0:
            raise ValueError("every_ms must be positive")
        run_at = self._clock() + every_ms / 1000.0
        definition = json.dumps({"job": job.to_dict(), "everyMs": int(every_ms)}, separators=(",", ":"))
        self.store.hset(self._repeat_key, {key: definition})
        self._push(_Entry(member=key, job_id=key, job=job, run_at=run_at, repeat_key=key))
        return run_at

    def remove_repeatable(self, key: str) -> bool:
        removed = self.store.hdel(self._repeat_key, key) > 0
        self.store.zrem(self._schedule_key, key)
        with self._cond:
            self._cond.notify_all()
        return removed

    def _repeat(self, key: str) -> tuple[RefreshJob, int] | None:
        data = _loads(self.store.hget(self._repeat_key, key))
        if data is None:
            return None
        try:
            return RefreshJob.from_dict(data["job"]), int(data["everyMs"])
        except (KeyError, TypeError, ValueError):
            _LOGGER.warning("queue bad_repeat key=%s", key)
            return None

    def repeatable_keys(self) -> list[str]:
        return sorted(self.store.hgetall(self._repeat_key))

    def next_run_at(self, key: str) -> float | None:
        if self.store.hget(self._repeat_key, key) is None:
            return None
        return self.store.zscore(self._schedule_key, key)

    # -- introspection ----------------------------------------------------------

    def stats(self) -> QueueStats:
        pending = self.store.zcard(self._schedule_key)
        waiting = self.store.zcount(self._schedule_key, self._clock())
        return QueueStats(
            waiting=waiting,
            active=len(self.store.hgetall(self._active_key)),
            delayed=pending - waiting,
            completed=int(self.store.get(self._completed_key) or 0),
            failed=int(self.store.get(self._failed_key) or 0),
        )

    def _member_target(self, member: str) -> str | None:
        repeat = self._repeat(member)
        if repeat is not None:
            return repeat[0].target_id
        data = _loads(self.store.hget(self._jobs_key, member))
        job = (data or {}).get("job")
        return job.get("targetId") if isinstance(job, dict) else None

    def depth(self, target_id: str) -> int:
        pending = sum(
            1
            for member, _ in self.store.zrange_by_score(self._schedule_key, _INF)
            if self._member_target(member) == target_id
        )
        active = sum(
            1
            for raw in self.store.hgetall(self._active_key).values()
            if (_loads(raw) or {}).get("targetId") == target_id
        )
        return pending + active

    # -- execution --------------------------------------------------------------

    def _claim(self, member: str, score: float, now: float) -> _Entry | None:
        if not self.store.zrem(self._schedule_key, member):
            return None
        repeat = self._repeat(member)
        if repeat is not None:
            job, every_ms = repeat
            entry = _Entry(member=member, job_id=member, job=job, run_at=score, repeat_key=member)
            nxt = max(score + every_ms / 1000.0, now)
            self.store.zadd(self._schedule_key, member, nxt)
            return entry

        data = _loads(self.store.hget(self._jobs_key, member))
        self.store.hdel(self._jobs_key, member)
        if data is None:
            _LOGGER.debug("queue orphan_member member=%s", member)
            return None
        try:
            return _Entry(
                member=member,
                job_id=str(data["jobId"]),
                job=RefreshJob.from_dict(data["job"]),
                run_at=score,
                attempts_made=int(data.get("attemptsMade") or 0),
                repeat_key=data.get("repeatKey"),
            )
        except (KeyError, TypeError, ValueError):
            _LOGGER.warning("queue bad_job member=%s", member)
            return None

    def _take_due(self, now: float) -> _Entry | None:
        while True:
            due = self.store.zrange_by_score(self._schedule_key, now, limit=self.concurrency + 1)
            if not due:
                return None
            for member, score in due:
                entry = self._claim(member, score, now)
                if entry is None:
                    continue
                entry.token = f"{self.worker_id}:{next(self._seq)}"
                record = {"jobId": entry.job_id, "targetId": entry.job.target_id, "startedAt": now}
                self.store.hset(self._active_key, {entry.token: json.dumps(record, separators=(",", ":"))})
                with self._cond:
                    self._active[entry.token] = entry
                return entry

    def _finish(self, entry: _Entry) -> None:
        self.store.hdel(self._active_key, entry.token)
        with self._cond:
            self._active.pop(entry.token, None)
            self._cond.notify_all()

    def _execute(self, entry: _Entry) -> None:
        processor = self._processor
        try:
            if processor is None:
                raise RuntimeError("JobQueue has no processor")
            result = processor(entry.job)
        except Exception as exc:  # noqa: BLE001
            self._handle_failure(entry, exc)
        else:
            self._finish(entry)
            self.store.incr(self._completed_key)
            for listener in list(self._on_completed):
                self._notify(listener, entry.job_id, entry.job, result)

    def _handle_failure(self, entry: _Entry, exc: BaseException) -> None:
        attempts_made = entry.attempts_made + 1
        final = attempts_made >= self.attempts or not _retryable(exc)
        if not final and entry.repeat_key is not None and self._repeat(entry.repeat_key) is None:
            # Schedule was cancelled while this run was in flight.
            final = True
        self._finish(entry)
        if final:
            self.store.incr(self._failed_key)
        else:
            run_at = self._clock() + self.backoff_ms * (2 ** (attempts_made - 1)) / 1000.0
            self._push(
                _Entry(
                    member=f"{entry.job_id}:retry:{attempts_made}:{int(run_at * 1000)}",
                    job_id=entry.job_id,
                    job=entry.job,
                    run_at=run_at,
                    attempts_made=attempts_made,
                    repeat_key=entry.repeat_key,
                )
            )
        _LOGGER.warning(
            "job failed id=%s attempt=%d/%d final=%s error=%s",
            entry.job_id,
            attempts_made,
            self.attempts,
            final,
            exc,
        )
        for listener in list(self._on_failed):
            self._notify(listener, entry.job_id, entry.job, exc, final)

    @staticmethod
    def _notify(listener: Callable[..., None], *args: Any) -> None:
        try:
            listener(*args)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("job listener_failed error=%s", exc)

    def run_due(self) -> int:
        """Run every due job inline in the calling thread; returns how many ran."""
        ran = 0
        while True:
            entry = self._take_due(self._clock())
            if entry is None:
                return ran
            self._execute(entry)
            ran += 1

    def start(self) -> None:
        with self._cond:
            if self._thread is not None:
                return
            self._stopping = False
            self._pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="chatprobe-job")
            self._thread = threading.Thread(target=self._loop, name="chatprobe-queue", daemon=True)
            self._thread.start()

    def _idle_wait(self, busy: bool) -> float:
        if busy:
            return self.poll_interval
        head = self.store.zrange_by_score(self._schedule_key, _INF, limit=1)
        if not head:
            return self.poll_interval
        return max(0.01, min(self.poll_interval, head[0][1] - self._clock()))

    def _loop(self) -> None:
        while True:
            with self._cond:
                if self._stopping:
                    return
                busy = len(self._active) >= self.concurrency
            entry = None
            wait = self.poll_interval
            try:
                if not busy:
                    entry = self._take_due(self._clock())
                if entry is None:
                    wait = self._idle_wait(busy)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("queue poll_failed error=%s", exc)
            if entry is None:
                with self._cond:
                    if not self._stopping:
                        self._cond.wait(timeout=wait)
                continue
            with self._cond:
                pool = self._pool
            if pool is None:
                # Stopped between claim and submit: put the job back.
                self._finish(entry)
                self._push(entry)
                return
            pool.submit(self._execute, entry)

    def stop(self, *, wait: bool = True) -> None:
        with self._cond:
            self._stopping = True
            thread = self._thread
            pool = self._pool
            self._thread = None
            self._pool = None
            self._cond.notify_all()
        if thread is not None and wait:
            thread.join(timeout=5.0)
        if pool is not None:
            pool.shutdown(wait=wait)


__all__ = ["DEFAULT_ATTEMPTS", "DEFAULT_BACKOFF_MS", "JobQueue", "QueueStats", "RefreshJob"]
