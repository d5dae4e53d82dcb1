"""Shared key-value primitives: cache, lease lock, hash records, sorted sets, pub/sub.

``MemoryStore`` serves a single process (tests, the CLI without Redis);
``RedisStore`` shares state across worker processes. Both honour the same
lease contract: set-if-absent with a TTL, released only by the holder via
compare-then-delete.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

import redis

from .config import ProbeSettings

_LOGGER = logging.getLogger("chatprobe.store")

MessageHandler = Callable[[str], None]

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class Subscription(Protocol):
    def close(self) -> None: ...


class Store(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_ms: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def acquire(self, key: str, owner: str, ttl_ms: int) -> bool: ...

    def release(self, key: str, owner: str) -> bool: ...

    def hset(self, key: str, mapping: dict[str, str]) -> None: ...

    def hgetall(self, key: str) -> dict[str, str]: ...

    def hget(self, key: str, field: str) -> str | None: ...

    def hdel(self, key: str, field: str) -> int: ...

    def incr(self, key: str) -> int: ...

    def zadd(self, key: str, member: str, score: float) -> None: ...

    def zrem(self, key: str, member: str) -> bool: ...

    def zscore(self, key: str, member: str) -> float | None: ...

    def zrange_by_score(self, key: str, max_score: float, limit: int | None = None) -> list[tuple[str, float]]: ...

    def zcount(self, key: str, max_score: float) -> int: ...

    def zcard(self, key: str) -> int: ...

    def publish(self, channel: str, message: str) -> int: ...

    def subscribe(self, channel: str, handler: MessageHandler) -> Subscription: ...

    def close(self) -> None: ...


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


def _score_bound(score: float) -> float | str:
    return "+inf" if score == float("inf") else score


class _MemorySubscription:
    def __init__(self, store: MemoryStore, channel: str, handler: MessageHandler) -> None:
        self._store = store
        self._channel = channel
        self._handler = handler

    def close(self) -> None:
        self._store._unsubscribe(self._channel, self._handler)


class MemoryStore:
    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: dict[str, tuple[str, int | None]] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._subscribers: dict[str, list[MessageHandler]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        with self._lock:
            expires_at = None if not ttl_ms else self._clock() + int(ttl_ms)
            self._values[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._hashes.pop(key, None)
            self._zsets.pop(key, None)

    def acquire(self, key: str, owner: str, ttl_ms: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._values[key] = (owner, self._clock() + int(ttl_ms))
            return True

    def release(self, key: str, owner: str) -> bool:
        with self._lock:
            if self._live(key) != owner:
                return False
            del self._values[key]
            return True

    def hset(self, key: str, mapping: dict[str, str]) -> None:
        with self._lock:
            self._hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def hgetall(self, key: str) -> dict[str, str]:
        with self._lock:
            return dict(self._hashes.get(key, {}))

    def hget(self, key: str, field: str) -> str | None:
        with self._lock:
            return self._hashes.get(key, {}).get(field)

    def hdel(self, key: str, field: str) -> int:
        with self._lock:
            return 0 if self._hashes.get(key, {}).pop(field, None) is None else 1

    def incr(self, key: str) -> int:
        with self._lock:
            current = self._live(key)
            expires_at = self._values[key][1] if current is not None else None
            value = int(current or 0) + 1
            self._values[key] = (str(value), expires_at)
            return value

    def zadd(self, key: str, member: str, score: float) -> None:
        with self._lock:
            self._zsets.setdefault(key, {})[member] = float(score)

    def zrem(self, key: str, member: str) -> bool:
        with self._lock:
            return self._zsets.get(key, {}).pop(member, None) is not None

    def zscore(self, key: str, member: str) -> float | None:
        with self._lock:
            return self._zsets.get(key, {}).get(member)

    def zrange_by_score(self, key: str, max_score: float, limit: int | None = None) -> list[tuple[str, float]]:
        with self._lock:
            items = sorted(
                ((m, s) for m, s in self._zsets.get(key, {}).items() if s <= max_score),
                key=lambda item: (item[1], item[0]),
            )
        return items if limit is None else items[:limit]

    def zcount(self, key: str, max_score: float) -> int:
        with self._lock:
            return sum(1 for s in self._zsets.get(key, {}).values() if s <= max_score)

    def zcard(self, key: str) -> int:
        with self._lock:
            return len(self._zsets.get(key, {}))

    def publish(self, channel: str, message: str) -> int:
        with self._lock:
            handlers = list(self._subscribers.get(channel, ()))
        for handler in handlers:
            try:
                handler(message)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("pubsub handler_failed channel=%s error=%s", channel, exc)
        return len(handlers)

    def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        with self._lock:
            self._subscribers.setdefault(channel, []).append(handler)
        return _MemorySubscription(self, channel, handler)

    def _unsubscribe(self, channel: str, handler: MessageHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(channel, [])
            if handler in handlers:
                handlers.remove(handler)

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()


class _RedisSubscription:
    def __init__(self, pubsub: Any, thread: Any) -> None:
        self._pubsub = pubsub
        self._thread = thread

    def close(self) -> None:
        try:
            self._thread.stop()
            self._pubsub.close()
        except redis.RedisError as exc:
            _LOGGER.debug("pubsub close_failed error=%s", exc)


class RedisStore:
    def __init__(self, client: Any) -> None:
        self.client = client
        self._release = client.register_script(_RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> RedisStore:
        return cls(redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> str | None:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        if ttl_ms:
            self.client.set(key, value, px=int(ttl_ms))
        else:
            self.client.set(key, value)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def acquire(self, key: str, owner: str, ttl_ms: int) -> bool:
        return bool(self.client.set(key, owner, nx=True, px=int(ttl_ms)))

    def release(self, key: str, owner: str) -> bool:
        return bool(self._release(keys=[key], args=[owner]))

    def hset(self, key: str, mapping: dict[str, str]) -> None:
        self.client.hset(key, mapping={k: str(v) for k, v in mapping.items()})

    def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.client.hgetall(key) or {})

    def hget(self, key: str, field: str) -> str | None:
        return self.client.hget(key, field)

    def hdel(self, key: str, field: str) -> int:
        return int(self.client.hdel(key, field))

    def incr(self, key: str) -> int:
        return int(self.client.incr(key))

    def zadd(self, key: str, member: str, score: float) -> None:
        self.client.zadd(key, {member: score})

    def zrem(self, key: str, member: str) -> bool:
        # ZREM is atomic: exactly one caller sees 1 for a given member.
        return bool(self.client.zrem(key, member))

    def zscore(self, key: str, member: str) -> float | None:
        score = self.client.zscore(key, member)
        return None if score is None else float(score)

    def zrange_by_score(self, key: str, max_score: float, limit: int | None = None) -> list[tuple[str, float]]:
        upper = _score_bound(max_score)
        if limit is None:
            rows = self.client.zrangebyscore(key, "-inf", upper, withscores=True)
        else:
            rows = self.client.zrangebyscore(key, "-inf", upper, start=0, num=limit, withscores=True)
        return [(member, float(score)) for member, score in rows]

    def zcount(self, key: str, max_score: float) -> int:
        return int(self.client.zcount(key, "-inf", _score_bound(max_score)))

    def zcard(self, key: str) -> int:
        return int(self.client.zcard(key))

    def publish(self, channel: str, message: str) -> int:
        return int(self.client.publish(channel, message))

    def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        # PubSub holds its own connection; the shared client stays usable for commands.
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)

        def _on_message(message: dict[str, Any]) -> None:
            data = message.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8", errors="replace")
            try:
                handler(str(data))
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("pubsub handler_failed channel=%s error=%s", channel, exc)

        pubsub.subscribe(**{channel: _on_message})
        thread = pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        return _RedisSubscription(pubsub, thread)

    def close(self) -> None:
        self.client.close()


def create_store(settings: ProbeSettings) -> Store:
    if settings.redis_url:
        _LOGGER.info("store backend=redis")
        return RedisStore.from_url(settings.redis_url)
    _LOGGER.info("store backend=memory")
    return MemoryStore()


__all__ = ["MemoryStore", "RedisStore", "Store", "Subscription", "create_store"]
