"""Quota counter stores shared by every request handler.

A store evaluates all windows of one policy at a single instant and records
an event in each of them only when every window still has room. Two backends
are provided: an in-process store for single-instance deployments and a
Redis store for horizontally scaled ones.
"""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from contextlib import ExitStack
from dataclasses import dataclass
from threading import Lock
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

import redis

from app.config import Settings
from app.utils.time import bucket_start, epoch_ms

LOGGER = logging.getLogger(__name__)

SLIDING = "sliding"
FIXED = "fixed"
WINDOW_KINDS = (SLIDING, FIXED)


class StoreUnavailableError(RuntimeError):
    """Raised when the counter store cannot be reached in time."""


@dataclass(frozen=True)
class QuotaWindow:
    """One rate limiting window of a policy."""

    name: str
    kind: str
    limit: int
    duration_seconds: float

    def __post_init__(self) -> None:
        if self.kind not in WINDOW_KINDS:
            raise ValueError(f"Unknown window kind: {self.kind!r}")
        if self.limit <= 0:
            raise ValueError("Window limit must be positive")
        if self.duration_seconds <= 0:
            raise ValueError("Window duration must be positive")


@dataclass(frozen=True)
class CounterReading:
    count: int
    reset_at: float


Entries = Sequence[Tuple[str, QuotaWindow]]


class CounterStore(ABC):
    """Atomic check-and-record over the windows of one request."""

    @abstractmethod
    def check_and_record(self, entries: Entries, now: float) -> Tuple[bool, List[CounterReading]]:
        """Evaluate ``entries`` at ``now`` and record one event if all admit.

        Returns ``(admitted, readings)``. Readings are in the order of
        ``entries`` and hold post-increment counts when admitted, current
        counts otherwise. Raises :class:`StoreUnavailableError` when the
        backing store cannot be reached.
        """


class _Slot:
    """Counter state for one scope key, guarded by its own lock."""

    __slots__ = ("lock", "users", "events", "bucket", "count", "expires_at")

    def __init__(self) -> None:
        self.lock = Lock()
        self.users = 0
        self.events: Deque[float] = deque()
        self.bucket: Optional[float] = None
        self.count = 0
        self.expires_at = 0.0

    def read(self, window: QuotaWindow, now: float) -> CounterReading:
        duration = window.duration_seconds
        if window.kind == SLIDING:
            cutoff = now - duration
            while self.events and self.events[0] < cutoff:
                self.events.popleft()
            reset_at = self.events[0] + duration if self.events else now + duration
            return CounterReading(count=len(self.events), reset_at=reset_at)

        start = bucket_start(now, duration)
        if self.bucket != start:
            self.bucket = start
            self.count = 0
        return CounterReading(count=self.count, reset_at=start + duration)

    def record(self, window: QuotaWindow, now: float) -> None:
        if window.kind == SLIDING:
            self.events.append(now)
            self.expires_at = max(self.expires_at, now + window.duration_seconds)
        else:
            self.count += 1
            self.expires_at = max(self.expires_at, self.bucket + window.duration_seconds)

    def idle(self, now: float) -> bool:
        return self.users == 0 and self.expires_at <= now


class InMemoryCounterStore(CounterStore):
    """Thread-safe counter store for a single process.

    Each scope key has its own lock; unrelated keys never wait on each other.
    The registry lock only guards the key to slot mapping and is never held
    while counting.
    """

    def __init__(self, sweep_interval_seconds: float = 60.0) -> None:
        self._slots: Dict[str, _Slot] = {}
        self._registry_lock = Lock()
        self._sweep_interval = sweep_interval_seconds
        self._last_sweep: Optional[float] = None

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._slots)

    def check_and_record(self, entries: Entries, now: float) -> Tuple[bool, List[CounterReading]]:
        keys = [key for key, _ in entries]
        if len(set(keys)) != len(keys):
            raise ValueError("Scope keys within one check must be distinct")

        slots = self._checkout(keys)
        try:
            with ExitStack() as stack:
                # Sorted acquisition keeps concurrent multi-key checks deadlock free.
                for key in sorted(keys):
                    stack.enter_context(slots[key].lock)

                readings = [slots[key].read(window, now) for key, window in entries]
                admitted = all(
                    reading.count < window.limit
                    for reading, (_, window) in zip(readings, entries)
                )
                if admitted:
                    for key, window in entries:
                        slots[key].record(window, now)
                    readings = [slots[key].read(window, now) for key, window in entries]
        finally:
            self._release(slots, now)
        return admitted, readings

    def sweep(self, now: float) -> int:
        """Drop state for keys whose windows hold no relevant events at ``now``."""

        with self._registry_lock:
            stale = [key for key, slot in self._slots.items() if slot.idle(now)]
            for key in stale:
                del self._slots[key]
            self._last_sweep = now
        if stale:
            LOGGER.debug("reclaimed %d idle counters", len(stale))
        return len(stale)

    def _checkout(self, keys: List[str]) -> Dict[str, _Slot]:
        with self._registry_lock:
            slots = {key: self._slots.setdefault(key, _Slot()) for key in keys}
            for slot in slots.values():
                slot.users += 1
        return slots

    def _release(self, slots: Dict[str, _Slot], now: float) -> None:
        with self._registry_lock:
            for key, slot in slots.items():
                slot.users -= 1
                if slot.idle(now) and self._slots.get(key) is slot:
                    del self._slots[key]
            if self._last_sweep is None:
                self._last_sweep = now
            due = now - self._last_sweep >= self._sweep_interval
        if due:
            self.sweep(now)


# KEYS[i]: counter key of window i (fixed windows carry their bucket suffix).
# ARGV[1]: now in ms, ARGV[2]: unique event member,
# then per window: kind, limit, duration in ms.
# Returns {denied_index, count_1, reset_1, count_2, reset_2, ...};
# denied_index is 0 when the event was recorded in every window.
CHECK_AND_RECORD_SCRIPT = """
local now = tonumber(ARGV[1])
local member = ARGV[2]
local counts = {}
local resets = {}
local denied = 0

for i = 1, #KEYS do
    local base = 3 + (i - 1) * 3
    local kind = ARGV[base]
    local limit = tonumber(ARGV[base + 1])
    local duration = tonumber(ARGV[base + 2])
    local key = KEYS[i]
    if kind == 'sliding' then
        redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - duration))
        counts[i] = redis.call('ZCARD', key)
        resets[i] = now + duration
        if counts[i] > 0 then
            local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
            resets[i] = tonumber(oldest[2]) + duration
        end
    else
        counts[i] = tonumber(redis.call('GET', key) or '0')
        resets[i] = now - (now % duration) + duration
    end
    if denied == 0 and counts[i] >= limit then
        denied = i
    end
end

if denied == 0 then
    for i = 1, #KEYS do
        local base = 3 + (i - 1) * 3
        local kind = ARGV[base]
        local duration = tonumber(ARGV[base + 2])
        local key = KEYS[i]
        if kind == 'sliding' then
            redis.call('ZADD', key, now, member)
            redis.call('PEXPIRE', key, duration)
        else
            redis.call('INCR', key)
            redis.call('PEXPIRE', key, resets[i] - now)
        end
        counts[i] = counts[i] + 1
    end
end

local reply = {denied}
for i = 1, #KEYS do
    table.insert(reply, counts[i])
    table.insert(reply, resets[i])
end
return reply
"""


class RedisCounterStore(CounterStore):
    """Counter store shared by every instance through Redis.

    All windows of a check are evaluated and committed by one Lua script, so
    concurrent requests on any instance are serialized per key by Redis.
    """

    def __init__(self, client: Any) -> None:
        self._client = client
        self._script = client.register_script(CHECK_AND_RECORD_SCRIPT)

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float) -> "RedisCounterStore":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    def check_and_record(self, entries: Entries, now: float) -> Tuple[bool, List[CounterReading]]:
        now_ms = epoch_ms(now)
        keys: List[str] = []
        args: List[Any] = [now_ms, f"{now_ms}-{uuid.uuid4().hex}"]
        for key, window in entries:
            duration_ms = epoch_ms(window.duration_seconds)
            if window.kind == FIXED:
                key = f"{key}:{int(bucket_start(now_ms, duration_ms))}"
            keys.append(key)
            args.extend([window.kind, window.limit, duration_ms])

        try:
            reply = self._script(keys=keys, args=args)
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"Redis counter store unavailable: {exc}") from exc

        denied = int(reply[0])
        readings = [
            CounterReading(count=int(reply[1 + 2 * i]), reset_at=int(reply[2 + 2 * i]) / 1000.0)
            for i in range(len(entries))
        ]
        return denied == 0, readings


def build_counter_store(settings: Settings) -> CounterStore:
    """Create the counter store selected by configuration."""

    if settings.rate_limit_backend == "redis":
        LOGGER.info("using redis counter store")
        return RedisCounterStore.from_url(settings.redis_url, settings.redis_timeout_seconds)
    return InMemoryCounterStore()
