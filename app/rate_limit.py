"""Per-client admission control over a burst window and a daily window."""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from app.config import FAIL_MODES, Settings
from app.counters import (
    FIXED,
    SLIDING,
    CounterStore,
    QuotaWindow,
    StoreUnavailableError,
)
from app.utils.time import format_reset, seconds_until

LOGGER = logging.getLogger(__name__)

GENERATE_POLICY = "generate"
MINUTE_SCOPE = "minute"
DAY_SCOPE = "day"
STORE_UNAVAILABLE = "store_unavailable"

SCOPE_MESSAGES = {
    MINUTE_SCOPE: "Too many requests. Please try again in a minute.",
    DAY_SCOPE: "Daily limit reached. Please come back tomorrow.",
}
DEFAULT_SCOPE_MESSAGE = "Rate limit exceeded. Please try again later."
UNAVAILABLE_MESSAGE = "Rate limiting is temporarily unavailable. Please try again shortly."


def scope_key(client_identity: str, policy_name: str, scope: str) -> str:
    """Counter key for one client, policy and window.

    The identity sits in a Redis Cluster hash tag so all windows of a client
    live in the same slot.
    """

    return f"ratelimit:{{{client_identity}}}:{policy_name}:{scope}"


@dataclass(frozen=True)
class WindowUsage:
    scope: str
    limit: int
    count: int
    reset_at: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class Decision:
    """Outcome of one admission check."""

    admitted: bool
    limit: int
    remaining: int
    reset_at: float
    violated_scope: Optional[str] = None
    fault: Optional[str] = None
    windows: Tuple[WindowUsage, ...] = ()

    @property
    def message(self) -> str:
        if self.violated_scope:
            return SCOPE_MESSAGES.get(self.violated_scope, DEFAULT_SCOPE_MESSAGE)
        if self.fault:
            return UNAVAILABLE_MESSAGE
        return ""

    @property
    def reset(self) -> int:
        return math.ceil(self.reset_at)

    def retry_after(self, now: float) -> int:
        return seconds_until(self.reset_at, now)

    def to_payload(self) -> Dict[str, Any]:
        """Body returned to the client when the request is rejected."""

        return {
            "error": self.message,
            "scope": self.violated_scope,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset,
        }

    def headers(self, now: float) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }
        if not self.admitted:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers


class RateLimitDenied(Exception):
    """Base for rejections produced by the admission controller."""

    status_code = 429

    def __init__(self, decision: Decision) -> None:
        super().__init__(decision.message)
        self.decision = decision

    @classmethod
    def from_decision(cls, decision: Decision) -> "RateLimitDenied":
        if decision.violated_scope is None and decision.fault:
            return RateLimiterUnavailable(decision)
        return QuotaExceeded(decision)


class QuotaExceeded(RateLimitDenied):
    """The client used up one of its windows."""

    @property
    def scope(self) -> Optional[str]:
        return self.decision.violated_scope


class RateLimiterUnavailable(RateLimitDenied):
    """The counter store failed and the limiter is configured to fail closed."""

    status_code = 503


def build_policies(settings: Settings) -> Dict[str, Tuple[QuotaWindow, ...]]:
    """Windows applied to each policy, in evaluation order."""

    return {
        GENERATE_POLICY: (
            QuotaWindow(
                name=MINUTE_SCOPE,
                kind=SLIDING,
                limit=settings.rate_limit_minute_requests,
                duration_seconds=settings.rate_limit_minute_window_seconds,
            ),
            QuotaWindow(
                name=DAY_SCOPE,
                kind=FIXED,
                limit=settings.rate_limit_day_requests,
                duration_seconds=settings.rate_limit_day_window_seconds,
            ),
        )
    }


class RateLimiter:
    """Admits a request only when every window of its policy has room.

    Windows are checked in order and the first exhausted one is reported.
    A rejected request is not charged against any window. When the counter
    store is unreachable the configured ``fail_mode`` decides: ``closed``
    rejects the request, ``open`` admits it. Either way the fault is logged
    and counted in :attr:`store_faults`.
    """

    def __init__(
        self,
        store: CounterStore,
        policies: Mapping[str, Sequence[QuotaWindow]],
        *,
        clock: Callable[[], float] = time.time,
        fail_mode: str = "closed",
    ) -> None:
        if fail_mode not in FAIL_MODES:
            raise ValueError(f"fail_mode must be one of {FAIL_MODES}")
        for name, windows in policies.items():
            if not windows:
                raise ValueError(f"Policy {name!r} has no windows")
            if len({window.name for window in windows}) != len(windows):
                raise ValueError(f"Policy {name!r} repeats a window name")
        self._store = store
        self._policies = {name: tuple(windows) for name, windows in policies.items()}
        self._clock = clock
        self.fail_mode = fail_mode
        self.store_faults = 0
        self._faults_lock = Lock()

    def check(self, client_identity: str, policy_name: str) -> Decision:
        if not client_identity:
            raise ValueError("client_identity must be a non-empty string")
        windows = self._policies.get(policy_name)
        if windows is None:
            raise ValueError(f"Unknown rate limit policy: {policy_name!r}")

        now = self._clock()
        entries = [
            (scope_key(client_identity, policy_name, window.name), window) for window in windows
        ]
        try:
            admitted, readings = self._store.check_and_record(entries, now)
        except StoreUnavailableError as exc:
            return self._degraded(client_identity, policy_name, windows, now, exc)

        usages = tuple(
            WindowUsage(
                scope=window.name,
                limit=window.limit,
                count=reading.count,
                reset_at=reading.reset_at,
            )
            for window, reading in zip(windows, readings)
        )

        if admitted:
            tightest = min(usages, key=lambda usage: usage.remaining)
            return Decision(
                admitted=True,
                limit=tightest.limit,
                remaining=tightest.remaining,
                reset_at=tightest.reset_at,
                windows=usages,
            )

        violated = next(usage for usage in usages if usage.count >= usage.limit)
        LOGGER.info(
            "rate limit exceeded",
            extra={
                "client_ip": client_identity,
                "policy": policy_name,
                "scope": violated.scope,
                "reset": format_reset(violated.reset_at),
            },
        )
        return Decision(
            admitted=False,
            limit=violated.limit,
            remaining=0,
            reset_at=violated.reset_at,
            violated_scope=violated.scope,
            windows=usages,
        )

    def _degraded(
        self,
        client_identity: str,
        policy_name: str,
        windows: Tuple[QuotaWindow, ...],
        now: float,
        exc: StoreUnavailableError,
    ) -> Decision:
        with self._faults_lock:
            self.store_faults += 1
        admitted = self.fail_mode == "open"
        LOGGER.warning(
            "counter store unavailable, failing %s: %s",
            self.fail_mode,
            exc,
            extra={"client_ip": client_identity, "policy": policy_name, "fault": STORE_UNAVAILABLE},
        )
        first = windows[0]
        return Decision(
            admitted=admitted,
            limit=first.limit,
            remaining=0,
            reset_at=now + first.duration_seconds,
            fault=STORE_UNAVAILABLE,
        )
