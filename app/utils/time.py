"""Time helpers."""
from __future__ import annotations

import math
from datetime import UTC, datetime


def epoch_ms(seconds: float) -> int:
    """Convert epoch seconds into whole milliseconds."""

    return int(round(seconds * 1000))


def bucket_start(now: float, duration: float) -> float:
    """Return the start of the epoch-aligned bucket of ``duration`` containing ``now``."""

    return now - (now % duration)


def seconds_until(moment: float, now: float) -> int:
    """Whole seconds from ``now`` until ``moment``, never less than one."""

    return max(1, math.ceil(moment - now))


def format_reset(moment: float) -> str:
    """Render an epoch timestamp as an ISO-8601 UTC string."""

    return datetime.fromtimestamp(moment, tz=UTC).isoformat(timespec="seconds")
