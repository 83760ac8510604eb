"""
Pytest configuration. Provide the required environment before the app module
is imported so settings load without a real API key or Redis.
"""
import os

import pytest

os.environ.setdefault("IMAGE_API_KEY", "test-key")
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["RATE_LIMIT_FAIL_MODE"] = "closed"


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    # A day boundary, so fixed windows start fresh at the beginning of each test.
    return FakeClock(start=1_700_006_400.0)
