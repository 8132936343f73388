"""Shared fixtures for the merchant OAuth tests."""
import sys
import time
from pathlib import Path

import pytest

# Add project root to path so the flat modules import without installing
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


class FakeClock:
    """Manually advanced stand-in for time.time()."""

    def __init__(self, start: float | None = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
