"""
Pytest configuration for the watcher metrics tests.
"""

from __future__ import annotations

import pytest

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

# 2024-05-01 12:00:00 UTC, aligned to every default tier
BASE_TIME = 1_714_564_800


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at BASE_TIME."""
    return FakeClock()
