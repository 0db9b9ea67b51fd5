"""Shared pytest configuration and fixtures for the Loop Overdub test suite."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fakes import ManualTimeSource, ManualScheduler, FakeCapture, RecordingOutput


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def time_source() -> ManualTimeSource:
    return ManualTimeSource(start=100.0)


@pytest.fixture
def scheduler(time_source) -> ManualScheduler:
    return ManualScheduler(time_source)


@pytest.fixture
def output() -> RecordingOutput:
    return RecordingOutput()


@pytest.fixture
def capture() -> FakeCapture:
    return FakeCapture()
