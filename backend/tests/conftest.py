"""
Pytest configuration for the Vigil test suite.
"""

import sys
from pathlib import Path

import pytest

# Add backend to Python path for test imports
backend_path = Path(__file__).parent.parent
if str(backend_path) not in sys.path:
    sys.path.insert(0, str(backend_path))

from vigil.observability.logger import StructuredLogger  # noqa: E402
from vigil.runtime import ManualScheduler  # noqa: E402

START_TIME = 1_700_000_000.0


# Configure pytest
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "e2e: marks tests as end-to-end (full harness lifecycle)"
    )
    config.addinivalue_line(
        "markers", "api: marks tests exercising the HTTP monitoring router"
    )


@pytest.fixture
def scheduler():
    return ManualScheduler(start=START_TIME)


@pytest.fixture
def structured_logger(scheduler):
    """In-memory logger on the manual scheduler's clock."""
    return StructuredLogger("test-session", clock=scheduler.now)
