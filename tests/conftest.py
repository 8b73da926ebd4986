"""
Shared fixtures: deterministic settings and a controllable clock.
"""

import pytest

from site_audit.core.config import Settings
from tests.factories import FakeClock


@pytest.fixture
def settings() -> Settings:
    return Settings(
        CRAWLER_POLITENESS_DELAY=0.0,
        CRAWLER_MAX_CONCURRENCY=2,
        LOG_FORMAT="console",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
