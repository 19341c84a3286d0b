"""Shared test configuration and fixtures."""

from pathlib import Path

import pytest

from extenscan.cache import ResolverCache

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class FakeClock:
    """Manually advanced time source for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fixtures_dir():
    return FIXTURES_DIR


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    c = ResolverCache(db_path=":memory:", ttl_hours=24, clock=clock)
    yield c
    c.close()
