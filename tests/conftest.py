import pytest

from dashboard_cache import DataCache, InMemoryBackend, PersistentStore


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def cache(backend, clock):
    """Cache over an in-memory backend with the default keyword policy."""
    return DataCache(PersistentStore(backend), clock=clock)
