import os
from datetime import datetime, timedelta, timezone

import pytest

TEST_ENV = {
    "ENVIRONMENT": "test",
    "BACKEND_URL": "",
    "BACKEND_API_KEY": "",
    "REDIS_URL": "",
    "LOG_LEVEL": "DEBUG",
    "LOG_JSON": "false",
    "TOKEN_CLEANUP_AUTOSTART": "0",
}

for key, value in TEST_ENV.items():
    os.environ[key] = value

from caseload.remote.memory import InMemoryBackend  # noqa: E402
from caseload.sync.invalidation import build_default_graph  # noqa: E402
from caseload.sync.mutations import MutationExecutor  # noqa: E402
from caseload.sync.queries import QueryClient  # noqa: E402
from caseload.sync.store import CacheStore  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _set_test_env():
    """Force deterministic env for tests and reset cached settings."""

    for key, value in TEST_ENV.items():
        os.environ[key] = value

    from caseload.core import settings as settings_module

    settings_module.get_settings.cache_clear()
    yield
    settings_module.get_settings.cache_clear()


class FakeClock:
    """Monotonic seconds under test control."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """Wall-clock datetimes under test control."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def date_clock() -> FakeDateClock:
    return FakeDateClock()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def store(clock) -> CacheStore:
    return CacheStore(clock=clock)


@pytest.fixture
def graph():
    return build_default_graph()


@pytest.fixture
def executor(store, graph) -> MutationExecutor:
    return MutationExecutor(store, graph)


@pytest.fixture
async def queries(store, backend, clock):
    client = QueryClient(store, backend, stale_after=300.0, clock=clock)
    yield client
    await client.close()
