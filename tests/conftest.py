import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import ScanSettings
from app.job_backends import InMemoryJobBackend
from app.job_store import JobStore
from app.main import create_app
from app.mock_services import InMemoryResultSaver


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> InMemoryJobBackend:
    return InMemoryJobBackend(clock=clock)


@pytest.fixture
def job_store(backend: InMemoryJobBackend, clock: FakeClock) -> JobStore:
    return JobStore(backend, ttl_s=60, tombstone_s=120, clock=clock)


@pytest.fixture(autouse=True)
def scan_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SCAN_JOB_BACKEND", "memory")
    monkeypatch.delenv("SCAN_REQUIRE_TRUESTACK", raising=False)
    monkeypatch.delenv("REDIS_DSN", raising=False)
    yield


@pytest.fixture
def saver() -> InMemoryResultSaver:
    return InMemoryResultSaver()


@pytest.fixture
def client(saver: InMemoryResultSaver):
    app = create_app(ScanSettings(deadline_s=5.0), saver=saver)
    with TestClient(app) as test_client:
        yield test_client
