from __future__ import annotations

import fnmatch
from pathlib import Path

import pytest

from app.errors import JobPayloadError, StorageUnavailableError
from app.job_backends import (
    InMemoryJobBackend,
    RedisJobBackend,
    SqliteJobBackend,
    create_job_backend_for_runtime,
    create_job_backend_from_env,
)
from app.job_store import JobStatus, JobStore


class _FakeRedisError(Exception):
    pass


class _FakeWatchError(_FakeRedisError):
    pass


class FakeRedisClient:
    def __init__(self) -> None:
        self.kv: dict[str, str] = {}
        self.px: dict[str, int | None] = {}
        self.fail_next = False
        self.interfere: str | None = None

    @classmethod
    def from_url(cls, _dsn: str, decode_responses: bool = True):
        assert decode_responses is True
        return cls()

    def _check(self) -> None:
        if self.fail_next:
            self.fail_next = False
            raise _FakeRedisError("connection refused")

    def get(self, key: str):
        self._check()
        return self.kv.get(key)

    def delete(self, *keys: str) -> None:
        self._check()
        for key in keys:
            self.kv.pop(key, None)

    def scan_iter(self, match: str = "*"):
        self._check()
        return [k for k in list(self.kv) if fnmatch.fnmatch(k, match)]

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, client: FakeRedisClient) -> None:
        self.client = client
        self.watched: dict[str, str | None] = {}
        self.queued: list[tuple[str, str, int | None]] = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.reset()

    def watch(self, key: str) -> None:
        self.client._check()
        self.watched[key] = self.client.kv.get(key)

    def get(self, key: str):
        value = self.client.get(key)
        if self.client.interfere and self.client.interfere == key:
            # another writer lands between WATCH and EXEC
            self.client.kv[key] = '{"value":{},"version":99}'
            self.client.interfere = None
        return value

    def multi(self) -> None:
        pass

    def set(self, key: str, value: str, px: int | None = None) -> None:
        self.queued.append((key, value, px))

    def execute(self) -> list[bool]:
        for key, seen in self.watched.items():
            if self.client.kv.get(key) != seen:
                raise _FakeWatchError("watched key changed")
        for key, value, px in self.queued:
            self.client.kv[key] = value
            self.client.px[key] = px
        return [True for _ in self.queued]

    def reset(self) -> None:
        self.watched.clear()
        self.queued.clear()


class FakeRedisModule:
    RedisError = _FakeRedisError
    WatchError = _FakeWatchError

    class Redis:
        @staticmethod
        def from_url(dsn: str, decode_responses: bool = True):
            return FakeRedisClient.from_url(dsn, decode_responses=decode_responses)


@pytest.fixture
def fake_redis(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("app.job_backends._import_redis", lambda: FakeRedisModule)
    return FakeRedisModule


def test_memory_backend_compare_and_set_checks_version():
    backend = InMemoryJobBackend()
    assert backend.compare_and_set("job_a", 0, {"n": 1}) is True
    assert backend.compare_and_set("job_a", 0, {"n": 2}) is False
    current = backend.get("job_a")
    assert current is not None
    assert current.version == 1
    assert current.value == {"n": 1}
    assert backend.compare_and_set("job_a", 1, {"n": 3}) is True
    assert backend.get("job_a").value == {"n": 3}


def test_memory_backend_drops_rows_after_ttl(clock):
    backend = InMemoryJobBackend(clock=clock)
    backend.set("job_a", {"n": 1}, ttl_s=10)
    clock.advance(9)
    assert backend.get("job_a") is not None
    clock.advance(1)
    assert backend.get("job_a") is None
    assert backend.keys() == []


def test_sqlite_backend_survives_reopen(tmp_path: Path):
    db_path = tmp_path / "jobs.sqlite3"
    store1 = JobStore(SqliteJobBackend(db_path))
    job_id = store1.create_job()
    store1.set_partial(job_id, {"quick_verdict": {"level": "CAUTION"}})

    store2 = JobStore(SqliteJobBackend(db_path))
    snap = store2.get_job(job_id)
    assert snap.status is JobStatus.PARTIAL
    assert snap.partial_result == {"quick_verdict": {"level": "CAUTION"}}
    assert store2.backend.keys() == [job_id]


def test_sqlite_backend_compare_and_set_and_delete(tmp_path: Path, clock):
    backend = SqliteJobBackend(tmp_path / "cas.sqlite3", clock=clock)
    assert backend.compare_and_set("job_a", 0, {"n": 1}, ttl_s=30) is True
    assert backend.compare_and_set("job_a", 0, {"n": 2}, ttl_s=30) is False
    assert backend.set("job_a", {"n": 3}, ttl_s=30) == 2
    clock.advance(31)
    assert backend.get("job_a") is None
    assert backend.compare_and_set("job_a", 0, {"n": 4}) is True
    backend.delete("job_a")
    assert backend.get("job_a") is None


def test_redis_backend_runs_job_lifecycle(fake_redis):
    backend = RedisJobBackend(dsn="redis://localhost:6379/0", namespace="safemeals")
    store = JobStore(backend)
    job_id = store.create_job()
    store.set_partial(job_id, {"quick_verdict": {"level": "DANGER"}})
    store.set_final(job_id, {"overall_status": "DANGER"})
    assert store.mark_persisted(job_id) is True
    assert store.mark_persisted(job_id) is False

    assert backend.keys() == [job_id]
    raw_key = f"safemeals:job:{job_id}"
    assert raw_key in backend._client.kv
    assert backend._client.px[raw_key] > 0


def test_redis_backend_reports_lost_race_as_false(fake_redis):
    backend = RedisJobBackend(dsn="redis://localhost:6379/0")
    assert backend.compare_and_set("job_a", 0, {"n": 1}) is True
    backend._client.interfere = "scan:job:job_a"
    assert backend.compare_and_set("job_a", 1, {"n": 2}) is False
    assert backend.get("job_a").version == 99


def test_redis_backend_maps_driver_errors_to_storage_unavailable(fake_redis):
    backend = RedisJobBackend(dsn="redis://localhost:6379/0")
    backend._client.fail_next = True
    with pytest.raises(StorageUnavailableError) as exc:
        backend.get("job_a")
    assert exc.value.code == "JOB_STORAGE_UNAVAILABLE"
    assert exc.value.retryable is True


def test_factory_defaults_to_memory():
    assert isinstance(create_job_backend_from_env({}), InMemoryJobBackend)


def test_factory_supports_sqlite(tmp_path: Path):
    backend = create_job_backend_from_env(
        {"SCAN_JOB_BACKEND": "sqlite", "SCAN_JOB_SQLITE_PATH": str(tmp_path / "f.sqlite3")}
    )
    assert isinstance(backend, SqliteJobBackend)


def test_factory_supports_redis_with_fake_driver(fake_redis):
    backend = create_job_backend_from_env({"SCAN_JOB_BACKEND": "redis", "REDIS_DSN": "redis://localhost:6379/0"})
    assert isinstance(backend, RedisJobBackend)


def test_factory_requires_redis_dsn():
    with pytest.raises(ValueError) as exc:
        create_job_backend_from_env({"SCAN_JOB_BACKEND": "redis"})
    assert "REDIS_DSN" in str(exc.value)


def test_factory_rejects_unknown_backend():
    with pytest.raises(RuntimeError) as exc:
        create_job_backend_from_env({"SCAN_JOB_BACKEND": "etcd"})
    assert "unsupported job backend" in str(exc.value)


def test_runtime_falls_back_to_memory_when_driver_missing(monkeypatch):
    def _raise_missing():
        raise RuntimeError("redis is required for SCAN_JOB_BACKEND=redis; install redis>=5")

    monkeypatch.setattr("app.job_backends._import_redis", _raise_missing)
    env = {"SCAN_JOB_BACKEND": "redis", "REDIS_DSN": "redis://localhost:6379/0"}
    assert isinstance(create_job_backend_for_runtime(env), InMemoryJobBackend)


def test_runtime_fallback_disabled_by_true_stack(monkeypatch):
    def _raise_missing():
        raise RuntimeError("redis is required for SCAN_JOB_BACKEND=redis; install redis>=5")

    monkeypatch.setattr("app.job_backends._import_redis", _raise_missing)
    env = {
        "SCAN_JOB_BACKEND": "redis",
        "REDIS_DSN": "redis://localhost:6379/0",
        "SCAN_REQUIRE_TRUESTACK": "true",
    }
    with pytest.raises(RuntimeError):
        create_job_backend_for_runtime(env)


def test_sqlite_backed_store_rejects_non_json_payload(tmp_path: Path):
    store = JobStore(SqliteJobBackend(tmp_path / "payload.sqlite3"))
    job_id = store.create_job()
    with pytest.raises(JobPayloadError) as exc:
        store.set_partial(job_id, {"tags": {"egg"}})
    assert exc.value.code == "JOB_PAYLOAD_INVALID"
    assert exc.value.http_status == 422
    assert exc.value.retryable is False
    assert store.get_job(job_id).status is JobStatus.PENDING


def test_redis_backed_store_rejects_non_json_payload(fake_redis):
    store = JobStore(RedisJobBackend(dsn="redis://localhost:6379/0"))
    job_id = store.create_job()
    with pytest.raises(JobPayloadError):
        store.set_final(job_id, {"verdict": object()})
    assert store.get_job(job_id).status is JobStatus.PENDING


def test_json_backends_return_json_types(tmp_path: Path):
    store = JobStore(SqliteJobBackend(tmp_path / "types.sqlite3"))
    job_id = store.create_job()
    store.set_final(job_id, {1: ("a", "b")})
    assert store.get_job(job_id).final_result == {"1": ["a", "b"]}
