"""Key-value backends holding scan job records.

Every backend stores dicts under a job id together with a record version.
The sqlite and redis backends serialize records as JSON (``stores_json``), so
payloads written through them must be JSON-serializable and come back with
JSON types (string keys, lists for tuples). The in-memory backend keeps deep
copies and returns payloads unchanged.

``compare_and_set`` is the only write path the job store uses for
transitions: it succeeds when the stored version still equals
``expected_version`` (``0`` meaning "key must be absent").

WARNING: ``InMemoryJobBackend`` lives inside one process. Records vanish on
restart and are invisible to other workers; deployments running more than one
instance must configure the sqlite (single host) or redis (shared) backend.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import sqlite3
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from app.errors import StorageUnavailableError
from app.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionedValue:
    version: int
    value: dict[str, Any]


class JobBackend(Protocol):
    stores_json: bool

    def get(self, key: str) -> VersionedValue | None: ...

    def set(self, key: str, value: dict[str, Any], ttl_s: float | None = None) -> int: ...

    def delete(self, key: str) -> None: ...

    def compare_and_set(
        self,
        key: str,
        expected_version: int,
        value: dict[str, Any],
        ttl_s: float | None = None,
    ) -> bool: ...

    def keys(self) -> list[str]: ...


def _dumps(value: dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


class InMemoryJobBackend:
    """Process-local backend; the default for dev and single-instance deployments."""

    stores_json = False

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        # key -> (version, private copy of the value, absolute expiry or None)
        self._rows: dict[str, tuple[int, dict[str, Any], float | None]] = {}

    def _live_row(self, key: str) -> tuple[int, dict[str, Any], float | None] | None:
        row = self._rows.get(key)
        if row is None:
            return None
        expires_at = row[2]
        if expires_at is not None and expires_at <= self._clock():
            self._rows.pop(key, None)
            return None
        return row

    def _expiry(self, ttl_s: float | None) -> float | None:
        if ttl_s is None:
            return None
        return self._clock() + max(0.0, float(ttl_s))

    def get(self, key: str) -> VersionedValue | None:
        with self._lock:
            row = self._live_row(key)
            if row is None:
                return None
            return VersionedValue(version=row[0], value=copy.deepcopy(row[1]))

    def set(self, key: str, value: dict[str, Any], ttl_s: float | None = None) -> int:
        with self._lock:
            row = self._live_row(key)
            version = (row[0] if row else 0) + 1
            self._rows[key] = (version, copy.deepcopy(value), self._expiry(ttl_s))
            return version

    def delete(self, key: str) -> None:
        with self._lock:
            self._rows.pop(key, None)

    def compare_and_set(
        self,
        key: str,
        expected_version: int,
        value: dict[str, Any],
        ttl_s: float | None = None,
    ) -> bool:
        with self._lock:
            row = self._live_row(key)
            current = row[0] if row else 0
            if current != expected_version:
                return False
            self._rows[key] = (current + 1, copy.deepcopy(value), self._expiry(ttl_s))
            return True

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(key for key in list(self._rows) if self._live_row(key) is not None)


class SqliteJobBackend:
    """SQLite-backed records; survives restarts on a single host."""

    stores_json = True

    def __init__(self, db_path: str | Path, *, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scan_jobs (
                    job_key TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
                """
            )
            conn.commit()

    def _expiry(self, ttl_s: float | None) -> float | None:
        if ttl_s is None:
            return None
        return self._clock() + max(0.0, float(ttl_s))

    def _live_version(self, conn: sqlite3.Connection, key: str) -> int:
        row = conn.execute(
            "SELECT version, expires_at FROM scan_jobs WHERE job_key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return 0
        if row["expires_at"] is not None and float(row["expires_at"]) <= self._clock():
            conn.execute("DELETE FROM scan_jobs WHERE job_key = ?", (key,))
            return 0
        return int(row["version"])

    def get(self, key: str) -> VersionedValue | None:
        with self._lock:
            try:
                with self._connect() as conn:
                    row = conn.execute(
                        "SELECT version, value, expires_at FROM scan_jobs WHERE job_key = ?",
                        (key,),
                    ).fetchone()
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"sqlite job backend error: {exc}") from exc
            if row is None:
                return None
            if row["expires_at"] is not None and float(row["expires_at"]) <= self._clock():
                return None
            return VersionedValue(version=int(row["version"]), value=json.loads(row["value"]))

    def set(self, key: str, value: dict[str, Any], ttl_s: float | None = None) -> int:
        with self._lock:
            try:
                with self._connect() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    version = self._live_version(conn, key) + 1
                    conn.execute(
                        """
                        INSERT INTO scan_jobs(job_key, version, value, expires_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(job_key) DO UPDATE
                        SET version = excluded.version, value = excluded.value, expires_at = excluded.expires_at
                        """,
                        (key, version, _dumps(value), self._expiry(ttl_s)),
                    )
                    conn.commit()
                    return version
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"sqlite job backend error: {exc}") from exc

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                with self._connect() as conn:
                    conn.execute("DELETE FROM scan_jobs WHERE job_key = ?", (key,))
                    conn.commit()
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"sqlite job backend error: {exc}") from exc

    def compare_and_set(
        self,
        key: str,
        expected_version: int,
        value: dict[str, Any],
        ttl_s: float | None = None,
    ) -> bool:
        with self._lock:
            try:
                with self._connect() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    current = self._live_version(conn, key)
                    if current != expected_version:
                        conn.commit()
                        return False
                    conn.execute(
                        """
                        INSERT INTO scan_jobs(job_key, version, value, expires_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(job_key) DO UPDATE
                        SET version = excluded.version, value = excluded.value, expires_at = excluded.expires_at
                        """,
                        (key, current + 1, _dumps(value), self._expiry(ttl_s)),
                    )
                    conn.commit()
                    return True
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"sqlite job backend error: {exc}") from exc

    def keys(self) -> list[str]:
        with self._lock:
            try:
                with self._connect() as conn:
                    conn.execute(
                        "DELETE FROM scan_jobs WHERE expires_at IS NOT NULL AND expires_at <= ?",
                        (self._clock(),),
                    )
                    rows = conn.execute("SELECT job_key FROM scan_jobs ORDER BY job_key ASC").fetchall()
                    conn.commit()
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"sqlite job backend error: {exc}") from exc
        return [str(row["job_key"]) for row in rows]


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for SCAN_JOB_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisJobBackend:
    """Redis-backed records shared by every instance; CAS through WATCH/MULTI."""

    stores_json = True

    def __init__(self, *, dsn: str, namespace: str = "scan") -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis job backend")
        self._dsn = dsn.strip()
        self._namespace = namespace.strip() or "scan"
        self._redis = _import_redis()
        self._client = self._redis.Redis.from_url(self._dsn, decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:job:{key}"

    @staticmethod
    def _px(ttl_s: float | None) -> int | None:
        if ttl_s is None:
            return None
        return max(1, int(float(ttl_s) * 1000))

    @staticmethod
    def _decode(raw: Any) -> VersionedValue | None:
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or not isinstance(data.get("value"), dict):
            return None
        return VersionedValue(version=int(data.get("version", 0)), value=data["value"])

    @staticmethod
    def _encode(version: int, value: dict[str, Any]) -> str:
        return _dumps({"version": version, "value": value})

    def _unavailable(self, exc: Exception) -> StorageUnavailableError:
        return StorageUnavailableError(f"redis job backend error: {type(exc).__name__}")

    def get(self, key: str) -> VersionedValue | None:
        try:
            raw = self._client.get(self._key(key))
        except self._redis.RedisError as exc:
            raise self._unavailable(exc) from exc
        return self._decode(raw)

    def set(self, key: str, value: dict[str, Any], ttl_s: float | None = None) -> int:
        while True:
            current = self.get(key)
            version = (current.version if current else 0) + 1
            if self.compare_and_set(key, version - 1, value, ttl_s):
                return version

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except self._redis.RedisError as exc:
            raise self._unavailable(exc) from exc

    def compare_and_set(
        self,
        key: str,
        expected_version: int,
        value: dict[str, Any],
        ttl_s: float | None = None,
    ) -> bool:
        redis_key = self._key(key)
        try:
            with self._client.pipeline() as pipe:
                pipe.watch(redis_key)
                current = self._decode(pipe.get(redis_key))
                current_version = current.version if current else 0
                if current_version != expected_version:
                    pipe.reset()
                    return False
                pipe.multi()
                pipe.set(redis_key, self._encode(current_version + 1, value), px=self._px(ttl_s))
                pipe.execute()
                return True
        except self._redis.WatchError:
            return False
        except self._redis.RedisError as exc:
            raise self._unavailable(exc) from exc

    def keys(self) -> list[str]:
        prefix = self._key("")
        try:
            found = [str(k) for k in self._client.scan_iter(match=f"{prefix}*")]
        except self._redis.RedisError as exc:
            raise self._unavailable(exc) from exc
        return sorted(k[len(prefix) :] for k in found if k.startswith(prefix))


def create_job_backend_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryJobBackend | SqliteJobBackend | RedisJobBackend:
    env = os.environ if environ is None else environ
    backend = env.get("SCAN_JOB_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryJobBackend()
    if backend == "sqlite":
        db_path = env.get("SCAN_JOB_SQLITE_PATH", ".runtime/scan_jobs.sqlite3")
        return SqliteJobBackend(db_path)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when SCAN_JOB_BACKEND=redis")
        namespace = env.get("SCAN_JOB_KEY_PREFIX", "scan")
        return RedisJobBackend(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported job backend: {backend}")


def create_job_backend_for_runtime(
    environ: Mapping[str, str] | None = None,
) -> JobBackend:
    env = os.environ if environ is None else environ
    try:
        return create_job_backend_from_env(env)
    except RuntimeError as exc:
        if true_stack_required(env):
            raise
        logger.warning("job_backend_fallback_to_memory reason=%s", exc)
        return InMemoryJobBackend()
