from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from app.runtime_profile import _as_bool


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class ScanSettings:
    job_backend: str = "memory"
    job_sqlite_path: str = ".runtime/scan_jobs.sqlite3"
    redis_dsn: str = ""
    job_key_prefix: str = "scan"
    job_ttl_s: int = 30 * 60
    job_tombstone_s: int = 10 * 60
    sweep_interval_s: int = 5 * 60
    deadline_s: float = 30.0
    token_max_items: int = 60
    token_truncate_order: str = "tail"
    metrics_capacity: int = 500
    merge_quick_verdict: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ScanSettings:
        env = os.environ if environ is None else environ
        return cls(
            job_backend=env.get("SCAN_JOB_BACKEND", "memory").strip().lower() or "memory",
            job_sqlite_path=env.get("SCAN_JOB_SQLITE_PATH", ".runtime/scan_jobs.sqlite3"),
            redis_dsn=env.get("REDIS_DSN", "").strip(),
            job_key_prefix=env.get("SCAN_JOB_KEY_PREFIX", "scan").strip() or "scan",
            job_ttl_s=_env_int(env, "SCAN_JOB_TTL_S", default=30 * 60, minimum=1),
            job_tombstone_s=_env_int(env, "SCAN_JOB_TOMBSTONE_S", default=10 * 60, minimum=0),
            sweep_interval_s=_env_int(env, "SCAN_SWEEP_INTERVAL_S", default=5 * 60, minimum=1),
            deadline_s=_env_float(env, "SCAN_DEADLINE_S", default=30.0, minimum=0.1),
            token_max_items=_env_int(env, "SCAN_TOKEN_MAX_ITEMS", default=60, minimum=1),
            token_truncate_order=env.get("SCAN_TOKEN_TRUNCATE_ORDER", "tail").strip().lower() or "tail",
            metrics_capacity=_env_int(env, "SCAN_METRICS_CAPACITY", default=500, minimum=1),
            merge_quick_verdict=_as_bool(env.get("SCAN_MERGE_QUICK_VERDICT", "true")),
        )
