from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from app.errors import InvalidTransitionError, JobNotFoundError, JobPayloadError, StorageUnavailableError
from app.job_backends import JobBackend

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    FINAL = "FINAL"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({JobStatus.FINAL, JobStatus.FAILED, JobStatus.EXPIRED})


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat()


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only copy of a job record; mutating it never touches the store."""

    job_id: str
    status: JobStatus
    partial_result: Any
    final_result: Any
    created_at: float
    updated_at: float
    expires_at: float
    persisted: bool
    error: str | None
    version: int

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "partial_result": self.partial_result,
            "final_result": self.final_result,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
            "persisted": self.persisted,
            "error": self.error,
        }


class JobStore:
    """Owns scan job records and enforces the PENDING -> PARTIAL -> FINAL state machine.

    Records live behind a pluggable ``JobBackend``. Each transition reads the
    record with its version, validates the move, and writes it back with
    ``compare_and_set``; a lost race re-reads and re-validates, so a late
    ``set_partial`` can never clobber a record that already went FINAL.
    """

    DEFAULT_TTL_S = 30 * 60
    DEFAULT_TOMBSTONE_S = 10 * 60
    MAX_CAS_ATTEMPTS = 32

    ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
        JobStatus.PENDING: {JobStatus.PARTIAL, JobStatus.FINAL, JobStatus.FAILED, JobStatus.EXPIRED},
        JobStatus.PARTIAL: {JobStatus.FINAL, JobStatus.FAILED, JobStatus.EXPIRED},
        JobStatus.FINAL: {JobStatus.EXPIRED},
        JobStatus.FAILED: {JobStatus.EXPIRED},
        JobStatus.EXPIRED: set(),
    }

    def __init__(
        self,
        backend: JobBackend,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        tombstone_s: float = DEFAULT_TOMBSTONE_S,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.backend = backend
        self.ttl_s = max(0.0, float(ttl_s))
        self.tombstone_s = max(0.0, float(tombstone_s))
        self._clock = clock
        self._id_factory = id_factory or (lambda: f"scan_{uuid.uuid4().hex}")

    # -- record helpers -------------------------------------------------

    def _backend_ttl(self, record: dict[str, Any]) -> float:
        # Keep the row past expiry long enough to serve EXPIRED and reserve the id.
        return max(1.0, float(record["expires_at"]) + self.tombstone_s - self._clock())

    @staticmethod
    def _snapshot(version: int, record: dict[str, Any]) -> JobSnapshot:
        return JobSnapshot(
            job_id=str(record["job_id"]),
            status=JobStatus(record["status"]),
            partial_result=record.get("partial_result"),
            final_result=record.get("final_result"),
            created_at=float(record["created_at"]),
            updated_at=float(record["updated_at"]),
            expires_at=float(record["expires_at"]),
            persisted=bool(record.get("persisted", False)),
            error=record.get("error"),
            version=version,
        )

    def _next_updated_at(self, record: dict[str, Any]) -> float:
        return max(self._clock(), float(record["updated_at"]) + 1e-6)

    def _expired_record(self, record: dict[str, Any]) -> dict[str, Any]:
        expired = dict(record)
        expired["status"] = JobStatus.EXPIRED.value
        expired["partial_result"] = None
        expired["final_result"] = None
        expired["updated_at"] = self._next_updated_at(record)
        return expired

    def _load(self, job_id: str) -> tuple[int, dict[str, Any]]:
        """Read a record, applying lazy expiry and tombstone reclamation."""
        for _ in range(self.MAX_CAS_ATTEMPTS):
            current = self.backend.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            record = current.value
            now = self._clock()
            expires_at = float(record["expires_at"])
            if record["status"] == JobStatus.EXPIRED.value:
                if now >= expires_at + self.tombstone_s:
                    self.backend.delete(job_id)
                    raise JobNotFoundError(job_id)
                return current.version, record
            if now < expires_at:
                return current.version, record
            expired = self._expired_record(record)
            if self.backend.compare_and_set(job_id, current.version, expired, self._backend_ttl(expired)):
                logger.info("scan_job_expired job_id=%s from_status=%s", job_id, record["status"])
                return current.version + 1, expired
        raise StorageUnavailableError(f"job record contention: {job_id}")

    def _check_storable(self, job_id: str, record: dict[str, Any]) -> None:
        if not getattr(self.backend, "stores_json", False):
            return
        try:
            json.dumps(record)
        except (TypeError, ValueError) as exc:
            raise JobPayloadError(job_id=job_id, reason=str(exc)) from exc

    def _transition(
        self,
        job_id: str,
        new_status: JobStatus,
        mutate: Callable[[dict[str, Any]], None],
    ) -> JobSnapshot:
        for _ in range(self.MAX_CAS_ATTEMPTS):
            version, record = self._load(job_id)
            current_status = JobStatus(record["status"])
            if new_status not in self.ALLOWED_TRANSITIONS[current_status]:
                raise InvalidTransitionError(
                    job_id=job_id,
                    current_status=current_status.value,
                    new_status=new_status.value,
                )
            updated = dict(record)
            mutate(updated)
            self._check_storable(job_id, updated)
            updated["status"] = new_status.value
            updated["updated_at"] = self._next_updated_at(record)
            if self.backend.compare_and_set(job_id, version, updated, self._backend_ttl(updated)):
                logger.info(
                    "scan_job_transition job_id=%s from_status=%s to_status=%s",
                    job_id,
                    current_status.value,
                    new_status.value,
                )
                return self._snapshot(version + 1, updated)
        raise StorageUnavailableError(f"job record contention: {job_id}")

    # -- public contract ------------------------------------------------

    def create_job(self) -> str:
        now = self._clock()
        for _ in range(self.MAX_CAS_ATTEMPTS):
            job_id = self._id_factory()
            record = {
                "job_id": job_id,
                "status": JobStatus.PENDING.value,
                "partial_result": None,
                "final_result": None,
                "created_at": now,
                "updated_at": now,
                "expires_at": now + self.ttl_s,
                "persisted": False,
                "error": None,
            }
            # expected_version=0: only succeeds when no live or tombstoned record holds the id.
            if self.backend.compare_and_set(job_id, 0, record, self._backend_ttl(record)):
                logger.info("scan_job_created job_id=%s", job_id)
                return job_id
            logger.warning("scan_job_id_collision job_id=%s", job_id)
        raise StorageUnavailableError("could not allocate a unique job id")

    def get_job(self, job_id: str) -> JobSnapshot:
        version, record = self._load(job_id)
        return self._snapshot(version, record)

    def set_partial(self, job_id: str, result: Any) -> JobSnapshot:
        def _apply(record: dict[str, Any]) -> None:
            record["partial_result"] = result

        return self._transition(job_id, JobStatus.PARTIAL, _apply)

    def set_final(self, job_id: str, result: Any) -> JobSnapshot:
        def _apply(record: dict[str, Any]) -> None:
            record["final_result"] = result

        return self._transition(job_id, JobStatus.FINAL, _apply)

    def fail(self, job_id: str, reason: str) -> JobSnapshot:
        def _apply(record: dict[str, Any]) -> None:
            record["error"] = str(reason)

        return self._transition(job_id, JobStatus.FAILED, _apply)

    def mark_persisted(self, job_id: str) -> bool:
        """Flip ``persisted`` false -> true; True only for the caller that performed the flip."""
        for _ in range(self.MAX_CAS_ATTEMPTS):
            version, record = self._load(job_id)
            if record.get("persisted"):
                logger.info("scan_job_duplicate_save_suppressed job_id=%s", job_id)
                return False
            if record["status"] != JobStatus.FINAL.value:
                logger.warning(
                    "scan_job_persist_rejected job_id=%s status=%s",
                    job_id,
                    record["status"],
                )
                return False
            updated = dict(record)
            updated["persisted"] = True
            if self.backend.compare_and_set(job_id, version, updated, self._backend_ttl(updated)):
                return True
        raise StorageUnavailableError(f"job record contention: {job_id}")

    def sweep_expired(self) -> dict[str, int]:
        """Expire jobs past their TTL and reclaim tombstones past the grace period."""
        expired = 0
        reclaimed = 0
        for job_id in self.backend.keys():
            current = self.backend.get(job_id)
            if current is None:
                continue
            was_expired = current.value.get("status") == JobStatus.EXPIRED.value
            try:
                _, record = self._load(job_id)
            except JobNotFoundError:
                reclaimed += 1
                continue
            if not was_expired and record["status"] == JobStatus.EXPIRED.value:
                expired += 1
        if expired or reclaimed:
            logger.info("scan_job_sweep expired=%s reclaimed=%s", expired, reclaimed)
        return {"expired": expired, "reclaimed": reclaimed}


class ExpirySweeper:
    """Background task calling ``JobStore.sweep_expired`` on a fixed interval."""

    def __init__(self, store: JobStore, *, interval_s: float = 300.0) -> None:
        self._store = store
        self._interval_s = max(0.01, float(interval_s))
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval_s)
            except asyncio.CancelledError:
                break
            try:
                await asyncio.to_thread(self._store.sweep_expired)
            except StorageUnavailableError as exc:
                logger.warning("scan_job_sweep_skipped reason=%s", exc.message)
