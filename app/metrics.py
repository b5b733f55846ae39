"""Phase timing instrumentation for scan pipelines.

Phases follow the client-side breakdown of a scan round trip
(upload / ttfb / download / parsing / mapping / rendering) plus the
server-side stages the controller records itself (ocr, context, quick,
optimize, analysis, persist). ``total`` spans a whole job.

Server-Timing header format: ``name;dur=<ms>[;desc=...][, name;dur=<ms>]*``.
"""

from __future__ import annotations

import logging
import statistics
import threading
import time
from collections import deque
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 500


class Phase(str, Enum):
    UPLOAD = "upload"
    TTFB = "ttfb"
    DOWNLOAD = "download"
    NETWORK = "network"
    PARSING = "parsing"
    MAPPING = "mapping"
    RENDERING = "rendering"
    OCR = "ocr"
    CONTEXT = "context"
    QUICK = "quick"
    OPTIMIZE = "optimize"
    ANALYSIS = "analysis"
    PERSIST = "persist"
    TOTAL = "total"


@dataclass(frozen=True)
class Measurement:
    phase: Phase
    start_ts: float
    end_ts: float
    duration_ms: float
    server_timing: dict[str, float] = field(default_factory=dict)
    job_id: str | None = None


@dataclass(frozen=True)
class PhaseStats:
    phase: Phase
    count: int
    p50_ms: float
    p95_ms: float
    max_ms: float
    mean_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "count": self.count,
            "p50_ms": round(self.p50_ms, 2),
            "p95_ms": round(self.p95_ms, 2),
            "max_ms": round(self.max_ms, 2),
            "mean_ms": round(self.mean_ms, 2),
        }


def parse_server_timing(header: str | None) -> dict[str, float]:
    """Parse a Server-Timing header into ``{name: duration_ms}``.

    Segments without a name or a numeric ``dur`` are skipped; the first
    occurrence of a repeated name wins.
    """
    if not isinstance(header, str) or not header.strip():
        return {}
    out: dict[str, float] = {}
    for part in header.split(","):
        params = [p.strip() for p in part.split(";")]
        name = params[0]
        if not name or name in out:
            continue
        duration: float | None = None
        for param in params[1:]:
            key, sep, value = param.partition("=")
            if not sep or key.strip().lower() != "dur":
                continue
            try:
                duration = float(value.strip().strip('"'))
            except ValueError:
                duration = None
            break
        if duration is None or duration < 0 or duration != duration:
            continue
        out[name] = duration
    return out


def _server_timing(raw: Any) -> dict[str, float]:
    if isinstance(raw, Mapping):
        return _coerce_timings(raw)
    return parse_server_timing(raw)


def _coerce_timings(timings: Mapping[Any, Any]) -> dict[str, float]:
    out: dict[str, float] = {}
    for name, value in timings.items():
        if not isinstance(name, str) or not name.strip():
            continue
        try:
            duration = float(value)
        except (TypeError, ValueError, OverflowError):
            continue
        if duration < 0 or duration != duration:
            continue
        out.setdefault(name.strip(), duration)
    return out


def _percentile(sorted_values: list[float], q: float) -> float:
    if not sorted_values:
        return 0.0
    idx = int(len(sorted_values) * q)
    return sorted_values[min(idx, len(sorted_values) - 1)]


def _coerce_phase(phase: Phase | str) -> Phase:
    if isinstance(phase, Phase):
        return phase
    return Phase(str(phase).strip().lower())


class MetricsCollector:
    """Fixed-capacity rolling buffer of phase measurements.

    Appends are serialized by a lock; readers get snapshot copies. ``record``
    never raises: bad input is logged and dropped.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = max(1, int(capacity))
        self._buffer: deque[Measurement] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()

    def record(
        self,
        phase: Phase | str,
        start_ts: float,
        end_ts: float,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        try:
            resolved = _coerce_phase(phase)
            start = float(start_ts)
            end = float(end_ts)
            meta = dict(metadata or {})
            job_id = meta.get("job_id")
            measurement = Measurement(
                phase=resolved,
                start_ts=start,
                end_ts=end,
                duration_ms=max(0.0, (end - start) * 1000.0),
                server_timing=_server_timing(meta.get("server_timing")),
                job_id=str(job_id) if job_id is not None else None,
            )
            with self._lock:
                self._buffer.append(measurement)
        except (TypeError, ValueError, ArithmeticError) as exc:
            logger.debug("metrics_record_dropped phase=%s reason=%s", phase, exc)

    @contextmanager
    def phase_timer(self, phase: Phase | str, *, job_id: str | None = None) -> Iterator[None]:
        start = time.time()
        try:
            yield
        finally:
            self.record(phase, start, time.time(), {"job_id": job_id} if job_id else None)

    def get_all(self) -> list[Measurement]:
        with self._lock:
            return list(self._buffer)

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def compute_stats(self, phase: Phase | str) -> PhaseStats:
        resolved = _coerce_phase(phase)
        durations = sorted(m.duration_ms for m in self.get_all() if m.phase == resolved)
        if not durations:
            return PhaseStats(phase=resolved, count=0, p50_ms=0.0, p95_ms=0.0, max_ms=0.0, mean_ms=0.0)
        return PhaseStats(
            phase=resolved,
            count=len(durations),
            p50_ms=_percentile(durations, 0.50),
            p95_ms=_percentile(durations, 0.95),
            max_ms=durations[-1],
            mean_ms=statistics.mean(durations),
        )

    def analyze_bottleneck(self) -> Phase | None:
        """Phase with the largest mean duration; ties go to the most recently ended one.

        ``total`` spans every other phase and is excluded.
        """
        samples = [m for m in self.get_all() if m.phase is not Phase.TOTAL]
        if not samples:
            return None
        durations: dict[Phase, list[float]] = {}
        latest: dict[Phase, float] = {}
        for m in samples:
            durations.setdefault(m.phase, []).append(m.duration_ms)
            latest[m.phase] = max(latest.get(m.phase, m.end_ts), m.end_ts)
        return max(
            durations,
            key=lambda p: (statistics.mean(durations[p]), latest[p]),
        )

    def format_server_timing(self, job_id: str) -> str:
        """Render a Server-Timing header from the phases recorded for ``job_id``."""
        totals: dict[str, float] = {}
        for m in self.get_all():
            if m.job_id != job_id:
                continue
            totals[m.phase.value] = totals.get(m.phase.value, 0.0) + m.duration_ms
        return ", ".join(f"{name};dur={round(ms, 1)}" for name, ms in totals.items())

    def summary(self) -> dict[str, Any]:
        snapshot = self.get_all()
        phases = sorted({m.phase for m in snapshot}, key=lambda p: list(Phase).index(p))
        bottleneck = self.analyze_bottleneck()
        return {
            "capacity": self.capacity,
            "sample_count": len(snapshot),
            "phases": [self.compute_stats(p).to_dict() for p in phases],
            "bottleneck": bottleneck.value if bottleneck else None,
        }
