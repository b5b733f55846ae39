from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ScanAccepted(BaseModel):
    job_id: str
    status: Literal["PENDING", "PARTIAL", "FINAL", "FAILED", "EXPIRED"]
    poll_url: str


class ScanJobView(BaseModel):
    job_id: str
    status: Literal["PENDING", "PARTIAL", "FINAL", "FAILED", "EXPIRED"]
    partial_result: dict[str, Any] | None = None
    final_result: dict[str, Any] | None = None
    created_at: str
    updated_at: str
    expires_at: str
    persisted: bool = False
    error: str | None = None


class PhaseStatsView(BaseModel):
    phase: str
    count: int = Field(ge=0)
    p50_ms: float
    p95_ms: float
    max_ms: float
    mean_ms: float


class MetricsSummaryView(BaseModel):
    capacity: int
    sample_count: int
    phases: list[PhaseStatsView] = Field(default_factory=list)
    bottleneck: str | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
