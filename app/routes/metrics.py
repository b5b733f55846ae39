from __future__ import annotations

from fastapi import APIRouter, Request

from app.routes._deps import collector_from_request, trace_id_from_request
from app.schemas import MetricsSummaryView, success_envelope

router = APIRouter(prefix="/api/v1", tags=["metrics"])


@router.get("/metrics/phases")
def phase_metrics(request: Request):
    summary = MetricsSummaryView.model_validate(collector_from_request(request).summary())
    return success_envelope(summary.model_dump(), trace_id_from_request(request))


@router.delete("/metrics/phases")
def reset_phase_metrics(request: Request):
    collector_from_request(request).clear()
    return success_envelope({"cleared": True}, trace_id_from_request(request))
