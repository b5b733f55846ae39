from __future__ import annotations

import asyncio

from fastapi import APIRouter, File, Form, Query, Request, Response, UploadFile

from app.errors import ApiError
from app.routes._deps import collector_from_request, controller_from_request, trace_id_from_request
from app.scan_controller import ScanRequest
from app.schemas import ScanAccepted, ScanJobView, success_envelope

router = APIRouter(prefix="/api/v1", tags=["scans"])

MAX_IMAGE_BYTES = 10 * 1024 * 1024


@router.post("/scans", status_code=202)
async def create_scan(
    request: Request,
    file: UploadFile = File(...),
    user_id: str = Form(...),
    language: str = Form(default="en"),
):
    image = await file.read()
    if not image:
        raise ApiError(
            code="SCAN_IMAGE_EMPTY",
            message="uploaded image is empty",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    if len(image) > MAX_IMAGE_BYTES:
        raise ApiError(
            code="SCAN_IMAGE_TOO_LARGE",
            message=f"image exceeds {MAX_IMAGE_BYTES} bytes",
            error_class="validation",
            retryable=False,
            http_status=413,
        )
    controller = controller_from_request(request)
    job_id = await controller.submit(
        ScanRequest(image=image, user_id=user_id.strip(), language=language.strip() or "en")
    )
    accepted = ScanAccepted(job_id=job_id, status="PENDING", poll_url=f"/api/v1/scans/{job_id}")
    return success_envelope(accepted.model_dump(), trace_id_from_request(request))


@router.get("/scans/{job_id}")
async def get_scan(job_id: str, request: Request, response: Response):
    controller = controller_from_request(request)
    snapshot = await asyncio.to_thread(controller.store.get_job, job_id)
    timing = collector_from_request(request).format_server_timing(job_id)
    if timing:
        response.headers["Server-Timing"] = timing
    view = ScanJobView.model_validate(snapshot.as_dict())
    return success_envelope(view.model_dump(), trace_id_from_request(request))


@router.delete("/scans/{job_id}")
async def cancel_scan(
    job_id: str,
    request: Request,
    reason: str = Query(default="client_disconnected", max_length=200),
):
    snapshot = await controller_from_request(request).cancel(job_id, reason)
    view = ScanJobView.model_validate(snapshot.as_dict())
    return success_envelope(view.model_dump(), trace_id_from_request(request))
