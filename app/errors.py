from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class JobNotFoundError(ApiError):
    """Job id unknown, or its expired tombstone has already been reclaimed."""

    def __init__(self, job_id: str) -> None:
        super().__init__(
            code="JOB_NOT_FOUND",
            message=f"job not found: {job_id}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
        self.job_id = job_id


class InvalidTransitionError(ApiError):
    def __init__(self, *, job_id: str, current_status: str, new_status: str) -> None:
        super().__init__(
            code="JOB_STATE_TRANSITION_INVALID",
            message=f"invalid transition: {current_status} -> {new_status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
        self.job_id = job_id
        self.current_status = current_status
        self.new_status = new_status


class StorageUnavailableError(ApiError):
    """Backend degraded; callers treat this as transient and leave the job alone."""

    def __init__(self, message: str = "job storage unavailable") -> None:
        super().__init__(
            code="JOB_STORAGE_UNAVAILABLE",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )


class JobPayloadError(ApiError):
    """Result payload cannot be stored by a JSON-backed (sqlite / redis) backend."""

    def __init__(self, *, job_id: str, reason: str) -> None:
        super().__init__(
            code="JOB_PAYLOAD_INVALID",
            message=f"job payload not storable: {reason}",
            error_class="validation",
            retryable=False,
            http_status=422,
        )
        self.job_id = job_id
