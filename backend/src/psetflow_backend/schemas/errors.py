from __future__ import annotations

import uuid
from typing import Final, Literal

from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

ApiErrorCode = Literal[
    "job_not_found",
    "job_already_finished",
    "document_not_ready",
    "pdf_not_ready",
]

# code -> (HTTP status, recoverable)
ERROR_STATUS: Final[dict[ApiErrorCode, tuple[int, bool]]] = {
    "job_not_found": (404, False),
    "job_already_finished": (409, False),
    "document_not_ready": (409, True),
    "pdf_not_ready": (409, True),
}


class ApiError(BaseModel):
    """Error body for every non-2xx job endpoint.

    ``recoverable`` is true when polling again can succeed, e.g. a download
    requested before the job produced its document.
    """

    model_config = ConfigDict(extra="forbid")

    code: ApiErrorCode = Field(..., description="Machine-readable job error code")
    message: str = Field(..., description="What went wrong, naming the job id")
    recoverable: bool = Field(..., description="Whether retrying later can succeed")
    request_id: str = Field(..., description="Per-request correlation identifier")


class ApiErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: ApiError


def new_request_id() -> str:
    return uuid.uuid4().hex


def error_response(
    code: ApiErrorCode,
    message: str,
    *,
    request_id: str | None = None,
) -> JSONResponse:
    """Render ``code`` as a JSON error with its fixed status and recoverability."""

    status_code, recoverable = ERROR_STATUS[code]
    payload = ApiErrorResponse(
        error=ApiError(
            code=code,
            message=message,
            recoverable=recoverable,
            request_id=request_id or new_request_id(),
        )
    )
    return JSONResponse(status_code=status_code, content=payload.model_dump())


def job_not_found(job_id: str) -> JSONResponse:
    return error_response("job_not_found", f"Job {job_id} not found")
