"""Pydantic schemas for the psetflow backend API."""

from psetflow_backend.schemas.errors import (
    ApiError,
    ApiErrorCode,
    ApiErrorResponse,
    error_response,
)
from psetflow_backend.schemas.jobs import (
    JobCancelResponse,
    JobCreatedResponse,
    JobDetailResponse,
    JobListResponse,
    JobSnapshotEvent,
    SolverJobSummary,
)

__all__ = [
    "ApiError",
    "ApiErrorCode",
    "ApiErrorResponse",
    "JobCancelResponse",
    "JobCreatedResponse",
    "JobDetailResponse",
    "JobListResponse",
    "JobSnapshotEvent",
    "SolverJobSummary",
    "error_response",
]
