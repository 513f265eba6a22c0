from __future__ import annotations

from typing import Literal

from psetflow.schemas.jobs import (
    JobStatus,
    JobStatusInfo,
    LedgerStats,
    PipelineStage,
    SolverJob,
    SolverStatus,
)
from pydantic import BaseModel, ConfigDict, Field


class JobCreatedResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    status: JobStatus
    stage: PipelineStage


class JobListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    jobs: list[JobStatusInfo]
    stats: LedgerStats


class SolverJobSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    problem_id: str
    status: SolverStatus
    dependencies: list[str] = Field(default_factory=list)
    compilation_attempts: int = Field(default=0, ge=0)
    error: str | None = None

    @classmethod
    def from_solver_job(cls, solver_job: SolverJob) -> SolverJobSummary:
        return cls(
            problem_id=solver_job.problem_id,
            status=solver_job.status,
            dependencies=list(solver_job.dependencies),
            compilation_attempts=solver_job.compilation_attempts,
            error=solver_job.error,
        )


class JobDetailResponse(JobStatusInfo):
    """Status snapshot plus the per-problem view of the solve stage."""

    levels: list[list[str]] = Field(default_factory=list)
    unscheduled: list[str] = Field(default_factory=list)
    solver_jobs: list[SolverJobSummary] = Field(default_factory=list)
    has_document: bool = False
    has_pdf: bool = False


class JobCancelResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    status: JobStatus


class JobSnapshotEvent(BaseModel):
    """First line of a job event stream: the job's state when the stream opened."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["snapshot"] = "snapshot"
    job_id: str
    status: JobStatusInfo
