from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from psetflow.schemas.problems import DependencyGraph, Problem

JobStatus = Literal["queued", "processing", "completed", "failed", "cancelled"]
PipelineStage = Literal[
    "validate",
    "transcribe",
    "chunk",
    "build_graph",
    "solve",
    "synthesize",
    "final_compile",
]
SolverStatus = Literal["waiting", "solving", "completed", "failed"]
LedgerEventType = Literal[
    "job_created",
    "job_updated",
    "stage_changed",
    "solver_started",
    "solver_completed",
    "solver_failed",
    "job_completed",
    "job_failed",
    "job_cancelled",
]

PIPELINE_STAGES: tuple[PipelineStage, ...] = (
    "validate",
    "transcribe",
    "chunk",
    "build_graph",
    "solve",
    "synthesize",
    "final_compile",
)
TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
TERMINAL_SOLVER_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
LEDGER_EVENT_TYPES: tuple[LedgerEventType, ...] = (
    "job_created",
    "job_updated",
    "stage_changed",
    "solver_started",
    "solver_completed",
    "solver_failed",
    "job_completed",
    "job_failed",
    "job_cancelled",
)


class DocumentInput(BaseModel):
    """Raw source document submitted for solving (PDF or LaTeX source)."""

    model_config = ConfigDict(extra="forbid")

    filename: str = "upload.pdf"
    content_type: str | None = None
    data: bytes
    message: str | None = None


class SolverJob(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    problem_id: str
    status: SolverStatus = "waiting"
    dependencies: list[str] = Field(default_factory=list)
    dependency_context: str | None = None
    solution: str | None = None
    compilation_attempts: int = Field(default=0, ge=0)
    compilation_errors: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


class Job(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    status: JobStatus = "queued"
    stage: PipelineStage = "validate"
    document: DocumentInput | None = None
    transcript: str | None = None
    problems: list[Problem] | None = None
    dependency_graph: DependencyGraph | None = None
    final_document: str | None = None
    final_pdf: bytes | None = None
    solver_jobs: dict[str, SolverJob] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    error: str | None = None


class CompilationResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    pdf: bytes | None = None
    log: str = ""
    errors: list[str] = Field(default_factory=list)


class LedgerEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: LedgerEventType
    job_id: str
    timestamp: str
    data: dict[str, Any] = Field(default_factory=dict)


class SolverProgress(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total: int = Field(..., ge=0)
    completed: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    in_progress: int = Field(..., ge=0)
    waiting: int = Field(..., ge=0)


class GraphSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_problems: int = Field(..., ge=0)
    levels: int = Field(..., ge=0)
    parallelizable: int = Field(..., ge=0)
    unscheduled: int = Field(default=0, ge=0)


class JobStatusInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    status: JobStatus
    stage: PipelineStage
    progress: str | None = None
    created_at: datetime
    updated_at: datetime
    error: str | None = None
    solver_progress: SolverProgress | None = None
    graph_summary: GraphSummary | None = None


class LedgerStats(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_jobs: int = Field(..., ge=0)
    by_status: dict[JobStatus, int]
