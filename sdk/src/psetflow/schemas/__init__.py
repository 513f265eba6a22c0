"""Public schema exports for the psetflow SDK."""

from psetflow.schemas.jobs import (
    LEDGER_EVENT_TYPES,
    PIPELINE_STAGES,
    CompilationResult,
    DocumentInput,
    GraphSummary,
    Job,
    JobStatus,
    JobStatusInfo,
    LedgerEvent,
    LedgerEventType,
    LedgerStats,
    PipelineStage,
    SolverJob,
    SolverProgress,
    SolverStatus,
)
from psetflow.schemas.problems import (
    ChunkedProblem,
    ChunkingOutput,
    DependencyDetectionOutput,
    DependencyGraph,
    DetectedDependency,
    Problem,
)

__all__ = [
    "LEDGER_EVENT_TYPES",
    "PIPELINE_STAGES",
    "ChunkedProblem",
    "ChunkingOutput",
    "CompilationResult",
    "DependencyDetectionOutput",
    "DependencyGraph",
    "DetectedDependency",
    "DocumentInput",
    "GraphSummary",
    "Job",
    "JobStatus",
    "JobStatusInfo",
    "LedgerEvent",
    "LedgerEventType",
    "LedgerStats",
    "PipelineStage",
    "Problem",
    "SolverJob",
    "SolverProgress",
    "SolverStatus",
]
