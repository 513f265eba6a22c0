from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from psetflow.errors import InvalidTransitionError, JobNotFoundError
from psetflow.schemas.jobs import (
    PIPELINE_STAGES,
    TERMINAL_JOB_STATUSES,
    TERMINAL_SOLVER_STATUSES,
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
from psetflow.schemas.problems import DependencyGraph, Problem

logger = logging.getLogger(__name__)

LedgerListener = Callable[[LedgerEvent], None]

CANCELLED_SOLVER_ERROR = "Job cancelled by user"

_STAGE_PROGRESS: dict[PipelineStage, str] = {
    "validate": "Validating input document...",
    "transcribe": "Transcribing document to LaTeX...",
    "chunk": "Chunking problems...",
    "build_graph": "Building dependency graph...",
    "solve": "Solving problems...",
    "synthesize": "Synthesizing final document...",
    "final_compile": "Compiling final PDF...",
}
_STATUS_EVENTS: dict[str, LedgerEventType] = {
    "completed": "job_completed",
    "failed": "job_failed",
    "cancelled": "job_cancelled",
}


def _now() -> datetime:
    return datetime.now(tz=UTC)


class JobLedger:
    """Thread-safe in-memory registry of jobs and their solver jobs.

    The ledger is the only writer of ``Job`` and ``SolverJob`` records. Every
    mutation runs under one re-entrant lock and bumps the job's ``updated_at``;
    readers receive deep copies. Events are dispatched after the lock is
    released, so listeners may call back into the ledger.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        self._listeners: dict[LedgerEventType, list[LedgerListener]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, document: DocumentInput | None = None) -> str:
        job_id = uuid4().hex
        now = _now()
        job = Job(id=job_id, document=document, created_at=now, updated_at=now)
        with self._lock:
            self._jobs[job_id] = job
        logger.info("Created job %s", job_id)
        self._dispatch([self._event("job_created", job_id, status=job.status, stage=job.stage)])
        return job_id

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def list_jobs(self) -> list[Job]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def get_status(self, job_id: str) -> JobStatus | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.status if job is not None else None

    def is_cancelled(self, job_id: str) -> bool:
        return self.get_status(job_id) == "cancelled"

    def update_status(self, job_id: str, status: JobStatus, error: str | None = None) -> bool:
        """Set the job status; terminal jobs ignore further changes."""

        with self._lock:
            job = self._require_job(job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                logger.debug(
                    "Ignoring status %s for job %s already %s", status, job_id, job.status
                )
                return False
            job.status = status
            if error:
                job.error = error
            job.updated_at = _now()
            events = [self._event("job_updated", job_id, status=status, error=error)]
            terminal_event = _STATUS_EVENTS.get(status)
            if terminal_event is not None:
                events.append(self._event(terminal_event, job_id, error=error))

        logger.info(
            "Job %s status -> %s%s", job_id, status, f" (error: {error})" if error else ""
        )
        self._dispatch(events)
        return True

    def update_stage(self, job_id: str, stage: PipelineStage) -> bool:
        """Advance the job to ``stage``; stages only move forward."""

        with self._lock:
            job = self._require_job(job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                return False
            current = PIPELINE_STAGES.index(job.stage)
            target = PIPELINE_STAGES.index(stage)
            if target < current:
                raise InvalidTransitionError(
                    f"Job {job_id} cannot move back from stage {job.stage} to {stage}"
                )
            if target == current:
                return False
            previous = job.stage
            job.stage = stage
            job.updated_at = _now()
            event = self._event("stage_changed", job_id, stage=stage, previous=previous)

        logger.info("Job %s stage -> %s", job_id, stage)
        self._dispatch([event])
        return True

    def update_data(
        self,
        job_id: str,
        *,
        transcript: str | None = None,
        problems: list[Problem] | None = None,
        dependency_graph: DependencyGraph | None = None,
        final_document: str | None = None,
        final_pdf: bytes | None = None,
    ) -> None:
        """Store intermediate artifacts; ``None`` arguments are left untouched."""

        with self._lock:
            job = self._require_job(job_id)
            fields: list[str] = []
            if transcript is not None:
                job.transcript = transcript
                fields.append("transcript")
            if problems is not None:
                job.problems = [problem.model_copy(deep=True) for problem in problems]
                fields.append("problems")
            if dependency_graph is not None:
                job.dependency_graph = dependency_graph.model_copy(deep=True)
                fields.append("dependency_graph")
            if final_document is not None:
                job.final_document = final_document
                fields.append("final_document")
            if final_pdf is not None:
                job.final_pdf = final_pdf
                fields.append("final_pdf")
            if not fields:
                return
            job.updated_at = _now()
            event = self._event("job_updated", job_id, fields=fields)

        self._dispatch([event])

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job and fail every solver job currently solving.

        The job status and the solver failures change in one locked section,
        so no listener or thread observes a cancelled job with a solver still
        solving. Calls already in flight for those solver jobs are not
        interrupted; whatever they return is ignored because the solver jobs
        are terminal. Returns ``False`` for terminal jobs.
        """

        with self._lock:
            job = self._require_job(job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                return False

            now = _now()
            job.status = "cancelled"
            job.updated_at = now
            events: list[LedgerEvent] = []
            for solver_job in job.solver_jobs.values():
                if solver_job.status != "solving":
                    continue
                solver_job.status = "failed"
                solver_job.error = CANCELLED_SOLVER_ERROR
                solver_job.completed_at = now
                events.append(
                    self._event(
                        "solver_failed",
                        job_id,
                        problem_id=solver_job.problem_id,
                        error=CANCELLED_SOLVER_ERROR,
                    )
                )
            events.append(self._event("job_updated", job_id, status="cancelled"))
            events.append(self._event("job_cancelled", job_id))

        logger.info("Job %s status -> cancelled", job_id)
        self._dispatch(events)
        return True

    # ------------------------------------------------------------------
    # Solver jobs
    # ------------------------------------------------------------------

    def initialize_solver_jobs(self, job_id: str, graph: DependencyGraph) -> None:
        with self._lock:
            job = self._require_job(job_id)
            solver_jobs: dict[str, SolverJob] = {}
            for problem_id, problem in graph.nodes.items():
                solver_jobs[problem_id] = SolverJob(
                    id=uuid4().hex,
                    problem_id=problem_id,
                    dependencies=list(graph.edges.get(problem_id, problem.dependencies)),
                )
            job.solver_jobs = solver_jobs
            if job.dependency_graph is None:
                job.dependency_graph = graph.model_copy(deep=True)
            job.updated_at = _now()
            event = self._event("job_updated", job_id, solver_jobs_initialized=len(solver_jobs))

        self._dispatch([event])

    def get_solver_job(self, job_id: str, problem_id: str) -> SolverJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            solver_job = job.solver_jobs.get(problem_id)
            return solver_job.model_copy(deep=True) if solver_job is not None else None

    def update_solver_status(
        self,
        job_id: str,
        problem_id: str,
        status: SolverStatus,
        *,
        solution: str | None = None,
        dependency_context: str | None = None,
        compilation_attempts: int | None = None,
        compilation_errors: list[str] | None = None,
        error: str | None = None,
    ) -> bool:
        """Transition a solver job and attach result data.

        Writes onto a solver job that is already terminal (completed, or failed
        by cancellation) are ignored and return ``False``, as are attempts to
        start or complete a solver job once its job is terminal.
        """

        with self._lock:
            job = self._require_job(job_id)
            solver_job = job.solver_jobs.get(problem_id)
            if solver_job is None:
                raise JobNotFoundError(f"Solver job {problem_id} not found in job {job_id}")
            if job.status in TERMINAL_JOB_STATUSES and status in ("solving", "completed"):
                logger.debug(
                    "Ignoring %s for solver %s/%s: job already %s",
                    status,
                    job_id,
                    problem_id,
                    job.status,
                )
                return False
            if solver_job.status in TERMINAL_SOLVER_STATUSES:
                logger.debug(
                    "Ignoring %s for solver %s/%s already %s",
                    status,
                    job_id,
                    problem_id,
                    solver_job.status,
                )
                return False
            self._check_solver_transition(job, solver_job, status)

            previous = solver_job.status
            now = _now()
            solver_job.status = status
            if solution is not None:
                solver_job.solution = solution
            if dependency_context is not None:
                solver_job.dependency_context = dependency_context
            if compilation_attempts is not None:
                solver_job.compilation_attempts = compilation_attempts
            if compilation_errors is not None:
                solver_job.compilation_errors = list(compilation_errors)
            if error is not None:
                solver_job.error = error

            events: list[LedgerEvent] = []
            if status == "solving" and solver_job.started_at is None:
                solver_job.started_at = now
                events.append(self._event("solver_started", job_id, problem_id=problem_id))
            elif status == "completed":
                solver_job.completed_at = now
                events.append(self._event("solver_completed", job_id, problem_id=problem_id))
            elif status == "failed":
                solver_job.completed_at = now
                events.append(
                    self._event(
                        "solver_failed", job_id, problem_id=problem_id, error=solver_job.error
                    )
                )
            job.updated_at = now

        if previous != status:
            logger.debug("Solver %s/%s %s -> %s", job_id, problem_id, previous, status)
        self._dispatch(events)
        return True

    def are_dependencies_ready(self, job_id: str, problem_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            solver_job = job.solver_jobs.get(problem_id)
            if solver_job is None:
                return False
            return self._dependencies_ready(job, solver_job)

    def get_ready_problems(self, job_id: str) -> list[str]:
        """Waiting solver jobs whose dependencies are all completed."""

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return []
            return [
                problem_id
                for problem_id, solver_job in job.solver_jobs.items()
                if solver_job.status == "waiting" and self._dependencies_ready(job, solver_job)
            ]

    def get_dependency_context(self, job_id: str, problem_id: str) -> str | None:
        """Concatenate completed dependency solutions, labeled by display number."""

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            solver_job = job.solver_jobs.get(problem_id)
            if solver_job is None or not solver_job.dependencies:
                return None

            nodes = job.dependency_graph.nodes if job.dependency_graph is not None else {}
            parts: list[str] = []
            for dep_id in solver_job.dependencies:
                dep = job.solver_jobs.get(dep_id)
                if dep is None or dep.status != "completed" or not dep.solution:
                    continue
                dep_problem = nodes.get(dep_id)
                number = dep_problem.number if dep_problem is not None else dep_id
                parts.append(f"\\textbf{{From Problem {number}:}}\n{dep.solution}\n")

        return "\n".join(parts) if parts else None

    def get_completed_solutions(self, job_id: str) -> dict[str, str]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return {}
            return {
                problem_id: solver_job.solution
                for problem_id, solver_job in job.solver_jobs.items()
                if solver_job.status == "completed" and solver_job.solution
            }

    def get_solver_statuses(self, job_id: str) -> dict[str, SolverStatus]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return {}
            return {
                problem_id: solver_job.status
                for problem_id, solver_job in job.solver_jobs.items()
            }

    def are_all_solvers_done(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.solver_jobs:
                return False
            return all(
                solver_job.status in TERMINAL_SOLVER_STATUSES
                for solver_job in job.solver_jobs.values()
            )

    # ------------------------------------------------------------------
    # Status queries
    # ------------------------------------------------------------------

    def get_job_status(self, job_id: str) -> JobStatusInfo | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            return self._status_info(job)

    def get_all_job_statuses(self) -> list[JobStatusInfo]:
        with self._lock:
            return [self._status_info(job) for job in self._jobs.values()]

    def get_stats(self) -> LedgerStats:
        by_status: dict[JobStatus, int] = {
            "queued": 0,
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
        }
        with self._lock:
            for job in self._jobs.values():
                by_status[job.status] += 1
            return LedgerStats(total_jobs=len(self._jobs), by_status=by_status)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event_type: LedgerEventType, listener: LedgerListener) -> None:
        with self._lock:
            self._listeners[event_type].append(listener)

    def off(self, event_type: LedgerEventType, listener: LedgerListener) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type)
            if listeners and listener in listeners:
                listeners.remove(listener)

    def reset(self) -> None:
        """Drop every job and listener."""

        with self._lock:
            self._jobs.clear()
            self._listeners.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    @staticmethod
    def _dependencies_ready(job: Job, solver_job: SolverJob) -> bool:
        for dep_id in solver_job.dependencies:
            dep = job.solver_jobs.get(dep_id)
            if dep is None or dep.status != "completed":
                return False
        return True

    def _check_solver_transition(
        self, job: Job, solver_job: SolverJob, status: SolverStatus
    ) -> None:
        current = solver_job.status
        if status == "waiting" and current != "waiting":
            raise InvalidTransitionError(
                f"Solver {solver_job.problem_id} cannot return to waiting from {current}"
            )
        if status == "solving" and current == "waiting":
            if not self._dependencies_ready(job, solver_job):
                raise InvalidTransitionError(
                    f"Solver {solver_job.problem_id} has unfinished dependencies"
                )
        if status == "completed" and current != "solving":
            raise InvalidTransitionError(
                f"Solver {solver_job.problem_id} cannot complete from {current}"
            )

    @staticmethod
    def _status_info(job: Job) -> JobStatusInfo:
        solver_progress: SolverProgress | None = None
        if job.solver_jobs:
            statuses = [solver_job.status for solver_job in job.solver_jobs.values()]
            solver_progress = SolverProgress(
                total=len(statuses),
                completed=statuses.count("completed"),
                failed=statuses.count("failed"),
                in_progress=statuses.count("solving"),
                waiting=statuses.count("waiting"),
            )

        graph_summary: GraphSummary | None = None
        graph = job.dependency_graph
        if graph is not None:
            graph_summary = GraphSummary(
                total_problems=len(graph.nodes),
                levels=len(graph.levels),
                parallelizable=len(graph.levels[0]) if graph.levels else 0,
                unscheduled=len(graph.unscheduled),
            )

        if job.status == "queued":
            progress = "Queued for processing"
        elif job.status == "completed":
            progress = "Completed"
        elif job.status == "cancelled":
            progress = "Cancelled by user"
        elif job.status == "failed":
            progress = f"Failed during {job.stage}"
        elif job.stage == "solve" and solver_progress is not None:
            progress = (
                f"Solving problems: {solver_progress.completed}/{solver_progress.total} "
                f"completed, {solver_progress.failed} failed, "
                f"{solver_progress.in_progress} in progress, {solver_progress.waiting} waiting"
            )
        else:
            progress = _STAGE_PROGRESS[job.stage]

        return JobStatusInfo(
            job_id=job.id,
            status=job.status,
            stage=job.stage,
            progress=progress,
            created_at=job.created_at,
            updated_at=job.updated_at,
            error=job.error,
            solver_progress=solver_progress,
            graph_summary=graph_summary,
        )

    @staticmethod
    def _event(event_type: LedgerEventType, job_id: str, **data: Any) -> LedgerEvent:
        return LedgerEvent(
            type=event_type,
            job_id=job_id,
            timestamp=_now().isoformat(),
            data={key: value for key, value in data.items() if value is not None},
        )

    def _dispatch(self, events: list[LedgerEvent]) -> None:
        for event in events:
            with self._lock:
                listeners = list(self._listeners.get(event.type, []))
            for listener in listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception("Error in ledger listener for %s", event.type)
