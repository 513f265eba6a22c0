from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable

from psetflow.config import SchedulerConfig
from psetflow.errors import DocumentValidationError, JobNotFoundError, StageError
from psetflow.schemas.jobs import DocumentInput, PipelineStage
from psetflow.schemas.problems import DependencyGraph, Problem
from psetflow.services.dependency_graph import (
    build_dependency_graph,
    detect_dependencies_heuristic,
    flatten_problems,
    sanitize_dependencies,
)
from psetflow.services.document_validation import ValidatedDocument, validate_document
from psetflow.services.job_ledger import JobLedger
from psetflow.services.latex_compiler import LatexCompilerBackend, LatexSolutionValidator
from psetflow.services.problem_agents import ProblemAgents
from psetflow.services.retry_engine import AttemptPhase, SolveRetryEngine
from psetflow.services.synthesizer import synthesis_summary, synthesize_document

logger = logging.getLogger(__name__)


class _JobHalted(Exception):
    """Stops a run without touching the job status (it is already terminal)."""


class _RunState:
    def __init__(self, document: DocumentInput | None) -> None:
        self.document = document
        self.validated: ValidatedDocument | None = None
        self.transcript: str | None = None
        self.problems: list[Problem] = []
        self.graph: DependencyGraph | None = None
        self.final_document: str | None = None


class PipelineController:
    """Drive jobs through the ordered pipeline stages.

    Stages run strictly in order. A stage that raises fails the job with that
    stage's error and later stages never run. Inside the solve stage the
    dependency levels run one after another; the items of a level are solved
    concurrently, at most ``config.max_concurrent_solvers`` at a time, and an
    item's failure only affects its own solver job.
    """

    def __init__(
        self,
        ledger: JobLedger,
        agents: ProblemAgents,
        compiler: LatexCompilerBackend,
        *,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._ledger = ledger
        self._agents = agents
        self._compiler = compiler
        self._config = config or SchedulerConfig()
        self._engine = SolveRetryEngine(
            agents.solver,
            LatexSolutionValidator(compiler),
            attempt_timeout_seconds=self._config.solver_timeout_seconds,
        )
        self._runs: dict[str, asyncio.Task[None]] = {}
        self._item_tasks: dict[str, set[asyncio.Task[None]]] = defaultdict(set)

    @property
    def ledger(self) -> JobLedger:
        return self._ledger

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    def submit(self, document: DocumentInput) -> str:
        """Create a job and start running it in the background.

        Must be called from inside a running event loop.
        """

        loop = asyncio.get_running_loop()
        job_id = self._ledger.create_job(document)
        task = loop.create_task(self.run(job_id), name=f"psetflow-job-{job_id}")
        self._runs[job_id] = task
        task.add_done_callback(lambda _task: self._runs.pop(job_id, None))
        return job_id

    async def wait(self, job_id: str) -> None:
        """Wait for a background run started by ``submit`` to finish."""

        task = self._runs.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    def cancel(self, job_id: str) -> bool:
        """Cancel a job and interrupt its in-flight solver tasks.

        Returns ``False`` when the job is already terminal. Raises
        ``JobNotFoundError`` for unknown ids.
        """

        cancelled = self._ledger.cancel_job(job_id)
        if cancelled:
            for task in list(self._item_tasks.get(job_id, ())):
                task.cancel()
            logger.info("Cancelled job %s", job_id)
        return cancelled

    async def aclose(self) -> None:
        """Cancel every background run; used on application shutdown.

        Jobs still running are marked cancelled in the ledger before their
        tasks are interrupted.
        """

        runs = list(self._runs.items())
        for job_id, task in runs:
            if self._ledger.get_status(job_id) is not None:
                self.cancel(job_id)
            task.cancel()
        tasks = [task for _, task in runs]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run(self, job_id: str) -> None:
        job = self._ledger.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if not self._ledger.update_status(job_id, "processing"):
            logger.info("Job %s is already %s; not running", job_id, job.status)
            return

        state = _RunState(job.document)
        try:
            await self._validate(job_id, state)
        except DocumentValidationError as exc:
            logger.info("Job %s rejected input: %s", job_id, exc)
            self._ledger.update_status(job_id, "failed", error=str(exc))
            return
        except Exception as exc:
            logger.exception("Job %s failed in stage validate", job_id)
            self._ledger.update_status(job_id, "failed", error=f"validate stage failed: {exc}")
            return

        stages: list[tuple[PipelineStage, Callable[[str, _RunState], Awaitable[None]]]] = [
            ("transcribe", self._transcribe),
            ("chunk", self._chunk),
            ("build_graph", self._build_graph),
            ("solve", self._solve),
            ("synthesize", self._synthesize),
            ("final_compile", self._final_compile),
        ]
        for stage, handler in stages:
            if self._ledger.is_cancelled(job_id):
                logger.info("Job %s cancelled before stage %s", job_id, stage)
                return
            self._ledger.update_stage(job_id, stage)
            try:
                await handler(job_id, state)
            except _JobHalted:
                return
            except Exception as exc:
                logger.exception("Job %s failed in stage %s", job_id, stage)
                self._ledger.update_status(job_id, "failed", error=f"{stage} stage failed: {exc}")
                return

        self._ledger.update_status(job_id, "completed")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _validate(self, job_id: str, state: _RunState) -> None:
        # PyMuPDF parsing is blocking.
        state.validated = await asyncio.to_thread(validate_document, state.document)
        logger.info(
            "Job %s validated %s input (%d page(s))",
            job_id,
            state.validated.kind,
            state.validated.page_count,
        )

    async def _transcribe(self, job_id: str, state: _RunState) -> None:
        validated = state.validated
        if validated is None:
            raise StageError("Document was not validated")

        if validated.kind == "latex" and validated.source is not None:
            transcript = validated.source
        else:
            message = state.document.message if state.document is not None else None
            transcript = await self._agents.transcriber.transcribe(validated, message=message)
        if not transcript.strip():
            raise StageError("Transcription produced an empty document")

        state.transcript = transcript
        self._ledger.update_data(job_id, transcript=transcript)

    async def _chunk(self, job_id: str, state: _RunState) -> None:
        problems = await self._agents.chunker.chunk(state.transcript or "")
        if not problems:
            raise StageError("No problems found in the document")
        state.problems = list(problems)
        self._ledger.update_data(job_id, problems=state.problems)
        logger.info(
            "Job %s chunked into %d problem(s)", job_id, len(flatten_problems(state.problems))
        )

    async def _build_graph(self, job_id: str, state: _RunState) -> None:
        flat = flatten_problems(state.problems)
        try:
            detected = await self._agents.dependency_detector.detect(flat)
        except Exception:
            logger.warning(
                "Dependency detection failed for job %s; using text heuristics",
                job_id,
                exc_info=True,
            )
            detect_dependencies_heuristic(flat)
        else:
            for problem in flat:
                problem.dependencies = list(detected.get(problem.id, []))

        sanitize_dependencies(flat)
        graph = build_dependency_graph(flat)
        state.graph = graph
        self._ledger.update_data(job_id, problems=state.problems, dependency_graph=graph)
        self._ledger.initialize_solver_jobs(job_id, graph)
        logger.info(
            "Job %s graph: %d problem(s) in %d level(s), %d unscheduled",
            job_id,
            len(graph.nodes),
            len(graph.levels),
            len(graph.unscheduled),
        )

    async def _solve(self, job_id: str, state: _RunState) -> None:
        graph = state.graph
        if graph is None:
            raise StageError("Dependency graph was not built")

        semaphore = asyncio.Semaphore(self._config.max_concurrent_solvers)
        for index, level in enumerate(graph.levels):
            if self._ledger.is_cancelled(job_id):
                raise _JobHalted()
            logger.info("Job %s solving level %d (%d item(s))", job_id, index, len(level))
            await self._solve_level(job_id, graph, level, semaphore)

        if self._ledger.is_cancelled(job_id):
            raise _JobHalted()

    async def _synthesize(self, job_id: str, state: _RunState) -> None:
        solutions = self._ledger.get_completed_solutions(job_id)
        statuses = self._ledger.get_solver_statuses(job_id)
        document = synthesize_document(state.problems, solutions, statuses=statuses)
        state.final_document = document
        self._ledger.update_data(job_id, final_document=document)
        logger.info("Job %s: %s", job_id, synthesis_summary(state.problems, solutions))

    async def _final_compile(self, job_id: str, state: _RunState) -> None:
        result = await self._compiler.compile(state.final_document or "")
        if not result.success or result.pdf is None:
            details = "; ".join(result.errors[:3]) or "unknown error"
            raise StageError(f"Final document failed to compile: {details}")
        self._ledger.update_data(job_id, final_pdf=result.pdf)

    # ------------------------------------------------------------------
    # Solving
    # ------------------------------------------------------------------

    async def _solve_level(
        self,
        job_id: str,
        graph: DependencyGraph,
        level: list[str],
        semaphore: asyncio.Semaphore,
    ) -> None:
        tasks: list[asyncio.Task[None]] = []
        for problem_id in level:
            solver_job = self._ledger.get_solver_job(job_id, problem_id)
            if solver_job is None or solver_job.status != "waiting":
                continue
            if not self._ledger.are_dependencies_ready(job_id, problem_id):
                logger.info(
                    "Job %s: skipping problem %s, a dependency did not complete",
                    job_id,
                    problem_id,
                )
                continue
            task = asyncio.create_task(
                self._solve_item(job_id, graph.nodes[problem_id], semaphore),
                name=f"psetflow-solve-{job_id}-{problem_id}",
            )
            tasks.append(task)

        if not tasks:
            return

        registry = self._item_tasks[job_id]
        registry.update(tasks)
        try:
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            registry.difference_update(tasks)
            if not registry:
                self._item_tasks.pop(job_id, None)

    async def _solve_item(
        self, job_id: str, problem: Problem, semaphore: asyncio.Semaphore
    ) -> None:
        async with semaphore:
            if self._ledger.is_cancelled(job_id):
                return
            context = self._ledger.get_dependency_context(job_id, problem.id)
            if not self._ledger.update_solver_status(
                job_id, problem.id, "solving", dependency_context=context
            ):
                return

            def on_attempt(attempt: int, phase: AttemptPhase) -> None:
                if phase == "solving":
                    self._ledger.update_solver_status(
                        job_id, problem.id, "solving", compilation_attempts=attempt
                    )

            try:
                outcome = await self._engine.solve_with_retry(
                    problem,
                    dependency_context=context,
                    max_attempts=self._config.max_compilation_attempts,
                    on_attempt=on_attempt,
                )
            except Exception as exc:
                logger.exception("Job %s: solver crashed on problem %s", job_id, problem.id)
                self._ledger.update_solver_status(job_id, problem.id, "failed", error=str(exc))
                return

        if outcome.succeeded:
            self._ledger.update_solver_status(
                job_id,
                problem.id,
                "completed",
                solution=outcome.solution,
                compilation_attempts=outcome.attempts,
                compilation_errors=outcome.feedback,
            )
            return

        self._ledger.update_solver_status(
            job_id,
            problem.id,
            "failed",
            compilation_attempts=outcome.attempts,
            compilation_errors=outcome.feedback,
            error=f"Failed after {outcome.attempts} attempt(s): {outcome.last_error}",
        )
