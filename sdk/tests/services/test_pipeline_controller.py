from __future__ import annotations

import asyncio
from collections.abc import Sequence

import pytest

from psetflow.config import SchedulerConfig
from psetflow.schemas.jobs import CompilationResult, DocumentInput
from psetflow.schemas.problems import Problem
from psetflow.services.dependency_graph import build_problem_hierarchy
from psetflow.services.document_validation import ValidatedDocument
from psetflow.services.job_ledger import CANCELLED_SOLVER_ERROR, JobLedger
from psetflow.services.pipeline_controller import PipelineController
from psetflow.services.problem_agents import ProblemAgents

_SOURCE = DocumentInput(filename="pset.tex", data=b"\\section*{Problem 1} x", content_type=None)


class _FakeTranscriber:
    def __init__(self) -> None:
        self.calls = 0

    async def transcribe(self, document: ValidatedDocument, *, message: str | None = None) -> str:
        self.calls += 1
        return "transcript"


class _FakeChunker:
    def __init__(self, flat: list[Problem] | None = None, *, error: Exception | None = None) -> None:
        self._flat = flat or []
        self._error = error

    async def chunk(self, transcript: str) -> list[Problem]:
        if self._error is not None:
            raise self._error
        return build_problem_hierarchy([problem.model_copy(deep=True) for problem in self._flat])


class _FakeDetector:
    def __init__(self, deps: dict[str, list[str]] | None = None, *, error: Exception | None = None) -> None:
        self._deps = deps or {}
        self._error = error

    async def detect(self, problems: Sequence[Problem]) -> dict[str, list[str]]:
        if self._error is not None:
            raise self._error
        return self._deps


class _FakeSolver:
    """Solves every problem with ``SOL-<id>``, or ``BAD`` for ids in ``failing``."""

    def __init__(self, *, failing: Sequence[str] = (), delay: float = 0.0) -> None:
        self.failing = set(failing)
        self.delay = delay
        self.order: list[str] = []
        self.contexts: dict[str, str | None] = {}
        self.active = 0
        self.max_active = 0

    async def solve(
        self,
        problem: Problem,
        *,
        dependency_context: str | None = None,
        previous_errors: Sequence[str] = (),
    ) -> str:
        self.order.append(problem.id)
        self.contexts[problem.id] = dependency_context
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if problem.id in self.failing:
            return "BAD"
        return f"SOL-{problem.id}"


class _BlockingSolver:
    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def solve(
        self,
        problem: Problem,
        *,
        dependency_context: str | None = None,
        previous_errors: Sequence[str] = (),
    ) -> str:
        self.started.set()
        await asyncio.Event().wait()
        return "never"


class _FakeCompiler:
    """Fails any document containing ``BAD``; optionally fails every full document."""

    def __init__(self, *, fail_final: bool = False) -> None:
        self.fail_final = fail_final
        self.documents: list[str] = []

    async def compile(self, document: str) -> CompilationResult:
        self.documents.append(document)
        if "BAD" in document:
            return CompilationResult(success=False, log="! Undefined control sequence.", errors=["Undefined control sequence"])
        if self.fail_final and "\\section*" in document:
            return CompilationResult(success=False, log="! Emergency stop.", errors=["Emergency stop."])
        return CompilationResult(success=True, pdf=b"%PDF-final")


def _flat_problems(*ids: str) -> list[Problem]:
    return [Problem(id=problem_id, number=problem_id, text=f"Problem {problem_id} text") for problem_id in ids]


def _controller(
    *,
    chunker: _FakeChunker,
    detector: _FakeDetector | None = None,
    solver: object | None = None,
    compiler: _FakeCompiler | None = None,
    config: SchedulerConfig | None = None,
    transcriber: _FakeTranscriber | None = None,
) -> PipelineController:
    agents = ProblemAgents(
        transcriber=transcriber or _FakeTranscriber(),
        chunker=chunker,
        dependency_detector=detector or _FakeDetector(),
        solver=solver or _FakeSolver(),  # type: ignore[arg-type]
    )
    return PipelineController(
        JobLedger(),
        agents,
        compiler or _FakeCompiler(),
        config=config or SchedulerConfig(max_compilation_attempts=2),
    )


async def _run(controller: PipelineController, document: DocumentInput | None = _SOURCE) -> str:
    job_id = controller.ledger.create_job(document)
    await controller.run(job_id)
    return job_id


@pytest.mark.asyncio
async def test_full_pipeline_produces_document_and_pdf() -> None:
    transcriber = _FakeTranscriber()
    solver = _FakeSolver()
    controller = _controller(
        chunker=_FakeChunker(_flat_problems("1", "2", "3")),
        detector=_FakeDetector({"2": ["1"]}),
        solver=solver,
        transcriber=transcriber,
    )

    job_id = await _run(controller)

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "completed"
    assert job.stage == "final_compile"
    assert job.error is None
    assert job.transcript == _SOURCE.data.decode("utf-8")
    assert transcriber.calls == 0
    assert job.dependency_graph is not None
    assert job.dependency_graph.levels == [["1", "3"], ["2"]]
    assert job.final_pdf == b"%PDF-final"
    assert job.final_document is not None
    assert "SOL-1" in job.final_document
    assert solver.order.index("2") > solver.order.index("1")
    assert solver.contexts["2"] == "\\textbf{From Problem 1:}\nSOL-1\n"
    assert solver.contexts["1"] is None
    assert {solver_job.status for solver_job in job.solver_jobs.values()} == {"completed"}


@pytest.mark.asyncio
async def test_failed_item_blocks_dependents_but_not_siblings() -> None:
    controller = _controller(
        chunker=_FakeChunker(_flat_problems("1", "2", "3")),
        detector=_FakeDetector({"2": ["1"]}),
        solver=_FakeSolver(failing=["1"]),
    )

    job_id = await _run(controller)

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "completed"
    assert job.solver_jobs["1"].status == "failed"
    assert job.solver_jobs["1"].compilation_attempts == 2
    assert job.solver_jobs["1"].error is not None
    assert job.solver_jobs["1"].error.startswith("Failed after 2 attempt(s)")
    assert len(job.solver_jobs["1"].compilation_errors) == 2
    assert job.solver_jobs["2"].status == "waiting"
    assert job.solver_jobs["3"].status == "completed"
    assert job.final_document is not None
    assert "SOL-3" in job.final_document
    assert "blocked by an unsolved dependency" in job.final_document


@pytest.mark.asyncio
async def test_invalid_input_fails_in_validate_stage() -> None:
    transcriber = _FakeTranscriber()
    controller = _controller(chunker=_FakeChunker(_flat_problems("1")), transcriber=transcriber)

    job_id = await _run(controller, DocumentInput(filename="pset.docx", data=b"PK\x03\x04"))

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.stage == "validate"
    assert job.error is not None
    assert "Unsupported document type" in job.error
    assert transcriber.calls == 0


@pytest.mark.asyncio
async def test_stage_error_stops_pipeline_with_stage_in_message() -> None:
    controller = _controller(chunker=_FakeChunker(error=RuntimeError("model offline")))

    job_id = await _run(controller)

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.stage == "chunk"
    assert job.error == "chunk stage failed: model offline"
    assert job.dependency_graph is None
    assert job.solver_jobs == {}


@pytest.mark.asyncio
async def test_empty_chunking_result_fails_job() -> None:
    controller = _controller(chunker=_FakeChunker([]))

    job_id = await _run(controller)

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.error is not None
    assert "No problems found" in job.error


@pytest.mark.asyncio
async def test_final_compile_failure_fails_job_but_keeps_document() -> None:
    controller = _controller(
        chunker=_FakeChunker(_flat_problems("1")),
        compiler=_FakeCompiler(fail_final=True),
    )

    job_id = await _run(controller)

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "failed"
    assert job.stage == "final_compile"
    assert job.final_document is not None
    assert job.final_pdf is None
    assert job.error is not None
    assert "Emergency stop." in job.error


@pytest.mark.asyncio
async def test_detector_failure_falls_back_to_heuristics() -> None:
    flat = [
        Problem(id="1", number="1", text="Prove the identity."),
        Problem(id="2", number="2", text="Using Problem 1, compute the value."),
    ]
    controller = _controller(
        chunker=_FakeChunker(flat),
        detector=_FakeDetector(error=RuntimeError("detector down")),
    )

    job_id = await _run(controller)

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "completed"
    assert job.dependency_graph is not None
    assert job.dependency_graph.levels == [["1"], ["2"]]


@pytest.mark.asyncio
async def test_concurrency_is_capped_per_level() -> None:
    solver = _FakeSolver(delay=0.02)
    controller = _controller(
        chunker=_FakeChunker(_flat_problems("1", "2", "3", "4", "5")),
        solver=solver,
        config=SchedulerConfig(max_concurrent_solvers=2, max_compilation_attempts=1),
    )

    job_id = await _run(controller)

    assert controller.ledger.get_status(job_id) == "completed"
    assert solver.max_active == 2
    assert sorted(solver.order) == ["1", "2", "3", "4", "5"]


@pytest.mark.asyncio
async def test_cycle_members_stay_waiting() -> None:
    controller = _controller(
        chunker=_FakeChunker(_flat_problems("1", "2", "3")),
        detector=_FakeDetector({"2": ["3"], "3": ["2"]}),
    )

    job_id = await _run(controller)

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "completed"
    assert job.dependency_graph is not None
    assert job.dependency_graph.unscheduled == ["2", "3"]
    assert job.solver_jobs["1"].status == "completed"
    assert job.solver_jobs["2"].status == "waiting"
    assert job.solver_jobs["3"].status == "waiting"


@pytest.mark.asyncio
async def test_cancel_interrupts_running_solvers() -> None:
    solver = _BlockingSolver()
    controller = _controller(chunker=_FakeChunker(_flat_problems("1", "2")), solver=solver)

    job_id = controller.submit(_SOURCE)
    await asyncio.wait_for(solver.started.wait(), timeout=5)

    assert controller.cancel(job_id) is True
    await asyncio.wait_for(controller.wait(job_id), timeout=5)

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "cancelled"
    assert job.stage == "solve"
    assert job.solver_jobs["1"].status == "failed"
    assert job.solver_jobs["1"].error == CANCELLED_SOLVER_ERROR
    assert job.final_document is None
    assert controller.cancel(job_id) is False


@pytest.mark.asyncio
async def test_aclose_cancels_background_runs() -> None:
    solver = _BlockingSolver()
    controller = _controller(chunker=_FakeChunker(_flat_problems("1")), solver=solver)

    job_id = controller.submit(_SOURCE)
    await asyncio.wait_for(solver.started.wait(), timeout=5)

    await asyncio.wait_for(controller.aclose(), timeout=5)

    job = controller.ledger.get_job(job_id)
    assert job is not None
    assert job.status == "cancelled"
    assert job.solver_jobs["1"].status == "failed"
    assert job.final_document is None


@pytest.mark.asyncio
async def test_run_skips_jobs_that_are_already_terminal() -> None:
    solver = _FakeSolver()
    controller = _controller(chunker=_FakeChunker(_flat_problems("1")), solver=solver)
    job_id = controller.ledger.create_job(_SOURCE)
    controller.ledger.cancel_job(job_id)

    await controller.run(job_id)

    assert controller.ledger.get_status(job_id) == "cancelled"
    assert solver.order == []
