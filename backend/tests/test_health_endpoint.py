import asyncio
import importlib
from collections.abc import Sequence

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from psetflow.config import SchedulerConfig
from psetflow.schemas.jobs import CompilationResult
from psetflow.schemas.problems import Problem
from psetflow.services.document_validation import ValidatedDocument
from psetflow.services.job_ledger import CANCELLED_SOLVER_ERROR, JobLedger
from psetflow.services.pipeline_controller import PipelineController
from psetflow.services.problem_agents import ProblemAgents

from psetflow_backend.app import create_app, main

app_module = importlib.import_module("psetflow_backend.app")

_LATEX_UPLOAD = {"file": ("pset.tex", b"\\section*{Problem 1} x", "application/x-tex")}


class _UnusedTranscriber:
    async def transcribe(self, document: ValidatedDocument, *, message: str | None = None) -> str:
        raise AssertionError("LaTeX uploads are not transcribed")


class _SingleProblemChunker:
    async def chunk(self, transcript: str) -> list[Problem]:
        return [Problem(id="1", number="1", text="Compute $1+1$.")]


class _NoDependencies:
    async def detect(self, problems: Sequence[Problem]) -> dict[str, list[str]]:
        return {}


class _HangingSolver:
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
        return "unreachable"


class _PassingCompiler:
    async def compile(self, document: str) -> CompilationResult:
        return CompilationResult(success=True, pdf=b"%PDF")


@pytest.mark.asyncio
async def test_health_reports_service_and_empty_ledger(client: AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "psetflow-test", "jobs": 0}


@pytest.mark.asyncio
async def test_health_counts_submitted_jobs(client: AsyncClient, app: FastAPI) -> None:
    submitted = await client.post("/v1/jobs", files=_LATEX_UPLOAD)
    await app.state.pipeline_controller.wait(submitted.json()["job_id"])
    app.state.job_ledger.create_job()

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["jobs"] == 2


@pytest.mark.asyncio
async def test_health_is_read_only(client: AsyncClient, ledger: JobLedger) -> None:
    response = await client.post("/health")

    assert response.status_code == 405
    assert ledger.list_jobs() == []


def test_create_app_shares_one_ledger_with_the_controller() -> None:
    ledger = JobLedger()
    config = SchedulerConfig(max_concurrent_solvers=2)

    app = create_app(service_name=" psetflow-a ", config=config, ledger=ledger)

    assert app.state.job_ledger is ledger
    assert app.state.scheduler_config is config
    controller: PipelineController = app.state.pipeline_controller
    assert controller.ledger is ledger
    assert controller.config.max_concurrent_solvers == 2


def test_create_app_rejects_blank_service_name() -> None:
    with pytest.raises(ValueError, match="service_name must not be empty"):
        create_app(service_name="  ", config=SchedulerConfig())


@pytest.mark.asyncio
async def test_shutdown_cancels_jobs_still_running() -> None:
    solver = _HangingSolver()
    ledger = JobLedger()
    app = create_app(
        service_name="psetflow-test",
        config=SchedulerConfig(max_compilation_attempts=1),
        agents=ProblemAgents(
            transcriber=_UnusedTranscriber(),
            chunker=_SingleProblemChunker(),
            dependency_detector=_NoDependencies(),
            solver=solver,
        ),
        compiler=_PassingCompiler(),
        ledger=ledger,
    )

    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.post("/v1/jobs", files=_LATEX_UPLOAD)
        job_id = response.json()["job_id"]
        await asyncio.wait_for(solver.started.wait(), timeout=5)

    job = ledger.get_job(job_id)
    assert job is not None
    assert job.status == "cancelled"
    assert job.solver_jobs["1"].status == "failed"
    assert job.solver_jobs["1"].error == CANCELLED_SOLVER_ERROR


@pytest.mark.parametrize(
    ("env", "expected_host", "expected_port"),
    [
        ({}, "0.0.0.0", 8000),
        ({"PSETFLOW_BACKEND_HOST": "127.0.0.1", "PSETFLOW_BACKEND_PORT": "9001"}, "127.0.0.1", 9001),
    ],
)
def test_main_serves_the_module_app(
    monkeypatch: pytest.MonkeyPatch,
    env: dict[str, str],
    expected_host: str,
    expected_port: int,
) -> None:
    monkeypatch.delenv("PSETFLOW_BACKEND_HOST", raising=False)
    monkeypatch.delenv("PSETFLOW_BACKEND_PORT", raising=False)
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    run_call: dict[str, object] = {}

    def fake_run(app_location: str, **kwargs: object) -> None:
        run_call.update(kwargs, app_location=app_location)

    monkeypatch.setattr(app_module.uvicorn, "run", fake_run)

    main()

    assert run_call == {
        "app_location": "psetflow_backend.app:app",
        "host": expected_host,
        "port": expected_port,
        "reload": False,
    }


@pytest.mark.parametrize("port", ["0", "-5"])
def test_main_rejects_non_positive_port(monkeypatch: pytest.MonkeyPatch, port: str) -> None:
    monkeypatch.setenv("PSETFLOW_BACKEND_PORT", port)

    with pytest.raises(ValueError, match="must be greater than zero"):
        main()
