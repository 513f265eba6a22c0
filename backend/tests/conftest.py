from collections.abc import AsyncIterator, Sequence

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from psetflow.config import SchedulerConfig
from psetflow.schemas.jobs import CompilationResult
from psetflow.schemas.problems import Problem
from psetflow.services.dependency_graph import build_problem_hierarchy
from psetflow.services.document_validation import ValidatedDocument
from psetflow.services.job_ledger import JobLedger
from psetflow.services.problem_agents import ProblemAgents

from psetflow_backend.app import create_app


class _StubTranscriber:
    async def transcribe(self, document: ValidatedDocument, *, message: str | None = None) -> str:
        return "\\section*{Problem 1} Compute $1+1$."


class _StubChunker:
    async def chunk(self, transcript: str) -> list[Problem]:
        return build_problem_hierarchy(
            [
                Problem(id="1", number="1", text="Compute $1+1$."),
                Problem(id="1.a", parent_id="1", number="1(a)", text="Double it.", level=1),
                Problem(id="2", number="2", text="Using Problem 1, add one."),
            ]
        )


class _StubDetector:
    async def detect(self, problems: Sequence[Problem]) -> dict[str, list[str]]:
        return {"2": ["1"]}


class _StubSolver:
    async def solve(
        self,
        problem: Problem,
        *,
        dependency_context: str | None = None,
        previous_errors: Sequence[str] = (),
    ) -> str:
        return f"$answer_{problem.id}$"


class _StubCompiler:
    async def compile(self, document: str) -> CompilationResult:
        return CompilationResult(success=True, pdf=b"%PDF-stub")


@pytest.fixture
def ledger() -> JobLedger:
    return JobLedger()


@pytest.fixture
def app(ledger: JobLedger) -> FastAPI:
    return create_app(
        service_name="psetflow-test",
        config=SchedulerConfig(max_compilation_attempts=1),
        agents=ProblemAgents(
            transcriber=_StubTranscriber(),
            chunker=_StubChunker(),
            dependency_detector=_StubDetector(),
            solver=_StubSolver(),
        ),
        compiler=_StubCompiler(),
        ledger=ledger,
    )


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://testserver",
    ) as async_client:
        yield async_client
