from __future__ import annotations

import asyncio
import mimetypes
import os
import threading
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, TypeVar, cast

from agents import set_default_openai_api

from psetflow.config import SchedulerConfig
from psetflow.errors import JobNotFoundError, PsetFlowConfigurationError
from psetflow.schemas.jobs import DocumentInput, Job, JobStatus, JobStatusInfo, SolverStatus
from psetflow.services.job_ledger import JobLedger
from psetflow.services.latex_compiler import LatexCompilerBackend, create_compiler
from psetflow.services.pipeline_controller import PipelineController
from psetflow.services.problem_agents import ProblemAgents, default_agents

OpenAIApi = Literal["chat_completions", "responses"]

_OPENAI_API_KEY_ENV = "OPENAI_API_KEY"
_AZURE_OPENAI_API_KEY_ENV = "AZURE_OPENAI_API_KEY"
_OPENAI_BASE_URL_ENV = "OPENAI_BASE_URL"
_AZURE_OPENAI_BASE_URL_ENV = "AZURE_OPENAI_BASE_URL"
_OPENAI_API_MODE_ENV = "PSETFLOW_OPENAI_API"
_SUPPORTED_OPENAI_APIS = frozenset({"responses", "chat_completions"})


@dataclass(frozen=True)
class SolveResult:
    job_id: str
    status: JobStatus
    document: str | None
    pdf: bytes | None
    error: str | None
    solver_statuses: dict[str, SolverStatus] = field(default_factory=dict)
    solver_errors: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    @property
    def solved_count(self) -> int:
        return sum(1 for status in self.solver_statuses.values() if status == "completed")


T = TypeVar("T")


def _run_awaitable(factory: Callable[[], Awaitable[T]]) -> T:
    """Run an awaitable factory from sync code.

    If an event loop is already running in the current thread (e.g., Jupyter),
    the coroutine is executed in a dedicated thread via asyncio.run.
    """

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(cast(Coroutine[Any, Any, T], factory()))

    if not loop.is_running():
        return loop.run_until_complete(factory())

    result: dict[str, T] = {}
    error: dict[str, BaseException] = {}

    def _target() -> None:
        try:
            result["value"] = asyncio.run(cast(Coroutine[Any, Any, T], factory()))
        except BaseException as exc:  # pragma: no cover
            error["exc"] = exc

    thread = threading.Thread(target=_target, daemon=True)
    thread.start()
    thread.join()

    if "exc" in error:
        raise error["exc"]

    if "value" not in result:  # pragma: no cover
        raise RuntimeError("Async execution failed without an exception")

    return result["value"]


def _read_non_empty_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None


def _resolve_openai_api_key(explicit_key: str | None) -> str | None:
    if explicit_key is not None:
        stripped = explicit_key.strip()
        return stripped or None
    return _read_non_empty_env(_OPENAI_API_KEY_ENV, _AZURE_OPENAI_API_KEY_ENV)


def _normalize_openai_api(value: str) -> OpenAIApi:
    normalized = value.strip().lower()
    if normalized not in _SUPPORTED_OPENAI_APIS:
        supported = ", ".join(sorted(_SUPPORTED_OPENAI_APIS))
        raise PsetFlowConfigurationError(
            f"Invalid OpenAI API mode {value!r}. Use one of: {supported}."
        )
    return cast(OpenAIApi, normalized)


def load_document(
    document: str | Path | bytes,
    *,
    filename: str | None = None,
    content_type: str | None = None,
    message: str | None = None,
) -> DocumentInput:
    """Build a ``DocumentInput`` from a path or raw bytes."""

    if isinstance(document, (str, Path)):
        path = Path(document)
        data = path.read_bytes()
        resolved_filename = filename or path.name
    else:
        data = document
        resolved_filename = filename or "upload.pdf"
    resolved_content_type = content_type or mimetypes.guess_type(resolved_filename)[0]
    return DocumentInput(
        filename=resolved_filename,
        content_type=resolved_content_type,
        data=data,
        message=message,
    )


class PsetFlow:
    """psetflow SDK facade.

    Holds one job ledger and one pipeline controller and exposes:

    - ``solve``: document -> validated, transcribed, chunked, solved, synthesized, compiled
    - ``submit``: start the same pipeline in the background of a running event loop
    - ``status`` / ``statuses`` / ``job`` / ``cancel``: ledger queries and cancellation

    Parameters
    ----------
    openai_api_key:
        If provided, sets ``OPENAI_API_KEY`` for the process (used by ``openai-agents``).
        If omitted, the SDK reads it from the environment when the default agents
        are used. ``AZURE_OPENAI_API_KEY`` is also accepted as an alias.
    openai_base_url:
        Optional OpenAI-compatible base URL override.
    openai_api:
        Optional API shape override for the Agents SDK (`responses` or
        `chat_completions`). Falls back to ``PSETFLOW_OPENAI_API``.
    config:
        Scheduler tunables. Defaults to ``SchedulerConfig.from_env()``.
    agents:
        Custom transcription/chunking/dependency/solve agents. Defaults to the
        OpenAI Agents SDK implementations.
    compiler:
        Custom LaTeX compiler. Defaults to the compiler selected by ``config``.
    """

    def __init__(
        self,
        openai_api_key: str | None = None,
        *,
        openai_base_url: str | None = None,
        openai_api: OpenAIApi | None = None,
        config: SchedulerConfig | None = None,
        agents: ProblemAgents | None = None,
        compiler: LatexCompilerBackend | None = None,
    ) -> None:
        resolved_api_key = _resolve_openai_api_key(openai_api_key)
        if resolved_api_key is not None:
            os.environ[_OPENAI_API_KEY_ENV] = resolved_api_key

        resolved_base_url = (
            openai_base_url.strip() or None
            if openai_base_url is not None
            else _read_non_empty_env(_OPENAI_BASE_URL_ENV, _AZURE_OPENAI_BASE_URL_ENV)
        )
        if resolved_base_url is not None:
            os.environ[_OPENAI_BASE_URL_ENV] = resolved_base_url

        resolved_api_mode: OpenAIApi | None
        if openai_api is not None:
            resolved_api_mode = _normalize_openai_api(openai_api)
        else:
            env_mode = _read_non_empty_env(_OPENAI_API_MODE_ENV)
            resolved_api_mode = _normalize_openai_api(env_mode) if env_mode is not None else None

        if resolved_api_mode is not None:
            set_default_openai_api(resolved_api_mode)

        self._uses_default_agents = agents is None
        self._config = config or SchedulerConfig.from_env()
        self._ledger = JobLedger()
        self._controller = PipelineController(
            self._ledger,
            agents or default_agents(),
            compiler or create_compiler(self._config),
            config=self._config,
        )

    @property
    def ledger(self) -> JobLedger:
        return self._ledger

    @property
    def controller(self) -> PipelineController:
        return self._controller

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    def _ensure_openai_key(self) -> None:
        if not self._uses_default_agents:
            return
        resolved_api_key = _resolve_openai_api_key(None)
        if resolved_api_key:
            os.environ[_OPENAI_API_KEY_ENV] = resolved_api_key
            return
        raise PsetFlowConfigurationError(
            "Missing OpenAI API key. Provide PsetFlow(openai_api_key=...) or set "
            "OPENAI_API_KEY / AZURE_OPENAI_API_KEY."
        )

    def submit(
        self,
        document: str | Path | bytes,
        *,
        filename: str | None = None,
        content_type: str | None = None,
        message: str | None = None,
    ) -> str:
        """Start a job in the background of the running event loop and return its id."""

        self._ensure_openai_key()
        return self._controller.submit(
            load_document(document, filename=filename, content_type=content_type, message=message)
        )

    async def solve_async(
        self,
        document: str | Path | bytes,
        *,
        filename: str | None = None,
        content_type: str | None = None,
        message: str | None = None,
    ) -> SolveResult:
        self._ensure_openai_key()
        job_id = self._ledger.create_job(
            load_document(document, filename=filename, content_type=content_type, message=message)
        )
        await self._controller.run(job_id)
        return self.result(job_id)

    def solve(
        self,
        document: str | Path | bytes,
        *,
        filename: str | None = None,
        content_type: str | None = None,
        message: str | None = None,
    ) -> SolveResult:
        """Run the whole pipeline for one document and wait for the outcome."""

        def _factory() -> Any:
            return self.solve_async(
                document, filename=filename, content_type=content_type, message=message
            )

        return cast(SolveResult, _run_awaitable(_factory))

    def result(self, job_id: str) -> SolveResult:
        job = self._ledger.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return SolveResult(
            job_id=job.id,
            status=job.status,
            document=job.final_document,
            pdf=job.final_pdf,
            error=job.error,
            solver_statuses={pid: solver.status for pid, solver in job.solver_jobs.items()},
            solver_errors={
                pid: solver.error for pid, solver in job.solver_jobs.items() if solver.error
            },
        )

    def status(self, job_id: str) -> JobStatusInfo | None:
        return self._ledger.get_job_status(job_id)

    def statuses(self) -> list[JobStatusInfo]:
        return self._ledger.get_all_job_statuses()

    def job(self, job_id: str) -> Job | None:
        return self._ledger.get_job(job_id)

    def cancel(self, job_id: str) -> bool:
        return self._controller.cancel(job_id)
