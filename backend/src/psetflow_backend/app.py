import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Final

import uvicorn
from fastapi import FastAPI
from psetflow.config import SchedulerConfig
from psetflow.services.job_ledger import JobLedger
from psetflow.services.latex_compiler import LatexCompilerBackend, create_compiler
from psetflow.services.pipeline_controller import PipelineController
from psetflow.services.problem_agents import ProblemAgents, default_agents

from psetflow_backend.api import build_health_router, build_jobs_router

DEFAULT_SERVICE_NAME: Final[str] = "psetflow-backend"
DEFAULT_HOST: Final[str] = "0.0.0.0"
DEFAULT_PORT: Final[int] = 8000


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    try:
        yield
    finally:
        # Stop job runs still in flight.
        controller: PipelineController = app.state.pipeline_controller
        await controller.aclose()


def create_app(
    *,
    service_name: str = DEFAULT_SERVICE_NAME,
    config: SchedulerConfig | None = None,
    agents: ProblemAgents | None = None,
    compiler: LatexCompilerBackend | None = None,
    ledger: JobLedger | None = None,
) -> FastAPI:
    normalized_service_name = service_name.strip()
    if not normalized_service_name:
        raise ValueError("service_name must not be empty")

    app = FastAPI(
        title="psetflow-backend",
        version="0.1.0",
        lifespan=_lifespan,
    )

    # Shared state.
    resolved_config = config or SchedulerConfig.from_env()
    job_ledger = ledger or JobLedger()

    app.state.scheduler_config = resolved_config
    app.state.job_ledger = job_ledger
    app.state.pipeline_controller = PipelineController(
        job_ledger,
        agents or default_agents(),
        compiler or create_compiler(resolved_config),
        config=resolved_config,
    )

    app.include_router(build_health_router(service_name=normalized_service_name))
    app.include_router(build_jobs_router())
    return app


app = create_app()


def _read_server_host() -> str:
    configured_host = os.getenv("PSETFLOW_BACKEND_HOST", DEFAULT_HOST).strip()
    if not configured_host:
        raise ValueError("PSETFLOW_BACKEND_HOST must not be empty")

    return configured_host


def _read_server_port() -> int:
    configured_port = os.getenv("PSETFLOW_BACKEND_PORT", str(DEFAULT_PORT)).strip()
    if not configured_port:
        raise ValueError("PSETFLOW_BACKEND_PORT must not be empty")

    port = int(configured_port)
    if port <= 0:
        raise ValueError("PSETFLOW_BACKEND_PORT must be greater than zero")

    return port


def main() -> None:
    uvicorn.run(
        "psetflow_backend.app:app",
        host=_read_server_host(),
        port=_read_server_port(),
        reload=False,
    )
