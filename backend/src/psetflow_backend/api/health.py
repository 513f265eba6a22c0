from typing import Final, Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict

STATUS_OK: Final[Literal["ok"]] = "ok"


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["ok"]
    service: str
    jobs: int


def build_health_router(*, service_name: str) -> APIRouter:
    router = APIRouter(tags=["system"])

    @router.get("/health", response_model=HealthResponse, summary="Health check")
    async def health(request: Request) -> HealthResponse:
        ledger = getattr(request.app.state, "job_ledger", None)
        total_jobs = ledger.get_stats().total_jobs if ledger is not None else 0
        return HealthResponse(status=STATUS_OK, service=service_name, jobs=total_jobs)

    return router
