from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import cast

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from psetflow.errors import JobNotFoundError
from psetflow.schemas.jobs import (
    LEDGER_EVENT_TYPES,
    TERMINAL_JOB_STATUSES,
    DocumentInput,
    LedgerEvent,
)
from psetflow.services.job_ledger import JobLedger
from psetflow.services.pipeline_controller import PipelineController

from psetflow_backend.schemas.errors import ApiErrorResponse, error_response, job_not_found
from psetflow_backend.schemas.jobs import (
    JobCancelResponse,
    JobCreatedResponse,
    JobDetailResponse,
    JobListResponse,
    JobSnapshotEvent,
    SolverJobSummary,
)

logger = logging.getLogger(__name__)

_TERMINAL_EVENTS = frozenset({"job_completed", "job_failed", "job_cancelled"})


def _get_controller(request: Request) -> PipelineController:
    controller = getattr(request.app.state, "pipeline_controller", None)
    if controller is None:  # pragma: no cover
        raise RuntimeError("Pipeline controller not configured")
    return cast(PipelineController, controller)


def _get_ledger(request: Request) -> JobLedger:
    ledger = getattr(request.app.state, "job_ledger", None)
    if ledger is None:  # pragma: no cover
        raise RuntimeError("Job ledger not configured")
    return cast(JobLedger, ledger)


CONTROLLER_DEP = Depends(_get_controller)
LEDGER_DEP = Depends(_get_ledger)


async def job_event_lines(ledger: JobLedger, job_id: str) -> AsyncIterator[str]:
    """Yield a status snapshot, then the job's ledger events as NDJSON lines.

    Listeners exist only while the generator runs: a stream that is never
    iterated never subscribes, and closing it unsubscribes.
    """

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[LedgerEvent] = asyncio.Queue()

    def _listener(event: LedgerEvent) -> None:
        if event.job_id == job_id:
            loop.call_soon_threadsafe(queue.put_nowait, event)

    # Subscribe before taking the snapshot so no event falls in between.
    for event_type in LEDGER_EVENT_TYPES:
        ledger.on(event_type, _listener)
    try:
        snapshot = ledger.get_job_status(job_id)
        if snapshot is None:
            return
        yield JobSnapshotEvent(job_id=job_id, status=snapshot).model_dump_json() + "\n"
        if snapshot.status in TERMINAL_JOB_STATUSES:
            return
        while True:
            event = await queue.get()
            yield event.model_dump_json() + "\n"
            if event.type in _TERMINAL_EVENTS:
                return
    finally:
        for event_type in LEDGER_EVENT_TYPES:
            ledger.off(event_type, _listener)


def build_jobs_router() -> APIRouter:
    router = APIRouter(prefix="/v1/jobs", tags=["jobs"])

    @router.post(
        "",
        response_model=JobCreatedResponse,
        status_code=202,
        responses={422: {"model": ApiErrorResponse}},
        summary="Submit a problem set (PDF or LaTeX source) for solving",
    )
    async def create_job(
        file: UploadFile = File(...),
        message: str | None = Form(None),
        controller: PipelineController = CONTROLLER_DEP,
    ) -> JobCreatedResponse:
        data = await file.read()
        document = DocumentInput(
            filename=file.filename or "upload.pdf",
            content_type=file.content_type,
            data=data,
            message=message or None,
        )
        job_id = controller.submit(document)
        logger.info("Accepted job %s (%s, %d bytes)", job_id, document.filename, len(data))
        return JobCreatedResponse(job_id=job_id, status="queued", stage="validate")

    @router.get(
        "",
        response_model=JobListResponse,
        summary="List every job with its status",
    )
    async def list_jobs(ledger: JobLedger = LEDGER_DEP) -> JobListResponse:
        return JobListResponse(jobs=ledger.get_all_job_statuses(), stats=ledger.get_stats())

    @router.get(
        "/{job_id}",
        response_model=JobDetailResponse,
        responses={404: {"model": ApiErrorResponse}},
        summary="Get a job's status and per-problem progress",
    )
    async def get_job(
        job_id: str, ledger: JobLedger = LEDGER_DEP
    ) -> JobDetailResponse | JSONResponse:
        status = ledger.get_job_status(job_id)
        job = ledger.get_job(job_id)
        if status is None or job is None:
            return job_not_found(job_id)

        graph = job.dependency_graph
        return JobDetailResponse(
            **status.model_dump(),
            levels=graph.levels if graph is not None else [],
            unscheduled=graph.unscheduled if graph is not None else [],
            solver_jobs=[
                SolverJobSummary.from_solver_job(solver_job)
                for solver_job in job.solver_jobs.values()
            ],
            has_document=job.final_document is not None,
            has_pdf=job.final_pdf is not None,
        )

    @router.post(
        "/{job_id}/cancel",
        response_model=JobCancelResponse,
        responses={404: {"model": ApiErrorResponse}, 409: {"model": ApiErrorResponse}},
        summary="Cancel a queued or running job",
    )
    async def cancel_job(
        job_id: str, controller: PipelineController = CONTROLLER_DEP
    ) -> JobCancelResponse | JSONResponse:
        try:
            cancelled = controller.cancel(job_id)
        except JobNotFoundError:
            return job_not_found(job_id)

        if not cancelled:
            return error_response("job_already_finished", f"Job {job_id} has already finished")
        return JobCancelResponse(job_id=job_id, status="cancelled")

    @router.get(
        "/{job_id}/document",
        response_model=None,
        responses={404: {"model": ApiErrorResponse}, 409: {"model": ApiErrorResponse}},
        summary="Download the synthesized LaTeX document",
    )
    async def get_document(job_id: str, ledger: JobLedger = LEDGER_DEP) -> Response:
        job = ledger.get_job(job_id)
        if job is None:
            return job_not_found(job_id)
        if job.final_document is None:
            return error_response(
                "document_not_ready", f"Job {job_id} has no synthesized document yet"
            )
        return Response(
            content=job.final_document,
            media_type="application/x-tex",
            headers={"content-disposition": f'attachment; filename="{job_id}.tex"'},
        )

    @router.get(
        "/{job_id}/pdf",
        response_model=None,
        responses={404: {"model": ApiErrorResponse}, 409: {"model": ApiErrorResponse}},
        summary="Download the compiled PDF",
    )
    async def get_pdf(job_id: str, ledger: JobLedger = LEDGER_DEP) -> Response:
        job = ledger.get_job(job_id)
        if job is None:
            return job_not_found(job_id)
        if job.final_pdf is None:
            return error_response("pdf_not_ready", f"Job {job_id} has no compiled PDF yet")
        return Response(
            content=job.final_pdf,
            media_type="application/pdf",
            headers={"content-disposition": f'attachment; filename="{job_id}.pdf"'},
        )

    @router.get(
        "/{job_id}/events",
        response_model=None,
        responses={404: {"model": ApiErrorResponse}},
        summary="Stream a job's ledger events (NDJSON)",
    )
    async def stream_events(
        job_id: str, ledger: JobLedger = LEDGER_DEP
    ) -> StreamingResponse | JSONResponse:
        if ledger.get_job_status(job_id) is None:
            return job_not_found(job_id)

        return StreamingResponse(
            job_event_lines(ledger, job_id),
            media_type="application/x-ndjson",
            headers={
                "cache-control": "no-cache",
                "x-accel-buffering": "no",
            },
        )

    return router
