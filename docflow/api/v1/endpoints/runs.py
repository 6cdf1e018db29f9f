from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession
from temporalio.client import Client as TemporalClient

from docflow.core.database import get_async_session as get_session
from docflow.core.exceptions import AppError, RunNotFoundError
from docflow.core.temporal_client import get_temporal_client
from docflow.schemas.runs import ApiResponse, SignalRequest
from docflow.services.run_service import RunService
from docflow.utils.logging import get_logger
from docflow.utils.responses import create_api_response, http_error_for

LOGGER = get_logger(__name__)

router = APIRouter()


async def get_run_service(
    db_session: Annotated[AsyncSession, Depends(get_session)],
    temporal_client: Annotated[TemporalClient, Depends(get_temporal_client)],
) -> RunService:
    return RunService(db_session, temporal_client)


@router.post(
    "",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a document for processing",
    operation_id="submit_run",
)
async def submit_run(
    request: Request,
    file: UploadFile = File(..., description="PDF document to process"),
    pipeline: str = Form("ingest"),
    priority: Optional[int] = Form(None),
    input_key: Optional[str] = Form(None),
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    """Upload a PDF and start (or attach to) a pipeline run."""
    content = await file.read()
    try:
        handle = await run_service.submit_upload(
            content,
            file_name=file.filename,
            content_type=file.content_type or "application/pdf",
            pipeline=pipeline,
            priority=priority,
            input_key=input_key,
        )
    except AppError as e:
        LOGGER.warning(f"Run submission rejected: {e.message}")
        raise http_error_for(e, request)

    message = "Attached to existing run" if handle.is_duplicate else "Run submitted"
    return create_api_response(data=handle, message=message, request=request)


@router.get(
    "",
    response_model=ApiResponse,
    summary="List runs",
    operation_id="list_runs",
)
async def list_runs(
    request: Request,
    run_status: Optional[str] = Query(None, alias="status"),
    pipeline: Optional[str] = Query(None),
    stage: Optional[str] = Query(None),
    limit: int = Query(50),
    offset: int = Query(0, ge=0),
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    try:
        runs = await run_service.list_runs(
            status=run_status, pipeline=pipeline, stage=stage, limit=limit, offset=offset
        )
    except AppError as e:
        raise http_error_for(e, request)
    return create_api_response(data=runs, message="Runs retrieved successfully", request=request)


@router.get(
    "/stats",
    response_model=ApiResponse,
    summary="Run counts and queue depth",
    operation_id="get_run_stats",
)
async def get_run_stats(
    request: Request,
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    try:
        stats = await run_service.get_stats()
    except AppError as e:
        raise http_error_for(e, request)
    return create_api_response(data=stats, message="Run statistics retrieved successfully", request=request)


@router.get(
    "/{run_id}",
    response_model=ApiResponse,
    summary="Get run status",
    operation_id="get_run",
)
async def get_run(
    request: Request,
    run_id: UUID,
    live: bool = Query(False, description="Also query the running workflow"),
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    try:
        data = await run_service.get_status(run_id, live=live)
    except AppError as e:
        raise http_error_for(e, request)
    return create_api_response(data=data, message="Run status retrieved successfully", request=request)


@router.get(
    "/{run_id}/stages",
    response_model=ApiResponse,
    summary="Get stage history",
    operation_id="get_run_stages",
)
async def get_run_stages(
    request: Request,
    run_id: UUID,
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    try:
        stages = await run_service.get_stage_history(run_id)
    except AppError as e:
        raise http_error_for(e, request)
    return create_api_response(data=stages, message="Stage history retrieved successfully", request=request)


@router.get(
    "/{run_id}/result",
    response_model=ApiResponse,
    summary="Get the latest extraction result",
    operation_id="get_run_result",
)
async def get_run_result(
    request: Request,
    run_id: UUID,
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    try:
        result = await run_service.get_result(run_id)
        if result is None:
            raise RunNotFoundError(f"Run {run_id} has no extraction result yet")
    except AppError as e:
        raise http_error_for(e, request)
    return create_api_response(data=result, message="Extraction result retrieved successfully", request=request)


@router.get(
    "/{run_id}/export",
    response_model=ApiResponse,
    summary="Get a download link for the run's Excel export",
    operation_id="get_run_export",
)
async def get_run_export(
    request: Request,
    run_id: UUID,
    expires_in: int = Query(3600, description="Link lifetime in seconds"),
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    try:
        link = await run_service.get_export_link(run_id, expires_in=expires_in)
    except AppError as e:
        raise http_error_for(e, request)
    return create_api_response(data=link, message="Export link generated", request=request)


@router.post(
    "/{run_id}/signal",
    response_model=ApiResponse,
    summary="Send a signal to a run",
    operation_id="signal_run",
)
async def signal_run(
    request: Request,
    run_id: UUID,
    payload: SignalRequest,
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    try:
        result = await run_service.signal(run_id, payload.name, payload.payload)
    except AppError as e:
        raise http_error_for(e, request)
    return create_api_response(data=result, message=f"Signal {payload.name} delivered", request=request)


@router.post(
    "/{run_id}/cancel",
    response_model=ApiResponse,
    summary="Cancel a run",
    operation_id="cancel_run",
)
async def cancel_run(
    request: Request,
    run_id: UUID,
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    """Request cancellation; the run stops at its next stage boundary."""
    try:
        result = await run_service.cancel(run_id)
    except AppError as e:
        raise http_error_for(e, request)
    return create_api_response(data=result, message="Cancellation requested", request=request)


@router.post(
    "/{run_id}/retry",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed run",
    operation_id="retry_run",
)
async def retry_run(
    request: Request,
    run_id: UUID,
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    try:
        handle = await run_service.retry(run_id)
    except AppError as e:
        raise http_error_for(e, request)
    return create_api_response(data=handle, message="Run resubmitted", request=request)
