from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status

from docflow.api.v1.endpoints.runs import get_run_service
from docflow.core.exceptions import AppError
from docflow.schemas.runs import ApiResponse
from docflow.services.run_service import RunService
from docflow.utils.logging import get_logger
from docflow.utils.responses import create_api_response, http_error_for

LOGGER = get_logger(__name__)

router = APIRouter()


@router.post(
    "/{document_id}/reprocess",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Reprocess a stored document",
    operation_id="reprocess_document",
)
async def reprocess_document(
    request: Request,
    document_id: UUID,
    priority: Optional[int] = Query(None, ge=1, le=5),
    run_service: Annotated[RunService, Depends(get_run_service)] = None,
) -> ApiResponse:
    """Start a new ingest run over an existing document.

    The earlier extraction results are kept; the new run writes its own.
    """
    try:
        handle = await run_service.reprocess_document(document_id, priority=priority)
    except AppError as e:
        raise http_error_for(e, request)

    LOGGER.info(f"Reprocess of document {document_id} submitted as run {handle.run_id}")
    return create_api_response(data=handle, message="Reprocess submitted", request=request)
