from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException, Request, status

from docflow.core.exceptions import (
    AppError,
    DocumentNotFoundError,
    InvalidRunStateError,
    RunNotFoundError,
    ValidationError,
)
from docflow.schemas.runs import ApiResponse, ErrorDetail, ResponseMeta

# Most specific first
_ERROR_STATUS = (
    (InvalidRunStateError, status.HTTP_409_CONFLICT, "Invalid Run State"),
    (ValidationError, status.HTTP_400_BAD_REQUEST, "Validation Error"),
    (RunNotFoundError, status.HTTP_404_NOT_FOUND, "Run Not Found"),
    (DocumentNotFoundError, status.HTTP_404_NOT_FOUND, "Document Not Found"),
)


def _request_id(request: Optional[Request]) -> str:
    if request is not None:
        for attr in ("request_id", "correlation_id"):
            value = getattr(request.state, attr, None)
            if value:
                return value
    return str(uuid4())


def create_api_response(
    data: Any,
    message: str = "Operation successful",
    status: bool = True,
    request: Optional[Request] = None,
    api_version: str = "v1"
) -> Dict[str, Any]:
    """Create a standardized API response as a dictionary.

    Returns a dict to be compatible with FastAPI's response_model=dict.
    """
    meta = ResponseMeta(
        timestamp=datetime.now(timezone.utc),
        request_id=_request_id(request),
        api_version=api_version
    )

    data_dict: Dict[str, Any] = {}
    if isinstance(data, dict):
        data_dict = data
    elif hasattr(data, "model_dump"):
        data_dict = data.model_dump(mode="json")
    elif isinstance(data, list):
        data_dict = {"items": [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in data]}
    elif data is None:
        data_dict = {}
    else:
        data_dict = {"value": data}

    response = ApiResponse(
        status=status,
        message=message,
        data=data_dict,
        meta=meta
    )
    return response.model_dump(mode="json")


def create_error_detail(
    title: str,
    status: int,
    detail: str,
    request: Optional[Request] = None,
    instance: Optional[str] = None
) -> ErrorDetail:
    """Create a standardized error detail (RFC 7807)."""
    return ErrorDetail(
        title=title,
        status=status,
        detail=detail,
        instance=instance or (request.url.path if request else None),
        request_id=_request_id(request),
        timestamp=datetime.now(timezone.utc)
    )


def http_error_for(error: Exception, request: Optional[Request] = None) -> HTTPException:
    """Map an application error to an ``HTTPException`` with problem details."""
    for error_type, status_code, title in _ERROR_STATUS:
        if isinstance(error, error_type):
            break
    else:
        status_code, title = status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error"

    message = error.message if isinstance(error, AppError) else str(error)
    error_detail = create_error_detail(title=title, status=status_code, detail=message, request=request)
    return HTTPException(status_code=status_code, detail=error_detail.model_dump(mode="json"))
