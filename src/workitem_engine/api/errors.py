"""
workitem_engine.api.errors

Maps engine errors onto HTTP responses.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from workitem_engine.engine.errors import (
    AggregationInconsistency,
    CycleDetected,
    InvalidHierarchy,
    InvalidTransition,
    ItemNotFound,
    OrphanedParent,
    StoreUnavailable,
    WorkItemEngineError,
)
from workitem_engine.observability.logging import get_logger

log = get_logger(__name__)

_STATUS: dict[type[WorkItemEngineError], int] = {
    ItemNotFound: HTTP_404_NOT_FOUND,
    OrphanedParent: HTTP_404_NOT_FOUND,
    InvalidTransition: HTTP_409_CONFLICT,
    CycleDetected: HTTP_409_CONFLICT,
    InvalidHierarchy: HTTP_400_BAD_REQUEST,
    AggregationInconsistency: HTTP_500_INTERNAL_SERVER_ERROR,
    StoreUnavailable: HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(error: WorkItemEngineError) -> int:
    for cls in type(error).__mro__:
        if cls in _STATUS:
            return _STATUS[cls]
    return HTTP_500_INTERNAL_SERVER_ERROR


async def _engine_error_handler(_: Request, exc: WorkItemEngineError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        log.error("request.engine_error", error=exc.code, message=exc.message)
    else:
        log.info("request.rejected", error=exc.code, message=exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WorkItemEngineError, _engine_error_handler)  # type: ignore[arg-type]
