from __future__ import annotations

import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apigate.api.schemas import ErrorBody, ErrorEnvelope
from apigate.logging import get_correlation_id, get_logger
from apigate.service.errors import AppError, ErrorKind, normalize_error

logger = get_logger(__name__)

# Only these kinds expose ``details`` to clients
_DETAIL_KINDS = {ErrorKind.VALIDATION}


def error_response(
    error: AppError,
    *,
    correlation_id: Optional[str],
    stack: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render an ``AppError`` as the stable error envelope."""
    body = ErrorBody(
        code=error.code,
        message=error.message,
        correlation_id=correlation_id,
        details=error.details if error.kind in _DETAIL_KINDS else None,
        stack=stack,
    )
    return JSONResponse(
        status_code=error.http_status,
        content=ErrorEnvelope(error=body).to_content(),
        headers=headers,
    )


def _request_metadata(request: Request) -> Dict[str, Any]:
    context = getattr(request.state, "context", None)
    return {
        "method": request.method,
        "path": request.url.path,
        "principal_id": context.principal_id if context else None,
        "correlation_id": context.correlation_id if context else get_correlation_id(),
    }


def classify_request_error(request: Request, exc: BaseException) -> AppError:
    if isinstance(exc, StarletteHTTPException) and exc.status_code in (404, 405):
        return AppError.not_found(request.method, request.url.path)
    return normalize_error(exc)


def handle_exception(request: Request, exc: BaseException) -> JSONResponse:
    """Terminal stage: classify, log, report, and build the response.

    Operational 4xx errors log at warning without a stack and are not
    reported. Everything else logs at error level with the traceback and is
    reported with request metadata; the request body is never attached.
    """
    error = classify_request_error(request, exc)
    meta = _request_metadata(request)
    runtime = getattr(request.app.state, "runtime", None)
    production = runtime.settings.is_production if runtime is not None else True

    if error.operational and error.http_status < 500:
        logger.warning(
            "request_error",
            status_code=error.http_status,
            error_code=error.code,
            message=error.message,
            **meta,
        )
        stack = None
    else:
        logger.error(
            "request_failed",
            status_code=error.http_status,
            error_code=error.code,
            error_type=type(exc).__name__,
            error=str(exc),
            operational=error.operational,
            exc_info=exc,
            **meta,
        )
        if runtime is not None:
            runtime.reporter.capture(exc, meta)
        stack = None if production else "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )

    headers = {}
    if error.kind == ErrorKind.RATE_LIMITED and isinstance(error.details, dict):
        retry_after = error.details.get("retry_after")
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
    return error_response(
        error, correlation_id=meta["correlation_id"], stack=stack, headers=headers or None
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Route framework-raised errors through the terminal stage.

    Unexpected exceptions are caught by ``RequestPipeline``, which delegates
    to the same ``handle_exception``.
    """

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        return handle_exception(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return handle_exception(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        return handle_exception(request, exc)
