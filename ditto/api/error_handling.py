from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ditto.api.schemas import Envelope, ErrorBody
from ditto.logging import get_logger
from ditto.service.errors import ServiceError
from ditto.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: str | None = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code),
            message=message,
            details=details,
        ),
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    """5xx failures log at error level; client errors at warning."""
    emit = logger.error if status_code >= 500 else logger.warning
    emit(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def _unpack_http_detail(detail: Any) -> tuple[str, str | None, Any]:
    """Split an HTTPException detail into (message, code, details).

    Routes raise envelope-shaped details via ``routes._http_error``; anything
    else (Starlette routing errors, plain strings) keeps only its message.
    """
    if isinstance(detail, dict):
        error = detail.get("error")
        if isinstance(error, dict):
            return (
                str(error.get("message", "http error")),
                error.get("code"),
                error.get("details"),
            )
        return str(detail.get("detail", "http error")), None, detail
    return str(detail) if detail else "http error", None, None


def register_exception_handlers(app: FastAPI) -> None:
    """Map every failure raised while serving a request onto the error envelope."""

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, "constraint_violation", 409, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail or None, code="conflict")

    @app.exception_handler(StarletteHTTPException)
    async def on_http_exception(request: Request, exc: StarletteHTTPException):
        message, code, details = _unpack_http_detail(exc.detail)
        _log_failure(request, "http_error", exc.status_code, error_code=code)
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        _log_failure(request, "request_validation_failed", 422, fields=len(errors))
        return _error_response(
            422, "Request body failed validation", errors, code="validation_error"
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
