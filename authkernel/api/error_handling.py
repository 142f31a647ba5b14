from __future__ import annotations

from typing import Any, Dict, List, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from authkernel.api.schemas import Envelope, ErrorBody
from authkernel.logging import get_correlation_id, get_logger
from authkernel.service.errors import ErrorKind, RateLimitExceeded, ServiceError
from authkernel.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# The one place failure kinds become HTTP status codes and stable error codes
ERROR_STATUS: Dict[ErrorKind, Tuple[int, str]] = {
    ErrorKind.VALIDATION: (400, "validation_error"),
    ErrorKind.AUTHENTICATION: (401, "unauthorized"),
    ErrorKind.TOKEN_EXPIRED: (401, "token_expired"),
    ErrorKind.AUTHORIZATION: (403, "forbidden"),
    ErrorKind.NOT_FOUND: (404, "not_found"),
    ErrorKind.CONFLICT: (409, "conflict"),
    ErrorKind.PAYLOAD_TOO_LARGE: (413, "payload_too_large"),
    ErrorKind.RATE_LIMITED: (429, "rate_limited"),
    ErrorKind.INTERNAL: (500, "server_error"),
    ErrorKind.CONFIGURATION: (500, "server_error"),
}

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    413: "payload_too_large",
    429: "rate_limited",
    500: "server_error",
}

_GENERIC_SERVER_MESSAGE = "internal server error"


def status_for(kind: ErrorKind) -> Tuple[int, str]:
    return ERROR_STATUS.get(kind, ERROR_STATUS[ErrorKind.INTERNAL])


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Dict[str, str] | None = None,
) -> JSONResponse:
    fallback = "validation_error" if 400 <= status_code < 500 else "server_error"
    error_code = code or _STATUS_TO_CODE.get(status_code, fallback)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def _validation_details(exc: RequestValidationError) -> List[Dict[str, Any]]:
    details: List[Dict[str, Any]] = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        message = str(error.get("msg", "invalid value"))
        # pydantic prefixes messages raised from validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": ".".join(loc) or None, "message": message})
    return details


def service_error_response(exc: ServiceError) -> JSONResponse:
    """Render ``exc`` as an error envelope with its mapped status."""
    status_code, error_code = status_for(exc.kind)
    if status_code >= 500:
        # Internal detail stays in the log, never in the response
        return _error_response(status_code, _GENERIC_SERVER_MESSAGE, code=error_code)
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(max(exc.retry_after, 1))}
    return _error_response(
        status_code, exc.message, exc.detail, code=error_code, headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the exception handlers that render every failure as an envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        status_code, error_code = status_for(exc.kind)
        log_fn = logger.error if status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_code=error_code,
            message=exc.message,
        )
        return service_error_response(exc)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        message = details[0]["message"] if details else "invalid request"
        return _error_response(400, message, details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, _GENERIC_SERVER_MESSAGE, code="server_error")
