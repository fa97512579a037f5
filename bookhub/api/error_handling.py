from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from bookhub.api.schemas import Envelope, ErrorBody
from bookhub.logging import get_logger
from bookhub.service.errors import ErrorKind, ServiceError
from bookhub.service.media import PathTraversalError
from bookhub.storage.errors import ConstraintViolation

logger = get_logger(__name__)

GENERIC_SERVER_MESSAGE = "internal server error"

# Every ErrorKind must appear here; provider failures are reported as plain
# internal errors so clients never learn which upstream call broke.
_KIND_TO_RESPONSE = {
    ErrorKind.VALIDATION: (400, "validation_error"),
    ErrorKind.INVALID_CREDENTIALS: (401, "invalid_credentials"),
    ErrorKind.UNAUTHENTICATED: (401, "unauthenticated"),
    ErrorKind.FORBIDDEN: (403, "forbidden"),
    ErrorKind.NOT_FOUND: (404, "not_found"),
    ErrorKind.PROVIDER_EXCHANGE_FAILED: (500, "internal_error"),
    ErrorKind.PROVIDER_PROFILE_FETCH_FAILED: (500, "internal_error"),
    ErrorKind.INTERNAL: (500, "internal_error"),
}

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    500: "internal_error",
}


def response_for_kind(kind: ErrorKind) -> tuple[int, str]:
    """Map an error kind to its HTTP status and public error code."""
    return _KIND_TO_RESPONSE[kind]


def _error_code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "internal_error"
    return _STATUS_TO_CODE.get(status_code, "validation_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build an error envelope; 5xx bodies never carry internal detail."""
    if status_code >= 500:
        message = GENERIC_SERVER_MESSAGE
        details = None
        code = "internal_error"
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and request errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        status_code, code = response_for_kind(exc.kind)
        log_fn = logger.error if status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_kind=exc.kind.value,
            reason=getattr(exc, "reason", None),
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(status_code, exc.message, exc.detail, code=code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(400, exc.message, exc.detail, code="validation_error")

    @app.exception_handler(PathTraversalError)
    async def handle_path_traversal_error(request: Request, exc: PathTraversalError):
        logger.warning(
            "path_traversal_attempt",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            client_ip=request.client.host if request.client else None,
        )
        return _error_response(400, "invalid media path", code="validation_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        message = errors[0]["msg"] if errors else "invalid request"
        return _error_response(400, message, errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        # Framework 405s and unknown routes fold into the closed status set
        status_code = exc.status_code if exc.status_code in _STATUS_TO_CODE else 404
        if exc.status_code >= 500:
            status_code = 500
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(status_code, message)

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
        return _error_response(500, GENERIC_SERVER_MESSAGE)
