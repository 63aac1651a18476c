from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from qcauth.api.schemas import Envelope, ErrorBody
from qcauth.logging import get_logger
from qcauth.service.errors import ErrorKind, ServiceError
from qcauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorKind.VALIDATION_ERROR.value,
    401: ErrorKind.UNAUTHENTICATED.value,
    403: ErrorKind.UNAUTHORIZED.value,
    404: ErrorKind.NOT_FOUND.value,
    405: ErrorKind.VALIDATION_ERROR.value,
    409: ErrorKind.CONFLICT.value,
    422: ErrorKind.VALIDATION_ERROR.value,
    429: ErrorKind.RATE_LIMITED.value,
    500: ErrorKind.INTERNAL_ERROR.value,
}

# Kinds whose message could hint at whether an account exists.
_REDACTED_MESSAGES = {
    ErrorKind.INVALID_CREDENTIALS: "invalid credentials",
    ErrorKind.INTERNAL_ERROR: "internal server error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, ErrorKind.INTERNAL_ERROR.value)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for domain, storage and request errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            kind=exc.error_code,
            message=exc.message,
        )
        message = _REDACTED_MESSAGES.get(exc.kind, exc.message)
        details = None if exc.kind in _REDACTED_MESSAGES else exc.detail
        return _error_response(exc.status_code, message, details, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=exc.field,
        )
        return _error_response(409, exc.message, exc.detail, code=ErrorKind.CONFLICT.value)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(details),
        )
        return _error_response(
            422, "request validation failed", details, code=ErrorKind.VALIDATION_ERROR.value
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            code = None
            details = None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(
            500, "internal server error", code=ErrorKind.INTERNAL_ERROR.value
        )
