from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from teamcrm.api.schemas import Envelope, ErrorBody
from teamcrm.logging import get_logger
from teamcrm.service.errors import AuthError, AuthErrorKind
from teamcrm.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    500: "SERVER_ERROR",
}

_STATUS_BY_KIND = {
    AuthErrorKind.STATE: 400,
    AuthErrorKind.CREDENTIAL: 401,
    AuthErrorKind.PERMISSION: 403,
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "SERVER_ERROR")


def status_for_auth_error(exc: AuthError) -> int:
    return _STATUS_BY_KIND[exc.kind]


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def auth_error_response(exc: AuthError, status_code: int | None = None) -> JSONResponse:
    return _error_response(
        status_code or status_for_auth_error(exc), exc.message, code=exc.code.value
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for auth, storage and request errors."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        logger.info(
            "auth_error",
            path=request.url.path,
            method=request.method,
            error_code=exc.code.value,
            kind=exc.kind.value,
        )
        return auth_error_response(exc)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=exc.field,
        )
        return _error_response(409, exc.message, exc.detail, code="CONFLICT")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
                "message": error.get("msg", "invalid value"),
            }
            for error in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[detail["field"] for detail in details],
        )
        return _error_response(400, "Invalid request", details, code="VALIDATION_ERROR")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error("http_error", path=request.url.path, status_code=exc.status_code)
        return _error_response(exc.status_code, message)

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
        return _error_response(500, "internal server error", code="SERVER_ERROR")
