from __future__ import annotations

from typing import Any, Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from sessiongate.api.schemas import Envelope, ErrorContent
from sessiongate.logging import get_logger
from sessiongate.service.errors import ServiceError
from sessiongate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes for failures that carry only an HTTP status
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}

_GENERIC_500 = "internal server error"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Union[dict, list, None] = None,
    code: Optional[str] = None,
) -> JSONResponse:
    """``{success: false, error: message, content: {code, details, timestamp}}``."""
    content = ErrorContent(code=code or _error_code_for_status(status_code), details=details or None)
    body = Envelope(success=False, error=message, content=content.model_dump())
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _log_failure(event: str, request: Request, status_code: int, **fields: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope."""

    @app.exception_handler(ServiceError)
    async def service_error(request: Request, exc: ServiceError):
        _log_failure(
            "service_error", request, exc.status_code, error_code=exc.error_code, message=exc.message
        )
        if exc.status_code >= 500:
            return _error_response(500, _GENERIC_500, code="server_error")
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def constraint_violation(request: Request, exc: ConstraintViolation):
        # Unique/FK races that slipped past the service-level checks
        _log_failure("constraint_violation", request, 409, message=exc.message, detail=exc.detail)
        return _error_response(409, "conflict", code="conflict")

    @app.exception_handler(RequestValidationError)
    async def request_validation(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        _log_failure("request_validation_error", request, 422, error_count=len(details))
        return _error_response(422, "invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            _log_failure("http_error", request, exc.status_code, message=message)
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, _GENERIC_500, code="server_error")
