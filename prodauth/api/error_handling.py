from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from prodauth.api.schemas import Envelope, ErrorBody
from prodauth.logging import get_correlation_id, get_logger, sanitize_error_message
from prodauth.service.errors import ServiceError
from prodauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# stable error codes keyed by HTTP status
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(
        status_code=status_code, content=jsonable_encoder(envelope.model_dump())
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as ``{"status": "error", "error": {...}, "request_id"}``."""

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

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        message = exc.message
        if exc.status_code >= 500:
            message = sanitize_error_message(message)
        return _error_response(
            exc.status_code, message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(errors),
        )
        return _error_response(422, "invalid request", errors, code="validation_error")

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
        return _error_response(500, "internal server error", code="server_error")
