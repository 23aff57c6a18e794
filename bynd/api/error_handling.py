from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bynd.api.schemas import Envelope, ErrorBody
from bynd.logging import get_correlation_id, get_logger
from bynd.service.errors import ServiceError
from bynd.storage.errors import ConstraintViolation, StoreUnavailable

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
    503: "service_unavailable",
}

_BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """Render the error envelope; ``request_id`` echoes the correlation id when set."""
    fields: dict = {
        "status": "error",
        "error": ErrorBody(
            code=code or _error_code_for_status(status_code), message=message, details=details
        ),
    }
    request_id = get_correlation_id()
    if request_id:
        fields["request_id"] = request_id
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(Envelope(**fields)),
        headers=headers,
    )


def _log_failure(request: Request, status_code: int, event: str, **fields: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, 409, "constraint_violation", message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def on_store_unavailable(request: Request, exc: StoreUnavailable):
        _log_failure(request, 503, "store_unavailable", backend=exc.backend, message=exc.message)
        return _error_response(503, "storage unavailable", code="service_unavailable")

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            exc.status_code,
            "service_error",
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            headers=_BEARER_CHALLENGE if exc.status_code == 401 else None,
        )

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, error_count=len(problems))
        return _error_response(422, "request validation failed", problems, code="validation_error")

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        headers = getattr(exc, "headers", None)
        detail = exc.detail
        # routes._http_error() nests an envelope-shaped error in the detail
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            body = detail["error"]
            message = body.get("message", "http error")
            _log_failure(
                request, exc.status_code, "http_error", error_code=body.get("code"), message=message
            )
            return _error_response(
                exc.status_code, message, body.get("details"), code=body.get("code"), headers=headers
            )
        message = detail if isinstance(detail, str) else "http error"
        return _error_response(exc.status_code, message, headers=headers)

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
