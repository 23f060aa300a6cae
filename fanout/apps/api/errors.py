from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fanout.apps.api.response import error_response, is_versioned_request
from fanout.core.errors import (
    AudienceResolutionError,
    ConfigError,
    DeadLetterNotFoundError,
    DeadLetterStateError,
    FanoutError,
    JobNotFoundError,
    JobValidationError,
    StoreUnavailableError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Ordered most specific first; the first isinstance match wins.
_FANOUT_ERROR_MAP: tuple[tuple[type[FanoutError], int, str], ...] = (
    (JobValidationError, 422, "JOB_VALIDATION_ERROR"),
    (JobNotFoundError, 404, "JOB_NOT_FOUND"),
    (DeadLetterNotFoundError, 404, "DEAD_LETTER_NOT_FOUND"),
    (DeadLetterStateError, 409, "DEAD_LETTER_STATE_CONFLICT"),
    (StoreUnavailableError, 503, "STORE_UNAVAILABLE"),
    (AudienceResolutionError, 503, "AUDIENCE_UNAVAILABLE"),
    (ConfigError, 500, "CONFIG_ERROR"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def map_fanout_error(exc: FanoutError) -> tuple[int, str, dict[str, Any] | None]:
    for error_type, status_code, code in _FANOUT_ERROR_MAP:
        if isinstance(exc, error_type):
            details = {"errors": exc.errors} if isinstance(exc, JobValidationError) and exc.errors else None
            return status_code, code, details
    return 500, "INTERNAL_ERROR", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Router-level 404/405 come through Starlette rather than FastAPI.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def fanout_exception_handler(request: Request, exc: FanoutError) -> JSONResponse:
    status_code, code, details = map_fanout_error(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc) or code, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients; the traceback goes to the log instead.
    logger.exception("request_unhandled path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
