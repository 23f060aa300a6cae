from __future__ import annotations

from typing import Any

from fanout.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: _response("Not found", _error_example(code="JOB_NOT_FOUND", message="job 3f2a not found")),
    409: _response(
        "Conflict",
        _error_example(code="DEAD_LETTER_STATE_CONFLICT", message="dead letter 9c1e is already resolved"),
    ),
    422: _response(
        "Validation error",
        _error_example(
            code="JOB_VALIDATION_ERROR",
            message="invalid job request",
            details={"errors": [{"loc": "subject", "msg": "String should have at least 3 characters"}]},
        ),
    ),
    500: _response("Internal error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
    503: _response(
        "Store unavailable",
        _error_example(code="STORE_UNAVAILABLE", message="delivery store unavailable"),
    ),
}
