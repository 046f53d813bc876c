"""Error types and JSON error handling with stable error codes."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException

IDEMPOTENCY_HEADER = "Idempotency-Key"
EXAMPLE_KEY = "550e8400-e29b-41d4-a716-446655440000"

log = logging.getLogger(__name__)

# Map common HTTP statuses to stable machine-readable codes
_STATUS_TO_CODE = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "payload_too_large",
    415: "unsupported_media_type",
    422: "validation_error",
    429: "rate_limited",
}


class CacheBackendUnavailable(RuntimeError):
    """The networked cache backend is not connected or not ready."""


class IdempotencyError(Exception):
    """A client error raised while validating idempotency input."""

    def __init__(
        self,
        status: int,
        code: str,
        detail: str,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(detail)
        self.status = status
        self.code = code
        self.detail = detail
        self.details: Dict[str, Any] = dict(details or {})

    @classmethod
    def key_required(cls) -> "IdempotencyError":
        return cls(
            400,
            "idempotency_key_required",
            f"{IDEMPOTENCY_HEADER} header is required for this operation",
            {
                "header": IDEMPOTENCY_HEADER,
                "description": "Provide a unique identifier to prevent duplicate requests",
                "example": f"{IDEMPOTENCY_HEADER}: {EXAMPLE_KEY}",
            },
        )

    @classmethod
    def key_invalid(cls, provided: str) -> "IdempotencyError":
        return cls(
            400,
            "idempotency_key_invalid",
            f"Invalid {IDEMPOTENCY_HEADER} format. Must be a valid UUID v4",
            {
                "provided": provided,
                "expected": f"UUID v4 format (e.g., {EXAMPLE_KEY})",
            },
        )

    @classmethod
    def body_too_large(cls, max_size: int, actual_size: int) -> "IdempotencyError":
        return cls(
            400,
            "idempotency_body_too_large",
            "Request body too large for idempotency processing",
            {
                "maxSize": f"{max_size} bytes",
                "actualSize": f"{actual_size} bytes",
            },
        )


def request_id_from_headers(headers: Headers) -> str:
    """Inbound X-Request-ID when present, otherwise a new UUID4."""
    return (headers.get("x-request-id") or "").strip() or str(uuid4())


def error_body(
    *,
    detail: str,
    status: int,
    request_id: str,
    code: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "detail": detail,
        "code": code or _STATUS_TO_CODE.get(status, "error"),
        "request_id": request_id,
    }
    if details:
        body["details"] = dict(details)
    return body


def idempotency_error_response(exc: IdempotencyError, headers: Headers) -> JSONResponse:
    rid = request_id_from_headers(headers)
    resp = JSONResponse(
        status_code=exc.status,
        content=error_body(
            detail=exc.detail,
            status=exc.status,
            request_id=rid,
            code=exc.code,
            details=exc.details,
        ),
    )
    resp.headers["X-Request-ID"] = rid
    return resp


def _json_error(
    request: Request,
    *,
    detail: str,
    status: int,
    code: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> JSONResponse:
    rid = request_id_from_headers(request.headers)
    body = error_body(detail=detail, status=status, request_id=rid, code=code, details=details)
    resp = JSONResponse(status_code=status, content=body)
    resp.headers["X-Request-ID"] = rid
    return resp


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        return _json_error(request, detail=detail, status=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": list(err.get("loc", ())), "msg": str(err.get("msg", ""))}
            for err in exc.errors()
        ]
        return _json_error(
            request,
            detail="Validation failed",
            status=422,
            details={"errors": errors},
        )

    @app.exception_handler(IdempotencyError)
    async def idempotency_exc_handler(request: Request, exc: IdempotencyError) -> JSONResponse:
        return idempotency_error_response(exc, request.headers)

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception) -> JSONResponse:
        log.exception("unhandled error on %s %s", request.method, request.url.path)
        return _json_error(request, detail="Internal Server Error", status=500, code="internal_error")
