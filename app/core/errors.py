from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class BridgeError(Exception):
    """Base class for failures the bridge knows how to report.

    ``response_code`` is the ESS result code sent back in a ``RESPONSE``
    message, ``code`` is the machine readable key used by the JSON API.
    """

    code = "bridge_error"
    response_code = "8011"
    http_status = 500

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class MalformedMessageError(BridgeError):
    code = "malformed_message"
    response_code = "8001"
    http_status = 400


class SignatureVerificationError(BridgeError):
    code = "invalid_signature"
    response_code = "8009"
    http_status = 400


class SigningKeyError(BridgeError):
    code = "signature_configuration"
    response_code = "8010"
    http_status = 500


class ApplicationNotFoundError(BridgeError):
    code = "application_not_found"
    response_code = "8019"
    http_status = 404


class ApplicationBusyError(BridgeError):
    code = "application_busy"
    response_code = "8012"
    http_status = 503


class IllegalTransitionError(BridgeError):
    code = "illegal_transition"
    response_code = "8006"
    http_status = 409

    def __init__(self, current: str | None, target: str, *, trigger: str | None = None) -> None:
        super().__init__(
            f"Cannot move application from {current or 'NEW'} to {target}",
            details={"from": current, "to": target, "trigger": trigger},
        )
        self.current = current
        self.target = target


class CbsError(BridgeError):
    code = "cbs_error"
    response_code = "8012"
    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        status_code: int | None = None,
        details: dict | None = None,
    ) -> None:
        merged = {"operation": operation, "status_code": status_code}
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.operation = operation
        self.status_code = status_code


class CbsRetryableError(CbsError):
    """Transport failure, timeout or 5xx; the same call may succeed later.

    ``request_sent`` is False only when the CBS provably never saw the
    request (connection refused, pool exhausted, throttled). Otherwise a
    write may or may not have been applied.
    """

    code = "cbs_unavailable"

    def __init__(self, message: str, *, request_sent: bool = True, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.request_sent = request_sent


class CbsTerminalError(CbsError):
    """The CBS refused the request; repeating it will not help."""

    code = "cbs_rejected"
    response_code = "8011"


class DeliveryError(BridgeError):
    code = "delivery_failed"
    response_code = "8012"
    http_status = 502


_HTTP_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


def _phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _as_details(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        return {"errors": value}
    return {"detail": str(value)}


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Any | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """The JSON error envelope shared by every operator route."""
    payload = {"code": code, "message": message, "data": None, "details": _as_details(details)}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload), headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    detail = exc.detail
    if isinstance(detail, dict):
        code = detail.get("code") or code
        message = detail.get("message") or _phrase(exc.status_code)
        return error_response(exc.status_code, code, message, detail.get("details"), exc.headers)
    if isinstance(detail, str):
        return error_response(exc.status_code, code, detail, {"detail": detail}, exc.headers)
    return error_response(exc.status_code, code, _phrase(exc.status_code), detail, exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Validation failed"
    if errors:
        first = errors[0] or {}
        where = ".".join(
            str(part) for part in first.get("loc") or () if part not in {"body", "query", "path", "header"}
        )
        reason = first.get("msg") or message
        message = f"{where}: {reason}" if where else str(reason)
    return error_response(422, "validation_error", message, {"errors": errors})


async def bridge_exception_handler(request: Request, exc: BridgeError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return error_response(exc.http_status, exc.code, exc.message, exc.details)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "internal_server_error", "Internal server error")


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    headers = getattr(exc, "headers", None)
    return error_response(
        429,
        "rate_limited",
        _phrase(429),
        getattr(exc, "detail", None),
        headers if isinstance(headers, dict) else None,
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(BridgeError, bridge_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
