"""JSON error envelope shared by every route.

    {"code": ..., "message": ..., "details": ..., "request_id": ...}

``request_id`` is the id ObservabilityMiddleware put on the request.
"""
from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.services.billing.exceptions import BillingError, InvalidOrderTransition

logger = logging.getLogger(__name__)


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict:
    return {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: object = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_payload(code, message, details, request_id_of(request)),
    )


def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        return error_response(
            request,
            exc.status_code,
            detail.get("code", f"http_{exc.status_code}"),
            detail.get("message", "Request failed"),
            detail.get("details"),
        )
    if isinstance(detail, str):
        return error_response(request, exc.status_code, f"http_{exc.status_code}", detail)
    return error_response(
        request, exc.status_code, f"http_{exc.status_code}", "Request failed", detail
    )


def _billing_error(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Billing error on %s %s: %s",
            request.method,
            request.url.path,
            exc,
            extra={"request_id": request_id_of(request)},
        )
    details = None
    if isinstance(exc, InvalidOrderTransition):
        details = {"from": exc.current, "to": exc.target}
    return error_response(request, exc.status_code, exc.code, str(exc), details)


def register_error_handlers(app: object) -> None:
    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        return _http_error(request, exc)

    @app.exception_handler(BillingError)  # type: ignore[arg-type]
    async def billing_exception_handler(
        request: Request, exc: BillingError
    ) -> JSONResponse:
        return _billing_error(request, exc)

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id_of(request)},
        )
        return error_response(
            request, 422, "validation_error", "Validation error", exc.errors()
        )

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id_of(request)},
        )
        return error_response(request, 500, "internal_error", "Internal server error")
