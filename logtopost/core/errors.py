"""Error types raised across LogToPost and the handlers that render them as JSON."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from logtopost.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class InvalidPlanError(ValidationError):
    code = "invalid_plan"
    status_code = 400


class SubscriptionRequiredError(AppError):
    """Quota gate denial: no access-granting subscription or trial."""
    code = "subscription_required"
    status_code = 403


class LimitReachedError(AppError):
    """Quota gate denial: the plan's generation limit for this period is used up."""
    code = "limit_reached"
    status_code = 403


class ProviderUnavailableError(AppError):
    """Billing provider failed or timed out; the caller may try again."""
    code = "provider_unavailable"
    status_code = 503


class SignatureInvalidError(AppError):
    code = "signature_invalid"
    status_code = 400


class StateConflictError(AppError):
    """Optimistic write lost twice in a row against a concurrent writer."""
    code = "state_conflict"
    status_code = 409


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


logger = logging.getLogger("logtopost.errors")


def _resolve_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _respond(status_code: int, code: str, message: str, rid: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    """Render the error envelope; ``detail`` mirrors the message for older clients."""
    body: Dict[str, Any] = {"code": code, "message": message, "request_id": rid}
    if details:
        body["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={"error": body, "detail": message},
        headers={"x-request-id": rid},
    )


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _resolve_request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        f"[error] {exc.code}",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _respond(exc.status_code, exc.code, exc.message, rid, exc.details)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _resolve_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning(f"[error] {code}", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _respond(exc.status_code, code, str(exc.detail or "HTTP error"), rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _resolve_request_id(request)
    logger.error("[error] unhandled exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _respond(500, "internal_error", "Unexpected error", rid)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
