#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Error taxonomy and JSON error rendering for the Industrial Marketplace

Every failure the service reports is a MarketplaceError subclass carrying its
HTTP status. Handlers registered by register_exception_handlers() turn them
(and framework errors) into the stable body

    {"status": "error", "message": "...", "errors": [...]}
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, TimeoutError as PoolTimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import IS_PRODUCTION

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, Any]]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(MarketplaceError):
    default_message = "Validation failed"


class Conflict(MarketplaceError):
    default_message = "Resource already exists"


class NotFound(MarketplaceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ProductNotFound(NotFound):
    default_message = "Product does not exist or is no longer listed"


class InquiryNotFound(NotFound):
    default_message = "Inquiry not found"


class Forbidden(MarketplaceError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to perform this action"


class Unauthorized(MarketplaceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class InvalidTransition(MarketplaceError):
    default_message = "Status transition not allowed"


class AlreadyResponded(MarketplaceError):
    default_message = "This inquiry has already been responded to"


class InsufficientStock(MarketplaceError):
    default_message = "Insufficient stock"


class SelfInquiryForbidden(MarketplaceError):
    default_message = "You cannot send an inquiry for your own product"


class CsrfInvalid(MarketplaceError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Security check failed: invalid CSRF token"


class RateLimited(MarketplaceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests, please try again later"

    def __init__(self, message: Optional[str] = None, retry_after: int = 1):
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))


class Timeout(MarketplaceError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_message = "The operation timed out"


def error_body(exc: MarketplaceError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"status": "error", "message": exc.message}
    if exc.errors:
        body["errors"] = exc.errors
    if isinstance(exc, RateLimited):
        body["retryAfter"] = exc.retry_after
    return body


def error_response(exc: MarketplaceError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(error_body(exc), status_code=exc.status_code, headers=headers)


def _field_name(loc) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts) or "body"


def validation_error_from_request(exc: RequestValidationError) -> ValidationError:
    errors = []
    for err in exc.errors():
        entry = {"field": _field_name(err.get("loc", ())), "message": err.get("msg", "Invalid value")}
        if "input" in err and isinstance(err["input"], (str, int, float, bool)):
            entry["value"] = err["input"]
        errors.append(entry)
    return ValidationError("Validation failed", errors=errors)


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(validation_error_from_request(exc))


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity violation on %s %s", request.method, request.url.path)
    return error_response(Conflict())


async def pool_timeout_handler(request: Request, exc: PoolTimeoutError) -> JSONResponse:
    logger.error("Database pool timeout on %s %s", request.method, request.url.path)
    return error_response(Timeout())


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_404_NOT_FOUND and request.url.path.startswith("/api/"):
        message = "API endpoint not found"
    else:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        {"status": "error", "message": message},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error on %s %s",
        request.method,
        request.url.path,
        extra={"event": "unhandled_error"},
    )
    body: Dict[str, Any] = {"status": "error", "message": "Internal server error"}
    if not IS_PRODUCTION:
        body["error"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(body, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


EXCEPTION_HANDLERS = {
    MarketplaceError: marketplace_error_handler,
    RequestValidationError: request_validation_handler,
    IntegrityError: integrity_error_handler,
    PoolTimeoutError: pool_timeout_handler,
    StarletteHTTPException: http_exception_handler,
    Exception: unhandled_exception_handler,
}


def register_exception_handlers(app):
    for exception_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_class, handler)
