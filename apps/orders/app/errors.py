from __future__ import annotations

import enum
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError, TimeoutError as PoolTimeoutError

from cafe_shared import get_request_id
from apps.orders.app import settings

_log = logging.getLogger("cafe.errors")


class ValidationError(HTTPException):
    def __init__(self, detail: str = "invalid request", extra: dict[str, Any] | None = None):
        super().__init__(status_code=400, detail=detail)
        self.extra = extra or {}


class NotFoundError(HTTPException):
    def __init__(self, detail: str = "not found"):
        super().__init__(status_code=404, detail=detail)


class UnauthenticatedError(HTTPException):
    def __init__(self, detail: str = "authentication required"):
        super().__init__(status_code=401, detail=detail)


class ConflictError(HTTPException):
    """State conflict such as paying an order twice. Reported as 400."""

    def __init__(self, detail: str = "conflict"):
        super().__init__(status_code=400, detail=detail)


class InvalidSignatureError(HTTPException):
    def __init__(self, detail: str = "Invalid signature"):
        super().__init__(status_code=401, detail=detail)


class InternalError(HTTPException):
    def __init__(self, detail: str = "internal error"):
        super().__init__(status_code=500, detail=detail)


class TransientInfrastructureError(InternalError):
    """A retryable storage/network fault that survived its one retry."""

    def __init__(self, original: BaseException):
        super().__init__(detail="temporarily unavailable")
        self.original = original


class ErrorKind(enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_db_error(exc: BaseException) -> ErrorKind:
    """
    Storage-layer classification of a failure. Connection loss, pool
    exhaustion and driver-level operational errors are retryable; integrity
    and programming errors are not.
    """
    if isinstance(exc, (DisconnectionError, PoolTimeoutError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return ErrorKind.TRANSIENT
    if isinstance(exc, OperationalError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def _error_body(message: Any, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": message}
    body.update(extra)
    return body


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        status = int(getattr(exc, "status_code", 500) or 500)
        if status >= 500:
            original = getattr(exc, "original", None)
            _log.error("request failed: %s", exc.detail, exc_info=original)
            if settings.is_prod_env():
                return JSONResponse(
                    status_code=status,
                    content=_error_body("internal error", request_id=get_request_id()),
                )
        extra = getattr(exc, "extra", None) or {}
        return JSONResponse(status_code=status, content=_error_body(exc.detail, **extra), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = first.get("msg", "invalid request")
        return JSONResponse(
            status_code=400,
            content=_error_body(f"{loc}: {msg}" if loc else msg),
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        rid = get_request_id()
        _log.exception("unhandled exception", extra={"path": request.url.path})
        if settings.is_prod_env():
            return JSONResponse(status_code=500, content=_error_body("internal error", request_id=rid))
        return JSONResponse(status_code=500, content=_error_body(str(exc), request_id=rid))


class ProviderError(HTTPException):
    """Wallet provider unreachable or answered with an error."""

    def __init__(self, detail: str = "payment provider unavailable"):
        super().__init__(status_code=502, detail=detail)
