"""
FastAPI Middleware

- CorrelationIdMiddleware: X-Correlation-ID in and out, fresh tenant context per request
- RequestLoggingMiddleware: one line per request with idempotency details
- SecurityHeadersMiddleware: nosniff, no-store, HSTS
- exception handlers that render AppException as {"error": {...}}
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_correlation_id, get_logger, set_correlation_id, set_tenant_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        # ה-tenant נקבע מחדש ע"י get_tenant_id בכל בקשה
        set_tenant_id(None)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    שורת לוג אחת לכל בקשה שהסתיימה.

    בקשות עם Idempotency-Key נרשמות עם המפתח וסימון replay, כך שאפשר לראות
    בלוג אם פקודה חוזרת בוצעה שוב או הוחזרה מה-ledger.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        context = {
            "method": request.method,
            "path": request.url.path,
            "idempotency_key": request.headers.get("Idempotency-Key"),
        }

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra_data={**context, "duration_ms": _elapsed_ms(started), "error": str(e)},
                exc_info=True,
            )
            raise

        context.update(
            status_code=response.status_code,
            duration_ms=_elapsed_ms(started),
            replayed=response.headers.get("X-Idempotency-Replayed") == "true",
        )
        log = logger.info if response.status_code < 400 else logger.warning
        log(f"{request.method} {request.url.path} -> {response.status_code}", extra_data=context)
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    כותרות אבטחה לכל תשובה.

    Cache-Control: no-store אלא אם ה-route קבע אחרת, התשובות מכילות מידע רפואי.
    HSTS רק מחוץ ל-DEBUG, כדי לא לחסום פיתוח מקומי ב-HTTP.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        headers = response.headers
        headers["X-Content-Type-Options"] = "nosniff"
        headers.setdefault("Cache-Control", "no-store")
        if not self._debug:
            headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


def _error_response(status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"{exc.error_code.value} on {request.method} {request.url.path}: {exc.message}",
        extra_data={"error_code": exc.error_code.value, "details": exc.details},
    )
    return _error_response(exc.status_code, exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 בלי לחשוף את פרטי החריגה ללקוח"""
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        extra_data={"exception_type": type(exc).__name__, "message": str(exc)},
        exc_info=True,
    )
    return _error_response(500, {
        "error": {
            "code": ErrorCode.INTERNAL_ERROR.value,
            "message": "An unexpected error occurred",
            "details": {},
        }
    })


def setup_middleware(app: FastAPI) -> None:
    from app.core.config import settings

    # האחרון שנוסף הוא החיצוני: SecurityHeaders → CorrelationId → RequestLogging → app
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
