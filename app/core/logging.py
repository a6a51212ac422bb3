"""
Structured Logging Infrastructure

JSON log lines carrying two pieces of request context:
- correlation_id: one API call or one dispatcher batch
- tenant_id: the tenant whose data the line is about

so a single webhook delivery can be traced from the command that emitted
the event down to the batch that delivered it.
"""
import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
tenant_id_var: ContextVar[str] = ContextVar("tenant_id", default="")

# ספריות שרושמות כל בקשה / שאילתה ב-INFO
_NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "celery": logging.INFO,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, var in (("correlation_id", correlation_id_var), ("tenant_id", tenant_id_var)):
            value = var.get()
            if value:
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept ``extra_data={...}``"""

    def _log(
        self,
        level,
        msg,
        args,
        exc_info=None,
        extra=None,
        stack_info=False,
        stacklevel=1,
        extra_data: dict[str, Any] | None = None,
    ):
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        # +1 כדי ש-funcName / lineno יצביעו על הקורא ולא על הפונקציה הזו
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


class ContextFilter(logging.Filter):
    """Exposes correlation_id / tenant_id to plain-text format strings"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.tenant_id = tenant_id_var.get() or "-"
        return True


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        json_format: JSON lines for deployments, plain text for local runs
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s %(tenant_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        handler.addFilter(ContextFilter())
    root_logger.addHandler(handler)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set (or generate) the correlation id of the current context"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    cid = correlation_id_var.get()
    if not cid:
        cid = set_correlation_id()
    return cid


def set_tenant_id(tenant_id: str | None) -> None:
    tenant_id_var.set(tenant_id or "")


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """Log start / completion / failure of an async operation with its duration"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            started = datetime.now(timezone.utc)
            logger.debug(f"Starting {operation_name}", extra_data={"operation": operation_name})

            def elapsed() -> float:
                return (datetime.now(timezone.utc) - started).total_seconds()

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": elapsed(),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                raise

            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": elapsed(),
                    "result": result if isinstance(result, dict) else None,
                },
            )
            return result

        return wrapper
    return decorator
