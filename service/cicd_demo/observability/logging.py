"""Structured logging setup with request IDs and trace IDs"""

import logging
import json
import os
import sys
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "request_id", "trace_id"}

SENSITIVE_KEYS = (
    "password", "api_key", "token", "secret", "authorization",
    "x-api-key", "bearer", "credential", "cookie",
)


def get_request_id() -> Optional[str]:
    """Get current request ID"""
    return request_id_var.get()


def set_request_id(request_id: Optional[str]) -> None:
    """Set current request ID"""
    request_id_var.set(request_id)


def get_trace_id() -> Optional[str]:
    """Get the trace ID of the active span"""
    return trace_id_var.get()


def set_trace_id(trace_id: Optional[str]) -> None:
    """Set current trace ID"""
    trace_id_var.set(trace_id)


def mask_sensitive_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Mask values whose key looks like a credential"""
    masked_data = {}
    for key, value in data.items():
        key_lower = str(key).lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            if isinstance(value, str) and len(value) > 8:
                masked_data[key] = value[:4] + "***" + value[-4:]
            else:
                masked_data[key] = "***"
        elif isinstance(value, dict):
            masked_data[key] = mask_sensitive_data(value)
        else:
            masked_data[key] = value
    return masked_data


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging with request/trace IDs"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = get_request_id()
        if request_id:
            log_data["request_id"] = request_id

        trace_id = get_trace_id()
        if trace_id:
            log_data["trace_id"] = trace_id

        # Fields passed through ``extra=``
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data = mask_sensitive_data(log_data)

        return json.dumps(log_data, default=str)


class ContextFilter(logging.Filter):
    """Filter to add request and trace IDs to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "N/A"
        record.trace_id = get_trace_id() or "N/A"
        return True


def setup_logging(
    level: str = "INFO",
    json_output: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """Setup structured logging"""
    log_level_str = os.getenv("LOG_LEVEL", level).upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    if json_output or os.getenv("LOG_FORMAT", "").lower() == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - %(message)s"
            )
        )
    console_handler.addFilter(ContextFilter())
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(ContextFilter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("fastapi").setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance"""
    return logging.getLogger(name)
