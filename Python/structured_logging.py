#!/usr/bin/env python3
"""
Questline Structured Logging v1.0
JSON structured logs with request and session tracking plus component-level configuration.
"""

import json
import logging
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


# Context variables for request and story-session tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')
session_id_var: ContextVar[str] = ContextVar('session_id', default='')


class JSONFormatter(logging.Formatter):
    """
    JSON structured log formatter.

    Output format:
    {
        "timestamp": "2024-01-01T12:00:00.000Z",
        "level": "INFO",
        "logger": "questline.turns",
        "message": "Turn completed",
        "request_id": "abc123",
        "session": "9f2c41",
        "duration_ms": 150,
        ...extra fields
    }
    """

    RESERVED_ATTRS = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName',
        'levelname', 'levelno', 'lineno', 'module', 'msecs',
        'pathname', 'process', 'processName', 'relativeCreated',
        'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
        'message', 'asctime', 'taskName'
    }

    def __init__(self, include_stack: bool = False):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_entry["request_id"] = request_id

        session_id = session_id_var.get()
        if session_id:
            log_entry["session"] = session_id

        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName
            }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
            }
            if self.include_stack:
                log_entry["exception"]["traceback"] = traceback.format_exception(*record.exc_info)

        # Extra fields passed through `extra=` or StructuredLogger kwargs
        for key, value in record.__dict__.items():
            if key not in self.RESERVED_ATTRS and not key.startswith('_'):
                try:
                    json.dumps(value)
                    log_entry[key] = value
                except (TypeError, ValueError):
                    log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


class StructuredLogger(logging.Logger):
    """
    Logger with structured logging support.

    Usage:
        logger = get_logger("questline.turns")
        logger.info("Turn completed", duration_ms=150, retries=1)
    """

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, **kwargs):
        if kwargs:
            extra = dict(extra or {})
            extra.update(kwargs)

        super()._log(level, msg, args, exc_info, extra, stack_info, stacklevel)


logging.setLoggerClass(StructuredLogger)


def get_logger(name: str, level: Optional[int] = None) -> StructuredLogger:
    """
    Get a structured logger.

    Args:
        name: Logger name (e.g., "questline.turns")
        level: Optional logging level; inherits from the root logger when omitted

    Returns:
        Logger instance accepting keyword fields
    """
    logger = logging.getLogger(name)
    if not isinstance(logger, StructuredLogger):
        # Created before the logger class was registered
        logger = StructuredLogger(name)
        logger.parent = logging.root
    if level is not None:
        logger.setLevel(level)
    return logger


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    component_levels: Dict[str, str] = None
):
    """
    Configure logging for the entire application.

    Args:
        level: Default log level
        json_format: Use JSON formatting
        component_levels: Component-specific log levels
            e.g., {"game_reconciler": "DEBUG", "token_relay": "WARNING"}
    """
    root_level = getattr(logging, level.upper())
    logging.root.setLevel(root_level)

    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JSONFormatter(include_stack=root_level <= logging.DEBUG))
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
    logging.root.addHandler(handler)

    if component_levels:
        for component, comp_level in component_levels.items():
            logging.getLogger(component).setLevel(getattr(logging, comp_level.upper()))


# =============================================================================
# REQUEST TRACKING MIDDLEWARE
# =============================================================================

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request logging with:
    - Unique request ID generation
    - Request/response timing
    """

    def __init__(self, app, logger_name: str = "questline.http"):
        super().__init__(app)
        self.logger = get_logger(logger_name)

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        request_id_var.set(request_id)
        request.state.request_id = request_id

        start_time = time.time()
        self.logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self.logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration_ms=round(duration_ms, 2),
                exc_info=True
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        self.logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )
        response.headers["X-Request-ID"] = request_id
        return response


def set_session_context(session_id: str):
    """Set story session id in logging context"""
    session_id_var.set(session_id)


def get_request_id() -> str:
    """Get current request ID"""
    return request_id_var.get()
