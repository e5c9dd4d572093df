import logging
import json
import time
import sys
import uuid
from typing import Callable, Dict, Mapping
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from datetime import datetime, timezone
import traceback

# Sensitive headers to mask
SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie", "x-api-key"}

# Successful hits on these paths are probes and only show up at DEBUG
QUIET_PATHS = {"/health"}

# The request middleware already writes one line per request
NOISY_LOGGERS = ("uvicorn.access", "pymongo", "httpx", "httpcore")

# Record attributes copied into the JSON line when a caller passes them via `extra`
EXTRA_FIELDS = (
    "request_id", "user_id", "client_ip", "method", "path", "status_code", "duration_ms", "headers",
    "event", "pidx", "status", "product_id", "email", "target",
)


def mask_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: ("***" if k.lower() in SENSITIVE_HEADERS else v) for k, v in headers.items()}


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = value

        if record.exc_info:
            log_obj["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_obj, default=str)


def setup_logging(service_name: str, level: str = "INFO"):
    """Route every logger through one stdout handler that writes JSON lines.

    Returns the service logger. Third-party loggers listed in NOISY_LOGGERS are
    raised to WARNING so they don't drown out request and payment events.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    if root.handlers:
        root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger(service_name)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, service_name: str):
        super().__init__(app)
        self.logger = logging.getLogger(f"{service_name}.http")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Correlation ID
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self.log_request(request, 500, started, request_id, exc_info=sys.exc_info())
            raise

        self.log_request(request, response.status_code, started, request_id)
        response.headers["X-Request-ID"] = request_id
        return response

    def log_request(self, request: Request, status_code: int, started: float, request_id: str, exc_info=None):
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": request.client.host if request.client else None,
            "headers": mask_headers(request.headers),
            # Set by the auth dependency once the bearer token resolves
            "user_id": getattr(request.state, "user_id", None),
        }

        if status_code >= 500:
            self.logger.error("Request failed", extra=extra, exc_info=exc_info)
        elif status_code >= 400:
            self.logger.warning("Request rejected", extra=extra)
        elif request.url.path in QUIET_PATHS:
            self.logger.debug("Probe served", extra=extra)
        else:
            self.logger.info("Request processed", extra=extra)
