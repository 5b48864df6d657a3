import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from stampbot.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # Route Uvicorn loggers through the same JSON handler
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys:
    - ts, level, request_id
    - method, path, status, latency_ms

    Routes that run a verification also attach:
    - user_id: subscriber identity
    - check: consent, unsubscribe or rate_limit
    - verdict: Verdict name, or the action status when no check ran
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)

            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time
            latency_ms = round(latency_seconds * 1000, 2)

            # Label by route template so /subscribers/{user_id} stays one series
            route = request.scope.get("route")
            path = getattr(route, "path", request.url.path)

            if path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": latency_ms,
            }

            if hasattr(request.state, "verification_log_data"):
                log_data.update(request.state.verification_log_data)

            logger = logging.getLogger("stampbot.requests")

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_verification_data(request: Request, user_id: str, check: Optional[str] = None, verdict: Optional[str] = None):
    """
    Attach verification fields to the request state.
    They are included in the request log line by the middleware.

    Args:
        request: FastAPI request object
        user_id: Subscriber identity the request acted on
        check: Which verification ran, if any
        verdict: Verdict name or action status
    """
    data = {"user_id": user_id}

    if check is not None:
        data["check"] = check

    if verdict is not None:
        data["verdict"] = verdict

    request.state.verification_log_data = data
