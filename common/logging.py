from __future__ import annotations

import json
import logging
import re
import time
import uuid
from datetime import datetime, timezone

REQUEST_ID_HEADER = "X-Request-ID"
# Request ids end up in order history rows, keep them short and printable.
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

STRUCTURED_FIELDS = (
    "request_id",
    "path",
    "method",
    "status_code",
    "duration_ms",
    "remote_addr",
    "user_id",
    "branch_id",
    "order_id",
    "order_number",
    "payment_id",
)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logs; known `extra` keys become top-level fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def incoming_request_id(request) -> str:
    candidate = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    if candidate and _REQUEST_ID_PATTERN.match(candidate):
        return candidate
    return str(uuid.uuid4())


def _log_level(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLogMiddleware:
    """Assign a request id, echo it back and emit one access log line per request.

    The branch comes from the tenant context a scoped view resolved, so requests
    made by a superuser on behalf of another branch are logged against that branch.
    """

    def __init__(self, get_response):
        self.get_response = get_response
        self.logger = logging.getLogger("api.request")

    def __call__(self, request):
        started_at = time.perf_counter()
        request_id = incoming_request_id(request)
        request.request_id = request_id

        response = self.get_response(request)

        duration_ms = round((time.perf_counter() - started_at) * 1000, 2)
        user = getattr(request, "user", None)
        user_id = str(user.id) if user is not None and getattr(user, "is_authenticated", False) else None
        context = getattr(request, "tenant_context", None)

        self.logger.log(
            _log_level(response.status_code),
            "request_completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "remote_addr": request.META.get("REMOTE_ADDR"),
                "user_id": user_id,
                "branch_id": str(context.branch_id) if context is not None else None,
            },
        )
        response[REQUEST_ID_HEADER] = request_id
        return response
