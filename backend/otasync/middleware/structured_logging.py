"""Structured JSON access log.

Every request logs one line:
{
  request_id,
  correlation_id,
  user_id,
  path,
  method,
  status_code,
  latency_ms
}

Attaches request_id to the response header and feeds the HTTP metrics.
"""
from __future__ import annotations

import base64
import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from otasync.metrics import track_http_request

logger = logging.getLogger("structured_access")


def _extract_user_id(request: Request) -> str:
    """Read `sub` from the bearer token without verifying it (logging only)."""
    auth = request.headers.get("authorization", "")
    if not auth.lower().startswith("bearer "):
        return ""
    parts = auth.split(" ", 1)[1].split(".")
    if len(parts) < 2:
        return ""
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload))
    except (ValueError, TypeError):
        return ""
    return data.get("sub", "") if isinstance(data, dict) else ""


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Log structured JSON for every request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())[:12]
        start = time.monotonic()
        request.state.request_id = request_id

        log_entry = {
            "request_id": request_id,
            "correlation_id": getattr(request.state, "correlation_id", None),
            "user_id": _extract_user_id(request),
            "path": request.url.path,
            "method": request.method,
        }

        try:
            response = await call_next(request)
        except Exception:
            latency_ms = round((time.monotonic() - start) * 1000, 2)
            logger.error(json.dumps({**log_entry, "status_code": 500, "latency_ms": latency_ms}))
            track_http_request(request.method, _route_label(request), 500, latency_ms / 1000.0)
            raise

        latency_ms = round((time.monotonic() - start) * 1000, 2)
        status_code = response.status_code
        line = json.dumps({**log_entry, "status_code": status_code, "latency_ms": latency_ms})
        if status_code >= 500:
            logger.error(line)
        elif status_code >= 400:
            logger.warning(line)
        else:
            logger.info(line)

        if not request.url.path.startswith("/metrics"):
            track_http_request(request.method, _route_label(request), status_code, latency_ms / 1000.0)

        response.headers["X-Request-Id"] = request_id
        return response
