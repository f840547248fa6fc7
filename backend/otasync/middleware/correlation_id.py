from __future__ import annotations

import uuid

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from otasync.errors import error_response


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        incoming = request.headers.get("X-Correlation-Id")
        if incoming and isinstance(incoming, str) and incoming.strip():
            cid = incoming.strip()
        else:
            cid = str(uuid.uuid4())

        request.state.correlation_id = cid

        try:
            response: Response = await call_next(request)
        except Exception:  # pragma: no cover - generic safety net
            # Exception handlers normally format the body; this only guarantees the header
            response = JSONResponse(
                status_code=500,
                content=error_response("internal_error", "Unexpected server error", {"correlation_id": cid}),
            )

        response.headers["X-Correlation-Id"] = cid
        return response
