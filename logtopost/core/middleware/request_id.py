import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from logtopost.core.logging import latency_bucket_ms, request_id_ctx_var
from logtopost.core.metrics import http_requests_total, normalize_path

logger = logging.getLogger("logtopost.http")

# client-supplied ids are echoed into logs, so only accept short token-like values
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id, echo it back, count it and log one completion line."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    def _request_id(self, request) -> str:
        supplied = request.headers.get(self.header_name)
        if supplied and _ACCEPTED_ID.match(supplied):
            return supplied
        return str(uuid4())

    async def dispatch(self, request, call_next):
        rid = self._request_id(request)
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers[self.header_name] = rid
        status = response.status_code
        http_requests_total.inc(labels={
            "method": request.method,
            "path": normalize_path(request.url.path),
            "status": str(status),
        })
        logger.info(
            f"{request.method} {request.url.path} -> {status}",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "latency_bucket": latency_bucket_ms(elapsed_ms),
            },
        )
        return response
