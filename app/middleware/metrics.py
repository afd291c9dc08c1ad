import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

API_REQUESTS = Counter(
    "payments_api_requests_total",
    "Payment API requests",
    ["method", "path", "status"],
)

API_LATENCY = Histogram(
    "payments_api_request_duration_seconds",
    "Payment API latency, first gateway attempt included",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# External keys are caller-supplied; collapse them to keep label cardinality bounded.
_PATH_PATTERNS = [
    (re.compile(r"^/payments/[^/]+/attempts$"), "/payments/{payment_external_key}/attempts"),
    (re.compile(r"^/payments/[^/]+$"), "/payments/{payment_external_key}"),
]

_UNTRACKED_PATHS = {"/health", "/metrics"}


def normalise_path(path: str) -> str:
    for pattern, replacement in _PATH_PATTERNS:
        if pattern.match(path):
            return pattern.sub(replacement, path)
    return path


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path.rstrip("/") in _UNTRACKED_PATHS:
            return await call_next(request)

        path = normalise_path(request.url.path)
        start = time.perf_counter()
        response = await call_next(request)

        API_REQUESTS.labels(
            method=request.method,
            path=path,
            status=str(response.status_code),
        ).inc()
        API_LATENCY.labels(method=request.method, path=path).observe(time.perf_counter() - start)

        return response
