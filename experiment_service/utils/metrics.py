from prometheus_client import Counter
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

# Prometheus HTTP request counter
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["path", "method", "status"],
)

# Flag verdicts by reason code
FLAG_EVALUATIONS = Counter(
    "flag_evaluations_total",
    "Feature flag evaluations by outcome",
    ["reason"],
)

# Experiment assignments served, split by whether they were already stored
EXPERIMENT_ASSIGNMENTS = Counter(
    "experiment_assignments_total",
    "Experiment variant assignments served to the SDK",
    ["source"],
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to count HTTP requests by route path, method and status."""
    async def dispatch(self, request: Request, call_next):
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            status = getattr(response, "status_code", 500)
            REQUEST_COUNT.labels(
                path=request.url.path,
                method=request.method,
                status=status,
            ).inc()
