import time
import logging
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from experiment_service.config import settings
from experiment_service.deps import engine
from experiment_service.models import Base
from experiment_service.routers import health as health_router
from experiment_service.routers import evaluate as evaluate_router
from experiment_service.routers import sdk as sdk_router
from experiment_service.utils.logging import setup_logging, get_request_context
from experiment_service.utils import metrics

# ---------- Logging ----------
setup_logging(settings.log_level)
logger = logging.getLogger("experiment-service")

# ---------- FastAPI App ----------
app = FastAPI(title="Experiment Evaluation Service", version="0.1.0")

# ---------- Middleware ----------
app.add_middleware(metrics.MetricsMiddleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Structured logging for all requests/responses."""
    start_time = time.time()
    try:
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000

        # Only log errors with duration
        if response.status_code >= 400:
            ctx = get_request_context(request, duration_ms=duration_ms)
            ctx["status"] = response.status_code
            logger.info("Request completed with error", extra=ctx)
        return response
    except Exception:
        duration_ms = (time.time() - start_time) * 1000
        ctx = get_request_context(request, duration_ms=duration_ms)
        logger.exception("Unhandled exception during request", extra=ctx)
        raise


# ---------- Error shape: {"error": "..."} ----------
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error",
        exc_info=(type(exc), exc, exc.__traceback__),
        extra=get_request_context(request),
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ---------- Startup Event ----------
@app.on_event("startup")
async def on_startup():
    """Create DB tables for development/demo."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------- Routers ----------
app.include_router(health_router.router)
app.include_router(evaluate_router.router)
app.include_router(sdk_router.router)


# ---------- Prometheus Metrics Endpoint ----------
@app.get("/metrics")
async def metrics_endpoint():
    """Expose Prometheus metrics."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
