"""
Bidplan Takeoff API
FastAPI backend for plan scale calibration, measurement reconciliation and
job-level takeoff aggregation. Async PostgreSQL via SQLAlchemy, JWT auth,
Redis/Celery for batch plan analysis.
"""
import os
import sys
import time
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from dotenv import load_dotenv

load_dotenv()

from bidplan.services.logging_config import setup_logging
from bidplan.services.middleware import RequestTimingMiddleware
from bidplan.services.perf_monitor import tracker as perf_tracker
from bidplan.services.data_access import DataAccessError
from bidplan.services.scale_engine import InvalidCalibrationError
from bidplan.services.scale_store import InvalidPageError

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("bidplan-api")

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var} — running in dev mode")
for var in ["CELERY_BROKER_URL", "LLM_PRIMARY_MODEL"]:
    if not os.getenv(var):
        logger.info(f"Optional env var not set: {var}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from bidplan.db import init_db
    await init_db()
    yield


app = FastAPI(
    title="Bidplan Takeoff API",
    version="1.0.0",
    description="Plan scale calibration, measurements and job takeoff aggregation",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
)
app.add_middleware(SecurityHeadersMiddleware)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)


# ---------------------------------------------------------------------------
# Domain errors that escape a route
# ---------------------------------------------------------------------------
@app.exception_handler(InvalidCalibrationError)
@app.exception_handler(InvalidPageError)
async def invalid_input_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(DataAccessError)
async def data_access_handler(request: Request, exc: DataAccessError):
    logger.error(f"Storage error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": f"Storage error: {exc}"})


# Routers
from bidplan.api.scale_routes import router as scale_router
from bidplan.api.measurement_routes import router as measurement_router, tag_router
from bidplan.api.takeoff_routes import router as takeoff_router, analysis_router

app.include_router(scale_router)
app.include_router(measurement_router)
app.include_router(tag_router)
app.include_router(takeoff_router)
app.include_router(analysis_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "db_configured": bool(os.getenv("DATABASE_URL")),
        "llm_primary": os.getenv("LLM_PRIMARY_MODEL", "gpt-4o"),
        "broker_configured": bool(os.getenv("CELERY_BROKER_URL")),
    }


@app.get("/metrics")
async def metrics():
    """
    Store-operation metrics from the in-process PerformanceTracker: call
    counts, average durations, errors and partial failures per operation.
    """
    uptime_seconds = round(time.monotonic() - _PROCESS_START, 1)

    memory_mb: float = 0.0
    try:
        import resource  # Unix only
        usage = resource.getrusage(resource.RUSAGE_SELF)
        # ru_maxrss is in kilobytes on Linux, bytes on macOS
        if sys.platform == "darwin":
            memory_mb = round(usage.ru_maxrss / (1024 * 1024), 2)
        else:
            memory_mb = round(usage.ru_maxrss / 1024, 2)
    except ImportError:
        memory_mb = 0.0

    return {
        "uptime_seconds": uptime_seconds,
        "memory_usage_mb": memory_mb,
        **perf_tracker.get_metrics(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("bidplan.main:app", host="0.0.0.0", port=8000, reload=True)
