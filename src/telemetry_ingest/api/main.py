from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from prometheus_client import Counter, Histogram
from telemetry_ingest.api.admin import router as admin_router
from telemetry_ingest.api.telemetry import router as telemetry_router
from telemetry_ingest.config import get_settings
from telemetry_ingest.errors import PermissionDenied, StorageError, ValidationError
from telemetry_ingest.infrastructure.db import healthcheck
from telemetry_ingest.infrastructure.metrics import registry
from telemetry_ingest.security.rls import apply_rls_policies
import logging
import json
import subprocess
import time
import uuid

REQUESTS = Counter('api_requests_total', 'API Requests', ['endpoint'], registry=registry)
LATENCY = Histogram('api_request_latency_seconds', 'API request latency', ['endpoint'], registry=registry, buckets=(0.01,0.05,0.1,0.25,0.5,1,2,5))

app = FastAPI(title="Telemetry Ingestion API", version="0.1.0")
app.include_router(telemetry_router)
app.include_router(admin_router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"error": "validation_error", "details": exc.errors})


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied):
    # never echo table names back to an unauthorized caller
    return JSONResponse(status_code=403, content={"error": "permission_denied"})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").error(json.dumps({
        "event": "storage_error",
        "path": request.url.path,
        "detail": str(exc),
        "correlation_id": cid,
        "type": exc.__class__.__name__,
    }))
    return JSONResponse(status_code=503, content={"error": "storage_unavailable", "correlation_id": cid},
                        headers={"Retry-After": "5"})


@app.middleware("http")
async def metrics_and_correlation(request: Request, call_next):
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    endpoint = request.url.path
    start = time.perf_counter()
    response = await call_next(request)
    REQUESTS.labels(endpoint=endpoint).inc()
    LATENCY.labels(endpoint=endpoint).observe(time.perf_counter() - start)
    response.headers["X-Correlation-ID"] = request.state.correlation_id
    response.headers.setdefault('X-Content-Type-Options', 'nosniff')
    response.headers.setdefault('Cache-Control', 'no-store')
    return response


def configure_logging():
    settings = get_settings()
    logger = logging.getLogger("app")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.addHandler(handler)
    logger.setLevel(settings.log_level.upper())
    logging.getLogger("telemetry_ingest").setLevel(settings.log_level.upper())


@app.on_event("startup")
def startup():
    settings = get_settings()
    configure_logging()
    # If configured, attempt Alembic upgrade (idempotent) for convenience in local dev
    if settings.migrate_on_start:
        try:
            subprocess.run(["alembic", "upgrade", "head"], check=True)
        except (OSError, subprocess.CalledProcessError):
            logging.getLogger("app").warning(json.dumps({"event": "migration_failed", "detail": "startup alembic upgrade failed"}))
    apply_rls_policies()


@app.get("/health")
def health():
    ok = healthcheck()
    return {"status": "ok" if ok else "degraded"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
