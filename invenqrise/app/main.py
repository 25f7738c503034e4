from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
from psycopg_pool import PoolTimeout
import psycopg
import time
import uuid
from datetime import datetime, timezone
from .config import settings
from .routers.auth import router as auth_router
from .routers.stores import router as stores_router
from .routers.users import router as users_router
from .routers.categories import router as categories_router
from .routers.products import router as products_router
from .routers.inventory import router as inventory_router
from .routers.transfers import router as transfers_router
from .routers.billing import router as billing_router
from .routers.sales import router as sales_router
from .routers.customers import router as customers_router
from .routers.campaigns import router as campaigns_router
from .routers.analytics import router as analytics_router
from .routers.reports import router as reports_router
from .routers.ai import router as ai_router
from .deps import require_company_access
from .db import get_admin_conn, close_pools
from .logs import json_log

SERVICE_NAME = "invenqrise-backend"

app = FastAPI(title=f"{settings.brand_name} API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_content(detail: str, exc: Exception) -> dict:
    content = {"detail": detail}
    if settings.is_dev:
        content["error"] = str(exc)
    return content


# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. a malformed uuid in a path or body
    return JSONResponse(status_code=400, content=_error_content("invalid value", exc))


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("invalid reference", exc))


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=409, content=_error_content("conflict", exc))


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("constraint violation", exc))


@app.exception_handler(pg_errors.NumericValueOutOfRange)
def _numeric_value_out_of_range(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("value out of range", exc))


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.is_dev and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = _error_content("internal error", exc)
    content["request_id"] = rid
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=int((time.time() - started) * 1000),
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if not path.startswith("/health"):
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=int((time.time() - started) * 1000),
        )
    return response


# The dashboard SPA runs on a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)

# Everything except auth needs an active company membership.
for _router in (
    stores_router,
    users_router,
    categories_router,
    products_router,
    inventory_router,
    transfers_router,
    billing_router,
    sales_router,
    customers_router,
    campaigns_router,
    analytics_router,
    reports_router,
    ai_router,
):
    app.include_router(_router, dependencies=[Depends(require_company_access)])


def _db_health():
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except (psycopg.Error, PoolTimeout) as exc:
        return False, str(exc)


@app.on_event("startup")
def _startup():
    ok, err = _db_health()
    if ok:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_check_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/")
def root():
    return {"status": "ok", "service": SERVICE_NAME}


def _db_check_response(req: Request, ok_status: str):
    """Shared body of /health and /health/ready; 503 while the database is unreachable."""
    ok, err = _db_health()
    content = {
        "status": ok_status if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": _current_request_id(req),
    }
    if ok:
        return content
    if settings.is_dev:
        content["error"] = err
    return JSONResponse(status_code=503, content=content)


@app.get("/health")
def health(req: Request):
    return _db_check_response(req, "ok")


@app.get("/health/ready")
def health_ready(req: Request):
    return _db_check_response(req, "ready")


@app.get("/health/live")
def health_live(req: Request):
    # Process liveness only; never touches the database.
    return {"status": "ok", "env": settings.env, "service": SERVICE_NAME, "request_id": _current_request_id(req)}


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
