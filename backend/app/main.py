from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.bigquery.decoder import columns_for
from app.bigquery.errors import BigQueryError
from app.bigquery.service import bigquery_service
from app.config import settings
from app.logging_setup import configure_logging
from app.models.bigquery_models import (
    AuthStatus,
    CancelResponse,
    HealthResponse,
    JobRequest,
    ProjectsResponse,
    QueryResponse,
    RowsResponse,
    StartQueryRequest,
)

configure_logging()
log = structlog.get_logger()

# ── Rate limiter ──────────────────────────────────────────────────────────────

def _get_user_identity(request: Request) -> str:
    """
    Identify the caller for rate limiting.
    Priority:
      1. X-Goog-Authenticated-User-Email — set by Google IAP on Cloud Run
      2. X-Forwarded-For first hop — set by the GCP load balancer
      3. direct remote addr fallback (local dev)
    """
    iap_user = request.headers.get("X-Goog-Authenticated-User-Email")
    if iap_user:
        return iap_user
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=_get_user_identity)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await bigquery_service.aclose()


# ── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="BigQuery ADC Backend",
    description="Application Default Credentials + BigQuery query API",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.origins_list,
    allow_credentials=True,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)


# ── Errors ────────────────────────────────────────────────────────────────────

@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "request"
    return JSONResponse(status_code=400, content={"error": f"{field}: {first.get('msg', 'invalid')}"})


@app.exception_handler(BigQueryError)
@app.exception_handler(httpx.HTTPError)
async def _bigquery_error(request: Request, exc: Exception):
    log.error("route_error", method=request.method, path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})


def _dump(model) -> dict:
    return model.model_dump(by_alias=True)


# ── Auth ──────────────────────────────────────────────────────────────────────

@app.get("/api/bigquery/auth/status")
async def auth_status(refresh: str | None = None):
    force = refresh in ("1", "true")
    status: AuthStatus = await bigquery_service.get_auth_status(force)
    return _dump(status)


@app.post("/api/bigquery/auth/refresh")
async def auth_refresh():
    bigquery_service.clear_adc_caches()
    return _dump(await bigquery_service.get_auth_status(True))


@app.get("/api/bigquery/projects")
async def projects():
    return _dump(ProjectsResponse(projects=await bigquery_service.list_projects()))


# ── Queries ───────────────────────────────────────────────────────────────────

@app.post("/api/bigquery/query/start")
@limiter.limit(f"{settings.rate_limit_per_hour}/hour")
async def query_start(request: Request, body: StartQueryRequest):
    result = await bigquery_service.start_query(body.project_id, body.sql, body.max_results)
    log.info("query_start", project_id=body.project_id, job_complete=result.job_complete)
    return _dump(QueryResponse(**result.model_dump()))


@app.get("/api/bigquery/query/status")
async def query_status(
    project_id: str = Query(alias="projectId", min_length=1),
    job_id: str = Query(alias="jobId", min_length=1),
    location: str | None = None,
    max_results: str | None = Query(default=None, alias="maxResults"),
    page_token: str | None = Query(default=None, alias="pageToken"),
):
    result = await bigquery_service.get_query_status(
        project_id, job_id, location, max_results, page_token
    )
    return _dump(QueryResponse(**result.model_dump()))


@app.post("/api/bigquery/query/cancel")
async def query_cancel(body: JobRequest):
    result = await bigquery_service.cancel_query(body.project_id, body.job_id, body.location)
    return _dump(CancelResponse(**result.model_dump()))


@app.post("/api/bigquery/query/rows")
@limiter.limit(f"{settings.rate_limit_per_hour}/hour")
async def query_rows(request: Request, body: JobRequest):
    all_rows = await bigquery_service.fetch_all_query_rows(body.project_id, body.job_id, body.location)
    return _dump(RowsResponse(
        columns=columns_for(all_rows.schema_fields),
        rows=all_rows.rows,
        row_count=all_rows.row_count,
    ))


# ── Health ────────────────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(
        status="healthy",
        service="bigquery-adc-backend",
    )


@app.get("/")
async def root():
    return {
        "service": "bigquery-adc backend",
        "docs": "/docs",
        "health": "/health",
        "auth_status": "/api/bigquery/auth/status",
    }
