from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Engine results ────────────────────────────────────────────────────────────

class Column(CamelModel):
    name: str | None
    type: str | None


class QueryJobReference(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str | None
    project_id: str | None
    location: str | None = None


class QueryResult(CamelModel):
    job_complete: bool
    job: QueryJobReference | None = None
    columns: list[Column] = Field(default_factory=list)
    rows: list[list[Any]] = Field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    page_token: str | None = None
    total_bytes_processed: str | None = None
    cache_hit: bool = False


class CancelResult(CamelModel):
    cancelled: bool
    job: dict[str, Any] | None = None


class RowPage(CamelModel):
    schema_fields: list[dict[str, Any]]
    rows: list[list[Any]]
    row_count: int
    page_token_used: str | None = None
    next_page_token: str | None = None
    job_complete: bool


class AllRows(CamelModel):
    schema_fields: list[dict[str, Any]]
    rows: list[list[Any]]
    row_count: int


class Project(CamelModel):
    id: str | None
    friendly_name: str | None
    numeric_id: str | None = None


class AuthStatus(CamelModel):
    configured: bool = True
    connected: bool
    auth_mode: str = "adc"
    source: str | None = None
    credential_source: str | None = None
    principal: str | None = None
    default_project_id: str | None = None
    quota_project_id: str | None = None
    expires_at: int | None = None
    message: str


# ── HTTP requests / responses ─────────────────────────────────────────────────

class StartQueryRequest(CamelModel):
    project_id: str = Field(min_length=1)
    sql: str = Field(min_length=1)
    max_results: int | None = None


class JobRequest(CamelModel):
    project_id: str = Field(min_length=1)
    job_id: str = Field(min_length=1)
    location: str | None = None


class QueryResponse(QueryResult):
    source: str = "bigquery"


class CancelResponse(CancelResult):
    success: bool = True


class RowsResponse(CamelModel):
    columns: list[Column]
    rows: list[list[Any]]
    row_count: int


class ProjectsResponse(CamelModel):
    projects: list[Project]


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str = "1.0.0"
