import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import quote

import structlog

from app.config import settings
from app.models.bigquery_models import AllRows, CancelResult, QueryResult, RowPage

from .decoder import normalize_query_response, parse_rows
from .errors import ExportLimitError, QueryStillRunningError
from .transport import AuthenticatedRequester

log = structlog.get_logger()

Sleep = Callable[[float], Awaitable[Any]]


def clamp_max_results(value: Any) -> int:
    """Clamp to [1, max_results_cap]; missing or non-numeric means the default."""
    try:
        n = int(value) if value not in (None, "") else 0
    except (TypeError, ValueError):
        n = 0
    if not n:
        n = settings.default_max_results
    return max(1, min(n, settings.max_results_cap))


def _project_url(project_id: str, *parts: str) -> str:
    path = "/".join(quote(str(p), safe="") for p in (project_id, *parts))
    return f"{settings.bigquery_api_base}/projects/{path}"


class QueryEngine:
    def __init__(self, requester: AuthenticatedRequester, sleep: Sleep = asyncio.sleep):
        self.requester = requester
        self.sleep = sleep

    async def start_query(self, project_id: str, sql: str, max_results: Any = None) -> QueryResult:
        data = await self.requester.request(
            _project_url(project_id, "queries"),
            method="POST",
            body={
                "query": sql,
                "useLegacySql": False,
                "maxResults": clamp_max_results(max_results),
                "timeoutMs": settings.query_timeout_ms,
            },
        )
        result = normalize_query_response(data)
        log.info(
            "bigquery_query_started",
            project_id=project_id,
            job_id=result.job.job_id if result.job else None,
            job_complete=result.job_complete,
        )
        return result

    async def _query_page(
        self,
        project_id: str,
        job_id: str,
        location: str | None = None,
        max_results: Any = None,
        page_token: str | None = None,
        clamp: bool = True,
    ) -> dict[str, Any]:
        params = {
            "maxResults": str(clamp_max_results(max_results) if clamp else int(max_results)),
            "timeoutMs": str(settings.query_timeout_ms),
        }
        if location:
            params["location"] = location
        if page_token:
            params["pageToken"] = page_token
        return await self.requester.request(_project_url(project_id, "queries", job_id), params=params)

    async def get_query_status(
        self,
        project_id: str,
        job_id: str,
        location: str | None = None,
        max_results: Any = None,
        page_token: str | None = None,
    ) -> QueryResult:
        data = await self._query_page(project_id, job_id, location, max_results, page_token)
        return normalize_query_response(data)

    async def cancel_query(self, project_id: str, job_id: str, location: str | None = None) -> CancelResult:
        params = {"location": location} if location else None
        data = await self.requester.request(
            _project_url(project_id, "jobs", job_id, "cancel"),
            method="POST",
            params=params,
            body={},
        )
        job = data.get("job") or None
        state = ((job or {}).get("status") or {}).get("state")
        log.info("bigquery_query_cancelled", project_id=project_id, job_id=job_id, state=state)
        return CancelResult(cancelled=state == "DONE" or bool(data.get("kind")), job=job)

    async def iterate_query_rows(
        self,
        project_id: str,
        job_id: str,
        location: str | None = None,
        page_size: int | None = None,
    ) -> AsyncIterator[RowPage]:
        """
        Walk every result page of a job, waiting while it runs.

        Each response is one of:
          complete, no page token  -> last page, stop
          running, no page token   -> sleep and poll again (bounded)
          page token present       -> fetch the next page immediately
        """
        page_size = page_size or settings.export_page_size
        max_rows = settings.bigquery_export_max_rows
        schema_fields: list[dict[str, Any]] = []
        page_token: str | None = None
        waits = 0

        while True:
            raw = await self._query_page(
                project_id, job_id, location, page_size, page_token, clamp=False
            )

            total_rows = int(raw.get("totalRows") or 0)
            if max_rows > 0 and total_rows > max_rows:
                raise ExportLimitError(max_rows, total_rows)

            fields = (raw.get("schema") or {}).get("fields") or []
            if not schema_fields and fields:
                schema_fields = list(fields)

            raw_rows = raw.get("rows") or []
            rows = parse_rows(schema_fields, raw_rows) if raw_rows else []
            next_token = raw.get("pageToken") or None
            complete = bool(raw.get("jobComplete"))

            if rows or (complete and not next_token):
                yield RowPage(
                    schema_fields=list(schema_fields),
                    rows=rows,
                    row_count=total_rows,
                    page_token_used=page_token,
                    next_page_token=next_token,
                    job_complete=complete,
                )

            page_token = next_token
            if complete and not page_token:
                return

            if not complete and not page_token:
                waits += 1
                if waits > settings.max_poll_waits:
                    log.warning("bigquery_query_still_running", job_id=job_id, waits=waits - 1)
                    raise QueryStillRunningError()
                await self.sleep(settings.poll_interval_seconds)
            else:
                waits = 0

    async def fetch_all_query_rows(
        self, project_id: str, job_id: str, location: str | None = None
    ) -> AllRows:
        schema_fields: list[dict[str, Any]] = []
        rows: list[list[Any]] = []
        row_count = 0

        async for page in self.iterate_query_rows(project_id, job_id, location):
            if not schema_fields and page.schema_fields:
                schema_fields = page.schema_fields
            rows.extend(page.rows)
            if page.row_count > 0:
                row_count = page.row_count

        log.info("bigquery_rows_fetched", job_id=job_id, rows=len(rows))
        return AllRows(schema_fields=schema_fields, rows=rows, row_count=row_count or len(rows))
