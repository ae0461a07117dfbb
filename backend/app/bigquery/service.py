import asyncio
from typing import Any, AsyncIterator

import httpx
import structlog

from app.models.bigquery_models import (
    AllRows,
    AuthStatus,
    CancelResult,
    Project,
    QueryResult,
    RowPage,
)

from .credentials import load_adc_credentials
from .gcloud import CommandRunner, run_gcloud
from .minters import Clock, now_ms
from .projects import ProjectLocator, list_projects
from .queries import QueryEngine, Sleep
from .resolver import CredentialCache, CredentialLoader, TokenResolver
from .transport import AuthenticatedRequester

log = structlog.get_logger()


class BigQueryService:
    """
    Entry point used by the HTTP layer. Owns the shared httpx client, the
    token cache and the project cache; everything else is wired from those.
    """

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        runner: CommandRunner = run_gcloud,
        clock: Clock = now_ms,
        sleep: Sleep = asyncio.sleep,
        load_credentials: CredentialLoader = load_adc_credentials,
    ):
        self.http = http or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        self.cache = CredentialCache()
        self.resolver = TokenResolver(
            self.http,
            cache=self.cache,
            load_credentials=load_credentials,
            runner=runner,
            clock=clock,
        )
        self.projects = ProjectLocator(self.http, runner=runner)
        self.requester = AuthenticatedRequester(self.http, self.resolver)
        self.queries = QueryEngine(self.requester, sleep=sleep)

    async def aclose(self) -> None:
        await self.http.aclose()

    def clear_adc_caches(self) -> None:
        self.cache.clear()
        self.projects.clear()

    async def get_auth_status(self, force_refresh: bool = False) -> AuthStatus:
        try:
            token = await self.resolver.resolve(force_refresh)
            project = await self.projects.default_project_id(token)
        except Exception as e:
            log.warning("bigquery_auth_status_failed", error=str(e))
            return AuthStatus(connected=False, message=str(e))

        if project:
            message = f"ADC ready (project: {project})"
        else:
            message = "ADC ready (set a default project with gcloud config set project <project-id>)"
        return AuthStatus(
            connected=True,
            source=token.source,
            credential_source=token.credential_source,
            principal=token.principal,
            default_project_id=project,
            quota_project_id=token.quota_project_id,
            expires_at=token.expires_at,
            message=message,
        )

    async def get_default_project_id(self) -> str | None:
        token = await self.resolver.resolve()
        return await self.projects.default_project_id(token)

    async def request_bigquery(self, url: str, **kwargs: Any) -> dict[str, Any]:
        return await self.requester.request(url, **kwargs)

    async def list_projects(self) -> list[Project]:
        return await list_projects(self.requester)

    async def start_query(self, project_id: str, sql: str, max_results: Any = None) -> QueryResult:
        return await self.queries.start_query(project_id, sql, max_results)

    async def get_query_status(
        self,
        project_id: str,
        job_id: str,
        location: str | None = None,
        max_results: Any = None,
        page_token: str | None = None,
    ) -> QueryResult:
        return await self.queries.get_query_status(project_id, job_id, location, max_results, page_token)

    async def cancel_query(self, project_id: str, job_id: str, location: str | None = None) -> CancelResult:
        return await self.queries.cancel_query(project_id, job_id, location)

    def iterate_query_rows(
        self, project_id: str, job_id: str, location: str | None = None
    ) -> AsyncIterator[RowPage]:
        return self.queries.iterate_query_rows(project_id, job_id, location)

    async def fetch_all_query_rows(
        self, project_id: str, job_id: str, location: str | None = None
    ) -> AllRows:
        return await self.queries.fetch_all_query_rows(project_id, job_id, location)


bigquery_service = BigQueryService()
