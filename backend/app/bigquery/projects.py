import asyncio

import httpx
import structlog

from app.config import settings
from app.models.bigquery_models import Project

from .errors import BigQueryError
from .gcloud import CommandRunner, run_gcloud
from .transport import AuthenticatedRequester
from .types import ProjectCache, TokenInfo

log = structlog.get_logger()


class ProjectLocator:
    """Finds the default project when no credential names one."""

    def __init__(self, http: httpx.AsyncClient, runner: CommandRunner = run_gcloud):
        self.http = http
        self.runner = runner
        self._cache: ProjectCache | None = None

    def clear(self) -> None:
        self._cache = None

    async def gcloud_default_project(self) -> str | None:
        if self._cache and self._cache.value:
            return self._cache.value

        try:
            value = (await self.runner("config", "get-value", "project")).strip()
        except (BigQueryError, OSError) as e:
            log.debug("gcloud_project_lookup_failed", error=str(e))
            return None

        if value and value != "(unset)":
            self._cache = ProjectCache(value=value)
            return value
        return None

    async def metadata_project_id(self) -> str | None:
        try:
            res = await asyncio.wait_for(
                self.http.get(settings.metadata_project_url, headers={"Metadata-Flavor": "Google"}),
                timeout=settings.metadata_timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.HTTPError):
            return None
        if not res.is_success:
            return None
        return res.text.strip() or None

    async def default_project_id(self, token: TokenInfo | None = None) -> str | None:
        if token is not None:
            if token.default_project_id:
                return token.default_project_id
            if token.quota_project_id:
                return token.quota_project_id

        project = await self.gcloud_default_project()
        if project:
            return project
        return await self.metadata_project_id()


async def list_projects(requester: AuthenticatedRequester) -> list[Project]:
    projects: list[Project] = []
    page_token = None

    for _ in range(settings.project_list_max_pages):
        params = {"pageToken": page_token} if page_token else None
        data = await requester.request(f"{settings.bigquery_api_base}/projects", params=params)

        for item in data.get("projects") or []:
            ref = item.get("projectReference") or {}
            projects.append(Project(
                id=item.get("id"),
                friendly_name=item.get("friendlyName") or ref.get("projectId") or item.get("id"),
                numeric_id=item.get("numericId") or None,
            ))

        page_token = data.get("nextPageToken") or None
        if not page_token:
            break

    return projects
