from typing import Any

import httpx
import structlog

from .errors import BigQueryApiError
from .resolver import TokenResolver

log = structlog.get_logger()


def _error_message(res: httpx.Response) -> str:
    try:
        body = res.json()
    except ValueError:
        body = {}
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        msg = err.get("message")
    else:
        msg = err
    return msg or res.reason_phrase or "BigQuery request failed"


class AuthenticatedRequester:
    """
    Sends BigQuery REST calls with the resolved bearer token.

    A 401 clears the cached token and the request is retried once with a
    forced refresh. A second 401 is raised like any other non-2xx.
    """

    def __init__(self, http: httpx.AsyncClient, resolver: TokenResolver):
        self.http = http
        self.resolver = resolver

    async def request(
        self,
        url: str,
        method: str = "GET",
        params: dict[str, str] | None = None,
        body: Any = None,
        headers: dict[str, str] | None = None,
        force_refresh_token: bool = False,
    ) -> dict[str, Any]:
        token = await self.resolver.resolve(force_refresh_token)

        async def send(access_token: str, quota_project: str | None) -> httpx.Response:
            h = {
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            }
            if quota_project:
                h["X-Goog-User-Project"] = quota_project
            h.update(headers or {})
            return await self.http.request(
                method,
                url,
                params=params,
                json=body,
                headers=h,
            )

        res = await send(token.access_token, token.quota_project_id)
        if res.status_code == 401:
            log.info("bigquery_unauthorized_retry", url=url, source=token.source)
            self.resolver.invalidate()
            token = await self.resolver.resolve(True)
            res = await send(token.access_token, token.quota_project_id)

        if not res.is_success:
            raise BigQueryApiError(_error_message(res), status_code=res.status_code)

        try:
            data = res.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {}
