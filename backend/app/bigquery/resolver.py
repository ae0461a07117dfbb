import asyncio
import dataclasses
from typing import Awaitable, Callable

import httpx
import structlog

from app.config import settings

from .credentials import load_adc_credentials
from .errors import AdcUnavailableError
from .gcloud import CommandRunner, run_gcloud
from .minters import (
    AuthorizedUserMinter,
    Clock,
    GcloudCliMinter,
    MetadataServerMinter,
    ServiceAccountMinter,
    TokenMinter,
    now_ms,
)
from .types import AdcCredential, TokenInfo

log = structlog.get_logger()

CredentialLoader = Callable[[], Awaitable[AdcCredential | None]]


class CredentialCache:
    """Holds at most one TokenInfo. Writes replace the whole value."""

    def __init__(self):
        self._token: TokenInfo | None = None

    def get(self) -> TokenInfo | None:
        return self._token

    def replace(self, token: TokenInfo) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None

    def fresh(self, now: int, skew_ms: int) -> TokenInfo | None:
        token = self._token
        if token and token.access_token and token.expires_at > now + skew_ms:
            return token
        return None


class TokenResolver:
    """
    Walks the credential sources in a fixed order and caches the first token
    that comes back:

      1. ADC file (authorized_user or service_account)
      2. GCE metadata server
      3. `gcloud auth application-default print-access-token`

    Failures are collected and only surface, joined with " | ", when every
    source has failed. Concurrent callers on a cold cache share one in-flight
    resolution.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        cache: CredentialCache | None = None,
        load_credentials: CredentialLoader = load_adc_credentials,
        runner: CommandRunner = run_gcloud,
        clock: Clock = now_ms,
        skew_seconds: int | None = None,
    ):
        self.http = http
        self.cache = cache if cache is not None else CredentialCache()
        self.load_credentials = load_credentials
        self.runner = runner
        self.clock = clock
        skew = settings.access_token_skew_seconds if skew_seconds is None else skew_seconds
        self.skew_ms = skew * 1000
        self._inflight: asyncio.Future[TokenInfo] | None = None

    def invalidate(self) -> None:
        self.cache.clear()

    async def resolve(self, force_refresh: bool = False) -> TokenInfo:
        if not force_refresh:
            cached = self.cache.fresh(self.clock(), self.skew_ms)
            if cached is not None:
                return cached

        if self._inflight is None:
            task = asyncio.ensure_future(self._resolve_chain())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Future) -> None:
        if self._inflight is task:
            self._inflight = None
        # mark the failure retrieved even when every waiter was cancelled
        if not task.cancelled():
            task.exception()

    def _adc_minter(self, adc: AdcCredential) -> TokenMinter | None:
        if adc.type == "authorized_user":
            return AuthorizedUserMinter(adc.json, self.http, clock=self.clock)
        if adc.type == "service_account":
            return ServiceAccountMinter(adc.json, self.http, clock=self.clock)
        return None

    @staticmethod
    def _annotate(token: TokenInfo, adc: AdcCredential) -> TokenInfo:
        if adc.type == "authorized_user":
            default_project = adc.json.get("quota_project_id") or None
        else:
            default_project = adc.json.get("project_id") or None
        return dataclasses.replace(
            token,
            credential_source=adc.source,
            file_path=adc.file_path,
            default_project_id=default_project,
        )

    async def _resolve_chain(self) -> TokenInfo:
        errors: list[str] = []
        minters: list[TokenMinter] = []
        adc: AdcCredential | None = None

        try:
            adc = await self.load_credentials()
        except Exception as e:
            errors.append(str(e) or type(e).__name__)
            log.warning("adc_file_unreadable", error=type(e).__name__)

        # a file holding JSON null counts as no credential file
        if adc is not None and adc.json is None:
            adc = None

        if adc is not None:
            adc_minter = self._adc_minter(adc)
            if adc_minter is None:
                errors.append(f"Unsupported ADC credential type: {adc.type}")
            else:
                minters.append(adc_minter)

        minters.append(MetadataServerMinter(self.http, clock=self.clock))
        minters.append(GcloudCliMinter(self.runner, clock=self.clock))

        for minter in minters:
            try:
                token = await minter.mint()
            except Exception as e:
                errors.append(str(e) or type(e).__name__)
                log.warning("adc_source_failed", source=minter.name, error=str(e))
                continue

            if adc is not None and token.source in ("adc_authorized_user", "adc_service_account"):
                token = self._annotate(token, adc)
            self.cache.replace(token)
            log.info("adc_token_resolved", source=token.source, principal=token.principal)
            return token

        log.error("adc_unavailable", attempts=len(errors))
        raise AdcUnavailableError(errors)
