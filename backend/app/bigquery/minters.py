"""
Token minters: each turns one credential source into a short-lived bearer
token. All four return the same TokenInfo shape so the resolver can walk them
in order without caring which one succeeded.
"""

import asyncio
import base64
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx
import structlog
from google.auth import crypt

from app.config import settings

from .errors import CredentialShapeError, SourceUnavailableError, TokenExchangeError
from .gcloud import CommandRunner, run_gcloud
from .types import TokenInfo

log = structlog.get_logger()

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DEFAULT_EXPIRES_IN = 3600

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def base64url_encode(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def build_service_account_assertion(sa_json: dict[str, Any], now: int | None = None) -> str:
    """Build and RS256-sign the JWT exchanged for a service-account token."""
    iat = int(time.time()) if now is None else now
    header = {"alg": "RS256", "typ": "JWT"}
    claims = {
        "iss": sa_json["client_email"],
        "scope": " ".join(settings.scopes_list),
        "aud": settings.google_token_url,
        "exp": iat + 3600,
        "iat": iat,
    }
    signing_input = (
        f"{base64url_encode(json.dumps(header, separators=(',', ':')))}"
        f".{base64url_encode(json.dumps(claims, separators=(',', ':')))}"
    )
    signer = crypt.RSASigner.from_string(sa_json["private_key"])
    signature = signer.sign(signing_input.encode("ascii"))
    return f"{signing_input}.{base64url_encode(signature)}"


def _expires_at(clock: Clock, expires_in: Any) -> int:
    try:
        seconds = float(expires_in) if expires_in else DEFAULT_EXPIRES_IN
    except (TypeError, ValueError):
        seconds = DEFAULT_EXPIRES_IN
    if seconds <= 0:
        seconds = DEFAULT_EXPIRES_IN
    return clock() + int(seconds * 1000)


async def request_token(
    http: httpx.AsyncClient, params: dict[str, str], error_prefix: str
) -> dict[str, Any]:
    res = await http.post(
        settings.google_token_url,
        data=params,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    try:
        body = res.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    if not res.is_success:
        msg = body.get("error_description") or body.get("error") or res.reason_phrase
        raise TokenExchangeError(f"{error_prefix}: {msg}", status_code=res.status_code)

    if not body.get("access_token"):
        raise TokenExchangeError(f"{error_prefix}: response did not include an access_token")
    return body


class TokenMinter(ABC):
    name: str

    @abstractmethod
    async def mint(self) -> TokenInfo:
        """Return a fresh token or raise a BigQueryError describing why not."""


class AuthorizedUserMinter(TokenMinter):
    name = "adc_authorized_user"

    def __init__(self, adc_json: dict[str, Any], http: httpx.AsyncClient, clock: Clock = now_ms):
        self.adc_json = adc_json
        self.http = http
        self.clock = clock

    async def mint(self) -> TokenInfo:
        j = self.adc_json
        if not j.get("client_id") or not j.get("client_secret") or not j.get("refresh_token"):
            raise CredentialShapeError("ADC authorized_user file is missing required fields")

        token = await request_token(
            self.http,
            {
                "client_id": j["client_id"],
                "client_secret": j["client_secret"],
                "refresh_token": j["refresh_token"],
                "grant_type": "refresh_token",
            },
            "ADC token refresh failed",
        )
        return TokenInfo(
            access_token=token["access_token"],
            expires_at=_expires_at(self.clock, token.get("expires_in")),
            source="adc_authorized_user",
            quota_project_id=j.get("quota_project_id") or None,
            principal=j.get("client_id") or None,
        )


class ServiceAccountMinter(TokenMinter):
    name = "adc_service_account"

    def __init__(self, adc_json: dict[str, Any], http: httpx.AsyncClient, clock: Clock = now_ms):
        self.adc_json = adc_json
        self.http = http
        self.clock = clock

    async def mint(self) -> TokenInfo:
        j = self.adc_json
        if not j.get("client_email") or not j.get("private_key"):
            raise CredentialShapeError("Service account JSON is missing client_email/private_key")

        assertion = build_service_account_assertion(j, now=self.clock() // 1000)
        token = await request_token(
            self.http,
            {"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            "Service account token exchange failed",
        )
        return TokenInfo(
            access_token=token["access_token"],
            expires_at=_expires_at(self.clock, token.get("expires_in")),
            source="adc_service_account",
            quota_project_id=j.get("project_id") or None,
            principal=j.get("client_email") or None,
        )


class MetadataServerMinter(TokenMinter):
    name = "metadata_server"

    def __init__(self, http: httpx.AsyncClient, clock: Clock = now_ms, timeout: float | None = None):
        self.http = http
        self.clock = clock
        self.timeout = settings.metadata_timeout_seconds if timeout is None else timeout

    async def mint(self) -> TokenInfo:
        try:
            res = await asyncio.wait_for(
                self.http.get(settings.metadata_token_url, headers={"Metadata-Flavor": "Google"}),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise SourceUnavailableError(f"Metadata token request timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            raise SourceUnavailableError(f"Metadata token request failed ({type(e).__name__})")

        if not res.is_success:
            raise SourceUnavailableError(f"Metadata token request failed ({res.status_code})")

        try:
            body = res.json()
        except ValueError:
            raise SourceUnavailableError("Metadata token response was not JSON")
        if not isinstance(body, dict) or not body.get("access_token"):
            raise SourceUnavailableError("Metadata token response did not include an access_token")

        return TokenInfo(
            access_token=body["access_token"],
            expires_at=_expires_at(self.clock, body.get("expires_in")),
            source="metadata_server",
            principal="metadata-default-service-account",
        )


class GcloudCliMinter(TokenMinter):
    name = "gcloud_cli"

    def __init__(self, runner: CommandRunner = run_gcloud, clock: Clock = now_ms):
        self.runner = runner
        self.clock = clock

    async def mint(self) -> TokenInfo:
        stdout = await self.runner("auth", "application-default", "print-access-token")
        access_token = (stdout or "").strip()
        if not access_token:
            raise SourceUnavailableError("gcloud returned empty access token")

        # gcloud does not report an expiry
        return TokenInfo(
            access_token=access_token,
            expires_at=self.clock() + settings.gcloud_token_ttl_seconds * 1000,
            source="gcloud_cli",
            principal="gcloud-application-default",
        )
