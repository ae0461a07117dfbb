import asyncio
import base64
import json

import httpx
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from app.bigquery.errors import CredentialShapeError, SourceUnavailableError, TokenExchangeError
from app.bigquery.minters import (
    AuthorizedUserMinter,
    GcloudCliMinter,
    MetadataServerMinter,
    ServiceAccountMinter,
    base64url_encode,
    build_service_account_assertion,
)
from conftest import METADATA_TOKEN_URL, NOW_MS, TOKEN_URL, FakeGcloud, form_of, json_response

USER_JSON = {
    "type": "authorized_user",
    "client_id": "cid.apps.googleusercontent.com",
    "client_secret": "shh",
    "refresh_token": "1//refresh",
    "quota_project_id": "quota-proj",
}


@pytest.fixture(scope="module")
def rsa_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return key, pem


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def test_base64url_has_no_padding_or_plus_slash():
    encoded = base64url_encode(b"\xfb\xff\xfe")
    assert encoded == "-__-"
    assert "=" not in base64url_encode(b"a")


def test_service_account_assertion_is_signed_rs256(rsa_key):
    key, pem = rsa_key
    assertion = build_service_account_assertion(
        {"client_email": "sa@proj.iam.gserviceaccount.com", "private_key": pem}, now=1000
    )
    header_b64, claims_b64, sig_b64 = assertion.split(".")

    assert json.loads(_b64url_decode(header_b64)) == {"alg": "RS256", "typ": "JWT"}
    claims = json.loads(_b64url_decode(claims_b64))
    assert claims == {
        "iss": "sa@proj.iam.gserviceaccount.com",
        "scope": "https://www.googleapis.com/auth/bigquery",
        "aud": TOKEN_URL,
        "exp": 4600,
        "iat": 1000,
    }
    # raises InvalidSignature if wrong
    key.public_key().verify(
        _b64url_decode(sig_b64),
        f"{header_b64}.{claims_b64}".encode(),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )


@pytest.mark.asyncio
async def test_authorized_user_refresh_grant(http, router, clock):
    router.add("POST", TOKEN_URL, json_response(200, {"access_token": "ya29.user", "expires_in": 1800}))

    token = await AuthorizedUserMinter(USER_JSON, http, clock=clock).mint()

    form = form_of(router.requests[0])
    assert form == {
        "client_id": USER_JSON["client_id"],
        "client_secret": "shh",
        "refresh_token": "1//refresh",
        "grant_type": "refresh_token",
    }
    assert token.access_token == "ya29.user"
    assert token.expires_at == NOW_MS + 1800 * 1000
    assert token.source == "adc_authorized_user"
    assert token.quota_project_id == "quota-proj"
    assert token.principal == USER_JSON["client_id"]


@pytest.mark.asyncio
async def test_authorized_user_missing_fields_fails_before_network(http, router, clock):
    with pytest.raises(CredentialShapeError, match="missing required fields"):
        await AuthorizedUserMinter({"type": "authorized_user", "client_id": "x"}, http, clock=clock).mint()
    assert router.requests == []


@pytest.mark.asyncio
async def test_token_endpoint_error_uses_error_description(http, router, clock):
    router.add("POST", TOKEN_URL, json_response(400, {
        "error": "invalid_grant",
        "error_description": "Token has been expired or revoked.",
    }))
    with pytest.raises(TokenExchangeError) as exc:
        await AuthorizedUserMinter(USER_JSON, http, clock=clock).mint()
    assert str(exc.value) == "ADC token refresh failed: Token has been expired or revoked."
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_token_endpoint_error_falls_back_to_status_text(http, router, clock):
    router.add("POST", TOKEN_URL, lambda request: httpx.Response(503, text="down"))
    with pytest.raises(TokenExchangeError, match="ADC token refresh failed: Service Unavailable"):
        await AuthorizedUserMinter(USER_JSON, http, clock=clock).mint()


@pytest.mark.asyncio
async def test_service_account_jwt_bearer_exchange(http, router, clock, rsa_key):
    _, pem = rsa_key
    router.add("POST", TOKEN_URL, json_response(200, {"access_token": "ya29.sa"}))
    sa_json = {
        "type": "service_account",
        "client_email": "sa@proj.iam.gserviceaccount.com",
        "private_key": pem,
        "project_id": "sa-proj",
    }

    token = await ServiceAccountMinter(sa_json, http, clock=clock).mint()

    form = form_of(router.requests[0])
    assert form["grant_type"] == "urn:ietf:params:oauth:grant-type:jwt-bearer"
    assert form["assertion"].count(".") == 2
    assert token.access_token == "ya29.sa"
    assert token.expires_at == NOW_MS + 3600 * 1000
    assert token.quota_project_id == "sa-proj"
    assert token.principal == "sa@proj.iam.gserviceaccount.com"


@pytest.mark.asyncio
async def test_service_account_missing_key(http, clock):
    with pytest.raises(CredentialShapeError, match="client_email/private_key"):
        await ServiceAccountMinter({"client_email": "sa@x"}, http, clock=clock).mint()


@pytest.mark.asyncio
async def test_metadata_server_sends_flavor_header(http, router, clock):
    router.add("GET", METADATA_TOKEN_URL, json_response(200, {"access_token": "ya29.gce", "expires_in": 3599}))

    token = await MetadataServerMinter(http, clock=clock).mint()

    assert router.requests[0].headers["Metadata-Flavor"] == "Google"
    assert token.source == "metadata_server"
    assert token.principal == "metadata-default-service-account"
    assert token.quota_project_id is None


@pytest.mark.asyncio
async def test_metadata_server_non_2xx_is_source_unavailable(http, router, clock):
    router.add("GET", METADATA_TOKEN_URL, json_response(404, {}))
    with pytest.raises(SourceUnavailableError, match=r"Metadata token request failed \(404\)"):
        await MetadataServerMinter(http, clock=clock).mint()


@pytest.mark.asyncio
async def test_metadata_server_unreachable_is_source_unavailable(http, clock):
    # the router has no route, so the transport raises ConnectError
    with pytest.raises(SourceUnavailableError):
        await MetadataServerMinter(http, clock=clock).mint()


@pytest.mark.asyncio
async def test_metadata_server_hang_is_cut_off_by_timeout(clock):
    async def hang(request):
        await asyncio.sleep(10)
        return httpx.Response(200, json={"access_token": "late"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(hang)) as client:
        with pytest.raises(SourceUnavailableError, match="timed out"):
            await MetadataServerMinter(client, clock=clock, timeout=0.05).mint()


@pytest.mark.asyncio
async def test_gcloud_cli_token_gets_fixed_45_minute_expiry(clock):
    gcloud = FakeGcloud({"auth application-default print-access-token": "ya29.cli\n"})

    token = await GcloudCliMinter(gcloud, clock=clock).mint()

    assert token.access_token == "ya29.cli"
    assert token.expires_at == NOW_MS + 45 * 60 * 1000
    assert token.source == "gcloud_cli"
    assert token.principal == "gcloud-application-default"


@pytest.mark.asyncio
async def test_gcloud_cli_empty_output(clock):
    gcloud = FakeGcloud({"auth application-default print-access-token": "  \n"})
    with pytest.raises(SourceUnavailableError, match="empty access token"):
        await GcloudCliMinter(gcloud, clock=clock).mint()
