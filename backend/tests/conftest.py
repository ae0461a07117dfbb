import json
from typing import Callable

import httpx
import pytest
import pytest_asyncio

from app.bigquery.errors import SourceUnavailableError
from app.config import settings

NOW_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = NOW_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeGcloud:
    """Stands in for the gcloud binary. `outputs` maps the joined args to stdout."""

    def __init__(self, outputs: dict[str, str] | None = None):
        self.outputs = outputs or {}
        self.calls: list[tuple[str, ...]] = []

    async def __call__(self, *args: str) -> str:
        self.calls.append(args)
        key = " ".join(args)
        if key not in self.outputs:
            raise SourceUnavailableError("gcloud CLI not found on PATH")
        return self.outputs[key]


class Router:
    """Minimal request router for httpx.MockTransport, records every request."""

    def __init__(self):
        self.routes: list[tuple[str, str, Callable[[httpx.Request], httpx.Response]]] = []
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url_prefix: str, handler) -> None:
        self.routes.append((method, url_prefix, handler))

    def calls_to(self, url_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(url_prefix)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, prefix, handler in self.routes:
            if request.method == method and str(request.url).startswith(prefix):
                return handler(request)
        raise httpx.ConnectError(f"no route for {request.method} {request.url}", request=request)


def json_response(status: int, body) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(status, json=body)


def form_of(request: httpx.Request) -> dict[str, str]:
    return dict(httpx.QueryParams(request.content.decode()))


def body_of(request: httpx.Request) -> dict:
    return json.loads(request.content.decode()) if request.content else {}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gcloud():
    return FakeGcloud()


@pytest.fixture
def router():
    return Router()


@pytest_asyncio.fixture
async def http(router):
    async with httpx.AsyncClient(transport=httpx.MockTransport(router)) as client:
        yield client


@pytest.fixture
def adc_file(tmp_path, monkeypatch):
    """Write an ADC JSON file and point GOOGLE_APPLICATION_CREDENTIALS at it."""

    def write(payload) -> str:
        path = tmp_path / "adc.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        monkeypatch.setenv("GOOGLE_APPLICATION_CREDENTIALS", str(path))
        return str(path)

    return write


@pytest.fixture(autouse=True)
def isolated_adc(tmp_path, monkeypatch):
    """No test may see the developer's real ADC file."""
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "appdata"))


TOKEN_URL = settings.google_token_url
METADATA_TOKEN_URL = settings.metadata_token_url
METADATA_PROJECT_URL = settings.metadata_project_url
API = settings.bigquery_api_base
