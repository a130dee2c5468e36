"""Shared pytest fixtures: a fake upstream web, fake DNS, and app wiring."""
import socket
from io import BytesIO

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from qc_gateway.app import app
from qc_gateway.fetcher import ResilientFetcher, SafeClient, create_http_client, get_safe_client
from qc_gateway.url_safety import UrlValidator

PUBLIC_ADDRESS = "93.184.216.34"


class FakeUpstream:
    """Answers outbound requests from canned responses and records every call.

    Each URL maps to a list of steps; a step is a dict of httpx.Response
    kwargs, an exception to raise, or a callable taking the request. Steps
    are consumed in order and the last one repeats.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, url, *steps):
        self.routes[url] = list(steps)

    def handler(self, request):
        self.calls.append(request)
        steps = self.routes.get(str(request.url))
        if not steps:
            return httpx.Response(404)
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        return httpx.Response(**step)


class FakeResolver:
    """DNS stand-in: every host is public unless told otherwise."""

    def __init__(self):
        self.addresses = {}
        self.calls = []

    async def __call__(self, host, port):
        self.calls.append(host)
        result = self.addresses.get(host, [PUBLIC_ADDRESS])
        if isinstance(result, Exception):
            raise result
        return result


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_image_bytes(size=(10, 10), color=(200, 30, 30), fmt="PNG") -> bytes:
    """Encode a solid-colour image."""
    img = Image.new("RGB", size, color=color)
    output = BytesIO()
    img.save(output, format=fmt)
    return output.getvalue()


def build_safe_client(http, resolver, sleeps, **fetcher_kwargs) -> SafeClient:
    fetcher = ResilientFetcher(http, sleep=sleeps, **fetcher_kwargs)
    return SafeClient(UrlValidator(resolver=resolver, blocked_domains=()), fetcher)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
async def http(upstream):
    """httpx client wired to the fake upstream."""
    async with create_http_client(httpx.MockTransport(upstream.handler)) as client:
        yield client


@pytest.fixture
async def safe_client(http, resolver, sleeps):
    return build_safe_client(http, resolver, sleeps)


@pytest.fixture
def test_client(upstream, resolver, sleeps):
    """Create test client whose outbound traffic goes to the fake upstream."""
    async def override_get_safe_client():
        async with create_http_client(httpx.MockTransport(upstream.handler)) as http:
            yield build_safe_client(http, resolver, sleeps)

    app.dependency_overrides[get_safe_client] = override_get_safe_client
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def dns_failure():
    return socket.gaierror(socket.EAI_NONAME, "Name or service not known")
