"""Tests for the retrying fetcher and the redirect-guarding client."""
import asyncio

import httpx
import pytest

from conftest import build_safe_client
from qc_gateway.errors import FetchFailed, SsrfRejected
from qc_gateway.fetcher import DOCUMENT, IMAGE, ResilientFetcher
from qc_gateway.models import Operation, TargetRequest

PAGE = "https://shop.example.com/products/42"


@pytest.fixture
def fetcher(http, sleeps):
    return ResilientFetcher(http, sleep=sleeps)


async def test_retries_transient_status_until_success(fetcher, upstream, sleeps):
    """503, 503, 200 succeeds with exactly three recorded attempts."""
    upstream.add(
        PAGE,
        {"status_code": 503},
        {"status_code": 503},
        {"status_code": 200, "content": b"<html></html>"},
    )
    result = await fetcher.fetch(PAGE)
    assert result.response.status_code == 200
    assert result.response.content == b"<html></html>"
    assert len(result.attempts) == 3
    assert [a.outcome for a in result.attempts] == ["http_503", "http_503", "http_200"]
    assert sleeps.delays == [1.0, 2.0]


async def test_permanent_status_fails_immediately(fetcher, upstream, sleeps):
    """404 fails on the first attempt without any backoff."""
    upstream.add(PAGE, {"status_code": 404})
    with pytest.raises(FetchFailed) as exc_info:
        await fetcher.fetch(PAGE)
    assert exc_info.value.last_status == 404
    assert len(exc_info.value.attempts) == 1
    assert len(upstream.calls) == 1
    assert sleeps.delays == []


@pytest.mark.parametrize("status", [400, 401, 410, 501])
async def test_other_statuses_are_not_retried(fetcher, upstream, status):
    upstream.add(PAGE, {"status_code": status})
    with pytest.raises(FetchFailed):
        await fetcher.fetch(PAGE)
    assert len(upstream.calls) == 1


@pytest.mark.parametrize("status", [403, 429, 500, 502, 503, 504])
async def test_retriable_statuses_exhaust_attempts(fetcher, upstream, status):
    upstream.add(PAGE, {"status_code": status})
    with pytest.raises(FetchFailed) as exc_info:
        await fetcher.fetch(PAGE)
    assert exc_info.value.last_status == status
    assert len(exc_info.value.attempts) == 3
    assert len(upstream.calls) == 3


async def test_no_attempt_scheduled_past_total_budget(http, upstream, sleeps):
    """With 2.5s of budget and 1s per attempt, the 2s backoff before a third try is never taken."""
    upstream.add(PAGE, {"status_code": 503})
    fetcher = ResilientFetcher(http, timeout=1, total_budget=2.5, sleep=sleeps)
    with pytest.raises(FetchFailed) as exc_info:
        await fetcher.fetch(PAGE)
    assert len(upstream.calls) == 2
    assert len(exc_info.value.attempts) == 2
    assert exc_info.value.last_status == 503
    assert sleeps.delays == [1.0]


async def test_budget_smaller_than_timeout_allows_single_attempt(http, upstream, sleeps):
    upstream.add(PAGE, {"status_code": 503})
    fetcher = ResilientFetcher(http, timeout=5, total_budget=3, sleep=sleeps)
    with pytest.raises(FetchFailed):
        await fetcher.fetch(PAGE)
    assert len(upstream.calls) == 1
    assert sleeps.delays == []


async def test_network_error_is_retried(fetcher, upstream):
    upstream.add(
        PAGE,
        httpx.ConnectError("connection reset"),
        {"status_code": 200, "content": b"ok"},
    )
    result = await fetcher.fetch(PAGE)
    assert [a.outcome for a in result.attempts] == ["network", "http_200"]


async def test_transport_timeouts_exhaust_attempts(fetcher, upstream):
    upstream.add(PAGE, httpx.ReadTimeout("slow"))
    with pytest.raises(FetchFailed) as exc_info:
        await fetcher.fetch(PAGE)
    assert exc_info.value.last_error == "timeout"
    assert exc_info.value.last_status is None
    assert [a.outcome for a in exc_info.value.attempts] == ["timeout"] * 3


async def test_attempt_is_cancelled_after_timeout(http, upstream, sleeps):
    """A hung upstream is cut off and recorded as a timeout attempt."""
    async def hang(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    upstream.add(PAGE, hang)
    fetcher = ResilientFetcher(http, timeout=0.05, max_attempts=2, sleep=sleeps)
    with pytest.raises(FetchFailed) as exc_info:
        await fetcher.fetch(PAGE)
    attempts = exc_info.value.attempts
    assert [a.outcome for a in attempts] == ["timeout", "timeout"]
    assert all(a.elapsed < 1 for a in attempts)


async def test_oversized_response_is_not_retried(fetcher, upstream):
    upstream.add(PAGE, {
        "status_code": 200,
        "headers": {"content-length": str(50 * 1024 * 1024)},
        "content": b"x",
    })
    with pytest.raises(FetchFailed) as exc_info:
        await fetcher.fetch(PAGE)
    assert exc_info.value.last_error == "too_large"
    assert len(upstream.calls) == 1


async def test_browser_headers_by_purpose(fetcher, upstream):
    upstream.add(PAGE, {"status_code": 200})
    await fetcher.fetch(PAGE, DOCUMENT)
    await fetcher.fetch(PAGE, IMAGE)
    document_headers, image_headers = (call.headers for call in upstream.calls)

    assert "Mozilla/5.0" in document_headers["user-agent"]
    assert document_headers["sec-fetch-dest"] == "document"
    assert document_headers["sec-fetch-mode"] == "navigate"
    assert "text/html" in document_headers["accept"]
    assert document_headers["accept-language"]

    assert image_headers["sec-fetch-dest"] == "image"
    assert image_headers["accept"].startswith("image/")
    assert image_headers["referer"] == "https://shop.example.com/"


async def test_redirects_are_returned_not_followed(fetcher, upstream):
    upstream.add(PAGE, {"status_code": 302, "headers": {"location": "/elsewhere"}})
    result = await fetcher.fetch(PAGE)
    assert result.response.status_code == 302
    assert result.response.is_redirect


async def test_safe_client_follows_relative_redirect(safe_client, upstream):
    upstream.add(PAGE, {"status_code": 301, "headers": {"location": "/products/42-new"}})
    upstream.add("https://shop.example.com/products/42-new", {"status_code": 200, "content": b"moved"})
    result = await safe_client.get(TargetRequest(PAGE, Operation.METADATA_EXTRACT))
    assert result.response.url == "https://shop.example.com/products/42-new"
    assert result.response.content == b"moved"
    assert len(result.attempts) == 2


async def test_safe_client_rejects_redirect_to_metadata_address(safe_client, upstream):
    """A public URL that redirects into link-local space is stopped at the hop."""
    upstream.add(PAGE, {
        "status_code": 302,
        "headers": {"location": "http://169.254.169.254/latest/meta-data"},
    })
    with pytest.raises(SsrfRejected):
        await safe_client.get(TargetRequest(PAGE, Operation.IMAGE_RELAY))
    assert [str(call.url) for call in upstream.calls] == [PAGE]


async def test_safe_client_rejects_redirect_to_private_hostname(safe_client, upstream, resolver):
    resolver.addresses["cdn-internal.example.com"] = ["10.20.30.40"]
    upstream.add(PAGE, {
        "status_code": 307,
        "headers": {"location": "https://cdn-internal.example.com/a.jpg"},
    })
    with pytest.raises(SsrfRejected):
        await safe_client.get(TargetRequest(PAGE, Operation.IMAGE_RELAY))
    assert len(upstream.calls) == 1


async def test_safe_client_validates_before_first_request(safe_client, upstream):
    with pytest.raises(SsrfRejected):
        await safe_client.get(TargetRequest("http://192.168.0.1/", Operation.IMAGE_RELAY))
    assert upstream.calls == []


async def test_safe_client_redirect_loop(http, upstream, resolver, sleeps):
    client = build_safe_client(http, resolver, sleeps)
    client.max_redirects = 2
    upstream.add(PAGE, {"status_code": 302, "headers": {"location": PAGE}})
    with pytest.raises(FetchFailed) as exc_info:
        await client.get(TargetRequest(PAGE, Operation.METADATA_EXTRACT))
    assert exc_info.value.last_error == "too_many_redirects"
    assert len(upstream.calls) == 3


async def test_safe_client_fetches_the_validated_url(safe_client, upstream):
    """Surrounding whitespace is dropped before validation, and the request goes to that same URL."""
    upstream.add(PAGE, {"status_code": 200, "content": b"ok"})
    result = await safe_client.get(TargetRequest(f"  {PAGE}\n", Operation.METADATA_EXTRACT))
    assert result.response.content == b"ok"
    assert [str(call.url) for call in upstream.calls] == [PAGE]
