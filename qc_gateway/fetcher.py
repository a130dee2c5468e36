"""Outbound HTTP: browser-like requests, bounded retry, guarded redirects."""
import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_before_delay,
    wait_exponential,
)

from qc_gateway.errors import FetchFailed
from qc_gateway.models import FetchAttempt, FetchResult, Operation, TargetRequest, UpstreamResponse
from qc_gateway.settings import settings
from qc_gateway.url_safety import UrlValidator

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

RETRIABLE_ERRORS = (asyncio.TimeoutError, httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)

DOCUMENT = "document"
IMAGE = "image"


def _is_retriable_response(response: UpstreamResponse) -> bool:
    return response.status_code in settings.RETRIABLE_STATUSES


class ResponseTooLarge(Exception):
    pass


def build_headers(url: str, purpose: str) -> Dict[str, str]:
    """Header set of a desktop browser loading a page or an image."""
    headers = {
        "User-Agent": settings.USER_AGENT,
        "Accept-Language": settings.ACCEPT_LANGUAGE,
        "Accept-Encoding": "gzip, deflate",
        "Sec-Fetch-Site": "cross-site",
    }
    if purpose == IMAGE:
        parts = urlsplit(url)
        headers.update({
            "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
            "Sec-Fetch-Dest": "image",
            "Sec-Fetch-Mode": "no-cors",
            "Referer": f"{parts.scheme}://{parts.netloc}/",
        })
    else:
        headers.update({
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-User": "?1",
            "Upgrade-Insecure-Requests": "1",
        })
    return headers


class ResilientFetcher:
    """Issues one logical GET with per-attempt timeout and exponential backoff.

    Redirects are returned, not followed: callers that follow them must
    validate every hop (``SafeClient`` does).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_attempts: int = None,
        timeout: float = None,
        backoff_base: float = None,
        total_budget: float = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._client = client
        self.max_attempts = max_attempts or settings.FETCH_MAX_ATTEMPTS
        self.timeout = timeout or settings.FETCH_TIMEOUT_SECONDS
        self.backoff_base = settings.FETCH_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.total_budget = total_budget or settings.FETCH_TOTAL_BUDGET_SECONDS
        self._sleep = sleep

    def _retrying(self, url: str) -> AsyncRetrying:
        """Retry policy: bounded attempts, exponential backoff, total wall-clock budget."""
        def log_retry(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            if outcome.failed:
                reason = outcome.exception().__class__.__name__
            else:
                reason = f"HTTP {outcome.result().status_code}"
            logger.info(
                "Attempt %d for %s failed (%s), retrying in %.1fs",
                retry_state.attempt_number, url, reason, retry_state.next_action.sleep,
            )

        return AsyncRetrying(
            stop=(
                stop_after_attempt(self.max_attempts)
                # The next attempt must be able to finish inside the budget
                | stop_before_delay(max(self.total_budget - self.timeout, 0.0))
            ),
            wait=wait_exponential(multiplier=self.backoff_base),
            retry=retry_if_exception_type(RETRIABLE_ERRORS) | retry_if_result(_is_retriable_response),
            sleep=self._sleep,
            before_sleep=log_retry,
        )

    async def fetch(self, url: str, purpose: str = DOCUMENT) -> FetchResult:
        """
        Fetch a URL, retrying transient failures.

        Args:
            url: Already validated absolute URL
            purpose: DOCUMENT or IMAGE, selects the header set

        Returns:
            FetchResult with a 2xx or 3xx response and every attempt made

        Raises:
            FetchFailed: Non-retriable status, or retries exhausted
        """
        headers = build_headers(url, purpose)
        attempts: List[FetchAttempt] = []
        response: Optional[UpstreamResponse] = None

        try:
            async for attempt in self._retrying(url):
                with attempt:
                    response = await self._recorded_attempt(url, headers, attempts)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(response)
        except RetryError:
            logger.info("Retries for %s stopped after %d attempt(s)", url, len(attempts))
        except ResponseTooLarge as e:
            raise FetchFailed(
                f"Response from {url} exceeds {settings.MAX_RESPONSE_BYTES} bytes",
                url=url, last_error="too_large", attempts=attempts,
            ) from e
        except httpx.HTTPError as e:
            raise FetchFailed(
                f"Request to {url} failed: {e}", url=url, last_error=str(e), attempts=attempts
            ) from e

        last = attempts[-1]
        if last.status_code is not None and last.status_code < 400:
            return FetchResult(response=response, attempts=attempts)

        logger.warning(
            "Fetch failed for %s after %d attempt(s): status=%s error=%s",
            url, len(attempts), last.status_code, last.error,
        )
        if last.status_code is not None:
            message = f"Upstream returned {last.status_code} after {len(attempts)} attempt(s)"
        else:
            message = f"Upstream unreachable ({last.error}) after {len(attempts)} attempt(s)"
        raise FetchFailed(
            message, url=url, last_status=last.status_code, last_error=last.error, attempts=attempts
        )

    async def _recorded_attempt(
        self, url: str, headers: Dict[str, str], attempts: List[FetchAttempt]
    ) -> UpstreamResponse:
        """One attempt under the per-attempt timeout; its outcome is appended to ``attempts``."""
        index = len(attempts) + 1
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(self._attempt(url, headers), self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            attempts.append(FetchAttempt(index, time.monotonic() - started, error="timeout"))
            raise
        except (httpx.NetworkError, httpx.RemoteProtocolError):
            attempts.append(FetchAttempt(index, time.monotonic() - started, error="network"))
            raise
        except ResponseTooLarge:
            attempts.append(FetchAttempt(index, time.monotonic() - started, error="too_large"))
            raise
        except httpx.HTTPError:
            attempts.append(FetchAttempt(index, time.monotonic() - started, error="request"))
            raise
        attempts.append(FetchAttempt(index, time.monotonic() - started, status_code=response.status_code))
        return response

    async def _attempt(self, url: str, headers: Dict[str, str]) -> UpstreamResponse:
        async with self._client.stream("GET", url, headers=headers, follow_redirects=False) as response:
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > settings.MAX_RESPONSE_BYTES:
                raise ResponseTooLarge()
            body = bytearray()
            if response.status_code < 300:
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > settings.MAX_RESPONSE_BYTES:
                        raise ResponseTooLarge()
            return UpstreamResponse(
                url=url,
                status_code=response.status_code,
                headers={k.lower(): v for k, v in response.headers.items()},
                content=bytes(body),
                charset=response.charset_encoding,
            )


class SafeClient:
    """Validator and fetcher composed: every URL is vetted before it is dereferenced."""

    def __init__(self, validator: UrlValidator, fetcher: ResilientFetcher, max_redirects: int = None):
        self.validator = validator
        self.fetcher = fetcher
        self.max_redirects = settings.MAX_REDIRECTS if max_redirects is None else max_redirects

    async def get(self, target: TargetRequest) -> FetchResult:
        """Fetch a target, re-validating each redirect hop before following it.

        Only the URL as the validator parsed it is ever dereferenced.
        """
        purpose = DOCUMENT if target.operation == Operation.METADATA_EXTRACT else IMAGE
        url = (await self.validator.validate(target.url)).geturl()
        attempts: List[FetchAttempt] = []

        for _ in range(self.max_redirects + 1):
            result = await self.fetcher.fetch(url, purpose)
            attempts.extend(result.attempts)
            response = result.response
            if not response.is_redirect:
                if response.status_code >= 300:
                    raise FetchFailed(
                        f"Upstream returned {response.status_code} without a usable location",
                        url=url, last_status=response.status_code, attempts=attempts,
                    )
                return FetchResult(response=response, attempts=attempts)

            next_url = urljoin(url, response.headers["location"])
            logger.debug("Following redirect %s -> %s", url, next_url)
            url = (await self.validator.validate(next_url)).geturl()

        raise FetchFailed(
            f"Too many redirects (>{self.max_redirects}) for {target.url}",
            url=target.url, last_error="too_many_redirects", attempts=attempts,
        )


def create_http_client(transport: httpx.AsyncBaseTransport = None) -> httpx.AsyncClient:
    """HTTP client for one inbound request; the fetcher enforces its own timeout."""
    return httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(settings.FETCH_TIMEOUT_SECONDS),
        follow_redirects=False,
    )


async def get_safe_client() -> AsyncIterator[SafeClient]:
    """Dependency for FastAPI: a guarded client scoped to one request."""
    async with create_http_client() as http:
        yield SafeClient(UrlValidator(), ResilientFetcher(http))
