"""Typed failures raised by gateway components.

Every failure the router knows how to report is a ``GatewayError``; the
exception handler in ``qc_gateway.app`` turns it into a JSON body with the
status code carried on the exception. Anything else is an unanticipated
fault and becomes a generic 500 at the middleware boundary.
"""
from typing import List, Optional

from fastapi import status


class GatewayError(Exception):
    """Base class for failures that map to a specific HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict:
        return {"error": self.error, "message": self.message}


class InvalidParameter(GatewayError):
    """Missing or unusable query parameter."""
    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_parameter"


class MalformedUrl(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "malformed_url"


class SsrfRejected(GatewayError):
    """Target resolves to an address the gateway must never contact."""
    status_code = status.HTTP_400_BAD_REQUEST
    error = "ssrf_rejected"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class DomainBlocked(SsrfRejected):
    """Target host is on the configured anti-scraping deny list."""
    error = "blocked_domain"


class FetchFailed(GatewayError):
    """Upstream could not be fetched, after retries where they apply."""
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "fetch_failed"

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        last_status: Optional[int] = None,
        last_error: Optional[str] = None,
        attempts: Optional[List] = None,
    ):
        super().__init__(message)
        self.url = url
        self.last_status = last_status
        self.last_error = last_error
        self.attempts = attempts or []

    def to_body(self) -> dict:
        body = super().to_body()
        body.update({
            "status": self.last_status,
            "lastError": self.last_error,
            "attempts": len(self.attempts),
            "target": self.url,
        })
        return body


class ParseFailed(GatewayError):
    """Upstream was reachable but its document could not be parsed."""
    status_code = 422  # the constant name differs across Starlette releases
    error = "parse_failed"


class DecodeFailed(GatewayError):
    """Image bytes could not be decoded into pixels."""
    status_code = 422  # the constant name differs across Starlette releases
    error = "decode_failed"

    def __init__(self, message: str, side: Optional[str] = None):
        super().__init__(message)
        self.side = side

    def to_body(self) -> dict:
        body = super().to_body()
        if self.side:
            body["side"] = self.side
        return body


class RelayFailed(GatewayError):
    """One side of a diff could not be relayed; wraps the underlying failure."""
    error = "relay_failed"

    def __init__(self, side: str, url: str, cause: GatewayError):
        super().__init__(f"Failed to retrieve {side} from {url}: {cause.message}")
        self.side = side
        self.url = url
        self.cause = cause
        self.status_code = cause.status_code

    def to_body(self) -> dict:
        body = super().to_body()
        body.update({"side": self.side, "target": self.url, "cause": self.cause.error})
        return body
