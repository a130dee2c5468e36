"""Cross-origin envelope attached to every response the gateway emits."""
from typing import Dict

from starlette.responses import Response

from qc_gateway.settings import settings

VERSION_HEADER = "X-Gateway-Version"


def cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": settings.CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": settings.CORS_ALLOW_HEADERS,
        "Access-Control-Expose-Headers": VERSION_HEADER,
        VERSION_HEADER: settings.VERSION,
    }


def with_envelope(response: Response) -> Response:
    """The only way a response leaves the gateway."""
    for name, value in cors_headers().items():
        response.headers[name] = value
    return response


def preflight_response() -> Response:
    response = Response(status_code=204)
    response.headers["Access-Control-Max-Age"] = str(settings.CORS_MAX_AGE)
    return with_envelope(response)
