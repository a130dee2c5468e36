"""Image relay: fetch one remote image on behalf of the browser."""
import logging
from typing import Optional, Tuple

from filetype import guess

from qc_gateway.errors import FetchFailed
from qc_gateway.fetcher import SafeClient
from qc_gateway.models import Operation, ProxiedImage, TargetRequest
from qc_gateway.settings import settings

logger = logging.getLogger(__name__)

FALLBACK_CONTENT_TYPE = "application/octet-stream"
NON_IMAGE_PREFIXES = ("text/", "application/json", "application/xhtml")


def sniff_image_type(data: bytes) -> Optional[str]:
    """Image MIME type from the byte signature, if it is an image."""
    kind = guess(data)
    if kind and kind.mime.startswith("image/"):
        return kind.mime
    return None


def resolve_content_type(header: Optional[str], data: bytes) -> Tuple[str, bool]:
    """
    Decide the content type to send back.

    Args:
        header: Upstream Content-Type header, possibly empty
        data: Response body

    Returns:
        Tuple of (content_type, is_known_image)
    """
    declared = (header or "").strip()
    media_type = declared.split(";", 1)[0].strip().lower()
    if media_type.startswith("image/"):
        return declared, True
    sniffed = sniff_image_type(data)
    if sniffed:
        return sniffed, True
    return FALLBACK_CONTENT_TYPE, False


async def relay(client: SafeClient, url: str, operation: Operation = Operation.IMAGE_RELAY) -> ProxiedImage:
    """
    Fetch an image through the guarded client.

    Raises:
        MalformedUrl, SsrfRejected: Target rejected before fetching
        FetchFailed: Upstream failure, or the upstream answered with something
            that is clearly not an image
    """
    result = await client.get(TargetRequest(url, operation))
    response = result.response
    data = response.content
    content_type, is_image = resolve_content_type(response.content_type, data)

    if not is_image:
        upstream_type = response.content_type.lower()
        if len(data) < settings.MIN_VALID_IMAGE_BYTES or upstream_type.startswith(NON_IMAGE_PREFIXES):
            logger.warning(
                "Relay of %s returned %s (%d bytes), not an image", url, upstream_type or "no type", len(data)
            )
            raise FetchFailed(
                f"Expected image data but received {upstream_type or 'unknown content'} "
                f"with {len(data)} bytes",
                url=url,
                last_status=response.status_code,
                last_error="invalid_response",
                attempts=result.attempts,
            )

    return ProxiedImage(data=data, content_type=content_type, source_url=response.url)
