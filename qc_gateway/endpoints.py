"""API endpoints of the gateway."""
from fastapi import APIRouter, Depends, Response
from typing import Optional

from qc_gateway.diff import diff
from qc_gateway.errors import InvalidParameter
from qc_gateway.fetcher import SafeClient, get_safe_client
from qc_gateway.image_utils import compute_content_hash
from qc_gateway.metadata import extract
from qc_gateway.relay import relay
from qc_gateway.schemas import DiffResponse, EndpointInfo, MetadataResponse
from qc_gateway.settings import settings

router = APIRouter()

ENDPOINTS = [
    EndpointInfo(path="/", method="GET", description="Health check and version"),
    EndpointInfo(
        path="/fetch-metadata", method="GET",
        description="Image URLs found on a page (?url=)",
    ),
    EndpointInfo(
        path="/proxy-image", method="GET",
        description="Relay a remote image with CORS headers (?url=)",
    ),
    EndpointInfo(
        path="/diff", method="GET",
        description="Pixel diff of two images (?imageA=&imageB=&threshold=)",
    ),
]


def parse_threshold(raw: Optional[str]) -> float:
    """Diff sensitivity from the query string; 0-1, default from settings."""
    if raw is None or raw.strip() == "":
        return settings.DEFAULT_DIFF_THRESHOLD
    try:
        threshold = float(raw)
    except ValueError:
        raise InvalidParameter(f"threshold must be a number, got {raw!r}")
    if not 0.0 <= threshold <= 1.0:
        raise InvalidParameter(f"threshold must be between 0 and 1, got {threshold}")
    return threshold


@router.get("/fetch-metadata", response_model=MetadataResponse)
async def fetch_metadata(
    response: Response,
    url: Optional[str] = None,
    client: SafeClient = Depends(get_safe_client),
):
    """
    List candidate product images found on a page.

    Open Graph and Twitter Card images come first, then structured data,
    then inline images. An empty list is a successful answer.
    """
    candidates = await extract(client, url)
    response.headers["Cache-Control"] = f"public, max-age={settings.METADATA_CACHE_SECONDS}"
    return MetadataResponse(images=[candidate.url for candidate in candidates])


@router.get("/proxy-image")
async def proxy_image(
    url: Optional[str] = None,
    client: SafeClient = Depends(get_safe_client),
):
    """Relay a remote image so the frontend can read it cross-origin."""
    image = await relay(client, url)
    return Response(
        content=image.data,
        media_type=image.content_type,
        headers={
            "Cache-Control": f"public, max-age={settings.RELAY_CACHE_SECONDS}",
            "ETag": f'"{compute_content_hash(image.data)}"',
            "X-Content-Type-Options": "nosniff",
            "X-Proxy-Status": "success",
        },
    )


@router.get("/diff", response_model=DiffResponse)
async def diff_images(
    imageA: Optional[str] = None,
    imageB: Optional[str] = None,
    threshold: Optional[str] = None,
    client: SafeClient = Depends(get_safe_client),
):
    """
    Compare two images pixel by pixel.

    Returns the percentage of differing pixels and a visualization with the
    differences in red; all images are base64 data URIs.
    """
    if not imageA or not imageB:
        raise InvalidParameter("Both imageA and imageB are required")
    result = await diff(client, imageA, imageB, parse_threshold(threshold))
    return DiffResponse(
        diffScore=result.score,
        diffImage=result.diff_image,
        imageA=result.image_a,
        imageB=result.image_b,
        width=result.width,
        height=result.height,
        diffPixels=result.diff_pixels,
    )
