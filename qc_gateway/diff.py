"""Diff orchestration: relay both images concurrently, then compare pixels."""
import asyncio
import logging

from qc_gateway.errors import GatewayError, RelayFailed
from qc_gateway.fetcher import SafeClient
from qc_gateway.image_utils import compare_images, encode_png, to_data_uri
from qc_gateway.models import DiffResult, Operation
from qc_gateway.relay import relay

logger = logging.getLogger(__name__)


async def diff(client: SafeClient, url_a: str, url_b: str, threshold: float) -> DiffResult:
    """
    Compare the images behind two URLs.

    Raises:
        RelayFailed: Either side could not be retrieved; names the side
        DecodeFailed: Either side is not a decodable image
    """
    results = await asyncio.gather(
        relay(client, url_a, Operation.DIFF_INPUT),
        relay(client, url_b, Operation.DIFF_INPUT),
        return_exceptions=True,
    )
    for side, url, result in zip(("imageA", "imageB"), (url_a, url_b), results):
        if isinstance(result, GatewayError):
            logger.warning("Diff input %s (%s) failed: %s", side, url, result.message)
            raise RelayFailed(side, url, result) from result
        if isinstance(result, BaseException):
            raise result
    image_a, image_b = results

    # Pixel work is CPU bound; keep the event loop free
    score, diff_pixels, visualization = await asyncio.to_thread(
        compare_images, image_a.data, image_b.data, threshold
    )
    diff_png = await asyncio.to_thread(encode_png, visualization)
    logger.info("Diff of %s vs %s: %.2f%% (%d px)", url_a, url_b, score, diff_pixels)

    return DiffResult(
        score=score,
        diff_image=to_data_uri(diff_png, "image/png"),
        image_a=to_data_uri(image_a.data, image_a.content_type),
        image_b=to_data_uri(image_b.data, image_b.content_type),
        width=visualization.width,
        height=visualization.height,
        diff_pixels=diff_pixels,
    )
