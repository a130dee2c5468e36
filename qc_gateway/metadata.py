"""Image candidate extraction from product pages."""
import json
import logging
import re
from typing import Iterator, List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup

from qc_gateway.errors import ParseFailed
from qc_gateway.fetcher import SafeClient
from qc_gateway.models import ImageCandidate, Operation, OriginKind, TargetRequest
from qc_gateway.settings import settings

logger = logging.getLogger(__name__)

OG_PROPERTIES = ("og:image", "og:image:url", "og:image:secure_url")
TWITTER_NAMES = ("twitter:image", "twitter:image:src")
LAZY_SRC_ATTRS = ("src", "data-src", "data-original", "data-lazy-src")
TRACKING_PARAMS = ("fbclid", "gclid", "mc_cid", "mc_eid")
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "application/xml", "text/xml", "text/plain")

# Spacers, beacons and favicons that show up as <img> on most storefronts
TRACKING_NAME_PATTERN = re.compile(
    r"(?:^|[/_.-])(?:spacer|blank|transparent|tracking|beacon|favicon|1x1|apple-touch-icon)"
    r"(?:[/_.-]|$)"
)
TINY_FIXED_SIZE_PATTERN = re.compile(r"(?:^|[/_-])(\d{1,2})x(\d{1,2})\.(?:gif|png)$")


def _parse_dimension(value) -> Optional[int]:
    if value is None:
        return None
    match = re.match(r"\s*(\d+)", str(value))
    return int(match.group(1)) if match else None


def _meta_content(tag) -> Optional[str]:
    content = tag.get("content")
    return content.strip() if content and content.strip() else None


def _images_from_ld(node) -> Iterator[str]:
    """Walk a JSON-LD graph and yield every image reference in it."""
    if isinstance(node, list):
        for item in node:
            yield from _images_from_ld(item)
    elif isinstance(node, dict):
        image = node.get("image")
        if isinstance(image, str):
            yield image
        elif isinstance(image, list):
            for item in image:
                if isinstance(item, str):
                    yield item
                elif isinstance(item, dict):
                    url = item.get("url") or item.get("contentUrl")
                    if isinstance(url, str):
                        yield url
        elif isinstance(image, dict):
            url = image.get("url") or image.get("contentUrl")
            if isinstance(url, str):
                yield url
        for key, value in node.items():
            if key != "image" and isinstance(value, (dict, list)):
                yield from _images_from_ld(value)


def normalize_url(url: str) -> str:
    """Canonical form used to detect duplicates."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        host = f"{host}:{port}"
    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    query = sorted(
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in TRACKING_PARAMS
    )
    return urlunsplit((scheme, host, path, urlencode(query), ""))


def looks_like_tracker(candidate: ImageCandidate) -> bool:
    """Tracking pixels, spacers and favicons, judged by size or file name."""
    width, height = candidate.width, candidate.height
    if (width is not None and width <= 1) or (height is not None and height <= 1):
        return True
    if width is not None and height is not None and width == height and width <= settings.ICON_MAX_EDGE:
        return True
    path = urlsplit(candidate.url).path.lower()
    if TRACKING_NAME_PATTERN.search(path):
        return True
    match = TINY_FIXED_SIZE_PATTERN.search(path)
    return bool(match)


def collect_candidates(soup: BeautifulSoup) -> List[ImageCandidate]:
    """Every image reference in the page, in origin-kind priority order, unresolved."""
    found: List[ImageCandidate] = []

    # Open Graph; og:image:width/height describe the og:image before them
    last_og: Optional[ImageCandidate] = None
    for tag in soup.find_all("meta", attrs={"property": True}):
        prop = tag["property"].strip().lower()
        if prop in OG_PROPERTIES:
            content = _meta_content(tag)
            if content:
                last_og = ImageCandidate(content, OriginKind.OPENGRAPH)
                found.append(last_og)
        elif prop == "og:image:width" and last_og is not None:
            last_og.width = _parse_dimension(tag.get("content"))
        elif prop == "og:image:height" and last_og is not None:
            last_og.height = _parse_dimension(tag.get("content"))
        elif prop == "og:image:alt" and last_og is not None:
            last_og.alt_text = _meta_content(tag)

    for tag in soup.find_all("meta"):
        key = (tag.get("name") or tag.get("property") or "").strip().lower()
        if key in TWITTER_NAMES:
            content = _meta_content(tag)
            if content:
                found.append(ImageCandidate(content, OriginKind.TWITTER))

    for script in soup.find_all("script", attrs={"type": re.compile(r"application/ld\+json", re.I)}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Skipping invalid JSON-LD block")
            continue
        for url in _images_from_ld(data):
            found.append(ImageCandidate(url.strip(), OriginKind.STRUCTURED_DATA))

    for img in soup.find_all("img"):
        src = next((img.get(attr) for attr in LAZY_SRC_ATTRS if img.get(attr)), None)
        if not src:
            continue
        found.append(ImageCandidate(
            src.strip(),
            OriginKind.INLINE_TAG,
            alt_text=img.get("alt") or None,
            width=_parse_dimension(img.get("width")),
            height=_parse_dimension(img.get("height")),
        ))

    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        if "image_src" in [r.lower() for r in rel]:
            found.append(ImageCandidate(link["href"].strip(), OriginKind.UNKNOWN))

    found.sort(key=lambda c: c.origin.priority)
    return found


def rank_candidates(candidates: List[ImageCandidate], base_url: str) -> List[ImageCandidate]:
    """
    Resolve, filter, deduplicate and cap candidates.

    Args:
        candidates: Raw candidates from collect_candidates
        base_url: Final URL of the page, for relative references

    Returns:
        At most MAX_CANDIDATES candidates with absolute URLs
    """
    ranked: List[ImageCandidate] = []
    seen = set()
    for candidate in sorted(candidates, key=lambda c: c.origin.priority):
        if candidate.url.lower().startswith("data:"):
            continue
        absolute = urljoin(base_url, candidate.url).split("#", 1)[0]
        if urlsplit(absolute).scheme not in ("http", "https"):
            continue
        if len(absolute) > settings.MAX_URL_LENGTH:
            continue
        candidate.url = absolute
        if looks_like_tracker(candidate):
            continue
        key = normalize_url(absolute)
        if key in seen:
            continue
        seen.add(key)
        ranked.append(candidate)
        if len(ranked) >= settings.MAX_CANDIDATES:
            break
    return ranked


def parse_html(content: bytes, encoding: Optional[str] = None) -> BeautifulSoup:
    """
    Parse a page from raw bytes.

    A charset named by the Content-Type header wins; otherwise BeautifulSoup
    sniffs the BOM and ``<meta charset>`` declarations.
    """
    try:
        return BeautifulSoup(content, "html.parser", from_encoding=encoding)
    except ParserRejectedMarkup as e:
        raise ParseFailed(f"Could not parse page: {e}") from e


async def extract(client: SafeClient, url: str) -> List[ImageCandidate]:
    """
    Fetch a page and return its ranked image candidates.

    An empty list means the page was fetched and parsed but carries no usable
    image references.

    Raises:
        MalformedUrl, SsrfRejected: Target rejected before fetching
        FetchFailed: Page could not be fetched
        ParseFailed: Page is not an HTML document
    """
    result = await client.get(TargetRequest(url, Operation.METADATA_EXTRACT))
    response = result.response
    media_type = response.content_type.split(";", 1)[0].strip().lower()
    if media_type and media_type not in HTML_CONTENT_TYPES:
        raise ParseFailed(f"Expected an HTML document but received {media_type}")

    soup = parse_html(response.content, response.charset)
    candidates = rank_candidates(collect_candidates(soup), response.url)
    logger.info("Extracted %d image candidate(s) from %s", len(candidates), url)
    return candidates
