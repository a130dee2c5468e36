"""Request-scoped data models.

Nothing here is persisted: every object is created, used and dropped within
the lifetime of a single inbound request.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class Operation(str, Enum):
    """What a target URL is going to be used for."""
    METADATA_EXTRACT = "metadata-extract"
    IMAGE_RELAY = "image-relay"
    DIFF_INPUT = "diff-input"


class OriginKind(str, Enum):
    """Where an image reference was found in a page."""
    OPENGRAPH = "opengraph"
    TWITTER = "twitter"
    STRUCTURED_DATA = "structured-data"
    INLINE_TAG = "inline-tag"
    UNKNOWN = "unknown"

    @property
    def priority(self) -> int:
        """Lower sorts first."""
        return _ORIGIN_PRIORITY[self]


_ORIGIN_PRIORITY = {
    OriginKind.OPENGRAPH: 0,
    OriginKind.TWITTER: 1,
    OriginKind.STRUCTURED_DATA: 2,
    OriginKind.INLINE_TAG: 3,
    OriginKind.UNKNOWN: 4,
}


@dataclass
class TargetRequest:
    url: str
    operation: Operation


@dataclass
class FetchAttempt:
    """One try at an upstream request."""

    index: int
    elapsed: float
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def outcome(self) -> str:
        if self.error:
            return self.error
        return f"http_{self.status_code}"


@dataclass
class UpstreamResponse:
    """Fully buffered upstream response."""

    url: str
    status_code: int
    headers: Dict[str, str]
    content: bytes
    charset: Optional[str] = None  # from the Content-Type header only

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status_code < 400 and "location" in self.headers


@dataclass
class FetchResult:
    response: UpstreamResponse
    attempts: List[FetchAttempt] = field(default_factory=list)


@dataclass
class ImageCandidate:
    """Image reference discovered while parsing a page."""

    url: str
    origin: OriginKind
    alt_text: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class ProxiedImage:
    data: bytes
    content_type: str
    source_url: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass
class DiffResult:
    """Outcome of a pixel comparison; images are data URIs."""

    score: float
    diff_image: str
    image_a: str
    image_b: str
    width: int
    height: int
    diff_pixels: int
