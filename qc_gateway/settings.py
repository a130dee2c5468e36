"""Application settings using Pydantic BaseSettings."""
from pydantic_settings import BaseSettings
from typing import FrozenSet, Tuple

from qc_gateway import __version__


class Settings(BaseSettings):
    """Gateway configuration.

    Every field can be overridden with a ``GATEWAY_``-prefixed environment
    variable (or a ``.env`` file), e.g. ``GATEWAY_VERSION=2024.06.1``.
    """

    # Build marker sent as X-Gateway-Version; injected at deploy time
    VERSION: str = __version__
    SERVICE_NAME: str = "QC Image Gateway"
    LOG_LEVEL: str = "INFO"

    # Outbound fetch
    FETCH_TIMEOUT_SECONDS: float = 12.0
    FETCH_TOTAL_BUDGET_SECONDS: float = 45.0
    FETCH_MAX_ATTEMPTS: int = 3
    FETCH_BACKOFF_BASE_SECONDS: float = 1.0
    RETRIABLE_STATUSES: FrozenSet[int] = frozenset({403, 429, 500, 502, 503, 504})
    MAX_REDIRECTS: int = 5
    MAX_RESPONSE_BYTES: int = 10 * 1024 * 1024  # 10MB
    USER_AGENT: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    )
    ACCEPT_LANGUAGE: str = "en-US,en;q=0.9"

    # Anti-scraping deny list, matched against the host and its parents
    BLOCKED_DOMAINS: Tuple[str, ...] = ()

    # Metadata extraction
    MAX_CANDIDATES: int = 12
    MAX_URL_LENGTH: int = 2048
    ICON_MAX_EDGE: int = 32
    METADATA_CACHE_SECONDS: int = 300

    # Image relay
    MIN_VALID_IMAGE_BYTES: int = 100
    RELAY_CACHE_SECONDS: int = 3600

    # Diff
    DEFAULT_DIFF_THRESHOLD: float = 0.1
    MAX_DIFF_PIXELS: int = 25_000_000

    # CORS envelope
    CORS_ALLOW_METHODS: str = "GET, OPTIONS"
    CORS_ALLOW_HEADERS: str = "Content-Type"
    CORS_MAX_AGE: int = 86400

    class Config:
        env_file = ".env"
        env_prefix = "GATEWAY_"
        case_sensitive = True
        frozen = True


settings = Settings()
