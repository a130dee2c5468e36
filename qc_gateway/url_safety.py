"""SSRF guard for user-supplied target URLs."""
import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, Iterable, List, Optional
from urllib.parse import SplitResult, urlsplit

import httpx

from qc_gateway.errors import DomainBlocked, FetchFailed, MalformedUrl, SsrfRejected
from qc_gateway.settings import settings

logger = logging.getLogger(__name__)

Resolver = Callable[[str, int], Awaitable[List[str]]]

BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),  # link-local, cloud metadata
    ipaddress.ip_network("100.64.0.0/10"),  # carrier-grade NAT
    ipaddress.ip_network("224.0.0.0/4"),
    ipaddress.ip_network("240.0.0.0/4"),
    ipaddress.ip_network("::/128"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("ff00::/8"),
]

BLOCKED_HOSTNAMES = frozenset({"localhost", "localhost.localdomain", "metadata.google.internal"})
BLOCKED_SUFFIXES = (".localhost", ".local", ".internal")


async def resolve_host(host: str, port: int) -> List[str]:
    """Resolve a hostname to every address the system resolver returns."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


def is_blocked_address(address: str) -> bool:
    """True if the address lies in a private, loopback, link-local or reserved range."""
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip in net for net in BLOCKED_NETWORKS if net.version == ip.version)


def _literal_ip(host: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return None


def _matches_domain(host: str, domains: Iterable[str]) -> bool:
    for domain in domains:
        domain = domain.lower().lstrip(".")
        if host == domain or host.endswith("." + domain):
            return True
    return False


class UrlValidator:
    """Validates target URLs before any network call is made.

    ``validate`` must be applied to the original target and again to every
    redirect hop; see ``qc_gateway.fetcher.SafeClient``.
    """

    def __init__(self, resolver: Resolver = resolve_host, blocked_domains: Iterable[str] = None):
        self._resolver = resolver
        self._blocked_domains = tuple(
            settings.BLOCKED_DOMAINS if blocked_domains is None else blocked_domains
        )

    async def validate(self, raw_url: Optional[str]) -> SplitResult:
        """
        Parse and vet a URL.

        Args:
            raw_url: URL as received from the caller or a Location header

        Returns:
            The parsed URL

        Raises:
            MalformedUrl: Not an absolute http(s) URL
            SsrfRejected: Host is, or resolves to, a non-public address
            DomainBlocked: Host is on the deny list
            FetchFailed: Host name does not resolve
        """
        parsed = self._parse(raw_url)
        host = parsed.hostname

        if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_SUFFIXES):
            logger.warning("Rejected internal hostname %s", host)
            raise SsrfRejected(f"Access to internal host {host} is not allowed", url=raw_url)

        if self._blocked_domains and _matches_domain(host, self._blocked_domains):
            logger.info("Rejected deny-listed domain %s", host)
            raise DomainBlocked(f"Fetching from {host} is not allowed", url=raw_url)

        literal = _literal_ip(host)
        if literal is not None:
            addresses = [literal]
        else:
            port = parsed.port or (443 if parsed.scheme == "https" else 80)
            try:
                addresses = await self._resolver(host, port)
            except (socket.gaierror, UnicodeError) as e:
                raise FetchFailed(
                    f"Could not resolve host {host}", url=raw_url, last_error="dns"
                ) from e
            if not addresses:
                raise FetchFailed(f"Could not resolve host {host}", url=raw_url, last_error="dns")

        for address in addresses:
            if is_blocked_address(address):
                logger.warning("Rejected %s: %s resolves to %s", raw_url, host, address)
                raise SsrfRejected(
                    f"Access to internal resources is not allowed ({host})", url=raw_url
                )

        return parsed

    @staticmethod
    def _parse(raw_url: Optional[str]) -> SplitResult:
        if not raw_url or not raw_url.strip():
            raise MalformedUrl("Missing url")
        try:
            parsed = urlsplit(raw_url.strip())
            # Accessing .port raises ValueError on garbage like :99999
            parsed.port
        except ValueError as e:
            raise MalformedUrl(f"Invalid URL: {raw_url}") from e
        if parsed.scheme.lower() not in ("http", "https"):
            raise MalformedUrl(f"Unsupported URL scheme: {parsed.scheme or 'none'}")
        if not parsed.hostname:
            raise MalformedUrl(f"URL has no host: {raw_url}")
        if parsed.username is not None or parsed.password is not None:
            raise MalformedUrl("URLs with embedded credentials are not allowed")
        # The HTTP client must connect to the host that was checked here
        try:
            client_host = httpx.URL(parsed.geturl()).host
        except httpx.InvalidURL as e:
            raise MalformedUrl(f"Invalid URL: {raw_url}") from e
        if client_host.lower() != parsed.hostname:
            raise MalformedUrl(f"Ambiguous host in URL: {raw_url}")
        return parsed
