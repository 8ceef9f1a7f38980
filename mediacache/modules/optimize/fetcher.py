"""Origin fetching with destination checks.

Source URLs are validated before any network activity: only http(s), no
loopback/private/link-local destinations. Redirects are followed manually so
every hop is validated again. Bodies are streamed against a byte ceiling and
the whole fetch runs under one deadline. Nothing is retried.
"""

import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, Optional, Union

import httpx

from mediacache.core.exceptions import OriginFetchError, ValidationError
from mediacache.core.metrics import ORIGIN_FETCHES_TOTAL

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})
BLOCKED_HOSTNAMES = frozenset({
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "0.0.0.0",
    "127.0.0.1",
    "::1",
    "::",
})

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
HostResolver = Callable[[str, int], Awaitable[list[str]]]


def is_public_address(ip: IPAddress) -> bool:
    """Whether an address is routable on the public internet."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def _parse_ip(host: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    # Bare integer hosts such as http://2130706433/
    if host.isdigit():
        try:
            return ipaddress.ip_address(int(host))
        except ValueError:
            return None
    return None


def validate_source_url(url: Optional[str]) -> httpx.URL:
    """Validate a source URL without touching the network.

    Args:
        url: Untrusted source URL

    Returns:
        httpx.URL: The parsed URL

    Raises:
        ValidationError: If the URL is missing, malformed or points at a
            disallowed destination
    """
    if not url:
        raise ValidationError("Missing source url")

    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        raise ValidationError("Invalid source url")

    if parsed.scheme not in ALLOWED_SCHEMES:
        raise ValidationError("Invalid protocol: only http and https are allowed")

    host = (parsed.host or "").lower().rstrip(".")
    if not host:
        raise ValidationError("Source url has no host")

    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise ValidationError("Source host is not allowed")

    ip = _parse_ip(host)
    if ip is not None and not is_public_address(ip):
        raise ValidationError("Source host is not allowed")

    return parsed


async def _system_resolver(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


class OriginFetcher:
    """Fetches source bytes from client-supplied URLs."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_bytes: int = 50 * 1024 * 1024,
        timeout: float = 8.0,
        max_redirects: int = 3,
        resolve_hosts: bool = True,
        user_agent: str = "mediacache",
        resolver: Optional[HostResolver] = None,
    ):
        """Initialize fetcher.

        Args:
            client: Shared HTTP client
            max_bytes: Largest accepted origin body
            timeout: Deadline for the whole fetch, redirects included
            max_redirects: Redirect hops to follow
            resolve_hosts: Check that DNS answers are public addresses
            user_agent: User-Agent header sent to origins
            resolver: Async hostname resolver, defaults to the system one
        """
        self.client = client
        self.max_bytes = max_bytes
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.resolve_hosts = resolve_hosts
        self.user_agent = user_agent
        self._resolver = resolver or _system_resolver

    validate_source_url = staticmethod(validate_source_url)

    async def fetch(self, url: str) -> bytes:
        """Fetch the body of a source URL.

        Raises:
            ValidationError: If the URL or any redirect target is disallowed
            OriginFetchError: On timeout, oversized body, non-2xx status or
                transport failure
        """
        try:
            data = await asyncio.wait_for(self._fetch(url), timeout=self.timeout)
        except asyncio.TimeoutError:
            ORIGIN_FETCHES_TOTAL.labels(outcome="timeout").inc()
            raise OriginFetchError(f"Origin fetch timed out after {self.timeout}s")
        except ValidationError:
            ORIGIN_FETCHES_TOTAL.labels(outcome="rejected").inc()
            raise

        ORIGIN_FETCHES_TOTAL.labels(outcome="ok").inc()
        return data

    async def _check_destination(self, parsed: httpx.URL) -> None:
        if not self.resolve_hosts or _parse_ip(parsed.host) is not None:
            return
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        try:
            addresses = await self._resolver(parsed.host, port)
        except (OSError, UnicodeError) as e:
            raise OriginFetchError(f"Could not resolve source host: {parsed.host}") from e
        if not addresses:
            raise OriginFetchError(f"Could not resolve source host: {parsed.host}")
        for address in addresses:
            ip = ipaddress.ip_address(address.split("%", 1)[0])
            if not is_public_address(ip):
                raise ValidationError("Source host is not allowed")

    async def _fetch(self, url: str) -> bytes:
        current = url
        for _ in range(self.max_redirects + 1):
            parsed = validate_source_url(current)
            await self._check_destination(parsed)

            try:
                async with self.client.stream(
                    "GET",
                    parsed,
                    headers={"User-Agent": self.user_agent},
                    follow_redirects=False,
                ) as response:
                    if response.is_redirect:
                        location = response.headers.get("location")
                        if not location:
                            ORIGIN_FETCHES_TOTAL.labels(outcome="http_error").inc()
                            raise OriginFetchError("Origin redirect without a Location header")
                        current = str(response.url.join(location))
                        logger.debug(f"Following origin redirect to {current}")
                        continue

                    if not response.is_success:
                        ORIGIN_FETCHES_TOTAL.labels(outcome="http_error").inc()
                        raise OriginFetchError(
                            f"Origin responded with status {response.status_code}"
                        )

                    return await self._read_body(response)
            except httpx.TimeoutException as e:
                ORIGIN_FETCHES_TOTAL.labels(outcome="timeout").inc()
                raise OriginFetchError("Origin fetch timed out") from e
            except httpx.HTTPError as e:
                ORIGIN_FETCHES_TOTAL.labels(outcome="network_error").inc()
                raise OriginFetchError(f"Origin fetch failed: {type(e).__name__}") from e

        ORIGIN_FETCHES_TOTAL.labels(outcome="http_error").inc()
        raise OriginFetchError(f"Origin exceeded {self.max_redirects} redirects")

    async def _read_body(self, response: httpx.Response) -> bytes:
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            ORIGIN_FETCHES_TOTAL.labels(outcome="too_large").inc()
            raise OriginFetchError(f"Source exceeds the {self.max_bytes} byte limit")

        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > self.max_bytes:
                ORIGIN_FETCHES_TOTAL.labels(outcome="too_large").inc()
                raise OriginFetchError(f"Source exceeds the {self.max_bytes} byte limit")
        return bytes(body)
