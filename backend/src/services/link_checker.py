"""Link-health checking for bookmark URLs, with SSRF protection."""
import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from urllib.parse import urljoin, urlparse

import httpx

from core.config import Settings
from models.bookmark import LinkStatus
from services.exceptions import PermanentHttpError, SSRFBlockedError, TransientNetworkError
from services.link_check_policy import classify_http_status

logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (compatible; BookmarkLinkChecker/1.0)'
DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_REDIRECTS = 5

ALLOWED_SCHEMES = frozenset({'http', 'https'})

# Hostnames that must never be fetched, regardless of what they resolve to
BLOCKED_HOSTNAMES = frozenset({
    'localhost',
    'localhost.localdomain',
    'metadata.google.internal',
    'metadata.azure.com',
    'metadata.packet.net',
})

# Ports of common internal services
BLOCKED_PORTS = frozenset({
    22, 23, 25, 53, 135, 139, 445, 993, 995,
    1433, 3306, 3389, 5432, 5984, 6379, 8080, 9200, 27017,
})

# Origins that reject HEAD with these codes are retried with GET
HEAD_REJECTED_STATUSES = frozenset({405, 501})


def is_private_ip(ip_str: str) -> bool:
    """
    Check if an IP address is private, loopback, or otherwise internal.

    IPv4-mapped IPv6 addresses (::ffff:10.0.0.1) are judged by their IPv4 part.

    Args:
        ip_str: IP address string (IPv4 or IPv6).

    Returns:
        True if the IP is private/internal, False if public.
    """
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        # Unparseable addresses are blocked
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


async def resolve_host(hostname: str, port: int | None = None) -> list[str]:
    """
    Resolve a hostname to its distinct IP addresses.

    Raises:
        TransientNetworkError: If DNS resolution fails.
    """
    loop = asyncio.get_running_loop()
    try:
        addrinfo = await loop.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        raise TransientNetworkError(f"Could not resolve hostname: {hostname}") from e

    addresses: list[str] = []
    for _family, _type, _proto, _canonname, sockaddr in addrinfo:
        # sockaddr is (ip, port) for IPv4 or (ip, port, flow, scope) for IPv6
        ip_str = str(sockaddr[0]).split('%', 1)[0]
        if ip_str not in addresses:
            addresses.append(ip_str)
    if not addresses:
        raise TransientNetworkError(f"Could not resolve hostname: {hostname}")
    return addresses


async def validate_url_not_private(url: str) -> list[str]:
    """
    Validate that a URL does not target a private/internal network.

    Resolves the hostname and checks every address it maps to, so a public
    name pointing at an internal IP is rejected as well.

    Args:
        url: The URL to validate.

    Returns:
        The validated IP addresses, in resolver order.

    Raises:
        SSRFBlockedError: If the URL targets a disallowed scheme, host, port or address.
        ValueError: If the URL is malformed.
        TransientNetworkError: If the hostname cannot be resolved.
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise SSRFBlockedError(
            f"Blocked scheme '{scheme or 'none'}': only http and https are allowed",
        )

    hostname = parsed.hostname
    if not hostname:
        raise ValueError(f"Invalid URL (no hostname): {url}")

    if hostname.lower().rstrip('.') in BLOCKED_HOSTNAMES:
        raise SSRFBlockedError(f"Blocked request to internal hostname: {url}")

    try:
        port = parsed.port
    except ValueError as e:
        raise ValueError(f"Invalid port in URL: {url}") from e
    if port is not None and port in BLOCKED_PORTS:
        raise SSRFBlockedError(f"Blocked request to internal service port {port}: {url}")

    try:
        addresses = [str(ipaddress.ip_address(hostname))]
    except ValueError:
        addresses = await resolve_host(hostname, port)

    for ip_str in addresses:
        if is_private_ip(ip_str):
            raise SSRFBlockedError(
                f"Blocked request to private/internal address: {url} resolves to {ip_str}",
            )
    return addresses


class SSRFGuardTransport(httpx.AsyncBaseTransport):
    """
    Transport that validates and pins every outgoing request to a checked address.

    The hostname is resolved again for each request (including every redirect
    hop) and the connection goes to the validated IP, while the Host header
    and TLS SNI keep the original hostname. A DNS answer that changes between
    validation and connect therefore cannot redirect the request inward.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._owns_transport = transport is None
        self._transport = transport or httpx.AsyncHTTPTransport(http2=True)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        """
        Validate the target, then forward the request pinned to a validated IP.

        Addresses are tried in resolver order; the next one is used only when
        the connection to the previous one fails.
        """
        addresses = await validate_url_not_private(str(request.url))

        extensions = dict(request.extensions)
        if request.url.scheme == 'https':
            extensions['sni_hostname'] = request.url.host

        connect_error: httpx.ConnectError | None = None
        for ip_str in addresses:
            pinned = httpx.Request(
                request.method,
                request.url.copy_with(host=ip_str),
                headers=request.headers,
                stream=request.stream,
                extensions=extensions,
            )
            try:
                return await self._transport.handle_async_request(pinned)
            except httpx.ConnectError as e:
                logger.debug("Connect to %s failed for %s: %s", ip_str, request.url.host, e)
                connect_error = e
        raise connect_error

    async def aclose(self) -> None:
        """Close the wrapped transport if this guard created it."""
        if self._owns_transport:
            await self._transport.aclose()


@dataclass
class LinkCheckResult:
    """Classified outcome of checking one URL."""

    status: LinkStatus
    http_status: int | None
    final_url: str
    error: str | None

    @property
    def is_ok(self) -> bool:
        """Check if the link was reachable."""
        return self.status is LinkStatus.OK


async def _send(client: httpx.AsyncClient, method: str, url: str) -> httpx.Response:
    """Send one request without reading the body; map httpx errors onto the error taxonomy."""
    try:
        response = await client.send(client.build_request(method, url), stream=True)
    except httpx.TimeoutException as e:
        raise TransientNetworkError(f"Request timed out: {url}") from e
    except httpx.NetworkError as e:
        raise TransientNetworkError(f"Connection failed: {e}") from e
    except httpx.HTTPError as e:
        raise PermanentHttpError(f"Request failed: {e}") from e
    await response.aclose()
    return response


async def _fetch_status(client: httpx.AsyncClient, url: str, max_redirects: int) -> tuple[int, str]:
    """
    Request a URL (HEAD, falling back to GET) and follow redirects manually.

    Returns:
        The final status code and the URL that produced it.

    Raises:
        PermanentHttpError: On an exhausted, blocked or malformed redirect chain.
        SSRFBlockedError: If the initial target is rejected at connect time.
        TransientNetworkError: On timeouts and connection failures.
    """
    current_url = url
    method = 'HEAD'
    redirects = 0
    last_redirect_status: int | None = None

    while True:
        try:
            response = await _send(client, method, current_url)
        except SSRFBlockedError as e:
            if redirects == 0:
                raise
            raise PermanentHttpError(
                f"Redirect blocked: {e}", status_code=last_redirect_status,
            ) from e
        except (ValueError, httpx.InvalidURL) as e:
            # A malformed Location header (e.g. an out-of-range port)
            raise PermanentHttpError(
                f"Invalid redirect target: {e}", status_code=last_redirect_status,
            ) from e

        if method == 'HEAD' and response.status_code in HEAD_REJECTED_STATUSES:
            method = 'GET'
            continue

        location = response.headers.get('location')
        if 300 <= response.status_code < 400 and location:
            if redirects >= max_redirects:
                raise PermanentHttpError(
                    f"Too many redirects (more than {max_redirects})",
                    status_code=response.status_code,
                )
            redirects += 1
            last_redirect_status = response.status_code
            current_url = urljoin(current_url, location)
            continue

        return response.status_code, current_url


async def check_link(  # noqa: ASYNC109
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
    max_redirects: int = DEFAULT_MAX_REDIRECTS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LinkCheckResult:
    """
    Check whether a URL is reachable and classify the outcome.

    Best-effort check that returns a classified result rather than raising.
    A HEAD request is sent first and retried as GET when the origin rejects
    HEAD (405/501). Redirects are followed up to max_redirects, each hop
    re-validated against private networks. One deadline of `timeout` seconds
    covers the whole check.

    Classification:
        - 2xx/3xx: ok
        - 4xx/5xx: broken, with the status code
        - timeout, DNS failure, refused/reset connection: timeout
        - SSRF-blocked target, invalid URL, redirect loop: broken

    Args:
        url:
            The URL to check.
        timeout:
            Overall deadline in seconds.
        max_redirects:
            Maximum redirect hops to follow.
        transport:
            Underlying transport (defaults to an HTTP/2-capable AsyncHTTPTransport).

    Returns:
        LinkCheckResult with status, HTTP status code and error info.
    """
    # SSRF protection: reject before any request is sent
    try:
        await validate_url_not_private(url)
    except (SSRFBlockedError, ValueError) as e:
        logger.warning("Link check blocked for %s: %s", url, e)
        return LinkCheckResult(
            status=LinkStatus.BROKEN, http_status=None, final_url=url, error=str(e),
        )
    except TransientNetworkError as e:
        return LinkCheckResult(
            status=LinkStatus.TIMEOUT, http_status=None, final_url=url, error=str(e),
        )

    try:
        async with asyncio.timeout(timeout):
            async with httpx.AsyncClient(
                transport=SSRFGuardTransport(transport),
                follow_redirects=False,
                timeout=timeout,
                headers={'User-Agent': USER_AGENT},
            ) as client:
                status_code, final_url = await _fetch_status(client, url, max_redirects)
    except TimeoutError:
        return LinkCheckResult(
            status=LinkStatus.TIMEOUT,
            http_status=None,
            final_url=url,
            error="Link check timed out",
        )
    except TransientNetworkError as e:
        return LinkCheckResult(
            status=LinkStatus.TIMEOUT, http_status=None, final_url=url, error=str(e),
        )
    except PermanentHttpError as e:
        return LinkCheckResult(
            status=LinkStatus.BROKEN, http_status=e.status_code, final_url=url, error=str(e),
        )
    except SSRFBlockedError as e:
        logger.warning("Link check blocked at connect time for %s: %s", url, e)
        return LinkCheckResult(
            status=LinkStatus.BROKEN, http_status=None, final_url=url, error=str(e),
        )

    return LinkCheckResult(
        status=classify_http_status(status_code),
        http_status=status_code,
        final_url=final_url,
        error=None,
    )


class LinkChecker:
    """Configured link checker, injected into the enrichment scheduler."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "LinkChecker":
        """Build a link checker from application settings."""
        return cls(
            timeout=settings.link_check_timeout,
            max_redirects=settings.link_check_max_redirects,
        )

    async def check(self, url: str) -> LinkCheckResult:
        """Check one URL. Never raises for per-URL problems."""
        return await check_link(
            url,
            timeout=self.timeout,
            max_redirects=self.max_redirects,
            transport=self._transport,
        )
