"""
Tests for the link checker.

Requests go through httpx.MockTransport wrapped by SSRFGuardTransport, and DNS
is patched, so no network access is needed. Note that the guard pins each
request to the resolved IP: handlers see the IP in request.url and the
original hostname in the Host header.
"""
import asyncio
from collections.abc import Callable, Iterator
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from models.bookmark import LinkStatus
from services.exceptions import TransientNetworkError
from services.link_checker import (
    USER_AGENT,
    LinkChecker,
    SSRFGuardTransport,
    check_link,
)


PUBLIC_IP = "93.184.216.34"


@pytest.fixture
def resolver() -> Iterator[AsyncMock]:
    """Resolve every hostname to a public address unless a test says otherwise."""
    mock = AsyncMock(return_value=[PUBLIC_IP])
    with patch("services.link_checker.resolve_host", new=mock):
        yield mock


def mock_transport(handler: Callable) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


class TestCheckLinkClassification:
    """Tests for classifying responses."""

    async def test__check_link__200_ok(self, resolver: AsyncMock) -> None:
        """A 200 response is ok."""
        transport = mock_transport(lambda request: httpx.Response(200))

        result = await check_link("https://example.com/", transport=transport)

        assert result.status is LinkStatus.OK
        assert result.http_status == 200
        assert result.error is None
        assert result.is_ok

    @pytest.mark.parametrize("code", [404, 410, 500, 503])
    async def test__check_link__error_codes_broken(self, resolver: AsyncMock, code: int) -> None:
        """4xx/5xx responses are broken with the code recorded."""
        transport = mock_transport(lambda request: httpx.Response(code))

        result = await check_link("https://example.com/page", transport=transport)

        assert result.status is LinkStatus.BROKEN
        assert result.http_status == code

    async def test__check_link__redirect_without_location_ok(self, resolver: AsyncMock) -> None:
        """A 3xx without a Location header counts as reachable."""
        transport = mock_transport(lambda request: httpx.Response(304))

        result = await check_link("https://example.com/", transport=transport)

        assert result.status is LinkStatus.OK
        assert result.http_status == 304

    async def test__check_link__head_rejected_falls_back_to_get(self, resolver: AsyncMock) -> None:
        """Origins answering HEAD with 405 are retried with GET."""
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            if request.method == "HEAD":
                return httpx.Response(405)
            return httpx.Response(200)

        result = await check_link("https://example.com/", transport=mock_transport(handler))

        assert methods == ["HEAD", "GET"]
        assert result.status is LinkStatus.OK

    async def test__check_link__head_501_falls_back_to_get(self, resolver: AsyncMock) -> None:
        """501 on HEAD also triggers the GET fallback."""
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(501 if request.method == "HEAD" else 404)

        result = await check_link("https://example.com/", transport=mock_transport(handler))

        assert methods == ["HEAD", "GET"]
        assert result.status is LinkStatus.BROKEN
        assert result.http_status == 404


class TestCheckLinkRedirects:
    """Tests for manual redirect handling."""

    async def test__check_link__follows_redirects(self, resolver: AsyncMock) -> None:
        """Redirects are followed and the final URL is reported."""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": "/new"})
            return httpx.Response(200)

        result = await check_link("https://example.com/old", transport=mock_transport(handler))

        assert result.status is LinkStatus.OK
        assert result.final_url == "https://example.com/new"

    async def test__check_link__too_many_redirects_broken(self, resolver: AsyncMock) -> None:
        """An endless redirect chain is broken with the last 3xx code."""
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(302, headers={"location": f"/hop{len(calls)}"})

        result = await check_link(
            "https://example.com/", max_redirects=2, transport=mock_transport(handler),
        )

        assert result.status is LinkStatus.BROKEN
        assert result.http_status == 302
        assert "Too many redirects" in result.error
        assert len(calls) == 3

    async def test__check_link__redirect_to_private_address_blocked(
        self, resolver: AsyncMock,
    ) -> None:
        """A redirect into the private network is blocked before it is requested."""
        async def resolve(hostname: str, port: int | None = None) -> list[str]:
            return ["10.0.0.7"] if hostname == "internal.example" else [PUBLIC_IP]

        resolver.side_effect = resolve
        hosts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.headers["host"])
            return httpx.Response(302, headers={"location": "http://internal.example/admin"})

        result = await check_link("https://example.com/", transport=mock_transport(handler))

        assert result.status is LinkStatus.BROKEN
        assert result.http_status == 302
        assert "Redirect blocked" in result.error
        assert hosts == ["example.com"]

    async def test__check_link__redirect_to_malformed_url_broken(
        self, resolver: AsyncMock,
    ) -> None:
        """A Location with an invalid port is broken, not an exception."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(301, headers={"location": "http://example.com:99999/x"})

        result = await check_link("https://example.com/", transport=mock_transport(handler))

        assert result.status is LinkStatus.BROKEN
        assert result.http_status == 301
        assert "Invalid redirect target" in result.error


class TestCheckLinkNetworkErrors:
    """Tests for transient failures."""

    async def test__check_link__read_timeout_is_timeout(self, resolver: AsyncMock) -> None:
        """An httpx timeout maps to timeout."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        result = await check_link("https://example.com/", transport=mock_transport(handler))

        assert result.status is LinkStatus.TIMEOUT
        assert result.http_status is None

    async def test__check_link__connection_refused_is_timeout(self, resolver: AsyncMock) -> None:
        """Refused connections are transient."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await check_link("https://example.com/", transport=mock_transport(handler))

        assert result.status is LinkStatus.TIMEOUT

    async def test__check_link__dns_failure_is_timeout(self, resolver: AsyncMock) -> None:
        """A hostname that doesn't resolve is transient, and nothing is requested."""
        resolver.side_effect = TransientNetworkError("Could not resolve hostname: nope.example")
        handler = AsyncMock()

        result = await check_link("https://nope.example/", transport=mock_transport(handler))

        assert result.status is LinkStatus.TIMEOUT
        handler.assert_not_called()

    async def test__check_link__overall_deadline(self, resolver: AsyncMock) -> None:
        """A slow origin is cut off by the overall timeout."""
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        result = await check_link(
            "https://example.com/", timeout=0.05, transport=mock_transport(handler),
        )

        assert result.status is LinkStatus.TIMEOUT
        assert result.error == "Link check timed out"


class TestCheckLinkSSRF:
    """Tests for private-network protection in check_link."""

    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/",
        "http://localhost/",
        "http://169.254.169.254/latest/meta-data/",
        "ftp://example.com/file",
        "https://example.com:6379/",
    ])
    async def test__check_link__blocked_targets_broken_without_request(
        self, resolver: AsyncMock, url: str,
    ) -> None:
        """Blocked URLs are broken and no request is sent."""
        handler = AsyncMock()

        result = await check_link(url, transport=mock_transport(handler))

        assert result.status is LinkStatus.BROKEN
        assert result.http_status is None
        handler.assert_not_called()

    async def test__check_link__hostname_resolving_private_blocked(
        self, resolver: AsyncMock,
    ) -> None:
        """A public-looking name that resolves to a private IP is blocked."""
        resolver.return_value = ["192.168.1.10"]
        handler = AsyncMock()

        result = await check_link("https://sneaky.example/", transport=mock_transport(handler))

        assert result.status is LinkStatus.BROKEN
        assert "private/internal" in result.error
        handler.assert_not_called()

    async def test__check_link__dns_rebinding_caught_at_connect(
        self, resolver: AsyncMock,
    ) -> None:
        """If DNS changes between validation and connect, the connect-time check blocks it."""
        resolver.side_effect = [[PUBLIC_IP], ["127.0.0.1"]]
        handler = AsyncMock()

        result = await check_link("https://rebind.example/", transport=mock_transport(handler))

        assert result.status is LinkStatus.BROKEN
        handler.assert_not_called()


class TestSSRFGuardTransport:
    """Tests for address pinning."""

    async def test__guard__pins_ip_and_keeps_host_header(self, resolver: AsyncMock) -> None:
        """The connection goes to the validated IP; Host and SNI keep the hostname."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        guard = SSRFGuardTransport(mock_transport(handler))
        async with httpx.AsyncClient(transport=guard) as client:
            await client.get("https://example.com/path?q=1", headers={"User-Agent": USER_AGENT})

        request = seen[0]
        assert request.url.host == PUBLIC_IP
        assert request.url.path == "/path"
        assert request.url.query == b"q=1"
        assert request.headers["host"] == "example.com"
        assert request.headers["user-agent"] == USER_AGENT
        assert request.extensions["sni_hostname"] == "example.com"

    async def test__guard__falls_back_to_next_address(self, resolver: AsyncMock) -> None:
        """When the first validated address can't be reached the next one is tried."""
        resolver.return_value = [PUBLIC_IP, "93.184.216.35"]
        hosts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == PUBLIC_IP:
                raise httpx.ConnectError("network unreachable", request=request)
            return httpx.Response(200)

        result = await check_link("https://example.com/", transport=mock_transport(handler))

        assert result.status is LinkStatus.OK
        assert hosts == [PUBLIC_IP, "93.184.216.35"]

    async def test__guard__all_addresses_unreachable(self, resolver: AsyncMock) -> None:
        """If no validated address accepts a connection the check is a timeout."""
        resolver.return_value = [PUBLIC_IP, "93.184.216.35"]

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("network unreachable", request=request)

        result = await check_link("https://example.com/", transport=mock_transport(handler))

        assert result.status is LinkStatus.TIMEOUT


class TestLinkChecker:
    """Tests for the injectable LinkChecker."""

    async def test__link_checker__uses_configured_transport(self, resolver: AsyncMock) -> None:
        """LinkChecker.check delegates to check_link with its settings."""
        checker = LinkChecker(
            timeout=5.0,
            max_redirects=1,
            transport=mock_transport(lambda request: httpx.Response(418)),
        )

        result = await checker.check("https://example.com/")

        assert result.status is LinkStatus.BROKEN
        assert result.http_status == 418
