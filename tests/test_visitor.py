import httpx
import pytest

from portfolio_analytics.services.visitor_service import (
    GeoLocator,
    VisitorResolver,
    derive_page_title,
    extract_client_ip,
    generate_session_id,
    is_public_ip,
    parse_user_agent,
)

CHROME_DESKTOP = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
SAFARI_IPAD = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


class TestClientIp:
    def test_first_forwarded_for_token(self):
        headers = {"x-forwarded-for": " 198.51.100.4 , 10.0.0.1", "x-real-ip": "10.0.0.2"}
        assert extract_client_ip(headers) == "198.51.100.4"

    def test_real_ip_fallback(self):
        assert extract_client_ip({"x-real-ip": "198.51.100.9"}) == "198.51.100.9"

    def test_default_loopback(self):
        assert extract_client_ip({}) == "127.0.0.1"


class TestUserAgent:
    def test_desktop_chrome(self):
        device, browser = parse_user_agent(CHROME_DESKTOP)
        assert device == "desktop"
        assert browser.startswith("Chrome 120")

    def test_mobile(self):
        device, browser = parse_user_agent(SAFARI_IPHONE)
        assert device == "mobile"
        assert "Safari" in browser

    def test_tablet(self):
        device, _ = parse_user_agent(SAFARI_IPAD)
        assert device == "tablet"

    def test_empty_user_agent(self):
        assert parse_user_agent("") == ("desktop", "Unknown")


class TestHelpers:
    @pytest.mark.parametrize(
        "ip,expected",
        [
            ("8.8.8.8", True),
            ("127.0.0.1", False),
            ("::1", False),
            ("192.168.1.20", False),
            ("10.1.2.3", False),
            ("not-an-ip", False),
        ],
    )
    def test_is_public_ip(self, ip, expected):
        assert is_public_ip(ip) is expected

    def test_session_id_is_32_chars_and_time_dependent(self):
        a = generate_session_id("203.0.113.7", CHROME_DESKTOP, now=1_700_000_000.0)
        b = generate_session_id("203.0.113.7", CHROME_DESKTOP, now=1_700_000_000.5)
        assert len(a) == 32
        assert a == generate_session_id("203.0.113.7", CHROME_DESKTOP, now=1_700_000_000.0)
        assert a != b

    @pytest.mark.parametrize(
        "url,title",
        [
            ("/", "Home"),
            ("/projects", "Projects"),
            ("/projects/", "Projects"),
            ("/projects/analytics-engine", "Project Details"),
            ("/about?ref=nav", "About"),
            ("/blog/async-python", "Blog Async-python"),
            ("", "Home"),
        ],
    )
    def test_derive_page_title(self, url, title):
        assert derive_page_title(url) == title


def _geo(handler, **kwargs) -> GeoLocator:
    return GeoLocator(
        base_url="http://geo.test/json",
        enabled=True,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestGeoLocator:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url)
            return httpx.Response(
                200, json={"status": "success", "country": "Germany", "city": "Berlin"}
            )

        assert await _geo(handler).lookup("8.8.8.8") == ("Germany", "Berlin")
        assert seen[0].path == "/json/8.8.8.8"

    @pytest.mark.asyncio
    async def test_upstream_reports_failure(self):
        def handler(request):
            return httpx.Response(200, json={"status": "fail", "message": "reserved range"})

        assert await _geo(handler).lookup("8.8.8.8") is None

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        assert await _geo(handler).lookup("8.8.8.8") is None

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        assert await _geo(handler).lookup("8.8.8.8") is None

    @pytest.mark.asyncio
    async def test_bad_json(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        assert await _geo(handler).lookup("8.8.8.8") is None

    @pytest.mark.asyncio
    async def test_private_ip_skips_lookup(self):
        def handler(request):
            raise AssertionError("lookup must not be attempted")

        assert await _geo(handler).lookup("192.168.1.20") is None
        assert await _geo(handler).lookup("127.0.0.1") is None

    @pytest.mark.asyncio
    async def test_disabled(self):
        def handler(request):
            raise AssertionError("lookup must not be attempted")

        geo = GeoLocator(enabled=False, transport=httpx.MockTransport(handler))
        assert await geo.lookup("8.8.8.8") is None


class TestVisitorResolver:
    @pytest.mark.asyncio
    async def test_resolve_headers(self):
        def handler(request):
            body = {"status": "success", "country": "Japan", "city": "Tokyo"}
            return httpx.Response(200, json=body)

        resolver = VisitorResolver(_geo(handler))
        info = await resolver.resolve_headers(
            {"user-agent": SAFARI_IPHONE, "x-forwarded-for": "8.8.4.4"}
        )
        assert info.ip_address == "8.8.4.4"
        assert info.device == "mobile"
        assert info.country == "Japan"
        assert info.city == "Tokyo"

    @pytest.mark.asyncio
    async def test_resolve_without_geo(self):
        resolver = VisitorResolver(GeoLocator(enabled=False))
        info = await resolver.resolve(None, None)
        assert info.ip_address == "127.0.0.1"
        assert info.device == "desktop"
        assert info.browser == "Unknown"
        assert info.country is None
