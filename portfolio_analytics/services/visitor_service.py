import hashlib
import ipaddress
import logging
import time
from collections.abc import Mapping

import httpx
from user_agents import parse

from portfolio_analytics.core.config import settings
from portfolio_analytics.schemas.tracking import VisitorInfo

logger = logging.getLogger(__name__)

DEFAULT_IP = "127.0.0.1"
GEO_FIELDS = "status,country,city"
GEO_USER_AGENT = "Portfolio-Analytics/1.0"

PAGE_TITLES = {
    "/": "Home",
    "/projects": "Projects",
    "/about": "About",
    "/contact": "Contact",
    "/resume": "Resume",
}


def extract_client_ip(headers: Mapping[str, str]) -> str:
    """Client IP from proxy headers, falling back to loopback."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return DEFAULT_IP


def parse_user_agent(user_agent: str) -> tuple[str, str]:
    """Return ``(device, browser)`` for a raw User-Agent string."""
    if not user_agent:
        return "desktop", "Unknown"
    ua = parse(user_agent)
    if ua.is_tablet:
        device = "tablet"
    elif ua.is_mobile:
        device = "mobile"
    else:
        device = "desktop"

    family = ua.browser.family
    if not family or family == "Other":
        return device, "Unknown"
    return device, f"{family} {ua.browser.version_string}".strip()


def is_public_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_unspecified
        or addr.is_reserved
        or addr.is_multicast
    )


def generate_session_id(ip_address: str, user_agent: str, now: float | None = None) -> str:
    """Derive a 32-char session id from IP, User-Agent and the current time."""
    stamp = int((now if now is not None else time.time()) * 1000)
    raw = f"{ip_address}-{user_agent}-{stamp}".encode()
    return hashlib.sha256(raw).hexdigest()[:32]


def derive_page_title(page_url: str) -> str:
    path = page_url.split("?", 1)[0].split("#", 1)[0] or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    if path in PAGE_TITLES:
        return PAGE_TITLES[path]
    if path.startswith("/projects/"):
        return "Project Details"
    segments = [s[:1].upper() + s[1:] for s in path.split("/") if s]
    return " ".join(segments) or "Home"


class GeoLocator:
    """Best-effort country/city lookup against an ip-api compatible endpoint.

    Never raises: every failure is logged and reported as ``None``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        enabled: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.GEO_LOOKUP_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GEO_LOOKUP_TIMEOUT_SECONDS
        self.enabled = settings.GEO_LOOKUP_ENABLED if enabled is None else enabled
        self._transport = transport

    async def lookup(self, ip: str) -> tuple[str | None, str | None] | None:
        if not self.enabled or not is_public_ip(ip):
            return None
        url = f"{self.base_url}/{ip}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    url,
                    params={"fields": GEO_FIELDS},
                    headers={"User-Agent": GEO_USER_AGENT},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Geo lookup for %s failed: %s", ip, exc)
            return None

        if not isinstance(data, dict) or data.get("status") != "success":
            logger.warning("Geo lookup for %s returned no match", ip)
            return None
        return data.get("country"), data.get("city")


class VisitorResolver:
    """Turns request metadata into a ``VisitorInfo``. Holds no mutable state."""

    def __init__(self, geo: GeoLocator | None = None):
        self.geo = geo or GeoLocator()

    async def resolve(self, user_agent: str | None, ip_address: str | None) -> VisitorInfo:
        user_agent = user_agent or ""
        ip_address = ip_address or DEFAULT_IP
        device, browser = parse_user_agent(user_agent)

        country = city = None
        geo = await self.geo.lookup(ip_address)
        if geo:
            country, city = geo

        return VisitorInfo(
            user_agent=user_agent,
            ip_address=ip_address,
            device=device,
            browser=browser,
            country=country,
            city=city,
        )

    async def resolve_headers(self, headers: Mapping[str, str]) -> VisitorInfo:
        return await self.resolve(headers.get("user-agent"), extract_client_ip(headers))
