"""Client IP extraction behind proxies, and optional GeoIP lookup for audit rows."""
from __future__ import annotations

import ipaddress
import logging

import httpx
from fastapi import Request

from app.config import get_settings

logger = logging.getLogger("uvicorn.error")

LOOPBACK_PLACEHOLDER = "127.0.0.1"

# Checked in this order; the first valid address wins
PROXY_HEADERS = (
    "x-forwarded-for",  # may hold a list; first entry is the client
    "cf-connecting-ip",
    "x-real-ip",
    "x-client-ip",
    "x-appengine-user-ip",
    "true-client-ip",
)


def is_valid_ip(value: str | None) -> bool:
    if not value:
        return False
    try:
        ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    return True


def get_client_ip(request: Request) -> str:
    for header in PROXY_HEADERS:
        value = request.headers.get(header)
        if not value:
            continue
        candidate = value.split(",")[0].strip()
        if is_valid_ip(candidate):
            return candidate
    peer = request.client.host if request.client else None
    if is_valid_ip(peer):
        return peer
    return LOOPBACK_PLACEHOLDER


def get_user_agent(request: Request) -> str | None:
    return (request.headers.get("user-agent") or "").strip() or None


def get_approximate_location(ip: str, transport: httpx.BaseTransport | None = None) -> dict[str, str] | None:
    """{"country", "city"} for the IP, or None. Disabled unless GEOIP_LOOKUP_ENABLED is set."""
    settings = get_settings()
    if not settings.geoip_lookup_enabled or not is_valid_ip(ip):
        return None
    addr = ipaddress.ip_address(ip)
    if addr.is_private or addr.is_loopback:
        return None
    try:
        with httpx.Client(timeout=3.0, transport=transport) as client:
            r = client.get(settings.geoip_url_template.format(ip=ip))
        if r.status_code != 200:
            return None
        data = r.json() or {}
    except (httpx.HTTPError, ValueError) as e:
        logger.info("[GeoIP] lookup failed for %s: %s", ip, type(e).__name__)
        return None
    out = {k: str(data[k]) for k in ("country", "city") if data.get(k)}
    return out or None
