"""HTTP fetch tool with SSRF protection.

fetch_url retrieves a page over httpx, follows redirects by hand so every
hop is checked against private/loopback ranges, and strips HTML down to
readable text.
"""

from __future__ import annotations

import asyncio
import html as html_module
import ipaddress
import logging
import re
import socket
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from siber.api.tools import ToolRegistry
from siber.config import Settings

logger = logging.getLogger(__name__)

_MAX_REDIRECTS = 5
_HARD_MAX_CHARS = 50000

_BLOCKED_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]

_BLOCKED_HOSTNAMES = {"localhost", "0.0.0.0"}


async def _is_url_safe(url: str) -> tuple[bool, str]:
    """Resolve the URL's host and reject blocked names and IP ranges.

    Returns (is_safe, error_message).
    """
    hostname = urlparse(url).hostname
    if not hostname:
        return False, "Could not parse hostname from URL"
    if hostname.lower() in _BLOCKED_HOSTNAMES:
        return False, f"Blocked hostname: {hostname}"

    try:
        addr_infos = await asyncio.to_thread(socket.getaddrinfo, hostname, None)
    except socket.gaierror:
        return False, f"Could not resolve hostname: {hostname}"

    for addr_info in addr_infos:
        ip = ipaddress.ip_address(addr_info[4][0])
        for network in _BLOCKED_NETWORKS:
            if ip in network:
                return False, f"URL resolves to blocked IP range ({network})"
    return True, ""


async def fetch_url_tool(
    url: str,
    max_chars: int | None = None,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> dict[str, Any]:
    if not url.startswith(("http://", "https://")):
        return {"success": False, "error": "URL must start with http:// or https://", "url": url}

    is_safe, error = await _is_url_safe(url)
    if not is_safe:
        return {"success": False, "error": f"Blocked: {error}", "url": url}

    effective_max = min(max_chars or _settings.fetch_max_chars, _HARD_MAX_CHARS)

    current_url = url
    try:
        for _ in range(_MAX_REDIRECTS + 1):
            response = await _http.get(
                current_url,
                headers={"User-Agent": "siber-agent/0.1"},
                follow_redirects=False,
                timeout=15,
            )
            location = response.headers.get("location", "")
            if response.status_code not in (301, 302, 303, 307, 308) or not location:
                break
            redirect_url = urljoin(current_url, location)
            redirect_safe, redirect_error = await _is_url_safe(redirect_url)
            if not redirect_safe:
                return {
                    "success": False,
                    "error": f"Blocked redirect to unsafe URL: {redirect_error}",
                    "url": url,
                }
            current_url = redirect_url
        else:
            return {"success": False, "error": f"Too many redirects (max {_MAX_REDIRECTS})", "url": url}
    except httpx.TimeoutException:
        return {"success": False, "error": f"Fetch timed out for: {url}", "url": url}
    except httpx.HTTPError as e:
        return {"success": False, "error": f"Could not fetch {url}: {e}", "url": url}

    content_type = response.headers.get("content-type", "")
    is_text = any(t in content_type for t in ("text/", "application/json", "application/xml", "application/xhtml"))
    if content_type and not is_text:
        return {
            "success": False,
            "error": f"Cannot extract text from binary content (content-type: {content_type})",
            "url": url,
        }

    text = _extract_readable(response.text) if "html" in content_type else response.text
    truncated = len(text) > effective_max
    if truncated:
        text = text[:effective_max]

    return {
        "success": response.is_success,
        "url": current_url,
        "status_code": response.status_code,
        "content_type": content_type,
        "content": text,
        "truncated": truncated,
        **({} if response.is_success else {"error": f"HTTP {response.status_code}"}),
    }


def _extract_readable(html: str) -> str:
    """Extract readable text from HTML using stdlib."""
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer)[^>]*>.*?</\1>",
        "", html, flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def register_web_tools(
    registry: ToolRegistry,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> None:
    """Register fetch_url. Uses its own httpx client, separate from providers."""

    async def _fetch(url: str, max_chars: int | None = None) -> dict[str, Any]:
        return await fetch_url_tool(url, max_chars, _settings=settings, _http=http_client)

    registry.register(
        "fetch_url", _fetch, "Fetch a web page and return its readable text",
        {"url": "http(s) URL", "max_chars": f"truncate after this many characters (default {settings.fetch_max_chars})"},
    )
