"""Web tools: web_search and web_fetch.

Search goes through the Google Custom Search JSON API behind a daily rate
limiter.  Page fetches are SSRF-checked on every redirect hop and raced
against a fixed wall-clock ceiling.  Uses its own httpx client, never the
assistant client that carries API credentials.
"""

from __future__ import annotations

import asyncio
import html as html_module
import ipaddress
import logging
import re
import socket
import time
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from prospector.api.tools import ToolDispatcher
from prospector.config import Settings
from prospector.errors import WebToolError

logger = logging.getLogger(__name__)

_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
_QUOTA_REASONS = {"dailyLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "rateLimitExceeded"}

# Blocked IP ranges for SSRF protection
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

_BLOCKED_HOSTNAMES = {"localhost", "postgres", "prospector", "redis", "0.0.0.0"}


class DailyRateLimiter:
    """Counts calls per UTC day and refuses once the limit is reached."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._date = ""
        self._count = 0

    @property
    def used(self) -> int:
        return self._count if self._date == time.strftime("%Y-%m-%d", time.gmtime()) else 0

    def try_acquire(self) -> bool:
        today = time.strftime("%Y-%m-%d", time.gmtime())
        if self._date != today:
            self._date = today
            self._count = 0
        if self._count >= self.limit:
            return False
        self._count += 1
        if self._count >= int(self.limit * 0.8):
            logger.warning("Web search rate limit at %d/%d", self._count, self.limit)
        return True


def _is_url_safe(url: str) -> tuple[bool, str]:
    """Check a URL against blocked hostnames and private IP ranges.

    Returns (is_safe, error_message).
    """
    parsed = urlparse(url)
    hostname = parsed.hostname
    if not hostname:
        return False, "Could not parse hostname from URL"
    if hostname.lower() in _BLOCKED_HOSTNAMES:
        return False, f"Blocked hostname: {hostname}"
    try:
        addr_infos = socket.getaddrinfo(hostname, None)
    except socket.gaierror:
        return False, f"Could not resolve hostname: {hostname}"
    for addr_info in addr_infos:
        ip = ipaddress.ip_address(addr_info[4][0])
        for network in _BLOCKED_NETWORKS:
            if ip in network:
                return False, f"URL resolves to blocked IP range ({network})"
    return True, ""


def _extract_readable(html: str) -> str:
    """Extract readable text from HTML."""
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer)[^>]*>.*?</\1>",
        "", html, flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


class WebTools:
    """Search and fetch operations sharing one httpx client and rate limiter."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        limiter: DailyRateLimiter | None = None,
    ) -> None:
        self._settings = settings
        self._http = http_client
        self.limiter = limiter or DailyRateLimiter(settings.web_search_daily_limit)

    async def search(self, query: str, count: int = 5) -> list[dict[str, str]]:
        """Search the web. Returns [{title, link, snippet}, ...]."""
        settings = self._settings
        if not settings.google_search_api_key or not settings.google_search_engine_id:
            raise WebToolError("GOOGLE_SEARCH_API_KEY / GOOGLE_SEARCH_ENGINE_ID not configured")
        if not self.limiter.try_acquire():
            raise WebToolError(f"Daily web search limit reached ({self.limiter.limit})")

        try:
            response = await self._http.get(
                _SEARCH_URL,
                params={
                    "q": query,
                    "cx": settings.google_search_engine_id,
                    "key": settings.google_search_api_key,
                    "num": max(1, min(count, 10)),
                },
                timeout=10,
            )
        except httpx.TimeoutException as exc:
            raise WebToolError("Web search timed out") from exc
        except httpx.HTTPError as exc:
            raise WebToolError(f"Could not connect to search service: {exc}") from exc

        if response.status_code != 200:
            reasons = set()
            try:
                errors = response.json().get("error", {}).get("errors", [])
                reasons = {e.get("reason") for e in errors}
            except ValueError:
                pass
            if reasons & _QUOTA_REASONS:
                raise WebToolError("Google Search quota exceeded")
            raise WebToolError(f"Search failed (HTTP {response.status_code})")

        items = response.json().get("items") or []
        return [
            {
                "title": item.get("title", ""),
                "link": item.get("link", ""),
                "snippet": item.get("snippet", ""),
            }
            for item in items[:count]
        ]

    async def fetch(self, url: str, max_chars: int | None = None) -> dict[str, Any]:
        """Fetch a page and return its readable text, bounded by web_fetch_timeout."""
        timeout = self._settings.web_fetch_timeout
        try:
            return await asyncio.wait_for(self._fetch(url, max_chars), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise WebToolError(f"Fetch timed out after {timeout:g}s: {url}") from exc

    async def _fetch(self, url: str, max_chars: int | None) -> dict[str, Any]:
        if not url.startswith(("http://", "https://")):
            raise WebToolError("URL must start with http:// or https://")
        is_safe, error = _is_url_safe(url)
        if not is_safe:
            raise WebToolError(f"Blocked: {error}")

        effective_max = min(max_chars or self._settings.web_fetch_max_chars, 50000)

        # Follow redirects manually so every hop gets the SSRF check
        max_redirects = 5
        current_url = url
        response = None
        try:
            for _ in range(max_redirects + 1):
                response = await self._http.get(
                    current_url,
                    headers={"User-Agent": "Prospector/0.1 (lead research)"},
                    follow_redirects=False,
                )
                if response.status_code not in (301, 302, 303, 307, 308):
                    break
                location = response.headers.get("location", "")
                if not location:
                    break
                redirect_url = urljoin(current_url, location)
                redirect_safe, redirect_error = _is_url_safe(redirect_url)
                if not redirect_safe:
                    raise WebToolError(f"Blocked redirect to unsafe URL: {redirect_error}")
                current_url = redirect_url
            else:
                raise WebToolError(f"Too many redirects (max {max_redirects})")
        except httpx.HTTPError as exc:
            raise WebToolError(f"Could not fetch {url}: {exc}") from exc

        content_type = response.headers.get("content-type", "")
        is_text = any(t in content_type for t in ("text/", "application/json", "application/xml", "application/xhtml"))
        if content_type and not is_text:
            raise WebToolError(f"Cannot extract text from binary content (content-type: {content_type})")

        if "html" in content_type:
            text = _extract_readable(response.text)
        else:
            text = response.text

        truncated = len(text) > effective_max
        if truncated:
            text = text[:effective_max]

        return {
            "url": current_url,
            "status_code": response.status_code,
            "content": text,
            "truncated": truncated,
        }


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------


_WEB_SEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Search the web for information about a company or person. Returns titles, links, and snippets.",
    "properties": {
        "query": {"type": "string", "description": "Search query string"},
        "count": {
            "type": "integer",
            "description": "Number of results (1-10, default 5)",
            "minimum": 1,
            "maximum": 10,
        },
    },
    "required": ["query"],
}

_WEB_FETCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Fetch a web page and return its readable text.",
    "properties": {
        "url": {"type": "string", "description": "URL to fetch (must be http or https)"},
        "max_chars": {
            "type": "integer",
            "description": "Maximum characters to return (default from config, max 50000)",
            "maximum": 50000,
        },
    },
    "required": ["url"],
}


def register_web_tools(dispatcher: ToolDispatcher, web: WebTools) -> None:
    """Register web_search and web_fetch with the dispatcher."""

    async def web_search(query: str, count: int = 5) -> dict[str, Any]:
        results = await web.search(query, count)
        return {"query": query, "results": results}

    async def web_fetch(url: str, max_chars: int | None = None) -> dict[str, Any]:
        return await web.fetch(url, max_chars)

    dispatcher.register("web_search", web_search, _WEB_SEARCH_SCHEMA)
    dispatcher.register("web_fetch", web_fetch, _WEB_FETCH_SCHEMA)
