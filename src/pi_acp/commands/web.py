"""HTTP helpers behind the `/fetch` and `/search` commands."""

from __future__ import annotations

import html
import ipaddress
import re
from dataclasses import dataclass
from urllib.parse import quote_plus, urlparse

import httpx
from aiocache import SimpleMemoryCache

SAFE_SCHEMES = {"https", "http"}

DEFAULT_FETCH_TIMEOUT = 10.0
DEFAULT_FETCH_MAX_CHARS = 20_000
SEARCH_MAX_CHARS = 40_000
SEARCH_MAX_RESULTS = 5
SEARCH_URL = "https://duckduckgo.com/html/?q={query}"

_CACHE = SimpleMemoryCache()

_RESULT_LINK = re.compile(r'<a[^>]+class="result__a"[^>]+href="([^"]+)"[^>]*>(.*?)</a>', re.DOTALL)
_TAG = re.compile(r"<[^>]*>")


class WebFetchError(Exception):
    pass


@dataclass
class FetchResult:
    text: str
    truncated: bool
    status_code: int
    url: str


def _blocked_host(host: str | None) -> bool:
    """Reject local or private hosts."""
    if not host:
        return True
    lowered = host.lower()
    if lowered == "localhost":
        return True
    try:
        ip_obj = ipaddress.ip_address(lowered)
        if ip_obj.is_private or ip_obj.is_loopback or ip_obj.is_link_local:
            return True
    except ValueError:
        if lowered.endswith(".local"):
            return True
    return False


async def fetch_text(
    url: str,
    max_chars: int = DEFAULT_FETCH_MAX_CHARS,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
) -> FetchResult:
    """Fetch a URL as text, truncated to `max_chars` with a trailing `…`.

    Raises WebFetchError for disallowed URLs, transport failures and HTTP
    error statuses. Successful results are cached in memory.
    """
    parsed = urlparse(url)
    if parsed.scheme not in SAFE_SCHEMES:
        raise WebFetchError("Only http and https URLs are allowed.")
    if _blocked_host(parsed.hostname):
        raise WebFetchError("Blocked host for security reasons.")

    cache_key = (url, max_chars)
    cached = await _CACHE.get(cache_key)
    if cached is not None:
        return cached

    headers = {
        "User-Agent": "pi-acp-fetch/1.0",
        "Accept": "text/*, application/json;q=0.9, */*;q=0.1",
    }
    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:
        raise WebFetchError(str(exc) or exc.__class__.__name__) from exc
    if response.status_code >= 400:
        raise WebFetchError(f"HTTP {response.status_code} for {response.url}")

    text = response.text
    truncated = len(text) > max_chars
    if truncated:
        text = text[:max_chars] + "…"
    result = FetchResult(text=text, truncated=truncated, status_code=response.status_code, url=str(response.url))
    await _CACHE.set(cache_key, result)
    return result


def parse_search_results(page: str, limit: int = SEARCH_MAX_RESULTS) -> list[tuple[str, str]]:
    """Extract `(title, href)` pairs from a DuckDuckGo HTML results page."""
    results: list[tuple[str, str]] = []
    for match in _RESULT_LINK.finditer(page):
        title = html.unescape(_TAG.sub("", match.group(2)).strip())
        results.append((title, match.group(1)))
        if len(results) >= limit:
            break
    return results


async def search_web(query: str) -> str:
    result = await fetch_text(SEARCH_URL.format(query=quote_plus(query)), SEARCH_MAX_CHARS)
    results = parse_search_results(result.text)
    if not results:
        return "No results found."
    return "\n\n".join(f"{index}. {title}\n{href}" for index, (title, href) in enumerate(results, start=1))


async def clear_fetch_cache() -> None:
    """Clear the in-memory fetch cache (used in tests)."""

    await _CACHE.clear()
