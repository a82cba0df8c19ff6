"""Plex watchlist RSS feed client."""

import asyncio
import logging
from importlib.metadata import metadata
from typing import Any

import httpx

from ..config import FeedConfig
from ..models import MediaKind, WatchlistItem

logger = logging.getLogger(__name__)

# Connection pool limits
DEFAULT_LIMITS = httpx.Limits(max_connections=10, max_keepalive_connections=5)

# Feed category -> item kind
KIND_BY_CATEGORY: dict[str, MediaKind] = {
    "movie": MediaKind.MOVIE,
    "show": MediaKind.SERIES,
    "tv": MediaKind.SERIES,
}

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_PKG_NAME = "watchlist-feed-sync"
_pkg_meta = metadata(_PKG_NAME)
USER_AGENT = f"{_pkg_meta['Name']}/{_pkg_meta['Version']}"


def parse_guids(guids: list[str] | None) -> dict[str, str]:
    """Split ``scheme://value`` identifiers into a scheme -> value mapping."""
    parsed: dict[str, str] = {}
    for guid in guids or []:
        scheme, sep, value = str(guid).partition("://")
        if sep and scheme and value:
            parsed[scheme.lower()] = value
    return parsed


def _to_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        logger.debug("Ignoring non-numeric id: %s", value)
        return None


def parse_entry(entry: dict[str, Any]) -> WatchlistItem | None:
    """Normalise a raw feed entry. Returns None for unsupported categories."""
    category = str(entry.get("category", "")).lower()
    kind = KIND_BY_CATEGORY.get(category)
    if kind is None:
        logger.debug("Skipping feed entry '%s' with category '%s'", entry.get("title"), category)
        return None

    guids = entry.get("guids") or []
    ids = parse_guids(guids)
    external_id = entry.get("id") or entry.get("link") or (guids[0] if guids else "")

    return WatchlistItem(
        external_id=str(external_id),
        tmdb_id=_to_int(ids.get("tmdb")) or 0,
        tvdb_id=_to_int(ids.get("tvdb")),
        kind=kind,
        title=str(entry.get("title", "")),
    )


class WatchlistFeedClient:
    """Async client for watchlist RSS feeds (JSON format)."""

    def __init__(self, config: FeedConfig | None = None):
        self.config = config or FeedConfig()
        self.headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds),
                limits=DEFAULT_LIMITS,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Make a request, retrying transport errors and retryable status codes."""
        client = await self._get_client()
        attempts = max(self.config.max_retries, 0) + 1

        for attempt in range(attempts):
            delay = self.config.retry_backoff_seconds * (2**attempt)
            try:
                response = await client.request(method, url, headers=self.headers, **kwargs)
            except httpx.TransportError as e:
                if attempt + 1 >= attempts:
                    raise
                logger.debug("%s %s failed (%s), retrying in %.1fs", method, url, e, delay)
                await asyncio.sleep(delay)
                continue

            if response.status_code in RETRY_STATUS_CODES and attempt + 1 < attempts:
                logger.debug("%s %s returned %d, retrying in %.1fs", method, url, response.status_code, delay)
                await asyncio.sleep(delay)
                continue

            response.raise_for_status()
            return response

        raise RuntimeError("unreachable")  # pragma: no cover

    async def _get_page(self, url: str) -> dict[str, Any]:
        """Fetch one page of the feed."""
        response = await self._request("GET", url)
        return response.json()

    async def probe(self, url: str) -> str | None:
        """HEAD the feed and return its ETag, without transferring the body.

        Raises httpx.HTTPError on failure.
        """
        response = await self._request("HEAD", url)
        etag = response.headers.get("etag")
        logger.debug("Feed probe etag: %s", etag)
        return etag

    async def fetch_items(self, url: str) -> list[WatchlistItem]:
        """Fetch and normalise all pages of a watchlist feed.

        Follows ``links.next`` until the feed stops returning one, up to
        ``max_pages`` pages. Raises on transport or decoding errors.
        """
        entries: list[dict[str, Any]] = []
        next_url: str | None = url
        pages = 0

        while next_url:
            if pages >= self.config.max_pages:
                logger.warning(
                    "Watchlist feed exceeded %d pages, stopping pagination",
                    self.config.max_pages,
                )
                break
            data = await self._get_page(next_url)
            pages += 1
            entries.extend(data.get("items") or [])
            next_url = (data.get("links") or {}).get("next")

        items = [item for item in (parse_entry(e) for e in entries) if item is not None]
        logger.debug("Fetched %d watchlist items from %d page(s)", len(items), pages)
        return items

    async def fetch_watchlist(self, url: str) -> list[WatchlistItem]:
        """Fetch all pages of a watchlist feed.

        Never raises: any failure is logged and yields an empty list.
        """
        try:
            return await self.fetch_items(url)
        except Exception as e:
            logger.error("Failed to retrieve watchlist items: %s", e)
            return []
