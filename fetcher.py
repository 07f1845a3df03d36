#!/usr/bin/env python3
"""
Source fetcher for news digests.

Fetches one configured source (a web feed or a JSON API), normalizes its
entries into `NewsItem` records and reports how many entries the source held
versus how many were processed under the per-source item cap. Every fetch is
bounded by a timeout; a timeout or HTTP failure raises, which fails the run.
"""

from asyncio import get_running_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from time import time
from typing import Any, Dict, List, Optional

import feedparser
from aiohttp import ClientSession, ClientError, ClientTimeout, ContentTypeError

from config import config, get_logger
from errors import SourceFetchError, SourceTimeoutError
from models import NewsItem, Source, SourceFetchResult, SOURCE_TYPES
from telemetry import trace_span
from utils import get_path_value, html_to_text

logger = get_logger("fetcher")

UNTITLED = "Untitled"
SAMPLE_ITEM_COUNT = 3


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        if errno is not None:
            parts.append(f"errno={errno}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


def _entry_value(entry: Any, key: str) -> Any:
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(key)
    return getattr(entry, key, None)


def _entry_link(entry: Any) -> str:
    """Prefer the rel="alternate" link, then the first link with an href, then `entry.link`."""
    links = _entry_value(entry, 'links') or []
    first_href = ""
    for link in links:
        href = (link.get('href') or "").strip()
        if not href:
            continue
        if link.get('rel') == 'alternate':
            return href
        first_href = first_href or href
    return first_href or (_entry_value(entry, 'link') or "").strip()


def _entry_summary(entry: Any) -> Optional[str]:
    summary = _entry_value(entry, 'summary') or _entry_value(entry, 'description')
    if not summary:
        content = _entry_value(entry, 'content') or []
        if content:
            summary = content[0].get('value')
    text = html_to_text(summary)
    return text or None


def parse_feed_entries(entries: List[Any], limit: int) -> SourceFetchResult:
    """Normalize the first `limit` feed entries, dropping those without a link."""
    processed = entries[:limit]
    items: List[NewsItem] = []
    for entry in processed:
        url = _entry_link(entry)
        if not url:
            continue
        title = (_entry_value(entry, 'title') or "").strip() or UNTITLED
        published = _entry_value(entry, 'published') or _entry_value(entry, 'updated')
        items.append(NewsItem(
            title=title,
            url=url,
            published_at=published.strip() if isinstance(published, str) and published.strip() else None,
            summary=_entry_summary(entry),
        ))
    return SourceFetchResult(items=items, total_item_count=len(entries), processed_item_count=len(processed))


def parse_api_items(data: Any, item_path: Optional[str], url: str, limit: int) -> SourceFetchResult:
    """Map a JSON API payload to items.

    Raises:
        SourceFetchError: If the value at `item_path` is not an array.
    """
    raw_items = get_path_value(data, item_path)
    if not isinstance(raw_items, list):
        raise SourceFetchError(f"API response did not return an array for {url}", details={"url": url})
    processed = raw_items[:limit]
    items: List[NewsItem] = []
    for raw in processed:
        if not isinstance(raw, dict):
            continue
        link = raw.get('url') if raw.get('url') is not None else raw.get('link')
        item_url = str(link).strip() if link is not None else ""
        if not item_url:
            continue
        title = raw.get('title')
        items.append(NewsItem(
            title=str(title) if title is not None else UNTITLED,
            url=item_url,
            published_at=str(raw['published_at']) if raw.get('published_at') else None,
            summary=str(raw['summary']) if raw.get('summary') else None,
        ))
    return SourceFetchResult(items=items, total_item_count=len(raw_items), processed_item_count=len(processed))


class SourceFetcher:
    """Fetches sources over a shared aiohttp session.

    Pass `session` to reuse an existing session (or a test double); otherwise
    one is created on first use and closed by `close()`.
    """

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self._session = session
        self._owns_session = session is None
        self.executor = ThreadPoolExecutor(max_workers=2)

    async def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession(headers={"User-Agent": config.USER_AGENT})
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self.executor.shutdown(wait=False)

    async def run_in_executor(self, func, *args) -> Any:
        """Run blocking parsing off the event loop."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetch.source",
        tracer_name="fetcher",
        attr_from_args=lambda self, source, limit=None, timeout_seconds=None: {
            "source.id": source.id,
            "source.type": source.type,
            "source.url": source.url,
            "fetch.limit": limit,
        },
    )
    async def fetch_source(self, source: Source, limit: int, timeout_seconds: Optional[int] = None) -> SourceFetchResult:
        """Fetch and normalize one source, capped at `limit` items.

        Raises:
            SourceTimeoutError: If the fetch exceeds `timeout_seconds`.
            SourceFetchError: On HTTP failure, unparseable payload or unknown source type.
        """
        timeout_seconds = timeout_seconds or config.SOURCE_FETCH_TIMEOUT_SECONDS
        if source.type not in SOURCE_TYPES:
            raise SourceFetchError(f"Unsupported source type '{source.type}' for {source.url}")
        started = time()
        try:
            if source.type == "feed":
                result = await wait_for(self._fetch_feed(source.url, limit, timeout_seconds), timeout=timeout_seconds)
            else:
                result = await wait_for(
                    self._fetch_api(source.url, source.item_path, limit, timeout_seconds), timeout=timeout_seconds
                )
        except TimeoutError:
            logger.warning(f"Timeout fetching {source.url} after {timeout_seconds}s")
            raise SourceTimeoutError(source.url, timeout_seconds)
        except ClientError as e:
            detail = _format_client_error(e)
            logger.error(f"Error fetching {source.url}: {detail}")
            raise SourceFetchError(f"Source fetch failed: {source.url} ({detail})", details={"url": source.url}) from e
        logger.info(
            f"Fetched {len(result.items)} items from {source.label} "
            f"(processed {result.processed_item_count}/{result.total_item_count}) in {time() - started:.2f}s"
        )
        return result

    async def _fetch_feed(self, url: str, limit: int, timeout_seconds: int) -> SourceFetchResult:
        session = await self._get_session()
        async with session.get(url, timeout=ClientTimeout(total=timeout_seconds)) as response:
            if response.status < 200 or response.status >= 300:
                raise SourceFetchError(f"Feed fetch failed: {url}", details={"url": url, "status": response.status})
            content = await response.read()
        feed = await self.run_in_executor(feedparser.parse, content)
        if getattr(feed, 'bozo', False) and not feed.entries:
            logger.warning(f"Feed {url} could not be parsed: {getattr(feed, 'bozo_exception', 'unknown error')}")
        return parse_feed_entries(list(feed.entries), limit)

    async def _fetch_api(self, url: str, item_path: Optional[str], limit: int, timeout_seconds: int) -> SourceFetchResult:
        session = await self._get_session()
        async with session.get(url, timeout=ClientTimeout(total=timeout_seconds)) as response:
            if response.status < 200 or response.status >= 300:
                raise SourceFetchError(f"API fetch failed: {url}", details={"url": url, "status": response.status})
            try:
                data = await response.json(content_type=None)
            except (ContentTypeError, ValueError) as e:
                raise SourceFetchError(f"API response was not valid JSON for {url}", details={"url": url}) from e
        return parse_api_items(data, item_path, url, limit)

    async def test_source(self, source: Source, limit: Optional[int] = None,
                          timeout_seconds: Optional[int] = None) -> Dict[str, Any]:
        """Fetch a source once and report the outcome without raising.

        Returns:
            Dict with keys: success, item_count, sample_items (first three), error.
        """
        limit = limit or config.DEFAULT_SOURCE_ITEMS_LIMIT
        try:
            result = await self.fetch_source(source, limit, timeout_seconds)
        except SourceFetchError as e:
            return {"success": False, "item_count": 0, "sample_items": [], "error": str(e)}
        return {
            "success": True,
            "item_count": len(result.items),
            "sample_items": [item.to_dict() for item in result.items[:SAMPLE_ITEM_COUNT]],
            "error": None,
        }
