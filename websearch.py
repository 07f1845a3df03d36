#!/usr/bin/env python3
"""Web search augmentation through the Tavily search API."""

from asyncio import TimeoutError
from typing import Any, List, Optional

from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import WebSearchError
from models import NewsItem
from telemetry import trace_span

logger = get_logger("websearch")

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
DEFAULT_MAX_RESULTS = 10


def results_to_items(results: List[Any]) -> List[NewsItem]:
    """Map Tavily results to news items, skipping entries without a URL."""
    items: List[NewsItem] = []
    for result in results:
        if not isinstance(result, dict) or not result.get("url"):
            continue
        items.append(NewsItem(
            title=str(result.get("title") or "Untitled"),
            url=str(result["url"]),
            published_at=result.get("published_date") or None,
            summary=result.get("content") or None,
        ))
    return items


class TavilySearch:
    def __init__(self, api_key: str, session: Optional[ClientSession] = None):
        self.api_key = api_key
        self._session = session

    @trace_span(
        "websearch.search",
        tracer_name="websearch",
        attr_from_args=lambda self, query, max_results=DEFAULT_MAX_RESULTS: {
            "search.query": query,
            "search.max_results": max_results,
        },
    )
    async def search(self, query: str, max_results: int = DEFAULT_MAX_RESULTS) -> List[NewsItem]:
        """Run one basic-depth search and return the results as news items.

        Raises:
            WebSearchError: On a non-2xx response or network failure.
        """
        body = {
            "query": query,
            "max_results": max_results,
            "search_depth": "basic",
            "include_answer": False,
        }
        try:
            if self._session is not None:
                data = await self._post(self._session, body)
            else:
                async with ClientSession() as session:
                    data = await self._post(session, body)
        except TimeoutError as e:
            raise WebSearchError(f"Tavily search timed out after {config.MAIL_HTTP_TIMEOUT}s") from e
        except ClientError as e:
            raise WebSearchError(f"Tavily search request failed: {e}") from e
        except ValueError as e:
            raise WebSearchError(f"Tavily search returned an unreadable response: {e}") from e
        results = data.get("results")
        items = results_to_items(results if isinstance(results, list) else [])
        logger.info(f"Web search for '{query}' returned {len(items)} results")
        return items

    async def _post(self, session: ClientSession, body: dict) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        timeout = ClientTimeout(total=config.MAIL_HTTP_TIMEOUT)
        async with session.post(TAVILY_SEARCH_URL, json=body, headers=headers, timeout=timeout) as response:
            if response.status < 200 or response.status >= 300:
                error_body = await response.text()
                raise WebSearchError(f"Tavily search failed ({response.status}): {error_body}",
                                     details={"status": response.status})
            data = await response.json(content_type=None)
        return data if isinstance(data, dict) else {}
