#!/usr/bin/env python3
"""
Shared helpers for the digest pipeline.

Holds the aggregation filter (URL dedup and lookback window) together with the
text, URL, date and JSON helpers used by the fetcher, renderer and runner.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import time
from typing import Any, Iterable, List, Optional, Sequence, TypeVar
import json
import re

import feedparser
import feedparser.datetimes
from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")

T = TypeVar("T")

_SECONDS_PER_DAY = 86400


def dedupe_items(items: Iterable[T]) -> List[T]:
    """Drop items whose exact `url` was already seen, keeping the first occurrence and input order."""
    seen = set()
    result: List[T] = []
    for item in items:
        url = getattr(item, "url", None)
        if url in seen:
            continue
        seen.add(url)
        result.append(item)
    return result


def filter_by_lookback(items: Sequence[T], lookback_days: Optional[int], now: Optional[float] = None) -> List[T]:
    """Keep items published within the last `lookback_days` days.

    Items without a published date, or with one that cannot be parsed, are
    always kept. A missing or non-positive `lookback_days` disables filtering.
    """
    if not lookback_days or lookback_days <= 0:
        return list(items)
    now = time() if now is None else now
    max_age = lookback_days * _SECONDS_PER_DAY
    kept: List[T] = []
    for item in items:
        published = parse_timestamp(getattr(item, "published_at", None))
        if published is None or now - published <= max_age:
            kept.append(item)
    return kept


def parse_timestamp(value: Any) -> Optional[int]:
    """Convert a date string (RFC 822, ISO 8601 and the other feed formats) to Unix seconds (UTC)."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    text = str(value).strip()
    if not text:
        return None
    # feedparser understands the widest range of feed date formats
    try:
        parsed = feedparser.datetimes._parse_date(text)
        if parsed:
            return timegm(parsed)
    except (ValueError, TypeError, OverflowError):
        pass
    try:
        dt = parsedate_to_datetime(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    except (TypeError, ValueError, IndexError, OverflowError):
        pass
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    except ValueError:
        return None


def format_timestamp(ts: Optional[int]) -> Optional[str]:
    """Render Unix seconds as an ISO-8601 UTC string."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def get_path_value(data: Any, dotted_path: Optional[str]) -> Any:
    """Follow a dot-separated key path through nested mappings.

    An empty path returns `data` itself; a missing key or a non-mapping along
    the way yields None.
    """
    if not dotted_path:
        return data
    current = data
    for key in dotted_path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def safe_parse_json_array(raw: Any) -> List[Any]:
    """Parse a JSON array, accepting Python-style single quotes; anything else yields []."""
    if isinstance(raw, list):
        return raw
    if not raw:
        return []
    for candidate in (raw, str(raw).replace("'", '"')):
        try:
            value = json.loads(candidate)
        except (TypeError, ValueError):
            continue
        return value if isinstance(value, list) else []
    logger.error(f"Failed to parse JSON array: {str(raw)[:200]}")
    return []


def sanitize_url(url: Optional[str]) -> str:
    """Return the URL if it is http(s), otherwise '#'."""
    if url and re.match(r"^https?://", url.strip(), re.IGNORECASE):
        return url.strip()
    return "#"


def html_to_text(value: Optional[str]) -> str:
    """Strip markup from a feed description and collapse whitespace."""
    if not value:
        return ""
    if "<" not in value and "&" not in value:
        return " ".join(value.split())
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return " ".join(soup.get_text(" ").split())


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text
    if len(suffix) >= max_length:
        return text[:max_length]
    return text[:max_length - len(suffix)].rstrip() + suffix


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)
