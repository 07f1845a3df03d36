#!/usr/bin/env python3
"""
YAML catalog of sources, digests and global settings.

The catalog is validated here and written to the store in one transaction by
`sync_catalog`. Sources and digests are matched by name, so re-running a sync
updates rows in place. Credentials from the environment override the catalog.

Example:

    settings:
      llm_provider: gemini
      source_items_limit: 20
      source_lookback_days: 2
      default_sender: "NewsBot <news@example.com>"
    sources:
      - name: Hacker News
        type: feed
        url: https://news.ycombinator.com/rss
    digests:
      - name: Morning Tech
        schedule: ["0 0 * * *"]
        prompt: Summarize the most important tech news.
        recipients: [me@example.com]
        sources: [Hacker News]
"""

import json
from typing import Any, Dict, List, Optional

from config import config, get_logger, normalize_schedule_cron, is_allowed_schedule_cron, ALLOWED_SCHEDULE_CRONS
from errors import CatalogError
from llm_client import LlmProvider
from models import DatabaseQueue, SETTINGS_FIELDS, SOURCE_TYPES, SOURCE_TYPE_ALIASES

logger = get_logger("catalog")


def _require(entry: Dict[str, Any], key: str, kind: str) -> str:
    value = entry.get(key)
    if value is None or not str(value).strip():
        raise CatalogError(f"{kind} entry is missing '{key}': {entry}")
    return str(value).strip()


def parse_source(entry: Any) -> Dict[str, Any]:
    if not isinstance(entry, dict):
        raise CatalogError(f"Source entries must be mappings, got: {entry!r}")
    name = _require(entry, "name", "Source")
    source_type = str(entry.get("type", "feed")).strip().lower()
    source_type = SOURCE_TYPE_ALIASES.get(source_type, source_type)
    if source_type not in SOURCE_TYPES:
        raise CatalogError(f"Source '{name}' has unsupported type '{entry.get('type')}'")
    item_path = entry.get("item_path", entry.get("items_path"))
    return {
        "name": name,
        "type": source_type,
        "url": _require(entry, "url", "Source"),
        "item_path": str(item_path).strip() if item_path else None,
        "enabled": bool(entry.get("enabled", True)),
    }


def parse_digest(entry: Any) -> Dict[str, Any]:
    if not isinstance(entry, dict):
        raise CatalogError(f"Digest entries must be mappings, got: {entry!r}")
    name = _require(entry, "name", "Digest")
    schedule = entry.get("schedule", entry.get("schedule_cron"))
    if isinstance(schedule, (list, tuple)):
        schedule = ",".join(str(part) for part in schedule)
    schedule_cron = normalize_schedule_cron(schedule or "")
    if not schedule_cron or not is_allowed_schedule_cron(schedule_cron):
        raise CatalogError(
            f"Digest '{name}' has invalid schedule '{schedule}'. Allowed values: {', '.join(ALLOWED_SCHEDULE_CRONS)}"
        )
    recipients = entry.get("recipients") or []
    if isinstance(recipients, str):
        recipients = [part.strip() for part in recipients.split(",")]
    sources = entry.get("sources") or []
    if not isinstance(sources, list):
        raise CatalogError(f"Digest '{name}' sources must be a list of source names")
    return {
        "name": name,
        "enabled": bool(entry.get("enabled", True)),
        "schedule_cron": schedule_cron,
        "prompt": _require(entry, "prompt", "Digest"),
        "recipients_json": json.dumps([str(r).strip() for r in recipients if str(r).strip()]),
        "use_web_search": bool(entry.get("use_web_search", False)),
        "sources": [str(s).strip() for s in sources],
    }


def parse_settings(raw: Optional[Dict[str, Any]], overrides: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Merge catalog settings with environment overrides (overrides win)."""
    settings: Dict[str, Any] = {}
    for key, value in (raw or {}).items():
        if key not in SETTINGS_FIELDS:
            raise CatalogError(f"Unknown settings key '{key}'")
        settings[key] = value
    settings.update(overrides or {})
    if "llm_provider" in settings:
        try:
            settings["llm_provider"] = LlmProvider(str(settings["llm_provider"]).strip().lower()).value
        except ValueError:
            raise CatalogError(
                f"Unknown llm_provider '{settings['llm_provider']}'. "
                f"Allowed values: {', '.join(p.value for p in LlmProvider)}"
            ) from None
    for key in ("source_items_limit", "source_lookback_days"):
        if settings.get(key) is not None:
            try:
                settings[key] = int(settings[key])
            except (TypeError, ValueError):
                raise CatalogError(f"Setting '{key}' must be an integer") from None
    return settings


async def sync_catalog(db: DatabaseQueue, catalog: Optional[Dict[str, Any]] = None,
                       overrides: Optional[Dict[str, str]] = None) -> Dict[str, int]:
    """Validate the catalog and write it to the store.

    Raises:
        CatalogError: If any entry is invalid or references an unknown source.
    """
    catalog = config.load_catalog() if catalog is None else catalog
    overrides = config.SETTINGS_OVERRIDES if overrides is None else overrides
    sources: List[Dict[str, Any]] = [parse_source(e) for e in catalog.get("sources") or []]
    digests: List[Dict[str, Any]] = [parse_digest(e) for e in catalog.get("digests") or []]
    settings = parse_settings(catalog.get("settings"), overrides)

    known = {s["name"] for s in sources}
    existing = {s.name for s in await db.execute("list_sources")}
    for digest in digests:
        missing = [name for name in digest["sources"] if name not in known and name not in existing]
        if missing:
            raise CatalogError(f"Digest '{digest['name']}' references unknown source(s): {', '.join(missing)}")

    counts = await db.execute("sync_catalog", sources=sources, config_sets=digests, settings=settings)
    logger.info(f"Catalog synced: {counts['sources']} sources, {counts['config_sets']} digests, "
                f"{counts['settings']} settings")
    return counts
