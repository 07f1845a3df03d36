import pytest

from catalog import parse_digest, parse_settings, parse_source, sync_catalog
from errors import CatalogError

CATALOG = {
    "settings": {"llm_provider": "Anthropic", "source_items_limit": "15", "default_sender": "news@example.com"},
    "sources": [
        {"name": "Hacker News", "type": "rss", "url": "https://news.ycombinator.com/rss"},
        {"name": "Space API", "type": "api", "url": "https://api.example.com/v4/articles", "items_path": "results"},
    ],
    "digests": [
        {
            "name": "Morning Tech",
            "schedule": ["0 0 * * *", " 0  1 * * *"],
            "prompt": "Summarize the tech news.",
            "recipients": "a@example.com, b@example.com",
            "sources": ["Space API", "Hacker News"],
        },
    ],
}


def test_parse_source_aliases_and_validation():
    assert parse_source(CATALOG["sources"][0])["type"] == "feed"
    api = parse_source(CATALOG["sources"][1])
    assert (api["type"], api["item_path"]) == ("json-api", "results")
    with pytest.raises(CatalogError, match="unsupported type"):
        parse_source({"name": "x", "type": "pdf", "url": "https://example.com/x.pdf"})
    with pytest.raises(CatalogError, match="missing 'url'"):
        parse_source({"name": "x"})


def test_parse_digest_normalizes_schedule_and_recipients():
    digest = parse_digest(CATALOG["digests"][0])
    assert digest["schedule_cron"] == "0 0 * * *,0 1 * * *"
    assert digest["recipients_json"] == '["a@example.com", "b@example.com"]'
    assert digest["use_web_search"] is False


def test_parse_digest_rejects_unlisted_schedule():
    with pytest.raises(CatalogError, match="invalid schedule"):
        parse_digest({"name": "x", "prompt": "p", "schedule": "0 18 * * *"})


def test_parse_settings_overrides_win_and_values_are_checked():
    settings = parse_settings(CATALOG["settings"], {"llm_api_key": "sk-env", "llm_provider": "openai"})
    assert settings["llm_provider"] == "openai"
    assert settings["llm_api_key"] == "sk-env"
    assert settings["source_items_limit"] == 15
    with pytest.raises(CatalogError, match="Unknown llm_provider"):
        parse_settings({"llm_provider": "mistral"})
    with pytest.raises(CatalogError, match="Unknown settings key"):
        parse_settings({"smtp_host": "mail"})
    with pytest.raises(CatalogError, match="must be an integer"):
        parse_settings({"source_lookback_days": "a week"})


@pytest.mark.asyncio
async def test_sync_catalog_writes_and_updates_in_place(db):
    counts = await sync_catalog(db, CATALOG, overrides={"llm_api_key": "sk-env"})
    assert counts == {"sources": 2, "config_sets": 1, "settings": 4}

    (morning,) = await db.execute("list_config_sets")
    assert morning.schedules == ["0 0 * * *", "0 1 * * *"]
    assert morning.recipients == ["a@example.com", "b@example.com"]
    assert [s.name for s in await db.execute("get_config_sources", config_set_id=morning.id)] == [
        "Space API", "Hacker News",
    ]
    settings = await db.execute("get_global_settings")
    assert (settings.llm_provider, settings.llm_api_key, settings.source_items_limit) == ("anthropic", "sk-env", 15)

    updated = {**CATALOG, "digests": [{**CATALOG["digests"][0], "sources": ["Hacker News"], "enabled": False}]}
    await sync_catalog(db, updated, overrides={})
    (again,) = await db.execute("list_config_sets")
    assert again.id == morning.id
    assert again.enabled is False
    assert [s.name for s in await db.execute("get_config_sources", config_set_id=again.id)] == ["Hacker News"]


@pytest.mark.asyncio
async def test_sync_catalog_rejects_unknown_source_reference(db):
    catalog = {**CATALOG, "digests": [{**CATALOG["digests"][0], "sources": ["Nowhere"]}]}
    with pytest.raises(CatalogError, match="references unknown source"):
        await sync_catalog(db, catalog, overrides={})
    assert await db.execute("list_config_sets") == []
