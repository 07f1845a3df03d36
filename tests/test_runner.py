from time import time

import pytest

from conftest import config_set_entry, seed, source_entry
from errors import PreconditionError, ProviderError, RunInProgressError, RunReclaimedError, SourceTimeoutError
from llm_client import QUERY_INDUCTION_PROMPT, LlmProvider, ProviderAdapter
from models import NewsItem, SourceFetchResult
from runner import MISSING_SETTINGS_MESSAGE, DigestRunner

SETTINGS = {
    "resend_api_key": "re_key",
    "llm_provider": "openai",
    "llm_api_key": "sk-test",
    "default_sender": "NewsBot <news@example.com>",
}


class FakeFetcher:
    def __init__(self, results, on_fetch=None):
        self.results = results
        self.on_fetch = on_fetch
        self.calls = []

    async def fetch_source(self, source, limit, timeout_seconds=None):
        self.calls.append((source.name, limit, timeout_seconds))
        if self.on_fetch is not None:
            await self.on_fetch(source)
        result = self.results[source.name]
        if isinstance(result, Exception):
            raise result
        return result


class FakeAdapter(ProviderAdapter):
    provider = LlmProvider.OPENAI
    label = "Fake"

    def __init__(self, summary="Digest summary", query="ai chips", error=None):
        super().__init__("sk-test", "fake-model")
        self.summary = summary
        self.query = query
        self.error = error
        self.calls = []

    async def complete(self, system_prompt, user_message, *, max_tokens=4096, subject="text"):
        self.calls.append({"system": system_prompt, "user": user_message, "subject": subject})
        if self.error is not None:
            raise self.error
        return self.query if system_prompt == QUERY_INDUCTION_PROMPT else self.summary


class FakeMailer:
    outbox = []

    def __init__(self, api_key, sender):
        self.api_key = api_key
        self.sender = sender

    async def send(self, to, subject, html, text=None):
        FakeMailer.outbox.append({"to": list(to), "subject": subject, "html": html, "text": text})
        return f"em_{len(FakeMailer.outbox)}"


class FakeSearch:
    def __init__(self, api_key):
        self.api_key = api_key

    async def search(self, query, max_results=10):
        return [NewsItem(title=f"Web: {query}", url="https://web.example.com/1")]


@pytest.fixture(autouse=True)
def clear_outbox():
    FakeMailer.outbox = []
    yield
    FakeMailer.outbox = []


def _result(urls, total=None):
    items = [NewsItem(title=f"Item {url}", url=url) for url in urls]
    return SourceFetchResult(items=items, total_item_count=total or len(items), processed_item_count=len(items))


def _runner(db, fetcher, adapter=None, **kwargs):
    adapter = adapter or FakeAdapter()
    return DigestRunner(
        db,
        fetcher=fetcher,
        adapter_factory=lambda settings: adapter,
        mailer_factory=FakeMailer,
        search_factory=FakeSearch,
        fetch_timeout_seconds=30,
        **kwargs,
    )


async def _seed_morning(db, settings=SETTINGS, **config_set_kwargs):
    sources = [source_entry("Feed A", "https://a.example.com/rss"),
               source_entry("API B", "https://b.example.com/api", type="json-api", item_path="items")]
    config_sets = await seed(db, sources, [config_set_entry("Morning", ["Feed A", "API B"], **config_set_kwargs)],
                             settings=settings)
    return config_sets["Morning"]


@pytest.mark.asyncio
async def test_successful_run_sends_digest(db):
    config_set = await _seed_morning(db)
    fetcher = FakeFetcher({
        "Feed A": _result(["https://x.example.com/1", "https://x.example.com/2"], total=30),
        "API B": _result(["https://x.example.com/2", "https://x.example.com/3"]),
    })
    adapter = FakeAdapter()

    result = await _runner(db, fetcher, adapter).run(config_set)

    assert result.item_count == 3
    assert result.email_id == "em_1"
    assert fetcher.calls == [("Feed A", 20, 30), ("API B", 20, 30)]
    mail = FakeMailer.outbox[0]
    assert mail["to"] == ["reader@example.com"]
    assert mail["subject"] == "News Digest: Morning"
    assert mail["html"] == result.html
    assert adapter.calls[0]["system"] == "Summarize the news."

    run = await db.execute("get_run", run_id=result.run_id)
    assert run.status == "sent"
    assert (run.item_count, run.email_id) == (3, "em_1")
    assert run.history == [
        "Starting run",
        "Loading global settings",
        "Loading sources and recipients",
        "Fetching from source [Feed A] (1/2, first 20 items only)",
        "2 items fetched so far (processed 2/30 source items total, limit 20 per source)",
        "Fetching from source [API B] (2/2, first 20 items only)",
        "4 items fetched so far (processed 4/32 source items total, limit 20 per source)",
        "Deduplicating fetched items (4 fetched from 4/32 source items, limit 20 per source)",
        "3 items after dedup/filter (from 4/32 source items, limit 20 per source)",
        "Summarizing content",
        "Generating html",
        "Sending email to 1 recipient(s)",
        "sent",
    ]


@pytest.mark.asyncio
async def test_missing_settings_fail_before_any_network_call(db):
    config_set = await _seed_morning(db, settings={"llm_provider": "openai"})
    fetcher = FakeFetcher({})

    with pytest.raises(PreconditionError, match=MISSING_SETTINGS_MESSAGE):
        await _runner(db, fetcher).run(config_set)

    assert fetcher.calls == []
    run = (await db.execute("list_runs"))[0]
    assert run.status == "error"
    assert run.history == ["Starting run", "Loading global settings", "error"]
    assert run.error_message == MISSING_SETTINGS_MESSAGE
    assert "PreconditionError" in run.error_stack
    assert FakeMailer.outbox == []


@pytest.mark.asyncio
async def test_source_timeout_fails_run_and_alerts_admin(db):
    config_set = await _seed_morning(db, settings={**SETTINGS, "admin_email": "admin@example.com"})
    fetcher = FakeFetcher({
        "Feed A": _result(["https://x.example.com/1"]),
        "API B": SourceTimeoutError("https://b.example.com/api", 30),
    })

    with pytest.raises(SourceTimeoutError):
        await _runner(db, fetcher).run(config_set)

    run = (await db.execute("list_runs"))[0]
    assert run.status == "error"
    assert run.error_message == "Source fetch timed out after 30s: https://b.example.com/api"
    assert run.history[-2] == "Fetching from source [API B] (2/2, first 20 items only)"
    alert = FakeMailer.outbox[0]
    assert alert["to"] == ["admin@example.com"]
    assert alert["subject"] == "NewsBot Run Failed: Morning"
    assert f"Run ID: {run.id}" in alert["text"]


@pytest.mark.asyncio
async def test_provider_failure_recorded_even_if_alert_fails(db):
    config_set = await _seed_morning(db, settings={**SETTINGS, "admin_email": "admin@example.com"})
    fetcher = FakeFetcher({"Feed A": _result(["https://x.example.com/1"]), "API B": _result([])})

    class BrokenMailer(FakeMailer):
        async def send(self, to, subject, html, text=None):
            raise RuntimeError("mail is down")

    runner = _runner(db, fetcher, FakeAdapter(error=ProviderError("LLM API failed (500): oops")))
    runner.mailer_factory = BrokenMailer
    with pytest.raises(ProviderError, match="LLM API failed"):
        await runner.run(config_set)

    run = (await db.execute("list_runs"))[0]
    assert run.status == "error"
    assert run.error_message == "LLM API failed (500): oops"
    assert run.history[-2:] == ["Summarizing content", "error"]


@pytest.mark.asyncio
async def test_second_run_refused_while_first_in_progress(db):
    config_set = await _seed_morning(db)
    await db.execute("create_run", config_set_id=config_set.id, started_at=int(time()), status="Starting run")

    with pytest.raises(RunInProgressError):
        await _runner(db, FakeFetcher({})).run(config_set)
    assert await db.execute("count_runs") == 1


@pytest.mark.asyncio
async def test_reclaimed_run_stops_at_next_status(db):
    config_set = await _seed_morning(db)

    async def reclaim_everything(source):
        now = int(time())
        await db.execute("reclaim_stale_runs", cutoff=now + 60, message="Run timed out after 15 minutes.", now=now)

    fetcher = FakeFetcher({"Feed A": _result(["https://x.example.com/1"])}, on_fetch=reclaim_everything)
    with pytest.raises(RunReclaimedError):
        await _runner(db, fetcher).run(config_set)

    run = (await db.execute("list_runs"))[0]
    assert run.status == "failed"
    assert run.error_message == "Run timed out after 15 minutes."
    assert run.history[-1] == "failed"
    assert FakeMailer.outbox == []


@pytest.mark.asyncio
async def test_web_search_adds_results(db):
    config_set = await _seed_morning(db, settings={**SETTINGS, "tavily_api_key": "tvly-key"}, use_web_search=True)
    fetcher = FakeFetcher({"Feed A": _result(["https://x.example.com/1"]), "API B": _result([])})
    adapter = FakeAdapter(query="ai chips")

    result = await _runner(db, fetcher, adapter).run(config_set)

    assert result.item_count == 2
    assert "Web: ai chips" in result.text
    run = await db.execute("get_run", run_id=result.run_id)
    assert "Searching the web" in run.history
    assert "2 items fetched so far (including 1 web results)" in run.history
    assert adapter.calls[0] == {"system": QUERY_INDUCTION_PROMPT, "user": "Prompt:\nSummarize the news.",
                                "subject": "query text"}


@pytest.mark.asyncio
async def test_web_search_skipped_without_key(db):
    config_set = await _seed_morning(db, use_web_search=True)
    fetcher = FakeFetcher({"Feed A": _result(["https://x.example.com/1"]), "API B": _result([])})

    result = await _runner(db, fetcher).run(config_set)

    run = await db.execute("get_run", run_id=result.run_id)
    assert "Searching the web" not in run.history
    assert result.item_count == 1
