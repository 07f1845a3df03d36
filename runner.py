#!/usr/bin/env python3
"""
Run state machine for one digest.

`DigestRunner.run(config_set)` creates a run record and drives it through a
fixed sequence of stages, appending one human-readable entry to the run's
status history per stage:

    Starting run -> Loading global settings -> Loading sources and recipients
    -> per source: Fetching ... / N items fetched so far ...
    -> [Searching the web -> N items fetched so far (including M web results)]
    -> Deduplicating ... -> N items after dedup/filter ... -> Summarizing content
    -> Generating html -> Sending email to R recipient(s) -> sent

Any exception ends the run as `error` with its message and traceback, triggers
a best-effort admin alert and is re-raised to the caller. A run force-failed by
the stale-run reclaimer stops at its next status append.
"""

import traceback
from dataclasses import dataclass
from time import time
from typing import Any, Callable, List, Optional

from config import config, get_logger
from errors import PreconditionError, RunInProgressError, RunReclaimedError
from fetcher import SourceFetcher
from llm_client import ProviderAdapter, create_adapter, induce_search_query, summarize
from mailer import FailureNotification, ResendMailer, send_failure_notification
from models import ConfigSet, DatabaseQueue, GlobalSettings, NewsItem, SOURCE_TYPES
from renderer import render_digest
from telemetry import trace_span
from utils import dedupe_items, filter_by_lookback, format_duration, format_timestamp
from websearch import TavilySearch

logger = get_logger("runner")

STATUS_STARTING = "Starting run"
STATUS_LOADING_SETTINGS = "Loading global settings"
STATUS_LOADING_SOURCES = "Loading sources and recipients"
STATUS_SEARCHING = "Searching the web"
STATUS_SUMMARIZING = "Summarizing content"
STATUS_RENDERING = "Generating html"
STATUS_SENT = "sent"
STATUS_ERROR = "error"

MISSING_SETTINGS_MESSAGE = "Global settings missing API keys or sender."


@dataclass
class RunResult:
    run_id: int
    html: str
    text: str
    item_count: int
    email_id: Optional[str] = None


def _default_adapter_factory(settings: GlobalSettings) -> ProviderAdapter:
    return create_adapter(settings.llm_provider, settings.llm_api_key, settings.llm_model)


class DigestRunner:
    """Executes config sets against the store.

    Collaborators are injectable so the pipeline can run without network access:
    `fetcher` (a SourceFetcher), `adapter_factory(settings)` returning a provider
    adapter, `mailer_factory(api_key, sender)` and `search_factory(api_key)`.
    """

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: Optional[SourceFetcher] = None,
        adapter_factory: Optional[Callable[[GlobalSettings], ProviderAdapter]] = None,
        mailer_factory: Optional[Callable[[str, str], Any]] = None,
        search_factory: Optional[Callable[[str], Any]] = None,
        fetch_timeout_seconds: Optional[int] = None,
        allow_concurrent: Optional[bool] = None,
    ) -> None:
        self.db = db
        self.fetcher = fetcher or SourceFetcher()
        self.adapter_factory = adapter_factory or _default_adapter_factory
        self.mailer_factory = mailer_factory or ResendMailer
        self.search_factory = search_factory or TavilySearch
        self.fetch_timeout_seconds = fetch_timeout_seconds or config.SOURCE_FETCH_TIMEOUT_SECONDS
        self.allow_concurrent = config.ALLOW_CONCURRENT_RUNS if allow_concurrent is None else allow_concurrent

    async def _update_status(self, run_id: int, status: str) -> None:
        appended = await self.db.execute("append_run_status", run_id=run_id, status=status)
        if not appended:
            raise RunReclaimedError(run_id)
        logger.debug(f"Run {run_id}: {status}")

    @trace_span(
        "digest.run",
        tracer_name="runner",
        attr_from_args=lambda self, config_set: {
            "config_set.id": config_set.id,
            "config_set.name": config_set.name,
        },
    )
    async def run(self, config_set: ConfigSet) -> RunResult:
        """Execute one run of `config_set` to a terminal state.

        Raises:
            RunInProgressError: If the config set already has a non-terminal run.
            Exception: Whatever failed the run, after it has been recorded as `error`.
        """
        started_at = int(time())
        created = await self.db.execute(
            "create_run",
            config_set_id=config_set.id,
            started_at=started_at,
            status=STATUS_STARTING,
            allow_concurrent=self.allow_concurrent,
        )
        if created["run_id"] is None:
            raise RunInProgressError(config_set.id, created["conflict_run_id"])
        run_id = created["run_id"]
        logger.info(f"🚀 Run {run_id} started for config set {config_set.id} ('{config_set.name}')")

        settings: Optional[GlobalSettings] = None
        try:
            await self._update_status(run_id, STATUS_LOADING_SETTINGS)
            settings = await self.db.execute("get_global_settings")
            if not (settings.resend_api_key and settings.llm_api_key and settings.default_sender):
                raise PreconditionError(MISSING_SETTINGS_MESSAGE)

            await self._update_status(run_id, STATUS_LOADING_SOURCES)
            sources = await self.db.execute("get_config_sources", config_set_id=config_set.id)
            recipients = config_set.recipients
            limit = settings.effective_items_limit

            items: List[NewsItem] = []
            total_reported = 0
            total_processed = 0
            for index, source in enumerate(sources, start=1):
                await self._update_status(
                    run_id,
                    f"Fetching from source [{source.label}] ({index}/{len(sources)}, first {limit} items only)",
                )
                if source.type not in SOURCE_TYPES:
                    logger.warning(f"Skipping source {source.id} with unsupported type '{source.type}'")
                    continue
                result = await self.fetcher.fetch_source(source, limit, self.fetch_timeout_seconds)
                items.extend(result.items)
                total_reported += result.total_item_count
                total_processed += result.processed_item_count
                await self._update_status(
                    run_id,
                    f"{len(items)} items fetched so far (processed {total_processed}/{total_reported} "
                    f"source items total, limit {limit} per source)",
                )

            if config_set.use_web_search:
                items.extend(await self._search_web(run_id, config_set, settings, len(items)))

            await self._update_status(
                run_id,
                f"Deduplicating fetched items ({len(items)} fetched from {total_processed}/{total_reported} "
                f"source items, limit {limit} per source)",
            )
            lookback_days = settings.effective_lookback_days
            filtered = filter_by_lookback(dedupe_items(items), lookback_days)
            lookback_label = f", lookback {lookback_days}d" if lookback_days else ""
            await self._update_status(
                run_id,
                f"{len(filtered)} items after dedup/filter (from {total_processed}/{total_reported} "
                f"source items, limit {limit} per source{lookback_label})",
            )

            await self._update_status(run_id, STATUS_SUMMARIZING)
            adapter = self.adapter_factory(settings)
            summary = await summarize(filtered, config_set.prompt, settings.llm_provider,
                                      settings.llm_api_key, settings.llm_model, adapter=adapter)

            await self._update_status(run_id, STATUS_RENDERING)
            rendered = render_digest(config_set.name, summary, filtered)

            await self._update_status(run_id, f"Sending email to {len(recipients)} recipient(s)")
            mailer = self.mailer_factory(settings.resend_api_key, settings.default_sender)
            email_id = await mailer.send(recipients, f"News Digest: {config_set.name}", rendered.html, rendered.text)

            finished = await self.db.execute(
                "finish_run", run_id=run_id, status=STATUS_SENT, item_count=len(filtered), email_id=email_id
            )
            if finished:
                logger.info(f"✅ Run {run_id} sent {len(filtered)} items to {len(recipients)} recipient(s) "
                            f"in {format_duration(time() - started_at)}")
            else:
                # The digest went out but the reclaimer already failed this run
                logger.warning(f"⚠️ Run {run_id} delivered email {email_id} after being marked failed")
            return RunResult(run_id=run_id, html=rendered.html, text=rendered.text,
                             item_count=len(filtered), email_id=email_id)
        except Exception as e:
            await self._record_failure(run_id, config_set, started_at, settings, e)
            raise

    async def _search_web(self, run_id: int, config_set: ConfigSet, settings: GlobalSettings,
                          fetched_so_far: int) -> List[NewsItem]:
        if not settings.tavily_api_key:
            logger.warning(f"Config set {config_set.id} requests web search but no Tavily API key is configured")
            return []
        await self._update_status(run_id, STATUS_SEARCHING)
        adapter = self.adapter_factory(settings)
        query = await induce_search_query(config_set.prompt, settings.llm_provider,
                                          settings.llm_api_key, settings.llm_model, adapter=adapter)
        logger.info(f"Run {run_id}: web search query '{query}'")
        web_items = await self.search_factory(settings.tavily_api_key).search(query)
        await self._update_status(
            run_id,
            f"{fetched_so_far + len(web_items)} items fetched so far (including {len(web_items)} web results)",
        )
        return web_items

    async def _record_failure(self, run_id: int, config_set: ConfigSet, started_at: int,
                              settings: Optional[GlobalSettings], error: Exception) -> None:
        """Mark the run as error and alert the admin; never raises."""
        message = str(error) or error.__class__.__name__
        stack = traceback.format_exc()
        failed_at = int(time())
        logger.error(f"❌ Run {run_id} for config set {config_set.id} ('{config_set.name}') failed: {message}")
        try:
            finished = await self.db.execute(
                "finish_run", run_id=run_id, status=STATUS_ERROR, finished_at=failed_at,
                error_message=message, error_stack=stack,
            )
        except Exception as store_error:
            logger.error(f"Could not record failure of run {run_id}: {store_error}")
            finished = False
        if not finished:
            logger.warning(f"Run {run_id} was already terminal; failure not recorded again")
            return

        try:
            if settings is None:
                settings = await self.db.execute("get_global_settings")
            notification = FailureNotification(
                run_id=run_id,
                config_id=config_set.id,
                config_name=config_set.name,
                started_at=format_timestamp(started_at),
                failed_at=format_timestamp(failed_at),
                error_message=message,
                error_stack=stack,
            )
            mailer = None
            if settings is not None and settings.resend_api_key and settings.default_sender:
                mailer = self.mailer_factory(settings.resend_api_key, settings.default_sender)
            await send_failure_notification(settings, notification, mailer=mailer)
        except Exception as notify_error:
            logger.error(f"Failed to send failure notification for run {run_id}: {notify_error}")
