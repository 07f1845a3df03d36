#!/usr/bin/env python3
"""
News Digest command line.

Runs digests on demand, dispatches cron triggers, hosts the long-running
scheduler and exposes the maintenance commands (catalog sync, migrations,
run history, stale-run sweep, source tests and prompt polishing).
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from catalog import sync_catalog
from config import config, get_logger
from dispatcher import RunDispatcher
from errors import DigestError
from fetcher import SourceFetcher
from llm_client import polish_prompt
from models import DatabaseQueue
from reclaimer import StaleRunReclaimer
from runner import DigestRunner
from scheduler import create_scheduler
from telemetry import init_telemetry, trace_span
from utils import format_timestamp, truncate_string

logger = get_logger("orchestrator")
init_telemetry("digest-runner")


class DigestOrchestrator:
    """Owns the store, fetcher and dispatcher for one CLI invocation."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = SourceFetcher()
        self.dispatcher: Optional[RunDispatcher] = None

    async def start(self) -> None:
        await self.db.start()
        runner = DigestRunner(self.db, fetcher=self.fetcher)
        self.dispatcher = RunDispatcher(self.db, runner=runner, reclaimer=StaleRunReclaimer(self.db))

    async def close(self) -> None:
        await self.fetcher.close()
        await self.db.stop()

    async def __aenter__(self) -> "DigestOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def run_config_set(self, config_set_id: int, html_out: Optional[str] = None) -> bool:
        logger.info(f"📡 Running config set {config_set_id}")
        try:
            result = await self.dispatcher.run_now(config_set_id)
        except DigestError as e:
            logger.error(f"❌ Run failed: {e}")
            return False
        if html_out:
            Path(html_out).write_text(result.html, encoding="utf-8")
            logger.info(f"📝 Wrote digest HTML to {html_out}")
        print(json.dumps({"ok": True, "run_id": result.run_id, "item_count": result.item_count,
                          "email_id": result.email_id}))
        return True

    @trace_span("orchestrator.dispatch", tracer_name="orchestrator",
                attr_from_args=lambda self, cron: {"dispatch.cron": cron})
    async def dispatch(self, cron: str) -> bool:
        tasks = await self.dispatcher.dispatch(cron)
        # A one-shot process must not exit before its background runs finish
        await self.dispatcher.drain()
        failed = sum(1 for t in tasks if not t.cancelled() and t.exception() is not None)
        logger.info(f"📬 Dispatch for '{cron}' finished: {len(tasks) - failed} ok, {failed} failed")
        return True

    async def list_runs(self, page: int, page_size: int) -> bool:
        runs = await self.dispatcher.list_runs(page, page_size)
        if not runs:
            print("No runs recorded.")
            return True
        for run in runs:
            started = format_timestamp(run.started_at)
            line = f"#{run.id} [{run.status}] {run.config_name or run.config_set_id} started {started}"
            if run.item_count:
                line += f" items={run.item_count}"
            if run.error_message:
                line += f" error={truncate_string(run.error_message, 120)}"
            print(line)
            for entry in run.history:
                print(f"    - {entry}")
        return True

    async def reclaim(self) -> bool:
        reclaimed = await self.dispatcher.reclaimer.sweep()
        print(f"Reclaimed {len(reclaimed)} stale run(s)")
        return True

    async def polish(self, prompt: str) -> bool:
        settings = await self.db.execute("get_global_settings")
        if not settings.llm_api_key:
            logger.error("❌ No LLM API key configured")
            return False
        try:
            polished = await polish_prompt(prompt, settings.llm_provider, settings.llm_api_key, settings.llm_model)
        except DigestError as e:
            logger.error(f"❌ Prompt polishing failed: {e}")
            return False
        print(polished)
        return True

    async def test_source(self, source_id: int) -> bool:
        source = await self.db.execute("get_source", source_id=source_id)
        if source is None:
            logger.error(f"❌ Source not found: {source_id}")
            return False
        settings = await self.db.execute("get_global_settings")
        result = await self.fetcher.test_source(source, settings.effective_items_limit)
        if result["success"]:
            message = f"Fetched {result['item_count']} items"
        else:
            message = result["error"]
        await self.db.execute(
            "record_source_test", source_id=source_id,
            status="success" if result["success"] else "error", message=message,
        )
        print(json.dumps(result, indent=2))
        return result["success"]

    async def sync_config(self, catalog_path: Optional[str]) -> bool:
        catalog = config.load_catalog(catalog_path)
        if not catalog:
            logger.error(f"❌ No catalog found at {catalog_path or config.CATALOG_PATH}")
            return False
        try:
            await sync_catalog(self.db, catalog)
        except DigestError as e:
            logger.error(f"❌ Catalog rejected: {e}")
            return False
        return True

    async def check_status(self) -> Dict[str, Any]:
        """Collect store and configuration health for `status`."""
        logger.info("📊 Checking system status")
        settings = await self.db.execute("get_global_settings")
        config_sets = await self.db.execute("list_config_sets")
        sources = await self.db.execute("list_sources")
        missing = [name for name, value in (
            ("resend_api_key", settings.resend_api_key),
            ("llm_api_key", settings.llm_api_key),
            ("default_sender", settings.default_sender),
        ) if not value]
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "schema_version": await self.db.execute("get_schema_version"),
            "config_sets": len(config_sets),
            "enabled_config_sets": sum(1 for cs in config_sets if cs.enabled),
            "sources": len(sources),
            "runs": await self.db.execute("count_runs_by_status"),
            "llm_provider": settings.llm_provider,
            "missing_settings": missing,
            "overall_status": "healthy" if not missing else "issues_detected",
        }


def print_status(status: Dict[str, Any]) -> None:
    """Print formatted status information."""
    print("\n📊 News Digest Status")
    print(f"⏰ {status['timestamp']}")
    print(f"🏥 Overall: {status['overall_status'].upper()}")
    print(f"\n💾 Database (schema v{status['schema_version']}):")
    print(f"   📋 Config sets: {status['config_sets']} ({status['enabled_config_sets']} enabled)")
    print(f"   📡 Sources: {status['sources']}")
    for run_status, count in sorted(status["runs"].items()):
        print(f"   🏃 Runs {run_status}: {count}")
    print(f"\n🤖 Provider: {status['llm_provider']}")
    if status["missing_settings"]:
        print(f"⚠️  Missing settings: {', '.join(status['missing_settings'])}")


async def _with_orchestrator(action, *args) -> bool:
    async with DigestOrchestrator() as orchestrator:
        return await action(orchestrator, *args)


async def run_scheduled_mode() -> None:
    logger.info(f"⚙️ Configuration: {config.get_config_summary()}")
    async with DigestOrchestrator() as orchestrator:
        scheduler = create_scheduler(orchestrator.dispatcher)
        await scheduler.run_forever()


async def run_migrations() -> bool:
    async with DatabaseQueue(config.DATABASE_PATH) as db:
        version = await db.execute("get_schema_version")
    logger.info(f"✅ Database schema at version {version}")
    return True


async def show_status() -> bool:
    async with DigestOrchestrator() as orchestrator:
        print_status(await orchestrator.check_status())
    return True


def _require_int(parser: argparse.ArgumentParser, value: Optional[str], what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        parser.error(f"{what} must be an integer")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='News Digest runner')
    parser.add_argument('mode', choices=[
        'run', 'dispatch', 'scheduled', 'schedule-status', 'runs', 'reclaim',
        'polish', 'test-source', 'sync-config', 'migrate', 'status',
    ], help='Operation mode')
    parser.add_argument('target', nargs='?',
                        help='Config set id (run), source id (test-source) or prompt text (polish)')
    parser.add_argument('--cron', help='Cron expression to dispatch, e.g. "0 0 * * *"')
    parser.add_argument('--html-out', help='Write the rendered digest HTML to this file (run)')
    parser.add_argument('--page', type=int, default=1, help='Run history page (runs)')
    parser.add_argument('--page-size', type=int, default=50, help='Runs per page (runs)')
    parser.add_argument('--catalog', help='Catalog YAML path (sync-config)')

    args = parser.parse_args()

    try:
        if args.mode == 'run':
            config_set_id = _require_int(parser, args.target, "config set id")
            success = asyncio.run(_with_orchestrator(DigestOrchestrator.run_config_set, config_set_id, args.html_out))
        elif args.mode == 'dispatch':
            if not args.cron:
                parser.error("dispatch requires --cron")
            success = asyncio.run(_with_orchestrator(DigestOrchestrator.dispatch, args.cron))
        elif args.mode == 'scheduled':
            asyncio.run(run_scheduled_mode())
            success = True
        elif args.mode == 'schedule-status':
            create_scheduler(None).print_schedule_status()
            success = True
        elif args.mode == 'runs':
            success = asyncio.run(_with_orchestrator(DigestOrchestrator.list_runs, args.page, args.page_size))
        elif args.mode == 'reclaim':
            success = asyncio.run(_with_orchestrator(DigestOrchestrator.reclaim))
        elif args.mode == 'polish':
            if not args.target:
                parser.error("polish requires the prompt text")
            success = asyncio.run(_with_orchestrator(DigestOrchestrator.polish, args.target))
        elif args.mode == 'test-source':
            source_id = _require_int(parser, args.target, "source id")
            success = asyncio.run(_with_orchestrator(DigestOrchestrator.test_source, source_id))
        elif args.mode == 'sync-config':
            success = asyncio.run(_with_orchestrator(DigestOrchestrator.sync_config, args.catalog))
        elif args.mode == 'migrate':
            success = asyncio.run(run_migrations())
        else:
            success = asyncio.run(show_status())
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("👋 Digest runner shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
