#!/usr/bin/env python3
"""
Run dispatcher.

Entry points into the run engine:

- `dispatch(cron)` starts one background run per enabled config set whose
  schedule contains `cron` and returns without waiting for them.
- `run_now(config_set_id)` runs one config set and waits for the result.
- `list_runs(page)` returns recent runs with their status history.

Each entry point sweeps stale runs first. Background runs are kept in a task
set until they finish, and `drain()` waits for them, so a host that drains
before exiting never drops a run mid-flight.
"""

import asyncio
from typing import List, Optional, Set

from config import ALLOWED_SCHEDULE_CRONS, get_logger
from errors import ConfigSetNotFoundError, RunInProgressError
from models import ConfigSet, DatabaseQueue, Run
from reclaimer import StaleRunReclaimer
from runner import DigestRunner, RunResult
from telemetry import trace_span

logger = get_logger("dispatcher")

DEFAULT_PAGE_SIZE = 50


class RunDispatcher:
    def __init__(self, db: DatabaseQueue, runner: Optional[DigestRunner] = None,
                 reclaimer: Optional[StaleRunReclaimer] = None) -> None:
        self.db = db
        self.runner = runner or DigestRunner(db)
        self.reclaimer = reclaimer or StaleRunReclaimer(db)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @trace_span(
        "dispatch.cron",
        tracer_name="dispatcher",
        attr_from_args=lambda self, cron: {"dispatch.cron": cron},
    )
    async def dispatch(self, cron: str) -> List[asyncio.Task]:
        """Start a background run for every enabled config set scheduled on `cron`.

        The match is literal membership in each config set's comma-separated
        schedule. Returns the spawned tasks; a failing run never fails dispatch.
        """
        cron = " ".join(str(cron or "").split())
        if cron not in ALLOWED_SCHEDULE_CRONS:
            logger.warning(f"Dispatching for cron '{cron}' which is not an allowed schedule")
        await self.reclaimer.sweep()
        config_sets = await self.db.execute("get_enabled_config_sets_for_cron", cron=cron)
        if not config_sets:
            logger.info(f"📭 No enabled config sets scheduled for '{cron}'")
            return []
        logger.info(f"📬 Dispatching {len(config_sets)} config set(s) for '{cron}'")
        return [self._spawn(config_set) for config_set in config_sets]

    def _spawn(self, config_set: ConfigSet) -> asyncio.Task:
        task = asyncio.create_task(self.runner.run(config_set), name=f"digest-run-{config_set.id}")
        self._tasks.add(task)
        task.add_done_callback(lambda t, cs=config_set: self._on_run_done(t, cs))
        return task

    def _on_run_done(self, task: asyncio.Task, config_set: ConfigSet) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Run for config set {config_set.id} ('{config_set.name}') was cancelled")
            return
        error = task.exception()
        if isinstance(error, RunInProgressError):
            logger.info(f"⏭️ Skipped config set {config_set.id} ('{config_set.name}'): {error}")
        elif error is not None:
            logger.error(f"Scheduled run for config set {config_set.id} ('{config_set.name}') failed: {error}")
        else:
            result = task.result()
            logger.info(f"Scheduled run {result.run_id} for config set {config_set.id} finished with {result.item_count} items")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for every background run to finish.

        Returns:
            False if `timeout` expired with runs still in flight.
        """
        if not self._tasks:
            return True
        logger.info(f"⏳ Waiting for {len(self._tasks)} background run(s) to finish")
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} background run(s) still running after {timeout}s")
            return False
        return True

    @trace_span(
        "dispatch.run_now",
        tracer_name="dispatcher",
        attr_from_args=lambda self, config_set_id: {"config_set.id": config_set_id},
    )
    async def run_now(self, config_set_id: int) -> RunResult:
        """Run one config set immediately and wait for it to finish.

        Raises:
            ConfigSetNotFoundError: If no config set has this id.
            Exception: The run's own failure, re-raised.
        """
        await self.reclaimer.sweep()
        config_set = await self.db.execute("get_config_set", config_set_id=config_set_id)
        if config_set is None:
            raise ConfigSetNotFoundError(f"Config set not found: {config_set_id}",
                                         details={"config_set_id": config_set_id})
        return await self.runner.run(config_set)

    async def list_runs(self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> List[Run]:
        """Most recent runs first, `page_size` per page (pages start at 1)."""
        await self.reclaimer.sweep()
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        return await self.db.execute("list_runs", limit=page_size, offset=(page - 1) * page_size)
