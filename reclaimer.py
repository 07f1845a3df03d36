#!/usr/bin/env python3
"""
Stale-run reclaimer.

Fails runs that have stayed non-terminal longer than the run timeout. It is not
a timer: the dispatcher calls `sweep()` before listing runs and before starting
one, so a stuck run stays visible as running until one of those happens.
Sweeping twice is harmless; already-terminal runs are never touched.
"""

from time import time
from typing import List, Optional

from config import config, get_logger
from models import DatabaseQueue
from telemetry import trace_span

logger = get_logger("reclaimer")


def timeout_message(timeout_minutes: int) -> str:
    unit = "minute" if timeout_minutes == 1 else "minutes"
    return f"Run timed out after {timeout_minutes} {unit}."


class StaleRunReclaimer:
    def __init__(self, db: DatabaseQueue, timeout_minutes: Optional[int] = None):
        self.db = db
        self.timeout_minutes = timeout_minutes or config.RUN_TIMEOUT_MINUTES

    @trace_span("runs.reclaim", tracer_name="reclaimer")
    async def sweep(self, now: Optional[int] = None) -> List[int]:
        """Mark stale runs as failed and return their ids."""
        now = int(time()) if now is None else int(now)
        cutoff = now - self.timeout_minutes * 60
        reclaimed = await self.db.execute(
            "reclaim_stale_runs", cutoff=cutoff, message=timeout_message(self.timeout_minutes), now=now
        )
        if reclaimed:
            logger.warning(
                f"⏰ Marked {len(reclaimed)} stale run(s) as failed after {self.timeout_minutes} minute(s): "
                f"{', '.join(str(run_id) for run_id in reclaimed)}"
            )
        return reclaimed
