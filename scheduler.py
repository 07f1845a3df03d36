#!/usr/bin/env python3
"""
Digest scheduler.

Sleeps until the next allow-listed daily cron trigger (UTC) and hands the
trigger to the dispatcher, which starts runs in the background. The loop never
waits for runs; on shutdown it drains the dispatcher so in-flight runs finish.
"""

import asyncio
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from config import config, get_logger, ALLOWED_SCHEDULES
from dispatcher import RunDispatcher
from telemetry import trace_span

logger = get_logger("scheduler")


class CronTrigger:
    """A daily cron expression of the form "M H * * *" evaluated in UTC."""

    def __init__(self, expression: str):
        """
        Raises:
            ValueError: If the expression is not a daily "M H * * *" cron.
        """
        self.expression = " ".join(str(expression).split())
        self.time = self._parse(self.expression)

    @staticmethod
    def _parse(expression: str) -> time:
        parts = expression.split(" ")
        if len(parts) != 5 or parts[2:] != ["*", "*", "*"]:
            raise ValueError(f"Only daily 'M H * * *' crons are supported, got: {expression!r}")
        try:
            minute, hour = int(parts[0]), int(parts[1])
        except ValueError:
            raise ValueError(f"Invalid minute/hour in cron {expression!r}") from None
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ValueError(f"Cron {expression!r} is out of range")
        return time(hour=hour, minute=minute)

    def next_occurrence(self, from_time: Optional[datetime] = None) -> datetime:
        """Next firing strictly after `from_time` (default: now), as a UTC datetime."""
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        ref = from_time.astimezone(timezone.utc)
        candidate = datetime.combine(ref.date(), self.time, tzinfo=timezone.utc)
        if candidate <= ref:
            candidate += timedelta(days=1)
        return candidate

    def __repr__(self) -> str:
        return f"CronTrigger({self.expression!r})"


class DigestScheduler:
    def __init__(self, dispatcher: Optional[RunDispatcher], crons: Optional[List[str]] = None):
        self.dispatcher = dispatcher
        self.triggers: List[CronTrigger] = []
        for expression in crons if crons is not None else config.SCHEDULER_CRONS:
            try:
                self.triggers.append(CronTrigger(expression))
            except ValueError as e:
                logger.warning(f"Ignoring schedule entry: {e}")

    def get_next_run_event(self, from_time: Optional[datetime] = None) -> Tuple[Optional[datetime], List[str]]:
        """Next firing time and every cron that fires at it."""
        if not self.triggers:
            return None, []
        upcoming = [(trigger.next_occurrence(from_time), trigger.expression) for trigger in self.triggers]
        next_time = min(at for at, _ in upcoming)
        return next_time, [expression for at, expression in upcoming if at == next_time]

    def get_schedule_status(self, from_time: Optional[datetime] = None) -> Dict[str, Any]:
        now = from_time or datetime.now(timezone.utc)
        next_time, crons = self.get_next_run_event(now)
        labels = {entry["cron"]: entry["label"] for entry in ALLOWED_SCHEDULES}
        return {
            "triggers": [t.expression for t in self.triggers],
            "labels": [labels.get(t.expression, t.expression) for t in self.triggers],
            "next_run_time": next_time.isoformat() if next_time else None,
            "next_crons": crons,
            "seconds_until_next_run": (next_time - now).total_seconds() if next_time else None,
        }

    def print_schedule_status(self) -> None:
        status = self.get_schedule_status()
        logger.info("📅 Schedule Status:")
        for label in status["labels"]:
            logger.info(f"   • {label}")
        if status["next_run_time"]:
            minutes = status["seconds_until_next_run"] / 60
            logger.info(f"   ⏰ Next trigger: {status['next_run_time']} ({', '.join(status['next_crons'])}) "
                        f"in {minutes:.1f} minutes")
        else:
            logger.info("   ⚠️ No schedule configured")

    async def run_forever(self) -> None:
        """Fire triggers until cancelled, then drain background runs."""
        if not self.triggers:
            logger.error("No schedule configured - cannot run in scheduled mode")
            return
        logger.info(f"🚀 Starting digest scheduler with {len(self.triggers)} trigger(s)")
        self.print_schedule_status()
        try:
            while True:
                try:
                    next_time, crons = self.get_next_run_event()
                    sleep_time = max(1.0, (next_time - datetime.now(timezone.utc)).total_seconds() + 1)
                    logger.info(f"😴 Sleeping {sleep_time / 60:.1f} minutes until {', '.join(crons)}")
                    await self._sleep_until(next_time, sleep_time)
                    for cron in crons:
                        await self.fire(cron)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"💥 Error in scheduler loop: {e}")
                    await asyncio.sleep(60)
        except asyncio.CancelledError:
            logger.info("📶 Scheduler cancelled - waiting for in-flight runs")
            await self.dispatcher.drain()
            raise

    async def fire(self, cron: str) -> int:
        """Dispatch one trigger without waiting for its runs; returns how many were started."""
        logger.info(f"⏰ Trigger {cron}")
        tasks = await self.dispatcher.dispatch(cron)
        return len(tasks)

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float) -> None:
        await asyncio.sleep(sleep_time)


def create_scheduler(dispatcher: Optional[RunDispatcher], crons: Optional[List[str]] = None) -> DigestScheduler:
    """Create a DigestScheduler firing `crons` (default: SCHEDULER_CRONS)."""
    return DigestScheduler(dispatcher, crons)
