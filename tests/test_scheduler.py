from datetime import datetime, timezone

import pytest

from scheduler import CronTrigger, DigestScheduler, create_scheduler


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_next_occurrence_same_day_and_rollover():
    trigger = CronTrigger("0 9 * * *")
    assert trigger.next_occurrence(_utc(2026, 10, 17, 8, 0)) == _utc(2026, 10, 17, 9, 0)
    # A firing time equal to the reference is already in the past
    assert trigger.next_occurrence(_utc(2026, 10, 17, 9, 0)) == _utc(2026, 10, 18, 9, 0)
    assert trigger.next_occurrence(_utc(2026, 12, 31, 23, 30)) == _utc(2027, 1, 1, 9, 0)


@pytest.mark.parametrize("expression", ["*/5 * * * *", "0 9 * * 1", "0 25 * * *", "nonsense"])
def test_rejects_non_daily_crons(expression):
    with pytest.raises(ValueError):
        CronTrigger(expression)


def test_next_run_event_groups_simultaneous_triggers():
    scheduler = DigestScheduler(dispatcher=None, crons=["0 1 * * *", "0 3 * * *", " 0  1 * * * ", "bogus"])
    assert len(scheduler.triggers) == 3
    next_time, crons = scheduler.get_next_run_event(_utc(2026, 10, 17, 0, 30))
    assert next_time == _utc(2026, 10, 17, 1, 0)
    assert crons == ["0 1 * * *", "0 1 * * *"]


def test_schedule_status_labels():
    status = create_scheduler(dispatcher=None, crons=["0 0 * * *"]).get_schedule_status(_utc(2026, 10, 17, 23, 0))
    assert status["labels"] == ["Daily at 08:00 UTC+8 (Wuhan)"]
    assert status["next_run_time"] == "2026-10-18T00:00:00+00:00"
    assert status["seconds_until_next_run"] == 3600


def test_empty_schedule():
    scheduler = DigestScheduler(dispatcher=None, crons=[])
    assert scheduler.get_next_run_event() == (None, [])


@pytest.mark.asyncio
async def test_fire_dispatches_without_waiting():
    class FakeDispatcher:
        def __init__(self):
            self.crons = []

        async def dispatch(self, cron):
            self.crons.append(cron)
            return ["task-a", "task-b"]

    dispatcher = FakeDispatcher()
    scheduler = DigestScheduler(dispatcher, crons=["0 2 * * *"])
    assert await scheduler.fire("0 2 * * *") == 2
    assert dispatcher.crons == ["0 2 * * *"]
