from time import time

import pytest

from conftest import config_set_entry, seed
from reclaimer import StaleRunReclaimer, timeout_message


def test_timeout_message_pluralizes():
    assert timeout_message(1) == "Run timed out after 1 minute."
    assert timeout_message(15) == "Run timed out after 15 minutes."


@pytest.mark.asyncio
async def test_sweep_fails_only_runs_past_the_timeout(db):
    config_sets = await seed(db, [], [config_set_entry("Old", []), config_set_entry("Recent", [])])
    now = int(time())
    old = await db.execute("create_run", config_set_id=config_sets["Old"].id, started_at=now - 20 * 60,
                           status="Starting run")
    recent = await db.execute("create_run", config_set_id=config_sets["Recent"].id, started_at=now - 5 * 60,
                              status="Starting run")

    reclaimer = StaleRunReclaimer(db, timeout_minutes=15)
    assert await reclaimer.sweep(now=now) == [old["run_id"]]
    assert await reclaimer.sweep(now=now) == []

    old_run = await db.execute("get_run", run_id=old["run_id"])
    assert old_run.status == "failed"
    assert old_run.error_message == "Run timed out after 15 minutes."
    assert old_run.is_terminal
    assert (await db.execute("get_run", run_id=recent["run_id"])).status == "Starting run"


@pytest.mark.asyncio
async def test_sweep_keeps_existing_error_message(db):
    config_sets = await seed(db, [], [config_set_entry("Old", [])])
    created = await db.execute("create_run", config_set_id=config_sets["Old"].id, started_at=100,
                               status="Starting run")
    db.conn.execute("UPDATE run_log SET error_message = ? WHERE id = ?", ("partial failure", created["run_id"]))
    db.conn.commit()

    await StaleRunReclaimer(db, timeout_minutes=1).sweep(now=1000)

    run = await db.execute("get_run", run_id=created["run_id"])
    assert (run.status, run.error_message) == ("failed", "partial failure")
