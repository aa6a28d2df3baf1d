import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from lock_reconciler.core.reaper import StuckRunReaper
from lock_reconciler.core.runs import RunCounters, RunStore
from lock_reconciler.db.models import ReconciliationRun, RunLock, RunStatus, utcnow
from lock_reconciler.errors import RunAlreadyActiveError, RunNotFoundError, RunNotRunningError


@pytest.fixture
def runs(db) -> RunStore:
    return RunStore(db)


async def _age_run(db, run_id: int, minutes: int) -> None:
    async with db.session() as session:
        await session.execute(
            update(ReconciliationRun)
            .where(ReconciliationRun.id == run_id)
            .values(start_time=utcnow() - timedelta(minutes=minutes))
        )


async def test_only_one_run_can_hold_the_claim(runs, db):
    run_id = await runs.start_run("manual")

    with pytest.raises(RunAlreadyActiveError):
        await runs.start_run("scheduled")

    assert await runs.active_run_id() == run_id
    async with db.session() as session:
        count = len((await session.execute(select(ReconciliationRun))).scalars().all())
    assert count == 1


async def test_concurrent_starts_claim_once(runs):
    results = await asyncio.gather(
        runs.start_run("manual"), runs.start_run("scheduled"), return_exceptions=True
    )

    started = [r for r in results if isinstance(r, int)]
    assert len(started) == 1
    assert sum(isinstance(r, Exception) for r in results) == 1


async def test_finish_releases_the_claim_and_is_terminal(runs):
    run_id = await runs.start_run("manual")
    counters = RunCounters(processed=4, succeeded=2, failed=1, skipped=1)

    assert await runs.finish_run(run_id, RunStatus.COMPLETED, counters)
    assert not await runs.finish_run(run_id, RunStatus.FAILED, error="late")

    run = await runs.get_run(run_id)
    assert run.status == RunStatus.COMPLETED.value
    assert (run.reservations_processed, run.success_count, run.failure_count, run.skipped_count) == (4, 2, 1, 1)
    assert run.duration_ms is not None
    assert run.error is None
    assert await runs.active_run_id() is None
    assert await runs.start_run("manual") != run_id


async def test_kill_run(runs):
    run_id = await runs.start_run("manual")

    await runs.kill_run(run_id)

    run = await runs.get_run(run_id)
    assert run.status == RunStatus.KILLED.value
    assert run.error == "Run was manually killed"
    assert run.end_time is not None
    assert await runs.active_run_id() is None

    with pytest.raises(RunNotRunningError):
        await runs.kill_run(run_id)
    with pytest.raises(RunNotFoundError):
        await runs.kill_run(12345)


async def test_reaper_kills_stale_runs_once(runs, db):
    stale = await runs.start_run("scheduled")
    await _age_run(db, stale, minutes=61)
    reaper = StuckRunReaper(db, timeout_minutes=60)

    assert await reaper.reap() == [stale]
    assert await reaper.reap() == []

    run = await runs.get_run(stale)
    assert run.status == RunStatus.KILLED.value
    assert run.duration_ms >= 61 * 60 * 1000
    assert (run.end_time - run.start_time) >= timedelta(minutes=61)
    assert "60 minute" in run.error
    async with db.session() as session:
        lock = await session.get(RunLock, 1)
    assert lock.run_id is None


async def test_reaper_leaves_recent_runs_alone(runs, db):
    recent = await runs.start_run("manual")
    await _age_run(db, recent, minutes=30)

    assert await StuckRunReaper(db, timeout_minutes=60).reap() == []
    assert await runs.is_running(recent)


async def test_statistics_and_detail(runs):
    first = await runs.start_run("manual")
    await runs.finish_run(first, RunStatus.COMPLETED, RunCounters(processed=1, succeeded=1))
    second = await runs.start_run("manual")
    await runs.kill_run(second)

    stats = await runs.statistics()
    assert stats["runs"] == {"completed": 1, "killed": 1}
    assert stats["successful_updates"] == 0

    recent = await runs.list_runs(limit=1)
    assert [r.id for r in recent] == [second]

    detail = await runs.get_run_detail(first)
    assert detail["status"] == "completed"
    assert detail["successes"] == []
    assert detail["failures"] == []
    assert await runs.get_run_detail(999) is None
