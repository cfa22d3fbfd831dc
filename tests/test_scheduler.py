"""Tests for JobScheduler timing, single-flight execution and reconfiguration."""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from catalog_sync.http import ApiError
from catalog_sync.models import JobConfig, show_from_tvmaze
from catalog_sync.ratings import RatingRefresher
from catalog_sync.scheduler import JobDefinition, JobScheduler

from conftest import make_show_payload


NOW = 50_000.0


def make_job(job_id="sample", run=None, interval=60, enabled=True):
    async def noop():
        return "ok"

    return JobDefinition(
        id=job_id,
        name=job_id.title(),
        description=f"{job_id} job",
        default_interval_minutes=interval,
        run=run or noop,
        default_enabled=enabled,
    )


def make_scheduler(db, *jobs, jitter=0, overrides=None):
    return JobScheduler(
        db=db,
        jobs=list(jobs) or [make_job()],
        jitter_seconds=jitter,
        overrides=overrides,
        clock=lambda: NOW,
    )


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestComputeDelay:
    """Tests for JobScheduler.compute_delay."""

    def test_never_run_is_due_within_jitter(self, db):
        """Test a job that never ran starts within the jitter window."""
        scheduler = make_scheduler(db, jitter=5)
        delay = scheduler.compute_delay(JobConfig("sample", True, 60, None), NOW)
        assert 0 <= delay <= 5

    def test_recent_run_waits_remaining_interval(self, db):
        """Test the delay is the rest of the interval since the last run."""
        scheduler = make_scheduler(db, jitter=5)
        delay = scheduler.compute_delay(JobConfig("sample", True, 60, int(NOW) - 600), NOW)
        assert delay == pytest.approx(3000)

    def test_overdue_run_is_due_within_jitter(self, db):
        """Test an overdue job runs soon after startup instead of waiting again."""
        scheduler = make_scheduler(db, jitter=5)
        delay = scheduler.compute_delay(JobConfig("sample", True, 60, int(NOW) - 7200), NOW)
        assert 0 <= delay <= 5


class TestRunJob:
    """Tests for JobScheduler.run_job."""

    @pytest.mark.asyncio
    async def test_success_records_state(self, db):
        """Test a finished run records its result and persists last_run."""
        scheduler = make_scheduler(db)

        assert await scheduler.run_job("sample") is True

        status = scheduler.get_jobs_status()[0]
        assert status["last_result"] == "success"
        assert status["last_error"] is None
        assert status["last_run"] == int(NOW)
        assert status["is_running"] is False
        assert db.get_job_config("sample", default_interval=60).last_run == int(NOW)

    @pytest.mark.asyncio
    async def test_single_flight(self, db):
        """Test a second run while one is in flight is skipped."""
        release = asyncio.Event()
        started = asyncio.Event()
        runs = []

        async def slow():
            runs.append(1)
            started.set()
            await release.wait()

        scheduler = make_scheduler(db, make_job(run=slow))
        first = asyncio.create_task(scheduler.run_job("sample"))
        await started.wait()

        assert await scheduler.run_job("sample") is False
        assert await scheduler.trigger_job("sample", wait=True) is True

        release.set()
        assert await first is True
        assert runs == [1]

    @pytest.mark.asyncio
    async def test_failure_is_captured(self, db):
        """Test a raising job is recorded as an error without escaping."""

        async def broken():
            raise RuntimeError("upstream exploded")

        scheduler = make_scheduler(db, make_job(run=broken))

        assert await scheduler.run_job("sample") is True

        status = scheduler.get_jobs_status()[0]
        assert status["last_result"] == "error"
        assert status["last_error"] == "upstream exploded"
        assert status["is_running"] is False
        assert status["last_run"] == int(NOW)

    @pytest.mark.asyncio
    async def test_rejected_rating_key_fails_the_job(self, db, config):
        """Test an OMDB 401 surfaces as a failed rating job."""
        db.upsert_shows([show_from_tvmaze(make_show_payload(1))], now_ts=int(NOW))
        client = Mock(is_configured=True)
        client.get_imdb_rating = AsyncMock(
            side_effect=ApiError("omdb", 401, "https://www.omdbapi.com/", "Invalid API key!")
        )
        refresher = RatingRefresher(db=db, client=client, config=config["omdb"])
        scheduler = make_scheduler(db, make_job("omdb-sync", run=lambda: refresher.run(10)))

        assert await scheduler.run_job("omdb-sync") is True

        status = scheduler.get_jobs_status()[0]
        assert status["last_result"] == "error"
        assert "401" in status["last_error"]
        assert db.get_sync_status("ratings").is_syncing is False

    @pytest.mark.asyncio
    async def test_unknown_job(self, db):
        """Test unknown ids are rejected everywhere."""
        scheduler = make_scheduler(db)

        assert await scheduler.run_job("missing") is False
        assert await scheduler.trigger_job("missing") is False
        assert scheduler.update_job_config("missing", enabled=False) is False


class TestScheduling:
    """Tests for timers, reconfiguration and shutdown."""

    @pytest.mark.asyncio
    async def test_due_job_runs_after_start(self, db):
        """Test a never-run job fires right after start and is rescheduled."""
        ran = asyncio.Event()

        async def job():
            ran.set()

        scheduler = make_scheduler(db, make_job(run=job, interval=60))
        scheduler.start()
        try:
            await asyncio.wait_for(ran.wait(), timeout=2)
            await wait_until(lambda: scheduler.get_jobs_status()[0]["last_result"] == "success")

            status = scheduler.get_jobs_status()[0]
            assert status["last_run"] == int(NOW)
            assert status["next_run"] == int(NOW) + 3600
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_interval_change_reschedules(self, db):
        """Test a new interval replaces the pending timer and its next_run."""
        scheduler = make_scheduler(db, make_job(interval=60))
        db.set_job_last_run("sample", int(NOW))
        scheduler.start()
        try:
            assert scheduler.get_jobs_status()[0]["next_run"] == int(NOW) + 3600
            old_timer = scheduler._states["sample"].timer

            assert scheduler.update_job_config("sample", interval_minutes=120) is True

            await asyncio.gather(old_timer, return_exceptions=True)
            assert old_timer.cancelled()
            status = scheduler.get_jobs_status()[0]
            assert status["interval_minutes"] == 120
            assert status["next_run"] == int(NOW) + 7200
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_disable_clears_timer(self, db):
        """Test disabling a job removes its timer and next_run."""
        scheduler = make_scheduler(db, make_job(interval=60))
        db.set_job_last_run("sample", int(NOW))
        scheduler.start()
        try:
            scheduler.update_job_config("sample", enabled=False)

            status = scheduler.get_jobs_status()[0]
            assert status["enabled"] is False
            assert status["next_run"] is None
            assert scheduler._states["sample"].timer is None

            scheduler.update_job_config("sample", enabled=True)
            assert scheduler.get_jobs_status()[0]["next_run"] == int(NOW) + 3600
        finally:
            await scheduler.stop()

    def test_interval_below_one_rejected(self, db):
        """Test intervals under a minute are refused."""
        scheduler = make_scheduler(db)
        with pytest.raises(ValueError):
            scheduler.update_job_config("sample", interval_minutes=0)

    @pytest.mark.asyncio
    async def test_stop_cancels_running_job(self, db):
        """Test stop cancels in-flight runs without stamping them as run."""
        started = asyncio.Event()

        async def forever():
            started.set()
            await asyncio.Event().wait()

        scheduler = make_scheduler(db, make_job(run=forever))
        db.set_job_last_run("sample", int(NOW) - 60)
        scheduler.start()
        await scheduler.trigger_job("sample")
        await asyncio.wait_for(started.wait(), timeout=2)

        await scheduler.stop()

        status = scheduler.get_jobs_status()[0]
        assert status["is_running"] is False
        assert status["last_error"] == "cancelled"
        assert status["next_run"] is None
        assert db.find_job_config("sample").last_run == int(NOW) - 60

    def test_overrides_seed_new_job_rows(self, db):
        """Test configured overrides become the initial persisted job config."""
        make_scheduler(
            db,
            make_job(interval=60),
            overrides={"sample": {"interval_minutes": 30, "enabled": False}},
        )

        config = db.get_job_config("sample", default_interval=60)
        assert config.interval_minutes == 30
        assert config.enabled is False

    def test_jobs_status_shape(self, db):
        """Test the status snapshot exposes every job field."""
        scheduler = make_scheduler(db, make_job("a"), make_job("b", interval=5))

        statuses = scheduler.get_jobs_status()

        assert [s["id"] for s in statuses] == ["a", "b"]
        assert set(statuses[0]) == {
            "id",
            "name",
            "description",
            "enabled",
            "interval_minutes",
            "is_running",
            "last_run",
            "last_result",
            "last_error",
            "last_duration",
            "next_run",
        }
        assert statuses[1]["interval_minutes"] == 5

    def test_status_reads_do_not_write(self, db):
        """Test status snapshots read job rows without inserting them again."""
        scheduler = make_scheduler(db, make_job("a"), make_job("b"))

        with patch.object(db, "get_job_config", wraps=db.get_job_config) as get_job_config:
            scheduler.get_jobs_status()
            scheduler.get_jobs_status()

        get_job_config.assert_not_called()
