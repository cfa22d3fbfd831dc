"""Tests for the CLI commands, status rendering and log event buffer."""

import io
import logging

import pytest
from rich.console import Console

from catalog_sync.cli import build_arg_parser, main, print_status, reset_sync, set_job
from catalog_sync.config import build_config
from catalog_sync.dashboard import RuntimeDashboard, format_duration, render_jobs_table
from catalog_sync.database import LocalDatabase
from catalog_sync.logging_setup import (
    LiveAwareConsoleHandler,
    LiveLogState,
    RecentEvents,
    RecentEventsHandler,
)
from catalog_sync.models import SyncProgress
from catalog_sync.scheduler import JobDefinition, JobScheduler


def make_console():
    return Console(file=io.StringIO(), width=200, color_system=None)


def output(console):
    return console.file.getvalue()


@pytest.fixture
def app_config(tmp_path, monkeypatch):
    monkeypatch.delenv("TMDB_API_KEY", raising=False)
    monkeypatch.delenv("OMDB_API_KEY", raising=False)
    return build_config({"runtime": {"database_path": str(tmp_path / "catalog.sqlite3")}})


class TestArgParser:
    """Tests for build_arg_parser."""

    def test_default_command_is_run(self):
        """Test no subcommand means run."""
        args = build_arg_parser().parse_args([])
        assert args.command is None
        assert args.config == "config.json"

    def test_set_job_flags(self):
        """Test --disable and --interval parse onto the namespace."""
        args = build_arg_parser().parse_args(["set-job", "omdb-sync", "--disable", "--interval", "30"])
        assert args.enabled is False
        assert args.interval == 30

    def test_set_job_without_toggle_leaves_enabled_unset(self):
        """Test enabled stays None when neither flag is given."""
        args = build_arg_parser().parse_args(["set-job", "tvmaze-sync", "--interval", "60"])
        assert args.enabled is None

    def test_unknown_job_rejected(self):
        """Test job ids are limited to the known jobs."""
        with pytest.raises(SystemExit):
            build_arg_parser().parse_args(["trigger", "imdb-sync"])

    def test_missing_config_file_exits_nonzero(self, tmp_path, capsys):
        """Test main reports an unreadable config and returns 1."""
        assert main(["--config", str(tmp_path / "absent.json"), "status"]) == 1
        assert "Could not load config" in capsys.readouterr().out


class TestCommands:
    """Tests for the one-shot CLI commands."""

    def test_reset_sync(self, app_config):
        """Test reset-sync clears a stuck flag and reports an idle domain."""
        db = LocalDatabase(app_config["runtime"]["database_path"])
        db.set_syncing("shows", True, SyncProgress(3, 10, "full"))
        db.close()

        console = make_console()
        assert reset_sync(app_config, "shows", console) == 0
        assert reset_sync(app_config, "shows", console) == 0

        text = output(console)
        assert "Cleared stuck sync flag for shows." in text
        assert "shows was not marked as syncing." in text

    def test_set_job_persists(self, app_config):
        """Test set-job updates the stored job configuration."""
        console = make_console()

        assert set_job(app_config, "omdb-sync", False, 30, console) == 0

        db = LocalDatabase(app_config["runtime"]["database_path"])
        try:
            config = db.get_job_config("omdb-sync", default_interval=60)
        finally:
            db.close()
        assert config.enabled is False
        assert config.interval_minutes == 30
        assert "omdb-sync" in output(console)

    def test_set_job_without_changes(self, app_config):
        """Test set-job refuses to run with nothing to change."""
        console = make_console()
        assert set_job(app_config, "omdb-sync", None, None, console) == 1

    def test_status_lists_jobs_and_domains(self, app_config):
        """Test status prints every job and sync domain."""
        console = make_console()

        assert print_status(app_config, console) == 0

        text = output(console)
        for name in ("sonarr-sync", "tvmaze-sync", "omdb-sync", "tmdb-sync", "shows", "movies", "ratings"):
            assert name in text


class TestDashboard:
    """Tests for status rendering helpers."""

    def test_format_duration(self):
        """Test durations render as mm:ss or hh:mm:ss."""
        assert format_duration(None) == "-"
        assert format_duration(75) == "01:15"
        assert format_duration(3725) == "01:02:05"
        assert format_duration(-3) == "00:00"

    def test_jobs_table(self):
        """Test job state, result and error reach the table."""
        jobs = [
            {
                "id": "omdb-sync",
                "enabled": True,
                "is_running": False,
                "interval_minutes": 60,
                "last_run": None,
                "last_result": "error",
                "last_error": "API key rejected",
                "next_run": 1090,
            },
            {
                "id": "tmdb-sync",
                "enabled": False,
                "is_running": False,
                "interval_minutes": 1440,
                "last_run": None,
                "last_result": None,
                "last_error": None,
                "next_run": None,
            },
        ]
        console = make_console()
        console.print(render_jobs_table(jobs, now_ts=1000))

        text = output(console)
        assert "API key rejected" in text
        assert "disabled" in text
        assert "01:30" in text
        assert "1440m" in text

    def test_runtime_dashboard_renders(self, db):
        """Test the live view renders jobs, sync progress and recent events."""

        async def noop():
            return None

        scheduler = JobScheduler(
            db=db,
            jobs=[JobDefinition("tvmaze-sync", "TVMaze", "shows", 1440, noop)],
            jitter_seconds=0,
        )
        db.set_syncing("shows", True, SyncProgress(40, 100, "full"))
        events = RecentEvents(max_lines=8, dedupe_window_seconds=30, max_message_length=160)
        events.add(level="WARNING", message="[TVMaze] Sync status was stuck, resetting")
        dashboard = RuntimeDashboard(db=db, scheduler=scheduler, events=events)

        console = make_console()
        console.print(dashboard.render())

        text = output(console)
        assert "tvmaze-sync" in text
        assert "full" in text
        assert "Sync status was stuck" in text


class TestRecentEvents:
    """Tests for the dashboard event buffer and its handlers."""

    def make(self, **kwargs):
        params = {"max_lines": 3, "dedupe_window_seconds": 30, "max_message_length": 60}
        params.update(kwargs)
        return RecentEvents(**params)

    def test_repeats_are_collapsed_within_window(self):
        """Test identical consecutive events are counted, not duplicated."""
        events = self.make()
        events.add(level="warning", message="Rate limited", now_ts=100)
        events.add(level="WARNING", message="Rate   limited", now_ts=110)
        events.add(level="WARNING", message="Rate limited", now_ts=200)

        snapshot = events.snapshot()
        assert [e.count for e in snapshot] == [2, 1]
        assert snapshot[0].timestamp == 110

    def test_bounded_and_truncated(self):
        """Test the buffer keeps the newest lines and truncates long messages."""
        events = self.make(max_message_length=40)
        for i in range(5):
            events.add(level="ERROR", message=f"event {i}", now_ts=i)
        events.add(level="ERROR", message="x" * 100, now_ts=10)

        snapshot = events.snapshot()
        assert len(snapshot) == 3
        assert snapshot[-1].message.endswith("...")
        assert len(snapshot[-1].message) == 40

    def test_handler_appends_exception_summary(self):
        """Test logged exceptions are summarized on a single event line."""
        events = self.make()
        handler = RecentEventsHandler(events=events)
        try:
            raise RuntimeError("database is locked")
        except RuntimeError as exc:
            record = logging.LogRecord(
                "catalog-sync", logging.ERROR, __file__, 1, "Job failed", None, (type(exc), exc, None)
            )
        handler.handle(record)

        assert events.snapshot()[0].message == "Job failed (RuntimeError: database is locked)"

    def test_console_handler_silent_while_live(self):
        """Test console output is suppressed while the live view owns the terminal."""
        state = LiveLogState()
        stream = io.StringIO()
        handler = LiveAwareConsoleHandler(live_state=state, allow_while_live=False)
        handler.setStream(stream)
        record = logging.LogRecord("catalog-sync", logging.INFO, __file__, 1, "hello", None, None)

        state.set_live_active(True)
        handler.handle(record)
        assert stream.getvalue() == ""

        state.set_live_active(False)
        handler.handle(record)
        assert "hello" in stream.getvalue()
