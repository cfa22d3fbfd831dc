from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from .common import now_epoch, to_iso
from .database import SYNC_DOMAINS, LocalDatabase
from .logging_setup import RecentEvents
from .models import SyncStatus
from .scheduler import JobScheduler


BAR_WIDTH = 24

RESULT_STYLES = {
    "success": "green",
    "error": "bold red",
}


def format_ts(ts: Optional[int]) -> str:
    if not ts:
        return "-"
    return to_iso(int(ts))


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    s = max(0, int(seconds))
    hours, rem = divmod(s, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _render_bar(total: int, completed: int) -> Any:
    if total <= 0:
        return Text("-")
    safe_total = max(1, int(total))
    safe_done = max(0, min(int(completed), safe_total))
    return ProgressBar(total=safe_total, completed=safe_done, width=BAR_WIDTH)


def render_jobs_table(jobs: Sequence[Dict[str, Any]], now_ts: Optional[int] = None) -> Table:
    ts = now_epoch() if now_ts is None else int(now_ts)
    table = Table(expand=True, show_edge=False)
    table.add_column("Job", style="bold cyan", no_wrap=True)
    table.add_column("State", no_wrap=True)
    table.add_column("Every", justify="right", no_wrap=True)
    table.add_column("Last run", no_wrap=True)
    table.add_column("Result", no_wrap=True)
    table.add_column("Next in", justify="right", no_wrap=True)
    table.add_column("Last error", overflow="ellipsis", ratio=1)

    for job in jobs:
        if not job["enabled"]:
            state = Text("disabled", style="dim")
        elif job["is_running"]:
            state = Text("running", style="bold yellow")
        else:
            state = Text("idle", style="green")

        result = job.get("last_result") or "-"
        next_run = job.get("next_run")
        table.add_row(
            str(job["id"]),
            state,
            f"{int(job['interval_minutes'])}m",
            format_ts(job.get("last_run")),
            Text(result, style=RESULT_STYLES.get(result, "white")),
            format_duration(next_run - ts) if next_run and job["enabled"] else "-",
            Text(str(job.get("last_error") or "-")),
        )
    return table


def render_sync_table(statuses: Sequence[SyncStatus]) -> Table:
    table = Table(expand=True, show_edge=False)
    table.add_column("Domain", style="bold cyan", no_wrap=True)
    table.add_column("Rows", justify="right", no_wrap=True)
    table.add_column("Last full", no_wrap=True)
    table.add_column("Last incremental", no_wrap=True)
    table.add_column("Phase", no_wrap=True)
    table.add_column("Progress", no_wrap=True, min_width=BAR_WIDTH)

    for status in statuses:
        progress = status.progress if status.is_syncing else None
        table.add_row(
            status.domain,
            f"{status.total_rows:,}",
            format_ts(status.last_full_sync),
            format_ts(status.last_incremental_sync),
            Text(progress.phase, style="yellow") if progress else Text("idle", style="dim"),
            _render_bar(progress.total, progress.current) if progress else Text("-"),
        )
    return table


class RuntimeDashboard:
    """In-process terminal status view rendered with rich."""

    def __init__(
        self,
        *,
        db: LocalDatabase,
        scheduler: JobScheduler,
        events: RecentEvents,
        event_lines: int = 8,
        refresh_seconds: float = 1.0,
    ):
        self.db = db
        self.scheduler = scheduler
        self.events = events
        self.event_lines = max(3, int(event_lines))
        self.refresh_seconds = max(0.1, float(refresh_seconds))
        self.started_at = now_epoch()

    def _render_events_panel(self) -> Panel:
        table = Table.grid(expand=True)
        table.add_column("When", no_wrap=True, style="bold yellow", width=24)
        table.add_column("Event", no_wrap=True, overflow="crop", ratio=1)

        rows: List[tuple] = []
        for entry in reversed(self.events.snapshot()[-self.event_lines :]):
            level = "WARN" if entry.level == "WARNING" else entry.level
            suffix = f" x{entry.count}" if entry.count > 1 else ""
            rows.append((f"{format_ts(entry.timestamp)} {level}", f"{entry.message}{suffix}"))
        while len(rows) < self.event_lines:
            rows.append(("-", "-"))
        for when, message in rows:
            table.add_row(when, Text(message))

        return Panel(table, title="Events", border_style="yellow", title_align="left")

    def render(self) -> Group:
        now_ts = now_epoch()
        header = Text(
            f"catalog-sync | uptime={format_duration(now_ts - self.started_at)}",
            style="bold",
        )
        statuses = [self.db.get_sync_status(domain) for domain in SYNC_DOMAINS]
        return Group(
            header,
            Panel(
                render_jobs_table(self.scheduler.get_jobs_status(), now_ts),
                title="Jobs",
                border_style="cyan",
                title_align="left",
            ),
            Panel(
                render_sync_table(statuses),
                title="Catalog sync",
                border_style="green",
                title_align="left",
            ),
            self._render_events_panel(),
        )

    async def run(self, stop_event: asyncio.Event) -> None:
        with Live(
            self.render(),
            auto_refresh=False,
            transient=False,
            screen=False,
        ) as live:
            while not stop_event.is_set():
                live.update(self.render(), refresh=True)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.refresh_seconds)
                except asyncio.TimeoutError:
                    pass
