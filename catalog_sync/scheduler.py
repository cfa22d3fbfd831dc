from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .common import LOGGER
from .database import LocalDatabase
from .models import JobConfig


@dataclass(frozen=True)
class JobDefinition:
    id: str
    name: str
    description: str
    default_interval_minutes: int
    run: Callable[[], Awaitable[Any]]
    default_enabled: bool = True


@dataclass
class JobState:
    timer: Optional[asyncio.Task] = None
    is_running: bool = False
    last_run: Optional[int] = None
    last_result: Optional[str] = None
    last_error: Optional[str] = None
    last_duration: Optional[float] = None
    next_run: Optional[int] = None


class JobScheduler:
    """Owns one timer per job and runs each job at most once at a time.

    A timer only sleeps; when it fires it spawns the run as its own task, so
    rescheduling (which cancels timers) never interrupts a run in progress.
    Every finished run re-enters the scheduling decision.
    """

    def __init__(
        self,
        *,
        db: LocalDatabase,
        jobs: Sequence[JobDefinition],
        jitter_seconds: float = 5.0,
        overrides: Optional[Dict[str, Dict[str, Any]]] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.db = db
        self.jitter_seconds = max(0.0, float(jitter_seconds))
        self._jobs: Dict[str, JobDefinition] = {job.id: job for job in jobs}
        self._states: Dict[str, JobState] = {job.id: JobState() for job in jobs}
        self._clock = clock or time.time
        self._sleep = sleep or asyncio.sleep
        self._started = False
        self._run_tasks: Set[asyncio.Task] = set()
        self._seed_job_configs(overrides or {})

    def _seed_job_configs(self, overrides: Dict[str, Dict[str, Any]]) -> None:
        for job_id, job in self._jobs.items():
            override = overrides.get(job_id, {})
            config = self.db.get_job_config(
                job_id,
                default_interval=int(override.get("interval_minutes", job.default_interval_minutes)),
                default_enabled=bool(override.get("enabled", job.default_enabled)),
            )
            self._states[job_id].last_run = config.last_run

    def _config(self, job_id: str) -> JobConfig:
        config = self.db.find_job_config(job_id)
        if config is not None:
            return config
        job = self._jobs[job_id]
        return self.db.get_job_config(
            job_id,
            default_interval=job.default_interval_minutes,
            default_enabled=job.default_enabled,
        )

    def compute_delay(self, config: JobConfig, now: float) -> float:
        interval_seconds = config.interval_minutes * 60
        if config.last_run is None or now - config.last_run >= interval_seconds:
            return random.uniform(0, self.jitter_seconds)
        return interval_seconds - (now - config.last_run)

    def start(self) -> None:
        if self._started:
            LOGGER.info("[Scheduler] Already started")
            return
        self._started = True
        for job_id in self._jobs:
            self._schedule(job_id)
        LOGGER.info("[Scheduler] Started %s job(s)", len(self._jobs))

    async def stop(self) -> None:
        self._started = False
        pending: List[asyncio.Task] = []
        for state in self._states.values():
            if state.timer is not None and not state.timer.done():
                pending.append(state.timer)
            self._cancel_timer(state)
        for task in list(self._run_tasks):
            if not task.done():
                task.cancel()
                pending.append(task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        LOGGER.info("[Scheduler] Stopped")

    def _cancel_timer(self, state: JobState) -> None:
        if state.timer is not None and not state.timer.done():
            state.timer.cancel()
        state.timer = None
        state.next_run = None

    def _schedule(self, job_id: str) -> None:
        state = self._states[job_id]
        self._cancel_timer(state)
        if not self._started:
            return

        config = self._config(job_id)
        if not config.enabled:
            LOGGER.info("[Scheduler] Job %s is disabled", job_id)
            return

        now = self._clock()
        delay = self.compute_delay(config, now)
        state.next_run = int(now + delay)
        state.timer = asyncio.create_task(self._timer(job_id, delay), name=f"timer:{job_id}")
        LOGGER.debug("[Scheduler] Job %s scheduled in %.1fs", job_id, delay)

    async def _timer(self, job_id: str, delay: float) -> None:
        await self._sleep(delay)
        self._states[job_id].timer = None
        self._spawn_run(job_id)

    def _spawn_run(self, job_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.run_job(job_id), name=f"job:{job_id}")
        self._run_tasks.add(task)
        task.add_done_callback(self._run_tasks.discard)
        return task

    async def run_job(self, job_id: str) -> bool:
        """Run a job once. Returns False when it was skipped or is unknown."""
        job = self._jobs.get(job_id)
        if job is None:
            LOGGER.warning("[Scheduler] Unknown job %s", job_id)
            return False

        state = self._states[job_id]
        if state.is_running:
            LOGGER.info("[Scheduler] Job %s already running, skipping", job_id)
            return False

        state.is_running = True
        state.last_error = None
        started = self._clock()
        cancelled = False
        LOGGER.info("[Scheduler] Starting job %s", job_id)
        try:
            result = await job.run()
            state.last_result = "success"
            LOGGER.info(
                "[Scheduler] Job %s finished in %.1fs: %s",
                job_id,
                self._clock() - started,
                result,
            )
        except asyncio.CancelledError:
            state.last_result = "error"
            state.last_error = "cancelled"
            cancelled = True
            raise
        except Exception as exc:
            state.last_result = "error"
            state.last_error = str(exc) or type(exc).__name__
            LOGGER.exception("[Scheduler] Job %s failed", job_id)
        finally:
            finished = self._clock()
            state.is_running = False
            state.last_run = int(finished)
            state.last_duration = finished - started
            # An interrupted run stays due on the next start.
            if not cancelled:
                self.db.set_job_last_run(job_id, int(finished))
            self._schedule(job_id)
        return True

    async def trigger_job(self, job_id: str, *, wait: bool = False) -> bool:
        if job_id not in self._jobs:
            return False
        LOGGER.info("[Scheduler] Manual trigger for %s", job_id)
        if wait:
            await self.run_job(job_id)
            return True
        self._spawn_run(job_id)
        return True

    def update_job_config(
        self,
        job_id: str,
        *,
        enabled: Optional[bool] = None,
        interval_minutes: Optional[int] = None,
    ) -> bool:
        if job_id not in self._jobs:
            return False
        if interval_minutes is not None and int(interval_minutes) < 1:
            raise ValueError("interval_minutes must be at least 1")

        self._config(job_id)
        self.db.update_job_config(job_id, enabled=enabled, interval_minutes=interval_minutes)
        LOGGER.info(
            "[Scheduler] Job %s reconfigured (enabled=%s, interval=%s)",
            job_id,
            enabled,
            interval_minutes,
        )
        self._schedule(job_id)
        return True

    def get_jobs_status(self) -> List[Dict[str, Any]]:
        jobs = []
        for job_id, job in self._jobs.items():
            config = self._config(job_id)
            state = self._states[job_id]
            jobs.append(
                {
                    "id": job_id,
                    "name": job.name,
                    "description": job.description,
                    "enabled": config.enabled,
                    "interval_minutes": config.interval_minutes,
                    "is_running": state.is_running,
                    "last_run": state.last_run if state.last_run is not None else config.last_run,
                    "last_result": state.last_result,
                    "last_error": state.last_error,
                    "last_duration": state.last_duration,
                    "next_run": state.next_run,
                }
            )
        return jobs

    def get_sync_status(self, domain: str) -> Dict[str, Any]:
        return self.db.get_sync_status(domain).to_dict()
