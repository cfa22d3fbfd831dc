from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from .clients import OMDBClient, SonarrClient, TMDBClient, TVMazeClient
from .common import LOGGER
from .dashboard import RuntimeDashboard
from .database import LocalDatabase
from .jobs import build_job_definitions
from .logging_setup import LoggingRuntime
from .ratings import RatingRefresher
from .scheduler import JobScheduler
from .sync import LibrarySync, MovieSync, ShowSync


@dataclass
class Services:
    db: LocalDatabase
    tmdb_client: TMDBClient
    omdb_client: OMDBClient
    show_sync: ShowSync
    movie_sync: MovieSync
    rating_refresher: RatingRefresher
    library_sync: LibrarySync
    scheduler: JobScheduler


def open_database(config: Dict[str, Any]) -> LocalDatabase:
    db_path = Path(config["runtime"]["database_path"]).expanduser().resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return LocalDatabase(db_path)


def build_services(config: Dict[str, Any], db: LocalDatabase) -> Services:
    backoff = int(config["runtime"]["network_backoff_max_seconds"])

    tvmaze_client = TVMazeClient(config=config["tvmaze"], max_backoff_seconds=backoff)
    tmdb_client = TMDBClient(
        api_key=config["api_keys"]["tmdb"],
        config=config["tmdb"],
        max_backoff_seconds=backoff,
    )
    omdb_client = OMDBClient(
        api_key=config["api_keys"]["omdb"],
        config=config["omdb"],
        max_backoff_seconds=backoff,
    )
    sonarr_clients: List[SonarrClient] = [
        SonarrClient(
            instance=instance,
            timeout_seconds=config["sonarr"]["timeout_seconds"],
            max_backoff_seconds=backoff,
        )
        for instance in config["sonarr"]["instances"]
        if instance.get("enabled", True)
    ]

    show_sync = ShowSync(db=db, client=tvmaze_client, config=config["tvmaze"])
    movie_sync = MovieSync(db=db, client=tmdb_client, config=config["tmdb"])
    rating_refresher = RatingRefresher(db=db, client=omdb_client, config=config["omdb"])
    library_sync = LibrarySync(db=db, clients=sonarr_clients)

    scheduler = JobScheduler(
        db=db,
        jobs=build_job_definitions(
            config=config,
            db=db,
            show_sync=show_sync,
            movie_sync=movie_sync,
            rating_refresher=rating_refresher,
            library_sync=library_sync,
        ),
        jitter_seconds=config["runtime"]["startup_jitter_seconds"],
        overrides=config["jobs"],
    )

    return Services(
        db=db,
        tmdb_client=tmdb_client,
        omdb_client=omdb_client,
        show_sync=show_sync,
        movie_sync=movie_sync,
        rating_refresher=rating_refresher,
        library_sync=library_sync,
        scheduler=scheduler,
    )


def recover_on_startup(db: LocalDatabase) -> None:
    recovered = db.recover_stuck_syncs()
    if recovered:
        LOGGER.warning(
            "Startup recovery: cleared stuck sync flag for %s", ", ".join(recovered)
        )


async def run_app(config: Dict[str, Any], logging_runtime: LoggingRuntime) -> None:
    db = open_database(config)
    live_active = False

    try:
        recover_on_startup(db)
        services = build_services(config, db)

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _signal_stop() -> None:
            if not stop_event.is_set():
                LOGGER.info("Stop signal received. Beginning graceful shutdown...")
                stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_stop)
            except NotImplementedError:
                # Windows event loops may not support this.
                pass

        LOGGER.info("Database: %s", db.path)
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        LOGGER.info(
            "Upstreams: tmdb=%s omdb=%s (daily_limit=%s) sonarr_instances=%s",
            "on" if services.tmdb_client.is_configured else "off",
            "on" if services.omdb_client.is_configured else "off",
            config["omdb"]["daily_limit"],
            len(services.library_sync.clients),
        )

        services.scheduler.start()

        waiters = [asyncio.create_task(stop_event.wait(), name="stop_waiter")]
        if config["runtime"]["console_mode"] == "dashboard":
            dashboard = RuntimeDashboard(
                db=db,
                scheduler=services.scheduler,
                events=logging_runtime.events,
                event_lines=config["runtime"]["dashboard_event_lines"],
                refresh_seconds=config["runtime"]["dashboard_refresh_seconds"],
            )
            logging_runtime.live_state.set_live_active(True)
            live_active = True
            waiters.append(asyncio.create_task(dashboard.run(stop_event), name="dashboard"))

        done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        stop_event.set()
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        LOGGER.info("Shutdown: stopping scheduler.")
        await services.scheduler.stop()
        LOGGER.info("Shutdown complete.")

        for finished in done:
            exc = finished.exception()
            if exc is not None:
                LOGGER.error("Task %s failed: %s", finished.get_name(), exc)
                raise exc
    finally:
        if live_active:
            logging_runtime.live_state.set_live_active(False)
        db.close()
