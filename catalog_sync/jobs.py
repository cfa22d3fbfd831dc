from __future__ import annotations

from typing import Any, Dict, List

from .database import LocalDatabase
from .models import SyncResult
from .ratings import RatingRefresher, calculate_batch_size
from .scheduler import JobDefinition
from .sync import LibrarySync, MovieSync, ShowSync


SONARR_SYNC_INTERVAL = 5
TVMAZE_SYNC_INTERVAL = 1440
OMDB_SYNC_INTERVAL = 60
TMDB_SYNC_INTERVAL = 1440


def build_job_definitions(
    *,
    config: Dict[str, Any],
    db: LocalDatabase,
    show_sync: ShowSync,
    movie_sync: MovieSync,
    rating_refresher: RatingRefresher,
    library_sync: LibrarySync,
) -> List[JobDefinition]:
    omdb_cfg = config["omdb"]

    async def refresh_ratings() -> SyncResult:
        # Batch size follows whatever interval the job currently runs at.
        job_cfg = db.get_job_config("omdb-sync", default_interval=OMDB_SYNC_INTERVAL)
        batch_size = calculate_batch_size(
            job_cfg.interval_minutes,
            omdb_cfg["daily_limit"],
            minimum=omdb_cfg["min_batch_size"],
            maximum=omdb_cfg["max_batch_size"],
        )
        return await rating_refresher.run(batch_size)

    return [
        JobDefinition(
            id="sonarr-sync",
            name="Sonarr Library Sync",
            description="Mirror every Sonarr instance's series list into the local library cache.",
            default_interval_minutes=SONARR_SYNC_INTERVAL,
            run=library_sync.run,
        ),
        JobDefinition(
            id="tvmaze-sync",
            name="TVMaze Show Sync",
            description="Fetch shows changed upstream in the last day; runs a full sync first if none exists.",
            default_interval_minutes=TVMAZE_SYNC_INTERVAL,
            run=show_sync.run_incremental,
        ),
        JobDefinition(
            id="omdb-sync",
            name="IMDB Rating Refresh",
            description="Refresh IMDB ratings from OMDB in priority order within the daily quota.",
            default_interval_minutes=OMDB_SYNC_INTERVAL,
            run=refresh_ratings,
        ),
        JobDefinition(
            id="tmdb-sync",
            name="TMDB Movie Sync",
            description="Refresh movies changed on TMDB; seeds the movie catalog on first run.",
            default_interval_minutes=TMDB_SYNC_INTERVAL,
            run=movie_sync.run_incremental,
        ),
    ]
