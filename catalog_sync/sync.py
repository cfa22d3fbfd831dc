"""Fetch-transform-persist pipelines for each catalog domain.

Each routine owns its domain's sync_status row: it repairs a stale
is_syncing flag on entry, snapshots progress while running and always
clears the flag on exit.
"""

from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from .clients import SonarrClient, TMDBClient, TVMazeClient
from .common import LOGGER, now_epoch, parse_int, utc_date
from .database import LocalDatabase
from .http import ApiError
from .models import (
    MovieRecord,
    ShowRecord,
    SyncProgress,
    SyncResult,
    SyncStatus,
    library_entry_from_sonarr,
    movie_from_tmdb,
    show_from_tvmaze,
)


PageFetcher = Callable[[int], Awaitable[Optional[Dict[str, Any]]]]


class DomainSync:
    domain = ""
    label = ""

    def __init__(self, *, db: LocalDatabase):
        self.db = db

    def _guard(self) -> SyncStatus:
        status = self.db.get_sync_status(self.domain)
        if status.is_syncing:
            # Single process: nothing else can be syncing this domain right now.
            LOGGER.warning("[%s] Sync status was stuck, resetting", self.label)
            self.db.reset_sync_status(self.domain)
            status = self.db.get_sync_status(self.domain)
        return status

    def _progress(self, current: int, total: int, phase: str) -> None:
        self.db.set_syncing(self.domain, True, SyncProgress(current, total, phase))

    def _finish(self) -> None:
        self.db.set_syncing(self.domain, False)


class ShowSync(DomainSync):
    domain = "shows"
    label = "TVMaze"

    def __init__(self, *, db: LocalDatabase, client: TVMazeClient, config: Dict[str, Any]):
        super().__init__(db=db)
        self.client = client
        self.updates_window = str(config.get("updates_window", "day"))
        self.progress_every = max(1, int(config.get("progress_every", 50)))

    @staticmethod
    def _records(payloads: Sequence[Mapping[str, Any]]) -> List[ShowRecord]:
        records = []
        for payload in payloads:
            try:
                records.append(show_from_tvmaze(payload))
            except ValueError as exc:
                LOGGER.warning("[TVMaze] Skipping malformed show: %s", exc)
        return records

    async def run_full(self) -> SyncResult:
        self._guard()
        LOGGER.info("[TVMaze] Starting full sync")
        self._progress(0, 0, "full")

        updated = 0
        page = 0
        try:
            while True:
                payloads = await self.client.get_shows_page(page)
                if not payloads:
                    break
                updated += self.db.upsert_shows(self._records(payloads))
                page += 1
                self._progress(updated, updated, "full")
                if page % 10 == 0:
                    LOGGER.info("[TVMaze] Full sync: %s pages, %s shows saved", page, updated)

            total = self.db.count_rows("shows")
            self.db.mark_completed(self.domain, "full", total)
            LOGGER.info(
                "[TVMaze] Full sync complete: %s pages, %s upserts, %s shows stored",
                page,
                updated,
                total,
            )
            return SyncResult(updated=updated, total=total)
        finally:
            self._finish()

    async def run_incremental(self) -> SyncResult:
        status = self._guard()
        if status.last_full_sync is None:
            LOGGER.info("[TVMaze] No full sync found, running full sync instead")
            return await self.run_full()

        LOGGER.info("[TVMaze] Starting incremental sync (since=%s)", self.updates_window)
        self._progress(0, 0, "incremental")

        updated = 0
        skipped = 0
        try:
            updates = await self.client.get_updates(self.updates_window)
            show_ids = sorted(updates)
            LOGGER.info("[TVMaze] %s shows changed upstream", len(show_ids))

            for index, show_id in enumerate(show_ids, start=1):
                stored_at = self.db.show_updated_at(show_id)
                if stored_at is not None and stored_at >= updates[show_id]:
                    skipped += 1
                else:
                    payload = await self.client.get_show(show_id)
                    if payload:
                        records = self._records([payload])
                        if records:
                            self.db.upsert_show(records[0])
                            updated += 1
                if index % self.progress_every == 0:
                    self._progress(index, len(show_ids), "incremental")

            total = self.db.count_rows("shows")
            self.db.mark_completed(self.domain, "incremental", total)
            LOGGER.info(
                "[TVMaze] Incremental sync complete: %s updated, %s already current",
                updated,
                skipped,
            )
            return SyncResult(updated=updated, total=total)
        finally:
            self._finish()


class MovieSync(DomainSync):
    domain = "movies"
    label = "TMDB"

    def __init__(self, *, db: LocalDatabase, client: TMDBClient, config: Dict[str, Any]):
        super().__init__(db=db)
        self.client = client
        seed = config["seed"]
        self.popular_pages = int(seed["popular_pages"])
        self.top_rated_pages = int(seed["top_rated_pages"])
        self.discover_pages = int(seed["discover_pages"])
        self.discover_decades = [int(d) for d in seed["discover_decades"]]
        self.discover_min_votes = int(seed["discover_min_votes"])
        self.changes_window_hours = int(config.get("changes_window_hours", 24))
        self.progress_every = max(1, int(config.get("progress_every", 100)))

    def _skip_unconfigured(self) -> bool:
        if self.client.is_configured:
            return False
        LOGGER.info("[TMDB] Not configured or disabled, skipping sync")
        return True

    async def _seed_listing(
        self,
        phase: str,
        fetch_page: PageFetcher,
        max_pages: int,
        genre_map: Mapping[int, str],
        saved_so_far: int,
    ) -> int:
        saved = 0
        for page in range(1, max_pages + 1):
            result = await fetch_page(page)
            results = (result or {}).get("results") or []
            if not results:
                break
            total_pages = parse_int(result.get("total_pages")) or page
            if page > total_pages:
                break

            records: List[MovieRecord] = []
            for payload in results:
                try:
                    records.append(movie_from_tmdb(payload, genre_map))
                except ValueError as exc:
                    LOGGER.warning("[TMDB] Skipping malformed movie: %s", exc)
            saved += self.db.upsert_movies(records)
            self._progress(saved_so_far + saved, saved_so_far + saved, phase)
        LOGGER.info("[TMDB] %s done: %s movies saved", phase, saved)
        return saved

    async def run_seed(self) -> SyncResult:
        if self._skip_unconfigured():
            return SyncResult()

        self._guard()
        LOGGER.info("[TMDB] Starting movie seed")
        self._progress(0, 0, "seed")

        saved = 0
        try:
            genre_map = await self.client.get_genre_map()

            saved += await self._seed_listing(
                "seed-popular", self.client.get_popular, self.popular_pages, genre_map, saved
            )
            saved += await self._seed_listing(
                "seed-top-rated",
                self.client.get_top_rated,
                self.top_rated_pages,
                genre_map,
                saved,
            )
            for decade in self.discover_decades:
                filters = {
                    "primary_release_date.gte": f"{decade}-01-01",
                    "primary_release_date.lte": f"{decade + 9}-12-31",
                    "vote_count.gte": self.discover_min_votes,
                }
                saved += await self._seed_listing(
                    f"seed-discover-{decade}s",
                    functools.partial(self.client.discover, filters=filters),
                    self.discover_pages,
                    genre_map,
                    saved,
                )

            total = self.db.count_rows("movies")
            self.db.mark_completed(self.domain, "full", total)
            LOGGER.info(
                "[TMDB] Movie seed complete: %s upserts, %s unique movies stored",
                saved,
                total,
            )
            return SyncResult(updated=saved, total=total)
        finally:
            self._finish()

    async def _collect_changed_ids(self, start_date: str, end_date: str) -> List[int]:
        changed: Dict[int, None] = {}
        page = 1
        while True:
            data = await self.client.get_movie_changes(start_date, end_date, page)
            results = (data or {}).get("results") or []
            if not results:
                break
            for item in results:
                if item.get("adult"):
                    continue
                movie_id = parse_int(item.get("id"))
                if movie_id is not None:
                    changed[movie_id] = None
            total_pages = parse_int(data.get("total_pages")) or page
            if page >= total_pages:
                break
            page += 1
        return list(changed)

    async def run_incremental(self) -> SyncResult:
        if self._skip_unconfigured():
            return SyncResult()

        status = self._guard()
        if status.last_full_sync is None:
            LOGGER.info("[TMDB] No movie seed found, running seed first")
            return await self.run_seed()

        LOGGER.info("[TMDB] Starting incremental movie sync")
        self._progress(0, 0, "incremental")

        updated = 0
        try:
            now_ts = now_epoch()
            start_date = utc_date(now_ts - self.changes_window_hours * 3600)
            end_date = utc_date(now_ts)
            changed_ids = await self._collect_changed_ids(start_date, end_date)

            existing = self.db.movie_ids()
            to_update = [movie_id for movie_id in changed_ids if movie_id in existing]
            LOGGER.info(
                "[TMDB] %s changed movies, %s exist in the catalog",
                len(changed_ids),
                len(to_update),
            )

            genre_map = await self.client.get_genre_map() if to_update else {}
            for index, movie_id in enumerate(to_update, start=1):
                payload = await self.client.get_movie(movie_id)
                if payload:
                    self.db.upsert_movie(movie_from_tmdb(payload, genre_map))
                    updated += 1
                if index % self.progress_every == 0:
                    self._progress(index, len(to_update), "incremental")

            total = self.db.count_rows("movies")
            self.db.mark_completed(self.domain, "incremental", total)
            LOGGER.info("[TMDB] Incremental movie sync complete: %s updated", updated)
            return SyncResult(updated=updated, total=total)
        finally:
            self._finish()


class LibrarySync:
    """Mirror each Sonarr instance's series list into sonarr_library."""

    def __init__(self, *, db: LocalDatabase, clients: Sequence[SonarrClient]):
        self.db = db
        self.clients = list(clients)

    async def run(self) -> SyncResult:
        if not self.clients:
            LOGGER.debug("[Sonarr] No instances configured, skipping")
            return SyncResult()

        updated = 0
        failures: List[ApiError] = []
        for client in self.clients:
            try:
                series = await client.get_all_series()
            except ApiError as exc:
                failures.append(exc)
                LOGGER.error("[Sonarr] Failed to sync %s: %s", client.name, exc)
                continue

            entries = [
                entry
                for entry in (library_entry_from_sonarr(item) for item in series)
                if entry is not None
            ]
            updated += self.db.replace_library(client.name, entries)
            LOGGER.info("[Sonarr] %s: %s series cached", client.name, len(entries))

        if len(failures) == len(self.clients):
            raise RuntimeError(
                f"All {len(self.clients)} Sonarr instance(s) failed to sync"
            ) from failures[-1]

        LOGGER.info(
            "[Sonarr] Library sync complete: %s instance(s), %s series",
            len(self.clients) - len(failures),
            updated,
        )
        return SyncResult(updated=updated, total=updated, errors=len(failures))
