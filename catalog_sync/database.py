from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Union

from .common import LOGGER, now_epoch, parse_int, years_before
from .models import (
    MOVIE_JSON_COLUMNS,
    SHOW_JSON_COLUMNS,
    JobConfig,
    LibraryEntry,
    MovieRecord,
    RatingCandidate,
    ShowRecord,
    SyncProgress,
    SyncStatus,
)


SCHEMA_VERSION = 3

SYNC_DOMAINS = ("shows", "movies", "ratings")

ACTIVE_SHOW_STATUSES = ("Running", "In Development", "To Be Determined")


def encode_json_columns(row: Dict[str, Any], columns: Sequence[str]) -> Dict[str, Any]:
    encoded = dict(row)
    for column in columns:
        if column in encoded:
            encoded[column] = json.dumps(encoded[column] or [])
    return encoded


def decode_json_columns(row: sqlite3.Row, columns: Sequence[str]) -> Dict[str, Any]:
    decoded = dict(row)
    for column in columns:
        raw = decoded.get(column)
        if raw is None:
            decoded[column] = []
            continue
        try:
            decoded[column] = json.loads(raw)
        except (TypeError, ValueError):
            LOGGER.warning("[DB] Unreadable JSON in column %s: %r", column, raw)
            decoded[column] = []
    return decoded


def _upsert_sql(table: str, columns: Sequence[str], key: str) -> str:
    names = ", ".join(columns)
    placeholders = ", ".join(f":{c}" for c in columns)
    updates = ",\n                ".join(f"{c}=excluded.{c}" for c in columns if c != key)
    return f"""
            INSERT INTO {table} ({names})
            VALUES ({placeholders})
            ON CONFLICT({key}) DO UPDATE SET
                {updates}
            """


class LocalDatabase:
    def __init__(self, path: Union[Path, str]):
        self.path = path
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row
        self._tx_depth = 0
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shows (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    slug TEXT,
                    type TEXT,
                    language TEXT,
                    genres TEXT,
                    status TEXT,
                    runtime INTEGER,
                    average_runtime INTEGER,
                    premiered TEXT,
                    ended TEXT,
                    official_site TEXT,
                    schedule_time TEXT,
                    schedule_days TEXT,
                    rating_average REAL,
                    weight INTEGER,
                    network_id INTEGER,
                    network_name TEXT,
                    network_country_name TEXT,
                    network_country_code TEXT,
                    web_channel_id INTEGER,
                    web_channel_name TEXT,
                    web_channel_country_code TEXT,
                    image_medium TEXT,
                    image_original TEXT,
                    summary TEXT,
                    imdb_id TEXT,
                    thetvdb_id INTEGER,
                    tvrage_id INTEGER,
                    updated_at INTEGER,
                    synced_at INTEGER NOT NULL
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS movies (
                    id INTEGER PRIMARY KEY,
                    title TEXT NOT NULL,
                    original_title TEXT,
                    slug TEXT,
                    language TEXT,
                    genres TEXT,
                    status TEXT,
                    runtime INTEGER,
                    release_date TEXT,
                    revenue INTEGER,
                    budget INTEGER,
                    vote_average REAL,
                    vote_count INTEGER,
                    popularity REAL,
                    imdb_id TEXT,
                    poster_path TEXT,
                    backdrop_path TEXT,
                    overview TEXT,
                    tagline TEXT,
                    production_companies TEXT,
                    production_countries TEXT,
                    spoken_languages TEXT,
                    synced_at INTEGER NOT NULL
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sonarr_library (
                    instance TEXT NOT NULL,
                    sonarr_id INTEGER NOT NULL,
                    tvdb_id INTEGER,
                    title TEXT NOT NULL,
                    status TEXT,
                    monitored INTEGER NOT NULL DEFAULT 0,
                    episode_count INTEGER NOT NULL DEFAULT 0,
                    episode_file_count INTEGER NOT NULL DEFAULT 0,
                    size_on_disk INTEGER NOT NULL DEFAULT 0,
                    path TEXT,
                    synced_at INTEGER NOT NULL,
                    PRIMARY KEY (instance, sonarr_id)
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_status (
                    domain TEXT PRIMARY KEY,
                    last_full_sync INTEGER,
                    last_incremental_sync INTEGER,
                    total_rows INTEGER NOT NULL DEFAULT 0,
                    is_syncing INTEGER NOT NULL DEFAULT 0,
                    sync_progress TEXT,
                    updated_at INTEGER
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_config (
                    job_id TEXT PRIMARY KEY,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    interval_minutes INTEGER NOT NULL,
                    last_run INTEGER,
                    updated_at INTEGER
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

            # Backward-compatible migrations for existing local DB files.
            self._ensure_column("shows", "imdb_rating", "REAL")
            self._ensure_column("shows", "imdb_rating_updated_at", "INTEGER")
            self._ensure_column("sonarr_library", "tvdb_id", "INTEGER")

            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_shows_imdb ON shows (imdb_id)"
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sonarr_library_tvdb ON sonarr_library (tvdb_id)"
            )

            for domain in SYNC_DOMAINS:
                self.conn.execute(
                    "INSERT OR IGNORE INTO sync_status(domain) VALUES(?)",
                    (domain,),
                )

            self.conn.execute(
                """
                INSERT INTO state(key, value) VALUES('schema_version', ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                (str(SCHEMA_VERSION),),
            )

    def _ensure_column(self, table_name: str, column_name: str, column_type: str) -> None:
        columns = self.conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        existing = {str(row["name"]) for row in columns}
        if column_name in existing:
            return
        self.conn.execute(
            f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}"
        )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing block; nested blocks join the outermost one."""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self.conn
            finally:
                self._tx_depth -= 1
            return

        self._tx_depth = 1
        try:
            with self.conn:
                yield self.conn
        finally:
            self._tx_depth = 0

    def get(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchone()

    def all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    def run(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self.transaction():
            cursor = self.conn.execute(sql, params)
        return cursor.rowcount

    def count_rows(self, table: str) -> int:
        if table not in ("shows", "movies", "sonarr_library"):
            raise ValueError(f"Unknown catalog table: {table}")
        row = self.get(f"SELECT COUNT(*) AS total FROM {table}")
        return int(row["total"]) if row else 0

    # Catalog upserts

    def upsert_show(self, record: ShowRecord, now_ts: Optional[int] = None) -> None:
        row = encode_json_columns(record.to_row(), SHOW_JSON_COLUMNS)
        row["synced_at"] = now_epoch() if now_ts is None else int(now_ts)
        with self.transaction():
            self.conn.execute(_upsert_sql("shows", list(row), "id"), row)

    def upsert_shows(self, records: Iterable[ShowRecord], now_ts: Optional[int] = None) -> int:
        saved = 0
        with self.transaction():
            for record in records:
                self.upsert_show(record, now_ts)
                saved += 1
        return saved

    def get_show(self, show_id: int) -> Optional[Dict[str, Any]]:
        row = self.get("SELECT * FROM shows WHERE id = ?", (int(show_id),))
        if row is None:
            return None
        return decode_json_columns(row, SHOW_JSON_COLUMNS)

    def show_updated_at(self, show_id: int) -> Optional[int]:
        row = self.get("SELECT updated_at FROM shows WHERE id = ?", (int(show_id),))
        if row is None:
            return None
        return parse_int(row["updated_at"])

    def count_rated_shows(self) -> int:
        row = self.get("SELECT COUNT(*) AS total FROM shows WHERE imdb_rating IS NOT NULL")
        return int(row["total"]) if row else 0

    def upsert_movie(self, record: MovieRecord, now_ts: Optional[int] = None) -> None:
        row = encode_json_columns(record.to_row(), MOVIE_JSON_COLUMNS)
        row["synced_at"] = now_epoch() if now_ts is None else int(now_ts)
        with self.transaction():
            self.conn.execute(_upsert_sql("movies", list(row), "id"), row)

    def upsert_movies(self, records: Iterable[MovieRecord], now_ts: Optional[int] = None) -> int:
        saved = 0
        with self.transaction():
            for record in records:
                self.upsert_movie(record, now_ts)
                saved += 1
        return saved

    def get_movie(self, movie_id: int) -> Optional[Dict[str, Any]]:
        row = self.get("SELECT * FROM movies WHERE id = ?", (int(movie_id),))
        if row is None:
            return None
        return decode_json_columns(row, MOVIE_JSON_COLUMNS)

    def movie_ids(self) -> Set[int]:
        return {int(row["id"]) for row in self.all("SELECT id FROM movies")}

    # Sonarr library cache

    def replace_library(
        self,
        instance: str,
        entries: Sequence[LibraryEntry],
        now_ts: Optional[int] = None,
    ) -> int:
        synced_at = now_epoch() if now_ts is None else int(now_ts)
        with self.transaction():
            self.conn.execute("DELETE FROM sonarr_library WHERE instance = ?", (instance,))
            self.conn.executemany(
                """
                INSERT INTO sonarr_library (
                    instance, sonarr_id, tvdb_id, title, status, monitored,
                    episode_count, episode_file_count, size_on_disk, path, synced_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(instance, sonarr_id) DO UPDATE SET
                    tvdb_id=excluded.tvdb_id,
                    title=excluded.title,
                    status=excluded.status,
                    monitored=excluded.monitored,
                    episode_count=excluded.episode_count,
                    episode_file_count=excluded.episode_file_count,
                    size_on_disk=excluded.size_on_disk,
                    path=excluded.path,
                    synced_at=excluded.synced_at
                """,
                [
                    (
                        instance,
                        entry.sonarr_id,
                        entry.tvdb_id,
                        entry.title,
                        entry.status,
                        1 if entry.monitored else 0,
                        entry.episode_count,
                        entry.episode_file_count,
                        entry.size_on_disk,
                        entry.path,
                        synced_at,
                    )
                    for entry in entries
                ],
            )
        return len(entries)

    def library_counts(self) -> Dict[str, int]:
        rows = self.all(
            "SELECT instance, COUNT(*) AS total FROM sonarr_library GROUP BY instance"
        )
        return {str(row["instance"]): int(row["total"]) for row in rows}

    # Sync status

    def _ensure_sync_row(self, domain: str) -> None:
        self.run("INSERT OR IGNORE INTO sync_status(domain) VALUES(?)", (domain,))

    def get_sync_status(self, domain: str) -> SyncStatus:
        row = self.get("SELECT * FROM sync_status WHERE domain = ?", (domain,))
        if row is None:
            self._ensure_sync_row(domain)
            return SyncStatus(domain=domain)

        progress = None
        if row["sync_progress"]:
            try:
                progress = SyncProgress.from_dict(json.loads(row["sync_progress"]))
            except ValueError:
                LOGGER.warning("[DB] Unreadable sync progress for %s", domain)

        return SyncStatus(
            domain=domain,
            last_full_sync=parse_int(row["last_full_sync"]),
            last_incremental_sync=parse_int(row["last_incremental_sync"]),
            total_rows=parse_int(row["total_rows"]) or 0,
            is_syncing=bool(row["is_syncing"]),
            progress=progress,
        )

    def set_syncing(
        self,
        domain: str,
        syncing: bool,
        progress: Optional[SyncProgress] = None,
    ) -> None:
        self._ensure_sync_row(domain)
        self.run(
            """
            UPDATE sync_status
            SET is_syncing = ?, sync_progress = ?, updated_at = ?
            WHERE domain = ?
            """,
            (
                1 if syncing else 0,
                json.dumps(progress.to_dict()) if progress else None,
                now_epoch(),
                domain,
            ),
        )

    def mark_completed(
        self,
        domain: str,
        kind: str,
        total_rows: Optional[int] = None,
        now_ts: Optional[int] = None,
    ) -> None:
        if kind not in ("full", "incremental"):
            raise ValueError(f"Unknown sync kind: {kind}")
        column = "last_full_sync" if kind == "full" else "last_incremental_sync"
        ts = now_epoch() if now_ts is None else int(now_ts)
        self._ensure_sync_row(domain)
        if total_rows is None:
            self.run(
                f"UPDATE sync_status SET {column} = ?, updated_at = ? WHERE domain = ?",
                (ts, ts, domain),
            )
        else:
            self.run(
                f"""
                UPDATE sync_status
                SET {column} = ?, total_rows = ?, updated_at = ?
                WHERE domain = ?
                """,
                (ts, int(total_rows), ts, domain),
            )

    def reset_sync_status(self, domain: str) -> bool:
        changed = self.run(
            """
            UPDATE sync_status
            SET is_syncing = 0, sync_progress = NULL, updated_at = ?
            WHERE domain = ? AND is_syncing = 1
            """,
            (now_epoch(), domain),
        )
        return changed > 0

    def recover_stuck_syncs(self) -> List[str]:
        """Clear is_syncing flags left behind by an unclean shutdown."""
        stuck = [
            str(row["domain"])
            for row in self.all("SELECT domain FROM sync_status WHERE is_syncing = 1")
        ]
        for domain in stuck:
            self.reset_sync_status(domain)
        return stuck

    # IMDB rating refresh

    def select_rating_batch(self, limit: int, now_ts: Optional[int] = None) -> List[RatingCandidate]:
        ts = now_epoch() if now_ts is None else int(now_ts)
        rows = self.all(
            f"""
            SELECT id, name, imdb_id, status, imdb_rating, imdb_rating_updated_at,
                {self._priority_case_sql()} AS priority
            FROM shows
            WHERE imdb_id IS NOT NULL AND imdb_id != ''
            ORDER BY
                priority ASC,
                imdb_rating_updated_at IS NOT NULL,
                imdb_rating_updated_at ASC,
                id ASC
            LIMIT ?
            """,
            (*self._priority_params(ts), max(0, int(limit))),
        )
        return [
            RatingCandidate(
                id=int(row["id"]),
                name=str(row["name"]),
                imdb_id=str(row["imdb_id"]),
                status=row["status"],
                imdb_rating=row["imdb_rating"],
                imdb_rating_updated_at=parse_int(row["imdb_rating_updated_at"]),
                priority=int(row["priority"]),
            )
            for row in rows
        ]

    def rating_tier_counts(self, now_ts: Optional[int] = None) -> Dict[int, int]:
        ts = now_epoch() if now_ts is None else int(now_ts)
        rows = self.all(
            f"""
            SELECT {self._priority_case_sql()} AS priority, COUNT(*) AS total
            FROM shows
            WHERE imdb_id IS NOT NULL AND imdb_id != ''
            GROUP BY priority
            """,
            self._priority_params(ts),
        )
        counts = {tier: 0 for tier in range(1, 6)}
        for row in rows:
            counts[int(row["priority"])] = int(row["total"])
        return counts

    @staticmethod
    def _priority_case_sql() -> str:
        statuses = ", ".join("?" for _ in ACTIVE_SHOW_STATUSES)
        return f"""CASE
                    WHEN imdb_rating IS NULL THEN 1
                    WHEN status IN ({statuses}) THEN 2
                    WHEN status = 'Ended' AND ended >= ? THEN 3
                    WHEN status = 'Ended' AND ended >= ? THEN 4
                    ELSE 5
                END"""

    @staticmethod
    def _priority_params(ts: int) -> tuple:
        return (*ACTIVE_SHOW_STATUSES, years_before(ts, 2), years_before(ts, 5))

    def update_show_rating(
        self,
        show_id: int,
        rating: Optional[float],
        now_ts: Optional[int] = None,
    ) -> None:
        ts = now_epoch() if now_ts is None else int(now_ts)
        if rating is None:
            self.run(
                "UPDATE shows SET imdb_rating_updated_at = ? WHERE id = ?",
                (ts, int(show_id)),
            )
            return
        self.run(
            "UPDATE shows SET imdb_rating = ?, imdb_rating_updated_at = ? WHERE id = ?",
            (float(rating), ts, int(show_id)),
        )

    # Job configuration

    def get_job_config(
        self,
        job_id: str,
        *,
        default_interval: int,
        default_enabled: bool = True,
    ) -> JobConfig:
        self.run(
            """
            INSERT OR IGNORE INTO job_config(job_id, enabled, interval_minutes, updated_at)
            VALUES(?, ?, ?, ?)
            """,
            (job_id, 1 if default_enabled else 0, max(1, int(default_interval)), now_epoch()),
        )
        return self.find_job_config(job_id)

    def find_job_config(self, job_id: str) -> Optional[JobConfig]:
        row = self.get("SELECT * FROM job_config WHERE job_id = ?", (job_id,))
        if row is None:
            return None
        return JobConfig(
            job_id=job_id,
            enabled=bool(row["enabled"]),
            interval_minutes=int(row["interval_minutes"]),
            last_run=parse_int(row["last_run"]),
        )

    def update_job_config(
        self,
        job_id: str,
        *,
        enabled: Optional[bool] = None,
        interval_minutes: Optional[int] = None,
    ) -> None:
        assignments = ["updated_at = ?"]
        params: List[Any] = [now_epoch()]
        if enabled is not None:
            assignments.append("enabled = ?")
            params.append(1 if enabled else 0)
        if interval_minutes is not None:
            assignments.append("interval_minutes = ?")
            params.append(int(interval_minutes))
        params.append(job_id)
        self.run(
            f"UPDATE job_config SET {', '.join(assignments)} WHERE job_id = ?",
            params,
        )

    def set_job_last_run(self, job_id: str, ts: int) -> None:
        self.run(
            "UPDATE job_config SET last_run = ?, updated_at = ? WHERE job_id = ?",
            (int(ts), now_epoch(), job_id),
        )
