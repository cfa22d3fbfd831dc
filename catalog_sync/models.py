from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

from .common import parse_float, parse_int, slugify


SHOW_JSON_COLUMNS = ("genres", "schedule_days")
MOVIE_JSON_COLUMNS = (
    "genres",
    "production_companies",
    "production_countries",
    "spoken_languages",
)


@dataclass
class ShowRecord:
    id: int
    name: str
    slug: str
    type: Optional[str] = None
    language: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    status: Optional[str] = None
    runtime: Optional[int] = None
    average_runtime: Optional[int] = None
    premiered: Optional[str] = None
    ended: Optional[str] = None
    official_site: Optional[str] = None
    schedule_time: Optional[str] = None
    schedule_days: List[str] = field(default_factory=list)
    rating_average: Optional[float] = None
    weight: Optional[int] = None
    network_id: Optional[int] = None
    network_name: Optional[str] = None
    network_country_name: Optional[str] = None
    network_country_code: Optional[str] = None
    web_channel_id: Optional[int] = None
    web_channel_name: Optional[str] = None
    web_channel_country_code: Optional[str] = None
    image_medium: Optional[str] = None
    image_original: Optional[str] = None
    summary: Optional[str] = None
    imdb_id: Optional[str] = None
    thetvdb_id: Optional[int] = None
    tvrage_id: Optional[int] = None
    updated_at: Optional[int] = None

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MovieRecord:
    id: int
    title: str
    slug: str
    original_title: Optional[str] = None
    language: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    status: Optional[str] = None
    runtime: Optional[int] = None
    release_date: Optional[str] = None
    revenue: Optional[int] = None
    budget: Optional[int] = None
    vote_average: Optional[float] = None
    vote_count: Optional[int] = None
    popularity: Optional[float] = None
    imdb_id: Optional[str] = None
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    overview: Optional[str] = None
    tagline: Optional[str] = None
    production_companies: List[str] = field(default_factory=list)
    production_countries: List[str] = field(default_factory=list)
    spoken_languages: List[str] = field(default_factory=list)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LibraryEntry:
    sonarr_id: int
    title: str
    tvdb_id: Optional[int] = None
    status: Optional[str] = None
    monitored: bool = False
    episode_count: int = 0
    episode_file_count: int = 0
    size_on_disk: int = 0
    path: Optional[str] = None


@dataclass
class SyncProgress:
    current: int
    total: int
    phase: str

    def to_dict(self) -> Dict[str, Any]:
        return {"current": self.current, "total": self.total, "phase": self.phase}

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["SyncProgress"]:
        if not isinstance(payload, dict):
            return None
        return cls(
            current=parse_int(payload.get("current")) or 0,
            total=parse_int(payload.get("total")) or 0,
            phase=str(payload.get("phase") or ""),
        )


@dataclass
class SyncStatus:
    domain: str
    last_full_sync: Optional[int] = None
    last_incremental_sync: Optional[int] = None
    total_rows: int = 0
    is_syncing: bool = False
    progress: Optional[SyncProgress] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "last_full_sync": self.last_full_sync,
            "last_incremental_sync": self.last_incremental_sync,
            "total_rows": self.total_rows,
            "is_syncing": self.is_syncing,
            "progress": self.progress.to_dict() if self.progress else None,
        }


@dataclass
class SyncResult:
    updated: int = 0
    total: int = 0
    errors: int = 0


@dataclass
class JobConfig:
    job_id: str
    enabled: bool
    interval_minutes: int
    last_run: Optional[int] = None


@dataclass
class RatingCandidate:
    id: int
    name: str
    imdb_id: str
    status: Optional[str]
    imdb_rating: Optional[float]
    imdb_rating_updated_at: Optional[int]
    priority: int


def _nested(payload: Mapping[str, Any], *keys: str) -> Any:
    current: Any = payload
    for key in keys:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _slug_from_url(url: Any) -> str:
    path = urlsplit(str(url or "")).path.rstrip("/")
    return path.rsplit("/", 1)[-1] if path else ""


def show_from_tvmaze(payload: Mapping[str, Any]) -> ShowRecord:
    show_id = parse_int(payload.get("id"))
    if show_id is None:
        raise ValueError("TVMaze show payload has no id")
    name = str(payload.get("name") or "")
    network = payload.get("network") or {}
    web_channel = payload.get("webChannel") or {}

    return ShowRecord(
        id=show_id,
        name=name,
        slug=_slug_from_url(payload.get("url")) or slugify(name),
        type=_text(payload.get("type")),
        language=_text(payload.get("language")),
        genres=[str(g) for g in payload.get("genres") or []],
        status=_text(payload.get("status")),
        runtime=parse_int(payload.get("runtime")),
        average_runtime=parse_int(payload.get("averageRuntime")),
        premiered=_text(payload.get("premiered")),
        ended=_text(payload.get("ended")),
        official_site=_text(payload.get("officialSite")),
        schedule_time=_text(_nested(payload, "schedule", "time")),
        schedule_days=[str(d) for d in _nested(payload, "schedule", "days") or []],
        rating_average=parse_float(_nested(payload, "rating", "average")),
        weight=parse_int(payload.get("weight")),
        network_id=parse_int(network.get("id")),
        network_name=_text(network.get("name")),
        network_country_name=_text(_nested(network, "country", "name")),
        network_country_code=_text(_nested(network, "country", "code")),
        web_channel_id=parse_int(web_channel.get("id")),
        web_channel_name=_text(web_channel.get("name")),
        web_channel_country_code=_text(_nested(web_channel, "country", "code")),
        image_medium=_text(_nested(payload, "image", "medium")),
        image_original=_text(_nested(payload, "image", "original")),
        summary=_text(payload.get("summary")),
        imdb_id=_text(_nested(payload, "externals", "imdb")),
        thetvdb_id=parse_int(_nested(payload, "externals", "thetvdb")),
        tvrage_id=parse_int(_nested(payload, "externals", "tvrage")),
        updated_at=parse_int(payload.get("updated")),
    )


def _names(entries: Any, *keys: str) -> List[str]:
    names: List[str] = []
    for entry in entries or []:
        if not isinstance(entry, Mapping):
            continue
        for key in keys:
            value = _text(entry.get(key))
            if value:
                names.append(value)
                break
    return names


def movie_from_tmdb(
    payload: Mapping[str, Any],
    genre_map: Optional[Mapping[int, str]] = None,
) -> MovieRecord:
    """Convert a TMDB movie (list item or detail payload) into a catalog record.

    Detail payloads carry `genres` as objects; list payloads only carry
    `genre_ids`, which are resolved through `genre_map`.
    """
    movie_id = parse_int(payload.get("id"))
    if movie_id is None:
        raise ValueError("TMDB movie payload has no id")
    title = str(payload.get("title") or "")

    raw_genres = payload.get("genres")
    if raw_genres and isinstance(raw_genres[0], Mapping):
        genres = _names(raw_genres, "name")
    elif payload.get("genre_ids") and genre_map:
        genres = [
            genre_map[gid]
            for gid in (parse_int(g) for g in payload["genre_ids"])
            if gid is not None and gid in genre_map
        ]
    else:
        genres = []

    return MovieRecord(
        id=movie_id,
        title=title,
        slug=slugify(title),
        original_title=_text(payload.get("original_title")),
        language=_text(payload.get("original_language")),
        genres=genres,
        status=_text(payload.get("status")),
        runtime=parse_int(payload.get("runtime")) or None,
        release_date=_text(payload.get("release_date")),
        revenue=parse_int(payload.get("revenue")) or None,
        budget=parse_int(payload.get("budget")) or None,
        vote_average=parse_float(payload.get("vote_average")) or None,
        vote_count=parse_int(payload.get("vote_count")) or None,
        popularity=parse_float(payload.get("popularity")) or None,
        imdb_id=_text(payload.get("imdb_id")),
        poster_path=_text(payload.get("poster_path")),
        backdrop_path=_text(payload.get("backdrop_path")),
        overview=_text(payload.get("overview")),
        tagline=_text(payload.get("tagline")),
        production_companies=_names(payload.get("production_companies"), "name"),
        production_countries=_names(payload.get("production_countries"), "iso_3166_1"),
        spoken_languages=_names(payload.get("spoken_languages"), "english_name", "name"),
    )


def library_entry_from_sonarr(payload: Mapping[str, Any]) -> Optional[LibraryEntry]:
    sonarr_id = parse_int(payload.get("id"))
    if sonarr_id is None:
        return None
    stats = payload.get("statistics") or {}
    return LibraryEntry(
        sonarr_id=sonarr_id,
        title=str(payload.get("title") or ""),
        tvdb_id=parse_int(payload.get("tvdbId")) or None,
        status=_text(payload.get("status")),
        monitored=bool(payload.get("monitored", False)),
        episode_count=parse_int(stats.get("episodeCount")) or 0,
        episode_file_count=parse_int(stats.get("episodeFileCount")) or 0,
        size_on_disk=parse_int(stats.get("sizeOnDisk")) or 0,
        path=_text(payload.get("path")),
    )
