"""Pytest configuration and shared fixtures."""

import datetime as dt
from typing import Any, Dict, List, Optional

import pytest

from catalog_sync.config import build_config
from catalog_sync.database import LocalDatabase


@pytest.fixture
def config(monkeypatch):
    """Default configuration with no API keys leaking in from the environment."""
    monkeypatch.delenv("TMDB_API_KEY", raising=False)
    monkeypatch.delenv("OMDB_API_KEY", raising=False)
    return build_config({})


@pytest.fixture
def db(tmp_path):
    """Fresh on-disk catalog database."""
    database = LocalDatabase(tmp_path / "catalog.sqlite3")
    yield database
    database.close()


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def epoch(year: int, month: int = 1, day: int = 1) -> int:
    return int(dt.datetime(year, month, day, tzinfo=dt.timezone.utc).timestamp())


def make_show_payload(show_id: int, **overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": show_id,
        "url": f"https://www.tvmaze.com/shows/{show_id}/show-{show_id}",
        "name": f"Show {show_id}",
        "type": "Scripted",
        "language": "English",
        "genres": ["Drama", "Thriller"],
        "status": "Running",
        "runtime": 60,
        "averageRuntime": 58,
        "premiered": "2015-03-01",
        "ended": None,
        "officialSite": None,
        "schedule": {"time": "21:00", "days": ["Monday"]},
        "rating": {"average": 7.9},
        "weight": 90,
        "network": {
            "id": 2,
            "name": "CBS",
            "country": {"name": "United States", "code": "US"},
        },
        "webChannel": None,
        "externals": {"tvrage": 25988, "thetvdb": 264492, "imdb": f"tt{show_id:07d}"},
        "image": {
            "medium": f"https://static.tvmaze.com/{show_id}/medium.jpg",
            "original": f"https://static.tvmaze.com/{show_id}/original.jpg",
        },
        "summary": "<p>Summary</p>",
        "updated": 1700000000 + show_id,
    }
    payload.update(overrides)
    return payload


def make_movie_payload(movie_id: int, **overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": movie_id,
        "title": f"Movie {movie_id}",
        "original_title": f"Movie {movie_id}",
        "original_language": "en",
        "genre_ids": [28, 18],
        "release_date": "2019-05-01",
        "vote_average": 7.1,
        "vote_count": 1200,
        "popularity": 33.5,
        "poster_path": f"/poster{movie_id}.jpg",
        "backdrop_path": None,
        "overview": "Overview",
        "adult": False,
    }
    payload.update(overrides)
    return payload


class FakeTVMazeClient:
    """Stand-in for TVMazeClient serving canned pages and shows."""

    def __init__(
        self,
        pages: Optional[List[List[Dict[str, Any]]]] = None,
        shows: Optional[Dict[int, Dict[str, Any]]] = None,
        updates: Optional[Dict[int, int]] = None,
        fail_on_page: Optional[int] = None,
    ):
        self.pages = pages or []
        self.shows = shows or {}
        self.updates = updates or {}
        self.fail_on_page = fail_on_page
        self.calls: List[tuple] = []

    async def get_shows_page(self, page: int) -> List[Dict[str, Any]]:
        self.calls.append(("page", page))
        if self.fail_on_page is not None and page == self.fail_on_page:
            from catalog_sync.http import ApiError

            raise ApiError("tvmaze", 500, f"https://api.tvmaze.com/shows?page={page}")
        if page < len(self.pages):
            return self.pages[page]
        return []

    async def get_show(self, show_id: int) -> Optional[Dict[str, Any]]:
        self.calls.append(("show", show_id))
        return self.shows.get(show_id)

    async def get_updates(self, since: str = "day") -> Dict[int, int]:
        self.calls.append(("updates", since))
        return dict(self.updates)
