from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

from .common import LOGGER, parse_float, parse_int
from .http import ApiError, HTTPClient, Limiter
from .limiter import AsyncWindowLimiter, MinIntervalLimiter


Sleeper = Callable[[float], Awaitable[None]]


class TVMazeClient:
    def __init__(
        self,
        *,
        config: Dict[str, Any],
        max_backoff_seconds: int = 60,
        limiter: Optional[Limiter] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.base_url = config["base_url"].rstrip("/")
        rate = config["rate_limit"]
        self.limiter = limiter if limiter is not None else AsyncWindowLimiter(
            max_requests=int(rate["requests"]),
            period_seconds=float(rate["per_seconds"]),
            name="tvmaze",
            margin_seconds=float(rate.get("margin_seconds", 0.1)),
        )
        self.http = HTTPClient(
            service="tvmaze",
            timeout_seconds=config["timeout_seconds"],
            limiter=self.limiter,
            rate_limited_retry_seconds=config["rate_limited_retry_seconds"],
            max_backoff_seconds=max_backoff_seconds,
            sleep=sleep,
        )

    async def get_shows_page(self, page: int) -> List[Dict[str, Any]]:
        # The index answers 404 once the page number runs past the last page.
        data = await self.http.get_json(
            f"{self.base_url}/shows", params={"page": int(page)}, empty=[]
        )
        return list(data or [])

    async def get_show(self, show_id: int) -> Optional[Dict[str, Any]]:
        return await self.http.get_json(f"{self.base_url}/shows/{int(show_id)}", empty=None)

    async def get_updates(self, since: str = "day") -> Dict[int, int]:
        data = await self.http.get_json(
            f"{self.base_url}/updates/shows", params={"since": since}, empty={}
        )
        updates: Dict[int, int] = {}
        for raw_id, raw_ts in (data or {}).items():
            show_id = parse_int(raw_id)
            if show_id is not None:
                updates[show_id] = parse_int(raw_ts) or 0
        return updates


class TMDBClient:
    def __init__(
        self,
        *,
        api_key: str,
        config: Dict[str, Any],
        max_backoff_seconds: int = 60,
        limiter: Optional[Limiter] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.api_key = api_key
        self.enabled = bool(config.get("enabled", True))
        self.base_url = config["base_url"].rstrip("/")
        self.language = config["language"]
        self.limiter = limiter if limiter is not None else MinIntervalLimiter(
            float(config["min_interval_seconds"]), name="tmdb"
        )
        self.http = HTTPClient(
            service="tmdb",
            timeout_seconds=config["timeout_seconds"],
            limiter=self.limiter,
            rate_limited_retry_seconds=config["rate_limited_retry_seconds"],
            max_backoff_seconds=max_backoff_seconds,
            sleep=sleep,
        )
        self._genre_map: Optional[Dict[int, str]] = None

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.api_key)

    def _params(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"api_key": self.api_key, "language": self.language}
        params.update(extra or {})
        return params

    async def _get(self, endpoint: str, extra: Optional[Dict[str, Any]] = None) -> Any:
        return await self.http.get_json(
            f"{self.base_url}{endpoint}", params=self._params(extra), empty={}
        )

    async def get_genre_map(self) -> Dict[int, str]:
        if self._genre_map is None:
            data = await self._get("/genre/movie/list") or {}
            genre_map: Dict[int, str] = {}
            for entry in data.get("genres") or []:
                genre_id = parse_int(entry.get("id"))
                if genre_id is not None and entry.get("name"):
                    genre_map[genre_id] = str(entry["name"])
            self._genre_map = genre_map
            LOGGER.debug("[TMDB] Loaded %s movie genres", len(genre_map))
        return self._genre_map

    async def get_popular(self, page: int) -> Optional[Dict[str, Any]]:
        return await self._get("/movie/popular", {"page": int(page)})

    async def get_top_rated(self, page: int) -> Optional[Dict[str, Any]]:
        return await self._get("/movie/top_rated", {"page": int(page)})

    async def discover(self, page: int, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        params = {"sort_by": "popularity.desc", "page": int(page)}
        params.update(filters)
        return await self._get("/discover/movie", params)

    async def get_movie_changes(
        self, start_date: str, end_date: str, page: int
    ) -> Optional[Dict[str, Any]]:
        return await self._get(
            "/movie/changes",
            {"start_date": start_date, "end_date": end_date, "page": int(page)},
        )

    async def get_movie(self, movie_id: int) -> Optional[Dict[str, Any]]:
        data = await self._get(f"/movie/{int(movie_id)}")
        return data or None

    async def test_connection(self) -> bool:
        if not self.api_key:
            return False
        try:
            data = await self._get("/configuration")
        except ApiError as exc:
            LOGGER.warning("[TMDB] Connection test failed: %s", exc)
            return False
        return bool(data)


class OMDBClient:
    TEST_IMDB_ID = "tt0903747"

    def __init__(
        self,
        *,
        api_key: str,
        config: Dict[str, Any],
        max_backoff_seconds: int = 60,
        limiter: Optional[Limiter] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.api_key = api_key
        self.enabled = bool(config.get("enabled", True))
        self.base_url = config["base_url"]
        self.daily_limit = int(config["daily_limit"])
        self.limiter = limiter if limiter is not None else MinIntervalLimiter(
            float(config["request_delay_seconds"]), name="omdb"
        )
        self.http = HTTPClient(
            service="omdb",
            timeout_seconds=config["timeout_seconds"],
            limiter=self.limiter,
            rate_limited_retry_seconds=config["rate_limited_retry_seconds"],
            max_backoff_seconds=max_backoff_seconds,
            sleep=sleep,
        )

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.api_key)

    async def get_title(self, imdb_id: str) -> Optional[Dict[str, Any]]:
        data = await self.http.get_json(
            self.base_url, params={"apikey": self.api_key, "i": imdb_id}, empty={}
        )
        if not data or str(data.get("Response", "")).lower() != "true":
            return None
        return data

    async def get_imdb_rating(self, imdb_id: str) -> Optional[float]:
        data = await self.get_title(imdb_id)
        if data is None:
            return None
        raw_rating = str(data.get("imdbRating") or "N/A")
        if raw_rating.upper() == "N/A":
            return None
        return parse_float(raw_rating)

    async def test_connection(self) -> bool:
        if not self.api_key:
            return False
        try:
            return await self.get_title(self.TEST_IMDB_ID) is not None
        except ApiError as exc:
            LOGGER.warning("[OMDB] Connection test failed: %s", exc)
            return False


class SonarrClient:
    """Minimal Sonarr v3 API client; only library reads are needed here."""

    def __init__(
        self,
        *,
        instance: Dict[str, Any],
        timeout_seconds: int = 30,
        max_backoff_seconds: int = 60,
        sleep: Optional[Sleeper] = None,
    ):
        self.name = str(instance["name"])
        self.base_url = str(instance["url"]).rstrip("/")
        self.api_key = str(instance["api_key"])
        self.http = HTTPClient(
            service=f"sonarr:{self.name}",
            timeout_seconds=timeout_seconds,
            limiter=MinIntervalLimiter(0, name=f"sonarr:{self.name}"),
            max_backoff_seconds=max_backoff_seconds,
            default_headers={"X-Api-Key": self.api_key},
            sleep=sleep,
        )

    async def _get(self, endpoint: str, empty: Any) -> Any:
        url = f"{self.base_url}/api/v3{endpoint}"
        data = await self.http.get_json(url, empty=empty)
        if data is None:
            raise ApiError(self.http.service, 404, url, "endpoint not found")
        return data

    async def get_all_series(self) -> List[Dict[str, Any]]:
        return list(await self._get("/series", empty=[]))
