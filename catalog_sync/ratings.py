from __future__ import annotations

from typing import Any, Dict, Optional

from .clients import OMDBClient
from .common import LOGGER, now_epoch
from .database import LocalDatabase
from .http import ApiError
from .models import SyncResult
from .sync import DomainSync


MINUTES_PER_DAY = 1440

TIER_LABELS = {
    1: "never rated",
    2: "active",
    3: "ended <2y",
    4: "ended 2-5y",
    5: "other",
}


def calculate_batch_size(
    interval_minutes: int,
    daily_limit: int,
    *,
    minimum: int = 10,
    maximum: int = 10000,
) -> int:
    """Per-run share of the daily quota, keeping 10% back for ad-hoc calls."""
    interval = min(max(1, int(interval_minutes)), MINUTES_PER_DAY)
    raw = (int(daily_limit) * 9 * interval) // (10 * MINUTES_PER_DAY)
    return max(int(minimum), min(int(maximum), raw))


class RatingRefresher(DomainSync):
    domain = "ratings"
    label = "OMDB"

    def __init__(self, *, db: LocalDatabase, client: OMDBClient, config: Dict[str, Any]):
        super().__init__(db=db)
        self.client = client
        self.progress_every = max(1, int(config.get("progress_every", 10)))

    def _log_tiers(self, now_ts: int) -> None:
        counts = self.db.rating_tier_counts(now_ts)
        LOGGER.info(
            "[OMDB] Rating candidates: %s",
            ", ".join(f"{TIER_LABELS[tier]}={counts[tier]}" for tier in sorted(counts)),
        )

    async def run(self, batch_size: int, now_ts: Optional[int] = None) -> SyncResult:
        if not self.client.is_configured:
            LOGGER.info("[OMDB] Not configured or disabled, skipping rating refresh")
            return SyncResult()

        self._guard()
        ts = now_epoch() if now_ts is None else int(now_ts)
        self._log_tiers(ts)

        batch = self.db.select_rating_batch(batch_size, ts)
        if not batch:
            LOGGER.info("[OMDB] No shows with an IMDB id to refresh")
            return SyncResult(total=self.db.count_rated_shows())

        LOGGER.info("[OMDB] Refreshing IMDB ratings for %s shows", len(batch))
        self._progress(0, len(batch), "ratings")

        updated = 0
        missing = 0
        errors = 0
        fatal: Optional[ApiError] = None
        try:
            for index, candidate in enumerate(batch, start=1):
                try:
                    rating = await self.client.get_imdb_rating(candidate.imdb_id)
                except ApiError as exc:
                    errors += 1
                    LOGGER.warning(
                        "[OMDB] Lookup failed for %s (%s): %s",
                        candidate.name,
                        candidate.imdb_id,
                        exc,
                    )
                    # Stamp anyway so one broken entry is not re-selected every run.
                    self.db.update_show_rating(candidate.id, None)
                    if exc.status == 401:
                        LOGGER.error(
                            "[OMDB] API key rejected or daily limit reached; stopping after %s of %s",
                            index,
                            len(batch),
                        )
                        fatal = exc
                        break
                    continue

                self.db.update_show_rating(candidate.id, rating)
                if rating is None:
                    missing += 1
                else:
                    updated += 1
                if index % self.progress_every == 0:
                    self._progress(index, len(batch), "ratings")

            if fatal is not None:
                raise fatal

            total = self.db.count_rated_shows()
            self.db.mark_completed(self.domain, "incremental", total)
            LOGGER.info(
                "[OMDB] Rating refresh complete: %s rated, %s without rating, %s errors",
                updated,
                missing,
                errors,
            )
            return SyncResult(updated=updated, total=total, errors=errors)
        finally:
            self._finish()
