"""Result source backed by an API-Football style JSON service."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from ...utils_date import parse_timestamp
from ..models import FINAL_STATUSES, FixtureResult
from ..retry import RetryPolicy
from .base import ResultSource
from .common import AsyncHTTPClient, RateLimiter

logger = logging.getLogger(__name__)

# statistic type -> metric; several types may feed one metric
STAT_TYPES: Mapping[str, str] = {
    "Corner Kicks": "corners",
    "Corners": "corners",
    "Yellow Cards": "cards",
    "Red Cards": "cards",
    "Fouls": "fouls",
    "Offsides": "offsides",
}


def _stat_value(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(str(value).rstrip("%"))
    except ValueError:
        return None


def parse_statistics(entries: Sequence[Mapping[str, Any]], team_id: int) -> dict[str, int | None]:
    """Collapse one team's statistics block into per-metric counts.

    A metric with no reported statistic stays ``None``; a statistic that is
    reported but ``null`` counts as zero, which is how the feed reports
    "no cards shown".
    """

    block: Sequence[Mapping[str, Any]] = ()
    for entry in entries:
        if int((entry.get("team") or {}).get("id") or -1) == team_id:
            block = entry.get("statistics") or ()
            break
    counts: dict[str, int | None] = {}
    for stat in block:
        metric = STAT_TYPES.get(str(stat.get("type")))
        if metric is None:
            continue
        value = _stat_value(stat.get("value")) or 0
        if metric == "corners" and counts.get("corners") is not None:
            continue
        counts[metric] = (counts.get(metric) or 0) + value
    return counts


def parse_fixture(payload: Mapping[str, Any], statistics: Sequence[Mapping[str, Any]] = ()) -> FixtureResult:
    fixture = payload.get("fixture") or {}
    teams = payload.get("teams") or {}
    goals = payload.get("goals") or {}
    home_id = int((teams.get("home") or {})["id"])
    away_id = int((teams.get("away") or {})["id"])
    home_stats = parse_statistics(statistics, home_id)
    away_stats = parse_statistics(statistics, away_id)
    return FixtureResult(
        fixture_id=int(fixture["id"]),
        league_id=int((payload.get("league") or {})["id"]),
        kickoff_at=parse_timestamp(fixture["date"]),
        status=str((fixture.get("status") or {}).get("short") or "NS"),
        home_team_id=home_id,
        away_team_id=away_id,
        goals_home=goals.get("home"),
        goals_away=goals.get("away"),
        corners_home=home_stats.get("corners"),
        corners_away=away_stats.get("corners"),
        cards_home=home_stats.get("cards"),
        cards_away=away_stats.get("cards"),
        fouls_home=home_stats.get("fouls"),
        fouls_away=away_stats.get("fouls"),
        offsides_home=home_stats.get("offsides"),
        offsides_away=away_stats.get("offsides"),
    )


class HTTPResultSource(ResultSource):
    """Fetch ``/fixtures?id=`` and ``/fixtures/statistics?fixture=``."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        client: AsyncHTTPClient | None = None,
        rate_limiter: RateLimiter | None = None,
        retry: RetryPolicy | None = None,
        timeout: float = 30.0,
        user_agent: str | None = None,
    ) -> None:
        super().__init__(retry=retry)
        self._base_url = base_url.rstrip("/")
        self._client = client or AsyncHTTPClient(timeout=timeout)
        self._rate_limiter = rate_limiter or RateLimiter(None)
        self._headers: dict[str, str] = {}
        if api_key:
            self._headers["x-apisports-key"] = api_key
        if user_agent:
            self._headers["User-Agent"] = user_agent

    async def _get(self, path: str, params: Mapping[str, Any]) -> Any:
        await self._rate_limiter.wait()
        return await self._client.get_json(f"{self._base_url}{path}", params=params, headers=self._headers)

    async def _fetch_result_impl(self, fixture_id: int) -> FixtureResult | None:
        payload = await self._get("/fixtures", {"id": fixture_id})
        rows = (payload or {}).get("response") or []
        if not rows:
            logger.debug("Fixture %s not found upstream", fixture_id)
            return None
        statistics: Sequence[Mapping[str, Any]] = ()
        status = str(((rows[0].get("fixture") or {}).get("status") or {}).get("short") or "")
        if status in FINAL_STATUSES:
            stats_payload = await self._get("/fixtures/statistics", {"fixture": fixture_id})
            statistics = (stats_payload or {}).get("response") or ()
        return parse_fixture(rows[0], statistics)

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["HTTPResultSource", "STAT_TYPES", "parse_fixture", "parse_statistics"]
