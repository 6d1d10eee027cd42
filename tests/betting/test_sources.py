from __future__ import annotations

import asyncio
import datetime as dt

import pytest
import requests

from pitchline.betting.errors import PermanentAPIError, TransientAPIError
from pitchline.betting.retry import RetryPolicy
from pitchline.betting.sources import AsyncHTTPClient, HTTPResultSource, RateLimiter, StaticResultSource
from pitchline.betting.sources.http import parse_fixture, parse_statistics

FIXTURE_PAYLOAD = {
    "fixture": {"id": 101, "date": "2024-08-31T14:00:00+00:00", "status": {"short": "FT"}},
    "league": {"id": 39},
    "teams": {"home": {"id": 10}, "away": {"id": 20}},
    "goals": {"home": 2, "away": 1},
}

STATISTICS_PAYLOAD = [
    {
        "team": {"id": 10},
        "statistics": [
            {"type": "Corner Kicks", "value": 7},
            {"type": "Fouls", "value": 12},
            {"type": "Yellow Cards", "value": 2},
            {"type": "Red Cards", "value": None},
            {"type": "Ball Possession", "value": "55%"},
        ],
    },
    {
        "team": {"id": 20},
        "statistics": [
            {"type": "Corner Kicks", "value": 3},
            {"type": "Yellow Cards", "value": 3},
            {"type": "Red Cards", "value": 1},
            {"type": "Offsides", "value": 4},
        ],
    },
]


async def _no_sleep(delay: float) -> None:
    return None


class StubClient:
    def __init__(self, responses) -> None:
        self.responses = responses
        self.requests: list[tuple[str, dict, dict]] = []

    async def get_json(self, url, *, params=None, headers=None):
        self.requests.append((url, dict(params or {}), dict(headers or {})))
        response = self.responses[url.rsplit("/v3", 1)[-1]]
        if isinstance(response, Exception):
            raise response
        return response

    async def aclose(self) -> None:
        return None


class StubResponse:
    def __init__(self, status_code: int, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


class StubSession:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.closed = False

    def get(self, url, params=None, headers=None, timeout=None):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    def close(self) -> None:
        self.closed = True


def test_parse_statistics_sums_cards_and_keeps_missing_metrics_none() -> None:
    home = parse_statistics(STATISTICS_PAYLOAD, 10)
    away = parse_statistics(STATISTICS_PAYLOAD, 20)

    assert home == {"corners": 7, "fouls": 12, "cards": 2}
    assert away == {"corners": 3, "cards": 4, "offsides": 4}
    assert parse_statistics(STATISTICS_PAYLOAD, 99) == {}


def test_parse_fixture() -> None:
    result = parse_fixture(FIXTURE_PAYLOAD, STATISTICS_PAYLOAD)

    assert result.fixture_id == 101
    assert result.league_id == 39
    assert result.kickoff_at == dt.datetime(2024, 8, 31, 14, tzinfo=dt.timezone.utc)
    assert result.is_final
    assert result.pair("goals") == (2, 1)
    assert result.pair("corners") == (7, 3)
    assert result.pair("cards") == (2, 4)
    assert result.pair("fouls") == (12, None)
    assert result.total("fouls") is None
    assert result.pair("offsides") == (None, 4)


def test_http_source_fetches_fixture_and_statistics() -> None:
    client = StubClient(
        {
            "/fixtures": {"response": [FIXTURE_PAYLOAD]},
            "/fixtures/statistics": {"response": STATISTICS_PAYLOAD},
        }
    )
    source = HTTPResultSource("https://example.test/v3/", api_key="secret", client=client)

    result = asyncio.run(source.fetch_result(101))

    assert result.corners_home == 7
    assert [request[0] for request in client.requests] == [
        "https://example.test/v3/fixtures",
        "https://example.test/v3/fixtures/statistics",
    ]
    assert client.requests[0][1] == {"id": 101}
    assert client.requests[1][1] == {"fixture": 101}
    assert client.requests[0][2]["x-apisports-key"] == "secret"
    assert source.calls == 1


def test_http_source_skips_statistics_for_unfinished_fixture() -> None:
    live = {**FIXTURE_PAYLOAD, "fixture": {**FIXTURE_PAYLOAD["fixture"], "status": {"short": "2H"}}}
    client = StubClient({"/fixtures": {"response": [live]}})
    source = HTTPResultSource("https://example.test/v3", client=client)

    result = asyncio.run(source.fetch_result(101))

    assert result.status == "2H"
    assert result.corners_home is None
    assert len(client.requests) == 1


def test_http_source_unknown_fixture() -> None:
    source = HTTPResultSource("https://example.test/v3", client=StubClient({"/fixtures": {"response": []}}))
    assert asyncio.run(source.fetch_result(5)) is None


def test_http_source_retries_transient_errors() -> None:
    client = StubClient({"/fixtures": TransientAPIError("rate limited", status=429)})
    retry = RetryPolicy(max_attempts=3, jitter=0.0, timeout=None, sleep=_no_sleep)
    source = HTTPResultSource("https://example.test/v3", client=client, retry=retry)

    with pytest.raises(TransientAPIError):
        asyncio.run(source.fetch_result(101))
    assert source.calls == 3


def test_static_source_replays_queued_failures(make_result, now) -> None:
    retry = RetryPolicy(max_attempts=2, jitter=0.0, timeout=None, sleep=_no_sleep)
    source = StaticResultSource(
        [make_result(1, kickoff_at=now)],
        failures={1: [TransientAPIError("flaky")]},
        retry=retry,
    )

    result = asyncio.run(source.fetch_result(1))

    assert result.fixture_id == 1
    assert source.calls == 2
    assert asyncio.run(source.fetch_result(2)) is None


@pytest.mark.parametrize(
    ("outcome", "error"),
    [
        (StubResponse(429), TransientAPIError),
        (StubResponse(502), TransientAPIError),
        (StubResponse(404), PermanentAPIError),
        (requests.Timeout("slow"), TransientAPIError),
        (requests.ConnectionError("down"), TransientAPIError),
    ],
)
def test_async_http_client_classifies_failures(outcome, error) -> None:
    client = AsyncHTTPClient(session=StubSession(outcome))
    with pytest.raises(error):
        asyncio.run(client.get_json("https://example.test/fixtures"))


def test_async_http_client_returns_json() -> None:
    session = StubSession(StubResponse(200, {"response": []}))
    client = AsyncHTTPClient(session=session)

    async def scenario():
        payload = await client.get_json("https://example.test/fixtures", params={"id": 1})
        await client.aclose()
        return payload

    assert asyncio.run(scenario()) == {"response": []}
    assert session.closed


def test_rate_limiter_interval() -> None:
    assert RateLimiter(None).interval == 0.0
    assert RateLimiter(4).interval == 0.25
    assert RateLimiter.from_delay(0.5).interval == 0.5
    assert RateLimiter.from_delay(0).interval == 0.0
