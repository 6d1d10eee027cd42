"""Integration-style tests for the pitchline CLI wiring."""

from __future__ import annotations

import datetime as dt
import json
from pathlib import Path

import polars as pl
import pytest

from pitchline.betting.calibration import PerformanceWeight
from pitchline.betting.cli import APP, main
from pitchline.betting.models import Fixture
from pitchline.betting.prediction_markets import PredictionMarketService
from pitchline.betting.store import SQLiteStore
from pitchline.utils_date import utcnow

BASE_CONFIG = """
ingestion:
  source: static
  inter_call_delay: 0.5
"""


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PITCHLINE_ENV", raising=False)
    monkeypatch.delenv("PITCHLINE_EXTRA_CONFIG", raising=False)


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "pitchline.yaml"
    path.write_text(BASE_CONFIG)
    return path


@pytest.fixture()
def storage(tmp_path: Path) -> Path:
    return tmp_path / "cli.sqlite3"


@pytest.fixture()
def run_cli(config_file: Path, storage: Path, capsys: pytest.CaptureFixture[str]):
    def _run(*argv: str, config: Path | None = None) -> tuple[int, dict]:
        code = main([*argv, "--config", str(config or config_file), "--storage", str(storage)])
        out = capsys.readouterr().out
        return code, json.loads(out)

    return _run


def test_registered_commands() -> None:
    assert [command.name for command in APP.commands] == [
        "validate-config",
        "run-job",
        "build-ticket",
        "resolve-market",
        "close-markets",
        "close-market",
        "recalibrate",
        "export-weights",
        "schedule",
    ]


def test_validate_config_reports_warnings(run_cli) -> None:
    code, payload = run_cli("validate-config")
    assert code == 0
    assert payload == {"ok": True, "environment": "default", "warnings": []}


def test_validate_config_reports_errors(run_cli, tmp_path: Path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("optimizer:\n  odds_min: 0.9\n")

    code, payload = run_cli("validate-config", config=broken)

    assert code == 1
    assert payload["ok"] is False
    assert "optimizer.odds_min must exceed 1.0" in payload["error"]


def test_invalid_configuration_aborts_service_commands(run_cli, tmp_path: Path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("settlement:\n  batch_size: 0\n")

    with pytest.raises(SystemExit, match="settlement.batch_size"):
        run_cli("close-markets", config=broken)


def test_run_job_prints_report(run_cli, storage: Path) -> None:
    code, payload = run_cli("run-job", "score-legs", "--options", '{"batch_size": 25}')

    assert code == 0
    assert payload["job"] == "score-legs"
    assert payload["status"] == "ok"
    assert payload["scanned"] == 0
    assert SQLiteStore(storage).job_runs("score-legs")[0]["status"] == "ok"


def test_run_job_rejects_bad_options(run_cli) -> None:
    with pytest.raises(SystemExit):
        run_cli("run-job", "score-legs", "--options", '{"batch_size": 0}')
    with pytest.raises(SystemExit, match="JSON"):
        run_cli("run-job", "score-legs", "--options", "{not json")


def _seed_fixtures(storage: Path, count: int) -> None:
    kickoff = utcnow() + dt.timedelta(hours=2)
    SQLiteStore(storage).upsert_fixtures(
        [
            Fixture(
                fixture_id=fixture_id,
                league_id=39,
                kickoff_at=kickoff + dt.timedelta(minutes=fixture_id),
                home_team_id=100 + fixture_id,
                away_team_id=200 + fixture_id,
            )
            for fixture_id in range(1, count + 1)
        ]
    )


def _write_offers(tmp_path: Path, count: int) -> Path:
    path = tmp_path / "offers.json"
    offers = [
        {"fixture_id": fixture_id, "market": "goals", "side": "over", "line": 2.5, "odds": 2.0, "bookmaker": "book"}
        for fixture_id in range(1, count + 1)
    ]
    path.write_text(json.dumps({"offers": offers}))
    return path


def test_build_ticket_saves_draft(run_cli, storage: Path, tmp_path: Path) -> None:
    _seed_fixtures(storage, 4)
    offers = _write_offers(tmp_path, 4)

    code, payload = run_cli("build-ticket", "--offers", str(offers), "--legs", "3", "--seed", "7", "--save")

    assert code == 0
    assert payload["seed"] == 7
    assert payload["pool_size"] == 4
    assert payload["total_odds"] == pytest.approx(8.0)
    assert len({leg["fixture_id"] for leg in payload["legs"]}) == 3
    assert all(leg["market"] == "goals" and leg["line"] == 2.5 for leg in payload["legs"])
    saved = SQLiteStore(storage).get_ticket(payload["ticket_id"])
    assert saved is not None
    assert len(saved.legs) == 3
    assert saved.ticket_hash == payload["ticket_hash"]


def test_build_ticket_reports_short_pool(run_cli, storage: Path, tmp_path: Path) -> None:
    _seed_fixtures(storage, 2)
    offers = _write_offers(tmp_path, 2)

    code, payload = run_cli("build-ticket", "--offers", str(offers), "--legs", "3")

    assert code == 2
    assert (payload["available"], payload["required"]) == (2, 3)


def test_resolve_market(run_cli, storage: Path) -> None:
    service = PredictionMarketService(SQLiteStore(storage))
    market = service.create_market("Derby winner", utcnow() + dt.timedelta(days=1))
    service.place_bet("alice", market.market_id, "yes", 100)

    code, payload = run_cli("resolve-market", str(market.market_id), "yes", "--actor", "ops")
    assert code == 0
    assert payload["winning_outcome"] == "yes"
    assert payload["action"] == "manual_resolve"
    assert (payload["positions_settled"], payload["won"]) == (1, 1)

    code, payload = run_cli("resolve-market", str(market.market_id), "no")
    assert code == 1
    assert payload["type"] == "MarketAlreadyResolved"


def test_resolve_unknown_market(run_cli) -> None:
    code, payload = run_cli("resolve-market", "404", "void")
    assert code == 1
    assert payload["type"] == "MarketNotFound"


def test_close_markets(run_cli, storage: Path) -> None:
    service = PredictionMarketService(SQLiteStore(storage))
    expired = service.create_market("Already over", utcnow() - dt.timedelta(hours=1))
    service.create_market("Still open", utcnow() + dt.timedelta(hours=1))

    code, payload = run_cli("close-markets")

    assert code == 0
    assert payload == {"closed": [expired.market_id]}


def test_close_single_market(run_cli, storage: Path) -> None:
    store = SQLiteStore(storage)
    market = PredictionMarketService(store).create_market("Derby winner", utcnow() + dt.timedelta(days=1))

    code, payload = run_cli("close-market", str(market.market_id), "--actor", "ops")
    assert code == 0
    assert payload == {"closed": market.market_id, "status": "closed"}
    assert store.market_audit_log(market.market_id)[0]["action"] == "admin_close"

    code, payload = run_cli("close-market", str(market.market_id))
    assert code == 1
    assert payload["type"] == "MarketClosed"


def test_recalibrate_on_empty_store(run_cli) -> None:
    code, payload = run_cli("recalibrate", "--lookback-days", "30")
    assert code == 0
    assert payload == {"weights": 0, "global": 0}


def test_export_weights(run_cli, storage: Path, tmp_path: Path) -> None:
    weight = PerformanceWeight(
        market="goals",
        side="over",
        line=2.5,
        league_key=39,
        wins=12,
        losses=8,
        pushes=0,
        sample_size=20,
        raw_win_rate=0.6,
        roi=14.0,
        bayes_win_rate=0.5286,
        weight=1.0571,
        lookback_days=90,
        computed_at="2024-09-01T12:00:00+00:00",
    )
    SQLiteStore(storage).replace_performance_weights([weight.to_record()])
    target = tmp_path / "exports" / "weights.csv"

    code, payload = run_cli("export-weights", str(target))

    assert code == 0
    assert payload == {"path": str(target), "rows": 1}
    frame = pl.read_csv(target)
    assert frame.height == 1
    assert frame["market"].to_list() == ["goals"]


def test_schedule_without_jobs(run_cli) -> None:
    code, payload = run_cli("schedule")
    assert code == 0
    assert payload == {"scheduled": []}


def test_schedule_runs_configured_jobs(run_cli, tmp_path: Path, storage: Path) -> None:
    config = tmp_path / "scheduled.yaml"
    config.write_text(
        BASE_CONFIG
        + """
scheduler:
  jobs:
    - job: score-legs
      interval_seconds: 0.01
    - job: market-close-expired
      interval_seconds: 0.01
      enabled: false
"""
    )

    code, payload = run_cli("schedule", "--max-runs", "2", config=config)

    assert code == 0
    assert payload == {"scheduled": ["score-legs"], "runs": {"score-legs": 2}}
    assert len(SQLiteStore(storage).job_runs("score-legs")) == 2
