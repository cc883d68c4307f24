"""Tests for the CLI module."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from click.testing import CliRunner

from coinvalue.cli import _read_observations, cli

ITEM = "1921 morgan dollar|ms63"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """A config file pointing at a throwaway database."""
    monkeypatch.delenv("COINVALUE_CONFIG", raising=False)
    path = tmp_path / "coinvalue.yml"
    path.write_text(f"storage:\n  sqlite_path: {tmp_path / 'data' / 'cli.db'}\n")
    return str(path)


@pytest.fixture
def observations_file(tmp_path):
    observed = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    entries = [
        {
            "item_identifier": "1921 Morgan Dollar | MS63",
            "source_id": source_id,
            "price": price,
            "currency": "USD",
            "observed_at": observed,
        }
        for source_id, price in [("pcgs", 50.0), ("ngc", 52.0)]
    ]
    path = tmp_path / "observations.json"
    path.write_text(json.dumps(entries))
    return path


def _invoke(runner, config_file, *args):
    return runner.invoke(cli, ["--config", config_file, *args])


def _ingest(runner, config_file, observations_file):
    result = _invoke(runner, config_file, "ingest", str(observations_file), "--format", "json")
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


# ---------------------------------------------------------------------------
# Group
# ---------------------------------------------------------------------------


class TestGroup:
    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "CoinValue" in result.output
        for command in ["ingest", "estimate", "forecast", "feedback", "sources", "serve"]:
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "nope.yml"), "status"])
        assert result.exit_code != 0


# ---------------------------------------------------------------------------
# Reading observation files
# ---------------------------------------------------------------------------


class TestReadObservations:
    def test_json_array(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text('[{"price": 1}, {"price": 2}]')
        assert len(_read_observations(path)) == 2

    def test_json_lines(self, tmp_path):
        path = tmp_path / "a.jsonl"
        path.write_text('{"price": 1}\n\n{"price": 2}\n')
        assert _read_observations(path) == [{"price": 1}, {"price": 2}]

    def test_csv_drops_empty_values(self, tmp_path):
        path = tmp_path / "a.csv"
        path.write_text(
            "item_identifier,source_id,price,currency,observed_at\n"
            "1921 Morgan,pcgs,50,,2024-05-01T00:00:00Z\n"
        )
        [row] = _read_observations(path)
        assert "currency" not in row
        assert row["price"] == "50"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text("  ")
        assert _read_observations(path) == []


# ---------------------------------------------------------------------------
# ingest / estimate / forecast
# ---------------------------------------------------------------------------


class TestIngest:
    def test_ingest_json(self, runner, config_file, observations_file):
        report = _ingest(runner, config_file, observations_file)
        assert report["accepted"] == 2
        assert report["rejected"] == 0
        assert report["items"] == [ITEM]

    def test_ingest_table(self, runner, config_file, observations_file):
        result = _invoke(runner, config_file, "ingest", str(observations_file))
        assert result.exit_code == 0
        assert "Ingest Report" in result.output

    def test_ingest_csv(self, runner, config_file, tmp_path):
        observed = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        path = tmp_path / "obs.csv"
        path.write_text(
            "item_identifier,source_id,price,observed_at\n"
            f"1922 Peace Dollar,pcgs,30,{observed}\n"
            f"1922 Peace Dollar,ngc,not-a-price,{observed}\n"
        )
        result = _invoke(runner, config_file, "ingest", str(path), "--format", "json")
        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["accepted"] == 1
        assert report["rejected"] == 1

    def test_unparseable_file(self, runner, config_file, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("[not json")
        result = _invoke(runner, config_file, "ingest", str(path))
        assert result.exit_code == 2

    def test_collect_without_feeds(self, runner, config_file):
        result = _invoke(runner, config_file, "collect")
        assert result.exit_code == 1


class TestEstimate:
    def test_estimate_json(self, runner, config_file, observations_file):
        _ingest(runner, config_file, observations_file)
        result = _invoke(
            runner, config_file, "estimate", "1921 Morgan Dollar | MS-63", "--format", "json"
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["status"] == "ok"
        assert data["estimate"]["average"] == pytest.approx(51.0)
        assert data["history"] == []

    def test_estimate_history(self, runner, config_file, observations_file):
        _ingest(runner, config_file, observations_file)
        result = _invoke(
            runner, config_file, "estimate", ITEM, "--history", "--refresh", "--format", "json"
        )
        data = json.loads(result.stdout)
        assert len(data["history"]) == 2

    def test_estimate_missing(self, runner, config_file):
        result = _invoke(runner, config_file, "estimate", "unknown coin", "--format", "json")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "no_data"

    def test_estimate_table(self, runner, config_file, observations_file):
        _ingest(runner, config_file, observations_file)
        result = _invoke(runner, config_file, "estimate", ITEM)
        assert result.exit_code == 0
        assert "Estimate" in result.output


class TestForecast:
    def test_forecast_with_scenarios(self, runner, config_file, observations_file):
        _ingest(runner, config_file, observations_file)
        result = _invoke(
            runner,
            config_file,
            "forecast",
            ITEM,
            "--horizon",
            "medium",
            "--paths",
            "50",
            "--seed",
            "3",
            "--format",
            "json",
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert len(data["forecast"]["predicted_series"]) == 30
        scenarios = data["scenarios"]
        assert scenarios["p10"] <= scenarios["p50"] <= scenarios["p90"]

    def test_forecast_no_data(self, runner, config_file):
        result = _invoke(runner, config_file, "forecast", "unknown coin", "--format", "json")
        assert json.loads(result.stdout) == {"status": "no_data", "forecast": None}


# ---------------------------------------------------------------------------
# feedback / performance / sources / status
# ---------------------------------------------------------------------------


class TestFeedback:
    def test_submit_and_apply(self, runner, config_file, observations_file):
        _ingest(runner, config_file, observations_file)
        result = _invoke(
            runner,
            config_file,
            "feedback",
            "submit",
            "--subject",
            ITEM,
            "--category",
            "morgan-dollar",
            "--correct",
        )
        assert result.exit_code == 0, result.output
        assert "recorded" in result.output

        result = _invoke(runner, config_file, "feedback", "apply", "--format", "json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["applied"] == 1

        result = _invoke(runner, config_file, "performance", "--format", "json")
        data = json.loads(result.stdout)
        assert data["metrics"][0]["category"] == "morgan-dollar"
        assert data["insights"]["best_category"] == "morgan-dollar"

    def test_submit_requires_judgement(self, runner, config_file):
        result = _invoke(
            runner, config_file, "feedback", "submit", "--subject", ITEM, "--category", "c"
        )
        assert result.exit_code == 1

    def test_submit_bad_correction_json(self, runner, config_file):
        result = _invoke(
            runner,
            config_file,
            "feedback",
            "submit",
            "--subject",
            ITEM,
            "--category",
            "c",
            "--incorrect",
            "--correction",
            "{oops",
        )
        assert result.exit_code == 2

    def test_rebuild(self, runner, config_file):
        result = _invoke(runner, config_file, "feedback", "rebuild", "--window-days", "7")
        assert result.exit_code == 0
        assert "Rebuilt 0" in result.output


class TestSources:
    def test_list_json(self, runner, config_file, observations_file):
        _ingest(runner, config_file, observations_file)
        result = _invoke(runner, config_file, "sources", "list", "--format", "json")
        data = json.loads(result.stdout)
        assert [s["source_id"] for s in data] == ["ngc", "pcgs"]

    def test_deactivate_stale(self, runner, config_file, observations_file):
        _ingest(runner, config_file, observations_file)
        result = _invoke(runner, config_file, "sources", "deactivate-stale")
        assert result.exit_code == 0
        assert "No stale sources" in result.output


class TestStatus:
    def test_status(self, runner, config_file, observations_file):
        _ingest(runner, config_file, observations_file)
        result = _invoke(runner, config_file, "status")
        assert result.exit_code == 0, result.output
        assert "CoinValue Status" in result.output
        assert "Observations" in result.output
