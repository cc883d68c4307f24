"""Tests for coinvalue.core.config."""

import pytest
from pydantic import ValidationError

from coinvalue.core.config import (
    AggregationConfig,
    CoinValueConfig,
    FeedConfig,
    ForecastConfig,
    IngestionConfig,
    RegistryConfig,
    _auto_cast,
    _merge_env_vars,
    load_config,
)
from coinvalue.core.exceptions import ConfigError
from coinvalue.core.models import StorageBackend


class TestDefaults:
    def test_root_defaults(self):
        c = CoinValueConfig()
        assert c.storage.backend == StorageBackend.SQLITE
        assert c.registry.prior_weight == 0.5
        assert c.registry.ema_alpha == 0.1
        assert c.aggregation.max_observations == 10
        assert c.aggregation.lookback_days == 90
        assert c.aggregation.decay_tau_days == 30.0
        assert c.aggregation.max_confidence == 0.98
        assert c.forecast.fallback_confidence == 0.4
        assert c.learning.batch_size == 50
        assert c.learning.baseline_accuracy == 0.5
        assert c.ingestion.base_currency == "USD"


class TestValidation:
    def test_prior_out_of_range(self):
        with pytest.raises(ValidationError, match="prior_weight"):
            RegistryConfig(prior_weight=1.5)

    def test_alpha_zero_rejected(self):
        with pytest.raises(ValidationError, match="ema_alpha"):
            RegistryConfig(ema_alpha=0.0)

    def test_quantiles_ordered(self):
        with pytest.raises(ValidationError, match="low_quantile < high_quantile"):
            AggregationConfig(low_quantile=0.9, high_quantile=0.1)

    def test_tau_positive(self):
        with pytest.raises(ValidationError, match="decay_tau_days"):
            AggregationConfig(decay_tau_days=0)

    def test_base_currency_normalized(self):
        assert IngestionConfig(base_currency="eur").base_currency == "EUR"

    def test_base_currency_invalid(self):
        with pytest.raises(ValidationError, match="3-letter"):
            IngestionConfig(base_currency="EURO")

    def test_static_rates_upper_cased(self):
        c = IngestionConfig(static_rates={"eur": 1.08})
        assert c.static_rates == {"EUR": 1.08}

    def test_static_rate_must_be_positive(self):
        with pytest.raises(ValidationError, match="must be > 0"):
            IngestionConfig(static_rates={"EUR": 0})

    def test_feed_url_must_be_http(self):
        with pytest.raises(ValidationError, match="http"):
            FeedConfig(source_id="x", url="ftp://example.com/feed")

    @pytest.mark.parametrize("rate", [0, -0.5])
    def test_feed_rate_limit_positive(self, rate):
        with pytest.raises(ValidationError, match="must be > 0"):
            FeedConfig(source_id="x", url="https://example.com/feed", rate_limit=rate)

    def test_feed_fractional_rate_allowed(self):
        feed = FeedConfig(source_id="x", url="https://example.com/feed", rate_limit=0.2)
        assert feed.rate_limit == 0.2

    def test_floor_above_fallback_rejected(self):
        with pytest.raises(ValidationError, match="confidence_floor"):
            ForecastConfig(confidence_floor=0.5, fallback_confidence=0.4)


class TestAutoCast:
    @pytest.mark.parametrize(
        "raw,expected",
        [("true", True), ("FALSE", False), ("42", 42), ("0.25", 0.25), ("abc", "abc")],
    )
    def test_cast(self, raw, expected):
        assert _auto_cast(raw) == expected


class TestMergeEnvVars:
    def test_nested_override(self, monkeypatch):
        monkeypatch.setenv("COINVALUE_AGGREGATION__DECAY_TAU_DAYS", "45")
        merged = _merge_env_vars({"aggregation": {"lookback_days": 60}}, "COINVALUE_")
        assert merged["aggregation"] == {"lookback_days": 60, "decay_tau_days": 45}

    def test_base_not_mutated(self, monkeypatch):
        monkeypatch.setenv("COINVALUE_REGISTRY__EMA_ALPHA", "0.2")
        base = {"registry": {"prior_weight": 0.4}}
        _merge_env_vars(base, "COINVALUE_")
        assert base == {"registry": {"prior_weight": 0.4}}

    def test_config_var_skipped(self, monkeypatch):
        monkeypatch.setenv("COINVALUE_CONFIG", "/tmp/whatever.yml")
        assert "config" not in _merge_env_vars({}, "COINVALUE_")


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("COINVALUE_CONFIG", raising=False)
        config = load_config()
        assert config.storage.sqlite_path == "./data/coinvalue.db"

    def test_yaml_file(self, tmp_path, monkeypatch):
        path = tmp_path / "coinvalue.yml"
        path.write_text(
            "storage:\n  sqlite_path: /tmp/x.db\naggregation:\n  max_observations: 5\n"
        )
        config = load_config(config_path=str(path))
        assert config.storage.sqlite_path == "/tmp/x.db"
        assert config.aggregation.max_observations == 5

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "coinvalue.yml"
        path.write_text("learning:\n  batch_size: 10\n")
        monkeypatch.setenv("COINVALUE_LEARNING__BATCH_SIZE", "20")
        config = load_config(config_path=str(path))
        assert config.learning.batch_size == 20

    def test_config_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yml"
        path.write_text("forecast:\n  model_version: custom-1\n")
        monkeypatch.setenv("COINVALUE_CONFIG", str(path))
        assert load_config().forecast.model_version == "custom-1"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(config_path=str(tmp_path / "nope.yml"))

    def test_non_mapping_yaml(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(config_path=str(path))

    def test_invalid_values_wrapped(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("registry:\n  prior_weight: 3\n")
        with pytest.raises(ConfigError):
            load_config(config_path=str(path))
