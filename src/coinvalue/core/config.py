"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from coinvalue.core.exceptions import ConfigError
from coinvalue.core.models import StorageBackend


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    model_config = ConfigDict(frozen=True)

    backend: StorageBackend = StorageBackend.SQLITE
    sqlite_path: str = "./data/coinvalue.db"


class RegistryConfig(BaseModel):
    """Source reliability tracking."""

    model_config = ConfigDict(frozen=True)

    prior_weight: float = 0.5
    ema_alpha: float = 0.1
    agreement_tolerance: float = 0.05
    stale_after_days: int = 180

    @field_validator("prior_weight")
    @classmethod
    def prior_in_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("prior_weight must be in [0, 1]")
        return v

    @field_validator("ema_alpha")
    @classmethod
    def alpha_in_range(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("ema_alpha must be in (0, 1]")
        return v

    @field_validator("stale_after_days")
    @classmethod
    def stale_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("stale_after_days must be >= 1")
        return v


class FeedConfig(BaseModel):
    """A JSON endpoint that publishes observations for one source."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    url: str
    display_name: str | None = None
    rate_limit: float = 1.0
    timeout_seconds: float = 10.0

    @field_validator("url")
    @classmethod
    def url_is_http(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("feed url must be http(s)")
        return v

    @field_validator("rate_limit", "timeout_seconds")
    @classmethod
    def positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v


class IngestionConfig(BaseModel):
    """Observation validation, currency conversion and feed collection."""

    model_config = ConfigDict(frozen=True)

    base_currency: str = "USD"
    static_rates: dict[str, float] = {}
    rate_url: str | None = None
    rate_request_timeout: int = 10
    max_conversion_retries: int = 3
    max_concurrent_feeds: int = 4
    feed_timeout_seconds: float = 10.0
    aggregate_on_ingest: bool = True
    feeds: list[FeedConfig] = []

    @field_validator("base_currency")
    @classmethod
    def base_currency_code(cls, v: str) -> str:
        code = v.strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"base_currency must be a 3-letter code, got {v!r}")
        return code

    @field_validator("static_rates")
    @classmethod
    def rates_positive(cls, v: dict[str, float]) -> dict[str, float]:
        for code, rate in v.items():
            if rate <= 0:
                raise ValueError(f"rate for {code} must be > 0")
        return {code.upper(): rate for code, rate in v.items()}

    @field_validator("max_conversion_retries", "max_concurrent_feeds")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class AggregationConfig(BaseModel):
    """Weighting and confidence rules for combining observations."""

    model_config = ConfigDict(frozen=True)

    max_observations: int = 10
    lookback_days: int = 90
    decay_tau_days: float = 30.0
    low_quantile: float = 0.10
    high_quantile: float = 0.90
    weight_confidence_scale: float = 0.6
    per_source_bonus: float = 0.05
    source_bonus_cap: int = 10
    max_confidence: float = 0.98
    single_source_ceiling: float = 0.6
    learn_from_aggregation: bool = True

    @field_validator("max_observations", "lookback_days", "source_bonus_cap")
    @classmethod
    def positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("decay_tau_days")
    @classmethod
    def tau_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("decay_tau_days must be > 0")
        return v

    @model_validator(mode="after")
    def quantiles_ordered(self) -> AggregationConfig:
        if not 0.0 <= self.low_quantile < self.high_quantile <= 1.0:
            raise ValueError("expected 0 <= low_quantile < high_quantile <= 1")
        return self


class ForecastConfig(BaseModel):
    """Trend fitting and projection parameters."""

    model_config = ConfigDict(frozen=True)

    model_version: str = "linear-drift-1"
    stable_threshold: float = 0.001
    max_step_drift: float = 0.05
    confidence_step_decay: float = 0.02
    confidence_floor: float = 0.3
    fallback_confidence: float = 0.4
    sample_moderation: int = 3
    max_volatility: float = 0.5
    ttl_minutes: int = 60
    history_limit: int = 50

    @model_validator(mode="after")
    def floor_below_fallback(self) -> ForecastConfig:
        if self.confidence_floor > self.fallback_confidence:
            raise ValueError("confidence_floor must not exceed fallback_confidence")
        return self


class LearningConfig(BaseModel):
    """Feedback application and performance tracking."""

    model_config = ConfigDict(frozen=True)

    baseline_accuracy: float = 0.5
    batch_size: int = 50
    max_concurrent: int = 4
    metrics_window_days: int = 7

    @field_validator("batch_size", "max_concurrent", "metrics_window_days")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class APIConfig(BaseModel):
    """FastAPI server configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str | None = None


class CoinValueConfig(BaseModel):
    """Root configuration for the valuation engine."""

    model_config = ConfigDict(frozen=True)

    storage: StorageConfig = StorageConfig()
    registry: RegistryConfig = RegistryConfig()
    ingestion: IngestionConfig = IngestionConfig()
    aggregation: AggregationConfig = AggregationConfig()
    forecast: ForecastConfig = ForecastConfig()
    learning: LearningConfig = LearningConfig()
    api: APIConfig = APIConfig()


def load_config(
    config_path: str | None = None,
    env_prefix: str = "COINVALUE_",
) -> CoinValueConfig:
    """Load configuration from environment + YAML file + defaults.

    Resolution order (highest priority first):
    1. Environment variables (COINVALUE_STORAGE__SQLITE_PATH, etc.)
    2. YAML file at config_path
    3. Built-in defaults

    Nested keys use double-underscore in env vars:
        COINVALUE_AGGREGATION__DECAY_TAU_DAYS=45  ->  aggregation.decay_tau_days = 45
    """
    try:
        yaml_path = _resolve_config_path(config_path)
        base: dict = {}
        if yaml_path is not None:
            base = _load_yaml(yaml_path)

        merged = _merge_env_vars(base, env_prefix)
        return CoinValueConfig.model_validate(merged)
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(str(e), context={"source": "load_config"}) from e


def _resolve_config_path(explicit: str | None) -> Path | None:
    """Determine config file path."""
    if explicit is not None:
        p = Path(explicit)
        if not p.exists():
            raise ConfigError(
                f"Config file not found: {explicit}",
                context={"field": "config_path", "value": explicit},
            )
        return p

    env_path = os.environ.get("COINVALUE_CONFIG")
    if env_path:
        p = Path(env_path)
        if not p.exists():
            raise ConfigError(
                f"Config file from COINVALUE_CONFIG not found: {env_path}",
                context={"field": "COINVALUE_CONFIG", "value": env_path},
            )
        return p

    default = Path("coinvalue.yml")
    if default.exists():
        return default

    return None


def _load_yaml(path: Path) -> dict:
    """Load and parse YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"YAML config must be a mapping, got {type(data).__name__}",
                context={"field": "config_file", "value": str(path)},
            )
        return data
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse YAML config: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e


def _merge_env_vars(base: dict, prefix: str) -> dict:
    """Overlay environment variables onto base config dict.

    Double-underscore separates nesting levels.
    Values are auto-cast: "true"/"false" -> bool, numeric strings -> int/float.
    """
    result = dict(base)

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        remainder = key[len(prefix) :]
        parts = [p.lower() for p in remainder.split("__")]

        # Skip the CONFIG env var itself
        if parts == ["config"]:
            continue

        cast_value = _auto_cast(value)

        target = result
        for part in parts[:-1]:
            if part not in target or not isinstance(target[part], dict):
                target[part] = {}
            else:
                target[part] = dict(target[part])
            target = target[part]
        target[parts[-1]] = cast_value

    return result


def _auto_cast(value: str) -> str | int | float | bool:
    """Auto-cast string values from environment variables."""
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value
