"""Shared pytest fixtures for coinvalue."""

from datetime import datetime, timedelta, timezone

import pytest

from coinvalue.core.config import (
    AggregationConfig,
    CoinValueConfig,
    RegistryConfig,
    StorageConfig,
)
from coinvalue.core.models import (
    AggregatedEstimate,
    LearningEvent,
    PriceObservation,
    SourceRecord,
    StorageBackend,
)
from coinvalue.sources.registry import SourceRegistry
from coinvalue.storage.store import SqliteStore

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
MORGAN = "1921 morgan dollar|ms63"


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
async def store():
    """An in-memory SqliteStore."""
    s = SqliteStore(StorageConfig(backend=StorageBackend.SQLITE, sqlite_path=":memory:"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def registry(store) -> SourceRegistry:
    return SourceRegistry(store, RegistryConfig())


@pytest.fixture
def config(tmp_path) -> CoinValueConfig:
    """Full config backed by a temp-file database."""
    return CoinValueConfig(
        storage=StorageConfig(sqlite_path=str(tmp_path / "coinvalue.db")),
        aggregation=AggregationConfig(),
    )


@pytest.fixture
def make_observation():
    """Factory for PriceObservation with overridable defaults."""

    def _make(**overrides):
        defaults = dict(
            item_identifier=MORGAN,
            source_id="pcgs",
            price=50.0,
            currency="USD",
            observed_at=NOW - timedelta(days=1),
        )
        defaults.update(overrides)
        return PriceObservation(**defaults)

    return _make


@pytest.fixture
def make_raw():
    """Factory for raw observation dicts, as collaborators deliver them."""

    def _make(**overrides):
        defaults = dict(
            item_identifier="1921 Morgan Dollar | MS63",
            source_id="pcgs",
            price=50.0,
            currency="USD",
            observed_at=(NOW - timedelta(days=1)).isoformat(),
        )
        defaults.update(overrides)
        return defaults

    return _make


@pytest.fixture
def make_estimate():
    """Factory for AggregatedEstimate with overridable defaults."""

    def _make(**overrides):
        defaults = dict(
            item_identifier=MORGAN,
            low=48.0,
            average=51.0,
            high=53.0,
            confidence=0.6,
            contributing_source_count=2,
            observation_count=2,
            spread=1.0,
            computed_at=NOW,
        )
        defaults.update(overrides)
        return AggregatedEstimate(**defaults)

    return _make


@pytest.fixture
def make_event():
    """Factory for LearningEvent with overridable defaults."""

    def _make(**overrides):
        defaults = dict(
            subject_id=MORGAN,
            category="morgan-dollar",
            is_correct=True,
            created_at=NOW,
        )
        defaults.update(overrides)
        return LearningEvent(**defaults)

    return _make


@pytest.fixture
def make_source():
    def _make(**overrides):
        defaults = dict(
            source_id="pcgs",
            display_name="PCGS Price Guide",
            reliability_score=0.8,
            last_seen_at=NOW,
            created_at=NOW - timedelta(days=365),
        )
        defaults.update(overrides)
        return SourceRecord(**defaults)

    return _make
