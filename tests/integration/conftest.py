"""Integration test fixtures: real SQLite file, no network."""

from __future__ import annotations

from pathlib import Path

import pytest

from coinvalue.core.config import (
    CoinValueConfig,
    IngestionConfig,
    LearningConfig,
    StorageConfig,
)
from coinvalue.core.models import StorageBackend
from coinvalue.service import ValuationService


@pytest.fixture
def integration_config(tmp_path: Path) -> CoinValueConfig:
    return CoinValueConfig(
        storage=StorageConfig(
            backend=StorageBackend.SQLITE,
            sqlite_path=str(tmp_path / "integration.db"),
        ),
        ingestion=IngestionConfig(static_rates={"EUR": 1.1}, max_conversion_retries=3),
        learning=LearningConfig(batch_size=10, max_concurrent=3),
    )


@pytest.fixture
async def service(integration_config: CoinValueConfig) -> ValuationService:
    """A ValuationService over a fresh database file."""
    svc = await ValuationService.create(integration_config)
    yield svc
    await svc.close()
