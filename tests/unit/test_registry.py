"""Tests for coinvalue.sources.registry."""

from datetime import datetime, timedelta, timezone

import pytest

from coinvalue.core.config import RegistryConfig
from coinvalue.core.exceptions import StaleReliabilityError
from coinvalue.sources.registry import SourceRegistry

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# --- Registration ---


class TestEnsure:
    async def test_new_source_gets_prior(self, registry):
        record = await registry.ensure("numista", display_name="Numista", now=T0)
        assert record.reliability_score == 0.5
        assert record.display_name == "Numista"
        assert record.created_at == T0
        assert (await registry.get("numista")) == record

    async def test_existing_source_unchanged(self, registry, store, make_source):
        await store.save_source(make_source(reliability_score=0.9))
        record = await registry.ensure("pcgs")
        assert record.reliability_score == 0.9

    async def test_custom_prior(self, store):
        reg = SourceRegistry(store, RegistryConfig(prior_weight=0.3))
        assert reg.prior == 0.3
        assert (await reg.ensure("x")).reliability_score == 0.3

    async def test_display_name_defaults_to_id(self, registry):
        assert (await registry.ensure("heritage")).display_name == "heritage"


# --- Weights ---


class TestGetWeight:
    async def test_known_source(self, registry, store, make_source):
        await store.save_source(make_source(reliability_score=0.75))
        assert await registry.get_weight("pcgs") == 0.75

    async def test_unknown_source_registered_at_prior(self, registry):
        assert await registry.get_weight("brand-new") == 0.5
        assert await registry.get("brand-new") is not None

    async def test_inactive_source_raises(self, registry, store, make_source):
        await store.save_source(make_source(is_active=False))
        with pytest.raises(StaleReliabilityError) as exc_info:
            await registry.get_weight("pcgs")
        assert exc_info.value.context["source_id"] == "pcgs"


# --- Activity ---


class TestTouch:
    async def test_counts_and_last_seen(self, registry):
        await registry.touch("pcgs", T0, count=3)
        record = await registry.touch("pcgs", T0 + timedelta(hours=1), count=2)
        assert record.observation_count == 5
        assert record.last_seen_at == T0 + timedelta(hours=1)

    async def test_last_seen_never_moves_back(self, registry):
        await registry.touch("pcgs", T0)
        record = await registry.touch("pcgs", T0 - timedelta(days=3))
        assert record.last_seen_at == T0

    async def test_reactivates(self, registry, store, make_source):
        await store.save_source(make_source(is_active=False))
        record = await registry.touch("pcgs", T0)
        assert record.is_active is True

    async def test_reliability_untouched(self, registry, store, make_source):
        await store.save_source(make_source(reliability_score=0.8))
        record = await registry.touch("pcgs", T0, count=10)
        assert record.reliability_score == 0.8


# --- Agreement ---


class TestAgreement:
    async def test_signal_within_tolerance(self, registry, make_observation, make_estimate):
        est = make_estimate(average=100.0, low=90.0, high=110.0, spread=1.0)
        # tolerance = max(1.0, 0.05 * 100) = 5
        assert registry.agreement_signal(make_observation(price=104.0), est) == 1.0
        assert registry.agreement_signal(make_observation(price=106.0), est) == 0.0

    async def test_signal_uses_spread_when_wider(self, registry, make_observation, make_estimate):
        est = make_estimate(average=100.0, low=80.0, high=120.0, spread=15.0)
        assert registry.agreement_signal(make_observation(price=114.0), est) == 1.0

    async def test_ema_toward_agreement(self, registry, make_observation, make_estimate):
        await registry.ensure("pcgs")
        est = make_estimate(average=50.0, low=49.0, high=51.0)
        score = await registry.record_agreement("pcgs", make_observation(price=50.0), est)
        # 0.5 * 0.9 + 1.0 * 0.1
        assert score == pytest.approx(0.55)
        assert (await registry.get("pcgs")).reliability_score == pytest.approx(0.55)

    async def test_ema_toward_disagreement(self, registry, make_observation, make_estimate):
        await registry.ensure("pcgs")
        est = make_estimate(average=50.0, low=49.0, high=300.0)
        score = await registry.record_agreement("pcgs", make_observation(price=300.0), est)
        assert score == pytest.approx(0.45)

    async def test_repeated_disagreement_stays_in_range(
        self, registry, make_observation, make_estimate
    ):
        est = make_estimate(average=50.0, low=49.0, high=300.0)
        score = 0.5
        for _ in range(100):
            score = await registry.record_agreement("ebay", make_observation(price=300.0), est)
        assert 0.0 <= score < 0.01


# --- Staleness ---


class TestDeactivateStale:
    async def test_default_age(self, registry, store, make_source):
        await store.save_source(make_source(source_id="old", last_seen_at=T0 - timedelta(days=181)))
        await store.save_source(make_source(source_id="fresh", last_seen_at=T0 - timedelta(days=10)))
        assert await registry.deactivate_stale(now=T0) == ["old"]
        assert (await registry.get("old")).is_active is False
        assert (await registry.get("fresh")).is_active is True

    async def test_explicit_age(self, registry, store, make_source):
        await store.save_source(make_source(source_id="a", last_seen_at=T0 - timedelta(days=10)))
        assert await registry.deactivate_stale(timedelta(days=7), now=T0) == ["a"]

    async def test_already_inactive_not_reported(self, registry, store, make_source):
        await store.save_source(
            make_source(source_id="a", is_active=False, last_seen_at=T0 - timedelta(days=400))
        )
        assert await registry.deactivate_stale(now=T0) == []

    async def test_newly_registered_source_kept(self, registry):
        await registry.ensure("ngc", now=T0 - timedelta(days=2))
        assert await registry.deactivate_stale(timedelta(days=30), now=T0) == []
        assert (await registry.get("ngc")).is_active is True
