"""Tests for the observation ingestor and currency lookups."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import respx

from coinvalue.core.config import FeedConfig, IngestionConfig
from coinvalue.core.exceptions import RateUnavailableError
from coinvalue.ingestion.currency import HttpRateLookup, RateLookup, StaticRateLookup
from coinvalue.ingestion.ingestor import ObservationIngestor

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
ITEM = "1921 morgan dollar|ms63"
RATE_URL = "https://rates.test/latest"


class SwitchableRates:
    """Rate lookup that fails until a rate is provided."""

    def __init__(self) -> None:
        self.rates: dict[str, float] = {}
        self.calls = 0

    async def rate(self, currency: str, base: str) -> float:
        self.calls += 1
        if currency == base:
            return 1.0
        if currency not in self.rates:
            raise RateUnavailableError(f"no {currency}")
        return self.rates[currency]


@pytest.fixture
def rates():
    return SwitchableRates()


@pytest.fixture
def ingestor(store, registry, rates):
    return ObservationIngestor(store, registry, IngestionConfig(max_conversion_retries=3), rates)


# ---------------------------------------------------------------------------
# Rate lookups
# ---------------------------------------------------------------------------


class TestStaticRateLookup:
    async def test_same_currency(self):
        assert await StaticRateLookup().rate("USD", "USD") == 1.0

    async def test_known_rate(self):
        lookup = StaticRateLookup({"eur": 1.08})
        assert await lookup.rate("EUR", "USD") == 1.08

    async def test_unknown_rate(self):
        with pytest.raises(RateUnavailableError) as exc_info:
            await StaticRateLookup().rate("GBP", "USD")
        assert exc_info.value.context["currency"] == "GBP"

    def test_satisfies_protocol(self):
        assert isinstance(StaticRateLookup(), RateLookup)


class TestHttpRateLookup:
    @respx.mock
    async def test_quote_inverted(self):
        respx.get(RATE_URL).mock(
            return_value=httpx.Response(200, json={"rates": {"EUR": 0.8}})
        )
        async with HttpRateLookup(RATE_URL) as lookup:
            assert await lookup.rate("EUR", "USD") == pytest.approx(1.25)

    @respx.mock
    async def test_quotes_cached(self):
        route = respx.get(RATE_URL).mock(
            return_value=httpx.Response(200, json={"rates": {"EUR": 0.8, "GBP": 0.5}})
        )
        async with HttpRateLookup(RATE_URL) as lookup:
            await lookup.rate("EUR", "USD")
            assert await lookup.rate("GBP", "USD") == pytest.approx(2.0)
        assert route.call_count == 1

    @respx.mock
    async def test_server_error(self):
        respx.get(RATE_URL).mock(return_value=httpx.Response(503))
        async with HttpRateLookup(RATE_URL) as lookup:
            with pytest.raises(RateUnavailableError, match="503"):
                await lookup.rate("EUR", "USD")

    @respx.mock
    async def test_missing_quote(self):
        respx.get(RATE_URL).mock(return_value=httpx.Response(200, json={"rates": {}}))
        async with HttpRateLookup(RATE_URL) as lookup:
            with pytest.raises(RateUnavailableError, match="no quote"):
                await lookup.rate("EUR", "USD")

    @respx.mock
    async def test_transport_error_uses_fallback(self):
        respx.get(RATE_URL).mock(side_effect=httpx.ConnectError("down"))
        fallback = StaticRateLookup({"EUR": 1.1})
        async with HttpRateLookup(RATE_URL, fallback=fallback) as lookup:
            assert await lookup.rate("EUR", "USD") == 1.1

    async def test_same_currency_no_request(self):
        async with HttpRateLookup(RATE_URL) as lookup:
            assert await lookup.rate("USD", "USD") == 1.0


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class TestIngest:
    async def test_accepts_and_normalizes(self, ingestor, store, make_raw):
        report = await ingestor.ingest([make_raw(), make_raw(source_id="ngc", price=52.0)], now=T0)
        assert report.batch_size == 2
        assert report.accepted == 2
        assert report.rejected == 0
        assert report.items == [ITEM]
        window = await store.window(ITEM)
        assert sorted(o.source_id for o in window) == ["ngc", "pcgs"]

    async def test_accepted_plus_rejected_equals_batch(self, ingestor, make_raw):
        entries = [
            make_raw(),
            make_raw(price=-1),
            make_raw(price="abc"),
            {"source_id": "pcgs"},
            make_raw(item_identifier="!!!"),
        ]
        report = await ingestor.ingest(entries, now=T0)
        assert report.batch_size == 5
        assert report.accepted == 1
        assert report.rejected == 4

    async def test_missing_currency_defaults_to_base(self, ingestor, store, make_raw):
        entry = make_raw()
        del entry["currency"]
        report = await ingestor.ingest([entry], now=T0)
        assert report.accepted == 1
        [obs] = await store.window(ITEM)
        assert obs.currency == "USD"

    async def test_conversion_records_original(self, ingestor, store, rates, make_raw):
        rates.rates["EUR"] = 1.1
        await ingestor.ingest([make_raw(price=100.0, currency="EUR")], now=T0)
        [obs] = await store.window(ITEM)
        assert obs.currency == "USD"
        assert obs.price == pytest.approx(110.0)
        assert obs.raw_payload["original_price"] == 100.0
        assert obs.raw_payload["original_currency"] == "EUR"
        assert obs.raw_payload["conversion_rate"] == 1.1

    async def test_touches_sources(self, ingestor, registry, make_raw):
        await ingestor.ingest([make_raw(), make_raw(price=51.0)], now=T0)
        source = await registry.get("pcgs")
        assert source.observation_count == 2
        assert source.last_seen_at == T0
        assert source.reliability_score == 0.5

    async def test_feed_display_name_used_for_new_source(self, store, registry, rates, make_raw):
        config = IngestionConfig(
            feeds=[
                FeedConfig(
                    source_id="pcgs",
                    url="https://feeds.test/pcgs.json",
                    display_name="PCGS Price Guide",
                )
            ]
        )
        ingestor = ObservationIngestor(store, registry, config, rates)
        await ingestor.ingest([make_raw(), make_raw(source_id="ngc")], now=T0)
        assert (await registry.get("pcgs")).display_name == "PCGS Price Guide"
        assert (await registry.get("ngc")).display_name == "ngc"

    async def test_empty_batch(self, ingestor):
        report = await ingestor.ingest([], now=T0)
        assert report.batch_size == 0
        assert report.items == []


class TestDeferredConversion:
    async def test_missing_rate_defers(self, ingestor, store, make_raw):
        report = await ingestor.ingest([make_raw(currency="GBP")], now=T0)
        assert report.accepted == 1
        assert report.deferred == 1
        assert report.items == []
        assert await store.window(ITEM) == []
        [pending] = await store.list_pending()
        assert pending.original_currency == "GBP"

    async def test_recovered_next_cycle(self, ingestor, store, rates, make_raw):
        await ingestor.ingest([make_raw(price=40.0, currency="GBP")], now=T0)
        rates.rates["GBP"] = 1.25

        report = await ingestor.ingest([], now=T0 + timedelta(minutes=5))
        assert report.recovered == 1
        assert report.items == [ITEM]
        assert await store.list_pending() == []
        [obs] = await store.window(ITEM)
        assert obs.price == pytest.approx(50.0)

    async def test_expires_after_retries(self, ingestor, store, make_raw):
        await ingestor.ingest([make_raw(currency="GBP")], now=T0)

        first = await ingestor.retry_pending()
        assert first.expired == 0
        [pending] = await store.list_pending()
        assert pending.attempts == 2

        second = await ingestor.retry_pending()
        assert second.expired == 1
        assert await store.list_pending() == []
        assert await store.window(ITEM) == []

    async def test_deferred_source_still_touched(self, ingestor, registry, make_raw):
        await ingestor.ingest([make_raw(source_id="coinarchives", currency="GBP")], now=T0)
        source = await registry.get("coinarchives")
        assert source is not None
        assert source.observation_count == 1
