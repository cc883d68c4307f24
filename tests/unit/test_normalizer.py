"""Tests for identifier normalization and entry validation."""

from datetime import datetime, timedelta, timezone

import pytest

from coinvalue.core.exceptions import ValidationError
from coinvalue.core.models import RawObservation
from coinvalue.ingestion.normalizer import (
    normalize_currency,
    normalize_item_identifier,
    validate_entry,
)


class TestNormalizeItemIdentifier:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("  1921  Morgan Dollar | MS-63 ", "1921 morgan dollar|ms63"),
            ("1921 Morgan Dollar|MS63", "1921 morgan dollar|ms63"),
            ("1921 MORGAN DOLLAR | ms 63", "1921 morgan dollar|ms 63"),
            ("Peace $1, 1922-D", "peace 1 1922d"),
            ("snake_case_name", "snakecasename"),
            ("|leading and trailing|", "leading and trailing"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_item_identifier(raw) == expected

    def test_idempotent(self):
        once = normalize_item_identifier("  1921  Morgan Dollar | MS-63 ")
        assert normalize_item_identifier(once) == once

    @pytest.mark.parametrize("raw", ["", "   ", "---", "|"])
    def test_empty_after_normalization(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            normalize_item_identifier(raw)
        assert exc_info.value.context["field"] == "item_identifier"


class TestNormalizeCurrency:
    def test_upper_cased(self):
        assert normalize_currency(" eur ") == "EUR"

    @pytest.mark.parametrize("raw", ["EURO", "E1R", "", "us"])
    def test_rejected(self, raw):
        with pytest.raises(ValidationError, match="currency"):
            normalize_currency(raw)


class TestValidateEntry:
    def _raw(self, **overrides):
        entry = {
            "item_identifier": "1921 Morgan Dollar | MS63",
            "source_id": " pcgs ",
            "price": 50.0,
            "currency": "usd",
            "observed_at": "2024-05-31T12:00:00+00:00",
        }
        entry.update(overrides)
        return entry

    def test_valid_dict(self):
        obs = validate_entry(self._raw())
        assert obs.item_identifier == "1921 morgan dollar|ms63"
        assert obs.source_id == "pcgs"
        assert obs.currency == "USD"
        assert obs.observed_at == datetime(2024, 5, 31, 12, tzinfo=timezone.utc)

    def test_raw_observation_model(self):
        raw = RawObservation(
            item_identifier="x",
            source_id="s",
            price=1.0,
            observed_at=datetime(2024, 1, 1),
        )
        obs = validate_entry(raw)
        assert obs.observed_at.tzinfo == timezone.utc

    def test_offset_converted_to_utc(self):
        obs = validate_entry(self._raw(observed_at="2024-05-31T07:00:00-05:00"))
        assert obs.observed_at == datetime(2024, 5, 31, 12, tzinfo=timezone.utc)
        assert obs.observed_at.utcoffset() == timedelta(0)

    @pytest.mark.parametrize("price", [0, -5, float("nan"), float("inf")])
    def test_bad_price(self, price):
        with pytest.raises(ValidationError) as exc_info:
            validate_entry(self._raw(price=price))
        assert exc_info.value.context["field"] == "price"

    def test_non_numeric_price(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_entry(self._raw(price="fifty"))
        assert exc_info.value.context["field"] == "price"

    def test_missing_timestamp(self):
        entry = self._raw()
        del entry["observed_at"]
        with pytest.raises(ValidationError) as exc_info:
            validate_entry(entry)
        assert exc_info.value.context["field"] == "observed_at"

    def test_blank_source(self):
        with pytest.raises(ValidationError, match="source_id"):
            validate_entry(self._raw(source_id="  "))

    def test_bad_currency(self):
        with pytest.raises(ValidationError, match="currency"):
            validate_entry(self._raw(currency="dollars"))

    def test_payload_kept(self):
        obs = validate_entry(self._raw(raw_payload={"lot": 12}))
        assert obs.raw_payload == {"lot": 12}
