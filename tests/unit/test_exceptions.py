"""Tests for coinvalue.core.exceptions."""

import pytest

from coinvalue.core.exceptions import (
    CoinValueError,
    ConfigError,
    InsufficientDataError,
    RateUnavailableError,
    SourceError,
    SourceTimeoutError,
    StaleReliabilityError,
    StorageError,
    ValidationError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc_cls",
        [
            ConfigError,
            ValidationError,
            InsufficientDataError,
            SourceError,
            SourceTimeoutError,
            StaleReliabilityError,
            RateUnavailableError,
            StorageError,
        ],
    )
    def test_all_derive_from_base(self, exc_cls):
        assert issubclass(exc_cls, CoinValueError)

    def test_timeout_is_source_error(self):
        assert issubclass(SourceTimeoutError, SourceError)

    def test_catch_by_base(self):
        with pytest.raises(CoinValueError):
            raise StorageError("disk full")


class TestContext:
    def test_default_context_empty(self):
        e = ValidationError("bad price")
        assert e.context == {}
        assert str(e) == "bad price"

    def test_context_preserved(self):
        e = StorageError("failed", context={"operation": "insert", "table": "observations"})
        assert e.context["operation"] == "insert"
        assert e.context["table"] == "observations"
