"""Custom exception hierarchy for coinvalue."""

from typing import Any


class CoinValueError(Exception):
    """Base exception for all coinvalue errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(CoinValueError):
    """Invalid or missing configuration.

    Raised by load_config() during startup. Should be treated as fatal.

    Context keys:
        field: str - the config field that failed validation
        value: Any - the invalid value
    """


class ValidationError(CoinValueError):
    """Malformed observation or feedback payload.

    Policy: reject and count the entry. Never fatal to the batch.

    Context keys:
        field: str - the offending field
        value: Any - the rejected value
    """


class InsufficientDataError(CoinValueError):
    """No usable observations for an item.

    Policy: surfaced to callers as an explicit "no estimate" result. Absence
    of data is an expected steady state, not a failure.

    Context keys:
        item_identifier: str
    """


class SourceError(CoinValueError):
    """An external source failed to deliver observations.

    Policy: log and skip the source for this cycle. Other sources proceed.

    Context keys:
        source_id: str
    """


class SourceTimeoutError(SourceError):
    """A source fetch exceeded its per-source timeout.

    Policy: treated as "no observation this cycle".

    Context keys:
        source_id: str
        timeout: float - seconds allowed
    """


class StaleReliabilityError(CoinValueError):
    """A source has been deactivated for inactivity.

    Policy: estimates stop counting the source. Never raised to callers of
    get_estimate / get_forecast.

    Context keys:
        source_id: str
        last_seen_at: str | None
    """


class RateUnavailableError(CoinValueError):
    """No conversion rate could be resolved for a currency.

    Policy: defer the observation and retry on the next ingestion cycle.

    Context keys:
        currency: str
        base_currency: str
    """


class StorageError(CoinValueError):
    """Database operation failed.

    Policy: raise immediately. Callers retry rather than lose data.

    Context keys:
        operation: str - "insert", "query", "migrate", etc.
        table: str - the table involved
    """
