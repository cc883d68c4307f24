"""coinvalue.ingestion - Observation validation, conversion, and feed collection."""

from coinvalue.ingestion.currency import HttpRateLookup, RateLookup, StaticRateLookup
from coinvalue.ingestion.feeds import FeedCollector, HttpJsonFeed, SourceFeed, build_feeds
from coinvalue.ingestion.ingestor import ObservationIngestor
from coinvalue.ingestion.normalizer import (
    normalize_currency,
    normalize_item_identifier,
    validate_entry,
)

__all__ = [
    "ObservationIngestor",
    "RateLookup",
    "StaticRateLookup",
    "HttpRateLookup",
    "SourceFeed",
    "HttpJsonFeed",
    "FeedCollector",
    "build_feeds",
    "normalize_item_identifier",
    "normalize_currency",
    "validate_entry",
]
