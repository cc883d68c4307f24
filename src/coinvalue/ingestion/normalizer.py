"""Item identifier normalization and per-entry validation."""

from __future__ import annotations

import math
import re
from typing import Any

import pydantic

from coinvalue.core.exceptions import ValidationError
from coinvalue.core.models import PriceObservation, RawObservation
from coinvalue.storage.store import to_utc

# `|` separates attributes (name|grade) and survives normalization.
_PUNCTUATION = re.compile(r"[^\w\s|]|_")
_WHITESPACE = re.compile(r"\s+")
_SEPARATOR = re.compile(r"\s*\|\s*")
_CURRENCY = re.compile(r"^[A-Z]{3}$")


def normalize_item_identifier(raw: str) -> str:
    """Canonical item key.

    Lower-cases, strips punctuation, and collapses whitespace:

        >>> normalize_item_identifier("  1921  Morgan Dollar | MS-63 ")
        '1921 morgan dollar|ms63'

    Raises:
        ValidationError: nothing is left after normalization.
    """
    text = _PUNCTUATION.sub("", raw.lower())
    text = _WHITESPACE.sub(" ", text).strip()
    text = _SEPARATOR.sub("|", text).strip("|")
    if not text:
        raise ValidationError(
            "item_identifier is empty after normalization",
            context={"field": "item_identifier", "value": raw},
        )
    return text


def normalize_currency(raw: str) -> str:
    code = raw.strip().upper()
    if not _CURRENCY.match(code):
        raise ValidationError(
            f"Unrecognized currency code: {raw!r}",
            context={"field": "currency", "value": raw},
        )
    return code


def validate_entry(entry: RawObservation | dict[str, Any]) -> PriceObservation:
    """Turn one raw entry into a normalized observation in its own currency.

    Nothing is coerced: a missing or malformed field rejects the entry.

    Raises:
        ValidationError: the entry is unusable.
    """
    try:
        raw = (
            entry
            if isinstance(entry, RawObservation)
            else RawObservation.model_validate(entry)
        )
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "entry"
        raise ValidationError(
            f"Malformed observation: {first.get('msg', e)}",
            context={"field": field, "value": first.get("input")},
        ) from e

    if not math.isfinite(raw.price) or raw.price <= 0:
        raise ValidationError(
            f"price must be a positive number, got {raw.price}",
            context={"field": "price", "value": raw.price},
        )
    source_id = raw.source_id.strip()
    if not source_id:
        raise ValidationError(
            "source_id must not be empty",
            context={"field": "source_id", "value": raw.source_id},
        )

    return PriceObservation(
        item_identifier=normalize_item_identifier(raw.item_identifier),
        source_id=source_id,
        price=raw.price,
        currency=normalize_currency(raw.currency),
        observed_at=to_utc(raw.observed_at),
        raw_payload=dict(raw.raw_payload),
    )
