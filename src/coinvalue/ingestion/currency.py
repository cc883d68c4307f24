"""Currency rate lookups.

A rate is the number of base-currency units one unit of the foreign
currency is worth, so `base_price = price * rate`.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol, runtime_checkable

import httpx
from aiolimiter import AsyncLimiter

from coinvalue.core.exceptions import RateUnavailableError

logger = logging.getLogger(__name__)

_RATE_REQUESTS_PER_SECOND = 2.0
_RATE_CACHE_SECONDS = 300.0


@runtime_checkable
class RateLookup(Protocol):
    """Resolves conversion rates into the base currency."""

    async def rate(self, currency: str, base: str) -> float:
        """Raises RateUnavailableError when no rate is known."""
        ...


class StaticRateLookup:
    """Fixed rates from configuration."""

    def __init__(self, rates: dict[str, float] | None = None) -> None:
        self._rates = {code.upper(): value for code, value in (rates or {}).items()}

    async def rate(self, currency: str, base: str) -> float:
        if currency == base:
            return 1.0
        if currency in self._rates:
            return self._rates[currency]
        raise RateUnavailableError(
            f"No static rate for {currency}",
            context={"currency": currency, "base_currency": base},
        )


class HttpRateLookup:
    """Rates from a JSON endpoint, cached for a few minutes.

    The endpoint is called as `GET {url}?base=USD` and must answer with
    `{"rates": {"EUR": 0.92, ...}}`, quoted as foreign units per base unit
    (the usual exchange-rate API convention). Quotes are inverted into
    base units per foreign unit.

    Use via `async with HttpRateLookup(...) as rates:`.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        fallback: StaticRateLookup | None = None,
    ) -> None:
        self._url = url
        self._limiter = AsyncLimiter(max_rate=_RATE_REQUESTS_PER_SECOND, time_period=1.0)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout), follow_redirects=True
        )
        self._fallback = fallback
        self._cache: dict[str, tuple[float, dict[str, float]]] = {}

    async def __aenter__(self) -> HttpRateLookup:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def rate(self, currency: str, base: str) -> float:
        if currency == base:
            return 1.0
        try:
            quotes = await self._quotes(base)
        except RateUnavailableError:
            if self._fallback is not None:
                return await self._fallback.rate(currency, base)
            raise
        quote = quotes.get(currency)
        if quote is None or quote <= 0:
            if self._fallback is not None:
                return await self._fallback.rate(currency, base)
            raise RateUnavailableError(
                f"Rate endpoint has no quote for {currency}",
                context={"currency": currency, "base_currency": base},
            )
        return 1.0 / quote

    async def _quotes(self, base: str) -> dict[str, float]:
        cached = self._cache.get(base)
        if cached is not None and time.monotonic() - cached[0] < _RATE_CACHE_SECONDS:
            return cached[1]

        try:
            async with self._limiter:
                response = await self._client.get(self._url, params={"base": base})
            if response.status_code != 200:
                raise RateUnavailableError(
                    f"HTTP {response.status_code} from rate endpoint",
                    context={"base_currency": base, "status_code": response.status_code},
                )
            raw = response.json().get("rates", {})
            quotes = {str(code).upper(): float(value) for code, value in raw.items()}
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("Rate lookup failed for base %s: %s", base, e)
            raise RateUnavailableError(
                f"Rate endpoint unavailable: {e}",
                context={"base_currency": base},
            ) from e

        self._cache[base] = (time.monotonic(), quotes)
        return quotes
