"""Concurrent collection from external observation feeds."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import httpx
from aiolimiter import AsyncLimiter

from coinvalue.core.config import FeedConfig
from coinvalue.core.exceptions import SourceError, SourceTimeoutError

logger = logging.getLogger(__name__)


def build_limiter(rate_limit: float) -> AsyncLimiter:
    """Limiter allowing `rate_limit` requests per second.

    Rates below one become one request every `1 / rate_limit` seconds.
    """
    if rate_limit <= 0:
        raise ValueError(f"rate_limit must be > 0, got {rate_limit}")
    if rate_limit < 1:
        return AsyncLimiter(1, 1.0 / rate_limit)
    return AsyncLimiter(rate_limit, 1.0)


@runtime_checkable
class SourceFeed(Protocol):
    """A source that can be polled for raw observation dicts."""

    @property
    def source_id(self) -> str: ...

    @property
    def rate_limit(self) -> float: ...

    @property
    def timeout_seconds(self) -> float: ...

    async def fetch(self) -> list[dict[str, Any]]:
        """Return raw entries. Raises SourceError on failure."""
        ...


class HttpJsonFeed:
    """Polls a JSON endpoint that returns a list of observations.

    Accepts either a bare list or `{"observations": [...]}`. Entries without
    a `source_id` are attributed to this feed.
    """

    def __init__(self, config: FeedConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds), follow_redirects=True
        )

    @property
    def source_id(self) -> str:
        return self._config.source_id

    @property
    def rate_limit(self) -> float:
        return self._config.rate_limit

    @property
    def timeout_seconds(self) -> float:
        return self._config.timeout_seconds

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self) -> list[dict[str, Any]]:
        try:
            response = await self._client.get(self._config.url)
        except httpx.HTTPError as e:
            raise SourceError(
                f"Request to {self._config.url} failed: {e}",
                context={"source_id": self.source_id, "url": self._config.url},
            ) from e

        if response.status_code != 200:
            raise SourceError(
                f"HTTP {response.status_code} from {self._config.url}",
                context={
                    "source_id": self.source_id,
                    "url": self._config.url,
                    "status_code": response.status_code,
                },
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SourceError(
                f"Feed returned invalid JSON: {e}",
                context={"source_id": self.source_id, "url": self._config.url},
            ) from e

        if isinstance(data, dict):
            data = data.get("observations", [])
        if not isinstance(data, list):
            raise SourceError(
                f"Feed payload must be a list, got {type(data).__name__}",
                context={"source_id": self.source_id, "url": self._config.url},
            )

        entries = []
        for item in data:
            if not isinstance(item, dict):
                continue
            entry = dict(item)
            entry.setdefault("source_id", self.source_id)
            entries.append(entry)
        return entries


class FeedCollector:
    """Fans out over feeds with bounded concurrency.

    Each feed gets its own rate limiter and timeout. A failing feed is
    logged and skipped; it never aborts the others.
    """

    def __init__(
        self,
        feeds: Sequence[SourceFeed],
        max_concurrent: int = 4,
        default_timeout: float = 10.0,
    ) -> None:
        self._feeds = list(feeds)
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._default_timeout = default_timeout
        self._limiters = {
            feed.source_id: build_limiter(feed.rate_limit)
            for feed in self._feeds
        }

    @property
    def feeds(self) -> list[SourceFeed]:
        return list(self._feeds)

    async def collect(self) -> dict[str, list[dict[str, Any]]]:
        """Poll every feed once. Returns entries keyed by source; failures are omitted."""
        tasks = [self._fetch_one(feed) for feed in self._feeds]
        raw_results = await asyncio.gather(*tasks, return_exceptions=True)

        collected: dict[str, list[dict[str, Any]]] = {}
        for feed, result in zip(self._feeds, raw_results):
            if isinstance(result, SourceTimeoutError):
                logger.warning(
                    "Feed %s timed out after %.1fs, skipping this cycle",
                    feed.source_id,
                    result.context.get("timeout", 0.0),
                )
            elif isinstance(result, Exception):
                logger.warning("Feed %s failed, skipping: %s", feed.source_id, result)
            else:
                collected[feed.source_id] = result
        logger.info(
            "Collected %d entries from %d/%d feeds",
            sum(len(v) for v in collected.values()),
            len(collected),
            len(self._feeds),
        )
        return collected

    async def _fetch_one(self, feed: SourceFeed) -> list[dict[str, Any]]:
        timeout = getattr(feed, "timeout_seconds", None) or self._default_timeout
        async with self._semaphore:
            async with self._limiters[feed.source_id]:
                try:
                    return await asyncio.wait_for(feed.fetch(), timeout=timeout)
                except asyncio.TimeoutError as e:
                    raise SourceTimeoutError(
                        f"Feed {feed.source_id} timed out after {timeout}s",
                        context={"source_id": feed.source_id, "timeout": timeout},
                    ) from e

    async def close(self) -> None:
        for feed in self._feeds:
            close = getattr(feed, "close", None)
            if close is not None:
                await close()


def build_feeds(configs: Sequence[FeedConfig], client: httpx.AsyncClient | None = None) -> list[HttpJsonFeed]:
    return [HttpJsonFeed(cfg, client=client) for cfg in configs]
