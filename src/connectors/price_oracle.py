"""DIA price oracle connector.

Fetches spot prices for the data-source catalog from DIA's RWA endpoints.
The decision loop must never starve for inputs, so any failure (transport
error, non-2xx, missing or zero price) degrades to a simulated quote: the
source's default price with a small bounded jitter.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Iterable

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.config import OracleConfig
from src.connectors.data_sources import DATA_SOURCES, DataSource
from src.connectors.rate_limiter import rate_limiter
from src.observability.logger import get_logger
from src.observability.metrics import metrics

log = get_logger(__name__)


@dataclass
class PriceResult:
    source_id: int
    price: float
    timestamp: float
    success: bool
    simulated: bool = False
    error: str = ""


class PriceOracle:
    """Async DIA client with simulated fallback quotes."""

    def __init__(
        self,
        config: OracleConfig | None = None,
        sources: Iterable[DataSource] = DATA_SOURCES,
        client: httpx.AsyncClient | None = None,
        rng: random.Random | None = None,
    ):
        self._config = config or OracleConfig()
        self._sources = tuple(sources)
        self._client = client or httpx.AsyncClient(
            base_url=self._config.base_url.rstrip("/"),
            timeout=self._config.timeout_secs,
            headers={"Accept": "application/json"},
        )
        self._rng = rng or random.Random()
        rate_limiter.configure(
            "dia", self._config.rate_limit_per_sec, self._config.rate_limit_burst,
        )

    @property
    def sources(self) -> tuple[DataSource, ...]:
        return self._sources

    async def close(self) -> None:
        await self._client.aclose()

    def simulated_price(self, source: DataSource, error: str = "") -> PriceResult:
        base = source.default_price
        jitter = base * self._config.simulated_jitter_pct * (self._rng.random() * 2 - 1)
        metrics.incr("oracle.simulated")
        return PriceResult(
            source_id=source.id,
            price=round(base + jitter, 4),
            timestamp=time.time(),
            success=True,
            simulated=True,
            error=error,
        )

    async def _get(self, source: DataSource) -> httpx.Response:
        """GET with a short retry on transport errors (not on HTTP status)."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential(multiplier=self._config.retry_wait_secs, max=2),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                await rate_limiter.get("dia").acquire()
                return await self._client.get(f"/{source.path}")
        raise RuntimeError("unreachable")

    async def fetch_price(self, source: DataSource) -> PriceResult:
        """Live quote for ``source``; never raises.

        The whole attempt, rate-limit wait and retries included, is bounded
        by ``deadline_secs``. A source still unanswered at the deadline gets
        a simulated quote.
        """
        try:
            return await asyncio.wait_for(self._fetch_live(source), self._config.deadline_secs)
        except asyncio.TimeoutError:
            log.debug("oracle.deadline_exceeded", symbol=source.symbol,
                      deadline=self._config.deadline_secs)
            return self.simulated_price(source, "deadline exceeded")

    async def _fetch_live(self, source: DataSource) -> PriceResult:
        try:
            resp = await self._get(source)
            if resp.status_code >= 400:
                log.debug("oracle.http_error", symbol=source.symbol, status=resp.status_code)
                return self.simulated_price(source, f"HTTP {resp.status_code}")
            data = resp.json()
            price = float(data.get("Price") or data.get("price") or 0)
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            log.debug("oracle.fetch_failed", symbol=source.symbol, error=str(e))
            return self.simulated_price(source, str(e))

        if price <= 0:
            return self.simulated_price(source, "missing price")

        metrics.incr("oracle.live")
        return PriceResult(
            source_id=source.id,
            price=price,
            timestamp=time.time(),
            success=True,
        )

    async def fetch_all_prices(self) -> list[PriceResult]:
        """Quotes for every configured source, fetched concurrently.

        Each quote carries its own deadline, so the batch finishes within
        ``deadline_secs`` however slow the feed is.
        """
        return list(await asyncio.gather(*(self.fetch_price(s) for s in self._sources)))
