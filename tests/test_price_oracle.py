"""Tests for the DIA price oracle connector and its rate limiter."""

from __future__ import annotations

import asyncio
import random

import httpx
import pytest

from src.config import EngineConfig, OracleConfig
from src.connectors.data_sources import DATA_SOURCES, get_data_source, sources_for_asset_mask
from src.connectors.ledger import ASSET_ALL, ASSET_FX
from src.connectors.price_oracle import PriceOracle
from src.connectors.rate_limiter import RateLimiterRegistry
from src.observability.metrics import metrics

WTI = get_data_source(2)


def _oracle(handler, **cfg) -> PriceOracle:
    config = OracleConfig(
        retry_wait_secs=0.0, rate_limit_per_sec=10_000, rate_limit_burst=10_000, **cfg,
    )
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url=config.base_url,
    )
    return PriceOracle(config, client=client, rng=random.Random(7))


def _within_jitter(price: float, base: float) -> bool:
    return abs(price - base) <= base * 0.005 + 1e-9


# ─── catalog ────────────────────────────────────────────────────────────

class TestDataSources:
    def test_catalog(self) -> None:
        assert len(DATA_SOURCES) == 22
        assert [s.id for s in DATA_SOURCES] == list(range(1, 23))
        assert get_data_source(99) is None

    def test_mask(self) -> None:
        fx = sources_for_asset_mask(ASSET_FX)
        assert {s.symbol for s in fx} == {"CAD/USD", "AUD/USD", "CNY/USD"}
        assert len(sources_for_asset_mask(ASSET_ALL)) == 22


# ─── oracle ─────────────────────────────────────────────────────────────

class TestPriceOracle:
    @pytest.mark.asyncio
    async def test_live_price(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"Ticker": "WTI-USD", "Price": 61.25})

        oracle = _oracle(handler)
        result = await oracle.fetch_price(WTI)
        await oracle.close()

        assert result.success and not result.simulated
        assert result.price == 61.25
        assert seen == ["/v1/rwa/Commodities/WTI-USD"]
        assert metrics.counter("oracle.live") == 1

    @pytest.mark.asyncio
    async def test_lowercase_price_key(self) -> None:
        oracle = _oracle(lambda r: httpx.Response(200, json={"price": 3.2}))
        assert (await oracle.fetch_price(WTI)).price == 3.2

    @pytest.mark.asyncio
    async def test_http_error_falls_back(self) -> None:
        oracle = _oracle(lambda r: httpx.Response(503))
        result = await oracle.fetch_price(WTI)
        assert result.success and result.simulated
        assert result.error == "HTTP 503"
        assert _within_jitter(result.price, WTI.default_price)
        assert result.price == round(result.price, 4)

    @pytest.mark.asyncio
    async def test_zero_price_falls_back(self) -> None:
        oracle = _oracle(lambda r: httpx.Response(200, json={"Price": 0}))
        result = await oracle.fetch_price(WTI)
        assert result.simulated
        assert _within_jitter(result.price, WTI.default_price)

    @pytest.mark.asyncio
    async def test_bad_json_falls_back(self) -> None:
        oracle = _oracle(lambda r: httpx.Response(200, text="<html>"))
        assert (await oracle.fetch_price(WTI)).simulated

    @pytest.mark.asyncio
    async def test_transport_error_retried_then_falls_back(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("connection refused", request=request)

        oracle = _oracle(handler, max_attempts=3)
        result = await oracle.fetch_price(WTI)
        assert calls == 3
        assert result.simulated
        assert "connection refused" in result.error
        assert metrics.counter("oracle.simulated") == 1

    @pytest.mark.asyncio
    async def test_transient_error_recovers(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json={"Price": 60.0})

        result = await _oracle(handler).fetch_price(WTI)
        assert not result.simulated
        assert result.price == 60.0

    @pytest.mark.asyncio
    async def test_deadline_bounds_hung_feed(self) -> None:
        async def hung(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(30)
            raise httpx.ReadTimeout("feed hung", request=request)

        oracle = _oracle(hung, deadline_secs=0.1)
        loop = asyncio.get_running_loop()
        started = loop.time()
        results = await oracle.fetch_all_prices()

        assert loop.time() - started < 2.0
        assert all(r.simulated and r.error == "deadline exceeded" for r in results)
        assert _within_jitter(results[WTI.id - 1].price, WTI.default_price)

    def test_default_deadline_fits_engine_read_timeout(self) -> None:
        assert OracleConfig().deadline_secs < EngineConfig().read_timeout_secs
        assert OracleConfig().timeout_secs < OracleConfig().deadline_secs

    @pytest.mark.asyncio
    async def test_fetch_all(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if "ETF" in request.url.path:
                return httpx.Response(404)
            return httpx.Response(200, json={"Price": 1.5})

        results = await _oracle(handler).fetch_all_prices()
        assert [r.source_id for r in results] == list(range(1, 23))
        assert all(r.success for r in results)
        assert sum(r.simulated for r in results) == 16


# ─── rate limiter ───────────────────────────────────────────────────────

class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_burst_then_wait(self) -> None:
        registry = RateLimiterRegistry()
        registry.configure("x", tokens_per_second=20, max_burst=2)
        bucket = registry.get("x")
        for _ in range(3):
            await bucket.acquire()
        assert bucket.stats["total_requests"] == 3
        assert bucket.stats["total_waits"] >= 1

    def test_unknown_endpoint_gets_default_bucket(self) -> None:
        registry = RateLimiterRegistry()
        assert registry.get("other") is registry.get("other")
        assert "other" in registry.stats()
