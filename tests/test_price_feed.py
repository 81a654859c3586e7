"""Tests for the cached, rate-limited price feed."""
from __future__ import annotations

import asyncio
from decimal import Decimal

import aiohttp
import pytest

from velo_settlement.config import PriceFeedSettings
from velo_settlement.exceptions import PriceUnavailableError
from velo_settlement.price_feed import PriceFeed, RateLimitedError


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class ScriptedPriceFeed(PriceFeed):
    """PriceFeed whose HTTP layer replays scripted responses."""

    def __init__(self, responses, clock, settings=None, delay=0.0):
        super().__init__(settings or PriceFeedSettings(), clock=clock)
        self.responses = list(responses)
        self.calls = []
        self.delay = delay

    async def _request(self, ids):
        self.calls.append(ids)
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


class TestGetPrice:
    @pytest.mark.asyncio
    async def test_usd_needs_no_request(self):
        feed = ScriptedPriceFeed([{}], FakeClock())
        assert await feed.get_price("usd") == Decimal("1")
        assert feed.calls == []

    @pytest.mark.asyncio
    async def test_maps_symbol_to_coingecko_id(self):
        feed = ScriptedPriceFeed([{"stellar": {"usd": 0.12}}], FakeClock())
        assert await feed.get_price("XLM") == Decimal("0.12")
        assert feed.calls == ["stellar"]

    @pytest.mark.asyncio
    async def test_cache_within_ttl(self):
        """Should serve a cached price for 30 seconds."""
        clock = FakeClock()
        feed = ScriptedPriceFeed([{"ethereum": {"usd": 3000}}, {"ethereum": {"usd": 3100}}], clock)

        assert await feed.get_price("ETH") == Decimal("3000")
        clock.now += 29
        assert await feed.get_price("ETH") == Decimal("3000")
        clock.now += 2
        assert await feed.get_price("ETH") == Decimal("3100")
        assert len(feed.calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_fetch(self):
        feed = ScriptedPriceFeed([{"bitcoin": {"usd": 60000}}], FakeClock(), delay=0.01)

        prices = await asyncio.gather(*(feed.get_price("BTC") for _ in range(5)))

        assert prices == [Decimal("60000")] * 5
        assert feed.calls == ["bitcoin"]

    @pytest.mark.asyncio
    async def test_rate_limit_serves_stale_and_backs_off(self):
        """Should back off for Retry-After and keep serving the cached price."""
        clock = FakeClock()
        feed = ScriptedPriceFeed(
            [{"solana": {"usd": 150}}, RateLimitedError(60), {"solana": {"usd": 160}}],
            clock,
        )
        assert await feed.get_price("SOL") == Decimal("150")

        clock.now += 31
        assert await feed.get_price("SOL") == Decimal("150")
        clock.now += 30
        assert await feed.get_price("SOL") == Decimal("150")
        assert len(feed.calls) == 2

        clock.now += 31
        assert await feed.get_price("SOL") == Decimal("160")

    @pytest.mark.asyncio
    async def test_rate_limited_without_cache_raises(self):
        feed = ScriptedPriceFeed([RateLimitedError(5)], FakeClock())
        with pytest.raises(PriceUnavailableError):
            await feed.get_price("DOT")

    @pytest.mark.asyncio
    async def test_network_error_serves_stale(self):
        clock = FakeClock()
        feed = ScriptedPriceFeed(
            [{"polkadot": {"usd": 7}}, aiohttp.ClientConnectionError("down")], clock
        )
        await feed.get_price("DOT")
        clock.now += 60

        assert await feed.get_price("DOT") == Decimal("7")

    @pytest.mark.asyncio
    async def test_unsupported_symbol(self):
        feed = ScriptedPriceFeed([{}], FakeClock())
        with pytest.raises(PriceUnavailableError):
            await feed.get_price("DOGE")

    @pytest.mark.asyncio
    async def test_missing_price_in_response(self):
        feed = ScriptedPriceFeed([{"starknet": {}}], FakeClock())
        with pytest.raises(PriceUnavailableError):
            await feed.get_price("STRK")


class TestHelpers:
    @pytest.mark.asyncio
    async def test_all_prices_in_one_request(self):
        feed = ScriptedPriceFeed(
            [{"ethereum": {"usd": 3000}, "bitcoin": {"usd": 60000}, "tether": {"usd": 1}}],
            FakeClock(),
        )
        prices = await feed.get_all_prices()

        assert len(feed.calls) == 1
        assert prices["ETH"] == Decimal("3000")
        assert prices["USDT"] == Decimal("1")
        assert prices["XLM"] == Decimal("0")

    @pytest.mark.asyncio
    async def test_convert_amount_with_slippage(self):
        feed = ScriptedPriceFeed(
            [{"ethereum": {"usd": 2000}}, {"tether": {"usd": 1}}], FakeClock()
        )
        conversion = await feed.convert_amount(Decimal("2"), "ETH", "USDT")

        assert conversion.rate == Decimal("2000")
        assert conversion.converted_amount == Decimal("3980.000")

    def test_retry_after_parsing(self):
        feed = ScriptedPriceFeed([{}], FakeClock())
        assert feed._parse_retry_after("12") == 12.0
        assert feed._parse_retry_after(None) == 5.0
        assert feed._parse_retry_after("soon") == 5.0
