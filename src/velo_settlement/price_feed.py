"""
USD price feed backed by CoinGecko.

- Per-symbol cache (30 s TTL by default)
- One in-flight request per symbol; concurrent callers share it
- A semaphore caps outbound requests (2 by default)
- On HTTP 429 every symbol backs off for Retry-After seconds and
  stale cache entries are served instead

A fee may therefore be priced with a quote up to one TTL old.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional

import aiohttp

from .config import PriceFeedSettings
from .exceptions import PriceUnavailableError

logger = logging.getLogger(__name__)

COINGECKO_IDS: Dict[str, str] = {
    "ETH": "ethereum",
    "BTC": "bitcoin",
    "SOL": "solana",
    "STRK": "starknet",
    "XLM": "stellar",
    "DOT": "polkadot",
    "USDT": "tether",
}

CONVERSION_SLIPPAGE = Decimal("0.005")


@dataclass
class PriceEntry:
    """Cached price entry."""
    price_usd: Decimal
    fetched_at: float
    source: str  # "live", "fixed"


@dataclass(frozen=True)
class Conversion:
    converted_amount: Decimal
    rate: Decimal
    slippage: Decimal


class RateLimitedError(Exception):
    """CoinGecko answered 429."""

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        super().__init__(f"Rate limited for {retry_after}s")


class PriceFeed:
    """Cached, rate-limited USD price lookups."""

    def __init__(
        self,
        settings: Optional[PriceFeedSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings or PriceFeedSettings()
        self._clock = clock
        self._cache: Dict[str, PriceEntry] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._semaphore = asyncio.Semaphore(max(1, self._settings.max_concurrency))
        self._rate_limited_until = 0.0
        self._session: Optional[aiohttp.ClientSession] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_price(self, symbol: str) -> Decimal:
        """USD price per unit of `symbol`.

        Raises:
            PriceUnavailableError: No live or cached price could be produced
        """
        key = symbol.upper()
        if key == "USD":
            return Decimal("1")

        cached = self._cache.get(key)
        if cached and self._is_fresh(cached):
            return cached.price_usd

        existing = self._inflight.get(key)
        if existing is not None:
            return await asyncio.shield(existing)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            price = await self._resolve(key)
        except BaseException as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure does not warn at GC
            future.exception()
            raise
        else:
            future.set_result(price)
            return price
        finally:
            self._inflight.pop(key, None)

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        symbols = [s.upper() for s in symbols]
        prices = await asyncio.gather(*(self.get_price(s) for s in symbols))
        return dict(zip(symbols, prices))

    async def get_all_prices(self) -> Dict[str, Decimal]:
        """Every supported symbol; 0 for symbols with no price at all."""
        ids = ",".join(sorted(set(COINGECKO_IDS.values())))
        prices: Dict[str, Decimal] = {}
        try:
            async with self._semaphore:
                data = await self._request(ids)
            for symbol, coin_id in COINGECKO_IDS.items():
                usd = (data.get(coin_id) or {}).get("usd")
                price = Decimal(str(usd)) if usd else Decimal("0")
                prices[symbol] = price
                if price > 0:
                    self._store(symbol, price)
            return prices
        except (aiohttp.ClientError, asyncio.TimeoutError, RateLimitedError) as e:
            logger.warning(f"Bulk price fetch failed ({e}); falling back to per-symbol lookups")

        for symbol in COINGECKO_IDS:
            try:
                prices[symbol] = await self.get_price(symbol)
            except PriceUnavailableError:
                prices[symbol] = Decimal("0")
        return prices

    async def get_conversion_rate(self, from_symbol: str, to_symbol: str = "USDT") -> Decimal:
        if from_symbol.upper() == to_symbol.upper():
            return Decimal("1")
        from_price, to_price = await asyncio.gather(
            self.get_price(from_symbol),
            self.get_price(to_symbol),
        )
        return from_price / to_price

    async def convert_amount(
        self,
        amount: Decimal,
        from_symbol: str,
        to_symbol: str = "USDT",
        include_slippage: bool = True,
    ) -> Conversion:
        rate = await self.get_conversion_rate(from_symbol, to_symbol)
        converted = Decimal(amount) * rate
        slippage = CONVERSION_SLIPPAGE if include_slippage else Decimal("0")
        if include_slippage:
            converted = converted * (1 - slippage)
        return Conversion(converted_amount=converted, rate=rate, slippage=slippage)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_fresh(self, entry: PriceEntry) -> bool:
        return (self._clock() - entry.fetched_at) < self._settings.cache_ttl_seconds

    def _store(self, symbol: str, price: Decimal) -> None:
        self._cache[symbol] = PriceEntry(price_usd=price, fetched_at=self._clock(), source="live")

    def _stale_or_raise(self, symbol: str, reason: str) -> Decimal:
        cached = self._cache.get(symbol)
        if cached:
            logger.warning(
                f"Serving stale price for {symbol}: ${cached.price_usd} ({reason})"
            )
            return cached.price_usd
        raise PriceUnavailableError(symbol, reason)

    async def _resolve(self, symbol: str) -> Decimal:
        if self._clock() < self._rate_limited_until:
            return self._stale_or_raise(symbol, "rate limited")

        coin_id = COINGECKO_IDS.get(symbol)
        if coin_id is None:
            raise PriceUnavailableError(symbol, "unsupported currency")

        try:
            async with self._semaphore:
                data = await self._request(coin_id)
            usd = (data.get(coin_id) or {}).get("usd")
            if not usd:
                raise PriceUnavailableError(symbol, "price not found in response")
            price = Decimal(str(usd))
            self._store(symbol, price)
            logger.debug(f"Live price for {symbol}: ${price}")
            return price
        except RateLimitedError as e:
            self._rate_limited_until = self._clock() + e.retry_after
            logger.warning(f"CoinGecko rate limit hit, backing off {e.retry_after}s")
            return self._stale_or_raise(symbol, "rate limited")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return self._stale_or_raise(symbol, str(e) or type(e).__name__)
        except PriceUnavailableError:
            cached = self._cache.get(symbol)
            if cached:
                return cached.price_usd
            raise

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._settings.request_timeout_seconds)
            )
        return self._session

    async def _request(self, ids: str) -> dict:
        """GET /simple/price for a comma-separated id list."""
        session = await self._get_session()
        url = f"{self._settings.base_url}/simple/price"
        async with session.get(url, params={"ids": ids, "vs_currencies": "usd"}) as resp:
            if resp.status == 429:
                raise RateLimitedError(self._parse_retry_after(resp.headers.get("Retry-After")))
            resp.raise_for_status()
            return await resp.json()

    def _parse_retry_after(self, value: Optional[str]) -> float:
        try:
            seconds = float(value) if value else 0.0
        except ValueError:
            seconds = 0.0
        return seconds if seconds > 0 else self._settings.default_backoff_seconds

