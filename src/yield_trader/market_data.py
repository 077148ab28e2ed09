"""
Market Data and Opportunity Sources

Free public APIs, no key required:
- CoinGecko: spot prices and 24h change (drives the market snapshot)
- DefiLlama yields: Aave V3 supply APYs on Base

Reads retry with exponential backoff; when a source stays unavailable the
callers get an empty/None answer (prices) or fallback APYs (opportunities).
Static variants serve paper trading and tests.

Author: khopilot
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import TradingConstants
from .models import MarketRegime, MarketSnapshot, Opportunity, RecommendedAction, RiskTier
from .tokens import normalize_symbol

logger = logging.getLogger("yield_trader.market_data")

COINGECKO_API = "https://api.coingecko.com/api/v3"
DEFILLAMA_YIELDS_API = "https://yields.llama.fi"
USER_AGENT = "Yield-Trader/1.0"

COINGECKO_IDS = {
    "ETH": "ethereum",
    "WETH": "ethereum",
    "USDC": "usd-coin",
    "DAI": "dai",
    "cbETH": "coinbase-wrapped-staked-eth",
}

VOLATILE_MOVE_PERCENT = 8.0
TREND_MOVE_PERCENT = 3.0


def classify_market(change_24h: float, price: float = 0.0) -> MarketSnapshot:
    """
    Market regime from the 24h ETH move.

    |move| > 8%  -> volatile, wait
    move > 3%    -> bullish, enter
    move < -3%   -> bearish, exit
    otherwise    -> neutral, wait
    """
    move = abs(change_24h)
    if move > VOLATILE_MOVE_PERCENT:
        regime, action, confidence = MarketRegime.VOLATILE, RecommendedAction.WAIT, 60.0
    elif change_24h > TREND_MOVE_PERCENT:
        regime, action, confidence = MarketRegime.BULLISH, RecommendedAction.ENTER, min(95.0, 50 + move * 5)
    elif change_24h < -TREND_MOVE_PERCENT:
        regime, action, confidence = MarketRegime.BEARISH, RecommendedAction.EXIT, min(95.0, 50 + move * 3)
    else:
        regime, action, confidence = MarketRegime.NEUTRAL, RecommendedAction.WAIT, 60.0

    return MarketSnapshot(
        regime=regime,
        recommended_action=action,
        confidence=confidence,
        price=price,
        change_24h=change_24h,
    )


def create_retry_decorator(max_retries: int = 3):
    """
    Create a retry decorator with configurable attempts.

    Args:
        max_retries: Maximum number of retry attempts.

    Returns:
        Tenacity retry decorator for transient HTTP failures.
    """
    return retry(
        stop=stop_after_attempt(max_retries),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        reraise=True,
    )


class _HttpSource:
    """Shared aiohttp session, TTL cache and retrying JSON GET."""

    def __init__(self, cache_ttl: float = 120.0, timeout: float = 15.0, max_retries: int = 3):
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self.max_retries = max_retries
        self._cache: Dict[str, Tuple[datetime, Any]] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": USER_AGENT},
            )
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    def _get_cache(self, key: str) -> Optional[Any]:
        if key not in self._cache:
            return None
        cached_time, value = self._cache[key]
        if (datetime.now(timezone.utc) - cached_time).total_seconds() > self.cache_ttl:
            del self._cache[key]
            return None
        return value

    def _set_cache(self, key: str, value: Any) -> None:
        self._cache[key] = (datetime.now(timezone.utc), value)

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        session = await self._get_session()

        @create_retry_decorator(self.max_retries)
        async def _fetch() -> Any:
            async with session.get(url, params=params) as resp:
                resp.raise_for_status()
                return await resp.json()

        return await _fetch()


class CoinGeckoMarketData(_HttpSource):
    """Prices and market snapshot from CoinGecko's simple/price endpoint."""

    def __init__(
        self,
        api_url: str = COINGECKO_API,
        cache_ttl: float = 120.0,
        timeout: float = 15.0,
        max_retries: int = 3,
        enabled: bool = True,
    ):
        super().__init__(cache_ttl, timeout, max_retries)
        self.api_url = api_url.rstrip("/")
        self.enabled = enabled

        if enabled:
            logger.info("CoinGeckoMarketData initialized: %s", self.api_url)

    async def _simple_price(self, ids: List[str]) -> Dict[str, Dict[str, float]]:
        key = "simple:" + ",".join(sorted(ids))
        cached = self._get_cache(key)
        if cached is not None:
            return cached

        data = await self._get_json(
            f"{self.api_url}/simple/price",
            params={
                "ids": ",".join(sorted(ids)),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
            },
        )
        self._set_cache(key, data)
        return data

    async def get_prices(self, symbols: List[str]) -> Dict[str, float]:
        """USD prices for the given symbols; unknown or failed symbols are omitted."""
        if not self.enabled:
            return {}

        wanted = {}
        for symbol in symbols:
            canonical = normalize_symbol(symbol)
            if canonical in COINGECKO_IDS:
                wanted[canonical] = COINGECKO_IDS[canonical]
        if not wanted:
            return {}

        try:
            data = await self._simple_price(list(set(wanted.values())))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("CoinGecko price fetch failed: %s", e)
            return {}

        prices = {}
        for symbol, coin_id in wanted.items():
            usd = (data.get(coin_id) or {}).get("usd")
            if usd is not None:
                prices[symbol] = float(usd)
        return prices

    async def get_market_snapshot(self) -> Optional[MarketSnapshot]:
        if not self.enabled:
            return None
        try:
            data = await self._simple_price([COINGECKO_IDS["ETH"]])
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("CoinGecko snapshot fetch failed: %s", e)
            return None

        eth = data.get(COINGECKO_IDS["ETH"]) or {}
        if "usd" not in eth:
            return None
        return classify_market(float(eth.get("usd_24h_change") or 0.0), float(eth["usd"]))


class DefiLlamaOpportunitySource(_HttpSource):
    """
    Aave V3 supply opportunities on Base from the DefiLlama yields API.

    Any token without a live pool falls back to apy.fallbacks (2% when
    unlisted).
    """

    DEFAULT_APY = 2.0

    def __init__(
        self,
        constants: Optional[TradingConstants] = None,
        symbols: Optional[List[str]] = None,
        chain: str = "base",
        project: str = "aave-v3",
        api_url: str = DEFILLAMA_YIELDS_API,
        timeout: float = 15.0,
        max_retries: int = 3,
        enabled: bool = True,
    ):
        self.constants = constants or TradingConstants()
        super().__init__(self.constants.apy.cache_ttl_seconds, timeout, max_retries)
        self.symbols = symbols or ["USDC", "WETH"]
        self.chain = chain
        self.project = project
        self.api_url = api_url.rstrip("/")
        self.enabled = enabled

    async def _pools(self) -> List[Dict[str, Any]]:
        cached = self._get_cache("pools")
        if cached is not None:
            return cached
        data = await self._get_json(f"{self.api_url}/pools")
        pools = [
            p for p in data.get("data", [])
            if str(p.get("chain", "")).lower() == self.chain and p.get("project") == self.project
        ]
        self._set_cache("pools", pools)
        return pools

    def _fallback_apy(self, symbol: str) -> float:
        return self.constants.apy.fallbacks.get(symbol, self.DEFAULT_APY)

    async def list_opportunities(self) -> List[Opportunity]:
        pools: List[Dict[str, Any]] = []
        if self.enabled:
            try:
                pools = await self._pools()
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.warning("DefiLlama fetch failed, using fallback APYs: %s", e)

        by_symbol: Dict[str, Dict[str, Any]] = {}
        for pool in pools:
            symbol = str(pool.get("symbol", "")).upper()
            # Keep the deepest pool per symbol
            if symbol not in by_symbol or pool.get("tvlUsd", 0) > by_symbol[symbol].get("tvlUsd", 0):
                by_symbol[symbol] = pool

        opportunities = []
        for symbol in self.symbols:
            pool = by_symbol.get(symbol.upper())
            if pool is not None and pool.get("apy") is not None:
                apy, tvl, source = float(pool["apy"]), float(pool.get("tvlUsd") or 0.0), "live"
            else:
                apy, tvl, source = self._fallback_apy(symbol), 0.0, "fallback"

            logger.debug("APY (%s): %s/%s = %.2f%%", source, symbol, self.project, apy)
            opportunities.append(
                Opportunity(
                    venue="Aave V3",
                    strategy=f"{symbol} Supply",
                    asset=symbol,
                    apy=apy,
                    risk=RiskTier.LOW,
                    tvl_usd=tvl,
                    chain=self.chain,
                )
            )
        return opportunities


class StaticMarketData:
    """Fixed prices and an optional fixed snapshot."""

    def __init__(
        self,
        prices: Optional[Dict[str, float]] = None,
        snapshot: Optional[MarketSnapshot] = None,
    ):
        self.prices = dict(prices or {})
        self.snapshot = snapshot

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol] = price

    async def get_prices(self, symbols: List[str]) -> Dict[str, float]:
        return {s: self.prices[s] for s in symbols if s in self.prices}

    async def get_market_snapshot(self) -> Optional[MarketSnapshot]:
        return self.snapshot

    async def close(self) -> None:
        pass


class StaticOpportunitySource:
    def __init__(self, opportunities: Optional[List[Opportunity]] = None):
        self.opportunities = list(opportunities or [])

    async def list_opportunities(self) -> List[Opportunity]:
        return list(self.opportunities)

    async def close(self) -> None:
        pass
