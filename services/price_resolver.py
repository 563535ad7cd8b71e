"""
USD price resolver for fungible on-chain assets.

Primary source: DexScreener  GET {PRIMARY_PRICE_API_URL}/{address}
Secondary source: GeckoTerminal  GET {SECONDARY_PRICE_API_URL}/{network}/tokens/{address}

Prices are cached per lower-cased contract address for PRICE_CACHE_TTL_SECONDS.
The native asset is priced through its wrapped reference token address.
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import aiohttp

from caching.simple_cache import SimpleCache
from config import Config
from services.wallet_errors import PriceUnavailable
from utils.asset_registry import AssetRegistry

logger = logging.getLogger(__name__)


class PriceResolver:
    """Best-effort USD pricing with a local TTL cache and two-tier fallback"""

    def __init__(
        self,
        registry: Optional[AssetRegistry] = None,
        cache: Optional[SimpleCache] = None,
        primary_url: Optional[str] = None,
        secondary_url: Optional[str] = None,
        secondary_network: Optional[str] = None,
        native_reference_address: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.registry = registry or Config.get_asset_registry()
        self.cache = cache if cache is not None else SimpleCache(default_ttl=Config.PRICE_CACHE_TTL_SECONDS, name="usd_prices")
        self.primary_url = (primary_url or Config.PRIMARY_PRICE_API_URL).rstrip("/")
        self.secondary_url = (secondary_url or Config.SECONDARY_PRICE_API_URL).rstrip("/")
        self.secondary_network = secondary_network or Config.GECKOTERMINAL_NETWORK
        self.native_reference_address = native_reference_address or Config.NATIVE_PRICE_REFERENCE_ADDRESS
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.PRICE_API_TIMEOUT_SECONDS)

    @staticmethod
    def _positive_price(raw: Any) -> Optional[Decimal]:
        if raw is None:
            return None
        try:
            price = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            return None
        if not price.is_finite() or price <= 0:
            return None
        return price

    async def _get_json(self, url: str) -> Optional[Any]:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url, headers={"Accept": "application/json"}) as response:
                if response.status == 200:
                    return await response.json(content_type=None)
                if response.status == 429:
                    logger.warning(f"⏳ PRICE_RATE_LIMITED: {url}")
                else:
                    logger.warning(f"⚠️ PRICE_HTTP_ERROR: {url} status={response.status}")
                return None

    async def _fetch_primary_price(self, address: str) -> Optional[Decimal]:
        """DexScreener: first pair's priceUsd"""
        try:
            data = await self._get_json(f"{self.primary_url}/{address}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ PRIMARY_PRICE_FAILED: {address}: {e}")
            return None
        if not data:
            return None
        pairs = data.get("pairs") or []
        if not pairs:
            return None
        return self._positive_price(pairs[0].get("priceUsd"))

    async def _fetch_secondary_price(self, address: str) -> Optional[Decimal]:
        """GeckoTerminal: data.attributes.price_usd"""
        try:
            data = await self._get_json(f"{self.secondary_url}/{self.secondary_network}/tokens/{address}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ SECONDARY_PRICE_FAILED: {address}: {e}")
            return None
        if not data:
            return None
        attributes = (data.get("data") or {}).get("attributes") or {}
        return self._positive_price(attributes.get("price_usd"))

    async def resolve_price_usd(self, asset_identifier: str) -> Decimal:
        """
        USD unit price for a contract address.

        Raises:
            PriceUnavailable: both sources failed or returned a non-positive price
        """
        key = (asset_identifier or "").lower()
        entry = self.cache.get_entry(key)
        if entry is not None:
            logger.debug(f"💾 PRICE_CACHE_HIT: {key} = ${entry.value}")
            return entry.value

        price = await self._fetch_primary_price(asset_identifier)
        source = "primary"
        if price is None:
            price = await self._fetch_secondary_price(asset_identifier)
            source = "secondary"

        if price is None:
            logger.error(f"❌ PRICE_UNAVAILABLE: {asset_identifier} - all price sources failed")
            raise PriceUnavailable(f"No USD price available for {asset_identifier}", asset=asset_identifier)

        self.cache.set(key, price)
        logger.info(f"💲 PRICE_RESOLVED: {asset_identifier} = ${price} via {source}")
        return price

    async def resolve_asset_price(self, ticker: str) -> Decimal:
        """USD price for a registry ticker; the native asset goes through its reference address"""
        asset = self.registry.get(ticker)
        address = self.native_reference_address if asset.is_native else asset.address
        return await self.resolve_price_usd(address)

    def invalidate(self, asset_identifier: str) -> bool:
        return self.cache.delete((asset_identifier or "").lower())

    def clear(self) -> None:
        self.cache.clear()
