"""
USD price resolution: primary, secondary fallback and the TTL cache
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from caching.simple_cache import SimpleCache
from services.price_resolver import PriceResolver
from services.wallet_errors import PriceUnavailable

TOKEN = "0xc18A73e3a4Ad464A6e95D842689D3FBaa896a908"


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def resolver(registry, clock):
    return PriceResolver(
        registry=registry,
        cache=SimpleCache(default_ttl=300, clock=clock, name="usd_prices"),
        secondary_network="avax",
        native_reference_address="0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7",
    )


class TestPriceResolver:

    @pytest.mark.asyncio
    async def test_primary_price(self, resolver):
        with patch.object(resolver, "_fetch_primary_price", AsyncMock(return_value=Decimal("1.25"))) as primary, \
                patch.object(resolver, "_fetch_secondary_price", AsyncMock()) as secondary:
            assert await resolver.resolve_price_usd(TOKEN) == Decimal("1.25")
        primary.assert_awaited_once_with(TOKEN)
        secondary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_secondary_fallback(self, resolver):
        with patch.object(resolver, "_fetch_primary_price", AsyncMock(return_value=None)), \
                patch.object(resolver, "_fetch_secondary_price", AsyncMock(return_value=Decimal("0.9"))):
            assert await resolver.resolve_price_usd(TOKEN) == Decimal("0.9")

    @pytest.mark.asyncio
    async def test_both_sources_fail(self, resolver):
        with patch.object(resolver, "_fetch_primary_price", AsyncMock(return_value=None)), \
                patch.object(resolver, "_fetch_secondary_price", AsyncMock(return_value=None)):
            with pytest.raises(PriceUnavailable):
                await resolver.resolve_price_usd(TOKEN)
        assert len(resolver.cache) == 0, "Failures must not be cached"

    @pytest.mark.asyncio
    async def test_cache_keyed_by_lowercase_address(self, resolver):
        primary = AsyncMock(return_value=Decimal("2"))
        with patch.object(resolver, "_fetch_primary_price", primary):
            await resolver.resolve_price_usd(TOKEN)
            assert await resolver.resolve_price_usd(TOKEN.lower()) == Decimal("2")
        assert primary.await_count == 1

    @pytest.mark.asyncio
    async def test_cache_expires_after_ttl(self, resolver, clock):
        primary = AsyncMock(side_effect=[Decimal("2"), Decimal("3")])
        with patch.object(resolver, "_fetch_primary_price", primary):
            assert await resolver.resolve_price_usd(TOKEN) == Decimal("2")
            clock.now += 299
            assert await resolver.resolve_price_usd(TOKEN) == Decimal("2")
            clock.now += 1
            assert await resolver.resolve_price_usd(TOKEN) == Decimal("3")
        assert primary.await_count == 2

    @pytest.mark.asyncio
    async def test_native_uses_reference_address(self, resolver):
        primary = AsyncMock(return_value=Decimal("10"))
        with patch.object(resolver, "_fetch_primary_price", primary):
            assert await resolver.resolve_asset_price("AVAX") == Decimal("10")
        primary.assert_awaited_once_with("0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7")

    @pytest.mark.asyncio
    async def test_primary_payload_parsing(self, resolver):
        with patch.object(resolver, "_get_json", AsyncMock(return_value={"pairs": [{"priceUsd": "0.0042"}]})):
            assert await resolver._fetch_primary_price(TOKEN) == Decimal("0.0042")
        with patch.object(resolver, "_get_json", AsyncMock(return_value={"pairs": []})):
            assert await resolver._fetch_primary_price(TOKEN) is None
        with patch.object(resolver, "_get_json", AsyncMock(return_value={"pairs": [{"priceUsd": "0"}]})):
            assert await resolver._fetch_primary_price(TOKEN) is None

    @pytest.mark.asyncio
    async def test_secondary_payload_parsing(self, resolver):
        payload = {"data": {"attributes": {"price_usd": "1.5"}}}
        with patch.object(resolver, "_get_json", AsyncMock(return_value=payload)) as get_json:
            assert await resolver._fetch_secondary_price(TOKEN) == Decimal("1.5")
        assert get_json.await_args.args[0].endswith(f"/avax/tokens/{TOKEN}")

    def test_invalidate(self, resolver):
        resolver.cache.set(TOKEN.lower(), Decimal("1"))
        assert resolver.invalidate(TOKEN) is True
        assert resolver.invalidate(TOKEN) is False
