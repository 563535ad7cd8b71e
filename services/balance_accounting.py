"""
Balance Accounting - what a prize pool can still spend.

available = on-chain balance - sum(unclaimed reservations) for the exact
(community, tenant, asset) tuple of the wallet that holds the funds, all in
the asset's smallest unit. Escrow claims skip the subtraction because the
claim is the reservation being paid.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from services.chain_client import ChainClient
from services.escrow_ledger import EscrowLedger
from utils.asset_registry import AssetRegistry
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


@dataclass
class BalanceSnapshot:
    """One asset's balance view for a pool, base units"""
    asset: str
    address: str
    decimals: int
    onchain: int
    reserved: int
    skipped_record_ids: List[int] = field(default_factory=list)

    @property
    def available(self) -> int:
        return self.onchain - self.reserved

    @property
    def usable(self) -> int:
        return max(self.available, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "decimals": self.decimals,
            "onchain": MonetaryDecimal.format_units(self.onchain, self.decimals),
            "reserved": MonetaryDecimal.format_units(self.reserved, self.decimals),
            "available": MonetaryDecimal.format_units(self.usable, self.decimals),
        }


class BalanceAccounting:
    """Derived, recomputed-on-read pool balances"""

    def __init__(self, chain: ChainClient, ledger: EscrowLedger, pool_wallets, registry: Optional[AssetRegistry] = None):
        self.chain = chain
        self.ledger = ledger
        self.pool_wallets = pool_wallets
        self.registry = registry or Config.get_asset_registry()

    async def reserved_base_units(
        self, community_id: str, tenant_id: Optional[str], ticker: str, decimals: int
    ) -> Tuple[int, List[int]]:
        """Sum of unclaimed reservations; malformed stored amounts are skipped"""
        total = 0
        skipped: List[int] = []
        for record_id, stored_amount in await self.ledger.unclaimed_amounts(community_id, tenant_id, ticker):
            parsed = MonetaryDecimal.parse_stored_amount(stored_amount, decimals)
            if parsed is None:
                logger.warning(
                    f"⚠️ ESCROW_AMOUNT_MALFORMED: #{record_id} amount={stored_amount!r} {ticker} "
                    f"community={community_id} - skipped from reservation sum"
                )
                skipped.append(record_id)
                continue
            total += parsed
        return total, skipped

    async def available_balance(
        self,
        community_id: str,
        tenant_id: Optional[str],
        ticker: str,
        is_escrow_claim: bool = False,
        pool_address: Optional[str] = None,
    ) -> BalanceSnapshot:
        """
        Balance view for one asset of a pool.

        Without pool_address the wallet is resolved here and its own tenant
        scopes the reservations; with it, tenant_id must already be that scope.

        Raises:
            UnknownAsset: ticker not in the registry
            NoWallet: pool has no wallet and no address was given
            NetworkError: node read failed
        """
        asset = self.registry.get(ticker)
        if pool_address is None:
            wallet = await self.pool_wallets.require_wallet(community_id, tenant_id)
            pool_address, tenant_id = wallet.address, wallet.tenant_id

        onchain = await self.chain.get_balance(asset, pool_address)
        decimals = await self.chain.get_decimals(asset)

        reserved, skipped = 0, []
        if not is_escrow_claim:
            reserved, skipped = await self.reserved_base_units(community_id, tenant_id, asset.ticker, decimals)

        snapshot = BalanceSnapshot(
            asset=asset.ticker,
            address=pool_address,
            decimals=decimals,
            onchain=onchain,
            reserved=reserved,
            skipped_record_ids=skipped,
        )
        logger.debug(
            f"📊 POOL_BALANCE: {asset.ticker} community={community_id} tenant={tenant_id} "
            f"onchain={onchain} reserved={reserved} available={snapshot.available} claim={is_escrow_claim}"
        )
        return snapshot

    async def all_balances(
        self,
        community_id: str,
        tenant_id: Optional[str],
        include_zeros: bool = False,
        pool_address: Optional[str] = None,
    ) -> List[BalanceSnapshot]:
        """Native first, then tokens; zero on-chain tokens omitted unless include_zeros"""
        if pool_address is None:
            wallet = await self.pool_wallets.require_wallet(community_id, tenant_id)
            pool_address, tenant_id = wallet.address, wallet.tenant_id

        snapshots = []
        for asset in self.registry.all_assets():
            snapshot = await self.available_balance(community_id, tenant_id, asset.ticker, pool_address=pool_address)
            if asset.is_native or include_zeros or snapshot.onchain > 0:
                snapshots.append(snapshot)
        return snapshots
