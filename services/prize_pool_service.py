"""
Prize Pool Service - community prize pool operations

Composes the pool wallet, balance accounting, escrow ledger, payout engine
and claim resolver behind one object. Member-funded transfers into the pool
(donations) and to the developer address live here too, since they spend a
member wallet on behalf of a pool.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import EscrowReason, LedgerKind
from services.atomic_lock_manager import (
    AtomicLockManager, LockOperationType, member_funds_lock, pool_funds_lock,
)
from services.balance_accounting import BalanceAccounting, BalanceSnapshot
from services.chain_client import ChainClient
from services.escrow_claim_resolver import EscrowClaimResolver
from services.escrow_ledger import EscrowLedger
from services.nft_service import NFTService
from services.payout_engine import PayoutEngine
from services.pool_wallet_service import PoolWalletService
from services.transaction_ledger import TransactionLedger
from services.wallet_errors import (
    InsufficientFunds, InsufficientGas, InvalidAmount, NoFunds, NotOwner, WalletErrorCode,
    WalletOperationError, error_result,
)
from services.wallet_service import MemberWalletService
from utils.asset_registry import ALL_ASSETS, Asset, AssetRegistry
from utils.decimal_precision import MonetaryDecimal, is_all_amount, parse_positive_amount
from utils.key_vault import KeyVault

logger = logging.getLogger(__name__)


class PrizePoolService:
    """Entry point for prize pool wallets, balances, payouts and escrow"""

    def __init__(
        self,
        chain: ChainClient,
        pool_wallets: PoolWalletService,
        member_wallets: MemberWalletService,
        escrow_ledger: EscrowLedger,
        transactions: TransactionLedger,
        lock_manager: AtomicLockManager,
        registry: Optional[AssetRegistry] = None,
        nfts: Optional[NFTService] = None,
        developer_address: Optional[str] = None,
    ):
        self.chain = chain
        self.registry = registry or Config.get_asset_registry()
        self.pool_wallets = pool_wallets
        self.member_wallets = member_wallets
        self.escrow_ledger = escrow_ledger
        self.transactions = transactions
        self.lock_manager = lock_manager
        self.balances = BalanceAccounting(chain, escrow_ledger, pool_wallets, self.registry)
        self.payout_engine = PayoutEngine(
            chain, pool_wallets, self.balances, escrow_ledger, transactions, lock_manager, self.registry
        )
        self.claim_resolver = EscrowClaimResolver(
            self.payout_engine, escrow_ledger, pool_wallets, member_wallets, lock_manager
        )
        self.nfts = nfts or NFTService(chain, self.registry)
        self.developer_address = developer_address or Config.DEVELOPER_ADDRESS

    @classmethod
    def create(
        cls,
        session_factory: Optional[async_sessionmaker] = None,
        chain: Optional[ChainClient] = None,
        key_vault: Optional[KeyVault] = None,
        registry: Optional[AssetRegistry] = None,
    ) -> "PrizePoolService":
        """Wire every collaborator from Config"""
        chain = chain or ChainClient()
        key_vault = key_vault or KeyVault()
        registry = registry or Config.get_asset_registry()
        return cls(
            chain=chain,
            pool_wallets=PoolWalletService(key_vault, session_factory),
            member_wallets=MemberWalletService(chain, key_vault, registry, session_factory),
            escrow_ledger=EscrowLedger(session_factory),
            transactions=TransactionLedger(session_factory),
            lock_manager=AtomicLockManager(session_factory),
            registry=registry,
        )

    # ------------------------------------------------------------------
    # Wallet and balances
    # ------------------------------------------------------------------

    async def get_or_create_wallet(self, community_id: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.pool_wallets.get_or_create_wallet(community_id, tenant_id)

    async def replace_wallet(self, community_id: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.pool_wallets.replace_wallet(community_id, tenant_id)

    async def get_balance(self, community_id: str, tenant_id: Optional[str], ticker: str) -> Dict[str, Any]:
        try:
            snapshot = await self.balances.available_balance(community_id, tenant_id, ticker)
        except WalletOperationError as e:
            return e.to_result()
        return {"success": True, "address": snapshot.address, **snapshot.to_dict()}

    async def get_all_balances(
        self,
        community_id: str,
        tenant_id: Optional[str] = None,
        include_zeros: bool = False,
    ) -> Dict[str, Any]:
        try:
            wallet = await self.pool_wallets.require_wallet(community_id, tenant_id)
            snapshots = await self.balances.all_balances(
                community_id, wallet.tenant_id, include_zeros=include_zeros, pool_address=wallet.address
            )
        except WalletOperationError as e:
            return e.to_result()
        return {"success": True, "address": wallet.address, "balances": [snapshot.to_dict() for snapshot in snapshots]}

    # ------------------------------------------------------------------
    # Member-funded transfers
    # ------------------------------------------------------------------

    async def _send_from_member(
        self,
        member_id: str,
        destination: str,
        asset: Asset,
        amount: Union[str, Decimal],
        kind: LedgerKind,
        recipient_label: str,
        community_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        async with self.lock_manager.atomic_lock_context(
            member_funds_lock(member_id, asset.ticker), LockOperationType.MEMBER_FUNDS, resource_id=member_id
        ) as lock_token:
            if not lock_token:
                return error_result(WalletErrorCode.OPERATION_IN_PROGRESS, f"A {asset.ticker} operation for this wallet is already in progress")

            wallet = await self.member_wallets.require_wallet(member_id)
            decimals = await self.chain.get_decimals(asset)
            amount_units = parse_positive_amount(amount, decimals)

            balance = await self.chain.get_balance(asset, wallet.address)
            if balance < amount_units:
                raise InsufficientFunds(
                    f"Insufficient {asset.ticker}: have {MonetaryDecimal.format_units(balance, decimals)}",
                    balance=MonetaryDecimal.format_units(balance, decimals),
                )
            gas_price = await self.chain.get_gas_price()
            gas_limit = await self.chain.estimate_transfer_gas(asset, wallet.address, destination, amount_units)
            gas_cost = gas_limit * gas_price
            if asset.is_native:
                if balance < amount_units + gas_cost:
                    raise InsufficientFunds(f"Insufficient {asset.ticker} for amount plus gas")
            elif await self.chain.get_native_balance(wallet.address) < gas_cost:
                raise InsufficientGas(f"Insufficient {self.registry.native.ticker} for gas")

            account = self.member_wallets.signer(wallet)
            tx_hash = await self.chain.send_transfer(account, asset, destination, amount_units, gas_limit, gas_price)
            display_amount = MonetaryDecimal.format_units(amount_units, decimals)
            await self.transactions.record(member_id, recipient_label, asset.ticker, display_amount, tx_hash, kind, community_id)

        return {"success": True, "tx_hash": tx_hash, "amount": display_amount, "asset": asset.ticker}

    async def donate_to_pool(
        self,
        community_id: str,
        tenant_id: Optional[str],
        donor_id: str,
        ticker: str,
        amount: Union[str, Decimal],
    ) -> Dict[str, Any]:
        """Move a member's funds into the community prize pool"""
        try:
            pool_wallet = await self.pool_wallets.require_wallet(community_id, tenant_id)
            asset = self.registry.get(ticker)
            result = await self._send_from_member(
                donor_id, pool_wallet.address, asset, amount, LedgerKind.DONATION,
                f"pool:{community_id}", community_id,
            )
        except WalletOperationError as e:
            if e.code == WalletErrorCode.TX_FAILED:
                logger.error(f"❌ DONATION_FAILED: donor={donor_id} community={community_id}: {e.message}")
            return e.to_result()
        except Exception as e:
            logger.exception(f"❌ DONATION_UNEXPECTED_ERROR: donor={donor_id} community={community_id}: {e}")
            return error_result(WalletErrorCode.INTERNAL_ERROR, "Donation failed unexpectedly")

        if result.get("success"):
            result["pool_address"] = pool_wallet.address
            logger.info(f"🎉 POOL_DONATION: {result['amount']} {result['asset']} from {donor_id} to community={community_id}")
        return result

    async def pay_developer(self, sender_id: str, ticker: str, amount: Union[str, Decimal]) -> Dict[str, Any]:
        """Send from a member wallet to the configured developer address"""
        if not self.developer_address:
            return error_result(WalletErrorCode.NO_WALLET, "No developer address is configured")
        try:
            asset = self.registry.get(ticker)
            result = await self._send_from_member(
                sender_id, self.developer_address, asset, amount, LedgerKind.DEVELOPER_PAYMENT, self.developer_address,
            )
        except WalletOperationError as e:
            return e.to_result()
        except Exception as e:
            logger.exception(f"❌ DEVELOPER_PAYMENT_UNEXPECTED_ERROR: sender={sender_id}: {e}")
            return error_result(WalletErrorCode.INTERNAL_ERROR, "Developer payment failed unexpectedly")

        if result.get("success"):
            result["developer_address"] = self.developer_address
            logger.info(f"🛠️ DEVELOPER_PAID: {result['amount']} {result['asset']} from {sender_id}")
        return result

    async def donate_nft(
        self,
        community_id: str,
        tenant_id: Optional[str],
        donor_id: str,
        collection: str,
        token_id: Union[int, str],
    ) -> Dict[str, Any]:
        """Transfer one NFT from a member wallet into the pool; the owner signs transferFrom itself"""
        try:
            nft = self.registry.nft_collection(collection)
            token_id = int(token_id)
            pool_wallet = await self.pool_wallets.require_wallet(community_id, tenant_id)
            donor_wallet = await self.member_wallets.require_wallet(donor_id)

            owner = await self.chain.owner_of(nft.address, token_id)
            if owner.lower() != donor_wallet.address.lower():
                raise NotOwner(f"You do not own {nft.name} #{token_id}")

            gas_price = await self.chain.get_gas_price()
            gas_limit = await self.chain.estimate_nft_transfer_gas(nft.address, donor_wallet.address, pool_wallet.address, token_id)
            if await self.chain.get_native_balance(donor_wallet.address) < gas_limit * gas_price:
                raise InsufficientGas(f"Insufficient {self.registry.native.ticker} for gas")

            account = self.member_wallets.signer(donor_wallet)
            tx_hash = await self.chain.send_nft(account, nft.address, pool_wallet.address, token_id, gas_limit, gas_price)
            await self.transactions.record(
                donor_id, f"pool:{community_id}", f"{nft.ticker}#{token_id}", "1", tx_hash, LedgerKind.DONATION, community_id,
            )
        except (TypeError, ValueError):
            return error_result(WalletErrorCode.INVALID_AMOUNT, f"Invalid token id: {token_id}")
        except WalletOperationError as e:
            return e.to_result()

        metadata = await self.nfts.fetch_metadata(nft.ticker, token_id)
        logger.info(f"🖼️ POOL_NFT_DONATION: {nft.ticker}#{token_id} from {donor_id} to community={community_id} tx={tx_hash}")
        return {
            "success": True,
            "tx_hash": tx_hash,
            "collection": nft.ticker,
            "token_id": token_id,
            "pool_address": pool_wallet.address,
            "metadata": {"name": metadata["name"], "image_url": metadata["image_url"]} if metadata.get("success") else None,
        }

    # ------------------------------------------------------------------
    # Payouts and escrow
    # ------------------------------------------------------------------

    async def payout(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        destination: str,
        asset_selector: str,
        amount: Union[str, Decimal] = "all",
        is_escrow_claim: bool = False,
    ) -> Dict[str, Any]:
        return await self.payout_engine.payout(
            community_id, tenant_id, recipient_id, destination, asset_selector, amount, is_escrow_claim
        )

    async def payout_nft(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        destination: str,
        collection: str,
        token_id: Union[int, str],
    ) -> Dict[str, Any]:
        return await self.payout_engine.payout_nft(community_id, tenant_id, recipient_id, destination, collection, token_id)

    async def withdraw_nft_from_pool(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        destination: str,
        collection: str,
        token_id: Union[int, str],
    ) -> Dict[str, Any]:
        """Fee-free transfer of a pool-held NFT, e.g. a bounty prize"""
        return await self.payout_engine.payout_nft(community_id, tenant_id, recipient_id, destination, collection, token_id)

    async def claim_escrow(self, community_id: str, tenant_id: Optional[str], claimant_id: str) -> Dict[str, Any]:
        return await self.claim_resolver.claim(community_id, tenant_id, claimant_id)

    async def pending_claims(self, community_id: str, tenant_id: Optional[str], claimant_id: str) -> List[Dict[str, Any]]:
        return await self.claim_resolver.pending_claims(community_id, tenant_id, claimant_id)

    async def resolve_pending_transfers(self) -> Dict[str, int]:
        """Settle pool transfers that were broadcast without a receipt"""
        return await self.payout_engine.resolve_pending_transfers()

    async def create_for_eligible_assets(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        asset_selector: str,
        amount: Union[str, Decimal] = "all",
    ) -> Dict[str, Any]:
        """
        Reserve pool funds for a recipient without sending anything.

        "ALL" reserves every non-native token with a positive available
        balance. A fixed amount above what is available rejects the whole
        request with INVALID_AMOUNT before any record is written. Records are
        scoped to the tenant of the wallet that holds the funds.
        """
        try:
            scope = (await self.pool_wallets.require_wallet(community_id, tenant_id)).tenant_id
        except WalletOperationError as e:
            return e.to_result()

        async with self.lock_manager.atomic_lock_context(
            pool_funds_lock(community_id, scope), LockOperationType.POOL_FUNDS, resource_id=community_id
        ) as lock_token:
            if not lock_token:
                return error_result(WalletErrorCode.OPERATION_IN_PROGRESS, "Another payout from this pool is in progress")
            try:
                planned = await self._plan_reservations(community_id, scope, asset_selector, amount)
                entries = []
                for snapshot, reserve_units in planned:
                    human_amount = MonetaryDecimal.format_units(reserve_units, snapshot.decimals)
                    record = await self.escrow_ledger.create_record(
                        community_id, scope, recipient_id, snapshot.asset, human_amount,
                        EscrowReason.BULK_RESERVATION,
                    )
                    entries.append({"escrow_id": record.id, "asset": snapshot.asset, "amount": human_amount})
            except WalletOperationError as e:
                return e.to_result()

        logger.info(f"🔐 ESCROW_ENTRIES_CREATED: {len(entries)} for {recipient_id} community={community_id} tenant={scope}")
        return {"success": True, "entries_created": len(entries), "entries": entries}

    # Historical name used by callers of the bulk reservation endpoint
    create_escrow_entries = create_for_eligible_assets

    async def _plan_reservations(
        self,
        community_id: str,
        tenant_id: Optional[str],
        asset_selector: str,
        amount: Union[str, Decimal],
    ) -> List[Tuple[BalanceSnapshot, int]]:
        wallet = await self.pool_wallets.require_wallet(community_id, tenant_id)

        if (asset_selector or "").upper() == ALL_ASSETS:
            snapshots = []
            for asset in self.registry.fungible_tokens():
                snapshot = await self.balances.available_balance(
                    community_id, tenant_id, asset.ticker, pool_address=wallet.address
                )
                if snapshot.available > 0:
                    snapshots.append(snapshot)
            if not snapshots:
                raise WalletOperationError("No tokens with an available balance", code=WalletErrorCode.NO_ELIGIBLE_TOKENS)
        else:
            asset = self.registry.get(asset_selector)
            snapshot = await self.balances.available_balance(
                community_id, tenant_id, asset.ticker, pool_address=wallet.address
            )
            if snapshot.available <= 0 and is_all_amount(amount):
                raise NoFunds(f"No {asset.ticker} available to reserve", asset=asset.ticker)
            snapshots = [snapshot]

        planned = []
        for snapshot in snapshots:
            reserve_units = snapshot.usable if is_all_amount(amount) else parse_positive_amount(amount, snapshot.decimals)
            if reserve_units > snapshot.usable:
                raise InvalidAmount(
                    f"Cannot reserve {amount} {snapshot.asset}; only "
                    f"{MonetaryDecimal.format_units(snapshot.usable, snapshot.decimals)} is available",
                    asset=snapshot.asset,
                )
            planned.append((snapshot, reserve_units))
        return planned

    async def backfill_escrow(
        self,
        community_id: str,
        tenant_id: Optional[str],
        ticker: str,
        entries: Iterable[Dict[str, Any]],
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Administrative reservations; entries are {"recipient_id", "amount", "note"}"""
        try:
            asset = self.registry.get(ticker)
            scope = await self.pool_wallets.resolve_scope(community_id, tenant_id)
            return await self.escrow_ledger.backfill(community_id, scope, asset.ticker, entries, dry_run=dry_run)
        except WalletOperationError as e:
            return e.to_result()
        except ValueError as e:
            return error_result(WalletErrorCode.INVALID_AMOUNT, str(e))

    # ------------------------------------------------------------------
    # NFT helpers
    # ------------------------------------------------------------------

    async def verify_nft_ownership(self, collection: str, token_id: Union[int, str], address: str) -> Dict[str, Any]:
        return await self.nfts.verify_ownership(collection, token_id, address)

    async def get_nft_balances(self, address: str) -> Dict[str, Any]:
        return await self.nfts.get_nft_balances(address)

    async def fetch_nft_metadata(self, collection: str, token_id: Union[int, str]) -> Dict[str, Any]:
        return await self.nfts.fetch_metadata(collection, token_id)
