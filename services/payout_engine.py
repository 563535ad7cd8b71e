"""
Payout Engine - moves assets out of a prize pool wallet.

A payout is planned completely (usable balances, send amounts, gas for every
leg) before anything is signed, then the legs are sent strictly one after
another with consecutive nonces. A leg that fails on chain becomes an escrow
reservation for the recipient, unless the payout is itself an escrow claim.
A leg whose receipt does not arrive in time is neither paid nor escrowed: it
is recorded as pending and settled later by resolve_pending_transfers. The
batch only reports success when every leg confirmed; otherwise the caller
gets the full per-leg breakdown.

Reservations, escrow records and the pool lock are all keyed on the tenant of
the wallet that is actually spent from, which is the legacy wallet's (none)
when a tenant has no wallet of its own.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from decimal import Decimal

from config import Config
from models import EscrowReason, LedgerKind, LedgerStatus, LedgerTransaction, PoolWallet
from services.atomic_lock_manager import AtomicLockManager, LockOperationType, pool_funds_lock
from services.balance_accounting import BalanceAccounting
from services.chain_client import ChainClient
from services.escrow_ledger import EscrowLedger
from services.pool_wallet_service import PoolWalletService
from services.transaction_ledger import TransactionLedger
from services.wallet_errors import (
    InsufficientFunds, InsufficientGas, InvalidAddress, NoFunds, NotOwner, TransferPending,
    WalletErrorCode, WalletOperationError, error_result,
)
from utils.asset_registry import ALL_ASSETS, Asset, AssetRegistry, NFTCollection
from utils.decimal_precision import MonetaryDecimal, is_all_amount, parse_positive_amount

logger = logging.getLogger(__name__)

# Extends the held pool lock; False once the lock has been lost
KeepAlive = Callable[[], Awaitable[bool]]


@dataclass
class PayoutLeg:
    """One planned transfer out of the pool"""
    asset: Asset
    amount: int
    decimals: int
    gas_limit: int = 0
    # native "all" sends: gas is paid out of the amount itself
    whole_balance: bool = False

    @property
    def human_amount(self) -> str:
        return MonetaryDecimal.format_units(self.amount, self.decimals)

    @property
    def native_value(self) -> int:
        return self.amount if self.asset.is_native else 0


def batch_result(
    txs: List[Dict[str, Any]],
    failures: List[Dict[str, Any]],
    escrow_entries: List[Dict[str, Any]],
    pending: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    pending = pending or []
    result = {
        "success": not failures and not pending,
        "txs": txs,
        "failures": failures,
        "pending": pending,
        "escrow_entries": escrow_entries,
        "summary": {
            "successful": len(txs),
            "failed": len(failures),
            "pending": len(pending),
            "escrowed": len(escrow_entries),
        },
    }
    if failures:
        result["error"] = WalletErrorCode.PAYOUT_FAILURE.value
    elif pending:
        result["error"] = WalletErrorCode.TX_PENDING.value
    return result


def lock_lost_failure(asset: str, amount: str) -> Dict[str, Any]:
    return {
        "asset": asset,
        "amount": amount,
        "error": WalletErrorCode.OPERATION_IN_PROGRESS.value,
        "message": "Pool lock was lost before this transfer; nothing was sent",
        "escrowed": False,
    }


class PayoutEngine:
    """Prize pool transfers with escrow fallback"""

    def __init__(
        self,
        chain: ChainClient,
        pool_wallets: PoolWalletService,
        balances: BalanceAccounting,
        escrow_ledger: EscrowLedger,
        transactions: TransactionLedger,
        lock_manager: AtomicLockManager,
        registry: Optional[AssetRegistry] = None,
    ):
        self.chain = chain
        self.pool_wallets = pool_wallets
        self.balances = balances
        self.escrow_ledger = escrow_ledger
        self.transactions = transactions
        self.lock_manager = lock_manager
        self.registry = registry or Config.get_asset_registry()

    def lock_keepalive(self, lock_name: str, lock_token: str) -> KeepAlive:
        """Callback that pushes the held pool lock's expiry out by a full timeout"""
        async def keepalive() -> bool:
            return await self.lock_manager.extend_lock(lock_name, lock_token)
        return keepalive

    # ------------------------------------------------------------------
    # Public entry points (take the pool lock)
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
        ledger_kind: LedgerKind = LedgerKind.PAYOUT,
    ) -> Dict[str, Any]:
        """
        Pay one asset, or every non-native fungible asset when asset_selector is "ALL".

        Args:
            amount: "all" for the whole usable balance, else a fixed human amount per asset
            is_escrow_claim: pay against the full on-chain balance and never escrow failures

        Returns:
            Dict with success, txs, failures, pending, escrow_entries and summary counts
        """
        try:
            scope = (await self.pool_wallets.require_wallet(community_id, tenant_id)).tenant_id
        except WalletOperationError as e:
            return e.to_result()

        lock_name = pool_funds_lock(community_id, scope)
        async with self.lock_manager.atomic_lock_context(
            lock_name, LockOperationType.POOL_FUNDS, resource_id=community_id
        ) as lock_token:
            if not lock_token:
                return error_result(WalletErrorCode.OPERATION_IN_PROGRESS, "Another payout from this pool is in progress")
            return await self.execute_payout(
                community_id, scope, recipient_id, destination, asset_selector,
                amount, is_escrow_claim, ledger_kind,
                keepalive=self.lock_keepalive(lock_name, lock_token),
            )

    async def payout_nft(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        destination: str,
        collection: str,
        token_id: Union[int, str],
        is_escrow_claim: bool = False,
    ) -> Dict[str, Any]:
        try:
            scope = (await self.pool_wallets.require_wallet(community_id, tenant_id)).tenant_id
        except WalletOperationError as e:
            return e.to_result()

        lock_name = pool_funds_lock(community_id, scope)
        async with self.lock_manager.atomic_lock_context(
            lock_name, LockOperationType.POOL_FUNDS, resource_id=community_id
        ) as lock_token:
            if not lock_token:
                return error_result(WalletErrorCode.OPERATION_IN_PROGRESS, "Another payout from this pool is in progress")
            return await self.execute_payout_nft(
                community_id, scope, recipient_id, destination, collection, token_id, is_escrow_claim,
                keepalive=self.lock_keepalive(lock_name, lock_token),
            )

    # ------------------------------------------------------------------
    # Lock-free execution (caller holds the pool lock)
    # ------------------------------------------------------------------

    async def execute_payout(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        destination: str,
        asset_selector: str,
        amount: Union[str, Decimal] = "all",
        is_escrow_claim: bool = False,
        ledger_kind: LedgerKind = LedgerKind.PAYOUT,
        keepalive: Optional[KeepAlive] = None,
    ) -> Dict[str, Any]:
        try:
            if not self.chain.is_address(destination):
                raise InvalidAddress(f"Invalid destination address: {destination}")
            wallet = await self.pool_wallets.require_wallet(community_id, tenant_id)
            scope = wallet.tenant_id
            gas_price = await self.chain.get_gas_price()

            if (asset_selector or "").upper() == ALL_ASSETS:
                legs = await self._plan_sweep(community_id, scope, wallet, amount, is_escrow_claim)
            else:
                asset = self.registry.get(asset_selector)
                legs = [await self._plan_single(community_id, scope, wallet, asset, amount, is_escrow_claim)]

            await self._estimate_gas(wallet, destination, legs, gas_price)
            await self._require_gas(wallet, legs, gas_price)

            return await self._execute_legs(
                community_id, scope, recipient_id, destination, wallet, legs, gas_price,
                is_escrow_claim, ledger_kind, keepalive,
            )
        except WalletOperationError as e:
            logger.warning(
                f"⚠️ PAYOUT_REJECTED: {e.code.value} community={community_id} tenant={tenant_id} "
                f"recipient={recipient_id} asset={asset_selector}: {e.message}"
            )
            return e.to_result()
        except Exception:
            logger.exception(f"❌ PAYOUT_INTERNAL_ERROR: community={community_id} asset={asset_selector}")
            return error_result(WalletErrorCode.INTERNAL_ERROR, "Unexpected error during payout")

    async def _plan_single(
        self,
        community_id: str,
        tenant_id: Optional[str],
        wallet: PoolWallet,
        asset: Asset,
        amount: Union[str, Decimal],
        is_escrow_claim: bool,
    ) -> PayoutLeg:
        snapshot = await self.balances.available_balance(
            community_id, tenant_id, asset.ticker, is_escrow_claim=is_escrow_claim, pool_address=wallet.address
        )
        if snapshot.onchain == 0 or snapshot.usable <= 0:
            raise NoFunds(f"No {asset.ticker} available in the prize pool", asset=asset.ticker)

        if is_all_amount(amount):
            send_amount = snapshot.usable
        else:
            send_amount = parse_positive_amount(amount, snapshot.decimals)
            if send_amount > snapshot.usable:
                raise InsufficientFunds(
                    f"Requested {amount} {asset.ticker} but only "
                    f"{MonetaryDecimal.format_units(snapshot.usable, snapshot.decimals)} is available",
                    asset=asset.ticker,
                )
        return PayoutLeg(
            asset=asset,
            amount=send_amount,
            decimals=snapshot.decimals,
            whole_balance=is_all_amount(amount),
        )

    async def _plan_sweep(
        self,
        community_id: str,
        tenant_id: Optional[str],
        wallet: PoolWallet,
        amount: Union[str, Decimal],
        is_escrow_claim: bool,
    ) -> List[PayoutLeg]:
        legs = []
        for asset in self.registry.fungible_tokens():
            snapshot = await self.balances.available_balance(
                community_id, tenant_id, asset.ticker, is_escrow_claim=is_escrow_claim, pool_address=wallet.address
            )
            if snapshot.onchain == 0 or snapshot.usable <= 0:
                continue

            if is_all_amount(amount):
                send_amount = snapshot.usable
            else:
                send_amount = parse_positive_amount(amount, snapshot.decimals)
                if send_amount > snapshot.usable:
                    # One short asset fails the whole batch before anything is sent
                    raise InsufficientFunds(
                        f"Requested {amount} {asset.ticker} but only "
                        f"{MonetaryDecimal.format_units(snapshot.usable, snapshot.decimals)} is available",
                        asset=asset.ticker,
                    )
            legs.append(PayoutLeg(asset=asset, amount=send_amount, decimals=snapshot.decimals))

        if not legs:
            raise NoFunds("No token balances available in the prize pool")
        return legs

    async def _estimate_gas(self, wallet: PoolWallet, destination: str, legs: List[PayoutLeg], gas_price: int) -> None:
        for leg in legs:
            leg.gas_limit = await self.chain.estimate_transfer_gas(leg.asset, wallet.address, destination, leg.amount)
            if leg.asset.is_native and leg.whole_balance:
                gas_cost = leg.gas_limit * gas_price
                if leg.amount <= gas_cost:
                    raise InsufficientGas(
                        f"{leg.asset.ticker} balance does not cover the gas for sending it",
                        gas_cost=MonetaryDecimal.format_units(gas_cost, 18),
                    )
                leg.amount -= gas_cost

    async def _require_gas(self, wallet: PoolWallet, legs: List[PayoutLeg], gas_price: int) -> None:
        total_gas_cost = sum(leg.gas_limit for leg in legs) * gas_price
        required = total_gas_cost + sum(leg.native_value for leg in legs)
        native_balance = await self.chain.get_native_balance(wallet.address)
        if native_balance < required:
            raise InsufficientGas(
                f"Pool needs {MonetaryDecimal.format_units(required, 18)} {self.registry.native.ticker} "
                f"for {len(legs)} transfer(s) but holds {MonetaryDecimal.format_units(native_balance, 18)}",
                gas_cost=MonetaryDecimal.format_units(total_gas_cost, 18),
            )

    async def _execute_legs(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        destination: str,
        wallet: PoolWallet,
        legs: List[PayoutLeg],
        gas_price: int,
        is_escrow_claim: bool,
        ledger_kind: LedgerKind,
        keepalive: Optional[KeepAlive] = None,
    ) -> Dict[str, Any]:
        account = self.pool_wallets.signer(wallet)
        nonces = await self.chain.allocate_nonces(wallet.address)
        txs, failures, escrow_entries, pending = [], [], [], []

        for index, leg in enumerate(legs):
            if keepalive is not None and not await keepalive():
                logger.critical(
                    f"🚨 PAYOUT_LOCK_LOST: community={community_id} tenant={tenant_id} "
                    f"stopping with {len(legs) - index} leg(s) unsent"
                )
                failures.extend(lock_lost_failure(rest.asset.ticker, rest.human_amount) for rest in legs[index:])
                break

            nonce = nonces.next()
            try:
                tx_hash = await self.chain.send_transfer(
                    account, leg.asset, destination, leg.amount, leg.gas_limit, gas_price, nonce=nonce
                )
            except TransferPending as e:
                logger.warning(
                    f"⏳ PAYOUT_LEG_PENDING: {leg.human_amount} {leg.asset.ticker} → {destination} "
                    f"community={community_id} tx={e.tx_hash}"
                )
                pending.append({"asset": leg.asset.ticker, "amount": leg.human_amount, "tx_hash": e.tx_hash})
                await self._record_transfer(
                    wallet, recipient_id, leg.asset.ticker, leg.human_amount, e.tx_hash, ledger_kind,
                    community_id, status=LedgerStatus.PENDING,
                )
                continue
            except WalletOperationError as e:
                if not getattr(e, "broadcast", False):
                    nonces.release(nonce)
                logger.error(
                    f"❌ PAYOUT_LEG_FAILED: {leg.human_amount} {leg.asset.ticker} → {destination} "
                    f"community={community_id}: {e.message}"
                )
                failure = {
                    "asset": leg.asset.ticker,
                    "amount": leg.human_amount,
                    "error": e.code.value,
                    "message": e.message,
                    "escrowed": False,
                }
                if not is_escrow_claim:
                    escrow = await self._escrow_failed_leg(community_id, tenant_id, recipient_id, leg, e)
                    if escrow is not None:
                        failure["escrowed"] = True
                        failure["escrow_id"] = escrow["escrow_id"]
                        escrow_entries.append(escrow)
                failures.append(failure)
                continue

            logger.info(
                f"💸 PAYOUT_LEG_SENT: {leg.human_amount} {leg.asset.ticker} → {destination} "
                f"community={community_id} tx={tx_hash}"
            )
            txs.append({"asset": leg.asset.ticker, "amount": leg.human_amount, "tx_hash": tx_hash})
            await self._record_transfer(wallet, recipient_id, leg.asset.ticker, leg.human_amount, tx_hash, ledger_kind, community_id)

        result = batch_result(txs, failures, escrow_entries, pending)
        logger.info(
            f"🏁 PAYOUT_COMPLETE: community={community_id} recipient={recipient_id} "
            f"successful={len(txs)} failed={len(failures)} pending={len(pending)} escrowed={len(escrow_entries)}"
        )
        return result

    async def _escrow_failed_leg(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        leg: PayoutLeg,
        error: WalletOperationError,
    ) -> Optional[Dict[str, Any]]:
        try:
            record = await self.escrow_ledger.create_record(
                community_id, tenant_id, recipient_id, leg.asset.ticker, leg.human_amount,
                EscrowReason.PAYOUT_FAILED,
                metadata={"error": error.message, "tx_hash": getattr(error, "tx_hash", None)},
            )
        except Exception:
            logger.exception(
                f"🚨 ESCROW_CREATE_FAILED: {leg.human_amount} {leg.asset.ticker} for {recipient_id} "
                f"community={community_id} - value is NOT reserved"
            )
            return None
        return {"escrow_id": record.id, "asset": leg.asset.ticker, "amount": leg.human_amount}

    async def _record_transfer(self, wallet: PoolWallet, recipient_id: str, asset: str, amount: str,
                               tx_hash: str, kind: LedgerKind, community_id: str,
                               status: LedgerStatus = LedgerStatus.CONFIRMED) -> None:
        try:
            await self.transactions.record(
                f"pool:{wallet.community_id}", recipient_id, asset, amount, tx_hash, kind,
                community_id=community_id, tenant_id=wallet.tenant_id, status=status,
            )
        except Exception:
            # The transfer is final on chain; the audit job reconciles a missing ledger row
            logger.exception(f"🚨 LEDGER_WRITE_FAILED: tx={tx_hash} {amount} {asset} → {recipient_id}")

    # ------------------------------------------------------------------
    # Non-fungible payouts
    # ------------------------------------------------------------------

    async def execute_payout_nft(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        destination: str,
        collection: str,
        token_id: Union[int, str],
        is_escrow_claim: bool = False,
        keepalive: Optional[KeepAlive] = None,
    ) -> Dict[str, Any]:
        try:
            if not self.chain.is_address(destination):
                raise InvalidAddress(f"Invalid destination address: {destination}")
            nft: NFTCollection = self.registry.nft_collection(collection)
            wallet = await self.pool_wallets.require_wallet(community_id, tenant_id)
            scope = wallet.tenant_id
            gas_price = await self.chain.get_gas_price()

            owner = await self.chain.owner_of(nft.address, int(token_id))
            if owner.lower() != wallet.address.lower():
                raise NotOwner(f"Prize pool does not own {nft.name} #{token_id}", owner=owner)

            if not is_escrow_claim and await self.escrow_ledger.is_nft_reserved(
                community_id, scope, nft.address, token_id
            ):
                raise InsufficientFunds(f"{nft.name} #{token_id} is reserved for another recipient")

            gas_limit = await self.chain.estimate_nft_transfer_gas(nft.address, wallet.address, destination, int(token_id))
            gas_cost = gas_limit * gas_price
            native_balance = await self.chain.get_native_balance(wallet.address)
            if native_balance < gas_cost:
                raise InsufficientGas(
                    f"Pool needs {MonetaryDecimal.format_units(gas_cost, 18)} {self.registry.native.ticker} for gas",
                    gas_cost=MonetaryDecimal.format_units(gas_cost, 18),
                )

            return await self._execute_nft_leg(
                community_id, scope, recipient_id, destination, wallet, nft, token_id,
                gas_limit, gas_price, is_escrow_claim, keepalive,
            )
        except WalletOperationError as e:
            logger.warning(f"⚠️ NFT_PAYOUT_REJECTED: {e.code.value} {collection}#{token_id}: {e.message}")
            return e.to_result()
        except Exception:
            logger.exception(f"❌ NFT_PAYOUT_INTERNAL_ERROR: {collection}#{token_id}")
            return error_result(WalletErrorCode.INTERNAL_ERROR, "Unexpected error during NFT payout")

    async def _execute_nft_leg(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        destination: str,
        wallet: PoolWallet,
        nft: NFTCollection,
        token_id: Union[int, str],
        gas_limit: int,
        gas_price: int,
        is_escrow_claim: bool,
        keepalive: Optional[KeepAlive] = None,
    ) -> Dict[str, Any]:
        label = f"{nft.ticker}#{token_id}"
        kind = LedgerKind.ESCROW_CLAIM if is_escrow_claim else LedgerKind.PAYOUT
        txs, failures, escrow_entries, pending = [], [], [], []

        if keepalive is not None and not await keepalive():
            logger.critical(f"🚨 PAYOUT_LOCK_LOST: community={community_id} {label} not sent")
            return batch_result(txs, [lock_lost_failure(label, "1")], escrow_entries)

        account = self.pool_wallets.signer(wallet)
        nonces = await self.chain.allocate_nonces(wallet.address)
        nonce = nonces.next()

        try:
            tx_hash = await self.chain.send_nft(
                account, nft.address, destination, int(token_id), gas_limit, gas_price, nonce=nonce
            )
        except TransferPending as e:
            logger.warning(f"⏳ NFT_PAYOUT_PENDING: {label} → {destination} tx={e.tx_hash}")
            pending.append({"asset": label, "amount": "1", "tx_hash": e.tx_hash})
            await self._record_transfer(wallet, recipient_id, label, "1", e.tx_hash, kind, community_id,
                                        status=LedgerStatus.PENDING)
        except WalletOperationError as e:
            logger.error(f"❌ NFT_PAYOUT_FAILED: {label} → {destination}: {e.message}")
            failure = {"asset": label, "amount": "1", "error": e.code.value, "message": e.message, "escrowed": False}
            if not is_escrow_claim:
                try:
                    record = await self.escrow_ledger.create_nft_record(
                        community_id, tenant_id, recipient_id, nft.ticker, nft.address, token_id,
                        EscrowReason.PAYOUT_FAILED, nft_name=nft.name, metadata={"error": e.message},
                    )
                    failure["escrowed"] = True
                    failure["escrow_id"] = record.id
                    escrow_entries.append({"escrow_id": record.id, "asset": label, "amount": "1"})
                except Exception:
                    logger.exception(f"🚨 ESCROW_CREATE_FAILED: {label} for {recipient_id} - unit is NOT reserved")
            failures.append(failure)
        else:
            logger.info(f"🖼️ NFT_PAYOUT_SENT: {label} → {destination} community={community_id} tx={tx_hash}")
            txs.append({"asset": label, "amount": "1", "tx_hash": tx_hash})
            await self._record_transfer(wallet, recipient_id, label, "1", tx_hash, kind, community_id)

        return batch_result(txs, failures, escrow_entries, pending)

    # ------------------------------------------------------------------
    # Unconfirmed transfers
    # ------------------------------------------------------------------

    async def resolve_pending_transfers(self) -> Dict[str, int]:
        """
        Re-check pool transfers whose receipt never arrived.

        A mined transfer is confirmed. A reverted payout becomes a reservation
        for its recipient, as if it had failed when sent; a reverted escrow
        claim reopens the record it claimed. Anything still unmined, or whose
        pool is busy, is left for the next run.
        """
        summary = {"checked": 0, "confirmed": 0, "reverted": 0, "still_pending": 0}
        for entry in await self.transactions.pending_entries([LedgerKind.PAYOUT, LedgerKind.ESCROW_CLAIM]):
            summary["checked"] += 1
            try:
                mined = await self.chain.get_receipt_status(entry.tx_hash)
            except WalletOperationError as e:
                logger.warning(f"⚠️ PENDING_TX_UNREADABLE: {entry.tx_hash}: {e.message}")
                mined = None

            if mined is None:
                summary["still_pending"] += 1
            elif mined:
                await self.transactions.settle(entry.id, LedgerStatus.CONFIRMED)
                summary["confirmed"] += 1
            elif await self._settle_reverted(entry):
                summary["reverted"] += 1
            else:
                summary["still_pending"] += 1

        if summary["checked"]:
            logger.info(
                f"🔎 PENDING_TRANSFERS_RESOLVED: checked={summary['checked']} confirmed={summary['confirmed']} "
                f"reverted={summary['reverted']} still_pending={summary['still_pending']}"
            )
        return summary

    async def _settle_reverted(self, entry: LedgerTransaction) -> bool:
        async with self.lock_manager.atomic_lock_context(
            pool_funds_lock(entry.community_id, entry.tenant_id), LockOperationType.POOL_FUNDS,
            resource_id=entry.community_id,
        ) as lock_token:
            if not lock_token:
                return False
            if not await self.transactions.settle(entry.id, LedgerStatus.REVERTED):
                return True

            if entry.kind == LedgerKind.ESCROW_CLAIM.value:
                await self.escrow_ledger.reopen_claim(entry.tx_hash)
                return True

            metadata = {"error": "Transaction reverted after a receipt timeout", "tx_hash": entry.tx_hash}
            ticker, _, token_id = entry.asset.partition("#")
            if token_id:
                nft = self.registry.nft_collection(ticker)
                await self.escrow_ledger.create_nft_record(
                    entry.community_id, entry.tenant_id, entry.recipient_id, nft.ticker, nft.address, token_id,
                    EscrowReason.PAYOUT_FAILED, nft_name=nft.name, metadata=metadata,
                )
            else:
                await self.escrow_ledger.create_record(
                    entry.community_id, entry.tenant_id, entry.recipient_id, entry.asset, entry.amount,
                    EscrowReason.PAYOUT_FAILED, metadata=metadata,
                )
            logger.warning(f"↩️ PENDING_PAYOUT_REVERTED: {entry.amount} {entry.asset} for {entry.recipient_id} escrowed")
            return True
