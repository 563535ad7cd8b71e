"""
Member-to-member transfers: single tips and equal-split rains.

Both spend from the sender's custodial wallet under the same per-asset lock
as withdrawals, so a tip can never race a withdrawal's balance check.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from config import Config
from models import LedgerKind, MemberWallet
from services.atomic_lock_manager import AtomicLockManager, LockOperationType, member_funds_lock
from services.chain_client import ChainClient
from services.transaction_ledger import TransactionLedger
from services.wallet_errors import (
    InsufficientBalance, InsufficientGas, InvalidAmount, TransferFailed, WalletErrorCode,
    WalletOperationError, error_result,
)
from services.wallet_service import MemberWalletService
from utils.asset_registry import Asset, AssetRegistry
from utils.decimal_precision import MonetaryDecimal, parse_positive_amount

logger = logging.getLogger(__name__)


class MemberTransferService:
    """Tips and rains between member wallets"""

    def __init__(
        self,
        chain: ChainClient,
        member_wallets: MemberWalletService,
        transactions: TransactionLedger,
        lock_manager: AtomicLockManager,
        registry: Optional[AssetRegistry] = None,
        send_delay_seconds: Optional[float] = None,
        max_recipients: Optional[int] = None,
    ):
        self.chain = chain
        self.member_wallets = member_wallets
        self.transactions = transactions
        self.lock_manager = lock_manager
        self.registry = registry or Config.get_asset_registry()
        self.send_delay_seconds = Config.RAIN_SEND_DELAY_SECONDS if send_delay_seconds is None else send_delay_seconds
        self.max_recipients = max_recipients or Config.RAIN_MAX_RECIPIENTS

    async def _check_funds(self, wallet: MemberWallet, asset: Asset, decimals: int, total_units: int, gas_cost: int) -> None:
        """Asset balance covers total_units and native balance covers gas (plus total when native)"""
        balance = await self.chain.get_balance(asset, wallet.address)
        if asset.is_native:
            if balance < total_units + gas_cost:
                raise InsufficientGas(
                    f"Insufficient funds. Your balance: {MonetaryDecimal.format_units(balance, decimals)} {asset.ticker}. "
                    f"You need {MonetaryDecimal.format_units(total_units, decimals)} {asset.ticker} "
                    f"+ ~{MonetaryDecimal.format_units(gas_cost, 18)} {asset.ticker} for gas."
                )
            return

        if balance < total_units:
            raise InsufficientBalance(
                f"Insufficient {asset.ticker} balance. You have {MonetaryDecimal.format_units(balance, decimals)} "
                f"{asset.ticker}, need {MonetaryDecimal.format_units(total_units, decimals)} {asset.ticker}."
            )
        native_balance = await self.chain.get_native_balance(wallet.address)
        if native_balance < gas_cost:
            native = self.registry.native.ticker
            raise InsufficientGas(
                f"Insufficient {native} for gas fees. You need ~{MonetaryDecimal.format_units(gas_cost, 18)} {native} for gas."
            )

    # ------------------------------------------------------------------
    # Tip
    # ------------------------------------------------------------------

    async def tip(self, sender_id: str, recipient_id: str, ticker: str, amount: Union[str, Decimal]) -> Dict[str, Any]:
        if sender_id == recipient_id:
            return error_result(WalletErrorCode.INVALID_ADDRESS, "You cannot tip yourself.")
        try:
            asset = self.registry.get(ticker)
        except WalletOperationError as e:
            return e.to_result()

        async with self.lock_manager.atomic_lock_context(
            member_funds_lock(sender_id, asset.ticker), LockOperationType.MEMBER_FUNDS, resource_id=sender_id
        ) as lock_token:
            if not lock_token:
                return error_result(WalletErrorCode.OPERATION_IN_PROGRESS, f"A {asset.ticker} operation for this wallet is already in progress")
            try:
                return await self._tip(sender_id, recipient_id, asset, amount)
            except WalletOperationError as e:
                return e.to_result()
            except Exception as e:
                logger.exception(f"❌ TIP_UNEXPECTED_ERROR: {sender_id} → {recipient_id}: {e}")
                return error_result(WalletErrorCode.INTERNAL_ERROR, "Tip failed unexpectedly")

    async def _tip(self, sender_id: str, recipient_id: str, asset: Asset, amount: Union[str, Decimal]) -> Dict[str, Any]:
        sender_wallet = await self.member_wallets.require_wallet(sender_id)
        recipient_wallet = await self.member_wallets.get_wallet(recipient_id)
        if recipient_wallet is None:
            return error_result(WalletErrorCode.NO_WALLET, "Recipient does not have a wallet yet.", recipient_id=recipient_id)

        decimals = await self.chain.get_decimals(asset)
        amount_units = parse_positive_amount(amount, decimals)
        gas_price = await self.chain.get_gas_price()
        gas_limit = await self.chain.estimate_transfer_gas(asset, sender_wallet.address, recipient_wallet.address, amount_units)
        await self._check_funds(sender_wallet, asset, decimals, amount_units, gas_limit * gas_price)

        account = self.member_wallets.signer(sender_wallet)
        tx_hash = await self.chain.send_transfer(account, asset, recipient_wallet.address, amount_units, gas_limit, gas_price)
        display_amount = MonetaryDecimal.format_units(amount_units, decimals)
        await self.transactions.record(sender_id, recipient_id, asset.ticker, display_amount, tx_hash, LedgerKind.TIP)

        logger.info(f"🎁 TIP_SENT: {sender_id} → {recipient_id} {display_amount} {asset.ticker} tx={tx_hash}")
        return {"success": True, "asset": asset.ticker, "amount": display_amount, "tx_hash": tx_hash}

    # ------------------------------------------------------------------
    # Rain
    # ------------------------------------------------------------------

    async def rain(
        self,
        sender_id: str,
        recipient_ids: Sequence[str],
        ticker: str,
        total_amount: Union[str, Decimal],
    ) -> Dict[str, Any]:
        """
        Split total_amount equally across recipients that have wallets.

        All nonces are drawn up front and transactions are submitted without
        waiting; receipts are awaited afterwards. Each recipient succeeds or
        fails independently.

        Returns:
            Dict with success, per_user, recipients (successes), failures,
            skipped (no wallet) and total_distributed
        """
        try:
            asset = self.registry.get(ticker)
        except WalletOperationError as e:
            return e.to_result()

        async with self.lock_manager.atomic_lock_context(
            member_funds_lock(sender_id, asset.ticker), LockOperationType.MEMBER_FUNDS, resource_id=sender_id
        ) as lock_token:
            if not lock_token:
                return error_result(WalletErrorCode.OPERATION_IN_PROGRESS, f"A {asset.ticker} operation for this wallet is already in progress")
            try:
                return await self._rain(sender_id, recipient_ids, asset, total_amount)
            except WalletOperationError as e:
                return e.to_result()
            except Exception as e:
                logger.exception(f"❌ RAIN_UNEXPECTED_ERROR: sender={sender_id}: {e}")
                return error_result(WalletErrorCode.INTERNAL_ERROR, "Rain failed unexpectedly")

    async def _eligible(self, sender_id: str, recipient_ids: Sequence[str]) -> Tuple[List[Tuple[str, MemberWallet]], List[str]]:
        eligible, skipped, seen = [], [], set()
        for recipient_id in recipient_ids:
            if recipient_id == sender_id or recipient_id in seen:
                continue
            seen.add(recipient_id)
            wallet = await self.member_wallets.get_wallet(recipient_id)
            if wallet is None:
                skipped.append(recipient_id)
            else:
                eligible.append((recipient_id, wallet))
        return eligible, skipped

    async def _rain(
        self,
        sender_id: str,
        recipient_ids: Sequence[str],
        asset: Asset,
        total_amount: Union[str, Decimal],
    ) -> Dict[str, Any]:
        sender_wallet = await self.member_wallets.require_wallet(sender_id)
        decimals = await self.chain.get_decimals(asset)
        total_units = parse_positive_amount(total_amount, decimals)

        eligible, skipped = await self._eligible(sender_id, recipient_ids)
        if not eligible:
            return error_result(WalletErrorCode.NO_WALLET, "No eligible members with wallets found to rain on.", skipped=skipped)
        if len(eligible) > self.max_recipients:
            raise InvalidAmount(f"Rain is limited to {self.max_recipients} recipients, got {len(eligible)}")

        per_user = total_units // len(eligible)
        if per_user <= 0:
            raise InvalidAmount(f"{MonetaryDecimal.format_units(total_units, decimals)} {asset.ticker} is too small to split {len(eligible)} ways")

        gas_price = await self.chain.get_gas_price()
        gas_limit = await self.chain.estimate_transfer_gas(asset, sender_wallet.address, eligible[0][1].address, per_user)
        await self._check_funds(sender_wallet, asset, decimals, per_user * len(eligible), gas_limit * gas_price * len(eligible))

        account = self.member_wallets.signer(sender_wallet)
        allocator = await self.chain.allocate_nonces(sender_wallet.address)
        per_user_display = MonetaryDecimal.format_units(per_user, decimals)
        logger.info(f"🌧️ RAIN_STARTED: sender={sender_id} {per_user_display} {asset.ticker} x {len(eligible)}")

        submitted: List[Tuple[str, str]] = []
        failures: List[Dict[str, Any]] = []
        for index, (recipient_id, wallet) in enumerate(eligible):
            nonce = allocator.next()
            try:
                tx_hash = await self.chain.send_transfer(
                    account, asset, wallet.address, per_user, gas_limit, gas_price, nonce=nonce, wait=False,
                )
                submitted.append((recipient_id, tx_hash))
            except TransferFailed as e:
                if not e.broadcast:
                    allocator.release(nonce)
                logger.error(f"❌ RAIN_SEND_FAILED: {sender_id} → {recipient_id}: {e.message}")
                failures.append({"recipient_id": recipient_id, "error": e.message})
            if self.send_delay_seconds > 0 and index < len(eligible) - 1:
                await asyncio.sleep(self.send_delay_seconds)

        recipients: List[Dict[str, Any]] = []
        for recipient_id, tx_hash in submitted:
            try:
                await self.chain.wait_for_receipt(tx_hash)
            except TransferFailed as e:
                failures.append({"recipient_id": recipient_id, "error": e.message, "tx_hash": tx_hash})
                continue
            await self.transactions.record(sender_id, recipient_id, asset.ticker, per_user_display, tx_hash, LedgerKind.RAIN)
            recipients.append({"recipient_id": recipient_id, "amount": per_user_display, "tx_hash": tx_hash})

        total_distributed = MonetaryDecimal.format_units(per_user * len(recipients), decimals)
        logger.info(
            f"🏁 RAIN_COMPLETE: sender={sender_id} successful={len(recipients)}/{len(eligible)} "
            f"distributed={total_distributed} {asset.ticker}"
        )
        result = {
            "success": not failures,
            "asset": asset.ticker,
            "per_user": per_user_display,
            "recipients": recipients,
            "failures": failures,
            "skipped": skipped,
            "total_distributed": total_distributed,
        }
        if failures:
            result["error"] = WalletErrorCode.PARTIAL_FAILURE.value
        return result
