"""
Withdrawal Service - two-phase member withdrawals to external addresses

Phase one moves a percentage fee (flat for NFTs) from the member's wallet to
the fee collector; phase two moves the principal. The WithdrawalAttempt row
survives between the two so a failed principal transfer can be retried
without charging the fee again. Changing the amount on a retry is handled
on the same row: a smaller amount needs explicit no-refund confirmation, a
larger amount is charged a fee on the difference only.

Every transaction hash is stored on the attempt before its receipt is awaited.
A receipt that never arrives leaves the attempt resumable: the next request
for the same asset checks the stored hash instead of sending again.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session
from models import (
    IN_FLIGHT_WITHDRAWAL_STATUSES, LedgerKind, MemberWallet, WithdrawalAttempt, WithdrawalStatus,
)
from services.atomic_lock_manager import AtomicLockManager, LockOperationType, member_funds_lock
from services.chain_client import ChainClient
from services.price_resolver import PriceResolver
from services.transaction_ledger import TransactionLedger
from services.wallet_errors import (
    InsufficientBalance, InsufficientGas, InvalidAddress, InvalidAmount, NotOwner, TransferFailed,
    TransferPending, WalletErrorCode, WalletOperationError, error_result,
)
from services.wallet_service import MemberWalletService
from utils.asset_registry import Asset, AssetRegistry, NFTCollection
from utils.decimal_precision import MonetaryDecimal, parse_positive_amount
from utils.withdrawal_state_validator import WithdrawalStateValidator

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18


def _in_flight():
    """Fee paid, or fee broadcast and not yet confirmed"""
    return or_(
        WithdrawalAttempt.status.in_(IN_FLIGHT_WITHDRAWAL_STATUSES),
        and_(
            WithdrawalAttempt.status == WithdrawalStatus.PENDING.value,
            WithdrawalAttempt.fee_tx_hash.isnot(None),
        ),
    )


class WithdrawalService:
    """Fee-then-transfer withdrawals with a resumable attempt record"""

    def __init__(
        self,
        chain: ChainClient,
        prices: PriceResolver,
        member_wallets: MemberWalletService,
        transactions: TransactionLedger,
        lock_manager: AtomicLockManager,
        registry: Optional[AssetRegistry] = None,
        session_factory: Optional[async_sessionmaker] = None,
        fee_collector: Optional[str] = None,
        fee_percentage: Optional[Decimal] = None,
        nft_fee: Optional[Decimal] = None,
    ):
        self.chain = chain
        self.prices = prices
        self.member_wallets = member_wallets
        self.transactions = transactions
        self.lock_manager = lock_manager
        self.registry = registry or Config.get_asset_registry()
        self.session_factory = session_factory
        self.fee_collector = fee_collector or Config.FEE_COLLECTOR_ADDRESS
        self.fee_percentage = fee_percentage if fee_percentage is not None else Config.WITHDRAWAL_FEE_PERCENTAGE
        self.nft_fee = nft_fee if nft_fee is not None else Config.NFT_WITHDRAWAL_FEE

    # ------------------------------------------------------------------
    # Fee math
    # ------------------------------------------------------------------

    def compute_fee(self, amount: Decimal, asset_price_usd: Decimal, native_price_usd: Decimal) -> Decimal:
        """Fee in native units: amount x asset price x fee percentage / native price"""
        return amount * asset_price_usd * self.fee_percentage / native_price_usd

    async def _prices_for(self, asset: Asset):
        native_price = await self.prices.resolve_asset_price(self.registry.native.ticker)
        if asset.is_native:
            return native_price, native_price
        return await self.prices.resolve_asset_price(asset.ticker), native_price

    async def quote_fee(self, ticker: str, amount: Union[str, Decimal]) -> Dict[str, Any]:
        """Fee preview for a fresh withdrawal; touches no state"""
        try:
            asset = self.registry.get(ticker)
            decimals = await self.chain.get_decimals(asset)
            amount_units = parse_positive_amount(amount, decimals)
            human_amount = MonetaryDecimal.from_base_units(amount_units, decimals)
            asset_price, native_price = await self._prices_for(asset)
        except WalletOperationError as e:
            return e.to_result()

        fee_wei = MonetaryDecimal.to_base_units(self.compute_fee(human_amount, asset_price, native_price), NATIVE_DECIMALS)
        return {
            "success": True,
            "asset": asset.ticker,
            "amount": MonetaryDecimal.format_units(amount_units, decimals),
            "fee_native": MonetaryDecimal.format_units(fee_wei, NATIVE_DECIMALS),
            "fee_usd": str(MonetaryDecimal.quantize_usd(human_amount * asset_price * self.fee_percentage)),
            "fee_percentage": str(self.fee_percentage),
            "asset_price_usd": str(asset_price),
            "native_price_usd": str(native_price),
        }

    # ------------------------------------------------------------------
    # Attempt persistence
    # ------------------------------------------------------------------

    async def _find_in_flight(self, requester_id: str, ticker: str) -> Optional[WithdrawalAttempt]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(WithdrawalAttempt)
                .where(
                    WithdrawalAttempt.requester_id == requester_id,
                    WithdrawalAttempt.asset == ticker,
                    WithdrawalAttempt.is_nft.is_(False),
                    _in_flight(),
                )
                .order_by(WithdrawalAttempt.created_at.desc(), WithdrawalAttempt.id.desc())
            )
            return result.scalars().first()

    async def _find_nft_in_flight(self, requester_id: str, collection_address: str, token_id: int) -> Optional[WithdrawalAttempt]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(WithdrawalAttempt)
                .where(
                    WithdrawalAttempt.requester_id == requester_id,
                    WithdrawalAttempt.is_nft.is_(True),
                    WithdrawalAttempt.nft_collection == collection_address,
                    WithdrawalAttempt.nft_token_id == str(token_id),
                    _in_flight(),
                )
                .order_by(WithdrawalAttempt.id.desc())
            )
            return result.scalars().first()

    async def _create_attempt(self, **fields: Any) -> int:
        async with async_managed_session(self.session_factory) as session:
            attempt = WithdrawalAttempt(status=WithdrawalStatus.PENDING.value, **fields)
            session.add(attempt)
            await session.flush()
            attempt_id = attempt.id
        logger.info(f"📝 WITHDRAWAL_ATTEMPT_CREATED: #{attempt_id} requester={fields.get('requester_id')}")
        return attempt_id

    async def _update_attempt(
        self,
        attempt_id: int,
        status: Optional[WithdrawalStatus] = None,
        **fields: Any,
    ) -> WithdrawalAttempt:
        """Apply field changes, validating any status change against the state machine"""
        async with async_managed_session(self.session_factory) as session:
            attempt = await session.get(WithdrawalAttempt, attempt_id)
            if status is not None:
                target = WithdrawalStateValidator.ensure_transition(attempt.status, status, attempt_id)
                attempt.status = target.value
            for name, value in fields.items():
                setattr(attempt, name, value)
        return attempt

    async def get_attempt(self, attempt_id: int) -> Optional[WithdrawalAttempt]:
        async with async_managed_session(self.session_factory) as session:
            return await session.get(WithdrawalAttempt, attempt_id)

    async def pending_withdrawals(self, requester_id: str) -> List[Dict[str, Any]]:
        """Withdrawals whose fee was sent but whose principal has not completed"""
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(WithdrawalAttempt)
                .where(
                    WithdrawalAttempt.requester_id == requester_id,
                    _in_flight(),
                )
                .order_by(WithdrawalAttempt.id)
            )
            attempts = result.scalars().all()
        return [
            {
                "withdrawal_id": attempt.id,
                "asset": attempt.asset,
                "amount": attempt.requested_amount,
                "is_nft": attempt.is_nft,
                "token_id": attempt.nft_token_id,
                "destination": attempt.destination_address,
                "status": attempt.status,
                "fee_paid": attempt.fee_native,
                "last_error": attempt.last_error,
                "transfer_tx_hash": attempt.transfer_tx_hash,
            }
            for attempt in attempts
        ]

    @staticmethod
    def _history_entry(amount: str, fee_native: str, fee_wei: int, tx_hash: Optional[str]) -> Dict[str, Any]:
        return {
            "amount": amount,
            "fee_native": fee_native,
            "fee_base_units": str(fee_wei),
            "tx_hash": tx_hash,
            "charged_at": datetime.now(timezone.utc).isoformat(),
        }

    # ------------------------------------------------------------------
    # Chain helpers
    # ------------------------------------------------------------------

    def _validated_destination(self, destination: str) -> str:
        if not self.chain.is_address(destination):
            raise InvalidAddress(f"Invalid destination address: {destination}")
        return self.chain.checksum(destination)

    async def _fee_gas(self, wallet: MemberWallet, fee_wei: int) -> int:
        return await self.chain.estimate_transfer_gas(self.registry.native, wallet.address, self.fee_collector, fee_wei)

    async def _require_native(self, wallet: MemberWallet, required_wei: int, native_balance: Optional[int] = None) -> None:
        if native_balance is None:
            native_balance = await self.chain.get_native_balance(wallet.address)
        if native_balance < required_wei:
            native = self.registry.native.ticker
            raise InsufficientGas(
                f"Insufficient {native} for the withdrawal fee and gas. "
                f"Need {MonetaryDecimal.format_units(required_wei, NATIVE_DECIMALS)} {native}, "
                f"have {MonetaryDecimal.format_units(native_balance, NATIVE_DECIMALS)} {native}",
                required=MonetaryDecimal.format_units(required_wei, NATIVE_DECIMALS),
                available=MonetaryDecimal.format_units(native_balance, NATIVE_DECIMALS),
            )

    async def _send_fee(self, wallet: MemberWallet, fee_wei: int, gas_limit: int, gas_price: int) -> str:
        """Broadcast the fee without waiting; the caller stores the hash first"""
        account = self.member_wallets.signer(wallet)
        return await self.chain.send_transfer(
            account, self.registry.native, self.fee_collector, fee_wei, gas_limit, gas_price, wait=False,
        )

    async def _record_ledger(self, attempt_id: int, requester_id: str, to: str, asset_label: str,
                             amount: str, tx_hash: str, kind: LedgerKind) -> None:
        try:
            await self.transactions.record(requester_id, to, asset_label, amount, tx_hash, kind)
        except Exception:
            # The attempt row already holds the hash; the audit job reconciles a missing ledger row
            logger.exception(f"🚨 WITHDRAWAL_LEDGER_WRITE_FAILED: #{attempt_id} kind={kind.value} tx={tx_hash}")

    @staticmethod
    def _fee_failed_result(attempt_id: int, message: str) -> Dict[str, Any]:
        return error_result(
            WalletErrorCode.FEE_COLLECTION_FAILED,
            "Failed to collect the withdrawal fee. No fee was taken, please try again.",
            withdrawal_id=attempt_id,
            fee_collected=False,
            funds_safe=True,
            details=message,
        )

    @staticmethod
    def _fee_pending_result(attempt_id: int, fee_tx: str) -> Dict[str, Any]:
        return error_result(
            WalletErrorCode.TX_PENDING,
            f"Your withdrawal fee was sent and is awaiting confirmation (TX: {fee_tx}). "
            f"Run the same withdrawal again shortly to continue; you will not be charged twice.",
            withdrawal_id=attempt_id,
            fee_tx_hash=fee_tx,
            fee_collected=None,
            funds_safe=True,
        )

    async def _fee_confirmed(self, requester_id: str, attempt_id: int, fee_tx: str) -> None:
        """pending → fee_collected_pending_transfer once the fee receipt succeeded"""
        attempt = await self.get_attempt(attempt_id)
        fee_wei = int(attempt.fee_base_units)
        await self._update_attempt(
            attempt_id,
            WithdrawalStatus.FEE_COLLECTED_PENDING_TRANSFER,
            fee_history=[self._history_entry(attempt.requested_amount, attempt.fee_native, fee_wei, fee_tx)],
        )
        logger.info(f"💰 WITHDRAWAL_FEE_COLLECTED: #{attempt_id} requester={requester_id} fee_wei={fee_wei} tx={fee_tx}")
        await self._record_ledger(
            attempt_id, requester_id, self.fee_collector, self.registry.native.ticker,
            attempt.fee_native, fee_tx, LedgerKind.WITHDRAWAL_FEE,
        )

    async def _fee_reverted(self, requester_id: str, attempt_id: int, message: str) -> None:
        await self._update_attempt(attempt_id, WithdrawalStatus.FEE_COLLECTION_FAILED, last_error=message)
        logger.error(f"❌ WITHDRAWAL_FEE_FAILED: #{attempt_id} requester={requester_id}: {message}")

    async def _collect_initial_fee(
        self,
        requester_id: str,
        wallet: MemberWallet,
        attempt_id: int,
        fee_wei: int,
        gas_limit: int,
        gas_price: int,
    ) -> Optional[Dict[str, Any]]:
        """pending → fee_collected_pending_transfer, or fee_collection_failed; returns a failure result or None"""
        try:
            fee_tx = await self._send_fee(wallet, fee_wei, gas_limit, gas_price)
        except TransferFailed as e:
            await self._fee_reverted(requester_id, attempt_id, e.message)
            return self._fee_failed_result(attempt_id, e.message)

        # Stored before anything else can fail, so a retry resumes instead of charging again
        await self._update_attempt(attempt_id, fee_tx_hash=fee_tx)
        try:
            await self.chain.wait_for_receipt(fee_tx)
        except TransferPending:
            logger.warning(f"⏳ WITHDRAWAL_FEE_UNCONFIRMED: #{attempt_id} tx={fee_tx}")
            return self._fee_pending_result(attempt_id, fee_tx)
        except TransferFailed as e:
            await self._fee_reverted(requester_id, attempt_id, e.message)
            return self._fee_failed_result(attempt_id, e.message)

        await self._fee_confirmed(requester_id, attempt_id, fee_tx)
        return None

    async def _resume_unconfirmed_fee(self, requester_id: str, attempt: WithdrawalAttempt) -> Optional[Dict[str, Any]]:
        """
        Settle a pending attempt whose fee was broadcast earlier.

        Returns the still-pending result, or None once the attempt was
        promoted (fee mined) or failed (fee reverted).
        """
        mined = await self.chain.get_receipt_status(attempt.fee_tx_hash)
        if mined is None:
            return self._fee_pending_result(attempt.id, attempt.fee_tx_hash)
        if mined:
            await self._fee_confirmed(requester_id, attempt.id, attempt.fee_tx_hash)
        else:
            await self._fee_reverted(requester_id, attempt.id, f"Fee transaction {attempt.fee_tx_hash} reverted")
        return None

    # ------------------------------------------------------------------
    # Fungible withdrawals
    # ------------------------------------------------------------------

    async def request_withdrawal(
        self,
        requester_id: str,
        ticker: str,
        amount: Union[str, Decimal],
        destination: str,
        confirm_no_refund: bool = False,
    ) -> Dict[str, Any]:
        """
        Withdraw a fungible asset from a member wallet to an external address.

        A fee-paid attempt for the same asset is resumed instead of charging
        again. Results carry fee_collected and funds_safe so callers can tell
        the requester exactly where their money is.
        """
        if not self.fee_collector:
            return error_result(WalletErrorCode.FEE_COLLECTION_FAILED, "Fee collector address is not configured", fee_collected=False)
        try:
            asset = self.registry.get(ticker)
        except WalletOperationError as e:
            return e.to_result(fee_collected=False)

        async with self.lock_manager.atomic_lock_context(
            member_funds_lock(requester_id, asset.ticker), LockOperationType.MEMBER_FUNDS, resource_id=requester_id
        ) as lock_token:
            if not lock_token:
                return error_result(
                    WalletErrorCode.OPERATION_IN_PROGRESS,
                    f"A {asset.ticker} operation for this wallet is already in progress",
                    fee_collected=False,
                )
            try:
                return await self._withdraw(requester_id, asset, amount, destination, confirm_no_refund)
            except WalletOperationError as e:
                return e.to_result(fee_collected=False, funds_safe=True)
            except Exception as e:
                logger.exception(f"❌ WITHDRAWAL_UNEXPECTED_ERROR: requester={requester_id} asset={asset.ticker}: {e}")
                return error_result(WalletErrorCode.INTERNAL_ERROR, "Withdrawal failed unexpectedly")

    async def _withdraw(
        self,
        requester_id: str,
        asset: Asset,
        amount: Union[str, Decimal],
        destination: str,
        confirm_no_refund: bool,
    ) -> Dict[str, Any]:
        wallet = await self.member_wallets.require_wallet(requester_id)
        destination = self._validated_destination(destination)
        decimals = await self.chain.get_decimals(asset)
        amount_units = parse_positive_amount(amount, decimals)

        attempt = await self._find_in_flight(requester_id, asset.ticker)
        if attempt is not None and attempt.status == WithdrawalStatus.PENDING.value:
            pending = await self._resume_unconfirmed_fee(requester_id, attempt)
            if pending is not None:
                return pending
            attempt = await self._find_in_flight(requester_id, asset.ticker)
        if attempt is None:
            return await self._start_withdrawal(requester_id, wallet, asset, decimals, amount_units, destination)
        if attempt.transfer_tx_hash:
            # The stored transfer settles first; its amount and destination are already on chain
            return await self._transfer_principal(
                requester_id, wallet, attempt.id, asset.ticker,
                lambda attempt: self._send_fungible(wallet, asset, decimals, attempt),
            )

        try:
            paid_units = MonetaryDecimal.parse_stored_amount(attempt.requested_amount, decimals)
            if paid_units is None:
                logger.critical(f"🚨 WITHDRAWAL_CORRUPT_AMOUNT: #{attempt.id} amount={attempt.requested_amount!r}")
                return error_result(
                    WalletErrorCode.INTERNAL_ERROR,
                    "Stored withdrawal is unreadable; contact support. Your fee is already paid.",
                    withdrawal_id=attempt.id, fee_collected=True, funds_safe=True,
                )

            if amount_units == paid_units:
                logger.info(f"🔁 WITHDRAWAL_RETRY: #{attempt.id} same amount, fee already paid")
                await self._update_attempt(attempt.id, destination_address=destination)
            elif amount_units < paid_units:
                if not confirm_no_refund:
                    return error_result(
                        WalletErrorCode.CONFIRMATION_REQUIRED,
                        f"You already paid the fee for {attempt.requested_amount} {asset.ticker}. "
                        f"Withdrawing {MonetaryDecimal.format_units(amount_units, decimals)} {asset.ticker} "
                        f"will not refund the difference. Confirm to continue.",
                        withdrawal_id=attempt.id,
                        paid_for_amount=attempt.requested_amount,
                        requested_amount=MonetaryDecimal.format_units(amount_units, decimals),
                        fee_paid=attempt.fee_native,
                        fee_collected=True,
                        funds_safe=True,
                    )
                logger.info(f"⬇️ WITHDRAWAL_DECREASED: #{attempt.id} {attempt.requested_amount} → {amount_units} units (no refund)")
                await self._update_attempt(
                    attempt.id,
                    requested_amount=MonetaryDecimal.format_units(amount_units, decimals),
                    destination_address=destination,
                )
            else:
                failure = await self._charge_increase(requester_id, wallet, asset, decimals, attempt, amount_units - paid_units, amount_units, destination)
                if failure is not None:
                    return failure
        except WalletOperationError as e:
            return e.to_result(withdrawal_id=attempt.id, fee_collected=True, funds_safe=True)

        return await self._transfer_principal(
            requester_id, wallet, attempt.id, asset.ticker,
            lambda attempt: self._send_fungible(wallet, asset, decimals, attempt),
        )

    async def _start_withdrawal(
        self,
        requester_id: str,
        wallet: MemberWallet,
        asset: Asset,
        decimals: int,
        amount_units: int,
        destination: str,
    ) -> Dict[str, Any]:
        balance = await self.chain.get_balance(asset, wallet.address)
        if balance < amount_units:
            raise InsufficientBalance(
                f"Insufficient {asset.ticker} balance. You have {MonetaryDecimal.format_units(balance, decimals)} {asset.ticker}",
                balance=MonetaryDecimal.format_units(balance, decimals),
            )

        human_amount = MonetaryDecimal.from_base_units(amount_units, decimals)
        asset_price, native_price = await self._prices_for(asset)
        fee_wei = MonetaryDecimal.to_base_units(self.compute_fee(human_amount, asset_price, native_price), NATIVE_DECIMALS)
        if fee_wei <= 0:
            raise InvalidAmount(f"Amount {human_amount} {asset.ticker} is too small to withdraw")

        gas_price = await self.chain.get_gas_price()
        fee_gas = await self._fee_gas(wallet, fee_wei)
        transfer_gas = await self.chain.estimate_transfer_gas(asset, wallet.address, destination, amount_units)
        required = fee_wei + (fee_gas + transfer_gas) * gas_price
        if asset.is_native:
            required += amount_units
        await self._require_native(wallet, required, native_balance=balance if asset.is_native else None)

        fee_native = MonetaryDecimal.format_units(fee_wei, NATIVE_DECIMALS)
        attempt_id = await self._create_attempt(
            requester_id=requester_id,
            source_address=wallet.address,
            destination_address=destination,
            asset=asset.ticker,
            requested_amount=MonetaryDecimal.format_units(amount_units, decimals),
            asset_price_usd=str(asset_price),
            fee_native=fee_native,
            fee_base_units=str(fee_wei),
            native_price_usd=str(native_price),
        )
        logger.info(
            f"💸 WITHDRAWAL_STARTED: #{attempt_id} {human_amount} {asset.ticker} → {destination} "
            f"fee={fee_native} {self.registry.native.ticker}"
        )

        failure = await self._collect_initial_fee(requester_id, wallet, attempt_id, fee_wei, fee_gas, gas_price)
        if failure is not None:
            return failure
        return await self._transfer_principal(
            requester_id, wallet, attempt_id, asset.ticker,
            lambda attempt: self._send_fungible(wallet, asset, decimals, attempt),
        )

    async def _charge_increase(
        self,
        requester_id: str,
        wallet: MemberWallet,
        asset: Asset,
        decimals: int,
        attempt: WithdrawalAttempt,
        delta_units: int,
        amount_units: int,
        destination: str,
    ) -> Optional[Dict[str, Any]]:
        """Collect the fee on the increase only; the attempt is untouched if that fails"""
        human_delta = MonetaryDecimal.from_base_units(delta_units, decimals)
        fee_pending = False
        asset_price, native_price = await self._prices_for(asset)
        delta_fee_wei = MonetaryDecimal.to_base_units(self.compute_fee(human_delta, asset_price, native_price), NATIVE_DECIMALS)

        if delta_fee_wei > 0:
            balance = await self.chain.get_balance(asset, wallet.address)
            if balance < amount_units:
                raise InsufficientBalance(
                    f"Insufficient {asset.ticker} balance. You have {MonetaryDecimal.format_units(balance, decimals)} {asset.ticker}",
                    balance=MonetaryDecimal.format_units(balance, decimals),
                )
            gas_price = await self.chain.get_gas_price()
            fee_gas = await self._fee_gas(wallet, delta_fee_wei)
            required = delta_fee_wei + fee_gas * gas_price
            if asset.is_native:
                required += amount_units
            await self._require_native(wallet, required)

            try:
                fee_tx = await self._send_fee(wallet, delta_fee_wei, fee_gas, gas_price)
                await self.chain.wait_for_receipt(fee_tx)
            except TransferPending as e:
                # Outcome unknown; record the increase so the additional fee is never charged twice
                fee_tx = e.tx_hash
                fee_pending = True
                logger.warning(f"⏳ WITHDRAWAL_DELTA_FEE_UNCONFIRMED: #{attempt.id} tx={fee_tx}")
            except TransferFailed as e:
                logger.error(f"❌ WITHDRAWAL_DELTA_FEE_FAILED: #{attempt.id}: {e.message}")
                return error_result(
                    WalletErrorCode.FEE_COLLECTION_FAILED,
                    f"Failed to collect the additional fee. Your original fee for "
                    f"{attempt.requested_amount} {asset.ticker} is still on record.",
                    withdrawal_id=attempt.id,
                    fee_collected=True,
                    funds_safe=True,
                    details=e.message,
                )
        else:
            fee_tx = None

        total_fee_wei = int(attempt.fee_base_units) + delta_fee_wei
        delta_fee_native = MonetaryDecimal.format_units(delta_fee_wei, NATIVE_DECIMALS)
        await self._update_attempt(
            attempt.id,
            requested_amount=MonetaryDecimal.format_units(amount_units, decimals),
            destination_address=destination,
            fee_base_units=str(total_fee_wei),
            fee_native=MonetaryDecimal.format_units(total_fee_wei, NATIVE_DECIMALS),
            asset_price_usd=str(asset_price),
            native_price_usd=str(native_price),
            fee_history=list(attempt.fee_history or []) + [
                self._history_entry(MonetaryDecimal.format_units(delta_units, decimals), delta_fee_native, delta_fee_wei, fee_tx)
            ],
        )
        logger.info(
            f"⬆️ WITHDRAWAL_INCREASED: #{attempt.id} +{human_delta} {asset.ticker} "
            f"delta_fee={delta_fee_native} total_fee_wei={total_fee_wei}"
        )
        if fee_pending:
            return error_result(
                WalletErrorCode.TX_PENDING,
                f"The additional fee was sent and is awaiting confirmation (TX: {fee_tx}). "
                f"Run the same withdrawal again shortly to send it; no further fee will be charged.",
                withdrawal_id=attempt.id,
                fee_tx_hash=fee_tx,
                fee_collected=True,
                funds_safe=True,
            )
        if fee_tx is not None:
            await self._record_ledger(
                attempt.id, requester_id, self.fee_collector, self.registry.native.ticker,
                delta_fee_native, fee_tx, LedgerKind.WITHDRAWAL_FEE,
            )
        return None

    async def _send_fungible(self, wallet: MemberWallet, asset: Asset, decimals: int, attempt: WithdrawalAttempt) -> str:
        amount_units = MonetaryDecimal.parse_stored_amount(attempt.requested_amount, decimals)
        balance = await self.chain.get_balance(asset, wallet.address)
        if amount_units is None or balance < amount_units:
            raise InsufficientBalance(
                f"Insufficient {asset.ticker} balance. You have {MonetaryDecimal.format_units(balance, decimals)} {asset.ticker}",
                balance=MonetaryDecimal.format_units(balance, decimals),
            )
        gas_price = await self.chain.get_gas_price()
        gas_limit = await self.chain.estimate_transfer_gas(asset, wallet.address, attempt.destination_address, amount_units)
        if asset.is_native:
            await self._require_native(wallet, amount_units + gas_limit * gas_price, native_balance=balance)
        account = self.member_wallets.signer(wallet)
        return await self.chain.send_transfer(account, asset, attempt.destination_address, amount_units, gas_limit, gas_price, wait=False)

    # ------------------------------------------------------------------
    # Principal transfer (shared by fungible and NFT withdrawals)
    # ------------------------------------------------------------------

    async def _transfer_principal(
        self,
        requester_id: str,
        wallet: MemberWallet,
        attempt_id: int,
        asset_label: str,
        send: Callable[[WithdrawalAttempt], Awaitable[str]],
    ) -> Dict[str, Any]:
        """
        fee_collected_pending_transfer → completed, or stay put with last_error.

        A principal sent earlier without a receipt is checked on chain first:
        mined completes the attempt, reverted sends again, unknown stays pending.
        """
        attempt = await self.get_attempt(attempt_id)
        if attempt.transfer_tx_hash:
            mined = await self.chain.get_receipt_status(attempt.transfer_tx_hash)
            if mined is None:
                return self._transfer_pending_result(attempt, attempt.transfer_tx_hash)
            if mined:
                return await self._complete(requester_id, attempt, asset_label, attempt.transfer_tx_hash)
            logger.warning(f"↩️ WITHDRAWAL_TRANSFER_REVERTED: #{attempt_id} tx={attempt.transfer_tx_hash}, sending again")
            attempt = await self._update_attempt(
                attempt_id, transfer_tx_hash=None, last_error=f"Transaction {attempt.transfer_tx_hash} reverted",
            )

        try:
            tx_hash = await send(attempt)
        except WalletOperationError as e:
            return await self._transfer_failed(requester_id, attempt, e)

        await self._update_attempt(attempt_id, transfer_tx_hash=tx_hash)
        try:
            await self.chain.wait_for_receipt(tx_hash)
        except TransferPending:
            logger.warning(f"⏳ WITHDRAWAL_TRANSFER_UNCONFIRMED: #{attempt_id} tx={tx_hash}")
            return self._transfer_pending_result(attempt, tx_hash)
        except TransferFailed as e:
            await self._update_attempt(attempt_id, transfer_tx_hash=None)
            return await self._transfer_failed(requester_id, attempt, e)

        return await self._complete(requester_id, attempt, asset_label, tx_hash)

    async def _transfer_failed(self, requester_id: str, attempt: WithdrawalAttempt, e: WalletOperationError) -> Dict[str, Any]:
        await self._update_attempt(attempt.id, WithdrawalStatus.FEE_COLLECTED_PENDING_TRANSFER, last_error=e.message)
        logger.error(f"❌ WITHDRAWAL_TRANSFER_FAILED: #{attempt.id} requester={requester_id}: {e.message}")
        code = WalletErrorCode.INSUFFICIENT_BALANCE if e.code == WalletErrorCode.INSUFFICIENT_BALANCE else WalletErrorCode.TRANSFER_FAILED
        return error_result(
            code,
            f"Withdrawal transfer failed: {e.message}. Your fee of {attempt.fee_native} "
            f"{self.registry.native.ticker} is already paid and your funds are safe. "
            f"Run the same withdrawal again to retry without another fee.",
            withdrawal_id=attempt.id,
            fee_collected=True,
            funds_safe=True,
            fee_paid=attempt.fee_native,
            details=e.message,
        )

    def _transfer_pending_result(self, attempt: WithdrawalAttempt, tx_hash: str) -> Dict[str, Any]:
        return error_result(
            WalletErrorCode.TX_PENDING,
            f"Your withdrawal was sent and is awaiting confirmation (TX: {tx_hash}). "
            f"Your fee is paid; run the same withdrawal again later to check on it. "
            f"It will not be sent twice.",
            withdrawal_id=attempt.id,
            tx_hash=tx_hash,
            fee_collected=True,
            funds_safe=True,
            fee_paid=attempt.fee_native,
            explorer_url=f"{Config.EXPLORER_TX_URL}{tx_hash}",
        )

    async def _complete(self, requester_id: str, attempt: WithdrawalAttempt, asset_label: str, tx_hash: str) -> Dict[str, Any]:
        await self._update_attempt(attempt.id, WithdrawalStatus.COMPLETED, transfer_tx_hash=tx_hash, last_error=None)
        logger.info(f"✅ WITHDRAWAL_COMPLETED: #{attempt.id} {attempt.requested_amount} {asset_label} tx={tx_hash}")
        await self._record_ledger(
            attempt.id, requester_id, attempt.destination_address, asset_label,
            attempt.requested_amount, tx_hash, LedgerKind.WITHDRAWAL,
        )
        return {
            "success": True,
            "withdrawal_id": attempt.id,
            "asset": asset_label,
            "amount": attempt.requested_amount,
            "destination": attempt.destination_address,
            "tx_hash": tx_hash,
            "fee_tx_hash": attempt.fee_tx_hash,
            "fee_paid": attempt.fee_native,
            "fee_collected": True,
            "explorer_url": f"{Config.EXPLORER_TX_URL}{tx_hash}",
        }

    # ------------------------------------------------------------------
    # NFT withdrawals
    # ------------------------------------------------------------------

    async def request_nft_withdrawal(
        self,
        requester_id: str,
        collection: str,
        token_id: Union[int, str],
        destination: str,
    ) -> Dict[str, Any]:
        """Flat-fee withdrawal of one NFT; a fee-paid attempt for the same unit is resumed"""
        if not self.fee_collector:
            return error_result(WalletErrorCode.FEE_COLLECTION_FAILED, "Fee collector address is not configured", fee_collected=False)
        try:
            nft = self.registry.nft_collection(collection)
            token_id = int(token_id)
        except WalletOperationError as e:
            return e.to_result(fee_collected=False)
        except (TypeError, ValueError):
            return error_result(WalletErrorCode.INVALID_AMOUNT, f"Invalid token id: {token_id}", fee_collected=False)

        async with self.lock_manager.atomic_lock_context(
            member_funds_lock(requester_id, f"{nft.ticker}#{token_id}"), LockOperationType.MEMBER_FUNDS, resource_id=requester_id
        ) as lock_token:
            if not lock_token:
                return error_result(
                    WalletErrorCode.OPERATION_IN_PROGRESS,
                    f"A withdrawal of {nft.name} #{token_id} is already in progress",
                    fee_collected=False,
                )
            try:
                return await self._withdraw_nft(requester_id, nft, token_id, destination)
            except WalletOperationError as e:
                return e.to_result(fee_collected=False, funds_safe=True)
            except Exception as e:
                logger.exception(f"❌ NFT_WITHDRAWAL_UNEXPECTED_ERROR: requester={requester_id} {nft.ticker}#{token_id}: {e}")
                return error_result(WalletErrorCode.INTERNAL_ERROR, "NFT withdrawal failed unexpectedly")

    async def _withdraw_nft(self, requester_id: str, nft: NFTCollection, token_id: int, destination: str) -> Dict[str, Any]:
        wallet = await self.member_wallets.require_wallet(requester_id)
        destination = self._validated_destination(destination)
        label = f"{nft.ticker}#{token_id}"

        attempt = await self._find_nft_in_flight(requester_id, nft.address, token_id)
        if attempt is not None and attempt.status == WithdrawalStatus.PENDING.value:
            pending = await self._resume_unconfirmed_fee(requester_id, attempt)
            if pending is not None:
                return pending
            attempt = await self._find_nft_in_flight(requester_id, nft.address, token_id)
        if attempt is not None:
            # Ownership is checked at send time; an unconfirmed transfer may already have moved the NFT
            logger.info(f"🔁 NFT_WITHDRAWAL_RETRY: #{attempt.id} {label} fee already paid")
            if not attempt.transfer_tx_hash:
                await self._update_attempt(attempt.id, destination_address=destination)
            attempt_id = attempt.id
        else:
            await self._require_nft_owner(wallet, nft, token_id)
            fee_wei = MonetaryDecimal.to_base_units(self.nft_fee, NATIVE_DECIMALS)
            gas_price = await self.chain.get_gas_price()
            fee_gas = await self._fee_gas(wallet, fee_wei)
            transfer_gas = await self.chain.estimate_nft_transfer_gas(nft.address, wallet.address, destination, token_id)
            await self._require_native(wallet, fee_wei + (fee_gas + transfer_gas) * gas_price)

            attempt_id = await self._create_attempt(
                requester_id=requester_id,
                source_address=wallet.address,
                destination_address=destination,
                asset=nft.ticker,
                requested_amount="1",
                is_nft=True,
                nft_collection=nft.address,
                nft_token_id=str(token_id),
                fee_native=MonetaryDecimal.format_units(fee_wei, NATIVE_DECIMALS),
                fee_base_units=str(fee_wei),
                # Flat fee, not priced
                native_price_usd="0",
            )
            failure = await self._collect_initial_fee(requester_id, wallet, attempt_id, fee_wei, fee_gas, gas_price)
            if failure is not None:
                return failure

        return await self._transfer_principal(
            requester_id, wallet, attempt_id, label,
            lambda attempt: self._send_nft(wallet, nft, token_id, attempt),
        )

    async def _require_nft_owner(self, wallet: MemberWallet, nft: NFTCollection, token_id: int) -> None:
        owner = await self.chain.owner_of(nft.address, token_id)
        if owner.lower() != wallet.address.lower():
            raise NotOwner(f"You do not own {nft.name} #{token_id}", token_id=str(token_id))

    async def _send_nft(self, wallet: MemberWallet, nft: NFTCollection, token_id: int, attempt: WithdrawalAttempt) -> str:
        await self._require_nft_owner(wallet, nft, token_id)
        gas_price = await self.chain.get_gas_price()
        gas_limit = await self.chain.estimate_nft_transfer_gas(nft.address, wallet.address, attempt.destination_address, token_id)
        await self._require_native(wallet, gas_limit * gas_price)
        account = self.member_wallets.signer(wallet)
        return await self.chain.send_nft(account, nft.address, attempt.destination_address, token_id, gas_limit, gas_price, wait=False)
