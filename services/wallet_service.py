"""
Member Wallet Service - custodial wallets owned by individual community members

Keys are generated with eth_account, stored AES-GCM encrypted and decrypted
only for the duration of a signing operation.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import async_managed_session
from models import MemberWallet
from services.chain_client import ChainClient
from services.wallet_errors import NoWallet, WalletErrorCode, WalletOperationError, error_result
from utils.asset_registry import AssetRegistry
from utils.decimal_precision import MonetaryDecimal
from utils.key_vault import KeyVault

logger = logging.getLogger(__name__)


class MemberWalletService:
    """Create, look up and sign for member wallets"""

    def __init__(
        self,
        chain: ChainClient,
        key_vault: KeyVault,
        registry: Optional[AssetRegistry] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.chain = chain
        self.key_vault = key_vault
        self.registry = registry or Config.get_asset_registry()
        self.session_factory = session_factory

    async def create_wallet(self, member_id: str) -> Dict[str, Any]:
        existing = await self.get_wallet(member_id)
        if existing:
            return error_result(WalletErrorCode.WALLET_ALREADY_EXISTS, "You already have a wallet", address=existing.address)

        account = Account.create()
        try:
            async with async_managed_session(self.session_factory) as session:
                session.add(MemberWallet(
                    member_id=member_id,
                    address=account.address,
                    encrypted_private_key=self.key_vault.encrypt(account.key.hex()),
                ))
        except IntegrityError:
            # Another request created it between the lookup and the insert
            existing = await self.get_wallet(member_id)
            return error_result(WalletErrorCode.WALLET_ALREADY_EXISTS, "You already have a wallet", address=existing.address)

        logger.info(f"🆕 MEMBER_WALLET_CREATED: member={member_id} address={account.address}")
        return {"success": True, "address": account.address}

    async def get_wallet(self, member_id: str) -> Optional[MemberWallet]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(MemberWallet).where(MemberWallet.member_id == member_id))
            return result.scalar_one_or_none()

    async def require_wallet(self, member_id: str) -> MemberWallet:
        wallet = await self.get_wallet(member_id)
        if wallet is None:
            raise NoWallet(f"Member {member_id} has no wallet", member_id=member_id)
        return wallet

    async def remove_wallet(self, member_id: str) -> Dict[str, Any]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(delete(MemberWallet).where(MemberWallet.member_id == member_id))
            removed = result.rowcount

        if not removed:
            return error_result(WalletErrorCode.NO_WALLET, "No wallet to remove")
        logger.warning(f"🗑️ MEMBER_WALLET_REMOVED: member={member_id}")
        return {"success": True}

    def signer(self, wallet: MemberWallet) -> LocalAccount:
        return Account.from_key(self.key_vault.decrypt(wallet.encrypted_private_key))

    async def get_balances(self, member_id: str) -> Dict[str, Any]:
        """Human-unit balance of every registered asset"""
        try:
            wallet = await self.require_wallet(member_id)
            balances: Dict[str, str] = {}
            for asset in self.registry.all_assets():
                raw = await self.chain.get_balance(asset, wallet.address)
                decimals = await self.chain.get_decimals(asset)
                balances[asset.ticker] = MonetaryDecimal.format_units(raw, decimals)
        except WalletOperationError as e:
            return e.to_result()
        return {"success": True, "address": wallet.address, "balances": balances}

    async def get_asset_balance(self, wallet: MemberWallet, ticker: str) -> Decimal:
        asset = self.registry.get(ticker)
        raw = await self.chain.get_balance(asset, wallet.address)
        return MonetaryDecimal.from_base_units(raw, await self.chain.get_decimals(asset))
