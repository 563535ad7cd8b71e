"""
Pool Wallet Service - one signing wallet per (community, tenant) prize pool
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import PoolWallet
from services.wallet_errors import NoWallet, WalletErrorCode, error_result
from utils.key_vault import KeyVault

logger = logging.getLogger(__name__)


class PoolWalletService:
    """Lazily created, administratively replaceable pool wallets"""

    def __init__(self, key_vault: KeyVault, session_factory: Optional[async_sessionmaker] = None):
        self.key_vault = key_vault
        self.session_factory = session_factory

    @staticmethod
    def _scope(community_id: str, tenant_id: Optional[str]):
        if tenant_id is None:
            return (PoolWallet.community_id == community_id, PoolWallet.tenant_id.is_(None))
        return (PoolWallet.community_id == community_id, PoolWallet.tenant_id == tenant_id)

    async def _find(self, community_id: str, tenant_id: Optional[str]) -> Optional[PoolWallet]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(PoolWallet).where(*self._scope(community_id, tenant_id)))
            return result.scalar_one_or_none()

    async def get_wallet(self, community_id: str, tenant_id: Optional[str] = None) -> Optional[PoolWallet]:
        """Tenant wallet first, then the community's legacy wallet created without a tenant"""
        wallet = await self._find(community_id, tenant_id)
        if wallet is None and tenant_id is not None:
            wallet = await self._find(community_id, None)
            if wallet is not None:
                logger.info(f"🔄 POOL_WALLET_LEGACY_FALLBACK: community={community_id} tenant={tenant_id}")
        return wallet

    async def require_wallet(self, community_id: str, tenant_id: Optional[str] = None) -> PoolWallet:
        wallet = await self.get_wallet(community_id, tenant_id)
        if wallet is None:
            raise NoWallet(f"No prize pool wallet for community {community_id}", community_id=community_id)
        return wallet

    async def resolve_scope(self, community_id: str, tenant_id: Optional[str] = None) -> Optional[str]:
        """
        Tenant of the wallet a request actually spends from.

        Reservations and the pool lock key on this, so a tenant served by the
        legacy wallet shares the legacy wallet's reservations and lock.
        Without any wallet the requested tenant is kept.
        """
        wallet = await self.get_wallet(community_id, tenant_id)
        return wallet.tenant_id if wallet is not None else tenant_id

    async def get_or_create_wallet(self, community_id: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        existing = await self._find(community_id, tenant_id)
        if existing is not None:
            return error_result(
                WalletErrorCode.WALLET_ALREADY_EXISTS,
                "Prize pool wallet already exists",
                address=existing.address,
            )

        account = Account.create()
        try:
            async with async_managed_session(self.session_factory) as session:
                session.add(PoolWallet(
                    community_id=community_id,
                    tenant_id=tenant_id,
                    address=account.address,
                    encrypted_private_key=self.key_vault.encrypt(account.key.hex()),
                ))
        except IntegrityError:
            existing = await self._find(community_id, tenant_id)
            return error_result(
                WalletErrorCode.WALLET_ALREADY_EXISTS,
                "Prize pool wallet already exists",
                address=existing.address if existing else None,
            )

        logger.info(f"🏦 POOL_WALLET_CREATED: community={community_id} tenant={tenant_id} address={account.address}")
        return {"success": True, "address": account.address, "created": True}

    async def replace_wallet(self, community_id: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        """Administrative key replacement; funds on the old address are NOT moved"""
        account = Account.create()
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(PoolWallet).where(*self._scope(community_id, tenant_id)).with_for_update()
            )
            wallet = result.scalar_one_or_none()
            previous_address = wallet.address if wallet else None
            if wallet is None:
                session.add(PoolWallet(
                    community_id=community_id,
                    tenant_id=tenant_id,
                    address=account.address,
                    encrypted_private_key=self.key_vault.encrypt(account.key.hex()),
                ))
            else:
                wallet.address = account.address
                wallet.encrypted_private_key = self.key_vault.encrypt(account.key.hex())
                wallet.replaced_at = datetime.now(timezone.utc)

        logger.warning(
            f"🔁 POOL_WALLET_REPLACED: community={community_id} tenant={tenant_id} "
            f"old={previous_address} new={account.address}"
        )
        return {"success": True, "address": account.address, "previous_address": previous_address}

    async def list_wallets(self) -> List[PoolWallet]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(PoolWallet).order_by(PoolWallet.id))
            return list(result.scalars().all())

    def signer(self, wallet: PoolWallet) -> LocalAccount:
        return Account.from_key(self.key_vault.decrypt(wallet.encrypted_private_key))
