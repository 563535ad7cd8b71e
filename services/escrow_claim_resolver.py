"""
Escrow Claim Resolver - pays a claimant's outstanding reservations.

Each reservation is replayed through the payout engine with
is_escrow_claim=True, so the pool's full on-chain balance is usable and a
failed leg is never escrowed a second time. Successful records are flipped
to claimed; failed ones stay open for the next claim. A record whose payout
is broadcast but unconfirmed is claimed with that transaction and reopened
by PayoutEngine.resolve_pending_transfers if it later reverts.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from models import EscrowRecord, LedgerKind
from services.atomic_lock_manager import AtomicLockManager, LockOperationType, pool_funds_lock
from services.escrow_ledger import EscrowLedger
from services.payout_engine import KeepAlive, PayoutEngine
from services.pool_wallet_service import PoolWalletService
from services.wallet_errors import WalletErrorCode, WalletOperationError, error_result
from services.wallet_service import MemberWalletService

logger = logging.getLogger(__name__)


class EscrowClaimResolver:
    """Thin driver over PayoutEngine for outstanding reservations"""

    def __init__(
        self,
        payout_engine: PayoutEngine,
        escrow_ledger: EscrowLedger,
        pool_wallets: PoolWalletService,
        member_wallets: MemberWalletService,
        lock_manager: AtomicLockManager,
    ):
        self.payout_engine = payout_engine
        self.escrow_ledger = escrow_ledger
        self.pool_wallets = pool_wallets
        self.member_wallets = member_wallets
        self.lock_manager = lock_manager

    async def _outstanding(
        self, community_id: str, tenant_id: Optional[str], claimant_id: str
    ) -> Tuple[Optional[str], List[EscrowRecord]]:
        """(scope, records); the scope is the tenant of the wallet that backs the records"""
        scope = await self.pool_wallets.resolve_scope(community_id, tenant_id)
        records = await self.escrow_ledger.list_unclaimed(community_id, scope, recipient_id=claimant_id)
        if not records and scope is not None:
            legacy = await self.escrow_ledger.list_unclaimed(community_id, None, recipient_id=claimant_id)
            if legacy:
                return None, legacy
        return scope, records

    async def pending_claims(self, community_id: str, tenant_id: Optional[str], claimant_id: str) -> List[Dict[str, Any]]:
        """Outstanding reservations; a tenant with none falls back to legacy rows without a tenant"""
        _, records = await self._outstanding(community_id, tenant_id, claimant_id)
        return [
            {
                "escrow_id": record.id,
                "asset": record.asset,
                "amount": record.amount,
                "is_nft": record.is_nft,
                "token_id": record.token_id,
                "nft_name": record.nft_name,
                "created_at": record.created_at.isoformat() if record.created_at else None,
            }
            for record in records
        ]

    async def claim(self, community_id: str, tenant_id: Optional[str], claimant_id: str) -> Dict[str, Any]:
        """
        Pay every unclaimed reservation of a claimant to their own wallet.

        Legacy records are paid from the legacy wallet under its lock, never
        from a tenant wallet that does not back them.

        Returns:
            Dict with success, success_messages, pending_messages,
            failure_messages and summary {total_claims, successful, pending,
            failed}; error PARTIAL_FAILURE when any record could not be paid,
            else TX_PENDING when any payout is still unconfirmed
        """
        try:
            scope, _ = await self._outstanding(community_id, tenant_id, claimant_id)
            await self.pool_wallets.require_wallet(community_id, scope)
            claimant_wallet = await self.member_wallets.require_wallet(claimant_id)
        except WalletOperationError as e:
            return e.to_result()

        lock_name = pool_funds_lock(community_id, scope)
        async with self.lock_manager.atomic_lock_context(
            lock_name, LockOperationType.POOL_FUNDS, resource_id=community_id
        ) as lock_token:
            if not lock_token:
                return error_result(WalletErrorCode.OPERATION_IN_PROGRESS, "Another payout from this pool is in progress")
            keepalive = self.payout_engine.lock_keepalive(lock_name, lock_token)

            records = await self.escrow_ledger.list_unclaimed(community_id, scope, recipient_id=claimant_id)
            if not records:
                return error_result(WalletErrorCode.NO_ESCROW, "No pending prizes to claim")

            logger.info(
                f"🎁 ESCROW_CLAIM_STARTED: claimant={claimant_id} community={community_id} "
                f"tenant={scope} records={len(records)}"
            )
            success_messages, pending_messages, failure_messages = [], [], []
            for record in records:
                result = await self._pay_record(community_id, scope, claimant_id, claimant_wallet.address, record, keepalive)
                if result.get("success") and result.get("txs"):
                    tx_hash = result["txs"][0]["tx_hash"]
                    if await self.escrow_ledger.mark_claimed(record.id, tx_hash):
                        success_messages.append(f"✅ Claimed {record.describe()} - TX: {tx_hash}")
                    else:
                        # Paid twice is impossible under the pool lock; flag loudly if it happens
                        logger.critical(f"🚨 ESCROW_DOUBLE_PAYMENT: #{record.id} already claimed, paid again tx={tx_hash}")
                        failure_messages.append(f"❌ {record.describe()} was already claimed")
                elif result.get("pending") and not result.get("failures"):
                    # Claimed now so it cannot be paid again; reopened if the transaction reverts
                    tx_hash = result["pending"][0]["tx_hash"]
                    await self.escrow_ledger.mark_claimed(record.id, tx_hash)
                    pending_messages.append(f"⏳ {record.describe()} sent, awaiting confirmation - TX: {tx_hash}")
                else:
                    failure_messages.append(f"❌ Failed to claim {record.describe()}: {self._failure_reason(result)}")

        total = len(records)
        result = {
            "success": not failure_messages and not pending_messages,
            "success_messages": success_messages,
            "pending_messages": pending_messages,
            "failure_messages": failure_messages,
            "summary": {
                "total_claims": total,
                "successful": len(success_messages),
                "pending": len(pending_messages),
                "failed": len(failure_messages),
            },
        }
        if failure_messages:
            result["error"] = WalletErrorCode.PARTIAL_FAILURE.value
        elif pending_messages:
            result["error"] = WalletErrorCode.TX_PENDING.value
        logger.info(
            f"🏁 ESCROW_CLAIM_COMPLETE: claimant={claimant_id} successful={len(success_messages)}/{total} "
            f"pending={len(pending_messages)}"
        )
        return result

    async def _pay_record(
        self,
        community_id: str,
        tenant_id: Optional[str],
        claimant_id: str,
        destination: str,
        record: EscrowRecord,
        keepalive: Optional[KeepAlive] = None,
    ) -> Dict[str, Any]:
        if record.is_nft:
            return await self.payout_engine.execute_payout_nft(
                community_id, tenant_id, claimant_id, destination,
                record.contract_address or record.asset, record.token_id,
                is_escrow_claim=True, keepalive=keepalive,
            )
        return await self.payout_engine.execute_payout(
            community_id, tenant_id, claimant_id, destination, record.asset, record.amount,
            is_escrow_claim=True, ledger_kind=LedgerKind.ESCROW_CLAIM, keepalive=keepalive,
        )

    @staticmethod
    def _failure_reason(result: Dict[str, Any]) -> str:
        failures = result.get("failures") or []
        if failures:
            return failures[0].get("message") or failures[0].get("error")
        return result.get("message") or result.get("error") or "unknown error"
