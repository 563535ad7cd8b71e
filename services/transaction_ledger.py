"""Ledger of on-chain transfers made by the service"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import LedgerKind, LedgerStatus, LedgerTransaction

logger = logging.getLogger(__name__)


class TransactionLedger:
    """Append-only record of transfers; a row is confirmed unless its receipt is still outstanding"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def record(
        self,
        sender_id: str,
        recipient_id: str,
        asset: str,
        amount: Union[str, Decimal],
        tx_hash: str,
        kind: LedgerKind,
        community_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: LedgerStatus = LedgerStatus.CONFIRMED,
    ) -> int:
        async with async_managed_session(self.session_factory) as session:
            entry = LedgerTransaction(
                sender_id=str(sender_id),
                recipient_id=str(recipient_id),
                asset=asset,
                amount=str(amount),
                tx_hash=tx_hash,
                kind=kind.value,
                community_id=community_id,
                tenant_id=tenant_id,
                status=status.value,
            )
            session.add(entry)
            await session.flush()
            entry_id = entry.id

        logger.info(
            f"📒 LEDGER_RECORDED: {kind.value} {amount} {asset} {sender_id} → {recipient_id} "
            f"tx={tx_hash} status={status.value}"
        )
        return entry_id

    async def pending_entries(self, kinds: Optional[Sequence[LedgerKind]] = None) -> List[LedgerTransaction]:
        """Transfers still waiting for a receipt, oldest first"""
        query = select(LedgerTransaction).where(LedgerTransaction.status == LedgerStatus.PENDING.value)
        if kinds:
            query = query.where(LedgerTransaction.kind.in_([kind.value for kind in kinds]))
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(query.order_by(LedgerTransaction.id))
            return list(result.scalars().all())

    async def settle(self, entry_id: int, status: LedgerStatus) -> bool:
        """Move a pending row to its final status; False if it was already settled"""
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                update(LedgerTransaction)
                .where(LedgerTransaction.id == entry_id, LedgerTransaction.status == LedgerStatus.PENDING.value)
                .values(status=status.value)
            )
            settled = result.rowcount == 1
        if settled:
            logger.info(f"📒 LEDGER_SETTLED: #{entry_id} → {status.value}")
        return settled

    async def history(self, member_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent transfers sent or received by a member"""
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(LedgerTransaction)
                .where(or_(LedgerTransaction.sender_id == member_id, LedgerTransaction.recipient_id == member_id))
                .order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc())
                .limit(limit)
            )
            entries = result.scalars().all()

        return [
            {
                "direction": "sent" if entry.sender_id == member_id else "received",
                "counterparty": entry.recipient_id if entry.sender_id == member_id else entry.sender_id,
                "asset": entry.asset,
                "amount": entry.amount,
                "tx_hash": entry.tx_hash,
                "kind": entry.kind,
                "status": entry.status,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ]
