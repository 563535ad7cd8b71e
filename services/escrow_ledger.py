"""
Escrow Ledger - reservations of pool funds promised to a recipient but not yet sent.

Records are append-only: the only mutation is the claimed flip, done with a
conditional UPDATE so a record can never be claimed twice. A claim is undone
only when its transaction reverted. Records are never deleted.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import EscrowReason, EscrowRecord
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


def _scope_filter(community_id: str, tenant_id: Optional[str]):
    if tenant_id is None:
        return and_(EscrowRecord.community_id == community_id, EscrowRecord.tenant_id.is_(None))
    return and_(EscrowRecord.community_id == community_id, EscrowRecord.tenant_id == tenant_id)


class EscrowLedger:
    """Reservation records for one deployment"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def create_record(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        asset: str,
        amount: Union[str, Decimal],
        reason: EscrowReason,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EscrowRecord:
        """Reserve a fungible amount for a recipient"""
        amount_text = str(amount)
        MonetaryDecimal.to_decimal(amount_text, "escrow_amount")

        record = EscrowRecord(
            community_id=community_id,
            tenant_id=tenant_id,
            recipient_id=str(recipient_id),
            asset=asset,
            amount=amount_text,
            is_nft=False,
            claimed=False,
            escrow_metadata={"reason": reason.value, **(metadata or {})},
        )
        async with async_managed_session(self.session_factory) as session:
            session.add(record)
            await session.flush()

        logger.info(
            f"🔐 ESCROW_CREATED: #{record.id} {amount_text} {asset} for {recipient_id} "
            f"community={community_id} tenant={tenant_id} reason={reason.value}"
        )
        return record

    async def create_nft_record(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: str,
        collection_ticker: str,
        contract_address: str,
        token_id: Union[int, str],
        reason: EscrowReason,
        nft_name: Optional[str] = None,
        nft_image_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EscrowRecord:
        """Reserve one non-fungible unit for a recipient"""
        record = EscrowRecord(
            community_id=community_id,
            tenant_id=tenant_id,
            recipient_id=str(recipient_id),
            asset=collection_ticker,
            amount="1",
            is_nft=True,
            contract_address=contract_address,
            token_id=str(token_id),
            nft_name=nft_name,
            nft_image_url=nft_image_url,
            claimed=False,
            escrow_metadata={"reason": reason.value, **(metadata or {})},
        )
        async with async_managed_session(self.session_factory) as session:
            session.add(record)
            await session.flush()

        logger.info(
            f"🔐 ESCROW_NFT_CREATED: #{record.id} {collection_ticker} #{token_id} for {recipient_id} "
            f"community={community_id} tenant={tenant_id}"
        )
        return record

    async def list_unclaimed(
        self,
        community_id: str,
        tenant_id: Optional[str],
        recipient_id: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> List[EscrowRecord]:
        query = select(EscrowRecord).where(
            _scope_filter(community_id, tenant_id),
            EscrowRecord.claimed.is_(False),
        )
        if recipient_id is not None:
            query = query.where(EscrowRecord.recipient_id == str(recipient_id))
        if asset is not None:
            query = query.where(EscrowRecord.asset == asset)

        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(query.order_by(EscrowRecord.created_at, EscrowRecord.id))
            return list(result.scalars().all())

    async def unclaimed_amounts(self, community_id: str, tenant_id: Optional[str], asset: str) -> List[Tuple[int, str]]:
        """(record id, stored amount) for every unclaimed fungible reservation of an asset"""
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(EscrowRecord.id, EscrowRecord.amount).where(
                    _scope_filter(community_id, tenant_id),
                    EscrowRecord.asset == asset,
                    EscrowRecord.is_nft.is_(False),
                    EscrowRecord.claimed.is_(False),
                )
            )
            return [(row.id, row.amount) for row in result.all()]

    async def is_nft_reserved(
        self,
        community_id: str,
        tenant_id: Optional[str],
        contract_address: str,
        token_id: Union[int, str],
        exclude_recipient: Optional[str] = None,
    ) -> bool:
        query = select(EscrowRecord.id).where(
            _scope_filter(community_id, tenant_id),
            EscrowRecord.is_nft.is_(True),
            EscrowRecord.claimed.is_(False),
            EscrowRecord.contract_address == contract_address,
            EscrowRecord.token_id == str(token_id),
        )
        if exclude_recipient is not None:
            query = query.where(EscrowRecord.recipient_id != str(exclude_recipient))
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(query.limit(1))
            return result.first() is not None

    async def mark_claimed(self, record_id: int, tx_hash: Optional[str] = None) -> bool:
        """Flip claimed false→true; False when the record was already claimed"""
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                update(EscrowRecord)
                .where(EscrowRecord.id == record_id, EscrowRecord.claimed.is_(False))
                .values(claimed=True, claimed_at=datetime.now(timezone.utc), claim_tx_hash=tx_hash)
            )
            flipped = result.rowcount == 1

        if flipped:
            logger.info(f"✅ ESCROW_CLAIMED: #{record_id} tx={tx_hash}")
        else:
            logger.warning(f"⚠️ ESCROW_ALREADY_CLAIMED: #{record_id}")
        return flipped

    async def reopen_claim(self, tx_hash: str) -> List[int]:
        """Flip records claimed by a reverted transaction back to unclaimed"""
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(EscrowRecord).where(EscrowRecord.claim_tx_hash == tx_hash, EscrowRecord.claimed.is_(True))
            )
            records = list(result.scalars().all())
            for record in records:
                record.claimed = False
                record.claimed_at = None
                record.claim_tx_hash = None
            reopened = [record.id for record in records]

        if reopened:
            logger.warning(f"↩️ ESCROW_CLAIM_REOPENED: {reopened} tx={tx_hash} reverted")
        return reopened

    async def backfill(
        self,
        community_id: str,
        tenant_id: Optional[str],
        asset: str,
        entries: Iterable[Dict[str, Any]],
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Administrative reservations, e.g. prizes owed from before the pool existed.

        Each entry is {"recipient_id", "amount", "note"}. Existing unclaimed
        reservations of the same asset for those recipients are reported so an
        operator can spot duplicates; they do not block creation.
        """
        entries = list(entries)
        for entry in entries:
            MonetaryDecimal.to_decimal(entry["amount"], "backfill_amount")

        recipients = {str(entry["recipient_id"]) for entry in entries}
        existing = [
            record for record in await self.list_unclaimed(community_id, tenant_id, asset=asset)
            if record.recipient_id in recipients
        ]
        total = sum((Decimal(str(entry["amount"])) for entry in entries), Decimal("0"))

        if dry_run:
            logger.info(f"📝 ESCROW_BACKFILL_DRY_RUN: {len(entries)} entries totalling {total} {asset}")
            return {"success": True, "dry_run": True, "entries_planned": len(entries),
                    "total": str(total), "existing_unclaimed": len(existing)}

        created_ids = []
        for entry in entries:
            record = await self.create_record(
                community_id,
                tenant_id,
                str(entry["recipient_id"]),
                asset,
                str(entry["amount"]),
                EscrowReason.ADMIN_BACKFILL,
                metadata={"note": entry.get("note")},
            )
            created_ids.append(record.id)

        logger.info(f"📝 ESCROW_BACKFILL_COMPLETE: {len(created_ids)} entries totalling {total} {asset}")
        return {"success": True, "dry_run": False, "entries_created": len(created_ids),
                "escrow_ids": created_ids, "total": str(total), "existing_unclaimed": len(existing)}
