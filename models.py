"""
Prize Pool Wallet Service - Database Schema
===========================================

Custodial wallet records for chat-community members and community prize pools:
- Member and pool signing keys (encrypted at rest)
- Escrow reservations promised to recipients but not yet transferred
- Two-phase withdrawal attempts (fee collection, then principal transfer)
- Ledger of every on-chain transfer, with unconfirmed ones held as pending
- Database-backed serialization locks

Amounts inherited from the document store are kept as decimal strings so
historical rows migrate without reformatting.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Index, Integer, JSON, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class WithdrawalStatus(Enum):
    """Withdrawal attempt lifecycle states"""
    PENDING = "pending"
    FEE_COLLECTED_PENDING_TRANSFER = "fee_collected_pending_transfer"
    COMPLETED = "completed"
    FEE_COLLECTION_FAILED = "fee_collection_failed"

    @classmethod
    def from_value(cls, value: str) -> "WithdrawalStatus":
        """Parse a stored status, mapping the legacy in-flight value"""
        return cls(LEGACY_WITHDRAWAL_STATUS_MAP.get(value, value))


LEGACY_WITHDRAWAL_STATUS_MAP = {
    "fee_collected_pending_withdraw": WithdrawalStatus.FEE_COLLECTED_PENDING_TRANSFER.value,
}

# Stored values that mean "fee paid, principal not yet sent"
IN_FLIGHT_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.FEE_COLLECTED_PENDING_TRANSFER.value,
    "fee_collected_pending_withdraw",
)


class LedgerKind(Enum):
    """What produced a confirmed on-chain transfer"""
    TIP = "tip"
    RAIN = "rain"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_FEE = "withdrawal_fee"
    PAYOUT = "payout"
    ESCROW_CLAIM = "escrow_claim"
    DONATION = "donation"
    DEVELOPER_PAYMENT = "developer_payment"


class LedgerStatus(Enum):
    """Whether a recorded transfer has a successful receipt"""
    CONFIRMED = "confirmed"
    # Broadcast without a receipt yet; settled by a later receipt check
    PENDING = "pending"
    REVERTED = "reverted"


class EscrowReason(Enum):
    """Why an escrow reservation was created"""
    PAYOUT_FAILED = "payout_failed"
    BULK_RESERVATION = "bulk_reservation"
    ADMIN_BACKFILL = "admin_backfill"


# ============================================================================
# WALLETS
# ============================================================================

class MemberWallet(Base):
    """Custodial wallet owned by one community member"""
    __tablename__ = 'member_wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PoolWallet(Base):
    """Prize pool signing wallet, one per (community, tenant)"""
    __tablename__ = 'prize_pool_wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    community_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # NULL for legacy wallets created before multi-tenant deployments
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    replaced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('community_id', 'tenant_id', name='uq_pool_wallet_community_tenant'),
    )


# ============================================================================
# ESCROW RESERVATIONS
# ============================================================================

class EscrowRecord(Base):
    """An asset amount (or one NFT) promised to a recipient within a community"""
    __tablename__ = 'prize_escrows'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    community_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    asset: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[str] = mapped_column(String(80), nullable=False)  # decimal string

    # Non-fungible fields
    is_nft: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    contract_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    token_id: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    nft_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    nft_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    escrow_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column('metadata', JSON, nullable=True)

    __table_args__ = (
        Index('ix_prize_escrows_scope_claimed', 'community_id', 'tenant_id', 'claimed'),
        Index('ix_prize_escrows_recipient_claimed', 'recipient_id', 'claimed'),
    )

    def describe(self) -> str:
        if self.is_nft:
            return f"{self.nft_name or self.asset} #{self.token_id}"
        return f"{self.amount} {self.asset}"


# ============================================================================
# WITHDRAWALS
# ============================================================================

class WithdrawalAttempt(Base):
    """Resumable two-phase withdrawal: fee collection, then principal transfer"""
    __tablename__ = 'withdrawal_attempts'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_address: Mapped[str] = mapped_column(String(42), nullable=False)
    destination_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # Fungible withdrawals
    asset: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    requested_amount: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    asset_price_usd: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    # Non-fungible withdrawals
    is_nft: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    nft_collection: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    nft_token_id: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    # Fee totals accumulate across delta charges
    fee_native: Mapped[str] = mapped_column(String(80), nullable=False)
    fee_base_units: Mapped[str] = mapped_column(String(80), nullable=False)
    native_price_usd: Mapped[str] = mapped_column(String(80), nullable=False)
    fee_history: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(40), default=WithdrawalStatus.PENDING.value, nullable=False)
    fee_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    transfer_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'fee_collected_pending_transfer', 'completed', "
            "'fee_collection_failed', 'fee_collected_pending_withdraw')",
            name='ck_withdrawal_attempt_status',
        ),
        Index('ix_withdrawal_attempts_requester_asset_status', 'requester_id', 'asset', 'status'),
    )

    @property
    def withdrawal_status(self) -> WithdrawalStatus:
        return WithdrawalStatus.from_value(self.status)


# ============================================================================
# LEDGER
# ============================================================================

class LedgerTransaction(Base):
    """On-chain transfer made by the service, confirmed unless its receipt is still outstanding"""
    __tablename__ = 'wallet_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    asset: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[str] = mapped_column(String(80), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    community_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=LedgerStatus.CONFIRMED.value, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


# ============================================================================
# LOCKS
# ============================================================================

class DistributedLock(Base):
    """Database-backed lock; the unique lock_name is the mutual exclusion"""
    __tablename__ = 'distributed_locks'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lock_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    owner_token: Mapped[str] = mapped_column(String(64), nullable=False)
    operation_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_distributed_locks_expires_at', 'expires_at'),
    )
