"""
Atomic Lock Manager Service
Serializes balance-check-then-transfer sequences across processes using a
database unique constraint on the lock name
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from database import get_session_factory
from models import DistributedLock

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    # distributed_locks.expires_at is a naive UTC column
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LockOperationType(Enum):
    """Operations that hold a serialization lock"""
    MEMBER_FUNDS = "member_funds"
    POOL_FUNDS = "pool_funds"


def member_funds_lock(member_id: str, asset: str) -> str:
    """Lock name shared by every spend of one member's asset (withdraw, tip, rain)"""
    return f"{LockOperationType.MEMBER_FUNDS.value}:{member_id}:{asset.upper()}"


def pool_funds_lock(community_id: str, tenant_id: Optional[str]) -> str:
    """Lock name for a prize pool; payouts share one nonce sequence so the whole pool is locked"""
    return f"{LockOperationType.POOL_FUNDS.value}:{community_id}:{tenant_id or '-'}"


class AtomicLockManager:
    """
    Database-backed lock manager.

    Acquisition is an INSERT into distributed_locks; the unique lock_name makes
    a second concurrent INSERT fail, which is the mutual exclusion.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None, default_timeout: Optional[int] = None):
        self._session_factory = session_factory
        self.default_lock_timeout = default_timeout or Config.LOCK_TIMEOUT_SECONDS
        self.metrics: Dict[str, int] = {
            'locks_acquired': 0,
            'locks_failed': 0,
            'locks_released': 0,
            'locks_extended': 0,
            'lock_contentions': 0,
            'expired_locks_cleared': 0,
        }

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory or get_session_factory()

    async def _cleanup_expired_locks(self, session) -> int:
        result = await session.execute(delete(DistributedLock).where(DistributedLock.expires_at < _utcnow()))
        await session.commit()
        cleared = result.rowcount or 0
        if cleared:
            self.metrics['expired_locks_cleared'] += cleared
            logger.info(f"🧹 ATOMIC_LOCK_CLEANUP: cleared {cleared} expired locks")
        return cleared

    async def acquire_lock(
        self,
        lock_name: str,
        operation_type: LockOperationType,
        resource_id: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> Optional[str]:
        """
        Acquire a lock

        Returns:
            Owner token if acquired, None if another holder has it
        """
        timeout = timeout_seconds or self.default_lock_timeout
        owner_token = uuid.uuid4().hex

        async with self.session_factory() as session:
            try:
                await self._cleanup_expired_locks(session)
                session.add(DistributedLock(
                    lock_name=lock_name,
                    owner_token=owner_token,
                    operation_type=operation_type.value,
                    resource_id=resource_id,
                    expires_at=_utcnow() + timedelta(seconds=timeout),
                ))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                self.metrics['lock_contentions'] += 1
                self.metrics['locks_failed'] += 1
                logger.info(f"⏳ ATOMIC_LOCK_CONTENTION: {lock_name} already held")
                return None
            except SQLAlchemyError as e:
                await session.rollback()
                self.metrics['locks_failed'] += 1
                logger.error(f"❌ ATOMIC_LOCK_ERROR: Failed to acquire {lock_name}: {e}")
                return None

        self.metrics['locks_acquired'] += 1
        logger.info(
            f"🔒 ATOMIC_LOCK_ACQUIRED: {lock_name} [{operation_type.value}] "
            f"token={owner_token[:8]}... expires_in={timeout}s"
        )
        return owner_token

    async def release_lock(self, lock_name: str, owner_token: str) -> bool:
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    delete(DistributedLock).where(
                        DistributedLock.lock_name == lock_name,
                        DistributedLock.owner_token == owner_token,
                    )
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"❌ ATOMIC_LOCK_RELEASE_ERROR: {lock_name}: {e}")
                return False

        if result.rowcount:
            self.metrics['locks_released'] += 1
            logger.info(f"🔓 ATOMIC_LOCK_RELEASED: {lock_name} token={owner_token[:8]}...")
            return True
        logger.warning(f"⚠️ ATOMIC_LOCK_NOT_FOUND: Cannot release {lock_name} token={owner_token[:8]}... (expired?)")
        return False

    async def extend_lock(self, lock_name: str, owner_token: str, timeout_seconds: Optional[int] = None) -> bool:
        """
        Push a held lock's expiry out to now + timeout.

        Long holders call this between steps so a slow receipt wait does not
        let the lock lapse. False means the token no longer owns the lock.
        """
        timeout = timeout_seconds or self.default_lock_timeout
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(DistributedLock)
                    .where(
                        DistributedLock.lock_name == lock_name,
                        DistributedLock.owner_token == owner_token,
                    )
                    .values(expires_at=_utcnow() + timedelta(seconds=timeout))
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"❌ ATOMIC_LOCK_EXTEND_ERROR: {lock_name}: {e}")
                return False

        if result.rowcount:
            self.metrics['locks_extended'] += 1
            logger.debug(f"⏱️ ATOMIC_LOCK_EXTENDED: {lock_name} token={owner_token[:8]}... expires_in={timeout}s")
            return True
        logger.error(f"🚨 ATOMIC_LOCK_LOST: {lock_name} token={owner_token[:8]}... no longer held")
        return False

    async def is_locked(self, lock_name: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DistributedLock.id).where(
                    DistributedLock.lock_name == lock_name,
                    DistributedLock.expires_at >= _utcnow(),
                )
            )
            return result.first() is not None

    @asynccontextmanager
    async def atomic_lock_context(
        self,
        lock_name: str,
        operation_type: LockOperationType,
        resource_id: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        """
        Context manager for atomic lock operations

        Usage:
            async with lock_manager.atomic_lock_context(name, LockOperationType.MEMBER_FUNDS) as lock_token:
                if not lock_token:
                    return error_result(WalletErrorCode.OPERATION_IN_PROGRESS)
                ...
        """
        lock_token = await self.acquire_lock(lock_name, operation_type, resource_id, timeout_seconds)
        try:
            yield lock_token
        finally:
            if lock_token:
                await self.release_lock(lock_name, lock_token)

    def get_metrics(self) -> Dict[str, int]:
        return dict(self.metrics)
