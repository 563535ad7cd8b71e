"""
Escrow Consistency Monitor
Periodic audit that every prize pool still holds what it has promised:
reserved (unclaimed escrow) never exceeds on-chain balance per asset, and
every reserved NFT is still owned by its pool wallet
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from models import PoolWallet
from services.balance_accounting import BalanceAccounting
from services.escrow_ledger import EscrowLedger
from services.payout_engine import PayoutEngine
from services.pool_wallet_service import PoolWalletService
from services.wallet_errors import WalletOperationError
from utils.asset_registry import AssetRegistry

logger = logging.getLogger(__name__)

RESERVED_EXCEEDS_ONCHAIN = "reserved_exceeds_onchain"
NFT_RESERVATION_UNBACKED = "nft_reservation_unbacked"


class EscrowConsistencyResult:
    """Result object for one audit run"""

    def __init__(self):
        self.pools_checked = 0
        self.assets_checked = 0
        self.inconsistencies_found = 0
        self.malformed_records = 0
        self.pending_transfers = 0
        self.execution_time_ms = 0
        self.inconsistencies: List[Dict[str, Any]] = []
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def add_inconsistency(self, pool: PoolWallet, issue_type: str, details: Dict[str, Any]):
        """Record a pool/asset whose reservations are not backed on chain"""
        self.inconsistencies_found += 1
        self.inconsistencies.append({
            "community_id": pool.community_id,
            "tenant_id": pool.tenant_id,
            "pool_address": pool.address,
            "issue_type": issue_type,
            "details": details,
            "detected_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.critical(
            f"🚨 ESCROW_INCONSISTENCY: {issue_type} community={pool.community_id} "
            f"tenant={pool.tenant_id} details={details}"
        )

    def add_error(self, error: str):
        self.errors.append(error)
        logger.error(f"ESCROW_AUDIT_ERROR: {error}")

    def add_warning(self, warning: str):
        self.warnings.append(warning)
        logger.warning(f"ESCROW_AUDIT_WARNING: {warning}")

    @property
    def is_consistent(self) -> bool:
        return self.inconsistencies_found == 0

    def get_summary(self) -> Dict[str, Any]:
        return {
            "pools_checked": self.pools_checked,
            "assets_checked": self.assets_checked,
            "inconsistencies_found": self.inconsistencies_found,
            "malformed_records": self.malformed_records,
            "pending_transfers": self.pending_transfers,
            "execution_time_ms": self.execution_time_ms,
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
        }


class EscrowConsistencyMonitor:
    """Recomputes on-chain / reserved / available for every pool wallet and asset"""

    def __init__(
        self,
        balances: BalanceAccounting,
        pool_wallets: PoolWalletService,
        escrow_ledger: EscrowLedger,
        registry: Optional[AssetRegistry] = None,
        payout_engine: Optional[PayoutEngine] = None,
    ):
        self.balances = balances
        self.pool_wallets = pool_wallets
        self.escrow_ledger = escrow_ledger
        self.registry = registry or Config.get_asset_registry()
        # Settles unconfirmed payouts first so reverted ones are reserved before the audit
        self.payout_engine = payout_engine

    async def run_check(self) -> EscrowConsistencyResult:
        start_time = datetime.now(timezone.utc)
        result = EscrowConsistencyResult()
        logger.info("🔍 ESCROW_AUDIT_START: checking prize pool reservations")

        if self.payout_engine is not None:
            settled = await self.payout_engine.resolve_pending_transfers()
            result.pending_transfers = settled["still_pending"]

        for pool in await self.pool_wallets.list_wallets():
            result.pools_checked += 1
            await self._check_fungible(pool, result)
            await self._check_nfts(pool, result)

        result.execution_time_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        if result.is_consistent:
            logger.info(
                f"✅ ESCROW_AUDIT_COMPLETE: {result.pools_checked} pools, {result.assets_checked} assets consistent "
                f"({result.execution_time_ms}ms)"
            )
        else:
            logger.warning(
                f"⚠️ ESCROW_AUDIT_COMPLETE: {result.inconsistencies_found} inconsistencies across "
                f"{result.pools_checked} pools ({result.execution_time_ms}ms)"
            )
        return result

    async def _check_fungible(self, pool: PoolWallet, result: EscrowConsistencyResult) -> None:
        for asset in self.registry.all_assets():
            try:
                snapshot = await self.balances.available_balance(
                    pool.community_id, pool.tenant_id, asset.ticker, pool_address=pool.address
                )
            except WalletOperationError as e:
                result.add_error(f"{asset.ticker} community={pool.community_id}: {e.message}")
                continue

            result.assets_checked += 1
            if snapshot.skipped_record_ids:
                result.malformed_records += len(snapshot.skipped_record_ids)
                result.add_warning(
                    f"{asset.ticker} community={pool.community_id} has malformed escrow amounts "
                    f"{snapshot.skipped_record_ids}"
                )
            if snapshot.reserved > snapshot.onchain:
                result.add_inconsistency(pool, RESERVED_EXCEEDS_ONCHAIN, {
                    "asset": asset.ticker,
                    "onchain": str(snapshot.onchain),
                    "reserved": str(snapshot.reserved),
                    "shortfall": str(snapshot.reserved - snapshot.onchain),
                })

    async def _check_nfts(self, pool: PoolWallet, result: EscrowConsistencyResult) -> None:
        for record in await self.escrow_ledger.list_unclaimed(pool.community_id, pool.tenant_id):
            if not record.is_nft:
                continue
            try:
                owner = await self.balances.chain.owner_of(record.contract_address, int(record.token_id))
            except WalletOperationError as e:
                result.add_error(f"NFT escrow #{record.id}: {e.message}")
                continue
            if owner.lower() != pool.address.lower():
                result.add_inconsistency(pool, NFT_RESERVATION_UNBACKED, {
                    "escrow_id": record.id,
                    "collection": record.contract_address,
                    "token_id": record.token_id,
                    "owner": owner,
                })


async def monitor_escrow_consistency(monitor: EscrowConsistencyMonitor) -> Dict[str, Any]:
    """Scheduler entry point; never raises so the job keeps its schedule"""
    try:
        result = await monitor.run_check()
        return result.get_summary()
    except Exception as e:
        logger.error(f"ESCROW_AUDIT_MAIN_ERROR: {e}", exc_info=True)
        return {"success": False, "error": str(e), "inconsistencies_found": 0}


class EscrowAuditScheduler:
    """Runs the consistency monitor on an interval"""

    JOB_ID = "escrow_consistency_audit"

    def __init__(self, monitor: EscrowConsistencyMonitor, interval_minutes: Optional[int] = None):
        self.monitor = monitor
        self.interval_minutes = interval_minutes or Config.ESCROW_AUDIT_INTERVAL_MINUTES
        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 120,
            },
            timezone='UTC',
        )

    def setup_jobs(self):
        if self.scheduler.get_job(self.JOB_ID):
            self.scheduler.remove_job(self.JOB_ID)

        self.scheduler.add_job(
            monitor_escrow_consistency,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            args=[self.monitor],
            id=self.JOB_ID,
            name="Escrow Consistency Audit",
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"📅 ESCROW_AUDIT_SCHEDULED: every {self.interval_minutes} minutes")

    def start(self):
        if not Config.ESCROW_AUDIT_ENABLED:
            logger.info("⏸️ ESCROW_AUDIT_DISABLED: not starting scheduler")
            return False
        self.setup_jobs()
        self.scheduler.start()
        return True

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
