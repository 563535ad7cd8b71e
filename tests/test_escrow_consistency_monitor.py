"""
Tests for the periodic escrow conservation audit
"""

import pytest
from unittest.mock import AsyncMock, patch

from config import Config
from database import async_managed_session
from jobs.escrow_consistency_monitor import (
    NFT_RESERVATION_UNBACKED, RESERVED_EXCEEDS_ONCHAIN, EscrowAuditScheduler, EscrowConsistencyMonitor,
    monitor_escrow_consistency,
)
from models import EscrowReason, EscrowRecord

from conftest import EXTERNAL, tx_hash

OBEEZ = "0x5dbC5A50df2B7b61b5C67FecFe552D8984424315"


@pytest.fixture
def monitor(prize_pool, pool_wallets, escrow_ledger, registry):
    return EscrowConsistencyMonitor(prize_pool.balances, pool_wallets, escrow_ledger, registry)


class TestEscrowConsistencyMonitor:
    """Pool-by-pool recomputation of on-chain, reserved and available"""

    @pytest.mark.asyncio
    async def test_consistent_pool(self, monitor, escrow_ledger, chain, funded_pool):
        await escrow_ledger.create_record("c1", None, "u1", "DISH", "60", EscrowReason.PAYOUT_FAILED)
        chain.mint_nft(OBEEZ, 1, funded_pool)
        await escrow_ledger.create_nft_record("c1", None, "u1", "OBEEZ", OBEEZ, 1, EscrowReason.PAYOUT_FAILED)

        result = await monitor.run_check()

        assert result.is_consistent, result.inconsistencies
        assert result.pools_checked == 1
        assert result.assets_checked == 6
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_over_reservation_is_flagged(self, monitor, escrow_ledger, funded_pool):
        await escrow_ledger.create_record("c1", None, "u1", "SOCK", "40", EscrowReason.PAYOUT_FAILED)
        await escrow_ledger.create_record("c1", None, "u2", "SOCK", "20", EscrowReason.BULK_RESERVATION)

        result = await monitor.run_check()

        assert result.inconsistencies_found == 1
        issue = result.inconsistencies[0]
        assert issue["issue_type"] == RESERVED_EXCEEDS_ONCHAIN
        assert issue["community_id"] == "c1"
        assert issue["pool_address"] == funded_pool
        assert issue["details"]["asset"] == "SOCK"
        assert int(issue["details"]["shortfall"]) == 10 * 10**18

    @pytest.mark.asyncio
    async def test_malformed_record_is_a_warning(self, monitor, session_factory, funded_pool):
        async with async_managed_session(session_factory) as session:
            session.add(EscrowRecord(community_id="c1", recipient_id="u1", asset="DISH", amount="ten",
                                     escrow_metadata={"reason": "payout_failed"}))

        result = await monitor.run_check()

        assert result.is_consistent
        assert result.malformed_records == 1
        assert len(result.warnings) == 1
        assert "DISH" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_nft_reservation_not_held_by_pool(self, monitor, escrow_ledger, chain, funded_pool):
        chain.mint_nft(OBEEZ, 2, EXTERNAL)
        record = await escrow_ledger.create_nft_record("c1", None, "u1", "OBEEZ", OBEEZ, 2, EscrowReason.PAYOUT_FAILED)

        result = await monitor.run_check()

        assert result.inconsistencies_found == 1
        issue = result.inconsistencies[0]
        assert issue["issue_type"] == NFT_RESERVATION_UNBACKED
        assert issue["details"]["escrow_id"] == record.id
        assert issue["details"]["owner"].lower() == EXTERNAL.lower()

    @pytest.mark.asyncio
    async def test_unreadable_nft_owner_is_an_error(self, monitor, escrow_ledger, funded_pool):
        await escrow_ledger.create_nft_record("c1", None, "u1", "OBEEZ", OBEEZ, 404, EscrowReason.PAYOUT_FAILED)
        result = await monitor.run_check()
        assert result.is_consistent
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_every_pool_is_checked(self, monitor, prize_pool, funded_pool):
        await prize_pool.get_or_create_wallet("c2")
        await prize_pool.get_or_create_wallet("c1", "tenant-a")
        result = await monitor.run_check()
        assert result.pools_checked == 3

    @pytest.mark.asyncio
    async def test_unconfirmed_payouts_are_settled_before_audit(
        self, prize_pool, pool_wallets, escrow_ledger, registry, chain, funded_pool
    ):
        monitor = EscrowConsistencyMonitor(
            prize_pool.balances, pool_wallets, escrow_ledger, registry, payout_engine=prize_pool.payout_engine,
        )
        chain.timeout_receipts.update({tx_hash(1), tx_hash(2)})
        chain.fail_receipts.add(tx_hash(1))
        await prize_pool.payout("c1", None, "winner", EXTERNAL, "DISH", "40")
        await prize_pool.payout("c1", None, "winner", EXTERNAL, "SOCK", "5")
        chain.timeout_receipts.discard(tx_hash(1))

        result = await monitor.run_check()

        assert result.is_consistent, result.inconsistencies
        assert result.pending_transfers == 1
        assert result.get_summary()["pending_transfers"] == 1
        assert [(r.asset, r.amount) for r in await escrow_ledger.list_unclaimed("c1", None)] == [("DISH", "40")]

    @pytest.mark.asyncio
    async def test_job_entry_point_returns_summary(self, monitor, funded_pool):
        summary = await monitor_escrow_consistency(monitor)
        assert summary["pools_checked"] == 1
        assert summary["inconsistencies_found"] == 0
        assert summary["error_count"] == 0

    @pytest.mark.asyncio
    async def test_job_entry_point_never_raises(self, monitor):
        with patch.object(monitor, "run_check", AsyncMock(side_effect=RuntimeError("database down"))):
            summary = await monitor_escrow_consistency(monitor)
        assert summary["success"] is False
        assert "database down" in summary["error"]


class TestEscrowAuditScheduler:
    """Interval job registration"""

    def test_setup_jobs_registers_interval_job(self, monitor):
        scheduler = EscrowAuditScheduler(monitor, interval_minutes=15)
        scheduler.setup_jobs()
        scheduler.setup_jobs()

        job = scheduler.scheduler.get_job(EscrowAuditScheduler.JOB_ID)
        assert job is not None
        assert job.args == (monitor,)
        assert job.trigger.interval.total_seconds() == 15 * 60
        assert len(scheduler.scheduler.get_jobs()) == 1

    def test_disabled_does_not_start(self, monitor):
        scheduler = EscrowAuditScheduler(monitor)
        with patch.object(Config, "ESCROW_AUDIT_ENABLED", False):
            assert scheduler.start() is False
        assert scheduler.scheduler.running is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monitor):
        scheduler = EscrowAuditScheduler(monitor, interval_minutes=60)
        with patch.object(Config, "ESCROW_AUDIT_ENABLED", True):
            assert scheduler.start() is True
        assert scheduler.scheduler.running is True
        scheduler.stop()
