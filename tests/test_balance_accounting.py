"""
Pool balance accounting: available = on-chain - unclaimed reservations
"""

import pytest

from database import async_managed_session
from models import EscrowReason, EscrowRecord
from services.balance_accounting import BalanceAccounting
from services.wallet_errors import NoWallet, UnknownAsset

from conftest import units


@pytest.fixture
def balances(chain, escrow_ledger, pool_wallets, registry):
    return BalanceAccounting(chain, escrow_ledger, pool_wallets, registry)


class TestBalanceAccounting:

    @pytest.mark.asyncio
    async def test_conservation(self, balances, escrow_ledger, funded_pool):
        """onchain == available + reserved"""
        await escrow_ledger.create_record("c1", None, "u1", "DISH", "30", EscrowReason.PAYOUT_FAILED)
        await escrow_ledger.create_record("c1", None, "u2", "DISH", "20.5", EscrowReason.BULK_RESERVATION)

        snapshot = await balances.available_balance("c1", None, "DISH")
        assert snapshot.onchain == units("100")
        assert snapshot.reserved == units("50.5")
        assert snapshot.available == units("49.5")
        assert snapshot.onchain == snapshot.available + snapshot.reserved
        assert snapshot.to_dict()["available"] == "49.5"

    @pytest.mark.asyncio
    async def test_claimed_records_release_reservation(self, balances, escrow_ledger, funded_pool):
        record = await escrow_ledger.create_record("c1", None, "u1", "DISH", "30", EscrowReason.PAYOUT_FAILED)
        await escrow_ledger.mark_claimed(record.id, "0x1")
        snapshot = await balances.available_balance("c1", None, "DISH")
        assert snapshot.reserved == 0

    @pytest.mark.asyncio
    async def test_escrow_claim_skips_subtraction(self, balances, escrow_ledger, funded_pool):
        await escrow_ledger.create_record("c1", None, "u1", "DISH", "100", EscrowReason.PAYOUT_FAILED)
        assert (await balances.available_balance("c1", None, "DISH")).available == 0
        claim_view = await balances.available_balance("c1", None, "DISH", is_escrow_claim=True)
        assert claim_view.available == units("100")

    @pytest.mark.asyncio
    async def test_malformed_amount_is_skipped(self, balances, escrow_ledger, session_factory, funded_pool):
        await escrow_ledger.create_record("c1", None, "u1", "DISH", "10", EscrowReason.PAYOUT_FAILED)
        async with async_managed_session(session_factory) as session:
            bad = EscrowRecord(community_id="c1", recipient_id="u2", asset="DISH", amount="ten",
                               escrow_metadata={"reason": "payout_failed"})
            session.add(bad)
            await session.flush()
            bad_id = bad.id

        snapshot = await balances.available_balance("c1", None, "DISH")
        assert snapshot.reserved == units("10")
        assert snapshot.skipped_record_ids == [bad_id]

    @pytest.mark.asyncio
    async def test_over_reserved_is_negative_available_but_zero_usable(self, balances, escrow_ledger, funded_pool):
        await escrow_ledger.create_record("c1", None, "u1", "SOCK", "80", EscrowReason.ADMIN_BACKFILL)
        snapshot = await balances.available_balance("c1", None, "SOCK")
        assert snapshot.available < 0
        assert snapshot.usable == 0

    @pytest.mark.asyncio
    async def test_other_scopes_do_not_reduce_balance(self, balances, escrow_ledger, funded_pool):
        await escrow_ledger.create_record("c2", None, "u1", "DISH", "40", EscrowReason.PAYOUT_FAILED)
        await escrow_ledger.create_record("c1", "tenant-x", "u1", "DISH", "40", EscrowReason.PAYOUT_FAILED)
        assert (await balances.available_balance("c1", None, "DISH")).reserved == 0

    @pytest.mark.asyncio
    async def test_all_balances_hides_empty_tokens(self, balances, funded_pool):
        tickers = [s.asset for s in await balances.all_balances("c1", None)]
        assert tickers == ["AVAX", "DISH", "SOCK"]
        all_tickers = [s.asset for s in await balances.all_balances("c1", None, include_zeros=True)]
        assert len(all_tickers) == 6

    @pytest.mark.asyncio
    async def test_errors(self, balances, funded_pool):
        with pytest.raises(UnknownAsset):
            await balances.available_balance("c1", None, "DOGE")
        with pytest.raises(NoWallet):
            await balances.available_balance("nowhere", None, "DISH")
