"""
Escrow claims: outstanding reservations paid to the claimant's own wallet
"""

import pytest

from models import EscrowReason

from conftest import create_member, tx_hash, units

OBEEZ = "0x5dbC5A50df2B7b61b5C67FecFe552D8984424315"


class TestEscrowClaimResolver:

    @pytest.mark.asyncio
    async def test_claims_every_record(self, prize_pool, chain, escrow_ledger, member_wallets, funded_pool):
        winner = await create_member(member_wallets, chain, "winner")
        await escrow_ledger.create_record("c1", None, "winner", "DISH", "30", EscrowReason.PAYOUT_FAILED)
        await escrow_ledger.create_record("c1", None, "winner", "SOCK", "10", EscrowReason.BULK_RESERVATION)

        result = await prize_pool.claim_escrow("c1", None, "winner")

        assert result["success"] is True
        assert result["summary"] == {"total_claims": 2, "successful": 2, "pending": 0, "failed": 0}
        assert chain.balance_of("DISH", winner) == units("30")
        assert chain.balance_of("SOCK", winner) == units("10")
        assert await escrow_ledger.list_unclaimed("c1", None) == []

    @pytest.mark.asyncio
    async def test_claim_uses_reserved_funds(self, prize_pool, chain, escrow_ledger, member_wallets, funded_pool):
        """A reservation of the whole balance is still payable to its own recipient"""
        winner = await create_member(member_wallets, chain, "winner")
        await escrow_ledger.create_record("c1", None, "winner", "DISH", "100", EscrowReason.BULK_RESERVATION)
        assert (await prize_pool.get_balance("c1", None, "DISH"))["available"] == "0"

        result = await prize_pool.claim_escrow("c1", None, "winner")
        assert result["success"] is True
        assert chain.balance_of("DISH", winner) == units("100")

    @pytest.mark.asyncio
    async def test_partial_failure_then_retry_without_double_claim(
        self, prize_pool, chain, escrow_ledger, member_wallets, transactions, funded_pool
    ):
        winner = await create_member(member_wallets, chain, "winner")
        await escrow_ledger.create_record("c1", None, "winner", "DISH", "30", EscrowReason.PAYOUT_FAILED)
        await escrow_ledger.create_record("c1", None, "winner", "SOCK", "10", EscrowReason.PAYOUT_FAILED)
        chain.fail_assets.add("SOCK")

        first = await prize_pool.claim_escrow("c1", None, "winner")
        assert first["success"] is False
        assert first["error"] == "PARTIAL_FAILURE"
        assert first["summary"] == {"total_claims": 2, "successful": 1, "pending": 0, "failed": 1}
        assert len(first["failure_messages"]) == 1 and "10 SOCK" in first["failure_messages"][0]

        remaining = await escrow_ledger.list_unclaimed("c1", None, recipient_id="winner")
        assert [r.asset for r in remaining] == ["SOCK"], "The failed record stays open and is not escrowed twice"

        chain.fail_assets.clear()
        second = await prize_pool.claim_escrow("c1", None, "winner")
        assert second["summary"] == {"total_claims": 1, "successful": 1, "pending": 0, "failed": 0}
        assert chain.balance_of("DISH", winner) == units("30"), "DISH must not be paid twice"
        assert chain.balance_of("SOCK", winner) == units("10")

        kinds = [entry["kind"] for entry in await transactions.history("winner")]
        assert kinds.count("escrow_claim") == 2

    @pytest.mark.asyncio
    async def test_nothing_to_claim(self, prize_pool, chain, member_wallets, funded_pool):
        await create_member(member_wallets, chain, "winner")
        result = await prize_pool.claim_escrow("c1", None, "winner")
        assert result["error"] == "NO_ESCROW"

    @pytest.mark.asyncio
    async def test_claimant_without_wallet(self, prize_pool, escrow_ledger, funded_pool):
        await escrow_ledger.create_record("c1", None, "ghost", "DISH", "1", EscrowReason.PAYOUT_FAILED)
        result = await prize_pool.claim_escrow("c1", None, "ghost")
        assert result["error"] == "NO_WALLET"
        assert len(await escrow_ledger.list_unclaimed("c1", None)) == 1

    @pytest.mark.asyncio
    async def test_tenant_falls_back_to_legacy_records(self, prize_pool, chain, escrow_ledger, member_wallets, funded_pool):
        winner = await create_member(member_wallets, chain, "winner")
        await escrow_ledger.create_record("c1", None, "winner", "DISH", "5", EscrowReason.PAYOUT_FAILED)

        pending = await prize_pool.pending_claims("c1", "tenant-a", "winner")
        assert [p["amount"] for p in pending] == ["5"]

        result = await prize_pool.claim_escrow("c1", "tenant-a", "winner")
        assert result["success"] is True
        assert chain.balance_of("DISH", winner) == units("5")

    @pytest.mark.asyncio
    async def test_nft_claim(self, prize_pool, chain, escrow_ledger, member_wallets, funded_pool):
        winner = await create_member(member_wallets, chain, "winner")
        chain.mint_nft(OBEEZ, 3, funded_pool)
        await escrow_ledger.create_nft_record("c1", None, "winner", "OBEEZ", OBEEZ, 3, EscrowReason.PAYOUT_FAILED, nft_name="Obeez")

        result = await prize_pool.claim_escrow("c1", None, "winner")
        assert result["success"] is True
        assert "Obeez #3" in result["success_messages"][0]
        assert (await chain.owner_of(OBEEZ, 3)).lower() == winner.lower()

    @pytest.mark.asyncio
    async def test_unconfirmed_claim_is_not_paid_twice(self, prize_pool, chain, escrow_ledger, member_wallets, funded_pool):
        await create_member(member_wallets, chain, "winner")
        await escrow_ledger.create_record("c1", None, "winner", "DISH", "30", EscrowReason.PAYOUT_FAILED)
        chain.timeout_receipts.add(tx_hash(1))

        first = await prize_pool.claim_escrow("c1", None, "winner")
        assert first["success"] is False
        assert first["error"] == "TX_PENDING"
        assert first["summary"] == {"total_claims": 1, "successful": 0, "pending": 1, "failed": 0}
        assert tx_hash(1) in first["pending_messages"][0]

        assert (await prize_pool.claim_escrow("c1", None, "winner"))["error"] == "NO_ESCROW"
        assert len(chain.sent) == 1

    @pytest.mark.asyncio
    async def test_reverted_claim_reopens_the_record(self, prize_pool, chain, escrow_ledger, member_wallets, funded_pool):
        winner = await create_member(member_wallets, chain, "winner")
        record = await escrow_ledger.create_record("c1", None, "winner", "DISH", "30", EscrowReason.PAYOUT_FAILED)
        chain.timeout_receipts.add(tx_hash(1))
        chain.fail_receipts.add(tx_hash(1))
        assert (await prize_pool.claim_escrow("c1", None, "winner"))["error"] == "TX_PENDING"

        # A reverted transfer leaves the tokens in the pool
        chain.timeout_receipts.discard(tx_hash(1))
        chain.balances[("DISH", winner.lower())] -= units("30")
        chain.fund("DISH", funded_pool, "30")

        assert (await prize_pool.resolve_pending_transfers())["reverted"] == 1
        [reopened] = await escrow_ledger.list_unclaimed("c1", None, recipient_id="winner")
        assert reopened.id == record.id
        assert reopened.claim_tx_hash is None

        retried = await prize_pool.claim_escrow("c1", None, "winner")
        assert retried["success"] is True, retried
        assert chain.balance_of("DISH", winner) == units("30")
