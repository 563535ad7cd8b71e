"""
Tips and rains between member wallets
"""

import pytest

from services.atomic_lock_manager import LockOperationType, member_funds_lock

from conftest import GWEI, NATIVE_GAS, create_member, units


class TestTip:

    @pytest.mark.asyncio
    async def test_tip_moves_funds_and_records_ledger(self, transfers, chain, member_wallets, transactions):
        await create_member(member_wallets, chain, "alice", DISH="20", AVAX="1")
        bob = await create_member(member_wallets, chain, "bob")

        result = await transfers.tip("alice", "bob", "dish", "7.5")

        assert result["success"] is True
        assert result["asset"] == "DISH"
        assert result["amount"] == "7.5"
        assert chain.balance_of("DISH", bob) == units("7.5")

        history = await transactions.history("bob")
        assert history[0]["kind"] == "tip"
        assert history[0]["counterparty"] == "alice"
        assert history[0]["direction"] == "received"

    @pytest.mark.asyncio
    async def test_native_tip_needs_amount_plus_gas(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", AVAX="1")
        await create_member(member_wallets, chain, "bob")
        result = await transfers.tip("alice", "bob", "AVAX", "1")
        assert result["error"] == "INSUFFICIENT_GAS"
        assert chain.sent == []

        alice_balance = units("1") - NATIVE_GAS * GWEI
        result = await transfers.tip("alice", "bob", "AVAX", "0.5")
        assert result["success"] is True
        assert alice_balance - units("0.5") == chain.balance_of("AVAX", (await member_wallets.get_wallet("alice")).address)

    @pytest.mark.asyncio
    async def test_cannot_tip_yourself(self, transfers):
        assert (await transfers.tip("alice", "alice", "DISH", "1"))["error"] == "INVALID_ADDRESS"

    @pytest.mark.asyncio
    async def test_recipient_without_wallet(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", DISH="20", AVAX="1")
        result = await transfers.tip("alice", "carol", "DISH", "1")
        assert result["error"] == "NO_WALLET"
        assert result["recipient_id"] == "carol"

    @pytest.mark.asyncio
    async def test_sender_without_wallet(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "bob")
        assert (await transfers.tip("alice", "bob", "DISH", "1"))["error"] == "NO_WALLET"

    @pytest.mark.asyncio
    async def test_insufficient_token_balance(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", DISH="2", AVAX="1")
        await create_member(member_wallets, chain, "bob")
        result = await transfers.tip("alice", "bob", "DISH", "5")
        assert result["error"] == "INSUFFICIENT_BALANCE"
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_token_tip_without_gas(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", DISH="5")
        await create_member(member_wallets, chain, "bob")
        assert (await transfers.tip("alice", "bob", "DISH", "1"))["error"] == "INSUFFICIENT_GAS"

    @pytest.mark.asyncio
    async def test_bad_amount_and_asset(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", DISH="5", AVAX="1")
        await create_member(member_wallets, chain, "bob")
        assert (await transfers.tip("alice", "bob", "DISH", "0"))["error"] == "INVALID_AMOUNT"
        assert (await transfers.tip("alice", "bob", "DOGE", "1"))["error"] == "UNKNOWN_ASSET"

    @pytest.mark.asyncio
    async def test_lock_contention(self, transfers, lock_manager, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", DISH="5", AVAX="1")
        await create_member(member_wallets, chain, "bob")
        token = await lock_manager.acquire_lock(member_funds_lock("alice", "DISH"), LockOperationType.MEMBER_FUNDS)
        assert (await transfers.tip("alice", "bob", "DISH", "1"))["error"] == "OPERATION_IN_PROGRESS"
        await lock_manager.release_lock(member_funds_lock("alice", "DISH"), token)


class TestRain:

    @pytest.mark.asyncio
    async def test_equal_split_skips_members_without_wallets(self, transfers, chain, member_wallets, transactions):
        await create_member(member_wallets, chain, "alice", DISH="10", AVAX="1")
        recipients = [await create_member(member_wallets, chain, name) for name in ("r1", "r2", "r3")]

        result = await transfers.rain("alice", ["r1", "r2", "ghost", "alice", "r1", "r3"], "DISH", "10")

        assert result["success"] is True
        assert result["per_user"] == "3.333333333333333333"
        assert result["total_distributed"] == "9.999999999999999999"
        assert result["skipped"] == ["ghost"]
        assert [r["recipient_id"] for r in result["recipients"]] == ["r1", "r2", "r3"]
        for address in recipients:
            assert chain.balance_of("DISH", address) == units("10") // 3
        assert [tx["nonce"] for tx in chain.sent] == [0, 1, 2]

        history = await transactions.history("r2")
        assert [entry["kind"] for entry in history] == ["rain"]

    @pytest.mark.asyncio
    async def test_rejected_send_is_partial_failure(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", DISH="9", AVAX="1")
        r1 = await create_member(member_wallets, chain, "r1")
        r2 = await create_member(member_wallets, chain, "r2")
        r3 = await create_member(member_wallets, chain, "r3")
        chain.fail_recipients.add(r2.lower())

        result = await transfers.rain("alice", ["r1", "r2", "r3"], "DISH", "9")

        assert result["success"] is False
        assert result["error"] == "PARTIAL_FAILURE"
        assert [f["recipient_id"] for f in result["failures"]] == ["r2"]
        assert result["total_distributed"] == "6"
        assert chain.balance_of("DISH", r1) == units("3")
        assert chain.balance_of("DISH", r3) == units("3")
        # The rejected send never used its nonce
        assert [tx["nonce"] for tx in chain.sent] == [0, 1]

    @pytest.mark.asyncio
    async def test_reverted_receipt_is_partial_failure(self, transfers, chain, member_wallets, transactions):
        await create_member(member_wallets, chain, "alice", DISH="4", AVAX="1")
        await create_member(member_wallets, chain, "r1")
        await create_member(member_wallets, chain, "r2")
        chain.fail_receipts.add(f"0x{2:064x}")

        result = await transfers.rain("alice", ["r1", "r2"], "DISH", "4")

        assert result["error"] == "PARTIAL_FAILURE"
        assert result["failures"][0]["recipient_id"] == "r2"
        assert result["failures"][0]["tx_hash"] == f"0x{2:064x}"
        assert await transactions.history("r2") == []

    @pytest.mark.asyncio
    async def test_recipient_limit(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", DISH="60", AVAX="1")
        names = [f"r{i}" for i in range(6)]
        for name in names:
            await create_member(member_wallets, chain, name)
        result = await transfers.rain("alice", names, "DISH", "60")
        assert result["error"] == "INVALID_AMOUNT"
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_nobody_eligible(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", DISH="10", AVAX="1")
        result = await transfers.rain("alice", ["ghost", "alice"], "DISH", "10")
        assert result["error"] == "NO_WALLET"
        assert result["skipped"] == ["ghost"]

    @pytest.mark.asyncio
    async def test_total_must_cover_every_share(self, transfers, chain, member_wallets):
        await create_member(member_wallets, chain, "alice", DISH="1", AVAX="1")
        await create_member(member_wallets, chain, "r1")
        await create_member(member_wallets, chain, "r2")
        result = await transfers.rain("alice", ["r1", "r2"], "DISH", "5")
        assert result["error"] == "INSUFFICIENT_BALANCE"
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_gas_is_checked_for_every_recipient(self, transfers, chain, member_wallets):
        # Enough gas for one token transfer but not for two
        await create_member(member_wallets, chain, "alice", DISH="2", AVAX="0.00007")
        await create_member(member_wallets, chain, "r1")
        await create_member(member_wallets, chain, "r2")
        result = await transfers.rain("alice", ["r1", "r2"], "DISH", "2")
        assert result["error"] == "INSUFFICIENT_GAS"
