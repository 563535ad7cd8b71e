"""
Receipt handling: revert, timeout and later re-check
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from web3.exceptions import TimeExhausted, TransactionNotFound

from services.chain_client import ChainClient
from services.wallet_errors import NetworkError, TransferFailed, TransferPending

TX = "0x" + "ab" * 32


@pytest.fixture
def w3():
    return MagicMock()


@pytest.fixture
def client(w3):
    return ChainClient(rpc_url="http://node.test", chain_id=43113, receipt_timeout=1, w3=w3)


class TestReceipts:

    @pytest.mark.asyncio
    async def test_successful_receipt(self, client, w3):
        w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 1, "blockNumber": 7})
        await client.wait_for_receipt(TX)
        w3.eth.wait_for_transaction_receipt.assert_awaited_once_with(TX, timeout=1)

    @pytest.mark.asyncio
    async def test_reverted_receipt_is_a_failure(self, client, w3):
        w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 0})
        with pytest.raises(TransferFailed) as exc_info:
            await client.wait_for_receipt(TX)
        assert not isinstance(exc_info.value, TransferPending)
        assert exc_info.value.broadcast is True
        assert exc_info.value.tx_hash == TX

    @pytest.mark.asyncio
    async def test_timeout_is_pending_not_reverted(self, client, w3):
        w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted("not in chain after 1s"))
        with pytest.raises(TransferPending) as exc_info:
            await client.wait_for_receipt(TX)
        assert exc_info.value.tx_hash == TX
        assert exc_info.value.to_result()["error"] == "TX_PENDING"

    @pytest.mark.asyncio
    async def test_receipt_status(self, client, w3):
        w3.eth.get_transaction_receipt = AsyncMock(return_value={"status": 1})
        assert await client.get_receipt_status(TX) is True

        w3.eth.get_transaction_receipt = AsyncMock(return_value={"status": 0})
        assert await client.get_receipt_status(TX) is False

        w3.eth.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("unknown"))
        assert await client.get_receipt_status(TX) is None

    @pytest.mark.asyncio
    async def test_receipt_status_node_error(self, client, w3):
        w3.eth.get_transaction_receipt = AsyncMock(side_effect=ConnectionError("refused"))
        with pytest.raises(NetworkError):
            await client.get_receipt_status(TX)
