"""
EVM chain client for custodial wallets.

Wraps AsyncWeb3 for balance reads, gas estimation, ERC-20 / ERC-721 transfers
and receipt waits. Raw web3 and transport errors never leave this module:
reads fail with NetworkError, sends fail with TransferFailed (flagging
whether the transaction reached the node so the caller can reuse its nonce),
and a broadcast transaction without a receipt yet raises TransferPending.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from config import Config
from services.nonce_allocator import NonceAllocator
from services.wallet_errors import NetworkError, TransferFailed, TransferPending
from utils.asset_registry import ERC20_ABI, ERC721_ABI, Asset

logger = logging.getLogger(__name__)

CHAIN_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, ValueError, ConnectionError)


class ChainClient:
    """Async access to one EVM network"""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        chain_id: Optional[int] = None,
        receipt_timeout: Optional[int] = None,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.rpc_url = rpc_url or Config.RPC_URL
        self.chain_id = chain_id or Config.CHAIN_ID
        self.receipt_timeout = receipt_timeout or Config.TX_RECEIPT_TIMEOUT
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(self.rpc_url, request_kwargs={"timeout": 30}))
        self._decimals_cache: Dict[str, int] = {}

    @staticmethod
    def checksum(address: str) -> str:
        return Web3.to_checksum_address(address)

    @staticmethod
    def is_address(address: str) -> bool:
        return bool(address) and Web3.is_address(address)

    def _erc20(self, token_address: str):
        return self.w3.eth.contract(address=self.checksum(token_address), abi=ERC20_ABI)

    def _erc721(self, collection_address: str):
        return self.w3.eth.contract(address=self.checksum(collection_address), abi=ERC721_ABI)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_gas_price(self) -> int:
        try:
            gas_price = await self.w3.eth.gas_price
        except CHAIN_ERRORS as e:
            logger.error(f"❌ GAS_PRICE_UNAVAILABLE: {e}")
            raise NetworkError(f"Could not fetch gas price: {e}") from e
        if not gas_price:
            raise NetworkError("Could not fetch gas price from provider")
        return int(gas_price)

    async def get_native_balance(self, address: str) -> int:
        try:
            return int(await self.w3.eth.get_balance(self.checksum(address)))
        except CHAIN_ERRORS as e:
            raise NetworkError(f"Could not read native balance of {address}: {e}") from e

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        try:
            return int(await self._erc20(token_address).functions.balanceOf(self.checksum(owner)).call())
        except CHAIN_ERRORS as e:
            raise NetworkError(f"Could not read token balance {token_address} of {owner}: {e}") from e

    async def get_token_decimals(self, token_address: str) -> int:
        key = token_address.lower()
        if key not in self._decimals_cache:
            try:
                self._decimals_cache[key] = int(await self._erc20(token_address).functions.decimals().call())
            except CHAIN_ERRORS as e:
                raise NetworkError(f"Could not read decimals of {token_address}: {e}") from e
        return self._decimals_cache[key]

    async def get_balance(self, asset: Asset, owner: str) -> int:
        if asset.is_native:
            return await self.get_native_balance(owner)
        return await self.get_token_balance(asset.address, owner)

    async def get_decimals(self, asset: Asset) -> int:
        if asset.decimals is not None:
            return asset.decimals
        return await self.get_token_decimals(asset.address)

    async def owner_of(self, collection_address: str, token_id: int) -> str:
        try:
            owner = await self._erc721(collection_address).functions.ownerOf(int(token_id)).call()
        except CHAIN_ERRORS as e:
            raise NetworkError(f"Could not read owner of {collection_address}#{token_id}: {e}") from e
        return self.checksum(owner)

    async def nft_balance(self, collection_address: str, owner: str) -> int:
        try:
            return int(await self._erc721(collection_address).functions.balanceOf(self.checksum(owner)).call())
        except CHAIN_ERRORS as e:
            raise NetworkError(f"Could not read NFT balance of {owner}: {e}") from e

    async def token_uri(self, collection_address: str, token_id: int) -> str:
        try:
            return await self._erc721(collection_address).functions.tokenURI(int(token_id)).call()
        except CHAIN_ERRORS as e:
            raise NetworkError(f"Could not read tokenURI of {collection_address}#{token_id}: {e}") from e

    # ------------------------------------------------------------------
    # Gas estimation
    # ------------------------------------------------------------------

    async def estimate_transfer_gas(self, asset: Asset, sender: str, to: str, amount: int) -> int:
        try:
            if asset.is_native:
                return int(await self.w3.eth.estimate_gas({
                    "from": self.checksum(sender),
                    "to": self.checksum(to),
                    "value": int(amount),
                }))
            return int(await self._erc20(asset.address).functions.transfer(
                self.checksum(to), int(amount)
            ).estimate_gas({"from": self.checksum(sender)}))
        except CHAIN_ERRORS as e:
            raise NetworkError(f"Gas estimation failed for {asset.ticker}: {e}") from e

    async def estimate_nft_transfer_gas(self, collection_address: str, sender: str, to: str, token_id: int) -> int:
        try:
            return int(await self._erc721(collection_address).functions.transferFrom(
                self.checksum(sender), self.checksum(to), int(token_id)
            ).estimate_gas({"from": self.checksum(sender)}))
        except CHAIN_ERRORS as e:
            raise NetworkError(f"Gas estimation failed for NFT {collection_address}#{token_id}: {e}") from e

    # ------------------------------------------------------------------
    # Sends
    # ------------------------------------------------------------------

    async def allocate_nonces(self, address: str) -> NonceAllocator:
        """Allocator seeded from the pending transaction count"""
        try:
            starting = await self.w3.eth.get_transaction_count(self.checksum(address), "pending")
        except CHAIN_ERRORS as e:
            raise NetworkError(f"Could not read nonce for {address}: {e}") from e
        return NonceAllocator(address, int(starting))

    async def _submit(self, account: LocalAccount, tx: Dict[str, Any], wait: bool) -> str:
        try:
            signed = account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except CHAIN_ERRORS as e:
            logger.error(f"❌ TX_REJECTED: from={account.address} nonce={tx.get('nonce')}: {e}")
            raise TransferFailed(f"Transaction rejected: {e}", broadcast=False) from e

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"📤 TX_SUBMITTED: {tx_hash_hex} from={account.address} nonce={tx.get('nonce')}")
        if wait:
            await self.wait_for_receipt(tx_hash_hex)
        return tx_hash_hex

    async def wait_for_receipt(self, tx_hash: str) -> None:
        """
        Block until one confirmation.

        Raises:
            TransferFailed: the transaction reverted
            TransferPending: no receipt within the timeout; the outcome is unknown
        """
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except CHAIN_ERRORS as e:
            logger.warning(f"⏳ TX_RECEIPT_PENDING: {tx_hash} not confirmed after {self.receipt_timeout}s: {e}")
            raise TransferPending(f"No receipt for {tx_hash} yet: {e}", tx_hash=tx_hash) from e
        if receipt.get("status") != 1:
            raise TransferFailed(f"Transaction {tx_hash} reverted", broadcast=True, tx_hash=tx_hash)
        logger.info(f"✅ TX_CONFIRMED: {tx_hash} block={receipt.get('blockNumber')}")

    async def get_receipt_status(self, tx_hash: str) -> Optional[bool]:
        """True if mined successfully, False if reverted, None while not yet mined"""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except CHAIN_ERRORS as e:
            raise NetworkError(f"Could not read receipt for {tx_hash}: {e}") from e
        return receipt.get("status") == 1

    async def _resolve_nonce(self, address: str, nonce: Optional[int]) -> int:
        if nonce is not None:
            return nonce
        allocator = await self.allocate_nonces(address)
        return allocator.next()

    async def send_transfer(
        self,
        account: LocalAccount,
        asset: Asset,
        to: str,
        amount: int,
        gas_limit: int,
        gas_price: int,
        nonce: Optional[int] = None,
        wait: bool = True,
    ) -> str:
        """Send a fungible asset, returns the 0x transaction hash"""
        nonce = await self._resolve_nonce(account.address, nonce)
        base_tx = {
            "from": account.address,
            "nonce": nonce,
            "gas": int(gas_limit),
            "gasPrice": int(gas_price),
            "chainId": self.chain_id,
        }
        if asset.is_native:
            tx = dict(base_tx, to=self.checksum(to), value=int(amount))
        else:
            try:
                tx = await self._erc20(asset.address).functions.transfer(
                    self.checksum(to), int(amount)
                ).build_transaction(base_tx)
            except CHAIN_ERRORS as e:
                raise TransferFailed(f"Could not build {asset.ticker} transfer: {e}", broadcast=False) from e
        return await self._submit(account, tx, wait)

    async def send_nft(
        self,
        account: LocalAccount,
        collection_address: str,
        to: str,
        token_id: int,
        gas_limit: int,
        gas_price: int,
        nonce: Optional[int] = None,
        wait: bool = True,
    ) -> str:
        """transferFrom(owner, to, tokenId) signed by the owner"""
        nonce = await self._resolve_nonce(account.address, nonce)
        try:
            tx = await self._erc721(collection_address).functions.transferFrom(
                self.checksum(account.address), self.checksum(to), int(token_id)
            ).build_transaction({
                "from": account.address,
                "nonce": nonce,
                "gas": int(gas_limit),
                "gasPrice": int(gas_price),
                "chainId": self.chain_id,
            })
        except CHAIN_ERRORS as e:
            raise TransferFailed(f"Could not build NFT transfer: {e}", broadcast=False) from e
        return await self._submit(account, tx, wait)
