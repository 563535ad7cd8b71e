"""NFT ownership checks, per-collection balances and tokenURI metadata"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

import aiohttp

from config import Config
from services.chain_client import ChainClient
from services.wallet_errors import NetworkError, WalletErrorCode, WalletOperationError, error_result
from utils.asset_registry import AssetRegistry

logger = logging.getLogger(__name__)

IPFS_SCHEME = "ipfs://"


class NFTService:
    """Read-only helpers over the registered NFT collections"""

    def __init__(
        self,
        chain: ChainClient,
        registry: Optional[AssetRegistry] = None,
        ipfs_gateway: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.chain = chain
        self.registry = registry or Config.get_asset_registry()
        self.ipfs_gateway = ipfs_gateway or Config.IPFS_GATEWAY_URL
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.PRICE_API_TIMEOUT_SECONDS)

    def gateway_url(self, uri: str) -> str:
        """Rewrite ipfs:// URIs onto the HTTP gateway"""
        if uri and uri.startswith(IPFS_SCHEME):
            return self.ipfs_gateway + uri[len(IPFS_SCHEME):]
        return uri

    async def verify_ownership(self, collection: str, token_id: Union[int, str], address: str) -> Dict[str, Any]:
        try:
            nft = self.registry.nft_collection(collection)
            owner = await self.chain.owner_of(nft.address, int(token_id))
        except WalletOperationError as e:
            return e.to_result()

        if owner.lower() == (address or "").lower():
            return {"success": True, "owner": owner}
        return error_result(WalletErrorCode.NOT_OWNER, f"{nft.name} #{token_id} is not held by {address}", actual_owner=owner)

    async def get_nft_balances(self, address: str) -> Dict[str, Any]:
        """Units held per collection; a collection that cannot be read is skipped"""
        nfts: List[Dict[str, Any]] = []
        for nft in self.registry.nft_collections():
            try:
                count = await self.chain.nft_balance(nft.address, address)
            except NetworkError as e:
                logger.warning(f"⚠️ NFT_BALANCE_UNAVAILABLE: {nft.ticker} for {address}: {e.message}")
                continue
            if count > 0:
                nfts.append({"collection": nft.ticker, "name": nft.name, "count": count})
        return {"success": True, "nfts": nfts}

    async def _get_json(self, url: str) -> Optional[Dict[str, Any]]:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url) as response:
                if response.status != 200:
                    logger.warning(f"⚠️ NFT_METADATA_HTTP_ERROR: {url} status={response.status}")
                    return None
                return await response.json(content_type=None)

    async def fetch_metadata(self, collection: str, token_id: Union[int, str]) -> Dict[str, Any]:
        """
        Name and image of one unit, read from its tokenURI JSON.

        Returns:
            {"success": True, "name", "image_url"} or a NETWORK_ERROR result
        """
        try:
            nft = self.registry.nft_collection(collection)
            token_uri = await self.chain.token_uri(nft.address, int(token_id))
        except WalletOperationError as e:
            return e.to_result()

        url = self.gateway_url(token_uri)
        try:
            metadata = await self._get_json(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"⚠️ NFT_METADATA_FAILED: {nft.ticker}#{token_id} {url}: {e}")
            return error_result(WalletErrorCode.NETWORK_ERROR, "Could not fetch NFT metadata", detail=str(e))
        if not isinstance(metadata, dict):
            return error_result(WalletErrorCode.NETWORK_ERROR, "Could not fetch NFT metadata")

        image_url = metadata.get("image") or metadata.get("image_url") or ""
        return {
            "success": True,
            "name": metadata.get("name") or f"{nft.name} #{token_id}",
            "image_url": self.gateway_url(image_url),
        }
