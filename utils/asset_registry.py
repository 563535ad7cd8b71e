"""
Asset registry - closed set of tradable tickers mapped to on-chain contracts
Resolved once per network at startup and injected into every wallet service
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union

from services.wallet_errors import UnknownAsset

NATIVE_ADDRESS = "native"
ALL_ASSETS = "ALL"


class AssetTicker(Enum):
    """Known fungible assets"""
    AVAX = "AVAX"
    DISH = "DISH"
    SOCK = "SOCK"
    FLD = "FLD"
    DEGEN = "DEGEN"
    VAPE = "VAPE"


class AssetKind(Enum):
    NATIVE = "native"
    ERC20 = "erc20"
    ERC721 = "erc721"


@dataclass(frozen=True)
class Asset:
    """A fungible asset entry"""
    ticker: str
    address: str
    kind: AssetKind
    decimals: Optional[int] = None  # None means read decimals() from the contract

    @property
    def is_native(self) -> bool:
        return self.kind == AssetKind.NATIVE


@dataclass(frozen=True)
class NFTCollection:
    """A non-fungible collection entry"""
    ticker: str
    address: str
    name: str
    standard: str = "ERC721"


_FUNGIBLE_TABLE: Dict[str, str] = {
    AssetTicker.AVAX.value: NATIVE_ADDRESS,
    AssetTicker.DISH.value: "0xc18A73e3a4Ad464A6e95D842689D3FBaa896a908",
    AssetTicker.SOCK.value: "0xe3315f7EE916eD355Fd69B7fB61C54313A8309a7",
    AssetTicker.FLD.value: "0x26dc8c4B2d52C659FBfDFE53391C1Db11402926d",
    AssetTicker.DEGEN.value: "0xA0f1De56d6a4384fb47c68565b6312A9dEA77eA5",
    AssetTicker.VAPE.value: "0xB68Ea2Ea0AEcb7Fc5f0EDF19546F5E272B9349b8",
}

_NFT_TABLES: Dict[str, Dict[str, NFTCollection]] = {
    "testnet": {
        "OBEEZ": NFTCollection("OBEEZ", "0x5dbC5A50df2B7b61b5C67FecFe552D8984424315", "Obeez"),
    },
    "mainnet": {
        "OBEEZ": NFTCollection("OBEEZ", "0x5E870b3d315F7A8d7089E8B829eD8C3d9cef06eF", "Obeez"),
    },
}

ERC20_ABI = [
    {
        "constant": False,
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
]

ERC721_ABI = [
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
        ],
        "name": "transferFrom",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "to", "type": "address"}, {"name": "tokenId", "type": "uint256"}],
        "name": "approve",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "tokenURI",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class AssetRegistry:
    """Ticker → contract lookup for one network"""

    def __init__(self, network: str, fungible: Dict[str, str], nft_collections: Dict[str, NFTCollection]):
        self.network = network
        self._assets: Dict[str, Asset] = {}
        for ticker, address in fungible.items():
            if address == NATIVE_ADDRESS:
                self._assets[ticker] = Asset(ticker, NATIVE_ADDRESS, AssetKind.NATIVE, decimals=18)
            else:
                self._assets[ticker] = Asset(ticker, address, AssetKind.ERC20)
        self._collections = dict(nft_collections)

    @classmethod
    def for_network(cls, network: str) -> "AssetRegistry":
        network = (network or "testnet").lower()
        if network not in _NFT_TABLES:
            raise ValueError(f"Unsupported network: {network}")
        return cls(network, _FUNGIBLE_TABLE, _NFT_TABLES[network])

    @staticmethod
    def _normalize(ticker: Union[str, AssetTicker]) -> str:
        if isinstance(ticker, AssetTicker):
            return ticker.value
        return (ticker or "").strip().upper()

    def get(self, ticker: Union[str, AssetTicker]) -> Asset:
        key = self._normalize(ticker)
        asset = self._assets.get(key)
        if asset is None:
            raise UnknownAsset(f"Unknown asset: {ticker}", asset=key)
        return asset

    def resolve_address(self, ticker: Union[str, AssetTicker]) -> str:
        return self.get(ticker).address

    def is_native(self, ticker: Union[str, AssetTicker]) -> bool:
        return self.get(ticker).is_native

    def is_known(self, ticker: Union[str, AssetTicker]) -> bool:
        return self._normalize(ticker) in self._assets

    @property
    def native(self) -> Asset:
        return next(asset for asset in self._assets.values() if asset.is_native)

    def fungible_tokens(self) -> List[Asset]:
        """Non-native fungible assets, in table order"""
        return [asset for asset in self._assets.values() if not asset.is_native]

    def all_assets(self) -> List[Asset]:
        """Native first, then the tokens"""
        return [self.native] + self.fungible_tokens()

    def nft_collection(self, ticker: str) -> NFTCollection:
        key = self._normalize(ticker)
        collection = self._collections.get(key)
        if collection is None:
            # Accept a raw contract address for collections donated outside the table
            for candidate in self._collections.values():
                if candidate.address.lower() == (ticker or "").lower():
                    return candidate
            raise UnknownAsset(f"Unknown NFT collection: {ticker}", asset=key)
        return collection

    def nft_collections(self) -> List[NFTCollection]:
        return list(self._collections.values())
