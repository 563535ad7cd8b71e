"""
Shared fixtures for the prize pool wallet tests

- SQLite (aiosqlite) database with the full schema, one file per test
- In-memory EVM chain that tracks balances, NFT owners and nonces
- Fixed USD prices so withdrawal fees are exact
- Fully wired services over those fakes
"""

import itertools
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio
from eth_account import Account
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from models import Base
from services.atomic_lock_manager import AtomicLockManager
from services.chain_client import ChainClient
from services.escrow_ledger import EscrowLedger
from services.member_transfer_service import MemberTransferService
from services.nft_service import NFTService
from services.nonce_allocator import NonceAllocator
from services.pool_wallet_service import PoolWalletService
from services.prize_pool_service import PrizePoolService
from services.transaction_ledger import TransactionLedger
from services.wallet_errors import NetworkError, PriceUnavailable, TransferFailed, TransferPending
from services.wallet_service import MemberWalletService
from services.withdrawal_service import WithdrawalService
from utils.asset_registry import Asset, AssetRegistry
from utils.decimal_precision import MonetaryDecimal
from utils.key_vault import KeyVault

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

GWEI = 10 ** 9
NATIVE_GAS = 21_000
TOKEN_GAS = 60_000
NFT_GAS = 80_000

FEE_COLLECTOR = "0x00000000000000000000000000000000000fee01"
DEVELOPER = "0x000000000000000000000000000000000000de01"
EXTERNAL = "0x1111111111111111111111111111111111111111"


def units(amount, decimals: int = 18) -> int:
    return MonetaryDecimal.to_base_units(amount, decimals)


def tx_hash(n: int) -> str:
    """Hash of the n-th transaction sent through the fake chain, counting from 1"""
    return f"0x{n:064x}"


class FakeChainClient:
    """
    In-memory stand-in for ChainClient.

    Balances are keyed by (ticker, lower-cased address); gas is charged in the
    native asset on every successful send. Failures are injected per asset,
    per recipient, or for every NFT transfer; receipts can revert or time out.
    """

    checksum = staticmethod(ChainClient.checksum)
    is_address = staticmethod(ChainClient.is_address)

    def __init__(self, registry: AssetRegistry, gas_price: Optional[int] = GWEI):
        self.registry = registry
        self.gas_price = gas_price
        self.balances: Dict[Tuple[str, str], int] = {}
        self.owners: Dict[Tuple[str, int], str] = {}
        self.token_uris: Dict[Tuple[str, int], str] = {}
        self.nonces: Dict[str, int] = {}
        self.sent: List[Dict[str, Any]] = []
        self.fail_assets: Set[str] = set()
        self.fail_recipients: Set[str] = set()
        self.fail_receipts: Set[str] = set()
        # Broadcast but unconfirmed when waited on; drop a hash to let it be mined
        self.timeout_receipts: Set[str] = set()
        self.fail_nft_transfers = False
        self.unreadable_collections: Set[str] = set()
        self._hashes = itertools.count(1)

    # -- test helpers -------------------------------------------------

    def fund(self, ticker: str, address: str, amount) -> None:
        asset = self.registry.get(ticker)
        key = (asset.ticker, address.lower())
        self.balances[key] = self.balances.get(key, 0) + units(amount, asset.decimals or 18)

    def balance_of(self, ticker: str, address: str) -> int:
        return self.balances.get((self.registry.get(ticker).ticker, address.lower()), 0)

    def mint_nft(self, collection_address: str, token_id: int, owner: str) -> None:
        self.owners[(collection_address.lower(), int(token_id))] = self.checksum(owner)

    def sends_to(self, address: str) -> List[Dict[str, Any]]:
        return [tx for tx in self.sent if tx["to"].lower() == address.lower()]

    def _next_hash(self) -> str:
        return tx_hash(next(self._hashes))

    def _take_nonce(self, address: str, nonce: Optional[int]) -> int:
        current = self.nonces.get(address.lower(), 0)
        if nonce is None:
            nonce = current
        self.nonces[address.lower()] = max(current, nonce + 1)
        return nonce

    # -- reads --------------------------------------------------------

    async def get_gas_price(self) -> int:
        if not self.gas_price:
            raise NetworkError("Could not fetch gas price from provider")
        return self.gas_price

    async def get_native_balance(self, address: str) -> int:
        return self.balances.get((self.registry.native.ticker, address.lower()), 0)

    async def get_balance(self, asset: Asset, owner: str) -> int:
        return self.balances.get((asset.ticker, owner.lower()), 0)

    async def get_decimals(self, asset: Asset) -> int:
        return asset.decimals if asset.decimals is not None else 18

    async def owner_of(self, collection_address: str, token_id: int) -> str:
        owner = self.owners.get((collection_address.lower(), int(token_id)))
        if owner is None:
            raise NetworkError(f"Could not read owner of {collection_address}#{token_id}: execution reverted")
        return owner

    async def nft_balance(self, collection_address: str, owner: str) -> int:
        if collection_address.lower() in self.unreadable_collections:
            raise NetworkError(f"Could not read NFT balance of {owner}")
        return sum(
            1 for (collection, _), holder in self.owners.items()
            if collection == collection_address.lower() and holder.lower() == owner.lower()
        )

    async def token_uri(self, collection_address: str, token_id: int) -> str:
        return self.token_uris.get((collection_address.lower(), int(token_id)), f"ipfs://QmTest/{token_id}.json")

    async def estimate_transfer_gas(self, asset: Asset, sender: str, to: str, amount: int) -> int:
        return NATIVE_GAS if asset.is_native else TOKEN_GAS

    async def estimate_nft_transfer_gas(self, collection_address: str, sender: str, to: str, token_id: int) -> int:
        return NFT_GAS

    # -- sends --------------------------------------------------------

    async def allocate_nonces(self, address: str) -> NonceAllocator:
        return NonceAllocator(address, self.nonces.get(address.lower(), 0))

    async def wait_for_receipt(self, tx_hash: str) -> None:
        if tx_hash in self.timeout_receipts:
            raise TransferPending(f"No receipt for {tx_hash} yet", tx_hash=tx_hash)
        if tx_hash in self.fail_receipts:
            raise TransferFailed(f"Transaction {tx_hash} reverted", broadcast=True, tx_hash=tx_hash)

    async def get_receipt_status(self, tx_hash: str) -> Optional[bool]:
        if tx_hash in self.timeout_receipts or not any(tx["tx_hash"] == tx_hash for tx in self.sent):
            return None
        return tx_hash not in self.fail_receipts

    def _charge_gas(self, sender: str, gas_limit: int, gas_price: int, extra_native: int = 0) -> None:
        native_key = (self.registry.native.ticker, sender.lower())
        cost = gas_limit * gas_price + extra_native
        if self.balances.get(native_key, 0) < cost:
            raise TransferFailed("insufficient funds for gas * price + value", broadcast=False)
        self.balances[native_key] -= cost

    async def send_transfer(self, account, asset: Asset, to: str, amount: int, gas_limit: int, gas_price: int,
                            nonce: Optional[int] = None, wait: bool = True) -> str:
        sender = account.address
        if asset.ticker in self.fail_assets or to.lower() in self.fail_recipients:
            raise TransferFailed(f"{asset.ticker} transfer to {to} reverted", broadcast=False)

        if asset.is_native:
            self._charge_gas(sender, gas_limit, gas_price, extra_native=amount)
        else:
            token_key = (asset.ticker, sender.lower())
            if self.balances.get(token_key, 0) < amount:
                raise TransferFailed("ERC20: transfer amount exceeds balance", broadcast=False)
            self._charge_gas(sender, gas_limit, gas_price)
            self.balances[token_key] -= amount

        receiver_key = (asset.ticker, to.lower())
        self.balances[receiver_key] = self.balances.get(receiver_key, 0) + amount
        tx_hash = self._next_hash()
        self.sent.append({
            "tx_hash": tx_hash, "from": sender, "to": to, "asset": asset.ticker, "amount": amount,
            "nonce": self._take_nonce(sender, nonce),
        })
        if wait:
            await self.wait_for_receipt(tx_hash)
        return tx_hash

    async def send_nft(self, account, collection_address: str, to: str, token_id: int, gas_limit: int, gas_price: int,
                       nonce: Optional[int] = None, wait: bool = True) -> str:
        sender = account.address
        key = (collection_address.lower(), int(token_id))
        if self.fail_nft_transfers or to.lower() in self.fail_recipients:
            raise TransferFailed(f"NFT transfer of #{token_id} reverted", broadcast=False)
        if self.owners.get(key, "").lower() != sender.lower():
            raise TransferFailed("ERC721: caller is not token owner", broadcast=False)
        self._charge_gas(sender, gas_limit, gas_price)
        self.owners[key] = self.checksum(to)
        tx_hash = self._next_hash()
        self.sent.append({
            "tx_hash": tx_hash, "from": sender, "to": to, "asset": f"NFT#{token_id}", "amount": 1,
            "nonce": self._take_nonce(sender, nonce),
        })
        if wait:
            await self.wait_for_receipt(tx_hash)
        return tx_hash


class FakePrices:
    """Fixed USD prices per ticker"""

    def __init__(self, prices: Dict[str, Decimal]):
        self.prices = dict(prices)
        self.calls: List[str] = []

    async def resolve_asset_price(self, ticker: str) -> Decimal:
        self.calls.append(ticker)
        price = self.prices.get(ticker.upper())
        if price is None:
            raise PriceUnavailable(f"No USD price available for {ticker}", asset=ticker)
        return price


# ============================================================================
# FIXTURES
# ============================================================================

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database with the full schema"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'wallets.db'}", echo=False)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
def registry():
    return AssetRegistry.for_network("testnet")


@pytest.fixture
def key_vault():
    return KeyVault(KeyVault.generate_key())


@pytest.fixture
def chain(registry):
    return FakeChainClient(registry)


@pytest.fixture
def prices():
    return FakePrices({"AVAX": Decimal("10"), "DISH": Decimal("1"), "SOCK": Decimal("0.5")})


@pytest.fixture
def lock_manager(session_factory):
    return AtomicLockManager(session_factory, default_timeout=60)


@pytest.fixture
def transactions(session_factory):
    return TransactionLedger(session_factory)


@pytest.fixture
def escrow_ledger(session_factory):
    return EscrowLedger(session_factory)


@pytest.fixture
def pool_wallets(key_vault, session_factory):
    return PoolWalletService(key_vault, session_factory)


@pytest.fixture
def member_wallets(chain, key_vault, registry, session_factory):
    return MemberWalletService(chain, key_vault, registry, session_factory)


@pytest.fixture
def nft_service(chain, registry):
    return NFTService(chain, registry, ipfs_gateway="https://gateway.test/ipfs/")


@pytest.fixture
def prize_pool(chain, pool_wallets, member_wallets, escrow_ledger, transactions, lock_manager, registry, nft_service):
    return PrizePoolService(
        chain=chain,
        pool_wallets=pool_wallets,
        member_wallets=member_wallets,
        escrow_ledger=escrow_ledger,
        transactions=transactions,
        lock_manager=lock_manager,
        registry=registry,
        nfts=nft_service,
        developer_address=DEVELOPER,
    )


@pytest.fixture
def withdrawals(chain, prices, member_wallets, transactions, lock_manager, registry, session_factory):
    return WithdrawalService(
        chain=chain,
        prices=prices,
        member_wallets=member_wallets,
        transactions=transactions,
        lock_manager=lock_manager,
        registry=registry,
        session_factory=session_factory,
        fee_collector=FEE_COLLECTOR,
        fee_percentage=Decimal("0.02"),
        nft_fee=Decimal("0.02"),
    )


@pytest.fixture
def transfers(chain, member_wallets, transactions, lock_manager, registry):
    return MemberTransferService(
        chain=chain,
        member_wallets=member_wallets,
        transactions=transactions,
        lock_manager=lock_manager,
        registry=registry,
        send_delay_seconds=0,
        max_recipients=5,
    )


@pytest_asyncio.fixture
async def funded_pool(prize_pool, chain):
    """Pool for community 'c1' (no tenant) holding 10 AVAX, 100 DISH and 50 SOCK"""
    created = await prize_pool.get_or_create_wallet("c1")
    address = created["address"]
    chain.fund("AVAX", address, "10")
    chain.fund("DISH", address, "100")
    chain.fund("SOCK", address, "50")
    return address


async def create_member(member_wallets, chain, member_id: str, **holdings) -> str:
    """Create a member wallet and fund it; holdings are ticker=amount"""
    result = await member_wallets.create_wallet(member_id)
    address = result["address"]
    for ticker, amount in holdings.items():
        chain.fund(ticker, address, amount)
    return address


def random_address() -> str:
    return Account.create().address
