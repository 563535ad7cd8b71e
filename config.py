"""Configuration management for the custodial prize-pool wallet service"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "10"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "20"))

    # Chain access - NETWORK selects the asset table (testnet | mainnet)
    NETWORK = os.getenv("NETWORK", "testnet").lower().strip()
    RPC_URL = os.getenv("RPC_URL", os.getenv("AVALANCHE_RPC", "https://api.avax-test.network/ext/bc/C/rpc"))
    CHAIN_ID = int(os.getenv("CHAIN_ID", "43113" if NETWORK == "testnet" else "43114"))
    TX_RECEIPT_TIMEOUT = int(os.getenv("TX_RECEIPT_TIMEOUT", "120"))
    EXPLORER_TX_URL = os.getenv(
        "EXPLORER_TX_URL",
        "https://testnet.snowtrace.io/tx/" if NETWORK == "testnet" else "https://snowtrace.io/tx/",
    )

    # Signing keys are stored AES-256-GCM encrypted with this base64 32-byte key
    WALLET_ENCRYPTION_KEY = os.getenv("WALLET_ENCRYPTION_KEY", os.getenv("ENCRYPTION_KEY"))

    # Fee configuration
    FEE_COLLECTOR_ADDRESS = os.getenv("FEE_COLLECTOR_ADDRESS")
    DEVELOPER_ADDRESS = os.getenv("DEVELOPER_ADDRESS")
    WITHDRAWAL_FEE_PERCENTAGE = Decimal(os.getenv("WITHDRAWAL_FEE_PERCENTAGE", "0.02"))
    NFT_WITHDRAWAL_FEE = Decimal(os.getenv("NFT_WITHDRAWAL_FEE", "0.02"))

    # Price discovery
    PRICE_CACHE_TTL_SECONDS = int(os.getenv("PRICE_CACHE_TTL_SECONDS", "300"))
    PRICE_API_TIMEOUT_SECONDS = int(os.getenv("PRICE_API_TIMEOUT_SECONDS", "10"))
    PRIMARY_PRICE_API_URL = os.getenv(
        "PRIMARY_PRICE_API_URL", "https://api.dexscreener.com/latest/dex/tokens"
    )
    SECONDARY_PRICE_API_URL = os.getenv(
        "SECONDARY_PRICE_API_URL", "https://api.geckoterminal.com/api/v2/networks"
    )
    GECKOTERMINAL_NETWORK = os.getenv("GECKOTERMINAL_NETWORK", "avax")
    # WAVAX on C-Chain mainnet; testnet tokens have no market so mainnet pricing is used
    NATIVE_PRICE_REFERENCE_ADDRESS = os.getenv(
        "NATIVE_PRICE_REFERENCE_ADDRESS", "0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7"
    )

    # NFT metadata gateway
    IPFS_GATEWAY_URL = os.getenv("IPFS_GATEWAY_URL", "https://ipfs.io/ipfs/")

    # Bulk distribution
    RAIN_SEND_DELAY_SECONDS = float(os.getenv("RAIN_SEND_DELAY_SECONDS", "0"))
    RAIN_MAX_RECIPIENTS = int(os.getenv("RAIN_MAX_RECIPIENTS", "50"))

    # Serialization locks
    LOCK_TIMEOUT_SECONDS = int(os.getenv("LOCK_TIMEOUT_SECONDS", "300"))

    # Conservation audit
    ESCROW_AUDIT_ENABLED = os.getenv("ESCROW_AUDIT_ENABLED", "true").lower() == "true"
    ESCROW_AUDIT_INTERVAL_MINUTES = int(os.getenv("ESCROW_AUDIT_INTERVAL_MINUTES", "30"))

    _asset_registry = None

    @staticmethod
    def get_asset_registry():
        """Asset table for the configured network, resolved once per process"""
        if Config._asset_registry is None:
            from utils.asset_registry import AssetRegistry

            Config._asset_registry = AssetRegistry.for_network(Config.NETWORK)
        return Config._asset_registry

    @staticmethod
    def validate_wallet_config():
        """Validate the settings every money-moving operation depends on"""
        missing = []
        if not Config.DATABASE_URL:
            missing.append("DATABASE_URL")
        if not Config.WALLET_ENCRYPTION_KEY:
            missing.append("WALLET_ENCRYPTION_KEY")
        if not Config.FEE_COLLECTOR_ADDRESS:
            missing.append("FEE_COLLECTOR_ADDRESS")

        if Config.NETWORK not in ("testnet", "mainnet"):
            raise ValueError(f"NETWORK must be 'testnet' or 'mainnet', got '{Config.NETWORK}'")

        if missing:
            error_msg = f"❌ Missing required wallet configuration: {', '.join(missing)}"
            if Config.IS_PRODUCTION:
                raise ValueError(error_msg)
            logger.warning(error_msg)
            return False

        if not (Decimal("0") <= Config.WITHDRAWAL_FEE_PERCENTAGE < Decimal("1")):
            raise ValueError(
                f"WITHDRAWAL_FEE_PERCENTAGE must be in [0, 1), got {Config.WITHDRAWAL_FEE_PERCENTAGE}"
            )
        return True

    @staticmethod
    def log_wallet_config():
        """Log current wallet configuration for debugging"""
        logger.info("🔧 Wallet Service Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Network: {Config.NETWORK} (chain id {Config.CHAIN_ID})")
        logger.info(f"   RPC: {Config.RPC_URL}")
        logger.info(f"   Withdrawal fee: {Config.WITHDRAWAL_FEE_PERCENTAGE * 100}%")
        logger.info(f"   NFT withdrawal fee: {Config.NFT_WITHDRAWAL_FEE} native")
        logger.info(f"   Price cache TTL: {Config.PRICE_CACHE_TTL_SECONDS}s")
        logger.info(f"   Fee collector configured: {bool(Config.FEE_COLLECTOR_ADDRESS)}")
        logger.info(f"   Escrow audit: {'enabled' if Config.ESCROW_AUDIT_ENABLED else 'disabled'}")
