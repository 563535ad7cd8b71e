"""
Wallet operation error taxonomy
Every chain, pricing and balance failure is converted into one of these codes
before it leaves a service, so callers always receive a structured result
"""

from enum import Enum
from typing import Any, Dict, Optional


class WalletErrorCode(Enum):
    """Wire-level error codes returned in service result dicts"""
    NO_WALLET = "NO_WALLET"
    UNKNOWN_ASSET = "UNKNOWN_ASSET"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    NO_FUNDS = "NO_FUNDS"
    INSUFFICIENT_GAS = "INSUFFICIENT_GAS"
    NETWORK_ERROR = "NETWORK_ERROR"
    PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"
    NOT_OWNER = "NOT_OWNER"
    PAYOUT_FAILURE = "PAYOUT_FAILURE"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    TX_FAILED = "TX_FAILED"
    TX_PENDING = "TX_PENDING"
    FEE_COLLECTION_FAILED = "FEE_COLLECTION_FAILED"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"
    NO_ESCROW = "NO_ESCROW"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    NO_ELIGIBLE_TOKENS = "NO_ELIGIBLE_TOKENS"
    WALLET_ALREADY_EXISTS = "WALLET_ALREADY_EXISTS"
    OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class WalletOperationError(Exception):
    """Base error for wallet operations, carries a wire error code"""

    code = WalletErrorCode.INTERNAL_ERROR

    def __init__(self, message: str = "", code: Optional[WalletErrorCode] = None, **details: Any):
        super().__init__(message or self.__class__.__name__)
        if code is not None:
            self.code = code
        self.message = message or self.__class__.__name__
        self.details = details

    def to_result(self, **payload: Any) -> Dict[str, Any]:
        """Render as a failed service result"""
        result = {"success": False, "error": self.code.value, "message": self.message}
        result.update(self.details)
        result.update(payload)
        return result


class NoWallet(WalletOperationError):
    """No custodial wallet exists for the requested owner"""
    code = WalletErrorCode.NO_WALLET


class UnknownAsset(WalletOperationError):
    """Ticker or collection is not in the asset registry"""
    code = WalletErrorCode.UNKNOWN_ASSET


class InsufficientBalance(WalletOperationError):
    """Requester does not hold the requested asset amount"""
    code = WalletErrorCode.INSUFFICIENT_BALANCE


class InsufficientFunds(WalletOperationError):
    """Requested fixed amount exceeds what the pool can spend"""
    code = WalletErrorCode.INSUFFICIENT_FUNDS


class NoFunds(WalletOperationError):
    """Nothing spendable for the selected asset(s)"""
    code = WalletErrorCode.NO_FUNDS


class InvalidAmount(WalletOperationError):
    """Amount is not a positive decimal"""
    code = WalletErrorCode.INVALID_AMOUNT


class InvalidAddress(WalletOperationError):
    """Destination is not a valid EVM address"""
    code = WalletErrorCode.INVALID_ADDRESS


class InsufficientGas(WalletOperationError):
    """Native balance cannot cover fees and gas"""
    code = WalletErrorCode.INSUFFICIENT_GAS


class NetworkError(WalletOperationError):
    """Node unreachable or no gas price available"""
    code = WalletErrorCode.NETWORK_ERROR


class PriceUnavailable(WalletOperationError):
    """Neither price source returned a positive price"""
    code = WalletErrorCode.PRICE_UNAVAILABLE


class NotOwner(WalletOperationError):
    """Non-fungible unit is not held by the expected address"""
    code = WalletErrorCode.NOT_OWNER


class TransferFailed(WalletOperationError):
    """A transaction was rejected by the node or reverted on chain"""
    code = WalletErrorCode.TX_FAILED

    def __init__(self, message: str = "", broadcast: bool = False, tx_hash: Optional[str] = None, **details: Any):
        super().__init__(message, **details)
        # False when the node never accepted the transaction, so its nonce is reusable
        self.broadcast = broadcast
        self.tx_hash = tx_hash


class TransferPending(TransferFailed):
    """Broadcast, but no receipt arrived in time; the transaction may still be mined"""
    code = WalletErrorCode.TX_PENDING

    def __init__(self, message: str = "", tx_hash: Optional[str] = None, **details: Any):
        super().__init__(message, broadcast=True, tx_hash=tx_hash, **details)
        self.details["tx_hash"] = tx_hash


def error_result(code: WalletErrorCode, message: str = "", **payload: Any) -> Dict[str, Any]:
    """Build a failed service result for a code without raising"""
    result = {"success": False, "error": code.value}
    if message:
        result["message"] = message
    result.update(payload)
    return result
