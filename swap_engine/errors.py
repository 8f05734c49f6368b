"""
Swap Engine Errors - exception taxonomy shared by every component.

Advisory lookups (prices, display balances) never raise these; safety
operations (trades, key decryption) raise exactly one of them.
"""
from typing import Optional


class SwapEngineError(Exception):
    """Base class for all engine errors"""
    pass


class NetworkUnavailable(SwapEngineError):
    """Every configured RPC endpoint failed to answer, or the receipt wait broke"""

    def __init__(self, message: str, errors: Optional[dict] = None, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.errors = errors or {}
        self.tx_hash = tx_hash


class NoAddressFound(SwapEngineError, ValueError):
    """No 0x-prefixed 40 hex character address in the given reference"""
    pass


# =============================================================================
# Custody
# =============================================================================

class CustodyError(SwapEngineError):
    """Key custody failure"""
    pass


class InvalidKeyFormat(CustodyError, ValueError):
    """Private key is not 64 hex characters, or is outside the curve order"""
    pass


class InvalidPassword(CustodyError):
    """Authentication tag mismatch or malformed encrypted blob"""
    pass


class NoStoredWallet(CustodyError):
    """Unlock requested but no encrypted wallet is persisted"""
    pass


# =============================================================================
# Trading
# =============================================================================

class TradeError(SwapEngineError):
    """Échec terminal d'un trade"""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class InvalidTradeRequest(TradeError, ValueError):
    """Préconditions du trade non remplies, rien n'a été tenté"""
    pass


class WalletNotConnected(InvalidTradeRequest):
    """Aucun wallet déverrouillé dans la session"""
    pass


class TradeInProgress(TradeError):
    """Un autre trade est déjà en cours pour ce wallet"""
    pass


class NoLiquidity(TradeError):
    """Pas de pool utilisable, ou quote nulle du router"""
    pass


class InsufficientGas(TradeError):
    """Balance ETH sous la réserve minimale pour le gas"""
    pass


class InsufficientBalance(TradeError):
    """Balance insuffisante pour le trade"""
    pass


class TokenCallFailed(TradeError):
    """Le contrat du token a rejeté un appel balanceOf/allowance"""
    pass


class ApprovalFailed(TradeError):
    """Transaction d'approval revertée"""

    def __init__(self, message: str, tx_hash: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message, tx_hash)
        self.reason = reason


class TransactionReverted(TradeError):
    """Swap miné avec status 0"""

    def __init__(self, message: str, tx_hash: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message, tx_hash)
        self.reason = reason


class BroadcastFailed(TradeError):
    """Signature ou envoi de la transaction brute refusé"""
    pass


class TradeFailed(TradeError):
    """Erreur inattendue pendant le trade (cause chaînée dans __cause__)"""
    pass
