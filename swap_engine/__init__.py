"""
Base Swap Engine
================

Self-custodial token swaps on Base across Uniswap V2, Aerodrome and
Uniswap V3, with slippage protection and a locally encrypted hot key.

Quick Start:
------------

    from swap_engine import EngineContext, TradingSession

    session = TradingSession(EngineContext())
    await session.connect("0x<private key>", "password")   # or unlock("password")

    state = await session.fetch_token("https://basescan.org/token/0x...")
    print(state.token.symbol, state.route.dex.value, format_usd(state.price_usd))

    result = await session.trade("buy", "0.01", slippage=15)
    print(result.tx_hash)

Configuration comes from the environment (.env supported):
ALCHEMY_API_KEY, BASE_RPC_URLS, SWAP_ENGINE_KEYSTORE, SWAP_ENGINE_LOG_LEVEL,
SWAP_ENGINE_RPC_QUORUM, SWAP_ENGINE_PRIORITY_FEE_GWEI.
"""

__version__ = "0.1.0"

from .config import EngineConfig, GasSettings, load_config, default_endpoints
from .context import EngineContext
from .custody import KeyCustody, validate_private_key
from .errors import (
    SwapEngineError,
    NetworkUnavailable,
    NoAddressFound,
    CustodyError,
    InvalidKeyFormat,
    InvalidPassword,
    NoStoredWallet,
    TradeError,
    InvalidTradeRequest,
    WalletNotConnected,
    TradeInProgress,
    NoLiquidity,
    InsufficientGas,
    InsufficientBalance,
    ApprovalFailed,
    TransactionReverted,
    BroadcastFailed,
)
from .liquidity import LiquidityResolver
from .models import (
    DexFamily,
    TradeDirection,
    TradeState,
    NetworkEndpoint,
    TokenDescriptor,
    LiquidityRoute,
    PriceSnapshot,
    FeeData,
    TradeRequest,
    TradeEvent,
    TradeResult,
)
from .network import NetworkGateway, QuorumProvider
from .pricing import PriceOracle, format_usd
from .session import TradingSession, BalancePoller, WalletState, TokenState
from .tokens import TokenRegistry, extract_token_address
from .trader import TradeExecutor, min_amount_out
from .wallet import HotWallet, connect_hot_wallet, normalize_private_key, shorten_address

__all__ = [
    "__version__",
    # Config
    "EngineConfig",
    "GasSettings",
    "load_config",
    "default_endpoints",
    # Services
    "EngineContext",
    "NetworkGateway",
    "QuorumProvider",
    "KeyCustody",
    "validate_private_key",
    "TokenRegistry",
    "extract_token_address",
    "PriceOracle",
    "format_usd",
    "LiquidityResolver",
    "TradeExecutor",
    "min_amount_out",
    "TradingSession",
    "BalancePoller",
    "WalletState",
    "TokenState",
    "HotWallet",
    "connect_hot_wallet",
    "normalize_private_key",
    "shorten_address",
    # Models
    "DexFamily",
    "TradeDirection",
    "TradeState",
    "NetworkEndpoint",
    "TokenDescriptor",
    "LiquidityRoute",
    "PriceSnapshot",
    "FeeData",
    "TradeRequest",
    "TradeEvent",
    "TradeResult",
    # Errors
    "SwapEngineError",
    "NetworkUnavailable",
    "NoAddressFound",
    "CustodyError",
    "InvalidKeyFormat",
    "InvalidPassword",
    "NoStoredWallet",
    "TradeError",
    "InvalidTradeRequest",
    "WalletNotConnected",
    "TradeInProgress",
    "NoLiquidity",
    "InsufficientGas",
    "InsufficientBalance",
    "ApprovalFailed",
    "TransactionReverted",
    "BroadcastFailed",
]
