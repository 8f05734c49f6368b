"""
Swap Engine - Configuration
Loaded once per process from environment variables (and a .env file).
"""
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .models import NetworkEndpoint


BASE_CHAIN_ID = 8453

PUBLIC_BASE_RPC = "https://mainnet.base.org"
LLAMA_BASE_RPC = "https://base.llamarpc.com"

DEFAULT_KEYSTORE_PATH = os.path.join(Path.home(), ".swap_engine", "keystore.json")


def alchemy_rpc_url(api_key: str) -> str:
    return f"https://base-mainnet.g.alchemy.com/v2/{api_key}"


@dataclass
class GasSettings:
    """Gas policy for every transaction the engine sends"""
    # Base-optimized: tiny priority fee is enough for inclusion
    priority_fee_gwei: Decimal = Decimal("0.0001")
    gas_buffer_pct: int = 30
    fallback_gas_limit: int = 300000
    approval_gas_limit: int = 100000
    # Sells need at least this much ETH left for fees
    min_gas_reserve_eth: Decimal = Decimal("0.000001")
    # Warn before a sell below this
    low_gas_warning_eth: Decimal = Decimal("0.001")
    # A 100% buy spends this share and leaves the rest for gas
    max_buy_share: Decimal = Decimal("0.95")


@dataclass
class EngineConfig:
    """Process-wide engine configuration"""
    chain_id: int = BASE_CHAIN_ID
    alchemy_api_key: Optional[str] = None

    # Read quorum endpoints; the first one also signs and broadcasts
    endpoints: list[NetworkEndpoint] = field(default_factory=list)
    rpc_quorum: int = 1
    request_timeout: float = 10.0

    keystore_path: str = DEFAULT_KEYSTORE_PATH

    # Trading
    default_slippage: int = 15
    deadline_seconds: int = 300
    gas: GasSettings = field(default_factory=GasSettings)

    # Caching / polling (seconds)
    price_ttl: float = 30.0
    balance_refresh_interval: float = 15.0
    # None = wait for inclusion as long as the chain takes
    receipt_timeout: Optional[float] = None

    log_level: str = "INFO"

    def __post_init__(self):
        if not self.endpoints:
            self.endpoints = default_endpoints(self.alchemy_api_key)

    @property
    def signing_url(self) -> str:
        """Dedicated low-latency endpoint used for signing and broadcast"""
        return sorted(self.endpoints, key=lambda e: (e.priority, -e.weight))[0].url


def default_endpoints(
    alchemy_api_key: Optional[str] = None,
    extra_urls: Optional[list[str]] = None,
) -> list[NetworkEndpoint]:
    """
    Alchemy first with 3x weight, public RPCs as fallback.

    Args:
        alchemy_api_key: Optional Alchemy key; public RPC is primary without it
        extra_urls: Fallback URLs replacing the built-in public ones
    """
    primary = alchemy_rpc_url(alchemy_api_key) if alchemy_api_key else PUBLIC_BASE_RPC
    urls = [primary] + (extra_urls if extra_urls else [PUBLIC_BASE_RPC, LLAMA_BASE_RPC])

    endpoints = []
    for i, url in enumerate(urls):
        endpoints.append(NetworkEndpoint(
            url=url,
            priority=i + 1,
            stall_timeout=3.0 if i == 0 else 2.0,
            weight=3 if i == 0 else 1,
        ))
    return endpoints


def load_config(env_file: Optional[str] = None) -> EngineConfig:
    """
    Build the engine configuration from the environment.

    Recognised variables: ALCHEMY_API_KEY, BASE_RPC_URLS (comma separated),
    SWAP_ENGINE_KEYSTORE, SWAP_ENGINE_LOG_LEVEL, SWAP_ENGINE_RPC_QUORUM,
    SWAP_ENGINE_PRIORITY_FEE_GWEI.
    """
    load_dotenv(env_file)

    alchemy_key = os.getenv("ALCHEMY_API_KEY") or None
    extra = [u.strip() for u in os.getenv("BASE_RPC_URLS", "").split(",") if u.strip()]

    gas = GasSettings()
    priority_fee = os.getenv("SWAP_ENGINE_PRIORITY_FEE_GWEI")
    if priority_fee:
        gas.priority_fee_gwei = Decimal(priority_fee)

    return EngineConfig(
        alchemy_api_key=alchemy_key,
        endpoints=default_endpoints(alchemy_key, extra or None),
        rpc_quorum=int(os.getenv("SWAP_ENGINE_RPC_QUORUM", "1")),
        keystore_path=os.getenv("SWAP_ENGINE_KEYSTORE", DEFAULT_KEYSTORE_PATH),
        gas=gas,
        log_level=os.getenv("SWAP_ENGINE_LOG_LEVEL", "INFO").upper(),
    )
