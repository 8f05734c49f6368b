"""
Swap Engine Models - Dataclasses for tokens, routes and trades
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, localcontext
from enum import Enum
from typing import Optional

# Enough precision for any uint256 amount
UINT256_DIGITS = 80


class DexFamily(Enum):
    """AMM families checked for liquidity, in priority order"""
    UNISWAP_V2 = "Uniswap V2"
    AERODROME = "Aerodrome"
    UNISWAP_V3 = "Uniswap V3"
    NONE = "None"


class TradeDirection(Enum):
    """BUY spends native ETH, SELL receives native ETH"""
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def from_name(cls, name: str) -> "TradeDirection":
        try:
            return cls(name.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown trade direction: {name}") from None


class TradeState(Enum):
    """Trade executor state machine"""
    IDLE = "idle"
    VALIDATING = "validating"
    APPROVING = "approving"
    QUOTING = "quoting"
    ESTIMATING_GAS = "estimating_gas"
    BROADCASTING = "broadcasting"
    CONFIRMING = "confirming"
    SETTLED = "settled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TradeState.SETTLED, TradeState.FAILED)


@dataclass(frozen=True)
class NetworkEndpoint:
    """One JSON-RPC endpoint of the read quorum"""
    url: str
    priority: int = 1
    stall_timeout: float = 2.0  # seconds
    weight: int = 1


@dataclass(frozen=True)
class TokenDescriptor:
    """ERC20 token metadata"""
    address: str
    name: str = "Unknown"
    symbol: str = "???"
    decimals: int = 18

    def to_units(self, amount: Decimal) -> int:
        """Convert a human-readable amount to base units"""
        with localcontext() as ctx:
            ctx.prec = UINT256_DIGITS
            return int(amount * Decimal(10 ** self.decimals))

    def from_units(self, units: int) -> Decimal:
        """Convert base units to a human-readable amount (exact)"""
        with localcontext() as ctx:
            ctx.prec = UINT256_DIGITS
            return Decimal(units) / Decimal(10 ** self.decimals)


@dataclass(frozen=True)
class LiquidityRoute:
    """Result of one liquidity lookup"""
    dex: DexFamily
    router: str = ""
    pair_address: str = ""
    has_liquidity: bool = False
    fee: Optional[int] = None  # V3 fee tier (hundredths of a bip)
    is_stable: Optional[bool] = None  # Aerodrome pool type

    @classmethod
    def none(cls) -> "LiquidityRoute":
        return cls(dex=DexFamily.NONE)


@dataclass(frozen=True)
class PriceSnapshot:
    """Native asset USD price with its fetch time (monotonic seconds)"""
    price: float
    fetched_at: float


@dataclass(frozen=True)
class FeeData:
    """EIP-1559 fee parameters in wei"""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass(frozen=True)
class TradeRequest:
    """A single buy or sell intent, consumed once by the executor"""
    direction: TradeDirection
    amount: str
    slippage: int
    token: TokenDescriptor
    route: LiquidityRoute

    def parsed_amount(self) -> Optional[Decimal]:
        """Amount as Decimal, or None if it is not a finite number"""
        try:
            value = Decimal(self.amount.strip())
        except (InvalidOperation, AttributeError):
            return None
        if not value.is_finite():
            return None
        return value


@dataclass(frozen=True)
class TradeEvent:
    """Progress notification published on every state transition"""
    state: TradeState
    direction: TradeDirection
    tx_hash: Optional[str] = None
    message: str = ""


@dataclass
class TradeResult:
    """Settled trade"""
    tx_hash: str
    direction: TradeDirection
    dex: DexFamily
    amount_in: int  # base units of the input asset
    quoted_amount_out: int
    min_amount_out: int
    gas_limit: int
    gas_used: int = 0
    block_number: Optional[int] = None
    approval_tx_hash: Optional[str] = None
    clamped: bool = False
    events: list[TradeEvent] = field(default_factory=list)
