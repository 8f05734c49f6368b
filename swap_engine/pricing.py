"""
Price Oracle - ETH/USD from Chainlink, token prices from pool state.

All lookups here are advisory: failures are logged and reported as 0.0
(or the last good ETH price), never raised.
"""
import logging
import time
from decimal import Decimal
from typing import Callable, Optional

from .contracts import ETH_USD_FEED, PAIR_ABI, PRICE_FEED_ABI, V3_POOL_ABI, ZERO_ADDRESS
from .models import DexFamily, PriceSnapshot

logger = logging.getLogger(__name__)

Q96 = Decimal(2**96)


def format_usd(value: float) -> str:
    """Compact USD display: $0.00, <$0.01, $12.34, $1.23K, $4.56M"""
    if value == 0:
        return "$0.00"
    if value < 0.01:
        return "<$0.01"
    if value >= 1_000_000:
        return f"${value / 1_000_000:.2f}M"
    if value >= 1_000:
        return f"${value / 1_000:.2f}K"
    return f"${value:.2f}"


class PriceOracle:
    """
    Cached native price plus per-pool token prices.

    Args:
        gateway: NetworkGateway (or anything with read_contract)
        ttl: Seconds an ETH price stays fresh
        clock: Monotonic time source, injectable for tests
    """

    def __init__(self, gateway, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.gateway = gateway
        self.ttl = ttl
        self.clock = clock
        self.snapshot: Optional[PriceSnapshot] = None

    def clear(self):
        self.snapshot = None

    async def fetch_native_price(self) -> float:
        """ETH/USD, refreshed at most once per TTL"""
        now = self.clock()
        if self.snapshot and now - self.snapshot.fetched_at < self.ttl:
            return self.snapshot.price

        try:
            round_data = await self.gateway.read_contract(ETH_USD_FEED, PRICE_FEED_ABI, "latestRoundData")
            feed_decimals = await self.gateway.read_contract(ETH_USD_FEED, PRICE_FEED_ABI, "decimals")
            price = float(Decimal(round_data[1]) / Decimal(10 ** int(feed_decimals)))
        except Exception as e:
            logger.error(f"ETH price fetch failed: {e}")
            return self.snapshot.price if self.snapshot else 0.0

        self.snapshot = PriceSnapshot(price=price, fetched_at=now)
        return price

    async def fetch_token_price(
        self,
        pool_address: str,
        token_address: str,
        token_decimals: int,
        dex: Optional[DexFamily] = None,
    ) -> float:
        """
        Token price in USD from its WETH pool.

        Reserve-based for V2/Aerodrome pools; V3 pools are priced from
        slot0's sqrtPriceX96. Returns 0.0 when there is no pool or on error.
        """
        if not pool_address or pool_address.lower() == ZERO_ADDRESS:
            return 0.0

        try:
            if dex == DexFamily.UNISWAP_V3:
                eth_per_token = await self._v3_eth_per_token(pool_address, token_address, token_decimals)
            else:
                eth_per_token = await self._reserves_eth_per_token(pool_address, token_address, token_decimals)
        except Exception as e:
            logger.error(f"Token price fetch failed for {token_address}: {e}")
            return 0.0

        if eth_per_token == 0:
            return 0.0
        return float(eth_per_token) * await self.fetch_native_price()

    async def _reserves_eth_per_token(self, pool: str, token: str, token_decimals: int) -> Decimal:
        reserves = await self.gateway.read_contract(pool, PAIR_ABI, "getReserves")
        token0 = await self.gateway.read_contract(pool, PAIR_ABI, "token0")

        if token0.lower() == token.lower():
            token_reserve, weth_reserve = reserves[0], reserves[1]
        else:
            token_reserve, weth_reserve = reserves[1], reserves[0]

        token_amount = Decimal(token_reserve) / Decimal(10**token_decimals)
        weth_amount = Decimal(weth_reserve) / Decimal(10**18)
        if token_amount <= 0:
            return Decimal(0)
        return weth_amount / token_amount

    async def _v3_eth_per_token(self, pool: str, token: str, token_decimals: int) -> Decimal:
        slot0 = await self.gateway.read_contract(pool, V3_POOL_ABI, "slot0")
        token0 = await self.gateway.read_contract(pool, V3_POOL_ABI, "token0")

        sqrt_price = Decimal(slot0[0])
        if sqrt_price == 0:
            return Decimal(0)

        # token1 raw units per token0 raw unit
        ratio = (sqrt_price / Q96) ** 2
        scale = Decimal(10**token_decimals) / Decimal(10**18)
        if token0.lower() == token.lower():
            return ratio * scale
        return scale / ratio
