"""
Engine context - process-scoped services shared by reference.
"""
import time
from typing import Callable, Optional

from .config import EngineConfig, load_config
from .liquidity import LiquidityResolver
from .models import TokenDescriptor
from .network import NetworkGateway
from .pricing import PriceOracle
from .tokens import TokenRegistry


class EngineContext:
    """
    Owns the network gateway and every cache built on top of it.

    Args:
        config: Engine configuration (loaded from the environment if None)
        gateway: Network gateway; tests pass an in-memory fake
        clock: Monotonic clock for the price cache
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        gateway=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or load_config()
        self.gateway = gateway or NetworkGateway(self.config)

        self.token_cache: dict[str, TokenDescriptor] = {}
        self.tokens = TokenRegistry(self.gateway, cache=self.token_cache)
        self.prices = PriceOracle(self.gateway, ttl=self.config.price_ttl, clock=clock)
        self.resolver = LiquidityResolver(self.gateway)

    def reset_caches(self):
        """Drop cached token metadata and the ETH price"""
        self.token_cache.clear()
        self.prices.clear()

    async def close(self):
        close = getattr(self.gateway, "close", None)
        if close:
            await close()
