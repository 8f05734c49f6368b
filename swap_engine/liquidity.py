"""
Liquidity Resolver - find where a token trades against WETH.

Lookup order: Uniswap V2, Aerodrome (volatile then stable), Uniswap V3
(fee tiers 0.3%, 1%, 0.05%). A pool only counts if it holds WETH.
"""
import logging
from typing import Optional

from web3 import Web3

from .contracts import (
    AERODROME_FACTORY,
    AERODROME_FACTORY_ABI,
    AERODROME_ROUTER,
    ERC20_ABI,
    UNISWAP_V2_FACTORY,
    UNISWAP_V2_ROUTER,
    UNISWAP_V3_FACTORY,
    UNISWAP_V3_ROUTER,
    V2_FACTORY_ABI,
    V3_FACTORY_ABI,
    V3_FEE_TIERS,
    WETH_BASE,
    ZERO_ADDRESS,
)
from .models import DexFamily, LiquidityRoute

logger = logging.getLogger(__name__)


class LiquidityResolver:
    """Ordered pool discovery across the three AMM families"""

    def __init__(self, gateway):
        self.gateway = gateway

    async def _weth_balance(self, pool: str) -> int:
        return await self.gateway.read_contract(WETH_BASE, ERC20_ABI, "balanceOf", pool)

    async def _funded_pool(self, factory: str, abi: list, fn_name: str, *args) -> Optional[str]:
        """Pool address if the factory knows it and it holds WETH, else None"""
        pool = await self.gateway.read_contract(factory, abi, fn_name, *args)
        if not pool or pool.lower() == ZERO_ADDRESS:
            return None
        if await self._weth_balance(pool) <= 0:
            logger.debug(f"Pool {pool} has no WETH, skipping")
            return None
        return Web3.to_checksum_address(pool)

    async def _find_pool(self, label: str, factory: str, abi: list, fn_name: str, *args) -> Optional[str]:
        try:
            return await self._funded_pool(factory, abi, fn_name, *args)
        except Exception as e:
            logger.debug(f"{label} pool lookup failed: {e}")
            return None

    async def resolve(self, token_address: str) -> LiquidityRoute:
        """
        First funded WETH pool for the token.

        Never raises; returns LiquidityRoute.none() when nothing is found.
        """
        token = Web3.to_checksum_address(token_address)

        pool = await self._find_pool("Uniswap V2", UNISWAP_V2_FACTORY, V2_FACTORY_ABI, "getPair", token, WETH_BASE)
        if pool:
            logger.info(f"Liquidity for {token} on Uniswap V2: {pool}")
            return LiquidityRoute(
                dex=DexFamily.UNISWAP_V2,
                router=UNISWAP_V2_ROUTER,
                pair_address=pool,
                has_liquidity=True,
            )

        for stable in (False, True):
            kind = "stable" if stable else "volatile"
            pool = await self._find_pool(
                f"Aerodrome {kind}", AERODROME_FACTORY, AERODROME_FACTORY_ABI, "getPool", token, WETH_BASE, stable
            )
            if pool:
                logger.info(f"Liquidity for {token} on Aerodrome ({kind}): {pool}")
                return LiquidityRoute(
                    dex=DexFamily.AERODROME,
                    router=AERODROME_ROUTER,
                    pair_address=pool,
                    has_liquidity=True,
                    is_stable=stable,
                )

        for fee in V3_FEE_TIERS:
            pool = await self._find_pool(
                f"Uniswap V3 ({fee})", UNISWAP_V3_FACTORY, V3_FACTORY_ABI, "getPool", token, WETH_BASE, fee
            )
            if pool:
                logger.info(f"Liquidity for {token} on Uniswap V3 fee {fee}: {pool}")
                return LiquidityRoute(
                    dex=DexFamily.UNISWAP_V3,
                    router=UNISWAP_V3_ROUTER,
                    pair_address=pool,
                    has_liquidity=True,
                    fee=fee,
                )

        logger.info(f"No liquidity found for {token}")
        return LiquidityRoute.none()
