"""
Tests for the price oracle and USD formatting.
"""
import pytest

from swap_engine.contracts import ETH_USD_FEED, WETH_BASE, ZERO_ADDRESS
from swap_engine.errors import NetworkUnavailable
from swap_engine.models import DexFamily
from swap_engine.pricing import PriceOracle, format_usd

from conftest import POOL, TOKEN


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle(fake, clock):
    return PriceOracle(fake, ttl=30.0, clock=clock)


def set_eth_price(fake, usd):
    # Chainlink answers with 8 decimals
    fake.on(ETH_USD_FEED, "latestRoundData", (1, int(usd * 10**8), 0, 0, 1))
    fake.on(ETH_USD_FEED, "decimals", 8)


class TestNativePrice:

    async def test_scaled_by_feed_decimals(self, fake, oracle):
        set_eth_price(fake, 3000)
        assert await oracle.fetch_native_price() == pytest.approx(3000.0)

    async def test_cached_within_ttl(self, fake, oracle, clock):
        set_eth_price(fake, 3000)
        await oracle.fetch_native_price()

        set_eth_price(fake, 3500)
        clock.now += 29.9
        assert await oracle.fetch_native_price() == pytest.approx(3000.0)

    async def test_refreshed_after_ttl(self, fake, oracle, clock):
        set_eth_price(fake, 3000)
        await oracle.fetch_native_price()

        set_eth_price(fake, 3500)
        clock.now += 30.0
        assert await oracle.fetch_native_price() == pytest.approx(3500.0)

    async def test_last_good_value_on_error(self, fake, oracle, clock):
        set_eth_price(fake, 3000)
        await oracle.fetch_native_price()

        fake.on(ETH_USD_FEED, "latestRoundData", NetworkUnavailable("down"))
        clock.now += 60
        assert await oracle.fetch_native_price() == pytest.approx(3000.0)

    async def test_zero_without_cache(self, fake, oracle):
        fake.on(ETH_USD_FEED, "latestRoundData", NetworkUnavailable("down"))
        assert await oracle.fetch_native_price() == 0.0

    async def test_clear(self, fake, oracle):
        set_eth_price(fake, 3000)
        await oracle.fetch_native_price()
        oracle.clear()
        assert oracle.snapshot is None


class TestTokenPrice:

    async def test_token_is_token0(self, fake, oracle):
        set_eth_price(fake, 2000)
        # 1,000,000 TEST (18 dec) against 10 WETH -> 0.00001 ETH each
        fake.on(POOL, "getReserves", (1_000_000 * 10**18, 10 * 10**18, 0))
        fake.on(POOL, "token0", TOKEN)

        price = await oracle.fetch_token_price(POOL, TOKEN, 18)
        assert price == pytest.approx(0.02)

    async def test_token_is_token1_with_decimals(self, fake, oracle):
        set_eth_price(fake, 2000)
        # 5 WETH against 10,000 TEST (6 dec) -> 0.0005 ETH each
        fake.on(POOL, "getReserves", (5 * 10**18, 10_000 * 10**6, 0))
        fake.on(POOL, "token0", WETH_BASE)

        price = await oracle.fetch_token_price(POOL, TOKEN.lower(), 6)
        assert price == pytest.approx(1.0)

    async def test_empty_token_reserve(self, fake, oracle):
        set_eth_price(fake, 2000)
        fake.on(POOL, "getReserves", (0, 10 * 10**18, 0))
        fake.on(POOL, "token0", TOKEN)

        assert await oracle.fetch_token_price(POOL, TOKEN, 18) == 0.0

    @pytest.mark.parametrize("pool", ["", ZERO_ADDRESS])
    async def test_no_pool(self, fake, oracle, pool):
        assert await oracle.fetch_token_price(pool, TOKEN, 18) == 0.0
        assert fake.calls == []

    async def test_failure_is_zero(self, fake, oracle):
        fake.on(POOL, "getReserves", NetworkUnavailable("down"))
        assert await oracle.fetch_token_price(POOL, TOKEN, 18) == 0.0

    async def test_v3_token0(self, fake, oracle):
        set_eth_price(fake, 2000)
        # sqrtPriceX96 for a raw ratio of 1/100 (token1 per token0)
        fake.on(POOL, "slot0", (2**96 // 10, 0, 0, 0, 0, 0, True))
        fake.on(POOL, "token0", TOKEN)

        price = await oracle.fetch_token_price(POOL, TOKEN, 18, dex=DexFamily.UNISWAP_V3)
        assert price == pytest.approx(20.0, rel=1e-6)

    async def test_v3_token1(self, fake, oracle):
        set_eth_price(fake, 2000)
        # WETH is token0; 400 TEST raw units per WETH raw unit
        fake.on(POOL, "slot0", (2**96 * 20, 0, 0, 0, 0, 0, True))
        fake.on(POOL, "token0", WETH_BASE)

        price = await oracle.fetch_token_price(POOL, TOKEN, 18, dex=DexFamily.UNISWAP_V3)
        assert price == pytest.approx(5.0, rel=1e-6)


class TestFormatUsd:

    @pytest.mark.parametrize("value, expected", [
        (0, "$0.00"),
        (0.004, "<$0.01"),
        (0.01, "$0.01"),
        (12.346, "$12.35"),
        (999.99, "$999.99"),
        (1_000, "$1.00K"),
        (1_234, "$1.23K"),
        (999_999, "$1000.00K"),
        (1_000_000, "$1.00M"),
        (2_500_000, "$2.50M"),
    ])
    def test_format(self, value, expected):
        assert format_usd(value) == expected
