"""
Tests for the trade executor: validation, quoting, approvals, broadcast.
"""
import asyncio
import logging

import pytest
from web3 import Web3
from web3.exceptions import ContractLogicError

from swap_engine.contracts import (
    AERODROME_FACTORY,
    AERODROME_ROUTER,
    AERODROME_ROUTER_ABI,
    ERC20_ABI,
    MAX_UINT256,
    UNISWAP_V2_ROUTER,
    UNISWAP_V3_QUOTER,
    UNISWAP_V3_ROUTER,
    V2_ROUTER_ABI,
    V3_ROUTER_ABI,
    V3_ROUTER_ADDRESS_THIS,
    WETH_BASE,
)
from swap_engine.errors import (
    ApprovalFailed,
    InsufficientBalance,
    InsufficientGas,
    InvalidTradeRequest,
    NetworkUnavailable,
    NoLiquidity,
    TokenCallFailed,
    TradeFailed,
    TradeInProgress,
    TransactionReverted,
    WalletNotConnected,
)
from swap_engine.models import (
    DexFamily,
    LiquidityRoute,
    TokenDescriptor,
    TradeDirection,
    TradeRequest,
    TradeState,
)
from swap_engine.tokens import TokenRegistry
from swap_engine.trader import TradeExecutor, min_amount_out
from swap_engine.wallet import connect_hot_wallet

from conftest import NOW, POOL, TEST_ADDRESS, TEST_PRIVATE_KEY, TOKEN

TEST_TOKEN = TokenDescriptor(address=TOKEN, name="Test Token", symbol="TEST", decimals=18)

V2_ROUTE = LiquidityRoute(dex=DexFamily.UNISWAP_V2, router=UNISWAP_V2_ROUTER, pair_address=POOL, has_liquidity=True)
AERO_ROUTE = LiquidityRoute(
    dex=DexFamily.AERODROME, router=AERODROME_ROUTER, pair_address=POOL, has_liquidity=True, is_stable=False
)


def v3_route(fee=3000):
    return LiquidityRoute(
        dex=DexFamily.UNISWAP_V3, router=UNISWAP_V3_ROUTER, pair_address=POOL, has_liquidity=True, fee=fee
    )


def make_request(direction, amount, route=V2_ROUTE, slippage=15, token=TEST_TOKEN):
    return TradeRequest(direction=direction, amount=amount, slippage=slippage, token=token, route=route)


def decode(abi, data):
    fn, params = Web3().eth.contract(abi=abi).decode_function_input(data)
    return fn.fn_name, params


def as_tuple(value):
    return tuple(value.values()) if isinstance(value, dict) else tuple(value)


@pytest.fixture
def wallet():
    return connect_hot_wallet(TEST_PRIVATE_KEY)


@pytest.fixture
def executor(fake, config):
    return TradeExecutor(fake, TokenRegistry(fake), config, clock=lambda: NOW)


@pytest.fixture
def events():
    return []


@pytest.fixture
def funded(fake):
    """1 ETH in the wallet and a V2 router quoting 1,000,000 units out"""
    fake.balances[TEST_ADDRESS] = 10**18
    fake.on(UNISWAP_V2_ROUTER, "getAmountsOut", lambda amount, path: [amount, 1_000_000])
    return fake


@pytest.fixture
def holding(funded):
    """Wallet also holds 5 TEST with an unlimited allowance"""
    funded.on(TOKEN, "balanceOf", lambda owner: 5 * 10**18)
    funded.on(TOKEN, "allowance", lambda owner, spender: MAX_UINT256)
    return funded


class TestMinAmountOut:

    @pytest.mark.parametrize("quote, slippage, expected", [
        (1_000_000, 15, 850_000),
        (999, 15, 849),
        (1_000_000, 100, 0),
        (10**30, 1, 99 * 10**28),
    ])
    def test_integer_math(self, quote, slippage, expected):
        assert min_amount_out(quote, slippage) == expected


class TestValidation:
    """Bad requests fail before any network call."""

    async def test_wallet_required(self, fake, executor):
        with pytest.raises(WalletNotConnected):
            await executor.execute(None, make_request(TradeDirection.BUY, "0.01"))
        assert fake.calls == []

    async def test_route_required(self, fake, executor, wallet):
        request = make_request(TradeDirection.BUY, "0.01", route=LiquidityRoute.none())
        with pytest.raises(InvalidTradeRequest):
            await executor.execute(wallet, request)
        assert fake.calls == []

    @pytest.mark.parametrize("amount", ["", "abc", "0", "-1", "NaN", "inf", "0.0000000000000000001"])
    async def test_bad_buy_amount(self, fake, executor, wallet, amount):
        with pytest.raises(InvalidTradeRequest):
            await executor.execute(wallet, make_request(TradeDirection.BUY, amount))
        assert fake.calls == []

    async def test_sell_amount_beyond_token_decimals(self, fake, executor, wallet):
        usdc = TokenDescriptor(address=TOKEN, symbol="USDC", decimals=6)
        request = make_request(TradeDirection.SELL, "1.1234567", token=usdc)
        with pytest.raises(InvalidTradeRequest):
            await executor.execute(wallet, request)
        assert fake.calls == []

    @pytest.mark.parametrize("slippage", [0, -5, 101, True, 1.5])
    async def test_bad_slippage(self, fake, executor, wallet, slippage):
        with pytest.raises(InvalidTradeRequest):
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01", slippage=slippage))
        assert fake.calls == []

    async def test_failure_published(self, executor, wallet, events):
        with pytest.raises(InvalidTradeRequest):
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0"), on_event=events.append)

        assert [e.state for e in events] == [TradeState.VALIDATING, TradeState.FAILED]
        assert executor.state == TradeState.IDLE


class TestBuy:

    async def test_v2_buy_end_to_end(self, funded, executor, wallet, events):
        result = await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"), on_event=events.append)

        assert result.quoted_amount_out == 1_000_000
        assert result.min_amount_out == 850_000
        assert result.amount_in == 10**16
        assert result.gas_limit == 260_000
        assert result.dex == DexFamily.UNISWAP_V2
        assert result.block_number == 12345
        assert result.gas_used == 150_000
        assert result.clamped is False
        assert result.approval_tx_hash is None

        assert funded.calls_to("getAmountsOut")[0][2] == (10**16, [WETH_BASE, TOKEN])

        assert len(funded.sent) == 1
        tx = funded.sent[0]
        assert tx["to"] == UNISWAP_V2_ROUTER
        assert tx["value"] == 10**16
        assert tx["gas"] == 260_000
        assert tx["nonce"] == 7
        assert tx["chainId"] == 8453
        assert tx["maxFeePerGas"] == 2_000_000
        assert tx["maxPriorityFeePerGas"] == 100_000

        fn_name, params = decode(V2_ROUTER_ABI, tx["data"])
        assert fn_name == "swapExactETHForTokensSupportingFeeOnTransferTokens"
        assert params["amountOutMin"] == 850_000
        assert list(params["path"]) == [WETH_BASE, TOKEN]
        assert params["to"] == TEST_ADDRESS
        assert params["deadline"] == NOW + 300

        assert [e.state for e in events] == [
            TradeState.VALIDATING,
            TradeState.QUOTING,
            TradeState.ESTIMATING_GAS,
            TradeState.BROADCASTING,
            TradeState.CONFIRMING,
            TradeState.SETTLED,
        ]
        assert events[-1].tx_hash == result.tx_hash
        assert result.events == events
        assert executor.state == TradeState.IDLE

    async def test_gas_simulated_on_final_call(self, funded, executor, wallet):
        await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"))

        simulated = funded.estimates[0]
        assert simulated["data"] == funded.sent[0]["data"]
        assert simulated["value"] == 10**16

    async def test_insufficient_eth(self, funded, executor, wallet):
        funded.balances[TEST_ADDRESS] = 10**15
        with pytest.raises(InsufficientBalance):
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"))
        assert funded.sent == []

    async def test_zero_quote(self, funded, executor, wallet, events):
        funded.on(UNISWAP_V2_ROUTER, "getAmountsOut", lambda amount, path: [amount, 0])

        with pytest.raises(NoLiquidity):
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"), on_event=events.append)

        assert funded.sent == []
        assert events[-1].state == TradeState.FAILED

    async def test_failing_quote(self, funded, executor, wallet):
        del funded.handlers[(UNISWAP_V2_ROUTER.lower(), "getAmountsOut")]
        with pytest.raises(NoLiquidity):
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"))
        assert funded.sent == []

    async def test_quote_network_outage(self, funded, executor, wallet):
        funded.on(UNISWAP_V2_ROUTER, "getAmountsOut", NetworkUnavailable("down"))
        with pytest.raises(NetworkUnavailable):
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"))

    async def test_gas_fallback(self, funded, executor, wallet):
        funded.gas_error = ValueError("execution reverted")
        result = await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"))

        assert result.gas_limit == 300_000
        assert funded.sent[0]["gas"] == 300_000

    async def test_reverted(self, funded, executor, wallet, events):
        funded.receipt_statuses = [0]
        funded.revert_text = "UniswapV2Router: INSUFFICIENT_OUTPUT_AMOUNT"

        with pytest.raises(TransactionReverted) as exc_info:
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"), on_event=events.append)

        assert exc_info.value.tx_hash == "0x" + f"{1:064x}"
        assert exc_info.value.reason == "UniswapV2Router: INSUFFICIENT_OUTPUT_AMOUNT"
        assert events[-1].state == TradeState.FAILED
        assert events[-1].tx_hash == exc_info.value.tx_hash

    async def test_aerodrome_buy(self, funded, executor, wallet):
        funded.on(AERODROME_ROUTER, "getAmountsOut", lambda amount, routes: [amount, 1_000])

        result = await executor.execute(wallet, make_request(TradeDirection.BUY, "0.5", route=AERO_ROUTE))

        assert result.min_amount_out == 850
        quote_routes = funded.calls_to("getAmountsOut")[0][2][1]
        assert quote_routes == [(WETH_BASE, TOKEN, False, AERODROME_FACTORY)]

        tx = funded.sent[0]
        assert tx["to"] == AERODROME_ROUTER
        fn_name, params = decode(AERODROME_ROUTER_ABI, tx["data"])
        assert fn_name == "swapExactETHForTokensSupportingFeeOnTransferTokens"
        assert params["amountOutMin"] == 850
        assert [as_tuple(r) for r in params["routes"]] == [(WETH_BASE, TOKEN, False, AERODROME_FACTORY)]

    async def test_v3_buy(self, funded, executor, wallet):
        funded.on(UNISWAP_V3_QUOTER, "quoteExactInputSingle", lambda params: (2_000, 0, 0, 0))

        result = await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01", route=v3_route(500)))

        assert result.min_amount_out == 1_700
        assert funded.calls_to("quoteExactInputSingle")[0][2] == ((WETH_BASE, TOKEN, 10**16, 500, 0),)

        tx = funded.sent[0]
        assert tx["to"] == UNISWAP_V3_ROUTER
        assert tx["value"] == 10**16
        fn_name, params = decode(V3_ROUTER_ABI, tx["data"])
        assert fn_name == "exactInputSingle"
        assert as_tuple(params["params"]) == (WETH_BASE, TOKEN, 500, TEST_ADDRESS, 10**16, 1_700, 0)

    async def test_listener_errors_do_not_break_trade(self, funded, executor, wallet):
        def broken(event):
            raise RuntimeError("ui gone")

        result = await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"), on_event=broken)
        assert result.tx_hash


class TestSell:

    async def test_sell_with_allowance(self, holding, executor, wallet, events):
        result = await executor.execute(wallet, make_request(TradeDirection.SELL, "2"), on_event=events.append)

        assert result.amount_in == 2 * 10**18
        assert result.clamped is False
        assert len(holding.sent) == 1

        tx = holding.sent[0]
        assert tx["value"] == 0
        fn_name, params = decode(V2_ROUTER_ABI, tx["data"])
        assert fn_name == "swapExactTokensForETHSupportingFeeOnTransferTokens"
        assert params["amountIn"] == 2 * 10**18
        assert params["amountOutMin"] == 850_000
        assert list(params["path"]) == [TOKEN, WETH_BASE]

        assert [e.state for e in events][:3] == [TradeState.VALIDATING, TradeState.APPROVING, TradeState.QUOTING]

    async def test_clamped_to_balance(self, holding, executor, wallet, caplog):
        with caplog.at_level(logging.WARNING, logger="swap_engine.trader"):
            result = await executor.execute(wallet, make_request(TradeDirection.SELL, "10"))

        assert result.clamped is True
        assert result.amount_in == 5 * 10**18
        assert "exceeds balance" in caplog.text

        _, params = decode(V2_ROUTER_ABI, holding.sent[0]["data"])
        assert params["amountIn"] == 5 * 10**18

    async def test_zero_balance(self, holding, executor, wallet):
        holding.on(TOKEN, "balanceOf", lambda owner: 0)

        with pytest.raises(InsufficientBalance):
            await executor.execute(wallet, make_request(TradeDirection.SELL, "1"))

        assert holding.sent == []
        assert holding.calls_to("allowance") == []

    async def test_insufficient_gas_checked_first(self, holding, executor, wallet):
        holding.balances[TEST_ADDRESS] = 0
        holding.on(TOKEN, "balanceOf", lambda owner: 0)

        with pytest.raises(InsufficientGas):
            await executor.execute(wallet, make_request(TradeDirection.SELL, "1"))

        assert holding.calls_to("balanceOf") == []
        assert holding.sent == []

    async def test_token_decimals(self, holding, executor, wallet):
        usdc = TokenDescriptor(address=TOKEN, symbol="USDC", decimals=6)
        result = await executor.execute(wallet, make_request(TradeDirection.SELL, "1.5", token=usdc))
        assert result.amount_in == 1_500_000

    async def test_approval_then_swap(self, holding, executor, wallet, events):
        holding.on(TOKEN, "allowance", lambda owner, spender: 0)

        result = await executor.execute(wallet, make_request(TradeDirection.SELL, "1"), on_event=events.append)

        assert len(holding.sent) == 2
        approve_tx, swap_tx = holding.sent
        assert approve_tx["to"] == TOKEN
        assert approve_tx["nonce"] == 7
        assert swap_tx["nonce"] == 8

        fn_name, params = decode(ERC20_ABI, approve_tx["data"])
        assert fn_name == "approve"
        assert params["spender"] == UNISWAP_V2_ROUTER
        assert params["amount"] == MAX_UINT256

        assert result.approval_tx_hash == "0x" + f"{1:064x}"
        assert result.tx_hash == "0x" + f"{2:064x}"
        approving = [e for e in events if e.state == TradeState.APPROVING]
        assert approving[-1].tx_hash == result.approval_tx_hash

    async def test_half_spent_allowance_kept(self, holding, executor, wallet):
        holding.on(TOKEN, "allowance", lambda owner, spender: MAX_UINT256 // 2)
        await executor.execute(wallet, make_request(TradeDirection.SELL, "1"))
        assert len(holding.sent) == 1

    async def test_approval_gas_fallback(self, holding, executor, wallet):
        holding.on(TOKEN, "allowance", lambda owner, spender: 0)
        holding.gas_error = ValueError("no estimate")

        await executor.execute(wallet, make_request(TradeDirection.SELL, "1"))

        assert holding.sent[0]["gas"] == 100_000
        assert holding.sent[1]["gas"] == 300_000

    async def test_approval_reverted(self, holding, executor, wallet):
        holding.on(TOKEN, "allowance", lambda owner, spender: 0)
        holding.receipt_statuses = [0]

        with pytest.raises(ApprovalFailed) as exc_info:
            await executor.execute(wallet, make_request(TradeDirection.SELL, "1"))

        assert exc_info.value.tx_hash == "0x" + f"{1:064x}"
        assert len(holding.sent) == 1

    async def test_v3_sell_unwraps_to_eth(self, holding, executor, wallet):
        holding.on(UNISWAP_V3_QUOTER, "quoteExactInputSingle", lambda params: (10**17, 0, 0, 0))

        result = await executor.execute(wallet, make_request(TradeDirection.SELL, "1", route=v3_route(10000)))
        min_out = 85 * 10**15
        assert result.min_amount_out == min_out

        tx = holding.sent[0]
        assert tx["to"] == UNISWAP_V3_ROUTER
        assert tx["value"] == 0

        fn_name, params = decode(V3_ROUTER_ABI, tx["data"])
        assert fn_name == "multicall"
        assert params["deadline"] == NOW + 300

        swap_name, swap = decode(V3_ROUTER_ABI, params["data"][0])
        assert swap_name == "exactInputSingle"
        assert as_tuple(swap["params"]) == (TOKEN, WETH_BASE, 10000, V3_ROUTER_ADDRESS_THIS, 10**18, min_out, 0)

        unwrap_name, unwrap = decode(V3_ROUTER_ABI, params["data"][1])
        assert unwrap_name == "unwrapWETH9"
        assert unwrap["amountMinimum"] == min_out
        assert unwrap["recipient"] == TEST_ADDRESS


class TestUnexpectedFailures:
    """Anything escaping the pipeline still ends in FAILED with one engine error."""

    async def test_token_balance_revert(self, holding, executor, wallet, events):
        holding.on(TOKEN, "balanceOf", ContractLogicError("execution reverted"))

        with pytest.raises(TokenCallFailed) as exc_info:
            await executor.execute(wallet, make_request(TradeDirection.SELL, "1"), on_event=events.append)

        assert isinstance(exc_info.value.__cause__, ContractLogicError)
        assert [e.state for e in events] == [TradeState.VALIDATING, TradeState.FAILED]
        assert holding.sent == []

    async def test_allowance_revert(self, holding, executor, wallet, events):
        holding.on(TOKEN, "allowance", ContractLogicError("execution reverted"))

        with pytest.raises(TokenCallFailed):
            await executor.execute(wallet, make_request(TradeDirection.SELL, "1"), on_event=events.append)

        assert events[-1].state == TradeState.FAILED
        assert holding.sent == []

    async def test_receipt_outage_keeps_tx_hash(self, funded, executor, wallet, events):
        tx_hash = "0x" + f"{1:064x}"

        async def outage(sent_hash):
            raise NetworkUnavailable("Receipt unavailable", tx_hash=sent_hash)

        funded.wait_for_receipt = outage

        with pytest.raises(NetworkUnavailable) as exc_info:
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"), on_event=events.append)

        assert exc_info.value.tx_hash == tx_hash
        assert len(funded.sent) == 1
        assert events[-1].state == TradeState.FAILED
        assert events[-1].tx_hash == tx_hash

    async def test_unexpected_error_after_broadcast(self, funded, executor, wallet, events):
        async def broken(sent_hash):
            raise ConnectionError("connection reset")

        funded.wait_for_receipt = broken

        with pytest.raises(TradeFailed) as exc_info:
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"), on_event=events.append)

        error = exc_info.value
        assert isinstance(error.__cause__, ConnectionError)
        assert error.tx_hash == "0x" + f"{1:064x}"
        assert "ConnectionError" in str(error)
        assert events[-2].state == TradeState.CONFIRMING
        assert events[-1].state == TradeState.FAILED
        assert events[-1].tx_hash == error.tx_hash
        assert executor.state == TradeState.IDLE
        assert not executor.busy

    async def test_unexpected_error_before_broadcast(self, funded, executor, wallet, events):
        async def broken():
            raise RuntimeError("fee oracle exploded")

        funded.get_fee_data = broken

        with pytest.raises(TradeFailed) as exc_info:
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"), on_event=events.append)

        assert exc_info.value.tx_hash is None
        assert events[-1].state == TradeState.FAILED
        assert events[-1].tx_hash is None
        assert funded.sent == []


class TestConcurrency:

    async def test_second_trade_rejected(self, funded, executor, wallet):
        funded.receipt_gate = asyncio.Event()
        first = asyncio.create_task(executor.execute(wallet, make_request(TradeDirection.BUY, "0.01")))
        while not funded.sent:
            await asyncio.sleep(0)

        assert executor.busy
        with pytest.raises(TradeInProgress):
            await executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"))

        funded.receipt_gate.set()
        result = await first

        assert len(funded.sent) == 1
        assert result.tx_hash
        assert not executor.busy

    async def test_cancel_while_confirming(self, funded, executor, wallet, events):
        funded.receipt_gate = asyncio.Event()
        task = asyncio.create_task(
            executor.execute(wallet, make_request(TradeDirection.BUY, "0.01"), on_event=events.append)
        )
        while not funded.sent:
            await asyncio.sleep(0)
        await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not executor.busy
        funded.receipt_gate.set()

        assert events[-2].state == TradeState.CONFIRMING
        assert events[-1].state == TradeState.FAILED
        assert events[-1].tx_hash == events[-2].tx_hash
