"""
Trading Session - the state surface a front end binds to.

Holds the connected wallet, the selected token with its route, per
operation loading/error status, and fans out trade events to subscribers.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, localcontext
from typing import Awaitable, Callable, Optional, Union

from .context import EngineContext
from .custody import KeyCustody
from .errors import InvalidTradeRequest, NoStoredWallet, TradeInProgress, WalletNotConnected
from .models import (
    UINT256_DIGITS,
    LiquidityRoute,
    TokenDescriptor,
    TradeDirection,
    TradeEvent,
    TradeRequest,
    TradeResult,
)
from .pricing import format_usd
from .tokens import extract_token_address
from .trader import TradeExecutor
from .wallet import HotWallet, connect_hot_wallet, shorten_address

logger = logging.getLogger(__name__)

OPERATIONS = ("fetch", "connect", "unlock", "trade")

QUICK_PERCENTAGES = (25, 50, 75, 100)
BUY_AMOUNT_PLACES = 6
SELL_AMOUNT_PLACES = 4


@dataclass
class OperationStatus:
    loading: bool = False
    error: Optional[str] = None


@dataclass
class WalletState:
    """Snapshot of the connected wallet"""
    address: str = ""
    short_address: str = ""
    balance: Decimal = Decimal(0)
    balance_usd: str = "$0.00"
    eth_price: float = 0.0
    is_connected: bool = False
    has_stored: bool = False


@dataclass
class TokenState:
    """Snapshot of the selected token"""
    token: Optional[TokenDescriptor] = None
    route: Optional[LiquidityRoute] = None
    balance: Decimal = Decimal(0)
    balance_usd: str = "$0.00"
    price_usd: float = 0.0


class BalancePoller:
    """
    Fixed-interval refresh loop.

    A tick is skipped while the previous refresh is still running, so a
    slow endpoint never stacks up requests.
    """

    def __init__(self, refresh: Callable[[], Awaitable[object]], interval: float = 15.0):
        self.refresh = refresh
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug(f"Balance poller started ({self.interval}s)")

    def tick(self) -> bool:
        """Start one refresh unless one is outstanding; True if started"""
        if self._inflight is not None and not self._inflight.done():
            logger.debug("Previous balance refresh still running, skipping tick")
            return False
        self._inflight = asyncio.create_task(self.refresh())
        return True

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    def stop(self):
        for task in (self._task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
        self._task = None
        self._inflight = None


class TradingSession:
    """
    Wallet + token + trade facade over an EngineContext.

    Usage:
        session = TradingSession(EngineContext())
        await session.unlock(password)
        await session.fetch_token("https://basescan.org/token/0x...")
        result = await session.trade("buy", "0.01", slippage=15)
    """

    def __init__(
        self,
        context: EngineContext,
        custody: Optional[KeyCustody] = None,
        executor: Optional[TradeExecutor] = None,
    ):
        self.context = context
        self.custody = custody or KeyCustody(context.config.keystore_path)
        self.executor = executor or TradeExecutor(context.gateway, context.tokens, context.config)
        self.poller = BalancePoller(self.refresh_balance, context.config.balance_refresh_interval)

        self.wallet: Optional[HotWallet] = None
        self.wallet_state = WalletState(has_stored=self.custody.exists())
        self.token_state = TokenState()
        self.status = {op: OperationStatus() for op in OPERATIONS}
        self._listeners: list[Callable[[TradeEvent], None]] = []

    @asynccontextmanager
    async def _track(self, op: str):
        status = self.status[op]
        status.loading = True
        status.error = None
        try:
            yield status
        except Exception as e:
            status.error = str(e)
            raise
        finally:
            status.loading = False

    # =========================================================================
    # Events
    # =========================================================================

    def subscribe(self, callback: Callable[[TradeEvent], None]) -> Callable[[], None]:
        """Register a trade event listener; returns an unsubscribe function"""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _publish(self, event: TradeEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Trade event subscriber failed")

    # =========================================================================
    # Wallet
    # =========================================================================

    async def connect(self, private_key: str, password: str) -> WalletState:
        """Import a raw key, store it encrypted and open the session"""
        async with self._track("connect"):
            wallet = connect_hot_wallet(private_key)
            self.custody.persist(self.custody.encrypt(private_key, password))
            await self._open(wallet)
            logger.info(f"Wallet connected: {wallet.short_address}")
        return self.wallet_state

    async def unlock(self, password: str) -> WalletState:
        """Decrypt the stored key and open the session"""
        async with self._track("unlock"):
            blob = self.custody.load()
            if blob is None:
                raise NoStoredWallet("No stored wallet")
            wallet = connect_hot_wallet(self.custody.decrypt(blob, password))
            await self._open(wallet)
            logger.info(f"Wallet unlocked: {wallet.short_address}")
        return self.wallet_state

    async def _open(self, wallet: HotWallet):
        self.wallet = wallet
        self.wallet_state = WalletState(
            address=wallet.address,
            short_address=shorten_address(wallet.address),
            is_connected=True,
            has_stored=True,
        )
        await self.refresh_balance()
        self.poller.start()

    def disconnect(self):
        """Drop the in-memory key and forget the stored one"""
        self.poller.stop()
        self.wallet = None
        self.custody.clear()
        self.wallet_state = WalletState(has_stored=False)
        self.token_state.balance = Decimal(0)
        self.token_state.balance_usd = "$0.00"
        logger.info("Wallet disconnected")

    async def refresh_balance(self) -> WalletState:
        """Native balance and its USD value; failures keep the last snapshot"""
        wallet = self.wallet
        if wallet is None:
            return self.wallet_state

        try:
            balance_wei = await self.context.gateway.get_balance(wallet.address)
        except Exception as e:
            logger.error(f"Balance fetch error: {e}")
            return self.wallet_state

        eth_price = await self.context.prices.fetch_native_price()
        # Disconnected while the read was in flight
        if self.wallet is not wallet:
            return self.wallet_state

        wallet.update_balance(balance_wei)
        self.wallet_state.balance = wallet.balance
        self.wallet_state.eth_price = eth_price
        self.wallet_state.balance_usd = format_usd(float(wallet.balance) * eth_price)
        return self.wallet_state

    # =========================================================================
    # Token
    # =========================================================================

    async def fetch_token(self, reference: str) -> TokenState:
        """Resolve a token address or explorer URL into metadata, route and prices"""
        async with self._track("fetch"):
            address = extract_token_address(reference)
            token = await self.context.tokens.get_token_info(address)
            route = await self.context.resolver.resolve(address)

            price = 0.0
            if route.has_liquidity:
                price = await self.context.prices.fetch_token_price(
                    route.pair_address, token.address, token.decimals, dex=route.dex
                )

            self.token_state = TokenState(token=token, route=route, price_usd=price)
            await self._refresh_token_balance()
            logger.info(f"{token.symbol} detected | {route.dex.value} | {format_usd(price) if price else 'Price N/A'}")
        return self.token_state

    async def _refresh_token_balance(self):
        token = self.token_state.token
        if token is None or self.wallet is None:
            return
        try:
            balance = await self.context.tokens.fetch_token_balance(token, self.wallet.address)
        except Exception as e:
            logger.warning(f"Token balance unavailable for {token.symbol}: {e}")
            return
        self.token_state.balance = balance
        price = self.token_state.price_usd
        self.token_state.balance_usd = format_usd(float(balance) * price) if price > 0 else "$0.00"

    def reset_token(self):
        self.token_state = TokenState()
        self.status["fetch"] = OperationStatus()

    # =========================================================================
    # Trading
    # =========================================================================

    @property
    def low_gas(self) -> bool:
        """Native balance is below the sell warning threshold"""
        return self.wallet is not None and self.wallet.balance < self.context.config.gas.low_gas_warning_eth

    async def max_sell_amount(self) -> str:
        """Full token balance as an exact decimal string"""
        token = self.token_state.token
        if token is None or self.wallet is None:
            return "0"
        units = await self.context.tokens.balance_of(token.address, self.wallet.address)
        return format(token.from_units(units), "f")

    async def amount_for_percent(self, direction: Union[TradeDirection, str], percent: int) -> str:
        """
        Share of the spendable balance as an amount string.

        Buys read the live ETH balance and round down to 6 decimals; 100%
        keeps `max_buy_share` so the swap can still pay for gas. Sells round
        down to 4 decimals, except 100% which is the exact token balance.
        """
        if isinstance(direction, str):
            direction = TradeDirection.from_name(direction)
        if isinstance(percent, bool) or not isinstance(percent, int) or not 0 < percent <= 100:
            raise InvalidTradeRequest(f"Percentage must be an integer in (0, 100], got {percent!r}")
        if self.wallet is None:
            raise WalletNotConnected("Connect a wallet first")

        if direction == TradeDirection.BUY:
            share = self.context.config.gas.max_buy_share if percent == 100 else Decimal(percent) / 100
            balance_wei = await self.context.gateway.get_balance(self.wallet.address)
            with localcontext() as ctx:
                ctx.prec = UINT256_DIGITS
                amount = Decimal(balance_wei) * share / Decimal(10**18)
                return format(amount.quantize(Decimal(1).scaleb(-BUY_AMOUNT_PLACES), rounding=ROUND_DOWN), "f")

        token = self.token_state.token
        if token is None:
            raise InvalidTradeRequest("No token selected")
        if percent == 100:
            return await self.max_sell_amount()

        units = await self.context.tokens.balance_of(token.address, self.wallet.address)
        places = min(SELL_AMOUNT_PLACES, token.decimals)
        with localcontext() as ctx:
            ctx.prec = UINT256_DIGITS
            amount = token.from_units(units) * percent / 100
            return format(amount.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN), "f")

    async def _resolve_amount(self, direction: TradeDirection, amount: str) -> str:
        text = amount.strip().lower()
        if text == "max":
            return await self.amount_for_percent(direction, 100)
        if text.endswith("%"):
            try:
                percent = int(text[:-1])
            except ValueError:
                raise InvalidTradeRequest(f"Invalid percentage: {amount!r}") from None
            return await self.amount_for_percent(direction, percent)
        return amount

    async def trade(
        self,
        direction: Union[TradeDirection, str],
        amount: str,
        slippage: Optional[int] = None,
    ) -> TradeResult:
        """
        Buy or sell the selected token.

        Amount is ETH for a buy and token units for a sell. "25%" style
        amounts size against the current balance and "max" means 100%.
        """
        if self.executor.busy:
            raise TradeInProgress("A trade is already in progress")

        async with self._track("trade"):
            if isinstance(direction, str):
                direction = TradeDirection.from_name(direction)
            amount = await self._resolve_amount(direction, amount)

            request = TradeRequest(
                direction=direction,
                amount=amount,
                slippage=self.context.config.default_slippage if slippage is None else slippage,
                token=self.token_state.token,
                route=self.token_state.route,
            )
            result = await self.executor.execute(self.wallet, request, on_event=self._publish)

        await self.on_trade_complete()
        return result

    async def on_trade_complete(self):
        """Refresh balances after a settled trade"""
        await self.refresh_balance()
        await self._refresh_token_balance()

    async def close(self):
        self.poller.stop()
        await self.context.close()
