"""
Trade Executor - buy/sell swaps against the resolved route.

Pipeline:
    VALIDATING -> APPROVING (sell) -> QUOTING -> ESTIMATING_GAS
    -> BROADCASTING -> CONFIRMING -> SETTLED | FAILED

Every transition is published as a TradeEvent. Transactions are encoded
offline and signed locally; only the signing endpoint ever sees them.
"""
import asyncio
import logging
import time
from decimal import Decimal
from typing import Callable, Optional

from web3 import Web3

from .config import EngineConfig
from .contracts import (
    AERODROME_FACTORY,
    AERODROME_ROUTER_ABI,
    ERC20_ABI,
    MAX_UINT256,
    UNISWAP_V3_QUOTER,
    V2_ROUTER_ABI,
    V3_QUOTER_ABI,
    V3_ROUTER_ABI,
    V3_ROUTER_ADDRESS_THIS,
    WETH_BASE,
)
from .errors import (
    ApprovalFailed,
    InsufficientBalance,
    InsufficientGas,
    InvalidTradeRequest,
    NetworkUnavailable,
    NoLiquidity,
    SwapEngineError,
    TradeFailed,
    TradeInProgress,
    TransactionReverted,
    WalletNotConnected,
)
from .models import (
    DexFamily,
    TradeDirection,
    TradeEvent,
    TradeRequest,
    TradeResult,
    TradeState,
)
from .tokens import TokenRegistry
from .wallet import HotWallet

NATIVE_DECIMALS = 18

EventCallback = Callable[[TradeEvent], None]


def min_amount_out(quote: int, slippage: int) -> int:
    """Montant minimum après slippage (calcul entier uniquement)"""
    return quote * (100 - slippage) // 100


def decimal_places(amount: Decimal) -> int:
    exponent = amount.as_tuple().exponent
    return -exponent if exponent < 0 else 0


class TradeExecutor:
    """
    One trade at a time for one wallet.

    Usage:
        executor = TradeExecutor(gateway, TokenRegistry(gateway), config)
        result = await executor.execute(wallet, request, on_event=print)
    """

    def __init__(
        self,
        gateway,
        tokens: TokenRegistry,
        config: EngineConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.tokens = tokens
        self.config = config
        self.clock = clock
        self.state = TradeState.IDLE
        self.logger = logging.getLogger(__name__)

        self._lock = asyncio.Lock()

        # Encodeurs offline, pas besoin de provider
        codec = Web3()
        self._erc20 = codec.eth.contract(abi=ERC20_ABI)
        self._routers = {
            DexFamily.UNISWAP_V2: codec.eth.contract(abi=V2_ROUTER_ABI),
            DexFamily.AERODROME: codec.eth.contract(abi=AERODROME_ROUTER_ABI),
            DexFamily.UNISWAP_V3: codec.eth.contract(abi=V3_ROUTER_ABI),
        }

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # =========================================================================
    # Entry point
    # =========================================================================

    async def execute(
        self,
        wallet: Optional[HotWallet],
        request: TradeRequest,
        on_event: Optional[EventCallback] = None,
    ) -> TradeResult:
        """
        Exécute un trade jusqu'à un état terminal

        Args:
            wallet: Wallet déverrouillé
            request: Ordre de trade (token, route, montant, slippage)
            on_event: Callback appelé à chaque transition

        Raises:
            TradeInProgress: un autre trade est en cours
            InvalidTradeRequest / WalletNotConnected: préconditions non remplies
            InsufficientGas, InsufficientBalance, TokenCallFailed, NoLiquidity,
            ApprovalFailed, BroadcastFailed, TransactionReverted, NetworkUnavailable
            TradeFailed: toute autre erreur, chaînée via __cause__
        """
        if self._lock.locked():
            raise TradeInProgress("A trade is already in progress")

        async with self._lock:
            events: list[TradeEvent] = []
            in_flight: Optional[str] = None

            def emit(state: TradeState, tx_hash: Optional[str] = None, message: str = ""):
                nonlocal in_flight
                self.state = state
                if state != TradeState.FAILED:
                    in_flight = tx_hash
                event = TradeEvent(state=state, direction=request.direction, tx_hash=tx_hash, message=message)
                events.append(event)
                if on_event:
                    try:
                        on_event(event)
                    except Exception:
                        self.logger.exception("Trade event listener failed")

            try:
                emit(TradeState.VALIDATING)
                amount = self._validate(wallet, request)
                if request.direction == TradeDirection.BUY:
                    result = await self._buy(wallet, request, amount, emit)
                else:
                    result = await self._sell(wallet, request, amount, emit)
            except SwapEngineError as e:
                symbol = request.token.symbol if request.token else "?"
                self.logger.error(f"{request.direction.value} {symbol} failed: {e}")
                emit(TradeState.FAILED, tx_hash=getattr(e, "tx_hash", None) or in_flight, message=str(e))
                raise
            except asyncio.CancelledError:
                emit(TradeState.FAILED, tx_hash=in_flight, message="Cancelled")
                raise
            except Exception as e:
                self.logger.exception(f"{request.direction.value} failed unexpectedly")
                error = TradeFailed(f"{type(e).__name__}: {e}", tx_hash=in_flight)
                emit(TradeState.FAILED, tx_hash=in_flight, message=str(error))
                raise error from e
            finally:
                self.state = TradeState.IDLE

            result.events = events
            return result

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate(self, wallet: Optional[HotWallet], request: TradeRequest) -> Decimal:
        if wallet is None:
            raise WalletNotConnected("Connect a wallet first")
        if request.token is None:
            raise InvalidTradeRequest("No token selected")
        if request.route is None or not request.route.has_liquidity:
            raise InvalidTradeRequest(f"No liquidity route for {request.token.symbol}")

        amount = request.parsed_amount()
        if amount is None or amount <= 0:
            raise InvalidTradeRequest(f"Invalid amount: {request.amount!r}")

        decimals = NATIVE_DECIMALS if request.direction == TradeDirection.BUY else request.token.decimals
        if decimal_places(amount) > decimals:
            raise InvalidTradeRequest(f"Amount has more than {decimals} decimal places")

        slippage = request.slippage
        if isinstance(slippage, bool) or not isinstance(slippage, int) or not 0 < slippage <= 100:
            raise InvalidTradeRequest(f"Slippage must be an integer in (0, 100], got {slippage!r}")

        return amount

    # =========================================================================
    # Buy / Sell
    # =========================================================================

    async def _buy(self, wallet: HotWallet, request: TradeRequest, amount: Decimal, emit) -> TradeResult:
        amount_in = Web3.to_wei(amount, "ether")

        native_balance = await self.gateway.get_balance(wallet.address)
        if native_balance < amount_in:
            raise InsufficientBalance(
                f"Insufficient ETH: have {Web3.from_wei(native_balance, 'ether')}, need {amount}"
            )

        return await self._swap(wallet, request, amount_in, emit)

    async def _sell(self, wallet: HotWallet, request: TradeRequest, amount: Decimal, emit) -> TradeResult:
        token = request.token

        # 1. Vérifier l'ETH pour le gas
        native_balance = await self.gateway.get_balance(wallet.address)
        min_reserve = Web3.to_wei(self.config.gas.min_gas_reserve_eth, "ether")
        if native_balance < min_reserve:
            raise InsufficientGas(
                f"Insufficient ETH for gas. Need ~{self.config.gas.min_gas_reserve_eth} ETH, "
                f"have {Web3.from_wei(native_balance, 'ether')} ETH"
            )

        # 2. Vérifier le balance du token
        balance = await self.tokens.balance_of(token.address, wallet.address)
        amount_in = token.to_units(amount)
        clamped = False
        if amount_in > balance:
            self.logger.warning(
                f"Sell amount {amount} {token.symbol} exceeds balance "
                f"{token.from_units(balance)}, selling full balance"
            )
            amount_in = balance
            clamped = True
        if amount_in == 0:
            raise InsufficientBalance(f"No {token.symbol} balance to sell")

        # 3. Approval si nécessaire, puis swap
        emit(TradeState.APPROVING)
        approval_tx_hash = await self._ensure_approval(wallet, token.address, request.route.router, emit)

        result = await self._swap(wallet, request, amount_in, emit)
        result.approval_tx_hash = approval_tx_hash
        result.clamped = clamped
        return result

    async def _ensure_approval(self, wallet: HotWallet, token_address: str, spender: str, emit) -> Optional[str]:
        """Approval max pour le router, sauf si au moins la moitié reste disponible"""
        allowance = await self.tokens.get_allowance(token_address, wallet.address, spender)
        if allowance >= MAX_UINT256 // 2:
            return None

        tx = {
            "from": wallet.address,
            "to": token_address,
            "data": self._erc20.encode_abi("approve", args=[spender, MAX_UINT256]),
            "value": 0,
            "chainId": self.config.chain_id,
        }
        gas_limit = await self._estimate_gas(tx, self.config.gas.approval_gas_limit)
        tx_hash, signed_tx = await self._send(wallet, tx, gas_limit)
        self.logger.info(f"Approval sent: {tx_hash}")
        emit(TradeState.APPROVING, tx_hash=tx_hash, message="Waiting for approval")

        receipt = await asyncio.shield(self.gateway.wait_for_receipt(tx_hash))
        if receipt.get("status") != 1:
            reason = await self.gateway.revert_reason(signed_tx, receipt.get("blockNumber"))
            raise ApprovalFailed("Token approval reverted", tx_hash=tx_hash, reason=reason)
        return tx_hash

    async def _swap(self, wallet: HotWallet, request: TradeRequest, amount_in: int, emit) -> TradeResult:
        route = request.route

        emit(TradeState.QUOTING)
        quote = await self._quote(request, amount_in)
        min_out = min_amount_out(quote, request.slippage)
        self.logger.info(
            f"{route.dex.value} {request.direction.value}: in={amount_in} quote={quote} min_out={min_out}"
        )

        tx = {
            "from": wallet.address,
            "to": route.router,
            "data": self._swap_calldata(request, wallet.address, amount_in, min_out),
            "value": amount_in if request.direction == TradeDirection.BUY else 0,
            "chainId": self.config.chain_id,
        }

        emit(TradeState.ESTIMATING_GAS)
        gas_limit = await self._estimate_gas(tx, self.config.gas.fallback_gas_limit)

        emit(TradeState.BROADCASTING)
        tx_hash, signed_tx = await self._send(wallet, tx, gas_limit)
        self.logger.info(f"Swap sent: {tx_hash}")

        emit(TradeState.CONFIRMING, tx_hash=tx_hash)
        # Une fois broadcastée, la tx vit sa vie même si l'appelant annule
        receipt = await asyncio.shield(self.gateway.wait_for_receipt(tx_hash))
        if receipt.get("status") != 1:
            reason = await self.gateway.revert_reason(signed_tx, receipt.get("blockNumber"))
            message = f"Transaction reverted: {reason}" if reason else "Transaction reverted"
            raise TransactionReverted(message, tx_hash=tx_hash, reason=reason)

        emit(TradeState.SETTLED, tx_hash=tx_hash)
        return TradeResult(
            tx_hash=tx_hash,
            direction=request.direction,
            dex=route.dex,
            amount_in=amount_in,
            quoted_amount_out=quote,
            min_amount_out=min_out,
            gas_limit=gas_limit,
            gas_used=receipt.get("gasUsed", 0),
            block_number=receipt.get("blockNumber"),
        )

    # =========================================================================
    # Quotes, calldata, gas
    # =========================================================================

    def _token_pair(self, request: TradeRequest) -> tuple[str, str]:
        if request.direction == TradeDirection.BUY:
            return WETH_BASE, request.token.address
        return request.token.address, WETH_BASE

    def _aerodrome_routes(self, request: TradeRequest) -> list[tuple]:
        token_in, token_out = self._token_pair(request)
        return [(token_in, token_out, bool(request.route.is_stable), AERODROME_FACTORY)]

    async def _quote(self, request: TradeRequest, amount_in: int) -> int:
        """
        Quote attendue via le quoter de la route

        Raises:
            NoLiquidity: quote nulle ou appel rejeté par le quoter
        """
        route = request.route
        token_in, token_out = self._token_pair(request)

        try:
            if route.dex == DexFamily.UNISWAP_V3:
                params = (token_in, token_out, amount_in, route.fee, 0)
                quoted = await self.gateway.read_contract(
                    UNISWAP_V3_QUOTER, V3_QUOTER_ABI, "quoteExactInputSingle", params
                )
                amount_out = quoted[0]
            elif route.dex == DexFamily.AERODROME:
                amounts = await self.gateway.read_contract(
                    route.router, AERODROME_ROUTER_ABI, "getAmountsOut", amount_in, self._aerodrome_routes(request)
                )
                amount_out = amounts[-1]
            else:
                amounts = await self.gateway.read_contract(
                    route.router, V2_ROUTER_ABI, "getAmountsOut", amount_in, [token_in, token_out]
                )
                amount_out = amounts[-1]
        except NetworkUnavailable:
            raise
        except Exception as e:
            raise NoLiquidity(f"No quote available on {route.dex.value}: {e}") from e

        if amount_out == 0:
            raise NoLiquidity(f"Zero liquidity on {route.dex.value}, the swap would return nothing")
        return amount_out

    def _swap_calldata(self, request: TradeRequest, recipient: str, amount_in: int, min_out: int) -> str:
        route = request.route
        router = self._routers[route.dex]
        token_in, token_out = self._token_pair(request)
        deadline = int(self.clock()) + self.config.deadline_seconds
        buying = request.direction == TradeDirection.BUY

        if route.dex == DexFamily.UNISWAP_V3:
            if buying:
                params = (token_in, token_out, route.fee, recipient, amount_in, min_out, 0)
                return router.encode_abi("exactInputSingle", args=[params])

            # Swap vers le router puis unwrap pour que le wallet reçoive de l'ETH natif
            params = (token_in, token_out, route.fee, V3_ROUTER_ADDRESS_THIS, amount_in, min_out, 0)
            calls = [
                router.encode_abi("exactInputSingle", args=[params]),
                router.encode_abi("unwrapWETH9", args=[min_out, recipient]),
            ]
            return router.encode_abi(
                "multicall", args=[deadline, [Web3.to_bytes(hexstr=c) for c in calls]]
            )

        path = self._aerodrome_routes(request) if route.dex == DexFamily.AERODROME else [token_in, token_out]
        if buying:
            return router.encode_abi(
                "swapExactETHForTokensSupportingFeeOnTransferTokens",
                args=[min_out, path, recipient, deadline],
            )
        return router.encode_abi(
            "swapExactTokensForETHSupportingFeeOnTransferTokens",
            args=[amount_in, min_out, path, recipient, deadline],
        )

    async def _estimate_gas(self, tx: dict, fallback: int) -> int:
        """Gas simulé + buffer, ou le fallback fixe"""
        try:
            estimated = await self.gateway.estimate_gas(tx)
        except Exception as e:
            self.logger.warning(f"Gas estimation failed, using {fallback}: {e}")
            return fallback
        return estimated * (100 + self.config.gas.gas_buffer_pct) // 100

    async def _send(self, wallet: HotWallet, tx: dict, gas_limit: int) -> tuple[str, dict]:
        """Ajoute fees et nonce, signe et broadcast"""
        fees = await self.gateway.get_fee_data()
        nonce = await self.gateway.get_nonce(wallet.address)

        full_tx = dict(tx)
        full_tx.update({
            "gas": gas_limit,
            "nonce": nonce,
            "maxFeePerGas": fees.max_fee_per_gas,
            "maxPriorityFeePerGas": fees.max_priority_fee_per_gas,
        })
        tx_hash = await self.gateway.send_transaction(wallet.account, full_tx)
        return tx_hash, full_tx
