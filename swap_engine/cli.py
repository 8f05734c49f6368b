#!/usr/bin/env python3
"""
🔁 Swap Engine CLI
Import/unlock a hot wallet, inspect a token, buy or sell it on Base.
"""
import argparse
import asyncio
import logging
import sys
from getpass import getpass

from .config import load_config
from .context import EngineContext
from .custody import KeyCustody
from .errors import SwapEngineError
from .models import TradeEvent
from .pricing import format_usd
from .session import QUICK_PERCENTAGES, TradingSession


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def print_event(event: TradeEvent):
    suffix = f" {event.tx_hash}" if event.tx_hash else ""
    message = f" - {event.message}" if event.message else ""
    print(f"   ⏳ {event.state.value}{suffix}{message}")


def print_wallet(session: TradingSession):
    state = session.wallet_state
    print(f"\n👛 {state.short_address} ({state.address})")
    print(f"   Balance: {state.balance:.6f} ETH ({state.balance_usd})")
    print(f"   ETH price: {format_usd(state.eth_price)}\n")


def print_token(session: TradingSession):
    state = session.token_state
    token, route = state.token, state.route
    print(f"\n🪙 {token.name} ({token.symbol}) - {token.address}")
    print(f"   Decimals: {token.decimals}")
    if route.has_liquidity:
        detail = f" fee {route.fee}" if route.fee else ""
        if route.is_stable is not None:
            detail = " stable" if route.is_stable else " volatile"
        print(f"   DEX: {route.dex.value}{detail} - pool {route.pair_address}")
    else:
        print("   ❌ No liquidity found")
    price = format_usd(state.price_usd) if state.price_usd else "Price N/A"
    print(f"   Price: {price}")
    if session.wallet:
        print(f"   Balance: {state.balance} {token.symbol} ({state.balance_usd})")
    print()


async def wallet_import(session: TradingSession):
    private_key = getpass("Private key: ")
    password = getpass("Password: ")
    if getpass("Confirm password: ") != password:
        print("❌ Passwords do not match")
        return 1
    await session.connect(private_key, password)
    print("✅ Wallet imported and encrypted")
    print_wallet(session)
    return 0


async def wallet_unlock(session: TradingSession):
    await session.unlock(getpass("Password: "))
    print("✅ Wallet unlocked")
    print_wallet(session)
    return 0


async def show_token(session: TradingSession, reference: str):
    if session.custody.exists():
        password = getpass("Password (enter to skip balance): ")
        if password:
            await session.unlock(password)
    await session.fetch_token(reference)
    print_token(session)
    return 0


async def run_trade(session: TradingSession, direction: str, reference: str, amount: str, slippage: int):
    await session.unlock(getpass("Password: "))
    await session.fetch_token(reference)
    print_token(session)

    if direction == "sell" and session.low_gas:
        print(f"⚠️ Low ETH balance ({session.wallet_state.balance:.6f}), the sell may not cover gas")

    symbol = session.token_state.token.symbol
    unit = "ETH" if direction == "buy" else symbol
    print(f"🔁 {direction.upper()} {amount} {unit} with {slippage}% slippage")

    session.subscribe(print_event)
    result = await session.trade(direction, amount, slippage)

    print(f"\n✅ Settled in block {result.block_number}: {result.tx_hash}")
    if result.clamped:
        print("   ⚠️ Amount was reduced to your full balance")
    print(f"   Gas used: {result.gas_used}")
    print_wallet(session)
    return 0


async def run(args) -> int:
    config = load_config()
    if args.command == "wallet" and args.action == "forget":
        KeyCustody(config.keystore_path).clear()
        print("🗑️ Stored wallet removed")
        return 0

    session = TradingSession(EngineContext(config))
    try:
        if args.command == "wallet":
            if args.action == "import":
                return await wallet_import(session)
            return await wallet_unlock(session)
        if args.command == "token":
            return await show_token(session, args.reference)
        slippage = args.slippage if args.slippage is not None else config.default_slippage
        return await run_trade(session, args.command, args.reference, args.amount, slippage)
    finally:
        await session.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="swap-engine", description="Self-custodial token swaps on Base")
    parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING...")
    commands = parser.add_subparsers(dest="command", required=True)

    wallet = commands.add_parser("wallet", help="Manage the encrypted hot wallet")
    wallet.add_argument("action", choices=["import", "unlock", "forget"])

    token = commands.add_parser("token", help="Show token info, route and price")
    token.add_argument("reference", help="Token address or explorer URL")

    quick = ", ".join(f"{p}%%" for p in QUICK_PERCENTAGES)
    for name, unit in (("buy", "ETH to spend"), ("sell", "Token amount")):
        amount_help = f"{unit}, a share of the balance ({quick}) or 'max'"
        trade = commands.add_parser(name, help=f"{name.capitalize()} a token")
        trade.add_argument("reference", help="Token address or explorer URL")
        trade.add_argument("amount", help=amount_help)
        trade.add_argument("--slippage", type=int, default=None, help="Slippage percent (default 15)")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level or load_config().log_level)

    try:
        return asyncio.run(run(args))
    except SwapEngineError as e:
        print(f"❌ {type(e).__name__}: {e}")
        tx_hash = getattr(e, "tx_hash", None)
        if tx_hash:
            print(f"   tx: {tx_hash}")
        return 1
    except KeyboardInterrupt:
        print("\n👋 Aborted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
