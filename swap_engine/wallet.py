"""
Hot wallet - the unlocked signing key held in memory only.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .custody import validate_private_key
from .errors import InvalidKeyFormat


@dataclass
class HotWallet:
    """Connected wallet session"""
    account: LocalAccount
    balance: Decimal = Decimal(0)  # native ETH
    balance_wei: int = 0

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def short_address(self) -> str:
        return shorten_address(self.address)

    def update_balance(self, balance_wei: int):
        self.balance_wei = balance_wei
        self.balance = Decimal(balance_wei) / Decimal(10**18)

    def __repr__(self):
        # Never expose the key through repr/logging
        return f"HotWallet(address={self.address}, balance={self.balance})"


def normalize_private_key(raw_key: str) -> str:
    """Validated key with a 0x prefix"""
    key = validate_private_key(raw_key)
    return key if key.startswith("0x") else f"0x{key}"


def connect_hot_wallet(raw_key: str) -> HotWallet:
    """
    Build a wallet session from a raw private key.

    Raises:
        InvalidKeyFormat: key is not 64 hex characters, or is zero or
            above the secp256k1 curve order
    """
    key = normalize_private_key(raw_key)
    try:
        account = Account.from_key(key)
    except ValueError as e:
        raise InvalidKeyFormat("Private key is out of range") from e
    return HotWallet(account=account)


def shorten_address(address: Optional[str]) -> str:
    """0x1234...abcd"""
    if not address:
        return ""
    return f"{address[:6]}...{address[-4:]}"
