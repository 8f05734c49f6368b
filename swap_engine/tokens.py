"""
Token Registry - address extraction, ERC20 metadata, balances and allowances.
"""
import logging
import re
from decimal import Decimal
from typing import Optional

from web3 import Web3

from .contracts import ERC20_ABI, ERC20_BYTES32_ABI
from .errors import NoAddressFound, TokenCallFailed
from .models import TokenDescriptor
from .network import DETERMINISTIC_ERRORS

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")


def extract_token_address(text: str) -> str:
    """
    Pull the first address out of free text or an explorer URL.

    Examples:
        "0xabc...def" -> "0xAbC...dEf"
        "https://basescan.org/token/0xabc...def" -> "0xAbC...dEf"

    Raises:
        NoAddressFound: no 0x-prefixed 40 hex character run in the text
    """
    match = ADDRESS_RE.search(text or "")
    if not match:
        raise NoAddressFound(f"No token address found in: {text!r}")
    return Web3.to_checksum_address(match.group(0))


def decode_bytes32_string(raw: bytes) -> str:
    """bytes32 string as returned by MKR-style tokens"""
    return bytes(raw).rstrip(b"\x00").decode("utf-8", errors="replace")


class TokenRegistry:
    """ERC20 reads through the network gateway, with metadata cached per address"""

    def __init__(self, gateway, cache: Optional[dict] = None):
        self.gateway = gateway
        self.cache: dict[str, TokenDescriptor] = cache if cache is not None else {}

    async def _text_field(self, address: str, fn_name: str) -> Optional[str]:
        """String ABI first, then the bytes32 variant"""
        try:
            return await self.gateway.read_contract(address, ERC20_ABI, fn_name)
        except Exception as e:
            logger.debug(f"{fn_name}() as string failed for {address}: {e}")

        try:
            raw = await self.gateway.read_contract(address, ERC20_BYTES32_ABI, fn_name)
            return decode_bytes32_string(raw)
        except Exception as e:
            logger.debug(f"{fn_name}() as bytes32 failed for {address}: {e}")
        return None

    async def get_token_info(self, address: str) -> TokenDescriptor:
        """
        Token metadata with defaults for anything the contract won't answer.

        Only a descriptor whose decimals were actually read is cached, so a
        transient outage doesn't pin the 18-decimals default for good.
        """
        checksummed = Web3.to_checksum_address(address)
        cached = self.cache.get(checksummed)
        if cached:
            return cached

        decimals = None
        try:
            decimals = int(await self.gateway.read_contract(checksummed, ERC20_ABI, "decimals"))
        except Exception as e:
            logger.debug(f"decimals() failed for {checksummed}: {e}")

        name = await self._text_field(checksummed, "name")
        symbol = await self._text_field(checksummed, "symbol")

        token = TokenDescriptor(
            address=checksummed,
            name=name or "Unknown",
            symbol=symbol or "???",
            decimals=decimals if decimals is not None else 18,
        )
        if decimals is not None:
            self.cache[checksummed] = token
        else:
            logger.warning(f"Could not read decimals for {checksummed}, assuming 18")
        return token

    async def _erc20_call(self, token_address: str, fn_name: str, *args) -> int:
        try:
            return await self.gateway.read_contract(token_address, ERC20_ABI, fn_name, *args)
        except DETERMINISTIC_ERRORS as e:
            raise TokenCallFailed(f"{fn_name} rejected by token {token_address}: {e}") from e

    async def balance_of(self, token_address: str, owner: str) -> int:
        """
        Raw balance in base units.

        Raises:
            TokenCallFailed: the token contract reverted
            NetworkUnavailable: no endpoint answered
        """
        return await self._erc20_call(token_address, "balanceOf", owner)

    async def fetch_token_balance(self, token: TokenDescriptor, owner: str) -> Decimal:
        """Human-readable balance; errors propagate"""
        return token.from_units(await self.balance_of(token.address, owner))

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        return await self._erc20_call(token_address, "allowance", owner, spender)
