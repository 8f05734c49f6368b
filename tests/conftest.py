"""
Shared fixtures: an in-memory stand-in for the network gateway.
"""

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError

from swap_engine.config import EngineConfig
from swap_engine.contracts import WETH_BASE
from swap_engine.models import FeeData, NetworkEndpoint, TokenDescriptor

# Well-known test key, never funded on mainnet
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = Account.from_key(TEST_PRIVATE_KEY).address

TOKEN = Web3.to_checksum_address("0x" + "ab" * 20)
POOL = Web3.to_checksum_address("0x" + "cd" * 20)
NOW = 1_700_000_000


class FakeNetwork:
    """
    Records every call and answers from registered handlers.

    Handlers are keyed by (address, function name); a handler may be a plain
    value, a callable receiving the call arguments, or an exception instance.
    Unregistered calls revert like a contract without that function.
    """

    def __init__(self):
        self.handlers = {}
        self.balances = {}
        self.fee_data = FeeData(max_fee_per_gas=2_000_000, max_priority_fee_per_gas=100_000)
        self.gas_estimate = 200_000
        self.gas_error = None
        self.base_nonce = 7
        self.receipt_statuses = []
        self.receipt_gate = None
        self.revert_text = None
        self.weth_balances = {}

        self.calls = []
        self.estimates = []
        self.sent = []
        self.closed = False

    def on(self, address, fn_name, handler, bytes32=False):
        key = (address.lower(), fn_name + (":bytes32" if bytes32 else ""))
        self.handlers[key] = handler

    def fund_pool(self, pool, amount=10**18):
        """Give a pool a WETH balance"""
        self.weth_balances[pool.lower()] = amount
        self.on(WETH_BASE, "balanceOf", lambda owner: self.weth_balances.get(owner.lower(), 0))

    def calls_to(self, fn_name):
        return [c for c in self.calls if c[1] == fn_name]

    async def read_contract(self, address, abi, fn_name, *args):
        self.calls.append((address, fn_name, args))

        entry = next(item for item in abi if item.get("name") == fn_name)
        suffix = ":bytes32" if entry["outputs"] and entry["outputs"][0]["type"] == "bytes32" else ""
        key = (address.lower(), fn_name + suffix)
        if key not in self.handlers:
            raise ContractLogicError("execution reverted")

        handler = self.handlers[key]
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(*args)
        return handler

    async def get_balance(self, address):
        self.calls.append((address, "getBalance", ()))
        value = self.balances.get(address, 0)
        if isinstance(value, Exception):
            raise value
        return value

    async def get_fee_data(self):
        return self.fee_data

    async def estimate_gas(self, tx):
        self.estimates.append(tx)
        if self.gas_error:
            raise self.gas_error
        return self.gas_estimate

    async def get_nonce(self, address):
        return self.base_nonce + len(self.sent)

    async def send_transaction(self, account, tx):
        # Real signing catches malformed transactions
        account.sign_transaction(tx)
        self.sent.append(tx)
        return "0x" + f"{len(self.sent):064x}"

    async def wait_for_receipt(self, tx_hash):
        if self.receipt_gate is not None:
            await self.receipt_gate.wait()
        status = self.receipt_statuses.pop(0) if self.receipt_statuses else 1
        return {"status": status, "blockNumber": 12345, "gasUsed": 150_000, "transactionHash": tx_hash}

    async def revert_reason(self, tx, block_number):
        return self.revert_text

    async def close(self):
        self.closed = True


@pytest.fixture
def fake():
    return FakeNetwork()


@pytest.fixture
def config(tmp_path):
    return EngineConfig(
        endpoints=[NetworkEndpoint(url="http://localhost:8545")],
        keystore_path=str(tmp_path / "keystore.json"),
    )


@pytest.fixture
def token():
    return TokenDescriptor(address=TOKEN, name="Test Token", symbol="TEST", decimals=18)


