"""
Network access for Base.

Reads go through a weighted, prioritised set of JSON-RPC endpoints that
race each other; signing, gas simulation and broadcast always use one
dedicated endpoint so nonces and ordering come from a single source.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence
from urllib.parse import urlparse

from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from .config import EngineConfig
from .errors import BroadcastFailed, NetworkUnavailable
from .models import FeeData, NetworkEndpoint

logger = logging.getLogger(__name__)

# Deterministic contract answers: every endpoint would say the same thing
DETERMINISTIC_ERRORS = (ContractLogicError, BadFunctionCallOutput)


def endpoint_label(endpoint: NetworkEndpoint) -> str:
    """Host only, so API keys embedded in URLs never reach the logs"""
    return f"{endpoint.priority}:{urlparse(endpoint.url).netloc or endpoint.url}"


def _make_web3(url: str, timeout: float) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": timeout}))


class QuorumProvider:
    """
    Weighted fallback reads across several endpoints.

    The preferred endpoint is asked first. When it stalls past its stall
    timeout, or fails, the next endpoint is started while earlier calls keep
    racing. Each answer adds the endpoint's weight to a tally for that
    value; the first value reaching `quorum` wins and the rest is cancelled.
    """

    def __init__(
        self,
        endpoints: Sequence[NetworkEndpoint],
        quorum: int = 1,
        request_timeout: float = 10.0,
        clients: Optional[Sequence[Any]] = None,
    ):
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")

        order = sorted(range(len(endpoints)), key=lambda i: (endpoints[i].priority, -endpoints[i].weight))
        self.endpoints = [endpoints[i] for i in order]
        if clients is None:
            self.clients = [_make_web3(e.url, request_timeout) for e in self.endpoints]
        else:
            self.clients = [clients[i] for i in order]

        self.quorum = quorum
        self.request_timeout = request_timeout

    async def read(self, fn: Callable[[Any], Awaitable[Any]], label: str = "read") -> Any:
        """
        Run `fn(client)` against the endpoints until a quorum agrees.

        Raises:
            NetworkUnavailable: every endpoint failed or no value reached quorum
            ContractLogicError / BadFunctionCallOutput: the contract itself
                rejected the call
        """
        waiting = list(zip(self.endpoints, self.clients))
        pending: dict[asyncio.Task, NetworkEndpoint] = {}
        tallies: dict[str, tuple[int, Any]] = {}
        errors: dict[str, str] = {}

        def launch() -> NetworkEndpoint:
            endpoint, client = waiting.pop(0)
            task = asyncio.ensure_future(asyncio.wait_for(fn(client), timeout=self.request_timeout))
            pending[task] = endpoint
            return endpoint

        try:
            current = launch()
            while pending:
                stall = current.stall_timeout if waiting else None
                done, _ = await asyncio.wait(
                    list(pending), timeout=stall, return_when=asyncio.FIRST_COMPLETED
                )

                if not done:
                    logger.debug(f"{label}: {endpoint_label(current)} stalled, starting next endpoint")
                    current = launch()
                    continue

                for task in done:
                    endpoint = pending.pop(task)
                    exc = task.exception()
                    if exc is not None:
                        if isinstance(exc, DETERMINISTIC_ERRORS):
                            raise exc
                        errors[endpoint_label(endpoint)] = f"{type(exc).__name__}: {exc}"
                        logger.debug(f"{label}: {endpoint_label(endpoint)} failed: {exc!r}")
                        continue

                    value = task.result()
                    key = repr(value)
                    weight, _ = tallies.get(key, (0, value))
                    weight += endpoint.weight
                    tallies[key] = (weight, value)
                    if weight >= self.quorum:
                        return value

                if waiting:
                    current = launch()
        finally:
            for task in pending:
                task.cancel()

        raise NetworkUnavailable(f"All RPC endpoints failed for {label}", errors)

    async def close(self):
        for client in self.clients:
            await _disconnect(client)


async def _disconnect(client: Any):
    try:
        await client.provider.disconnect()
    except Exception as e:
        logger.debug(f"Provider disconnect failed: {e}")


class NetworkGateway:
    """
    Everything the engine needs from the chain.

    Usage:
        gateway = NetworkGateway(config)
        pair = await gateway.read_contract(factory, V2_FACTORY_ABI, "getPair", token, WETH_BASE)
    """

    def __init__(
        self,
        config: EngineConfig,
        quorum: Optional[QuorumProvider] = None,
        signer: Optional[AsyncWeb3] = None,
    ):
        self.config = config
        self.quorum = quorum or QuorumProvider(
            config.endpoints,
            quorum=config.rpc_quorum,
            request_timeout=config.request_timeout,
        )
        self.signer = signer or _make_web3(config.signing_url, config.request_timeout)

    # =========================================================================
    # Reads (quorum)
    # =========================================================================

    async def read_contract(self, address: str, abi: list, fn_name: str, *args) -> Any:
        """Call a view function through the endpoint quorum"""
        async def call(w3):
            contract = w3.eth.contract(address=address, abi=abi)
            return await getattr(contract.functions, fn_name)(*args).call()

        return await self.quorum.read(call, label=fn_name)

    async def get_balance(self, address: str) -> int:
        """Native balance in wei"""
        return await self.quorum.read(lambda w3: w3.eth.get_balance(address), label="getBalance")

    # =========================================================================
    # Signing endpoint
    # =========================================================================

    async def get_fee_data(self) -> FeeData:
        """
        Suggested EIP-1559 fees with a fixed, minimal priority fee.

        Base includes transactions quickly even at a tiny tip, so the
        endpoint's priority suggestion only feeds the max fee ceiling.
        """
        try:
            block = await self.signer.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas", 0) or 0
            suggested_priority = await self.signer.eth.max_priority_fee
        except Exception as e:
            raise NetworkUnavailable(f"Fee data unavailable: {e}") from e

        priority = Web3.to_wei(self.config.gas.priority_fee_gwei, "gwei")
        max_fee = max(base_fee * 2 + suggested_priority, priority)
        return FeeData(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority)

    async def estimate_gas(self, tx: dict) -> int:
        """Simulate a transaction; errors propagate to the caller"""
        return await self.signer.eth.estimate_gas(tx)

    async def get_nonce(self, address: str) -> int:
        try:
            return await self.signer.eth.get_transaction_count(address, "pending")
        except Exception as e:
            raise NetworkUnavailable(f"Nonce unavailable: {e}") from e

    async def send_transaction(self, account: LocalAccount, tx: dict) -> str:
        """Sign locally and broadcast; returns the 0x transaction hash"""
        try:
            signed = account.sign_transaction(tx)
        except Exception as e:
            raise BroadcastFailed(f"Signing failed: {e}") from e
        try:
            tx_hash = await self.signer.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            raise BroadcastFailed(f"Broadcast rejected: {e}") from e
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> dict:
        """
        Wait for inclusion; no engine timeout unless configured.

        Raises:
            NetworkUnavailable: timed out or the endpoint failed, carrying tx_hash
        """
        try:
            receipt = await self.signer.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout
            )
        except Exception as e:
            raise NetworkUnavailable(f"Receipt unavailable for {tx_hash}: {e}", tx_hash=tx_hash) from e
        return dict(receipt)

    async def revert_reason(self, tx: dict, block_number: Optional[int]) -> Optional[str]:
        """Replay a mined transaction as a call to recover its revert reason"""
        call = {k: tx[k] for k in ("from", "to", "data", "value") if k in tx}
        try:
            await self.signer.eth.call(call, block_identifier=block_number or "latest")
        except ContractLogicError as e:
            return e.message or str(e)
        except Exception as e:
            logger.debug(f"Revert reason replay failed: {e}")
        return None

    async def close(self):
        await self.quorum.close()
        await _disconnect(self.signer)
