"""ChainClient protocol and its web3 implementation.

A ``ChainClient`` is read/write access to one RPC endpoint. Read-only calls
are retried on transient transport failures; broadcasting is attempted
exactly once.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from aiohttp import ClientTimeout
from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3RPCError

from mintfleet._errors import rpc_error_message, wrap_chain_error
from mintfleet.retry import RetryPolicy, retry_async, should_retry_read

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RECEIPT_TIMEOUT_S = 120.0
#: Used when the node does not implement eth_maxPriorityFeePerGas.
FALLBACK_PRIORITY_FEE_WEI = 1_000_000_000


@dataclass(frozen=True)
class Receipt:
    """The parts of a mined transaction receipt the core relies on."""

    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    effective_gas_price: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_web3(cls, raw: Any) -> Receipt:
        return cls(
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            status=int(raw["status"]),
            block_number=int(raw["blockNumber"]),
            gas_used=int(raw["gasUsed"]),
            effective_gas_price=int(raw.get("effectiveGasPrice", 0) or 0),
        )


@dataclass(frozen=True)
class FeeParams:
    """Current network fee estimate: EIP-1559 fields or a legacy gas price."""

    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None
    gas_price: int | None = None

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None

    def as_tx_fields(self) -> dict[str, int]:
        if self.is_eip1559:
            return {
                "maxFeePerGas": self.max_fee_per_gas,  # type: ignore[dict-item]
                "maxPriorityFeePerGas": self.max_priority_fee_per_gas or 0,
                "type": 2,
            }
        return {"gasPrice": self.gas_price or 0}


@runtime_checkable
class ChainClient(Protocol):
    """Minimal RPC surface used by the executor and distributor."""

    async def chain_id(self) -> int:
        """Return the chain id used for replay protection."""
        ...

    async def get_nonce(self, address: str) -> int:
        """Return the next nonce for *address*, counting pending transactions."""
        ...

    async def get_balance(self, address: str) -> int:
        """Return the balance of *address* in wei."""
        ...

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        """Estimate gas for *tx*; raises on a would-be revert."""
        ...

    async def fee_params(self) -> FeeParams:
        """Return the network's current fee estimate."""
        ...

    async def submit(self, raw_tx: bytes) -> str:
        """Broadcast a signed transaction and return its hash."""
        ...

    async def await_receipt(self, tx_hash: str, timeout_s: float | None) -> Receipt:
        """Wait until *tx_hash* is mined."""
        ...

    async def call(self, tx: dict[str, Any], block: str | int = "latest") -> bytes:
        """Execute a read-only call and return raw return data."""
        ...


class Web3ChainClient:
    """ChainClient over ``web3.AsyncWeb3`` and its HTTP provider.

    ``handle()`` returns lightweight clients that share this instance's
    transport; only the owning client closes it.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        *,
        retry: RetryPolicy | None = None,
        poll_latency_s: float = 1.0,
        owns_transport: bool = False,
    ) -> None:
        self._w3 = w3
        self._retry = retry or RetryPolicy()
        self._poll_latency_s = poll_latency_s
        self._owns_transport = owns_transport
        self._chain_id: int | None = None

    @classmethod
    def connect(
        cls,
        rpc_url: str,
        *,
        request_timeout_s: float = 30.0,
        retry: RetryPolicy | None = None,
        poll_latency_s: float = 1.0,
    ) -> Web3ChainClient:
        """Create a client that owns a new HTTP transport to *rpc_url*."""
        provider = AsyncWeb3.AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": ClientTimeout(total=request_timeout_s)},
        )
        return cls(
            AsyncWeb3(provider),
            retry=retry,
            poll_latency_s=poll_latency_s,
            owns_transport=True,
        )

    def handle(self) -> Web3ChainClient:
        """Return a client sharing this transport (for per-task use)."""
        clone = Web3ChainClient(
            self._w3, retry=self._retry, poll_latency_s=self._poll_latency_s
        )
        clone._chain_id = self._chain_id
        return clone

    async def _read(self, phase: str, fn: Callable[[], Awaitable[T]]) -> T:
        async def attempt() -> T:
            try:
                return await fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise wrap_chain_error(e, phase=phase) from e

        if self._retry.max_attempts <= 1:
            return await attempt()
        return await retry_async(
            attempt, policy=self._retry, should_retry=should_retry_read
        )

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._read("chain_id", self._fetch_chain_id))
        return self._chain_id

    async def _fetch_chain_id(self) -> int:
        return await self._w3.eth.chain_id

    async def get_nonce(self, address: str) -> int:
        return await self._read(
            "get_nonce",
            lambda: self._w3.eth.get_transaction_count(address, "pending"),
        )

    async def get_balance(self, address: str) -> int:
        return await self._read("get_balance", lambda: self._w3.eth.get_balance(address))

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return await self._read("estimate_gas", lambda: self._w3.eth.estimate_gas(tx))

    async def fee_params(self) -> FeeParams:
        return await self._read("fee_params", self._fetch_fee_params)

    async def _fetch_fee_params(self) -> FeeParams:
        latest = await self._w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            return FeeParams(gas_price=await self._w3.eth.gas_price)
        try:
            priority = await self._w3.eth.max_priority_fee
        except (Web3RPCError, ValueError, NotImplementedError) as e:
            logger.debug(
                "eth_maxPriorityFeePerGas unavailable (%s); using fallback tip",
                rpc_error_message(e),
            )
            priority = FALLBACK_PRIORITY_FEE_WEI
        return FeeParams(
            max_fee_per_gas=2 * int(base_fee) + int(priority),
            max_priority_fee_per_gas=int(priority),
        )

    async def submit(self, raw_tx: bytes) -> str:
        # Never retried: a resend after an ambiguous failure may double-spend.
        try:
            tx_hash = await self._w3.eth.send_raw_transaction(raw_tx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_chain_error(e, phase="submit") from e
        return Web3.to_hex(tx_hash)

    async def await_receipt(self, tx_hash: str, timeout_s: float | None) -> Receipt:
        try:
            raw = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=timeout_s if timeout_s is not None else DEFAULT_RECEIPT_TIMEOUT_S,
                poll_latency=self._poll_latency_s,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_chain_error(e, phase="await_receipt", tx_hash=tx_hash) from e
        return Receipt.from_web3(raw)

    async def call(self, tx: dict[str, Any], block: str | int = "latest") -> bytes:
        result = await self._read("call", lambda: self._w3.eth.call(tx, block))
        return bytes(result)

    async def aclose(self) -> None:
        if not self._owns_transport:
            return
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if callable(disconnect):
            await disconnect()
