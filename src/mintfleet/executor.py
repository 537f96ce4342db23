"""Per-account transaction lifecycle and read-only calls.

``send`` is stateless across accounts: the nonce is fetched fresh from the
chain for every signer, so concurrent accounts never share a counter.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any

from web3 import Web3

from mintfleet._errors import rpc_error_message, wrap_chain_error
from mintfleet.contracts import UNKNOWN_REVERT, decode_revert
from mintfleet.errors import (
    ExecutionError,
    GasEstimationFailed,
    InvalidInput,
    Reverted,
    RpcFailure,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from mintfleet.accounts import Account
    from mintfleet.chain import ChainClient, FeeParams, Receipt
    from mintfleet.contracts import ContractCall, ContractDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TxOverrides:
    """Optional cost tuning. Correctness never depends on these."""

    gas_limit: int | None = None
    #: Headroom applied to the node's estimate when ``gas_limit`` is unset.
    gas_multiplier: float = 1.0
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None
    gas_price: int | None = None

    def __post_init__(self) -> None:
        if self.gas_multiplier < 1.0:
            raise InvalidInput(
                f"gas_multiplier must be >= 1.0, got {self.gas_multiplier}",
                hint="Values below 1.0 would under-fund the estimated gas.",
            )
        if self.gas_limit is not None and self.gas_limit <= 0:
            raise InvalidInput(f"gas_limit must be > 0, got {self.gas_limit}")

    def apply_fees(self, fees: FeeParams) -> dict[str, int]:
        fields = fees.as_tx_fields()
        if self.gas_price is not None:
            return {"gasPrice": self.gas_price}
        if "maxFeePerGas" in fields:
            if self.max_fee_per_gas is not None:
                fields["maxFeePerGas"] = self.max_fee_per_gas
            if self.max_priority_fee_per_gas is not None:
                fields["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
        return fields


async def _step(
    awaitable: Awaitable[Any],
    *,
    phase: str,
    address: str | None,
    tx_hash: str | None = None,
    abi: tuple[dict[str, Any], ...] = (),
) -> Any:
    """Await one RPC step, attributing any failure to *phase*."""
    try:
        return await awaitable
    except asyncio.CancelledError:
        raise
    except Exception as e:
        err = wrap_chain_error(
            e, phase=phase, address=address, tx_hash=tx_hash, abi=abi
        )
        if err is e:
            raise
        raise err from e


async def send(
    call: ContractCall,
    signer: Account,
    client: ChainClient,
    *,
    timeout_s: float | None = None,
    overrides: TxOverrides | None = None,
    abi: tuple[dict[str, Any], ...] = (),
    on_submitted: Callable[[str], None] | None = None,
) -> str:
    """Estimate, sign, submit and confirm *call* from *signer*.

    Returns the transaction hash of a mined, successful transaction.
    See ``transact`` for the error contract.
    """
    receipt = await transact(
        call,
        signer,
        client,
        timeout_s=timeout_s,
        overrides=overrides,
        abi=abi,
        on_submitted=on_submitted,
    )
    return receipt.tx_hash


async def transact(
    call: ContractCall,
    signer: Account,
    client: ChainClient,
    *,
    timeout_s: float | None = None,
    overrides: TxOverrides | None = None,
    abi: tuple[dict[str, Any], ...] = (),
    on_submitted: Callable[[str], None] | None = None,
) -> Receipt:
    """Like ``send`` but return the full receipt of the mined transaction.

    *on_submitted* is called with the hash as soon as the node accepts the
    signed transaction, before the receipt wait begins.

    Raises:
        GasEstimationFailed: The node refused to estimate (would revert,
            insufficient funds, already minted, gas above the block limit).
        Reverted: The transaction was mined with status 0.
        Timeout: No receipt within *timeout_s*; carries the hash.
        RpcFailure: A transport failure, or any node failure outside
            gas estimation.
    """
    overrides = overrides or TxOverrides()
    address = signer.address
    data_hex = Web3.to_hex(call.data)
    request = {"from": address, "to": call.to, "data": data_hex, "value": call.value}

    chain_id = await _step(client.chain_id(), phase="chain_id", address=address)
    nonce = await _step(client.get_nonce(address), phase="get_nonce", address=address)

    if overrides.gas_limit is not None:
        gas = overrides.gas_limit
    else:
        try:
            estimate = await _step(
                client.estimate_gas(request),
                phase="estimate_gas",
                address=address,
                abi=abi,
            )
        except Reverted as e:
            raise GasEstimationFailed(
                _reason(e, abi),
                data=e.data,
                address=address,
                hint="The call would revert if sent.",
            ) from e
        except RpcFailure as e:
            if e.retryable or e.status_code is not None:
                raise
            raise GasEstimationFailed(
                _node_message(e),
                address=address,
                hint="The node refused to estimate gas for this call.",
            ) from e
        gas = int(estimate * overrides.gas_multiplier)

    fees = await _step(client.fee_params(), phase="fee_params", address=address)

    tx: dict[str, Any] = {
        "chainId": chain_id,
        "nonce": nonce,
        "to": call.to,
        "data": data_hex,
        "value": call.value,
        "gas": gas,
        **overrides.apply_fees(fees),
    }
    signed = signer.signer().sign_transaction(tx)
    logger.debug(
        "Submitting %s from %s nonce=%d gas=%d",
        call.function or "call",
        address,
        nonce,
        gas,
    )
    tx_hash = await _step(
        client.submit(signed.raw_transaction), phase="submit", address=address
    )
    if on_submitted is not None:
        on_submitted(tx_hash)

    receipt: Receipt = await _step(
        client.await_receipt(tx_hash, timeout_s),
        phase="await_receipt",
        address=address,
        tx_hash=tx_hash,
    )
    if not receipt.succeeded:
        reason = await _replay_reason(client, request, receipt.block_number, abi)
        raise Reverted(reason, address=address, phase="receipt", tx_hash=tx_hash)

    logger.debug("Mined %s in block %d for %s", tx_hash, receipt.block_number, address)
    return receipt


async def _replay_reason(
    client: ChainClient,
    request: dict[str, Any],
    block_number: int,
    abi: tuple[dict[str, Any], ...],
) -> str:
    """Re-run a reverted call at its block to recover the revert reason."""
    try:
        await _step(
            client.call(request, block_number), phase="replay", address=None, abi=abi
        )
    except Reverted as e:
        return _reason(e, abi)
    except ExecutionError as e:
        logger.debug("Revert replay failed: %s", e)
    return UNKNOWN_REVERT


async def call(
    view: ContractCall,
    client: ChainClient,
    *,
    contract: ContractDescriptor | None = None,
    sender: str | None = None,
    block: str | int = "latest",
) -> Any:
    """Run *view* without signing or changing state.

    Returns decoded values when *contract* is given (a single value is
    unwrapped), raw return bytes otherwise.
    """
    abi = contract.abi if contract is not None else ()
    raw = await _step(
        client.call(view.as_tx(sender=sender), block),
        phase="call",
        address=sender,
        abi=abi,
    )
    if contract is None:
        return raw
    values = contract.decode_output(view.function, raw)
    return values[0] if len(values) == 1 else values


def _node_message(err: ExecutionError) -> str:
    cause = err.__cause__
    return rpc_error_message(cause) if cause is not None else err.message


def _reason(err: Reverted, abi: tuple[dict[str, Any], ...]) -> str:
    # Transports do not know the ABI; re-decode so custom errors get names.
    if err.data and abi:
        return decode_revert(err.data, abi=abi)
    return err.reason
