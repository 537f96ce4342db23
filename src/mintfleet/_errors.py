"""Map web3 / transport exceptions onto the mintfleet error hierarchy.

Everything that cannot be positively identified as a contract revert or an
expired receipt wait is an ``RpcFailure``.
"""

from __future__ import annotations

import asyncio
from typing import Any

from aiohttp import ClientError, ClientResponseError
from hexbytes import HexBytes
from web3.exceptions import ContractLogicError, TimeExhausted

from mintfleet._http import RETRYABLE_STATUS_CODES
from mintfleet.contracts import UNKNOWN_REVERT, decode_revert
from mintfleet.errors import (
    ExecutionError,
    Reverted,
    RpcFailure,
    Timeout,
    _walk_exception_chain,
    with_context,
)

# Node messages that mean "the EVM rejected this", not "the network failed".
_REVERT_MARKERS = ("execution reverted", "insufficient funds")


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        if isinstance(e, ClientResponseError) and 100 <= e.status <= 599:
            return e.status
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a Retry-After delay in seconds."""
    for e in _walk_exception_chain(exc):
        headers: Any = getattr(e, "headers", None)
        if headers is None:
            continue
        raw: Any = None
        try:
            raw = headers.get("Retry-After")
        except AttributeError:
            raw = None
        if isinstance(raw, str) and raw.strip():
            try:
                seconds = float(raw)
            except ValueError:
                continue
            if seconds >= 0:
                return seconds
    return None


def rpc_error_message(exc: BaseException) -> str:
    """Best-effort message for JSON-RPC errors across web3 versions."""
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    if exc.args and isinstance(exc.args[0], dict):
        inner = exc.args[0].get("message")
        if isinstance(inner, str):
            return inner
    return str(exc)


def revert_data(exc: BaseException) -> bytes | None:
    """Return raw revert data attached to a web3 exception, if any."""
    data: Any = getattr(exc, "data", None)
    if isinstance(data, dict):
        data = data.get("data")
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str) and data.startswith("0x"):
        try:
            return bytes(HexBytes(data))
        except ValueError:
            return None
    return None


def revert_reason(exc: BaseException, abi: tuple[dict[str, Any], ...] = ()) -> str:
    data = revert_data(exc)
    if data:
        return decode_revert(data, abi=abi)
    message = rpc_error_message(exc)
    for prefix in ("execution reverted: ", "execution reverted"):
        if message.startswith(prefix):
            message = message[len(prefix) :]
            break
    return message.strip() or UNKNOWN_REVERT


def _is_transport_error(exc: BaseException) -> bool:
    return any(
        isinstance(e, (ClientError, ConnectionError, TimeoutError, OSError))
        for e in _walk_exception_chain(exc)
    )


def wrap_chain_error(
    exc: BaseException,
    *,
    phase: str,
    address: str | None = None,
    tx_hash: str | None = None,
    abi: tuple[dict[str, Any], ...] = (),
) -> ExecutionError:
    """Map a web3 / transport exception into an ExecutionError."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, ExecutionError):
        return with_context(exc, address=address, phase=phase, tx_hash=tx_hash)

    context = {"address": address, "phase": phase, "tx_hash": tx_hash}

    if isinstance(exc, ContractLogicError):
        return Reverted(revert_reason(exc, abi), data=revert_data(exc), **context)

    if isinstance(exc, TimeExhausted):
        return Timeout(f"{phase} timed out: {exc}", **context)

    status_code = extract_status_code(exc)
    if status_code is None and not _is_transport_error(exc):
        message = rpc_error_message(exc)
        if any(marker in message.lower() for marker in _REVERT_MARKERS):
            return Reverted(revert_reason(exc, abi), data=revert_data(exc), **context)

    retry_after_s = extract_retry_after_s(exc)
    retryable = retry_after_s is not None or _is_transport_error(exc)
    if isinstance(status_code, int) and status_code in RETRYABLE_STATUS_CODES:
        retryable = True

    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc) or type(exc).__name__
    return RpcFailure(
        f"{phase} failed{status_note}: {cause}",
        retryable=retryable,
        status_code=status_code,
        retry_after_s=retry_after_s,
        hint="Check the RPC endpoint and its rate limits." if retryable else None,
        **context,
    )
