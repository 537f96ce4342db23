"""Exception hierarchy for mintfleet."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class MintfleetError(Exception):
    """Base exception for all mintfleet errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(MintfleetError):
    """Configuration validation or resolution failed."""


class InvalidInput(MintfleetError):
    """A pre-flight check on caller input failed (empty lists, zero counts)."""


class InvalidMnemonic(MintfleetError):
    """The mnemonic phrase failed BIP-39 word or checksum validation."""


class DerivationError(MintfleetError):
    """A key could not be derived for an index."""


class ExecutionError(MintfleetError):
    """A chain interaction failed.

    Carries enough context (signer address, lifecycle phase, transaction hash
    once one exists) to classify the failure without re-deriving state.
    """

    #: Stable tag used in reports and logs.
    kind: str = "execution_error"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        address: str | None = None,
        phase: str | None = None,
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.address = address
        self.phase = phase
        self.tx_hash = tx_hash

    @property
    def message(self) -> str:
        return self.args[0] if self.args else ""


class RpcFailure(ExecutionError):
    """Transport or node-level failure that is not a contract revert.

    The chain adapter attaches retry metadata so read-only calls can be
    retried without brittle substring matching.
    """

    kind = "rpc_failure"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        address: str | None = None,
        phase: str | None = None,
        tx_hash: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(
            message, hint=hint, address=address, phase=phase, tx_hash=tx_hash
        )
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s


class Reverted(ExecutionError):
    """The contract rejected the call; all state changes were undone."""

    kind = "reverted"

    def __init__(
        self,
        reason: str,
        *,
        data: bytes | None = None,
        hint: str | None = None,
        address: str | None = None,
        phase: str | None = None,
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(
            f"execution reverted: {reason}",
            hint=hint,
            address=address,
            phase=phase,
            tx_hash=tx_hash,
        )
        self.reason = reason
        self.data = data


class GasEstimationFailed(ExecutionError):
    """Gas estimation failed; usually the call would revert if sent."""

    kind = "gas_estimation_failed"

    def __init__(
        self,
        reason: str,
        *,
        data: bytes | None = None,
        hint: str | None = None,
        address: str | None = None,
        phase: str | None = "estimate_gas",
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(
            f"gas estimation failed: {reason}",
            hint=hint,
            address=address,
            phase=phase,
            tx_hash=tx_hash,
        )
        self.reason = reason
        self.data = data


class Timeout(ExecutionError):
    """No receipt arrived in time. The transaction may still be mined."""

    kind = "timeout"


class Interrupted(ExecutionError):
    """The account was never attempted because the run was shut down."""

    kind = "interrupted"


#: Failure kinds worth a caller-level retry; reverts are permanent.
TRANSIENT_ERRORS: tuple[type[ExecutionError], ...] = (RpcFailure, Timeout, Interrupted)


def with_context(
    err: ExecutionError,
    *,
    address: str | None = None,
    phase: str | None = None,
    tx_hash: str | None = None,
) -> ExecutionError:
    """Fill in missing context on *err* and return it."""
    if err.address is None and address is not None:
        err.address = address
    if err.phase is None and phase is not None:
        err.phase = phase
    if err.tx_hash is None and tx_hash is not None:
        err.tx_hash = tx_hash
    return err


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
