"""Bounded concurrent fan-out of one contract call across many accounts.

Every account runs through ``executor.send`` in its own task. Admission is
permit-based: a task is only created once a semaphore permit is held, so at
most ``concurrency_limit`` lifecycles are in flight. Each task sends exactly
one finished ``MintOutcome`` over a queue to a single consumer, which owns
the result list and the progress reporter.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import os
import time
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from mintfleet._errors import wrap_chain_error
from mintfleet.errors import (
    TRANSIENT_ERRORS,
    ExecutionError,
    InvalidInput,
    Interrupted,
    RpcFailure,
    Timeout,
)
from mintfleet.executor import call as view_call
from mintfleet.executor import send
from mintfleet.retry import RetryPolicy, backoff_delay

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from mintfleet.accounts import Account
    from mintfleet.chain import ChainClient
    from mintfleet.contracts import ContractCall, ContractDescriptor
    from mintfleet.executor import TxOverrides

logger = logging.getLogger(__name__)

DEFAULT_FUNCTION = "mint"

#: Failure phases after which a signed transaction may already be with the node.
_BROADCAST_PHASES = frozenset({"submit", "await_receipt", "receipt"})


def default_concurrency() -> int:
    """Default in-flight limit: four lifecycles per CPU."""
    return (os.cpu_count() or 1) * 4


@dataclass(frozen=True)
class MintOutcome:
    """Result for one account: a transaction hash or an ExecutionError."""

    account: str
    index: int | None
    result: str | ExecutionError

    @property
    def ok(self) -> bool:
        return isinstance(self.result, str)

    @property
    def tx_hash(self) -> str | None:
        if isinstance(self.result, str):
            return self.result
        return self.result.tx_hash

    @property
    def error(self) -> ExecutionError | None:
        return None if isinstance(self.result, str) else self.result


@dataclass(frozen=True)
class BatchReport:
    """Immutable summary of one batch; one outcome per input account."""

    outcomes: tuple[MintOutcome, ...]
    duration_s: float
    succeeded_count: int = field(init=False)
    failed_count: int = field(init=False)

    def __post_init__(self) -> None:
        outcomes = tuple(self.outcomes)
        ok = sum(1 for o in outcomes if o.ok)
        object.__setattr__(self, "outcomes", outcomes)
        object.__setattr__(self, "succeeded_count", ok)
        object.__setattr__(self, "failed_count", len(outcomes) - ok)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def by_address(self) -> dict[str, MintOutcome]:
        return {o.account: o for o in self.outcomes}

    def succeeded(self) -> list[MintOutcome]:
        return [o for o in self.outcomes if o.ok]

    def failed(self) -> list[MintOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def failures_by_kind(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for o in self.outcomes:
            if o.error is not None:
                counts[o.error.kind] = counts.get(o.error.kind, 0) + 1
        return counts


@runtime_checkable
class ProgressReporter(Protocol):
    """Observer of a running batch. Called from the consumer task only."""

    def on_outcome(self, outcome: MintOutcome, completed: int, total: int) -> None:
        ...

    def on_batch_complete(self, report: BatchReport) -> None:
        ...


class LoggingProgress:
    """Default reporter: per-account detail at debug, milestones at info."""

    def __init__(self, *, every_pct: int = 10) -> None:
        self._every_pct = max(1, every_pct)
        self._last_bucket = 0

    def on_outcome(self, outcome: MintOutcome, completed: int, total: int) -> None:
        if outcome.ok:
            logger.debug("Account %s minted (tx=%s)", outcome.account, outcome.result)
        else:
            err = outcome.error
            logger.info(
                "Account %s failed [%s] at %s: %s",
                outcome.account,
                err.kind if err else "?",
                err.phase if err else "?",
                err,
            )
        bucket = completed * 100 // total // self._every_pct
        if bucket > self._last_bucket:
            self._last_bucket = bucket
            logger.info("Progress: %d/%d account(s) finished", completed, total)

    def on_batch_complete(self, report: BatchReport) -> None:
        logger.info(
            "Batch finished in %.1fs: %d succeeded, %d failed %s",
            report.duration_s,
            report.succeeded_count,
            report.failed_count,
            report.failures_by_kind() or "",
        )


def _notify(hook: Callable[..., Any], *args: Any) -> None:
    try:
        hook(*args)
    except Exception as e:
        logger.warning("Progress reporter raised %s: %s", type(e).__name__, e)


def _preflight(
    accounts: Sequence[Account],
    contract: ContractDescriptor,
    function: str,
    concurrency_limit: int | None,
) -> None:
    if not accounts:
        raise InvalidInput(
            "accounts must not be empty",
            hint="Derive at least one account before minting.",
        )
    seen: set[str] = set()
    for account in accounts:
        if account.address in seen:
            raise InvalidInput(
                f"Duplicate account address: {account.address}",
                hint="Each account may appear once per batch.",
            )
        seen.add(account.address)
    if not contract.has_function(function):
        raise InvalidInput(
            f"{contract.name} has no function {function!r}",
            hint="Check the mint function name against the contract ABI.",
        )
    if concurrency_limit is not None and concurrency_limit < 1:
        raise InvalidInput(
            f"concurrency_limit must be >= 1, got {concurrency_limit}"
        )


async def _admit(permits: asyncio.Semaphore, shutdown: asyncio.Event | None) -> bool:
    """Wait for a permit; return False (holding nothing) once shutdown is set."""
    if shutdown is None:
        await permits.acquire()
        return True
    if shutdown.is_set():
        return False

    acquire = asyncio.ensure_future(permits.acquire())
    stop = asyncio.ensure_future(shutdown.wait())
    try:
        await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not acquire.done():
            acquire.cancel()
    if not acquire.done() or acquire.cancelled():
        return False
    if shutdown.is_set():
        permits.release()
        return False
    return True


async def _close(client: ChainClient) -> None:
    aclose = getattr(client, "aclose", None)
    if not callable(aclose):
        return
    try:
        await aclose()
    except Exception as e:
        logger.warning("Failed to close client handle: %s", e)


async def _run_account(
    account: Account,
    call: ContractCall,
    client_factory: Callable[[], ChainClient],
    *,
    abi: tuple[dict[str, Any], ...],
    timeout_per_tx: float | None,
    overrides: TxOverrides | None,
) -> MintOutcome:
    address = account.address
    client: ChainClient | None = None
    result: str | ExecutionError
    submitted: list[str] = []
    try:
        client = client_factory()
        if timeout_per_tx is None:
            result = await send(
                call,
                account,
                client,
                overrides=overrides,
                abi=abi,
                on_submitted=submitted.append,
            )
        else:
            async with asyncio.timeout(timeout_per_tx):
                result = await send(
                    call,
                    account,
                    client,
                    timeout_s=timeout_per_tx,
                    overrides=overrides,
                    abi=abi,
                    on_submitted=submitted.append,
                )
    except TimeoutError:
        # The transaction may still be mined if it reached the node.
        result = Timeout(
            f"account lifecycle exceeded {timeout_per_tx}s",
            address=address,
            phase="lifecycle",
            tx_hash=submitted[-1] if submitted else None,
        )
    except ExecutionError as e:
        result = e
    except asyncio.CancelledError:
        raise
    except Exception as e:
        result = wrap_chain_error(e, phase="send", address=address)
    finally:
        if client is not None:
            await _close(client)
    return MintOutcome(account=address, index=account.index, result=result)


async def _collect(
    queue: asyncio.Queue[MintOutcome], total: int, progress: ProgressReporter
) -> list[MintOutcome]:
    outcomes: list[MintOutcome] = []
    while len(outcomes) < total:
        outcome = await queue.get()
        outcomes.append(outcome)
        _notify(progress.on_outcome, outcome, len(outcomes), total)
    return outcomes


async def mint_loop(
    accounts: Sequence[Account],
    client_factory: Callable[[], ChainClient],
    contract: ContractDescriptor,
    *,
    function: str = DEFAULT_FUNCTION,
    args: tuple[Any, ...] = (),
    value: int = 0,
    concurrency_limit: int | None = None,
    timeout_per_tx: float | None = None,
    progress: ProgressReporter | None = None,
    shutdown: asyncio.Event | None = None,
    overrides: TxOverrides | None = None,
) -> BatchReport:
    """Call *function* on *contract* once from every account, concurrently.

    Args:
        accounts: Signers, each used exactly once.
        client_factory: Returns a fresh ``ChainClient`` handle per account.
        contract: Target contract.
        function: ABI function name to call.
        args: Call arguments, identical for every account.
        value: Wei attached to every call.
        concurrency_limit: Max lifecycles in flight; ``None`` uses
            ``default_concurrency()``.
        timeout_per_tx: Bound on one account's whole lifecycle in seconds.
        progress: Observer; defaults to ``LoggingProgress``.
        shutdown: When set, no further accounts are admitted and the
            remaining ones are reported as ``Interrupted``.

    Returns:
        BatchReport with one outcome per account, in input order.

    Raises:
        InvalidInput: Pre-flight validation failed; nothing was sent.
    """
    accounts = list(accounts)
    _preflight(accounts, contract, function, concurrency_limit)
    call = contract.build_call(function, args, value=value)
    limit = concurrency_limit if concurrency_limit is not None else default_concurrency()
    reporter: ProgressReporter = progress if progress is not None else LoggingProgress()

    total = len(accounts)
    position = {a.address: i for i, a in enumerate(accounts)}
    permits = asyncio.Semaphore(limit)
    queue: asyncio.Queue[MintOutcome] = asyncio.Queue()

    logger.info(
        "Calling %s.%s from %d account(s) concurrency=%d",
        contract.name,
        function,
        total,
        limit,
    )
    start = time.perf_counter()

    async def _task(account: Account) -> None:
        try:
            outcome = await _run_account(
                account,
                call,
                client_factory,
                abi=contract.abi,
                timeout_per_tx=timeout_per_tx,
                overrides=overrides,
            )
        finally:
            permits.release()
        queue.put_nowait(outcome)

    consumer = asyncio.create_task(_collect(queue, total, reporter))
    tasks: list[asyncio.Task[None]] = []
    try:
        for i, account in enumerate(accounts):
            if not await _admit(permits, shutdown):
                logger.info(
                    "Shutdown requested; %d account(s) not attempted", total - i
                )
                for skipped in accounts[i:]:
                    queue.put_nowait(
                        MintOutcome(
                            account=skipped.address,
                            index=skipped.index,
                            result=Interrupted(
                                "run interrupted before this account was attempted",
                                address=skipped.address,
                                phase="admission",
                            ),
                        )
                    )
                break
            tasks.append(asyncio.create_task(_task(account)))
        await asyncio.gather(*tasks)
        outcomes = await consumer
    except BaseException:
        for t in tasks:
            t.cancel()
        consumer.cancel()
        raise

    outcomes.sort(key=lambda o: position[o.account])
    report = BatchReport(outcomes=tuple(outcomes), duration_s=time.perf_counter() - start)
    _notify(reporter.on_batch_complete, report)
    return report


def _is_transient(outcome: MintOutcome) -> bool:
    return isinstance(outcome.error, TRANSIENT_ERRORS)


def _may_have_broadcast(outcome: MintOutcome) -> bool:
    """True when the failed attempt may have left a transaction with the node."""
    err = outcome.error
    if err is None:
        return False
    if isinstance(err, Timeout) or err.tx_hash is not None:
        return True
    return isinstance(err, RpcFailure) and err.phase in _BROADCAST_PHASES


async def _minted_status(
    candidates: list[Account],
    client_factory: Callable[[], ChainClient],
    contract: ContractDescriptor,
    minted_check: str,
) -> dict[str, bool | None]:
    """Ask *minted_check* about each candidate; ``None`` when the read failed."""
    client = client_factory()
    permits = asyncio.Semaphore(default_concurrency())

    async def _check(account: Account) -> bool | None:
        async with permits:
            view = contract.build_call(minted_check, (account.address,))
            try:
                return bool(await view_call(view, client, contract=contract))
            except ExecutionError as e:
                logger.debug("Pre-check failed for %s: %s", account.address, e)
                return None

    try:
        found = await asyncio.gather(*(_check(a) for a in candidates))
    finally:
        await _close(client)
    return {a.address: minted for a, minted in zip(candidates, found)}


def _hold(held: set[str]) -> None:
    logger.warning(
        "Not re-sending %d account(s) whose transaction may already be "
        "broadcast; inspect their tx hashes or configure a minted check",
        len(held),
    )


async def retry_failed(
    report: BatchReport,
    accounts: Sequence[Account],
    client_factory: Callable[[], ChainClient],
    contract: ContractDescriptor,
    *,
    minted_check: str | None = None,
    policy: RetryPolicy | None = None,
    **mint_kwargs: Any,
) -> BatchReport:
    """Re-run accounts whose outcome failed for a transient reason.

    Reverts and estimation failures are permanent and kept as-is. An
    account whose transaction may already have reached the node is only
    re-sent when *minted_check* (a view ``(address) -> bool``) positively
    reports it as not minted. Accounts the check reports as done are never
    re-sent. Held accounts keep their earlier outcome. Rounds repeat up to
    ``policy.max_attempts`` times, each after a backoff delay.

    Returns:
        A merged BatchReport covering every account of *report*, in its order.
    """
    policy = policy or RetryPolicy()
    signers = {a.address: a for a in accounts}
    unknown = [o.account for o in report.outcomes if o.account not in signers]
    if unknown:
        raise InvalidInput(
            f"{len(unknown)} outcome(s) have no matching account",
            hint="Pass the same account list that produced the report.",
        )
    if minted_check is not None and not contract.has_function(minted_check):
        raise InvalidInput(f"{contract.name} has no function {minted_check!r}")

    shutdown: asyncio.Event | None = mint_kwargs.get("shutdown")
    current = report.by_address()
    settled: set[str] = set()
    start = time.perf_counter()

    for round_no in range(1, policy.max_attempts + 1):
        candidates = [
            signers[o.account]
            for o in report.outcomes
            if o.account not in settled and _is_transient(current[o.account])
        ]
        if minted_check is None:
            held = {
                a.address for a in candidates if _may_have_broadcast(current[a.address])
            }
            if held:
                _hold(held)
                settled |= held
                candidates = [a for a in candidates if a.address not in held]
        if not candidates or (shutdown is not None and shutdown.is_set()):
            break
        delay = backoff_delay(policy, round_no)
        if delay > 0:
            logger.debug("Waiting %.2fs before retry round %d", delay, round_no)
            await asyncio.sleep(delay)

        if minted_check is not None:
            status = await _minted_status(
                candidates, client_factory, contract, minted_check
            )
            done = {address for address, minted in status.items() if minted}
            if done:
                logger.info(
                    "%d account(s) already minted on chain; not re-sending", len(done)
                )
            held = {
                a.address
                for a in candidates
                if status[a.address] is None and _may_have_broadcast(current[a.address])
            }
            if held:
                _hold(held)
            settled |= done | held
            candidates = [a for a in candidates if a.address not in settled]
            if not candidates:
                break

        logger.info("Retry round %d: %d account(s)", round_no, len(candidates))
        rerun = await mint_loop(candidates, client_factory, contract, **mint_kwargs)
        current.update(rerun.by_address())

    merged = tuple(current[o.account] for o in report.outcomes)
    return BatchReport(
        outcomes=merged, duration_s=report.duration_s + time.perf_counter() - start
    )
