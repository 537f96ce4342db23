"""mintfleet: fund and drive many deterministic EVM accounts concurrently.

Public API:
    - derive(): Accounts from a mnemonic and an index range
    - distribute(): One batched funding transaction
    - mint_loop(): Bounded concurrent contract calls, one per account
    - retry_failed(): Re-run transiently failed accounts
    - fund() / mint(): The same steps driven by a resolved Config
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from mintfleet.accounts import Account, DerivationRange, derive
from mintfleet.chain import ChainClient, Web3ChainClient
from mintfleet.config import Config, resolve_config
from mintfleet.contracts import ContractCall, ContractDescriptor
from mintfleet.distributor import DistributeParam, DistributionReceipt, distribute
from mintfleet.errors import (
    ConfigurationError,
    DerivationError,
    ExecutionError,
    GasEstimationFailed,
    Interrupted,
    InvalidInput,
    InvalidMnemonic,
    MintfleetError,
    Reverted,
    RpcFailure,
    Timeout,
)
from mintfleet.executor import TxOverrides
from mintfleet.orchestrator import (
    BatchReport,
    LoggingProgress,
    MintOutcome,
    ProgressReporter,
    default_concurrency,
    mint_loop,
    retry_failed,
)
from mintfleet.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Sequence

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("mintfleet")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("mintfleet").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


def derive_accounts(config: Config) -> list[Account]:
    """Derive the configured account range."""
    return derive(
        config.require_mnemonic(),
        config.derivation_range(),
        passphrase=config.passphrase or "",
    )


def connect(config: Config) -> Web3ChainClient:
    """Open a client owning an HTTP transport to ``config.rpc_url``."""
    return Web3ChainClient.connect(
        config.rpc_url,
        request_timeout_s=config.request_timeout_s,
        retry=config.retry,
        poll_latency_s=config.poll_latency_s,
    )


async def _aclose(client: Web3ChainClient) -> None:
    try:
        await client.aclose()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        # Cleanup should never mask the primary failure.
        logger.warning("Client cleanup failed: %s", exc)


async def fund(
    config: Config, accounts: Sequence[Account] | None = None
) -> DistributionReceipt:
    """Fund *accounts* (default: the configured range) from the treasury."""
    targets = list(accounts) if accounts is not None else derive_accounts(config)
    param = DistributeParam.for_accounts(
        targets, config.amount_per_recipient, config.treasury()
    )
    contract = config.distributor_contract()
    client = connect(config)
    try:
        return await distribute(
            param,
            client,
            contract,
            function=config.distributor_function,
            timeout_s=config.tx_timeout_s,
        )
    finally:
        await _aclose(client)


async def mint(
    config: Config,
    accounts: Sequence[Account] | None = None,
    *,
    progress: ProgressReporter | None = None,
    shutdown: asyncio.Event | None = None,
) -> BatchReport:
    """Run the configured mint call from every account.

    Transiently failed accounts are retried for ``config.retry_rounds``
    rounds (none by default). An account whose transaction may already
    have been broadcast is only re-sent when ``config.minted_check`` is set
    and reports it as not yet minted.
    """
    signers = list(accounts) if accounts is not None else derive_accounts(config)
    contract = config.mint_contract()
    client = connect(config)
    kwargs = {
        "function": config.mint_function,
        "concurrency_limit": config.request_concurrency,
        "timeout_per_tx": config.tx_timeout_s,
        "progress": progress,
        "shutdown": shutdown,
    }
    try:
        report = await mint_loop(signers, client.handle, contract, **kwargs)
        if report.failed_count and config.retry_rounds > 0:
            report = await retry_failed(
                report,
                signers,
                client.handle,
                contract,
                minted_check=config.minted_check,
                policy=RetryPolicy(max_attempts=config.retry_rounds),
                **kwargs,
            )
        return report
    finally:
        await _aclose(client)


__all__ = [
    "Account",
    "BatchReport",
    "ChainClient",
    "Config",
    "ConfigurationError",
    "ContractCall",
    "ContractDescriptor",
    "DerivationError",
    "DerivationRange",
    "DistributeParam",
    "DistributionReceipt",
    "ExecutionError",
    "GasEstimationFailed",
    "Interrupted",
    "InvalidInput",
    "InvalidMnemonic",
    "LoggingProgress",
    "MintOutcome",
    "MintfleetError",
    "ProgressReporter",
    "Reverted",
    "RetryPolicy",
    "RpcFailure",
    "Timeout",
    "TxOverrides",
    "Web3ChainClient",
    "connect",
    "default_concurrency",
    "derive",
    "derive_accounts",
    "distribute",
    "fund",
    "mint",
    "mint_loop",
    "resolve_config",
    "retry_failed",
]
