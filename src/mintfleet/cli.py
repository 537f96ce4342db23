"""``mintfleet`` command-line entry point.

Examples:
- mintfleet derive --count 5
- mintfleet distribute --config fleet.toml --amount "0.01 ether"
- mintfleet mint --config fleet.toml --concurrency 16 --timeout 90
- mintfleet run --profile anvil
"""

from __future__ import annotations

import argparse
import asyncio
from contextlib import suppress
import json
import logging
import signal
import sys
from typing import TYPE_CHECKING, Any

from mintfleet import derive_accounts, fund, mint
from mintfleet.config import resolve_config, to_redacted_dict
from mintfleet.errors import ExecutionError, MintfleetError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from mintfleet.config import Config
    from mintfleet.distributor import DistributionReceipt
    from mintfleet.orchestrator import BatchReport

logger = logging.getLogger("mintfleet.cli")

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="TOML config file (default: ./pyproject.toml)")
    parser.add_argument("--profile", help="Profile to overlay from the config file")
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint URL")
    parser.add_argument("--start", type=int, help="First derivation index")
    parser.add_argument("--count", type=int, help="Number of accounts")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def _add_tx(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--timeout", type=float, help="Seconds to wait per transaction lifecycle"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mintfleet",
        description="Fund and drive many deterministic EVM accounts concurrently.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("derive", help="Print derived account addresses")
    _add_common(p)

    p = sub.add_parser("distribute", help="Fund the derived accounts from the treasury")
    _add_common(p)
    _add_tx(p)
    p.add_argument("--amount", help='Per-recipient amount, e.g. "0.01 ether" or wei')

    for name, help_text in (
        ("mint", "Call the mint function from every derived account"),
        ("run", "Distribute, then mint"),
    ):
        p = sub.add_parser(name, help=help_text)
        _add_common(p)
        _add_tx(p)
        p.add_argument("--concurrency", type=int, help="Max transactions in flight")
        if name == "run":
            p.add_argument("--amount", help="Per-recipient amount")

    p = sub.add_parser("config", help="Show the resolved configuration (redacted)")
    _add_common(p)
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "rpc_url": args.rpc_url,
        "start_index": args.start,
        "count": args.count,
        "amount_per_recipient": getattr(args, "amount", None),
        "request_concurrency": getattr(args, "concurrency", None),
        "tx_timeout_s": getattr(args, "timeout", None),
    }


def _print_receipt(receipt: DistributionReceipt) -> None:
    print(
        f"distributed {receipt.total_value} wei to {len(receipt.recipients)} "
        f"account(s) in block {receipt.block_number} (tx {receipt.tx_hash})"
    )


def _print_report(report: BatchReport) -> None:
    for outcome in report.failed():
        err = outcome.error
        print(f"FAILED {outcome.account} [{err.kind if err else '?'}] {err}")
    print(
        f"{report.succeeded_count}/{report.total} succeeded, "
        f"{report.failed_count} failed in {report.duration_s:.1f}s"
    )


def _install_signal_handlers(shutdown: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform's event loop.
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, _request_shutdown, shutdown)


def _request_shutdown(shutdown: asyncio.Event) -> None:
    if not shutdown.is_set():
        logger.warning("Shutdown requested; finishing in-flight accounts")
    shutdown.set()


async def _run(command: str, config: Config) -> int:
    if command == "derive":
        for account in derive_accounts(config):
            print(f"{account.index}\t{account.address}")
        return 0

    if command == "config":
        print(json.dumps(to_redacted_dict(config), indent=2))
        return 0

    accounts = derive_accounts(config)
    if command in ("distribute", "run"):
        _print_receipt(await fund(config, accounts))
        if command == "distribute":
            return 0

    shutdown = asyncio.Event()
    _install_signal_handlers(shutdown)
    report = await mint(config, accounts, shutdown=shutdown)
    _print_report(report)
    return 1 if report.failed_count else 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)

    try:
        config = resolve_config(
            _overrides(args), args.profile, config_path=args.config
        )
        logger.debug("Resolved %s", config)
        return asyncio.run(_run(args.command, config))
    except ExecutionError as exc:
        print(f"error: {exc}", file=sys.stderr)
        if exc.tx_hash:
            print(f"  tx: {exc.tx_hash}", file=sys.stderr)
        return 1
    except MintfleetError as exc:
        print(f"error: {exc}", file=sys.stderr)
        if exc.hint:
            print(f"  hint: {exc.hint}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover - direct execution guard
    raise SystemExit(main())
