"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off chain subclasses as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from mintfleet.chain import Receipt
from mintfleet.orchestrator import BatchReport, MintOutcome
from tests.conftest import FakeChainClient


@dataclass
class GateChain(FakeChainClient):
    """FakeChainClient whose receipts wait on an explicit barrier.

    ``started`` is set once ``wait_for`` transactions have been submitted;
    receipts are released only when ``release`` is set.
    """

    wait_for: int = 1
    started: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)

    async def submit(self, raw_tx: bytes) -> str:
        tx_hash = await super().submit(raw_tx)
        if len(self.submitted) >= self.wait_for:
            self.started.set()
        return tx_hash

    async def await_receipt(self, tx_hash: str, timeout_s: float | None) -> Receipt:
        await self.release.wait()
        return await super().await_receipt(tx_hash, timeout_s)


@dataclass
class RecordingProgress:
    """ProgressReporter that records every callback."""

    outcomes: list[tuple[MintOutcome, int, int]] = field(default_factory=list)
    reports: list[BatchReport] = field(default_factory=list)

    def on_outcome(self, outcome: MintOutcome, completed: int, total: int) -> None:
        self.outcomes.append((outcome, completed, total))

    def on_batch_complete(self, report: BatchReport) -> None:
        self.reports.append(report)


class RaisingProgress:
    """ProgressReporter whose hooks always fail."""

    def on_outcome(self, *args: Any) -> None:
        raise RuntimeError("reporter broke")

    def on_batch_complete(self, *args: Any) -> None:
        raise RuntimeError("reporter broke")
