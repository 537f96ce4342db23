"""Pytest configuration and fixtures.

Provides the in-memory chain double, environment isolation, marker-driven
skipping of live-node tests, and shared contract ABIs. All fixtures here
are autouse unless noted.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import Any

from aiohttp import ClientConnectionError
from eth_abi import encode
from eth_account import Account as EthAccount
from eth_utils import keccak
import pytest
from web3 import Web3
from web3.exceptions import ContractLogicError

from mintfleet.accounts import Account
from mintfleet.chain import FeeParams, Receipt
from mintfleet.contracts import ContractDescriptor

# =============================================================================
# Well-known test material (Hardhat / Anvil defaults)
# =============================================================================

TEST_MNEMONIC = "test test test test test test test test test test test junk"
HARDHAT_ADDRESSES = (
    "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
    "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
    "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
)
HARDHAT_KEY_0 = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

MINT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
DISTRIBUTOR_ADDRESS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"

MINT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "mint",
        "inputs": [],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "balanceOf",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "hasMinted",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "MINT_AMOUNT",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "error",
        "name": "AlreadyMinted",
        "inputs": [{"name": "account", "type": "address"}],
    },
]

DISTRIBUTOR_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "distributeEther",
        "inputs": [
            {
                "name": "transactions",
                "type": "tuple[]",
                "internalType": "struct Distributor.Transaction[]",
                "components": [
                    {"name": "receiver", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                ],
            }
        ],
        "outputs": [],
        "stateMutability": "payable",
    }
]


def error_string_data(reason: str) -> str:
    """ABI-encode ``Error(string)`` revert data as a 0x-hex string."""
    return "0x08c379a0" + encode(["string"], [reason]).hex()


def contract_logic_error(reason: str) -> ContractLogicError:
    return ContractLogicError(
        f"execution reverted: {reason}", data=error_string_data(reason)
    )


# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeChainClient:
    """In-memory ChainClient double shared by all handles of one test.

    Per-address behavior is scripted through the sets below. Every signed
    transaction is decoded and recorded in ``submitted``; ``max_in_flight``
    tracks the peak number of submitted-but-unconfirmed transactions.
    """

    chain: int = 31337
    base_fee: int | None = 1_000_000_000
    priority_fee: int = 1_000_000_000
    gas_price: int = 2_000_000_000
    gas_estimate: int = 60_000
    revert_reason: str = "already minted"
    receipt_delay_s: float = 0.0
    call_result: bytes = b""

    balances: dict[str, int] = field(default_factory=dict)
    nonces: dict[str, int] = field(default_factory=dict)
    #: estimate_gas reverts (e.g. already minted, insufficient funds).
    reverting: set[str] = field(default_factory=set)
    #: Mined with status 0; the replay reverts with ``revert_reason``.
    failing_on_chain: set[str] = field(default_factory=set)
    #: Transport failure on the nonce read.
    unreachable: set[str] = field(default_factory=set)
    #: Receipt never arrives.
    hanging: set[str] = field(default_factory=set)

    submitted: list[dict[str, Any]] = field(default_factory=list)
    calls: list[tuple[dict[str, Any], Any]] = field(default_factory=list)
    in_flight: int = 0
    max_in_flight: int = 0
    open_handles: int = 0
    max_open_handles: int = 0
    closed_handles: int = 0
    _pending: dict[str, str] = field(default_factory=dict)

    def handle(self) -> FakeHandle:
        self.open_handles += 1
        self.max_open_handles = max(self.max_open_handles, self.open_handles)
        return FakeHandle(self)

    async def chain_id(self) -> int:
        return self.chain

    async def get_nonce(self, address: str) -> int:
        if address in self.unreachable:
            raise ClientConnectionError("connection reset by peer")
        return self.nonces.get(address, 0)

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        if tx.get("from") in self.reverting:
            raise contract_logic_error(self.revert_reason)
        return self.gas_estimate

    async def fee_params(self) -> FeeParams:
        if self.base_fee is None:
            return FeeParams(gas_price=self.gas_price)
        return FeeParams(
            max_fee_per_gas=2 * self.base_fee + self.priority_fee,
            max_priority_fee_per_gas=self.priority_fee,
        )

    async def submit(self, raw_tx: bytes) -> str:
        sender = EthAccount.recover_transaction(raw_tx)
        tx_hash = Web3.to_hex(keccak(raw_tx))
        self.submitted.append({"from": sender, "hash": tx_hash, "raw": raw_tx})
        self.nonces[sender] = self.nonces.get(sender, 0) + 1
        self._pending[tx_hash] = sender
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        return tx_hash

    async def await_receipt(self, tx_hash: str, timeout_s: float | None) -> Receipt:
        sender = self._pending[tx_hash]
        try:
            if sender in self.hanging:
                await asyncio.sleep(3600)
            if self.receipt_delay_s:
                await asyncio.sleep(self.receipt_delay_s)
        finally:
            self.in_flight -= 1
        status = 0 if sender in self.failing_on_chain else 1
        return Receipt(
            tx_hash=tx_hash,
            status=status,
            block_number=len(self.submitted),
            gas_used=self.gas_estimate,
            effective_gas_price=self._effective_gas_price(),
        )

    async def call(self, tx: dict[str, Any], block: str | int = "latest") -> bytes:
        self.calls.append((tx, block))
        if tx.get("from") in self.failing_on_chain:
            raise contract_logic_error(self.revert_reason)
        return self.call_result

    def _effective_gas_price(self) -> int:
        if self.base_fee is None:
            return self.gas_price
        return self.base_fee + self.priority_fee

    def senders(self) -> list[str]:
        return [s["from"] for s in self.submitted]


class FakeHandle:
    """Per-task view of a FakeChainClient; counts open handles."""

    def __init__(self, chain: FakeChainClient) -> None:
        self._chain = chain
        self.closed = False

    def __getattr__(self, name: str) -> Any:
        return getattr(self._chain, name)

    async def aclose(self) -> None:
        if not self.closed:
            self.closed = True
            self._chain.open_handles -= 1
            self._chain.closed_handles += 1


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def mint_contract() -> ContractDescriptor:
    return ContractDescriptor(address=MINT_ADDRESS, abi=tuple(MINT_ABI), name="FreeMint")


@pytest.fixture
def distributor_contract() -> ContractDescriptor:
    return ContractDescriptor(
        address=DISTRIBUTOR_ADDRESS, abi=tuple(DISTRIBUTOR_ABI), name="Distributor"
    )


@pytest.fixture
def make_accounts():
    """Factory for accounts with fresh random keys (no mnemonic needed)."""

    def _make(n: int) -> list[Account]:
        return [
            Account.from_key(EthAccount.create().key, index=i) for i in range(n)
        ]

    return _make


@pytest.fixture
def treasury() -> Account:
    return Account.from_key(HARDHAT_KEY_0)


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_mintfleet_env(request, monkeypatch, tmp_path):
    """Clear MINTFLEET_* variables and run from an empty directory.

    The working directory matters because ``./pyproject.toml`` is a config
    source. Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.chain
    """
    if request.node.get_closest_marker(
        "allow_env_pollution"
    ) or request.node.get_closest_marker("chain"):
        return
    for key in list(os.environ.keys()):
        if key.startswith("MINTFLEET_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

CHAIN_TESTS_REASON = "Chain tests require ENABLE_CHAIN_TESTS=1 and a local node"


def _chain_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_CHAIN_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip live-node tests when not explicitly enabled."""
    if _chain_tests_enabled():
        return
    skip_chain = pytest.mark.skip(reason=CHAIN_TESTS_REASON)
    for item in items:
        if "chain" in item.keywords:
            item.add_marker(skip_chain)
