"""Deterministic account derivation from a BIP-39 mnemonic.

Every account comes from the same seed along ``m/44'/60'/0'/0/{index}``:
coin type and account branch are fixed, only the final index varies. The
same mnemonic and range therefore always reproduce the identical account set,
which is what makes re-running a partially failed batch safe.
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
import logging
import os
from typing import TYPE_CHECKING

from eth_account import Account as EthAccount
from eth_account.hdaccount import key_from_seed, seed_from_mnemonic
from eth_utils import ValidationError

from mintfleet.errors import DerivationError, InvalidInput, InvalidMnemonic

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

logger = logging.getLogger(__name__)

BASE_PATH = "m/44'/60'/0'/0/{}"
#: Non-hardened child indices stop at 2**31.
MAX_INDEX = 2**31
#: Below this many accounts a process pool costs more than it saves.
PARALLEL_THRESHOLD = 256


@dataclass(frozen=True)
class SigningKey:
    """Opaque private key material. Never rendered by ``repr`` or ``str``."""

    _secret: bytes = field(repr=False)

    def reveal(self) -> bytes:
        return self._secret

    def __repr__(self) -> str:
        return "SigningKey(<redacted>)"

    __str__ = __repr__


@dataclass(frozen=True)
class Account:
    """One signer of a run: derivation index, checksum address and key."""

    index: int | None
    address: str
    signing_key: SigningKey = field(repr=False)

    @classmethod
    def from_key(cls, private_key: str | bytes, *, index: int | None = None) -> Account:
        """Build an account from a raw private key (e.g. the treasury)."""
        try:
            local = EthAccount.from_key(private_key)
        except (ValueError, ValidationError) as e:
            raise InvalidInput(
                "Private key is not a valid secp256k1 key",
                hint="Pass a 32-byte key as bytes or a 0x-prefixed hex string.",
            ) from e
        return cls(index=index, address=local.address, signing_key=SigningKey(local.key))

    def signer(self) -> LocalAccount:
        """Return an ``eth_account`` signer for this account's key."""
        return EthAccount.from_key(self.signing_key.reveal())


@dataclass(frozen=True)
class DerivationRange:
    """Consecutive derivation indices ``[start_index, start_index + count)``."""

    start_index: int
    count: int

    def __post_init__(self) -> None:
        if self.count <= 0:
            raise InvalidInput(
                f"count must be > 0, got {self.count}",
                hint="Derive at least one account.",
            )
        if self.start_index < 0:
            raise InvalidInput(f"start_index must be >= 0, got {self.start_index}")
        if self.stop > MAX_INDEX:
            raise InvalidInput(
                f"range [{self.start_index}, {self.stop}) exceeds the index space",
                hint=f"Indices must stay below {MAX_INDEX}.",
            )

    @property
    def stop(self) -> int:
        return self.start_index + self.count

    def indices(self) -> range:
        return range(self.start_index, self.stop)


def derivation_path(index: int) -> str:
    return BASE_PATH.format(index)


def derive(
    mnemonic: str,
    derivation_range: DerivationRange,
    *,
    passphrase: str = "",
    workers: int | None = None,
) -> list[Account]:
    """Derive the accounts of *derivation_range* from *mnemonic*, in index order.

    Args:
        mnemonic: BIP-39 phrase; its checksum is validated.
        derivation_range: Indices to derive.
        passphrase: Optional BIP-39 passphrase.
        workers: Process count for large ranges. ``None`` picks
            ``os.cpu_count()``; ``1`` forces in-process derivation.

    Raises:
        InvalidMnemonic: The phrase has unknown words or a bad checksum.
        DerivationError: A key could not be derived for some index.
    """
    seed = _seed(mnemonic, passphrase)
    indices = derivation_range.indices()
    n_workers = _resolve_workers(workers, len(indices))

    if n_workers <= 1:
        rows = _derive_chunk(seed, indices)
    else:
        chunks = _split(indices, n_workers)
        logger.debug(
            "Deriving %d account(s) across %d worker process(es)",
            len(indices),
            n_workers,
        )
        rows = []
        with ProcessPoolExecutor(max_workers=n_workers) as pool:
            for part in pool.map(_derive_chunk, [seed] * len(chunks), chunks):
                rows.extend(part)

    accounts = [
        Account(index=index, address=address, signing_key=SigningKey(key))
        for index, address, key in rows
    ]
    logger.info(
        "Derived %d account(s) for indices [%d, %d)",
        len(accounts),
        derivation_range.start_index,
        derivation_range.stop,
    )
    return accounts


def _seed(mnemonic: str, passphrase: str) -> bytes:
    words = " ".join(mnemonic.split())
    if not words:
        raise InvalidMnemonic("Mnemonic is empty", hint="Pass a 12 or 24 word phrase.")
    try:
        return seed_from_mnemonic(words, passphrase)
    except (ValidationError, ValueError):
        # The underlying error quotes the phrase; do not chain it.
        raise InvalidMnemonic(
            "Mnemonic failed BIP-39 validation",
            hint="Check the word list and checksum (12/15/18/21/24 English words).",
        ) from None


def _derive_chunk(seed: bytes, indices: range) -> list[tuple[int, str, bytes]]:
    rows: list[tuple[int, str, bytes]] = []
    for index in indices:
        try:
            key = key_from_seed(seed, derivation_path(index))
            address = EthAccount.from_key(key).address
        except Exception as e:
            raise DerivationError(f"Failed to derive account at index {index}") from e
        rows.append((index, address, key))
    return rows


def _resolve_workers(workers: int | None, n: int) -> int:
    if workers is not None:
        if workers < 1:
            raise InvalidInput(f"workers must be >= 1, got {workers}")
        return min(workers, n)
    if n < PARALLEL_THRESHOLD:
        return 1
    return min(os.cpu_count() or 1, n)


def _split(indices: range, parts: int) -> list[range]:
    size = -(-len(indices) // parts)
    return [indices[i : i + size] for i in range(0, len(indices), size)]
