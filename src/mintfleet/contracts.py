"""ABI-level contract descriptors: encode calls, decode returns and reverts.

The core never interprets contract source. Everything goes through the ABI
supplied by the caller (a compiler artifact or a bare ABI list).
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from pathlib import Path
from typing import Any

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import function_abi_to_4byte_selector, is_address, to_checksum_address
from eth_utils.abi import collapse_if_tuple

from mintfleet.errors import ConfigurationError, InvalidInput

#: Marker used when a revert carries no decodable reason.
UNKNOWN_REVERT = "<unknown>"

_ERROR_SELECTOR = bytes.fromhex("08c379a0")  # Error(string)
_PANIC_SELECTOR = bytes.fromhex("4e487b71")  # Panic(uint256)

_PANIC_CODES: dict[int, str] = {
    0x01: "assertion failed",
    0x11: "arithmetic overflow or underflow",
    0x12: "division or modulo by zero",
    0x21: "invalid enum value",
    0x22: "corrupted storage byte array",
    0x31: "pop on empty array",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "call to zero-initialized function",
}


@dataclass(frozen=True)
class ContractCall:
    """Encoded call to one contract function."""

    to: str
    data: bytes
    value: int = 0
    function: str = ""

    def as_tx(self, sender: str | None = None) -> dict[str, Any]:
        """Return a web3-style transaction dict for this call."""
        tx: dict[str, Any] = {"to": self.to, "data": self.data, "value": self.value}
        if sender is not None:
            tx["from"] = sender
        return tx


@dataclass(frozen=True)
class ContractDescriptor:
    """Deployed contract address plus the ABI used to talk to it."""

    address: str
    abi: tuple[dict[str, Any], ...] = field(repr=False)
    name: str = "contract"

    def __post_init__(self) -> None:
        if not isinstance(self.address, str) or not is_address(self.address):
            raise ConfigurationError(
                f"Invalid contract address for {self.name}: {self.address!r}",
                hint="Pass a 0x-prefixed 20-byte hex address.",
            )
        object.__setattr__(self, "address", to_checksum_address(self.address))
        abi = tuple(self.abi)
        if not all(isinstance(entry, dict) for entry in abi):
            raise ConfigurationError(
                f"ABI for {self.name} must be a list of JSON objects",
                hint="Load it from the compiler artifact's 'abi' field.",
            )
        object.__setattr__(self, "abi", abi)

    @classmethod
    def from_artifact(
        cls, path: str | Path, address: str, *, name: str | None = None
    ) -> ContractDescriptor:
        """Load the ABI from a Foundry/Hardhat artifact or a bare ABI file."""
        path = Path(path)
        try:
            raw = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise ConfigurationError(
                f"Cannot read contract artifact: {path}",
                hint=str(e),
            ) from e
        abi = raw.get("abi") if isinstance(raw, dict) else raw
        if not isinstance(abi, list):
            raise ConfigurationError(
                f"Artifact has no ABI list: {path}",
                hint="Expected a JSON list or an object with an 'abi' field.",
            )
        return cls(address=address, abi=tuple(abi), name=name or path.stem)

    def has_function(self, function: str) -> bool:
        return any(
            entry.get("type") == "function" and entry.get("name") == function
            for entry in self.abi
        )

    def function_abi(self, function: str, n_args: int | None = None) -> dict[str, Any]:
        """Return the ABI entry for *function*, disambiguating overloads by arity."""
        matches = [
            entry
            for entry in self.abi
            if entry.get("type") == "function" and entry.get("name") == function
        ]
        if n_args is not None and len(matches) > 1:
            matches = [m for m in matches if len(m.get("inputs", [])) == n_args]
        if not matches:
            raise InvalidInput(
                f"{self.name} has no function {function!r}",
                hint="Check the function name against the contract ABI.",
            )
        if len(matches) > 1:
            raise InvalidInput(
                f"{self.name}.{function} is overloaded; pass arguments to disambiguate"
            )
        return matches[0]

    def build_call(
        self, function: str, args: tuple[Any, ...] | list[Any] = (), *, value: int = 0
    ) -> ContractCall:
        """Encode a call to *function* with *args*."""
        args = tuple(args)
        fn_abi = self.function_abi(function, len(args))
        types = input_types(fn_abi)
        if len(types) != len(args):
            raise InvalidInput(
                f"{self.name}.{function} takes {len(types)} argument(s), got {len(args)}"
            )
        if value < 0:
            raise InvalidInput(f"value must be >= 0 wei, got {value}")
        try:
            encoded = encode(types, args)
        except (EncodingError, TypeError, ValueError) as e:
            raise InvalidInput(
                f"Arguments do not match {self.name}.{function}({','.join(types)})",
                hint=str(e),
            ) from e
        data = function_abi_to_4byte_selector(fn_abi) + encoded
        return ContractCall(to=self.address, data=data, value=value, function=function)

    def decode_output(self, function: str, data: bytes) -> tuple[Any, ...]:
        """Decode the return data of *function*."""
        fn_abi = self.function_abi(function)
        types = [collapse_if_tuple(o) for o in fn_abi.get("outputs", [])]
        try:
            return tuple(decode(types, data))
        except (DecodingError, ValueError) as e:
            raise InvalidInput(
                f"Return data does not match {self.name}.{function} outputs",
                hint=str(e),
            ) from e

    def decode_revert(self, data: bytes | None) -> str:
        """Decode revert data, including this contract's custom errors."""
        return decode_revert(data, abi=self.abi)


def input_types(fn_abi: dict[str, Any]) -> list[str]:
    return [collapse_if_tuple(i) for i in fn_abi.get("inputs", [])]


def decode_revert(
    data: bytes | None, *, abi: tuple[dict[str, Any], ...] | None = None
) -> str:
    """Return a human-readable revert reason, or ``UNKNOWN_REVERT``."""
    if not data or len(data) < 4:
        return UNKNOWN_REVERT
    selector, payload = bytes(data[:4]), bytes(data[4:])
    try:
        if selector == _ERROR_SELECTOR:
            (reason,) = decode(["string"], payload)
            return reason or UNKNOWN_REVERT
        if selector == _PANIC_SELECTOR:
            (code,) = decode(["uint256"], payload)
            return f"panic 0x{code:02x}: {_PANIC_CODES.get(code, 'unknown panic code')}"
        for entry in abi or ():
            if entry.get("type") != "error":
                continue
            if function_abi_to_4byte_selector(entry) != selector:
                continue
            values = decode(input_types(entry), payload)
            rendered = ", ".join(str(v) for v in values)
            return f"{entry.get('name', 'error')}({rendered})"
    except (DecodingError, ValueError):
        return f"undecodable revert data 0x{bytes(data).hex()}"
    return f"custom error 0x{selector.hex()}"
