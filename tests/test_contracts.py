from __future__ import annotations

import json
from typing import TYPE_CHECKING

from eth_abi import encode
import pytest

from mintfleet.contracts import UNKNOWN_REVERT, ContractDescriptor, decode_revert
from mintfleet.errors import ConfigurationError, InvalidInput
from tests.conftest import MINT_ABI, MINT_ADDRESS, error_string_data

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit

ADDR = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


def test_mint_call_uses_standard_selector(mint_contract: ContractDescriptor) -> None:
    call = mint_contract.build_call("mint")
    assert call.data == bytes.fromhex("1249c58b")
    assert call.to == MINT_ADDRESS
    assert call.value == 0
    assert call.function == "mint"


def test_build_call_encodes_arguments(mint_contract: ContractDescriptor) -> None:
    call = mint_contract.build_call("balanceOf", (ADDR,))
    assert call.data[:4] == bytes.fromhex("70a08231")
    assert call.data[4:] == encode(["address"], [ADDR])


def test_build_call_rejects_wrong_arity(mint_contract: ContractDescriptor) -> None:
    with pytest.raises(InvalidInput, match="takes 1 argument"):
        mint_contract.build_call("balanceOf", ())


def test_build_call_rejects_bad_argument_type(mint_contract: ContractDescriptor) -> None:
    with pytest.raises(InvalidInput) as exc:
        mint_contract.build_call("balanceOf", ("not-an-address",))
    assert exc.value.hint


def test_unknown_function_is_invalid_input(mint_contract: ContractDescriptor) -> None:
    assert not mint_contract.has_function("burn")
    with pytest.raises(InvalidInput, match="no function 'burn'"):
        mint_contract.build_call("burn")


def test_decode_output_round_trips_view_result(mint_contract: ContractDescriptor) -> None:
    assert mint_contract.decode_output("balanceOf", encode(["uint256"], [7])) == (7,)


def test_address_is_checksummed() -> None:
    c = ContractDescriptor(address=MINT_ADDRESS.lower(), abi=tuple(MINT_ABI))
    assert c.address == MINT_ADDRESS


@pytest.mark.parametrize("address", ["", "0x1234", "not an address"])
def test_invalid_address_is_configuration_error(address: str) -> None:
    with pytest.raises(ConfigurationError):
        ContractDescriptor(address=address, abi=tuple(MINT_ABI))


def test_from_artifact_reads_foundry_layout(tmp_path: Path) -> None:
    path = tmp_path / "FreeMint.json"
    path.write_text(json.dumps({"abi": MINT_ABI, "bytecode": {"object": "0x00"}}))

    c = ContractDescriptor.from_artifact(path, MINT_ADDRESS)

    assert c.name == "FreeMint"
    assert c.has_function("mint")


def test_from_artifact_reads_bare_abi_list(tmp_path: Path) -> None:
    path = tmp_path / "abi.json"
    path.write_text(json.dumps(MINT_ABI))
    c = ContractDescriptor.from_artifact(path, MINT_ADDRESS, name="token")
    assert c.name == "token"
    assert c.has_function("balanceOf")


def test_from_artifact_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Cannot read"):
        ContractDescriptor.from_artifact(tmp_path / "nope.json", MINT_ADDRESS)


def test_from_artifact_without_abi(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text(json.dumps({"bytecode": "0x"}))
    with pytest.raises(ConfigurationError, match="no ABI"):
        ContractDescriptor.from_artifact(path, MINT_ADDRESS)


def test_decode_revert_error_string() -> None:
    data = bytes.fromhex(error_string_data("Distributor: not enough ether")[2:])
    assert decode_revert(data) == "Distributor: not enough ether"


def test_decode_revert_panic() -> None:
    data = bytes.fromhex("4e487b71") + encode(["uint256"], [0x11])
    assert decode_revert(data) == "panic 0x11: arithmetic overflow or underflow"


def test_decode_revert_custom_error(mint_contract: ContractDescriptor) -> None:
    from eth_utils import function_abi_to_4byte_selector

    error_abi = next(e for e in MINT_ABI if e["type"] == "error")
    data = function_abi_to_4byte_selector(error_abi) + encode(["address"], [ADDR])
    assert mint_contract.decode_revert(data) == f"AlreadyMinted({ADDR})"
    assert decode_revert(data).startswith("custom error 0x")


@pytest.mark.parametrize("data", [None, b"", b"\x01\x02"])
def test_decode_revert_without_data_is_unknown(data: bytes | None) -> None:
    assert decode_revert(data) == UNKNOWN_REVERT


def test_decode_revert_truncated_payload() -> None:
    data = bytes.fromhex("08c379a0") + b"\x00" * 3
    assert decode_revert(data).startswith("undecodable revert data")
