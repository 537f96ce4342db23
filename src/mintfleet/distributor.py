"""Fund many recipients in one batched distribution transaction."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any

from eth_utils import is_address, to_checksum_address

from mintfleet.contracts import input_types
from mintfleet.errors import GasEstimationFailed, InvalidInput, Reverted
from mintfleet.executor import transact

if TYPE_CHECKING:
    from collections.abc import Sequence

    from mintfleet.accounts import Account
    from mintfleet.chain import ChainClient
    from mintfleet.contracts import ContractDescriptor
    from mintfleet.executor import TxOverrides

logger = logging.getLogger(__name__)

DEFAULT_FUNCTION = "distributeEther"


@dataclass(frozen=True)
class DistributeParam:
    """Who gets funded, with how much, from which treasury account."""

    recipients: tuple[str, ...]
    amount_per_recipient: int
    sender: Account

    def __post_init__(self) -> None:
        recipients = tuple(self.recipients)
        if not recipients:
            raise InvalidInput(
                "recipients must not be empty",
                hint="Derive at least one account before distributing.",
            )
        checksummed: list[str] = []
        for r in recipients:
            if not isinstance(r, str) or not is_address(r):
                raise InvalidInput(f"Invalid recipient address: {r!r}")
            checksummed.append(to_checksum_address(r))
        if len(set(checksummed)) != len(checksummed):
            raise InvalidInput(
                "recipients contain duplicate addresses",
                hint="Each recipient is funded exactly once per distribution.",
            )
        if self.amount_per_recipient <= 0:
            raise InvalidInput(
                f"amount_per_recipient must be > 0 wei, got {self.amount_per_recipient}"
            )
        object.__setattr__(self, "recipients", tuple(checksummed))

    @classmethod
    def for_accounts(
        cls, accounts: Sequence[Account], amount_per_recipient: int, sender: Account
    ) -> DistributeParam:
        return cls(
            recipients=tuple(a.address for a in accounts),
            amount_per_recipient=amount_per_recipient,
            sender=sender,
        )

    @property
    def total_value(self) -> int:
        return self.amount_per_recipient * len(self.recipients)


@dataclass(frozen=True)
class DistributionReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    recipients: tuple[str, ...]
    total_value: int
    effective_gas_price: int = 0

    @property
    def fee_paid(self) -> int:
        """Wei the sender paid for gas, on top of ``total_value``."""
        return self.gas_used * self.effective_gas_price


def distribution_args(fn_abi: dict[str, Any], param: DistributeParam) -> tuple[Any, ...]:
    """Shape the call arguments to the distribution function's ABI.

    Supports a single ``tuple[]`` of ``(receiver, amount)`` structs and the
    flat ``(address[], uint256)`` form.
    """
    types = input_types(fn_abi)
    amount = param.amount_per_recipient
    if len(types) == 1 and types[0].startswith("(") and types[0].endswith(")[]"):
        return ([(r, amount) for r in param.recipients],)
    if len(types) == 2 and types[0] == "address[]" and types[1].startswith("uint"):
        return (list(param.recipients), amount)
    raise InvalidInput(
        f"Unsupported distribution signature: {fn_abi.get('name')}({','.join(types)})",
        hint="Expected (address,uint256)[] or (address[],uint256).",
    )


async def distribute(
    param: DistributeParam,
    client: ChainClient,
    contract: ContractDescriptor,
    *,
    function: str = DEFAULT_FUNCTION,
    timeout_s: float | None = None,
    overrides: TxOverrides | None = None,
) -> DistributionReceipt:
    """Send one transaction funding every recipient of *param*.

    Exactly one attempt is made. Any contract rejection, including an
    under-funded treasury, surfaces as ``Reverted``.
    """
    args = distribution_args(contract.function_abi(function), param)
    call = contract.build_call(function, args, value=param.total_value)

    logger.info(
        "Distributing %d wei to %d recipient(s) via %s.%s",
        param.total_value,
        len(param.recipients),
        contract.name,
        function,
    )
    try:
        receipt = await transact(
            call,
            param.sender,
            client,
            timeout_s=timeout_s,
            overrides=overrides,
            abi=contract.abi,
        )
    except GasEstimationFailed as e:
        raise Reverted(
            e.reason,
            data=e.data,
            address=e.address,
            phase=e.phase,
            hint="Check the treasury balance and the distribution contract.",
        ) from e

    logger.info(
        "Distribution mined in block %d (tx=%s, gas=%d)",
        receipt.block_number,
        receipt.tx_hash,
        receipt.gas_used,
    )
    return DistributionReceipt(
        tx_hash=receipt.tx_hash,
        block_number=receipt.block_number,
        gas_used=receipt.gas_used,
        recipients=param.recipients,
        total_value=param.total_value,
        effective_gas_price=receipt.effective_gas_price,
    )
