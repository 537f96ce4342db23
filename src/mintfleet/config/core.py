# src/mintfleet/config/core.py

"""Configuration schema and resolution.

``Settings`` is the validation wall: every source (defaults, TOML, env,
explicit overrides) is merged into one dict and validated once. The result
is frozen into ``Config``, the immutable payload the CLI and callers pass
around. Secrets never appear in ``repr``/``str`` of either.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import TYPE_CHECKING, Any

from eth_utils import is_address, to_checksum_address, to_wei
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from mintfleet.accounts import Account, DerivationRange
from mintfleet.contracts import ContractDescriptor
from mintfleet.errors import ConfigurationError
from mintfleet.retry import RetryPolicy

from .loaders import ENV_PREFIX, load_env, load_file

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_AMOUNT_WEI = 10**15  # 0.001 ether

_UNITS = ("ether", "gwei", "wei")
_SECRET_FIELDS = frozenset({"mnemonic", "passphrase", "treasury_key"})

_DOTENV_LOADED = False


def parse_amount(value: Any) -> Any:
    """Parse a wei amount.

    Integers are wei. Strings may carry a unit (``"0.5 ether"``,
    ``"30 gwei"``, ``"1000 wei"``); a bare decimal string with a point is
    read as ether, a bare integer string as wei.
    """
    if isinstance(value, bool) or not isinstance(value, (int, str, Decimal)):
        return value
    if isinstance(value, int):
        return value
    text = str(value).strip().lower().replace("_", "")
    unit = "wei"
    for candidate in _UNITS:
        if text.endswith(candidate):
            unit = candidate
            text = text[: -len(candidate)].strip()
            break
    else:
        if "." in text:
            unit = "ether"
    try:
        number = Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"not a valid amount: {value!r}") from e
    wei = to_wei(number, unit)
    if Decimal(wei) != number * (Decimal(10) ** _decimals(unit)):
        raise ValueError(f"amount {value!r} is not a whole number of wei")
    return int(wei)


def _decimals(unit: str) -> int:
    return {"ether": 18, "gwei": 9, "wei": 0}[unit]


def _normalize_secret(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, SecretStr):
        v = v.get_secret_value()
    if isinstance(v, str):
        s = v.strip()
        return SecretStr(s) if s else None
    return v


class Settings(BaseModel):
    """Pydantic schema: field names, types, defaults and validation rules."""

    rpc_url: str = Field(default=DEFAULT_RPC_URL, min_length=1)
    mnemonic: SecretStr | None = None
    passphrase: SecretStr | None = None
    treasury_key: SecretStr | None = None

    start_index: int = Field(default=0, ge=0)
    count: int = Field(default=1, ge=1)
    amount_per_recipient: int = Field(default=DEFAULT_AMOUNT_WEI, gt=0)

    distributor_address: str | None = None
    distributor_artifact: Path | None = None
    distributor_function: str = Field(default="distributeEther", min_length=1)

    mint_address: str | None = None
    mint_artifact: Path | None = None
    mint_function: str = Field(default="mint", min_length=1)
    minted_check: str | None = None

    request_concurrency: int | None = Field(default=None, ge=1)
    tx_timeout_s: float | None = Field(default=None, gt=0)
    request_timeout_s: float = Field(default=30.0, gt=0)
    poll_latency_s: float = Field(default=1.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_rounds: int = Field(default=0, ge=0)

    model_config = {"extra": "forbid", "hide_input_in_errors": True}

    @field_validator("mnemonic", "passphrase", "treasury_key", mode="before")
    @classmethod
    def normalize_secret(cls, v: Any) -> Any:
        """Trim whitespace, map empty to None, wrap in SecretStr."""
        return _normalize_secret(v)

    @field_validator("rpc_url", "mint_function", "distributor_function", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("amount_per_recipient", mode="before")
    @classmethod
    def parse_wei_amount(cls, v: Any) -> Any:
        return parse_amount(v)

    @field_validator("distributor_address", "mint_address", mode="before")
    @classmethod
    def checksum_address(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        if not isinstance(v, str) or not is_address(v.strip()):
            raise ValueError("must be a 0x-prefixed 20-byte hex address")
        return to_checksum_address(v.strip())


@dataclass(frozen=True)
class Config:
    """Immutable resolved configuration.

    ``mnemonic``, ``passphrase`` and ``treasury_key`` are held as plain
    strings for the code that needs them and are redacted from ``str``/``repr``.
    """

    rpc_url: str
    mnemonic: str | None
    passphrase: str | None
    treasury_key: str | None
    start_index: int
    count: int
    amount_per_recipient: int
    distributor_address: str | None
    distributor_artifact: Path | None
    distributor_function: str
    mint_address: str | None
    mint_artifact: Path | None
    mint_function: str
    minted_check: str | None
    request_concurrency: int | None
    tx_timeout_s: float | None
    request_timeout_s: float
    poll_latency_s: float
    retry_rounds: int = 0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __str__(self) -> str:
        """Return a representation with secrets redacted, safe for logs."""
        parts = []
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _SECRET_FIELDS:
                parts.append(f"{f.name}={'[REDACTED]' if value else None}")
            else:
                parts.append(f"{f.name}={value!r}")
        return f"Config({', '.join(parts)})"

    __repr__ = __str__

    def derivation_range(self) -> DerivationRange:
        return DerivationRange(start_index=self.start_index, count=self.count)

    def require_mnemonic(self) -> str:
        if not self.mnemonic:
            raise ConfigurationError(
                "A mnemonic is required to derive accounts",
                hint=field_spec_hint("mnemonic"),
            )
        return self.mnemonic

    def treasury(self) -> Account:
        """Return the funding account built from ``treasury_key``."""
        if not self.treasury_key:
            raise ConfigurationError(
                "A treasury key is required to distribute funds",
                hint=field_spec_hint("treasury_key"),
            )
        return Account.from_key(self.treasury_key)

    def distributor_contract(self) -> ContractDescriptor:
        return _contract(
            "distributor", self.distributor_address, self.distributor_artifact
        )

    def mint_contract(self) -> ContractDescriptor:
        return _contract("mint", self.mint_address, self.mint_artifact)


def field_spec_hint(name: str) -> str:
    """Return a compact hint for setting *name* via env or file."""
    return (
        f"Set {ENV_PREFIX}{name.upper()} or [tool.mintfleet] {name} "
        "in pyproject.toml (or a --config file)."
    )


def _contract(
    role: str, address: str | None, artifact: Path | None
) -> ContractDescriptor:
    if address is None or artifact is None:
        missing = f"{role}_address" if address is None else f"{role}_artifact"
        raise ConfigurationError(
            f"The {role} contract is not configured ({missing} is unset)",
            hint=field_spec_hint(missing),
        )
    return ContractDescriptor.from_artifact(artifact, address, name=role)


def _try_load_dotenv() -> None:
    """Load a ``.env`` file into ``os.environ`` once per process."""
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return
    from dotenv import find_dotenv, load_dotenv

    load_dotenv(find_dotenv(usecwd=True))
    _DOTENV_LOADED = True


def _freeze(settings: Settings) -> Config:
    def reveal(secret: SecretStr | None) -> str | None:
        return secret.get_secret_value() if secret is not None else None

    return Config(
        rpc_url=settings.rpc_url,
        mnemonic=reveal(settings.mnemonic),
        passphrase=reveal(settings.passphrase),
        treasury_key=reveal(settings.treasury_key),
        start_index=settings.start_index,
        count=settings.count,
        amount_per_recipient=settings.amount_per_recipient,
        distributor_address=settings.distributor_address,
        distributor_artifact=settings.distributor_artifact,
        distributor_function=settings.distributor_function,
        mint_address=settings.mint_address,
        mint_artifact=settings.mint_artifact,
        mint_function=settings.mint_function,
        minted_check=settings.minted_check,
        request_concurrency=settings.request_concurrency,
        tx_timeout_s=settings.tx_timeout_s,
        request_timeout_s=settings.request_timeout_s,
        poll_latency_s=settings.poll_latency_s,
        retry_rounds=settings.retry_rounds,
        retry=RetryPolicy(max_attempts=settings.retry_attempts),
    )


def resolve_config(
    overrides: Mapping[str, Any] | None = None,
    profile: str | None = None,
    *,
    config_path: str | Path | None = None,
) -> Config:
    """Resolve configuration from all sources into a frozen ``Config``.

    Precedence: defaults < TOML file < environment (``MINTFLEET_*``, plus a
    ``.env`` file) < *overrides*. ``None`` values in *overrides* are ignored
    so CLI flags that were not given do not mask lower layers.

    Raises:
        ConfigurationError: A source could not be read or validation failed.
    """
    _try_load_dotenv()

    merged: dict[str, Any] = {}
    merged.update(load_file(config_path, profile))
    merged.update(load_env())
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        settings = Settings.model_validate(merged)
    except ValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, ") :]
        hint = None
        if err.get("type") == "extra_forbidden":
            hint = "Unknown setting; check the spelling against the documented fields."
        elif loc in Settings.model_fields:
            hint = field_spec_hint(loc)
        raise ConfigurationError(
            f"Configuration validation failed: {loc}: {msg}", hint=hint
        ) from e
    return _freeze(settings)


def to_redacted_dict(cfg: Config) -> dict[str, Any]:
    """Return the config as a dict with secrets replaced, for display."""
    out: dict[str, Any] = {}
    for f in fields(cfg):
        value = getattr(cfg, f.name)
        if f.name in _SECRET_FIELDS:
            out[f.name] = "[REDACTED]" if value else None
        elif isinstance(value, Path):
            out[f.name] = str(value)
        elif isinstance(value, RetryPolicy):
            out[f.name] = {"max_attempts": value.max_attempts}
        else:
            out[f.name] = value
    return out
