# src/mintfleet/config/loaders.py

"""Configuration loaders for environment and files.

Each loader returns a plain dictionary of raw values; validation happens
once, in ``core.resolve_config``, through the ``Settings`` schema.
"""

from __future__ import annotations

import os
from pathlib import Path
import tomllib
from typing import TYPE_CHECKING, Any

from mintfleet.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

CONFIG_TOOL_NAME = "mintfleet"
ENV_PREFIX = "MINTFLEET_"

CONFIG_PATH_VAR = "MINTFLEET_CONFIG"
PROFILE_VAR = "MINTFLEET_PROFILE"

# Control variables that steer resolution but aren't config fields
META_ENV_FIELDS = {"config", "profile"}


def _coerce_bool(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_env_value(value: str, target_type: Any) -> Any:
    """Coerce an env string to *target_type*; leave it as-is when that fails."""
    if target_type is bool:
        return _coerce_bool(value)
    if target_type is int:
        try:
            return int(value)
        except ValueError:
            return value
    if target_type is float:
        try:
            return float(value)
        except ValueError:
            return value
    return value


def load_env() -> dict[str, Any]:
    """Read ``MINTFLEET_*`` variables from ``os.environ``.

    Values are coerced to the schema's bool/int/float types where that is
    unambiguous; everything else is passed through for pydantic to validate.
    """
    from .core import Settings  # local import to keep loaders import-light

    config: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in META_ENV_FIELDS:
            continue
        info = Settings.model_fields.get(field_name)
        if info is None:
            # Not a config field (e.g. test harness variables).
            continue
        target_type = info.annotation
        if target_type not in {bool, int, float}:
            target_type = None
        config[field_name] = _coerce_env_value(value, target_type)
    return config


def get_config_path(path: str | Path | None = None) -> Path:
    """Return the explicit path, then ``MINTFLEET_CONFIG``, then ./pyproject.toml."""
    if path is not None:
        return Path(path)
    if override := os.environ.get(CONFIG_PATH_VAR):
        return Path(override)
    return Path.cwd() / "pyproject.toml"


def get_effective_profile(profile: str | None = None) -> str | None:
    if profile is not None:
        return profile
    return os.environ.get(PROFILE_VAR) or None


def read_toml(path: Path, *, required: bool = False) -> dict[str, Any]:
    """Read a TOML file.

    A missing file yields ``{}`` unless *required*; a malformed file always
    raises ``ConfigurationError``.
    """
    if not path.exists():
        if required:
            raise ConfigurationError(
                f"Config file not found: {path}",
                hint="Pass an existing TOML file to --config or MINTFLEET_CONFIG.",
            )
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Cannot parse config file {path}: {e}") from e


def _section(data: Mapping[str, Any], *, pyproject: bool) -> dict[str, Any]:
    """Locate the mintfleet table in parsed TOML.

    A pyproject.toml only contributes ``[tool.mintfleet]``. A standalone file
    may use a ``[mintfleet]`` table or put the keys at its top level.
    """
    tool = data.get("tool", {})
    if isinstance(tool, dict) and isinstance(tool.get(CONFIG_TOOL_NAME), dict):
        return dict(tool[CONFIG_TOOL_NAME])
    if pyproject:
        return {}
    if isinstance(data.get(CONFIG_TOOL_NAME), dict):
        return dict(data[CONFIG_TOOL_NAME])
    return {k: v for k, v in data.items() if k != "tool"}


def extract_tables(
    data: Mapping[str, Any], profile: str | None, *, pyproject: bool = False
) -> dict[str, Any]:
    """Return the base table with the optional profile overlaid."""
    section = _section(data, pyproject=pyproject)
    profiles = section.pop("profiles", {})
    if not profile:
        return section
    if not isinstance(profiles, dict) or profile not in profiles:
        available = sorted(profiles) if isinstance(profiles, dict) else []
        raise ConfigurationError(
            f"Profile '{profile}' not found",
            hint=(
                f"Available profiles: {', '.join(available)}"
                if available
                else "No profiles are configured."
            ),
        )
    section.update(profiles[profile])
    return section


def load_file(
    path: str | Path | None = None, profile: str | None = None
) -> dict[str, Any]:
    """Load configuration values from a TOML file.

    An explicit *path* must exist; the implicit ``./pyproject.toml`` may not.
    """
    explicit = path is not None or bool(os.environ.get(CONFIG_PATH_VAR))
    config_path = get_config_path(path)
    data = read_toml(config_path, required=explicit)
    return extract_tables(
        data,
        get_effective_profile(profile),
        pyproject=config_path.name == "pyproject.toml",
    )
