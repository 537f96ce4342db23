# src/mintfleet/config/__init__.py

"""Configuration management.

Resolve once, freeze, then pass around: ``resolve_config`` merges defaults,
a TOML file, the environment and explicit overrides into an immutable
``Config``.
"""

from .core import (
    Config,
    Settings,
    field_spec_hint,
    parse_amount,
    resolve_config,
    to_redacted_dict,
)
from .loaders import load_env, load_file

__all__ = [
    "Config",
    "Settings",
    "field_spec_hint",
    "load_env",
    "load_file",
    "parse_amount",
    "resolve_config",
    "to_redacted_dict",
]
